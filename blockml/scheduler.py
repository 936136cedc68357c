# blockml/scheduler.py

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, List, Sequence, Set, Tuple

_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class Schedule:
    order: Tuple[str, ...]
    cycle_detected: bool = False
    back_edges: Tuple[Tuple[str, str], ...] = ()


def topological_sort(
    node_ids: Sequence[str],
    edges: Iterable[Tuple[str, str]],
    sources: Iterable[str] = (),
) -> Schedule:
    """
    Order ``node_ids`` so that every edge points forward.

    Depth-first with three colours, started from nodes with no incoming edge
    (and any explicit ``sources``), then swept over whatever is left. An edge
    into a node that is still on the stack is a back edge: it is recorded and
    skipped, so cyclic graphs still yield every node exactly once. Edges with
    an endpoint outside ``node_ids`` are ignored. The result only depends on
    the order of the inputs.
    """
    ids: List[str] = []
    seen: Set[Hashable] = set()
    for node_id in node_ids:
        if node_id not in seen:
            seen.add(node_id)
            ids.append(node_id)

    successors: Dict[str, List[str]] = defaultdict(list)
    indegree: Dict[str, int] = {node_id: 0 for node_id in ids}
    for src, dst in edges:
        if src not in indegree or dst not in indegree:
            continue
        successors[src].append(dst)
        indegree[dst] += 1

    source_set = set(sources)
    roots = [n for n in ids if indegree[n] == 0 or n in source_set]

    colour: Dict[str, int] = {node_id: _WHITE for node_id in ids}
    postorder: List[str] = []
    back_edges: List[Tuple[str, str]] = []

    def visit(root: str) -> None:
        colour[root] = _GREY
        stack: List[Tuple[str, int]] = [(root, 0)]
        while stack:
            node, index = stack[-1]
            children = successors.get(node, ())
            if index < len(children):
                stack[-1] = (node, index + 1)
                # Walk children last-to-first so the reversed postorder keeps edge order.
                child = children[len(children) - 1 - index]
                state = colour[child]
                if state == _WHITE:
                    colour[child] = _GREY
                    stack.append((child, 0))
                elif state == _GREY:
                    back_edges.append((node, child))
                continue
            stack.pop()
            colour[node] = _BLACK
            postorder.append(node)

    for root in reversed(roots):
        if colour[root] == _WHITE:
            visit(root)
    for node_id in reversed(ids):
        if colour[node_id] == _WHITE:
            visit(node_id)

    postorder.reverse()
    return Schedule(
        order=tuple(postorder),
        cycle_detected=bool(back_edges),
        back_edges=tuple(back_edges),
    )
