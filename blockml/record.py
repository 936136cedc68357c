# blockml/record.py

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .compiler import CompiledModel


@dataclass(frozen=True)
class LayerEvent:
    """
    One layer output observed during a forward pass.
    """

    call: int
    node: str
    kind: str
    shape: Tuple[int, ...]
    dtype: Optional[str]


class Trace:
    """
    Recording of forward passes through a CompiledModel.

    Responsibilities:
      - Capture the per-layer output shapes in execution order.
      - Count forward calls and their training flag.
    """

    def __init__(self, model: CompiledModel) -> None:
        self.model = model
        self._events: List[LayerEvent] = []
        self._layer_counts: Dict[str, int] = {}
        self._calls = 0
        self._training_calls = 0
        self._active = False

    # ------------------------------------------------------------------ control
    def start(self) -> None:
        if self._active:
            return
        self._events.clear()
        self._layer_counts.clear()
        self._calls = 0
        self._training_calls = 0
        self.model.register_listener(self._handle_event)
        self._active = True

    def stop(self) -> None:
        if not self._active:
            return
        self.model.unregister_listener(self._handle_event)
        self._active = False

    # ---------------------------------------------------------------- listeners
    def _handle_event(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("event")
        if kind == "forward_start":
            self._calls += 1
            if payload.get("training"):
                self._training_calls += 1
        elif kind == "layer_output":
            event = LayerEvent(
                call=self._calls,
                node=str(payload["node"]),
                kind=str(payload["kind"]),
                shape=tuple(int(dim) for dim in payload.get("shape", ())),
                dtype=payload.get("dtype"),
            )
            self._events.append(event)
            self._layer_counts[event.node] = self._layer_counts.get(event.node, 0) + 1

    # ----------------------------------------------------------------- metadata
    @property
    def events(self) -> Tuple[LayerEvent, ...]:
        return tuple(self._events)

    @property
    def calls(self) -> int:
        return self._calls

    def shapes(self, call: Optional[int] = None) -> Dict[str, Tuple[int, ...]]:
        """Output shape per layer for forward call ``call`` (default: the last one)."""
        target = self._calls if call is None else call
        return {e.node: e.shape for e in self._events if e.call == target}

    def summary(self) -> Dict[str, Any]:
        return {
            "calls": self._calls,
            "training_calls": self._training_calls,
            "layers": dict(self._layer_counts),
            "events": len(self._events),
        }


@contextmanager
def record(model: CompiledModel) -> Iterator[Trace]:
    """
    Context manager to record forward passes through ``model``.

    Usage:
        with blockml.record(model) as trace:
            blockml.forward(model, x)
        trace.shapes()
    """
    trace = Trace(model)
    trace.start()
    try:
        yield trace
    finally:
        trace.stop()
