# blockml/graph.py

from __future__ import annotations

import copy
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .catalog import BlockCatalog, resolve_catalog

if TYPE_CHECKING:
    from .validation import GraphValidator

# Editor keys consumed by Node/Connection; everything else is carried in ``extra``.
_NODE_KEYS = {"id", "type", "position", "data"}
_NODE_DATA_KEYS = {"blockType", "label", "parameters", "isSource"}
_CONNECTION_KEYS = {"id", "source", "target", "sourceHandle", "targetHandle", "data"}


@dataclass
class Node:
    """
    One placed block instance.

    ``params`` holds explicit overrides only; defaults come from the catalog at
    the point of use.
    """

    id: str
    block_type: str
    params: Dict[str, Any] = field(default_factory=dict)
    label: Optional[str] = None
    is_source: bool = False
    position: Optional[Dict[str, float]] = None
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def display_label(self) -> str:
        return self.label or self.block_type

    def set_param(self, name: str, value: Any, catalog: Optional[BlockCatalog] = None) -> Any:
        """Validate ``value`` against the block schema and store the coerced value."""
        definition = resolve_catalog(catalog).require(self.block_type)
        coerced = definition.coerce_param(name, value)
        self.params[name] = coerced
        return coerced

    def effective_params(self, catalog: Optional[BlockCatalog] = None) -> Dict[str, Any]:
        definition = resolve_catalog(catalog).require(self.block_type)
        return definition.effective_params(self.params)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Node":
        """
        Accept either the editor form ``{"id", "data": {"blockType", ...}}`` or
        a flat ``{"id", "block_type", "params"}`` dictionary.
        """
        if "data" in payload:
            data = payload.get("data") or {}
            extra = {k: v for k, v in payload.items() if k not in _NODE_KEYS}
            data_extra = {k: v for k, v in data.items() if k not in _NODE_DATA_KEYS}
            if data_extra:
                extra["data"] = data_extra
            if "type" in payload:
                extra["type"] = payload["type"]
            return cls(
                id=str(payload["id"]),
                block_type=str(data["blockType"]),
                params=dict(data.get("parameters") or {}),
                label=data.get("label"),
                is_source=bool(data.get("isSource", False)),
                position=copy.deepcopy(payload.get("position")),
                extra=extra,
            )
        return cls(
            id=str(payload["id"]),
            block_type=str(payload["block_type"]),
            params=dict(payload.get("params") or {}),
            label=payload.get("label"),
            is_source=bool(payload.get("is_source", False)),
            position=copy.deepcopy(payload.get("position")),
        )

    def to_dict(self) -> Dict[str, Any]:
        extra = dict(self.extra)
        data: Dict[str, Any] = dict(extra.pop("data", {}))
        data.update({"blockType": self.block_type, "parameters": dict(self.params)})
        if self.label is not None:
            data["label"] = self.label
        if self.is_source:
            data["isSource"] = True
        out: Dict[str, Any] = {"id": self.id}
        if "type" in extra:
            out["type"] = extra.pop("type")
        if self.position is not None:
            out["position"] = copy.deepcopy(self.position)
        out["data"] = data
        out.update(extra)
        return out


@dataclass
class Connection:
    """Directed edge from ``source.source_port`` to ``target.target_port``."""

    id: str
    source: str
    source_port: str
    target: str
    target_port: str
    is_valid: Optional[bool] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def endpoints(self) -> Tuple[str, str]:
        return self.source, self.target

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Connection":
        if "sourceHandle" in payload or "targetHandle" in payload:
            data = payload.get("data") or {}
            extra = {k: v for k, v in payload.items() if k not in _CONNECTION_KEYS}
            return cls(
                id=str(payload.get("id") or f"{payload['source']}-{payload['target']}"),
                source=str(payload["source"]),
                source_port=str(payload["sourceHandle"]),
                target=str(payload["target"]),
                target_port=str(payload["targetHandle"]),
                is_valid=data.get("isValid"),
                error=data.get("error"),
                extra=extra,
            )
        return cls(
            id=str(payload.get("id") or f"{payload['source']}-{payload['target']}"),
            source=str(payload["source"]),
            source_port=str(payload["source_port"]),
            target=str(payload["target"]),
            target_port=str(payload["target_port"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "source": self.source,
            "sourceHandle": self.source_port,
            "target": self.target,
            "targetHandle": self.target_port,
        }
        if self.is_valid is not None:
            data: Dict[str, Any] = {"isValid": self.is_valid}
            if self.error:
                data["error"] = self.error
            out["data"] = data
        out.update(self.extra)
        return out


NodeLike = Union[Node, Mapping[str, Any]]
ConnectionLike = Union[Connection, Mapping[str, Any]]


def as_node(value: NodeLike) -> Node:
    return value if isinstance(value, Node) else Node.from_dict(value)


def as_connection(value: ConnectionLike) -> Connection:
    return value if isinstance(value, Connection) else Connection.from_dict(value)


class GraphSnapshot:
    """
    Editor state: placed nodes and the connections between their ports.

    Node ids are unique. Connections may reference missing nodes (the editor
    can be mid-edit); consumers skip those.
    """

    def __init__(
        self,
        nodes: Iterable[NodeLike] = (),
        connections: Iterable[ConnectionLike] = (),
    ) -> None:
        self.nodes: "OrderedDict[str, Node]" = OrderedDict()
        self.connections: List[Connection] = []
        for node in nodes:
            self.add_node(node)
        for connection in connections:
            self.connections.append(as_connection(connection))

    # --- Construction APIs ---

    def add_node(self, node: NodeLike) -> Node:
        node = as_node(node)
        if node.id in self.nodes:
            raise ValueError(f"Duplicate node id {node.id!r}")
        self.nodes[node.id] = node
        return node

    def connect(
        self,
        source: str,
        source_port: str,
        target: str,
        target_port: str,
        id: Optional[str] = None,
    ) -> Connection:
        if source not in self.nodes or target not in self.nodes:
            raise ValueError("Both nodes must be added to the graph before connecting.")
        connection = Connection(
            id=id or f"c{len(self.connections) + 1}",
            source=source,
            source_port=source_port,
            target=target,
            target_port=target_port,
        )
        self.connections.append(connection)
        return connection

    def remove_node(self, node_id: str) -> Node:
        """Drop a node together with every connection touching it."""
        node = self.nodes.pop(node_id, None)
        if node is None:
            raise KeyError(f"No node with id {node_id!r}")
        self.connections = [c for c in self.connections if node_id not in c.endpoints]
        return node

    def remove_connection(self, connection_id: str) -> Connection:
        for index, connection in enumerate(self.connections):
            if connection.id == connection_id:
                return self.connections.pop(index)
        raise KeyError(f"No connection with id {connection_id!r}")

    # --- Lookup ---

    def node(self, node_id: str) -> Node:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise KeyError(f"No node with id {node_id!r}") from None

    def incoming(self, node_id: str) -> List[Connection]:
        return [c for c in self.connections if c.target == node_id]

    def outgoing(self, node_id: str) -> List[Connection]:
        return [c for c in self.connections if c.source == node_id]

    def refresh_validity(
        self,
        validator: Optional["GraphValidator"] = None,
        catalog: Optional[BlockCatalog] = None,
    ) -> List[Connection]:
        """Recompute the ``is_valid``/``error`` memo on every connection; return the invalid ones."""
        from .validation import GraphValidator  # Local import to avoid circular dependency

        validator = validator or GraphValidator(catalog)
        invalid: List[Connection] = []
        for connection in self.connections:
            source = self.nodes.get(connection.source)
            target = self.nodes.get(connection.target)
            if source is None or target is None:
                connection.is_valid = False
                connection.error = "Connection references a missing node"
                invalid.append(connection)
                continue
            result = validator.validate_connection(
                source, connection.source_port, target, connection.target_port
            )
            connection.is_valid = result.valid
            connection.error = result.error
            if not result.valid:
                invalid.append(connection)
        return invalid

    # --- Serialisation ---

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "GraphSnapshot":
        connections = payload.get("edges", payload.get("connections", ()))
        return cls(payload.get("nodes", ()), connections)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes.values()],
            "edges": [connection.to_dict() for connection in self.connections],
        }

    def __len__(self) -> int:
        return len(self.nodes)

    def __repr__(self) -> str:
        return f"GraphSnapshot(nodes={len(self.nodes)}, connections={len(self.connections)})"


def split_graph(
    nodes: Union[GraphSnapshot, Iterable[NodeLike]],
    connections: Optional[Iterable[ConnectionLike]] = None,
) -> Tuple[List[Node], List[Connection]]:
    """Normalise the many accepted graph inputs into plain Node/Connection lists."""
    if isinstance(nodes, GraphSnapshot):
        return list(nodes.nodes.values()), list(nodes.connections)
    return [as_node(n) for n in nodes], [as_connection(c) for c in (connections or ())]
