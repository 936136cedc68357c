# blockml/validation.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Union, cast

from .catalog import BlockCatalog, resolve_catalog
from .errors import ErrorCode, InvalidParameterError
from .graph import ConnectionLike, GraphSnapshot, NodeLike, as_node, split_graph
from .inference import infer_output_shape
from .shapes import TensorShape, check_shape_compatibility, dtype_compatible


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    code: Optional[ErrorCode] = None
    error: Optional[str] = None
    warning: Optional[str] = None
    inferred_shape: Optional[TensorShape] = None
    dimension_index: Optional[int] = None


@dataclass(frozen=True)
class ConnectionIssue:
    """A failed connection, keyed to the editor connection id."""

    connection_id: str
    source_label: str
    target_label: str
    code: ErrorCode
    message: str
    dimension_index: Optional[int] = None

    def __str__(self) -> str:
        return f"{self.source_label} → {self.target_label}: {self.message}"


def _fail(code: ErrorCode, message: str, index: Optional[int] = None) -> ValidationResult:
    return ValidationResult(valid=False, code=code, error=message, dimension_index=index)


class GraphValidator:
    """Checks connections against a BlockCatalog. Problems are returned, never raised."""

    def __init__(self, catalog: Optional[BlockCatalog] = None) -> None:
        self.catalog = resolve_catalog(catalog)

    def validate_connection(
        self,
        source: NodeLike,
        source_port: str,
        target: NodeLike,
        target_port: str,
    ) -> ValidationResult:
        source = as_node(source)
        target = as_node(target)

        source_def = self.catalog.get(source.block_type)
        if source_def is None:
            return _fail(ErrorCode.UNKNOWN_BLOCK_TYPE, f"Unknown block type: {source.block_type}")
        target_def = self.catalog.get(target.block_type)
        if target_def is None:
            return _fail(ErrorCode.UNKNOWN_BLOCK_TYPE, f"Unknown block type: {target.block_type}")

        out_port = source_def.output_port(source_port)
        if out_port is None:
            return _fail(ErrorCode.PORT_NOT_FOUND, f"Port not found: {source_port} on {source.block_type}")
        in_port = target_def.input_port(target_port)
        if in_port is None:
            return _fail(ErrorCode.PORT_NOT_FOUND, f"Port not found: {target_port} on {target.block_type}")

        try:
            produced = infer_output_shape(source, source_port, self.catalog)
        except InvalidParameterError as exc:
            return _fail(ErrorCode.INVALID_PARAMETER, str(exc))
        expected = in_port.shape

        if not dtype_compatible(produced.dtype, expected.dtype):
            return _fail(
                ErrorCode.DTYPE_MISMATCH,
                f"Data type mismatch: {produced.dtype} cannot connect to {expected.dtype}",
            )

        check = check_shape_compatibility(produced, expected)
        if not check.ok:
            return _fail(cast(ErrorCode, check.code), f"Shape incompatible: {check.message}", check.index)

        return ValidationResult(valid=True, warning=check.warning, inferred_shape=produced)

    def validate_graph(
        self,
        nodes: Union[GraphSnapshot, Iterable[NodeLike]],
        connections: Optional[Iterable[ConnectionLike]] = None,
    ) -> List[ConnectionIssue]:
        """
        Validate every connection in order. Connections whose endpoint node is
        missing are skipped, and warnings are not reported.
        """
        node_list, connection_list = split_graph(nodes, connections)
        by_id = {node.id: node for node in node_list}
        issues: List[ConnectionIssue] = []
        for connection in connection_list:
            source = by_id.get(connection.source)
            target = by_id.get(connection.target)
            if source is None or target is None:
                continue
            result = self.validate_connection(source, connection.source_port, target, connection.target_port)
            if result.valid:
                continue
            issues.append(
                ConnectionIssue(
                    connection_id=connection.id,
                    source_label=source.display_label,
                    target_label=target.display_label,
                    code=cast(ErrorCode, result.code),
                    message=cast(str, result.error),
                    dimension_index=result.dimension_index,
                )
            )
        return issues

    def debug_connection(
        self,
        source: NodeLike,
        source_port: str,
        target: NodeLike,
        target_port: str,
    ) -> str:
        """Human-readable dump of both endpoint shapes and the verdict."""
        source = as_node(source)
        target = as_node(target)
        lines = [f"Connection {source.display_label}.{source_port} → {target.display_label}.{target_port}"]

        source_def = self.catalog.get(source.block_type)
        target_def = self.catalog.get(target.block_type)
        out_port = source_def.output_port(source_port) if source_def else None
        in_port = target_def.input_port(target_port) if target_def else None
        if out_port is not None:
            lines.append(f"  source template: {out_port.shape.describe()}")
            try:
                inferred = infer_output_shape(source, source_port, self.catalog).describe()
            except InvalidParameterError as exc:
                inferred = f"<{exc}>"
            lines.append(f"  source inferred: {inferred}")
        else:
            lines.append("  source port: <missing>")
        lines.append(f"  target template: {in_port.shape.describe()}" if in_port else "  target port: <missing>")

        result = self.validate_connection(source, source_port, target, target_port)
        if result.valid:
            lines.append("  result: valid" + (f" ({result.warning})" if result.warning else ""))
        else:
            lines.append(f"  result: {result.code} {result.error}")
        return "\n".join(lines)


def validate_connection(
    source: NodeLike,
    source_port: str,
    target: NodeLike,
    target_port: str,
    catalog: Optional[BlockCatalog] = None,
) -> ValidationResult:
    return GraphValidator(catalog).validate_connection(source, source_port, target, target_port)


def validate_graph(
    nodes: Union[GraphSnapshot, Iterable[NodeLike]],
    connections: Optional[Iterable[ConnectionLike]] = None,
    catalog: Optional[BlockCatalog] = None,
) -> List[ConnectionIssue]:
    return GraphValidator(catalog).validate_graph(nodes, connections)
