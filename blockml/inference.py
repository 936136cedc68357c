# blockml/inference.py

from __future__ import annotations

from functools import lru_cache
from typing import Any, Mapping, Optional, Tuple

from .catalog import BlockCatalog, resolve_catalog
from .errors import BlockMLError
from .graph import NodeLike, as_node
from .shapes import TensorShape, is_dynamic


def _rule_units(shape: TensorShape, params: Mapping[str, Any]) -> TensorShape:
    if shape.rank == 0:
        return shape
    return shape.with_dim(-1, int(params["units"]))


def _rule_filters(shape: TensorShape, params: Mapping[str, Any]) -> TensorShape:
    if shape.rank != 4:
        return shape
    return shape.with_dim(3, int(params["filters"]))


def _rule_pool(shape: TensorShape, params: Mapping[str, Any]) -> TensorShape:
    if shape.rank != 4:
        return shape
    pool = int(params["pool_size"])
    for index in (1, 2):
        dim = shape.dimensions[index]
        if not is_dynamic(dim):
            shape = shape.with_dim(index, dim // pool)
    return shape


def _rule_attention(shape: TensorShape, params: Mapping[str, Any]) -> TensorShape:
    if shape.rank < 3:
        return shape
    return shape.with_dim(2, int(params["dim"]))


_SHAPE_RULES = {
    "Dense": _rule_units,
    "LSTM": _rule_units,
    "Conv2D": _rule_filters,
    "MaxPooling2D": _rule_pool,
    "MultiHeadAttention": _rule_attention,
}


def _freeze(params: Mapping[str, Any]) -> Optional[Tuple[Tuple[str, Any], ...]]:
    items = tuple(sorted(params.items()))
    try:
        hash(items)
    except TypeError:
        return None
    return items


@lru_cache(maxsize=1024)
def _cached_rule(block_type: str, frozen: Tuple[Tuple[str, Any], ...], base: TensorShape) -> TensorShape:
    rule = _SHAPE_RULES.get(block_type)
    return base if rule is None else rule(base, dict(frozen))


def apply_shape_rule(block_type: str, params: Mapping[str, Any], base: TensorShape) -> TensorShape:
    """Apply the per-type rewrite to ``base``; types without a rule pass it through."""
    frozen = _freeze(params)
    if frozen is None:
        rule = _SHAPE_RULES.get(block_type)
        return base if rule is None else rule(base, params)
    return _cached_rule(block_type, frozen, base)


def infer_output_shape(
    node: NodeLike,
    port: Optional[str] = None,
    catalog: Optional[BlockCatalog] = None,
    input_shape: Optional[TensorShape] = None,
) -> TensorShape:
    """
    Output shape of ``node`` on ``port`` (default: its first output port).

    The base is the port template, or ``input_shape`` (re-typed to the port's
    dtype) when the caller already knows the concrete upstream shape. Exactly
    one slot family is rewritten per block type:

      - Dense / LSTM: last slot becomes ``units``
      - Conv2D (rank 4): channel slot becomes ``filters``
      - MaxPooling2D (rank 4): spatial slots are floor-divided by ``pool_size``
      - MultiHeadAttention (rank >= 3): slot 2 becomes ``dim``
    """
    node = as_node(node)
    definition = resolve_catalog(catalog).require(node.block_type)
    if not definition.outputs:
        raise BlockMLError(f"{node.block_type} has no output ports")
    if port is None:
        template = definition.outputs[0].shape
    else:
        output = definition.output_port(port)
        if output is None:
            raise KeyError(f"Port not found: {port} on {node.block_type}")
        template = output.shape

    base = template if input_shape is None else input_shape.with_dtype(template.dtype)
    params = definition.effective_params(node.params)
    return apply_shape_rule(node.block_type, params, base)
