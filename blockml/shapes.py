# blockml/shapes.py

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple, Union

from .errors import ErrorCode


class _DynamicDim:
    """Sentinel for a dimension whose size is only known at runtime."""

    def __init__(self, name: str, symbol: str) -> None:
        self._name = name
        self.symbol = symbol

    def __repr__(self) -> str:
        return self._name

    def __reduce__(self) -> str:
        return self._name.upper()


# Batch axis: dynamic, matches anything.
BATCH = _DynamicDim("Batch", "batch")
# Statically unknown, non-batch axis: dynamic, matches anything.
UNKNOWN = _DynamicDim("Unknown", "?")

Dim = Union[int, _DynamicDim]

DTYPES: Tuple[str, ...] = ("bool", "int32", "float32")

# bool ⊆ int32 ⊆ float32
_DTYPE_LEVEL = {name: level for level, name in enumerate(DTYPES)}


def is_dynamic(dim: Any) -> bool:
    return isinstance(dim, _DynamicDim)


def _coerce_dim(value: Any) -> Dim:
    if value is None or value is BATCH:
        return BATCH
    if value is UNKNOWN:
        return UNKNOWN
    if isinstance(value, bool):
        raise TypeError(f"Dimension must be an int or a dynamic sentinel, got {value!r}")
    dim = int(value)
    if dim == -1:
        return UNKNOWN
    if dim < 0:
        raise ValueError(f"Dimension must be non-negative, got {dim}")
    return dim


@dataclass(frozen=True)
class TensorShape:
    """
    Ordered dimension list plus dtype.

    Slots are concrete non-negative ints, BATCH, or UNKNOWN. Editor templates
    use None for the batch axis and -1 for an unknown axis; both spellings are
    accepted by the constructor.
    """

    dimensions: Tuple[Dim, ...]
    dtype: str = "float32"

    def __post_init__(self) -> None:
        if self.dtype not in _DTYPE_LEVEL:
            raise ValueError(f"Unsupported dtype {self.dtype!r}; expected one of {DTYPES}")
        object.__setattr__(self, "dimensions", tuple(_coerce_dim(d) for d in self.dimensions))

    @classmethod
    def of(cls, *dims: Any, dtype: str = "float32") -> "TensorShape":
        return cls(tuple(dims), dtype)

    @classmethod
    def from_template(cls, template: Any) -> "TensorShape":
        """Build from ``{"dimensions": [...], "dtype": ...}`` or a TensorShape."""
        if isinstance(template, TensorShape):
            return template
        return cls(tuple(template.get("dimensions", ())), template.get("dtype", "float32"))

    @property
    def rank(self) -> int:
        return len(self.dimensions)

    @property
    def has_unknown(self) -> bool:
        return any(d is UNKNOWN for d in self.dimensions)

    @property
    def is_concrete(self) -> bool:
        """True when every non-batch slot is a concrete int."""
        return all(not is_dynamic(d) for d in self.dimensions if d is not BATCH)

    @property
    def sample_dims(self) -> Tuple[Dim, ...]:
        """Dimensions after a leading batch axis (all dimensions if there is none)."""
        if self.dimensions and self.dimensions[0] is BATCH:
            return self.dimensions[1:]
        return self.dimensions

    def sample_size(self) -> Optional[int]:
        """Element count of one sample, or None when any sample slot is dynamic."""
        dims = self.sample_dims
        if any(is_dynamic(d) for d in dims):
            return None
        return int(math.prod(dims)) if dims else 1

    def with_dim(self, index: int, value: Dim) -> "TensorShape":
        dims = list(self.dimensions)
        dims[index] = value
        return TensorShape(tuple(dims), self.dtype)

    def with_dtype(self, dtype: str) -> "TensorShape":
        return TensorShape(self.dimensions, dtype)

    def to_template(self) -> dict:
        dims = [None if d is BATCH else (-1 if d is UNKNOWN else d) for d in self.dimensions]
        return {"dimensions": dims, "dtype": self.dtype}

    def describe(self) -> str:
        parts = [d.symbol if is_dynamic(d) else str(d) for d in self.dimensions]
        return f"({' × '.join(parts)}) {self.dtype}"

    def __str__(self) -> str:
        return self.describe()


def dtype_compatible(source: str, target: str) -> bool:
    """A source dtype may feed any target at or above it in bool ⊆ int32 ⊆ float32."""
    if source not in _DTYPE_LEVEL or target not in _DTYPE_LEVEL:
        return False
    return _DTYPE_LEVEL[source] <= _DTYPE_LEVEL[target]


def compatible_dtypes(source: str) -> Tuple[str, ...]:
    if source not in _DTYPE_LEVEL:
        return ()
    return tuple(d for d in DTYPES if _DTYPE_LEVEL[d] >= _DTYPE_LEVEL[source])


@dataclass(frozen=True)
class ShapeCheck:
    ok: bool
    code: Optional[ErrorCode] = None
    message: Optional[str] = None
    warning: Optional[str] = None
    index: Optional[int] = None


def check_shape_compatibility(source: TensorShape, target: TensorShape) -> ShapeCheck:
    """
    Compare a producing shape with a consuming template.

    Rank-0 on both sides is fine. Differing ranks are tolerated (with a
    warning) only when the target carries an unknown slot and neither side is
    a scalar. Equal ranks are compared slot by slot, dynamic slots on either
    side matching anything.
    """
    src_dims = source.dimensions
    dst_dims = target.dimensions

    if not src_dims and not dst_dims:
        return ShapeCheck(ok=True)

    if len(src_dims) != len(dst_dims):
        if src_dims and dst_dims and target.has_unknown:
            return ShapeCheck(ok=True, warning="Shape will be inferred at runtime")
        return ShapeCheck(
            ok=False,
            code=ErrorCode.RANK_MISMATCH,
            message=f"Dimension mismatch: {len(src_dims)}D → {len(dst_dims)}D",
        )

    for i, (src_dim, dst_dim) in enumerate(zip(src_dims, dst_dims)):
        if is_dynamic(src_dim) or is_dynamic(dst_dim):
            continue
        if src_dim != dst_dim:
            return ShapeCheck(
                ok=False,
                code=ErrorCode.DIMENSION_MISMATCH,
                message=f"Shape mismatch at dimension {i}: {src_dim} → {dst_dim}",
                index=i,
            )
    return ShapeCheck(ok=True)


def shapes_compatible(source: TensorShape, target: TensorShape) -> bool:
    return check_shape_compatibility(source, target).ok


def batched(sample_dims: Iterable[int], dtype: str = "float32") -> TensorShape:
    """Shape with a leading batch axis followed by ``sample_dims``."""
    return TensorShape((BATCH, *sample_dims), dtype)
