# blockml/errors.py

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable identifiers for every problem the engine can report."""

    UNKNOWN_BLOCK_TYPE = "UnknownBlockType"
    PORT_NOT_FOUND = "PortNotFound"
    DTYPE_MISMATCH = "DtypeMismatch"
    RANK_MISMATCH = "RankMismatch"
    DIMENSION_MISMATCH = "DimensionMismatch"
    CYCLE_DETECTED = "CycleDetected"
    NO_COMPUTATIONAL_LAYERS = "NoComputationalLayers"
    MODEL_NOT_READY = "ModelNotReady"
    RUNTIME_NOT_INITIALIZED = "RuntimeNotInitialized"
    INVALID_PARAMETER = "InvalidParameter"
    UNRESOLVED_SHAPE = "UnresolvedShape"

    def __str__(self) -> str:
        return self.value


class BlockMLError(Exception):
    """
    Base class for errors raised (not returned) by blockml.

    Validation problems are never raised; they come back as lists of issues.
    """

    code: Optional[ErrorCode] = None


class UnknownBlockTypeError(BlockMLError, LookupError):
    code = ErrorCode.UNKNOWN_BLOCK_TYPE

    def __init__(self, block_type: str) -> None:
        super().__init__(f"Unknown block type: {block_type}")
        self.block_type = block_type


class InvalidParameterError(BlockMLError, ValueError):
    code = ErrorCode.INVALID_PARAMETER

    def __init__(self, block_type: str, name: str, reason: str) -> None:
        super().__init__(f"Invalid parameter {name!r} for {block_type}: {reason}")
        self.block_type = block_type
        self.name = name
        self.reason = reason


class NoComputationalLayersError(BlockMLError, ValueError):
    code = ErrorCode.NO_COMPUTATIONAL_LAYERS

    def __init__(self, message: str = "No valid layers found in the model") -> None:
        super().__init__(message)


class ModelNotReadyError(BlockMLError, RuntimeError):
    code = ErrorCode.MODEL_NOT_READY

    def __init__(self, message: str = "Model or training data not available") -> None:
        super().__init__(message)


class RuntimeNotInitializedError(BlockMLError, RuntimeError):
    code = ErrorCode.RUNTIME_NOT_INITIALIZED

    def __init__(self, message: str = "Runtime not initialized") -> None:
        super().__init__(message)


class UnresolvedShapeError(BlockMLError, ValueError):
    """A layer cannot be built because an input slot it needs is not concrete."""

    code = ErrorCode.UNRESOLVED_SHAPE

    def __init__(self, kind: str, reason: str) -> None:
        super().__init__(f"{kind}: {reason}")
        self.kind = kind
        self.reason = reason
