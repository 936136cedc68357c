# blockml/__init__.py

from loguru import logger

from .errors import (
    ErrorCode,
    BlockMLError,
    UnknownBlockTypeError,
    InvalidParameterError,
    NoComputationalLayersError,
    ModelNotReadyError,
    RuntimeNotInitializedError,
    UnresolvedShapeError,
)
from .shapes import (
    BATCH,
    UNKNOWN,
    TensorShape,
    check_shape_compatibility,
    dtype_compatible,
    shapes_compatible,
)
from .catalog import (
    BlockCatalog,
    BlockDefinition,
    ParamSpec,
    Port,
    default_catalog,
)
from .graph import Connection, GraphSnapshot, Node
from .validation import (
    ConnectionIssue,
    GraphValidator,
    ValidationResult,
    validate_connection,
    validate_graph,
)
from .inference import infer_output_shape
from .scheduler import Schedule, topological_sort
from .layers import CompiledLayer
from .compiler import MODEL_INPUT, CompiledModel, ModelCompiler, compile_graph
from .executor import forward
from .objectives import accuracy, cross_entropy, mse
from .datasets import DATASETS, DatasetSpec, SyntheticDataset, get_dataset_spec, load_dataset
from .training import Trainer, TrainingConfig, TrainingMetrics, train_model
from .runtime import Runtime
from .templates import MODEL_TEMPLATES, ModelTemplate, get_template, list_templates
from .record import record, Trace, LayerEvent
from .diagnostics import (
    GradientWatcher,
    GradientSummary,
    LayerGradient,
    plot_gradient_norms,
    plot_training_history,
)
from .log import configure_logging, disable_logging

logger.disable("blockml")

__all__ = [
    "ErrorCode",
    "BlockMLError",
    "UnknownBlockTypeError",
    "InvalidParameterError",
    "NoComputationalLayersError",
    "ModelNotReadyError",
    "RuntimeNotInitializedError",
    "UnresolvedShapeError",
    "BATCH",
    "UNKNOWN",
    "TensorShape",
    "check_shape_compatibility",
    "dtype_compatible",
    "shapes_compatible",
    "BlockCatalog",
    "BlockDefinition",
    "ParamSpec",
    "Port",
    "default_catalog",
    "Connection",
    "GraphSnapshot",
    "Node",
    "ConnectionIssue",
    "GraphValidator",
    "ValidationResult",
    "validate_connection",
    "validate_graph",
    "infer_output_shape",
    "Schedule",
    "topological_sort",
    "CompiledLayer",
    "MODEL_INPUT",
    "CompiledModel",
    "ModelCompiler",
    "compile_graph",
    "forward",
    "accuracy",
    "cross_entropy",
    "mse",
    "DATASETS",
    "DatasetSpec",
    "SyntheticDataset",
    "get_dataset_spec",
    "load_dataset",
    "Trainer",
    "TrainingConfig",
    "TrainingMetrics",
    "train_model",
    "Runtime",
    "MODEL_TEMPLATES",
    "ModelTemplate",
    "get_template",
    "list_templates",
    "record",
    "Trace",
    "LayerEvent",
    "GradientWatcher",
    "GradientSummary",
    "LayerGradient",
    "plot_gradient_norms",
    "plot_training_history",
    "configure_logging",
    "disable_logging",
]
