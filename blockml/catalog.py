# blockml/catalog.py

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .errors import InvalidParameterError, UnknownBlockTypeError
from .shapes import BATCH, UNKNOWN, TensorShape

PARAM_KINDS = ("integer", "float", "boolean", "enum", "string")

ACTIVATIONS = ("relu", "sigmoid", "tanh", "softmax", "linear")

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


@dataclass(frozen=True)
class ParamSpec:
    """
    Typed schema for one block parameter.

    ``kind`` tags the union: integer, float, boolean, enum (with ``options``)
    or string. Bounds are inclusive and only apply to numeric kinds.
    """

    name: str
    kind: str
    default: Any
    options: Tuple[Any, ...] = ()
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    description: str = ""

    def __post_init__(self) -> None:
        if self.kind not in PARAM_KINDS:
            raise ValueError(f"Unsupported parameter kind {self.kind!r}")
        if self.kind == "enum" and not self.options:
            raise ValueError(f"Enum parameter {self.name!r} needs options")

    def coerce(self, value: Any, block_type: str = "?") -> Any:
        """Validate ``value`` against this spec and return it in canonical form."""

        def fail(reason: str) -> InvalidParameterError:
            return InvalidParameterError(block_type, self.name, reason)

        if self.kind == "boolean":
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS | _FALSE_STRINGS:
                return value.strip().lower() in _TRUE_STRINGS
            raise fail(f"expected a boolean, got {value!r}")

        if self.kind == "enum":
            for option in self.options:
                if value == option or str(value) == str(option):
                    return option
            raise fail(f"expected one of {list(self.options)}, got {value!r}")

        if self.kind == "string":
            if value is None:
                raise fail("expected a string, got None")
            return str(value)

        if isinstance(value, bool):
            raise fail(f"expected a number, got {value!r}")
        try:
            number = float(str(value).strip()) if isinstance(value, str) else float(value)
        except (TypeError, ValueError):
            raise fail(f"expected a number, got {value!r}") from None

        if self.kind == "integer":
            if not number.is_integer():
                raise fail(f"expected an integer, got {value!r}")
            coerced: Any = int(number)
        else:
            coerced = number

        if self.minimum is not None and coerced < self.minimum:
            raise fail(f"must be >= {self.minimum}, got {coerced}")
        if self.maximum is not None and coerced > self.maximum:
            raise fail(f"must be <= {self.maximum}, got {coerced}")
        return coerced


def integer(name: str, default: int, *, minimum: Optional[int] = None, maximum: Optional[int] = None,
            description: str = "") -> ParamSpec:
    return ParamSpec(name, "integer", default, minimum=minimum, maximum=maximum, description=description)


def real(name: str, default: float, *, minimum: Optional[float] = None, maximum: Optional[float] = None,
         description: str = "") -> ParamSpec:
    return ParamSpec(name, "float", default, minimum=minimum, maximum=maximum, description=description)


def boolean(name: str, default: bool, description: str = "") -> ParamSpec:
    return ParamSpec(name, "boolean", default, description=description)


def enum(name: str, default: Any, options: Sequence[Any], description: str = "") -> ParamSpec:
    return ParamSpec(name, "enum", default, options=tuple(options), description=description)


def string(name: str, default: str, description: str = "") -> ParamSpec:
    return ParamSpec(name, "string", default, description=description)


@dataclass(frozen=True)
class Port:
    name: str
    shape: TensorShape
    description: str = ""


@dataclass(frozen=True)
class BlockDefinition:
    """
    Static description of a block type: ports on each side and parameter schema.

    ``computational`` marks block types that become layers in a compiled model
    (losses, optimizers and data loaders do not).
    """

    type: str
    inputs: Tuple[Port, ...]
    outputs: Tuple[Port, ...]
    parameters: Tuple[ParamSpec, ...] = ()
    category: str = "Core Layers"
    description: str = ""
    computational: bool = False

    def input_port(self, name: str) -> Optional[Port]:
        for port in self.inputs:
            if port.name == name:
                return port
        return None

    def output_port(self, name: str) -> Optional[Port]:
        for port in self.outputs:
            if port.name == name:
                return port
        return None

    def input_index(self, name: str) -> int:
        for index, port in enumerate(self.inputs):
            if port.name == name:
                return index
        return len(self.inputs)

    def param(self, name: str) -> Optional[ParamSpec]:
        for spec in self.parameters:
            if spec.name == name:
                return spec
        return None

    def defaults(self) -> Dict[str, Any]:
        return {spec.name: spec.default for spec in self.parameters}

    def coerce_param(self, name: str, value: Any) -> Any:
        spec = self.param(name)
        if spec is None:
            raise InvalidParameterError(self.type, name, "no such parameter")
        return spec.coerce(value, self.type)

    def effective_params(self, overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        Defaults overlaid by ``overrides``.

        Known keys are coerced through their spec; unknown keys are carried
        through untouched so editor snapshots round-trip.
        """
        params = self.defaults()
        for name, value in (overrides or {}).items():
            spec = self.param(name)
            params[name] = value if spec is None else spec.coerce(value, self.type)
        return params


class BlockCatalog(Mapping[str, BlockDefinition]):
    """
    Read-only lookup from block type name to BlockDefinition.

    Passed explicitly to the validator and compiler so tests can substitute
    their own fixtures.
    """

    def __init__(self, definitions: Sequence[BlockDefinition]) -> None:
        entries: "OrderedDict[str, BlockDefinition]" = OrderedDict()
        for definition in definitions:
            if definition.type in entries:
                raise ValueError(f"Duplicate block type {definition.type!r}")
            entries[definition.type] = definition
        self._entries = MappingProxyType(entries)

    def __getitem__(self, block_type: str) -> BlockDefinition:
        return self._entries[block_type]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def require(self, block_type: str) -> BlockDefinition:
        definition = self._entries.get(block_type)
        if definition is None:
            raise UnknownBlockTypeError(block_type)
        return definition

    def is_computational(self, block_type: str) -> bool:
        definition = self._entries.get(block_type)
        return definition is not None and definition.computational

    @property
    def computational_types(self) -> Tuple[str, ...]:
        return tuple(name for name, d in self._entries.items() if d.computational)

    def categories(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = OrderedDict()
        for name, definition in self._entries.items():
            grouped.setdefault(definition.category, []).append(name)
        return dict(grouped)

    def extended(self, *definitions: BlockDefinition) -> "BlockCatalog":
        """Return a new catalog with ``definitions`` added or replacing same-named ones."""
        merged = OrderedDict(self._entries)
        for definition in definitions:
            merged[definition.type] = definition
        return BlockCatalog(list(merged.values()))


# --------------------------------------------------------------------------
# Default block set
# --------------------------------------------------------------------------

def _shape(*dims: Any, dtype: str = "float32") -> TensorShape:
    return TensorShape(tuple(dims), dtype)


_FEATURES = _shape(BATCH, UNKNOWN)
_IMAGES = _shape(BATCH, UNKNOWN, UNKNOWN, UNKNOWN)
_SEQUENCE = _shape(BATCH, UNKNOWN, UNKNOWN)


def _unary(block_type: str, in_desc: str, out_desc: str, template: TensorShape = _FEATURES,
           out_template: Optional[TensorShape] = None, **kwargs: Any) -> BlockDefinition:
    return BlockDefinition(
        type=block_type,
        inputs=(Port("input", template, in_desc),),
        outputs=(Port("output", out_template or template, out_desc),),
        **kwargs,
    )


def _binary(block_type: str, out_desc: str, **kwargs: Any) -> BlockDefinition:
    return BlockDefinition(
        type=block_type,
        inputs=(
            Port("input1", _FEATURES, "First input tensor"),
            Port("input2", _FEATURES, "Second input tensor"),
        ),
        outputs=(Port("output", _FEATURES, out_desc),),
        **kwargs,
    )


def _loss(block_type: str, description: str, target_dtype: str) -> BlockDefinition:
    return BlockDefinition(
        type=block_type,
        inputs=(
            Port("predictions", _FEATURES, "Model predictions"),
            Port("targets", _shape(BATCH, UNKNOWN, dtype=target_dtype), "True targets"),
        ),
        outputs=(Port("loss", _shape(), description),),
        category="Loss Functions",
        description=description,
    )


def _optimizer(block_type: str, description: str, *params: ParamSpec) -> BlockDefinition:
    return BlockDefinition(
        type=block_type,
        inputs=(Port("gradients", _shape(UNKNOWN), "Model gradients"),),
        outputs=(Port("updates", _shape(UNKNOWN), "Parameter updates"),),
        parameters=params,
        category="Optimizers",
        description=description,
    )


def _bias_params() -> Tuple[ParamSpec, ...]:
    return (
        boolean("use_bias", True, "Add a learned bias"),
        real("bias_init", 0.0, description="Initial bias value"),
    )


def default_definitions() -> List[BlockDefinition]:
    """The stock block set offered by the editor's library panel."""
    return [
        BlockDefinition(
            type="DataLoader",
            inputs=(),
            outputs=(
                Port("data", _FEATURES, "Training data batches"),
                Port("labels", _shape(BATCH, UNKNOWN, dtype="int32"), "Training labels"),
            ),
            parameters=(
                integer("batch_size", 32, minimum=1),
                boolean("shuffle", True),
                enum("dataset", "mnist", ("mnist", "cifar10", "iris", "text")),
            ),
            category="Data",
            description="Load training data",
        ),
        _unary(
            "Dense", "Input features", "Dense layer output",
            parameters=(
                integer("units", 64, minimum=1),
                enum("activation", "relu", ACTIVATIONS),
                *_bias_params(),
            ),
            description="Fully connected layer",
            computational=True,
        ),
        _unary(
            "Conv2D", "4D image tensor", "Convolved feature maps", template=_IMAGES,
            parameters=(
                integer("filters", 32, minimum=1),
                integer("kernel_size", 3, minimum=1),
                enum("activation", "relu", ACTIVATIONS),
                *_bias_params(),
            ),
            description="2D convolutional layer",
            computational=True,
        ),
        _unary(
            "MaxPooling2D", "4D feature maps", "Pooled feature maps", template=_IMAGES,
            parameters=(integer("pool_size", 2, minimum=1),),
            description="Max pooling layer",
            computational=True,
        ),
        _unary(
            "Flatten", "Multi-dimensional input", "Flattened output",
            description="Flatten multi-dimensional input",
            computational=True,
        ),
        _unary(
            "Dropout", "Input tensor", "Dropout applied",
            parameters=(real("rate", 0.2, minimum=0.0, maximum=0.99),),
            description="Regularization layer",
            computational=True,
        ),
        _unary(
            "LSTM", "Sequential input", "LSTM output", template=_SEQUENCE, out_template=_FEATURES,
            parameters=(
                integer("units", 128, minimum=1),
                boolean("return_sequences", False),
            ),
            description="LSTM recurrent layer",
            computational=True,
        ),
        _binary(
            "Add", "Element-wise sum",
            category="Advanced",
            description="Element-wise addition (residual)",
            computational=True,
        ),
        _binary(
            "Concatenate", "Concatenated tensor",
            parameters=(integer("axis", -1),),
            category="Advanced",
            description="Concatenate tensors",
            computational=True,
        ),
        _unary(
            "Activation", "Input tensor", "Activated tensor",
            parameters=(enum("activation", "relu", ACTIVATIONS),),
            category="Activation",
            description="Activation function",
            computational=True,
        ),
        _unary(
            "BatchNorm", "Input tensor", "Normalized tensor",
            parameters=(
                real("momentum", 0.99, minimum=0.0, maximum=1.0),
                real("epsilon", 1e-3, minimum=0.0),
            ),
            category="Normalization",
            description="Batch normalization",
            computational=True,
        ),
        _unary(
            "LayerNorm", "Input tensor", "Layer normalized tensor",
            parameters=(real("epsilon", 1e-6, minimum=0.0),),
            category="Normalization",
            description="Layer normalization",
            computational=True,
        ),
        BlockDefinition(
            type="MultiHeadAttention",
            inputs=(
                Port("query", _SEQUENCE, "Query tensor"),
                Port("key", _SEQUENCE, "Key tensor"),
                Port("value", _SEQUENCE, "Value tensor"),
            ),
            outputs=(Port("output", _SEQUENCE, "Attention output"),),
            parameters=(
                integer("heads", 8, minimum=1),
                integer("dim", 512, minimum=1),
                real("dropout", 0.1, minimum=0.0, maximum=0.99),
            ),
            category="Advanced",
            description="Multi-head self-attention",
            computational=True,
        ),
        _loss("CrossEntropy", "Cross-entropy loss", "int32"),
        _loss("MSE", "Mean squared error", "float32"),
        _optimizer(
            "SGD", "Stochastic gradient descent",
            real("learning_rate", 0.01, minimum=0.0),
            real("momentum", 0.0, minimum=0.0),
        ),
        _optimizer(
            "Adam", "Adam optimizer",
            real("learning_rate", 0.001, minimum=0.0),
            real("beta1", 0.9, minimum=0.0, maximum=1.0),
            real("beta2", 0.999, minimum=0.0, maximum=1.0),
            real("epsilon", 1e-7, minimum=0.0),
        ),
    ]


@lru_cache(maxsize=1)
def default_catalog() -> BlockCatalog:
    return BlockCatalog(default_definitions())


def resolve_catalog(catalog: Optional[BlockCatalog]) -> BlockCatalog:
    return catalog if catalog is not None else default_catalog()
