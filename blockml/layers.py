# blockml/layers.py

from __future__ import annotations

import math
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from .errors import UnresolvedShapeError
from .shapes import BATCH, TensorShape, is_dynamic


@dataclass
class CompiledLayer:
    """
    One computational node after compilation.

    ``inputs`` lists the feed ids in target-port order: another layer's node id,
    an external source node id, or MODEL_INPUT.
    """

    node_id: str
    label: str
    kind: str
    params: Dict[str, Any]
    input_shapes: Tuple[TensorShape, ...]
    output_shape: TensorShape
    inputs: Tuple[str, ...]
    weights: "OrderedDict[str, nn.Parameter]" = field(default_factory=OrderedDict)

    @property
    def parameter_count(self) -> int:
        return int(sum(w.numel() for w in self.weights.values()))

    @property
    def weight_bearing(self) -> bool:
        return bool(self.weights)

    def parameters(self) -> Iterator[nn.Parameter]:
        return iter(self.weights.values())

    def named_parameters(self) -> Iterator[Tuple[str, nn.Parameter]]:
        for name, weight in self.weights.items():
            yield f"{self.node_id}.{name}", weight


# --------------------------------------------------------------------------
# Helpers
# --------------------------------------------------------------------------

def xavier_uniform(
    shape: Sequence[int],
    fan_in: int,
    fan_out: int,
    generator: Optional[torch.Generator] = None,
) -> nn.Parameter:
    bound = math.sqrt(6.0 / max(fan_in + fan_out, 1))
    values = (torch.rand(tuple(shape), generator=generator) * 2.0 - 1.0) * bound
    return nn.Parameter(values)


def filled(shape: Sequence[int], value: float) -> nn.Parameter:
    return nn.Parameter(torch.full(tuple(shape), float(value)))


def activate(x: torch.Tensor, name: str) -> torch.Tensor:
    if name == "relu":
        return torch.relu(x)
    if name == "sigmoid":
        return torch.sigmoid(x)
    if name == "tanh":
        return torch.tanh(x)
    if name == "softmax":
        shifted = x - x.amax(dim=-1, keepdim=True)
        exp = torch.exp(shifted)
        return exp / exp.sum(dim=-1, keepdim=True)
    if name == "linear":
        return x
    raise ValueError(f"Unsupported activation {name!r}")


def _concrete(kind: str, shape: TensorShape, dims: Sequence[Any], what: str) -> Tuple[int, ...]:
    if any(is_dynamic(d) for d in dims):
        raise UnresolvedShapeError(kind, f"{what} of {shape.describe()} is not known at compile time")
    return tuple(int(d) for d in dims)


def feature_dim(kind: str, shape: TensorShape) -> int:
    if shape.rank < 1:
        raise UnresolvedShapeError(kind, "expects at least one feature axis, got a scalar")
    return _concrete(kind, shape, shape.dimensions[-1:], "last axis")[0]


def image_dims(kind: str, shape: TensorShape) -> Tuple[int, int, int]:
    """
    (H, W, C) view of an activation shape.

    Rank-4 shapes are taken as-is. A flat feature vector becomes a square
    single-channel image when its size is a perfect square, else a column.
    """
    sample = shape.sample_dims
    if len(sample) == 3:
        h, w, c = _concrete(kind, shape, sample, "image axes")
        return h, w, c
    if len(sample) == 2:
        h, w = _concrete(kind, shape, sample, "image axes")
        return h, w, 1
    if len(sample) == 1:
        (size,) = _concrete(kind, shape, sample, "feature axis")
        side = math.isqrt(size)
        if side * side == size:
            return side, side, 1
        return size, 1, 1
    raise UnresolvedShapeError(kind, f"cannot view {shape.describe()} as an image")


def conform(x: torch.Tensor, shape: TensorShape) -> torch.Tensor:
    """Reshape a batched tensor to ``shape`` (batch slot kept) when element counts agree."""
    sample = shape.sample_dims
    if any(is_dynamic(d) for d in sample):
        return x
    target = (x.shape[0], *(int(d) for d in sample))
    if tuple(x.shape) == target:
        return x
    return x.reshape(target)


def _with_batch(*dims: int, dtype: str = "float32") -> TensorShape:
    return TensorShape((BATCH, *dims), dtype)


# --------------------------------------------------------------------------
# Kernels
# --------------------------------------------------------------------------

class LayerKernel:
    """
    Shape rule, weight builder and forward function for one layer kind.

    Kernels are stateless; all state lives in the CompiledLayer they are
    handed.
    """

    kind = ""
    min_inputs = 1
    max_inputs: Optional[int] = 1

    def output_shape(self, params: Mapping[str, Any], inputs: Sequence[TensorShape]) -> TensorShape:
        return inputs[0]

    def build(
        self,
        params: Mapping[str, Any],
        inputs: Sequence[TensorShape],
        generator: Optional[torch.Generator],
    ) -> "OrderedDict[str, nn.Parameter]":
        return OrderedDict()

    def forward(
        self,
        layer: CompiledLayer,
        inputs: List[torch.Tensor],
        *,
        training: bool = False,
        generator: Optional[torch.Generator] = None,
    ) -> torch.Tensor:
        raise NotImplementedError


class DenseKernel(LayerKernel):
    kind = "Dense"

    def output_shape(self, params, inputs):
        feature_dim(self.kind, inputs[0])
        return inputs[0].with_dim(-1, int(params["units"])).with_dtype("float32")

    def build(self, params, inputs, generator):
        fan_in = feature_dim(self.kind, inputs[0])
        units = int(params["units"])
        weights: "OrderedDict[str, nn.Parameter]" = OrderedDict()
        weights["kernel"] = xavier_uniform((fan_in, units), fan_in, units, generator)
        if params.get("use_bias", True):
            weights["bias"] = filled((units,), params.get("bias_init", 0.0))
        return weights

    def forward(self, layer, inputs, *, training=False, generator=None):
        x = inputs[0].to(torch.float32)
        out = torch.matmul(x, layer.weights["kernel"])
        if "bias" in layer.weights:
            out = out + layer.weights["bias"]
        return activate(out, layer.params["activation"])


class Conv2DKernel(LayerKernel):
    kind = "Conv2D"

    def output_shape(self, params, inputs):
        h, w, _ = image_dims(self.kind, inputs[0])
        return _with_batch(h, w, int(params["filters"]))

    def build(self, params, inputs, generator):
        _, _, channels = image_dims(self.kind, inputs[0])
        k = int(params["kernel_size"])
        filters = int(params["filters"])
        weights: "OrderedDict[str, nn.Parameter]" = OrderedDict()
        weights["kernel"] = xavier_uniform((k, k, channels, filters), k * k * channels, k * k * filters, generator)
        if params.get("use_bias", True):
            weights["bias"] = filled((filters,), params.get("bias_init", 0.0))
        return weights

    def forward(self, layer, inputs, *, training=False, generator=None):
        h, w, c = image_dims(self.kind, layer.input_shapes[0])
        x = inputs[0].to(torch.float32).reshape(inputs[0].shape[0], h, w, c)
        # (B, H, W, C) <-> (B, C, H, W); kernel (k, k, C, F) -> (F, C, k, k)
        weight = layer.weights["kernel"].permute(3, 2, 0, 1)
        bias = layer.weights.get("bias")
        out = F.conv2d(x.permute(0, 3, 1, 2), weight, bias, padding="same")
        return activate(out.permute(0, 2, 3, 1), layer.params["activation"])


class MaxPooling2DKernel(LayerKernel):
    kind = "MaxPooling2D"

    def output_shape(self, params, inputs):
        h, w, c = image_dims(self.kind, inputs[0])
        pool = int(params["pool_size"])
        if h // pool == 0 or w // pool == 0:
            raise UnresolvedShapeError(self.kind, f"pool_size {pool} exceeds input {h}x{w}")
        return _with_batch(h // pool, w // pool, c)

    def forward(self, layer, inputs, *, training=False, generator=None):
        h, w, c = image_dims(self.kind, layer.input_shapes[0])
        pool = int(layer.params["pool_size"])
        x = inputs[0].to(torch.float32).reshape(inputs[0].shape[0], h, w, c)
        out = F.max_pool2d(x.permute(0, 3, 1, 2), kernel_size=pool, stride=pool)
        return out.permute(0, 2, 3, 1)


class FlattenKernel(LayerKernel):
    kind = "Flatten"

    def output_shape(self, params, inputs):
        sample = inputs[0].sample_dims
        dims = _concrete(self.kind, inputs[0], sample, "sample axes")
        return _with_batch(int(math.prod(dims)) if dims else 1, dtype=inputs[0].dtype)

    def forward(self, layer, inputs, *, training=False, generator=None):
        x = inputs[0]
        return x.reshape(x.shape[0], -1)


class DropoutKernel(LayerKernel):
    kind = "Dropout"

    def forward(self, layer, inputs, *, training=False, generator=None):
        x = inputs[0]
        rate = float(layer.params["rate"])
        if not training or rate <= 0.0:
            return x
        keep = torch.rand(x.shape, generator=generator) >= rate
        return x * keep.to(x.dtype) / (1.0 - rate)


class ActivationKernel(LayerKernel):
    kind = "Activation"

    def forward(self, layer, inputs, *, training=False, generator=None):
        return activate(inputs[0].to(torch.float32), layer.params["activation"])


class BatchNormKernel(LayerKernel):
    kind = "BatchNorm"

    def build(self, params, inputs, generator):
        channels = feature_dim(self.kind, inputs[0])
        return OrderedDict(gamma=filled((channels,), 1.0), beta=filled((channels,), 0.0))

    def forward(self, layer, inputs, *, training=False, generator=None):
        x = inputs[0].to(torch.float32)
        # A lone sample has no batch statistics; normalise it over its own features.
        dims = tuple(range(x.dim() - 1)) if x.shape[0] > 1 else tuple(range(x.dim()))
        mean = x.mean(dim=dims, keepdim=True)
        var = x.var(dim=dims, unbiased=False, keepdim=True)
        normed = (x - mean) / torch.sqrt(var + float(layer.params["epsilon"]))
        return normed * layer.weights["gamma"] + layer.weights["beta"]


class LayerNormKernel(LayerKernel):
    kind = "LayerNorm"

    def build(self, params, inputs, generator):
        channels = feature_dim(self.kind, inputs[0])
        return OrderedDict(gamma=filled((channels,), 1.0), beta=filled((channels,), 0.0))

    def forward(self, layer, inputs, *, training=False, generator=None):
        x = inputs[0].to(torch.float32)
        gamma = layer.weights["gamma"]
        return F.layer_norm(x, gamma.shape, gamma, layer.weights["beta"], float(layer.params["epsilon"]))


def _align_last(x: torch.Tensor, size: int) -> torch.Tensor:
    """Truncate or zero-pad the last axis of ``x`` to ``size``."""
    current = x.shape[-1]
    if current == size:
        return x
    if current > size:
        return x[..., :size]
    return F.pad(x, (0, size - current))


class AddKernel(LayerKernel):
    """
    Element-wise sum. Later inputs are broadcast against the first; when their
    last axis differs it is truncated or zero-padded to the first input's.
    """

    kind = "Add"
    min_inputs = 1
    max_inputs = None

    def output_shape(self, params, inputs):
        first = inputs[0]
        last = feature_dim(self.kind, first)
        sample = list(_concrete(self.kind, first, first.sample_dims, "sample axes"))
        for other in inputs[1:]:
            dims = list(_concrete(self.kind, other, other.sample_dims, "sample axes"))
            if dims:
                dims[-1] = last
            try:
                sample = list(torch.broadcast_shapes(tuple(sample), tuple(dims)))
            except RuntimeError:
                raise UnresolvedShapeError(
                    self.kind, f"cannot add {other.describe()} to {first.describe()}"
                ) from None
        return _with_batch(*sample)

    def forward(self, layer, inputs, *, training=False, generator=None):
        total = inputs[0].to(torch.float32)
        last = total.shape[-1]
        for x in inputs[1:]:
            total = total + _align_last(x.to(torch.float32), last)
        return total


class ConcatenateKernel(LayerKernel):
    kind = "Concatenate"
    max_inputs = None

    def output_shape(self, params, inputs):
        first = inputs[0]
        rank = first.rank
        axis = int(params["axis"])
        axis = axis + rank if axis < 0 else axis
        if not 0 < axis < rank:
            raise UnresolvedShapeError(self.kind, f"axis {params['axis']} out of range for {first.describe()}")
        total = 0
        for shape in inputs:
            if shape.rank != rank:
                raise UnresolvedShapeError(self.kind, f"rank mismatch {shape.describe()} vs {first.describe()}")
            for i in range(1, rank):
                if i != axis and shape.dimensions[i] != first.dimensions[i]:
                    raise UnresolvedShapeError(self.kind, f"axis {i} differs: {shape.describe()} vs {first.describe()}")
            total += _concrete(self.kind, shape, (shape.dimensions[axis],), "concat axis")[0]
        return first.with_dim(axis, total).with_dtype("float32")

    def forward(self, layer, inputs, *, training=False, generator=None):
        return torch.cat([x.to(torch.float32) for x in inputs], dim=int(layer.params["axis"]))


def _sequence_dims(kind: str, shape: TensorShape) -> Tuple[int, int]:
    """(T, F) for a sequence input; rank 2 is one time step, higher ranks fold into T."""
    sample = shape.sample_dims
    if len(sample) == 1:
        return 1, _concrete(kind, shape, sample, "feature axis")[0]
    if len(sample) >= 2:
        dims = _concrete(kind, shape, sample, "sequence axes")
        return int(math.prod(dims[:-1])), dims[-1]
    raise UnresolvedShapeError(kind, f"expects a sequence, got {shape.describe()}")


class LSTMKernel(LayerKernel):
    kind = "LSTM"

    def output_shape(self, params, inputs):
        steps, _ = _sequence_dims(self.kind, inputs[0])
        units = int(params["units"])
        if params.get("return_sequences", False):
            return _with_batch(steps, units)
        return _with_batch(units)

    def build(self, params, inputs, generator):
        _, features = _sequence_dims(self.kind, inputs[0])
        units = int(params["units"])
        weights: "OrderedDict[str, nn.Parameter]" = OrderedDict()
        # torch gate layout: rows are [input, forget, cell, output] blocks.
        weights["w_ih"] = xavier_uniform((4 * units, features), features, 4 * units, generator)
        weights["w_hh"] = xavier_uniform((4 * units, units), units, 4 * units, generator)
        weights["bias"] = filled((4 * units,), 0.0)
        return weights

    def forward(self, layer, inputs, *, training=False, generator=None):
        steps, features = _sequence_dims(self.kind, layer.input_shapes[0])
        units = int(layer.params["units"])
        x = inputs[0].to(torch.float32).reshape(inputs[0].shape[0], steps, features)
        h = x.new_zeros(x.shape[0], units)
        c = x.new_zeros(x.shape[0], units)
        w_ih, w_hh, bias = layer.weights["w_ih"], layer.weights["w_hh"], layer.weights["bias"]
        outputs: List[torch.Tensor] = []
        for t in range(steps):
            h, c = torch.lstm_cell(x[:, t], (h, c), w_ih, w_hh, bias, None)
            outputs.append(h)
        if layer.params.get("return_sequences", False):
            return torch.stack(outputs, dim=1)
        return h


def attention_heads(dim: int, heads: int) -> int:
    """Requested head count, or gcd(dim, heads) when it does not divide ``dim``."""
    return heads if dim % heads == 0 else math.gcd(dim, heads)


class MultiHeadAttentionKernel(LayerKernel):
    kind = "MultiHeadAttention"
    max_inputs = 3

    @staticmethod
    def _streams(inputs: Sequence[Any]) -> Tuple[Any, Any, Any]:
        query = inputs[0]
        key = inputs[1] if len(inputs) > 1 else query
        value = inputs[2] if len(inputs) > 2 else key
        return query, key, value

    def output_shape(self, params, inputs):
        query, _, _ = self._streams(inputs)
        steps, _ = _sequence_dims(self.kind, query)
        return _with_batch(steps, int(params["dim"]))

    def build(self, params, inputs, generator):
        dim = int(params["dim"])
        weights: "OrderedDict[str, nn.Parameter]" = OrderedDict()
        for name, shape in zip(("q", "k", "v"), self._streams(inputs)):
            _, features = _sequence_dims(self.kind, shape)
            weights[f"w_{name}"] = xavier_uniform((dim, features), features, dim, generator)
            weights[f"b_{name}"] = filled((dim,), 0.0)
        weights["w_o"] = xavier_uniform((dim, dim), dim, dim, generator)
        weights["b_o"] = filled((dim,), 0.0)
        return weights

    def forward(self, layer, inputs, *, training=False, generator=None):
        dim = int(layer.params["dim"])
        heads = attention_heads(dim, int(layer.params["heads"]))
        head_dim = dim // heads

        shapes = self._streams(layer.input_shapes)
        projected = []
        for name, x, shape in zip(("q", "k", "v"), self._streams(inputs), shapes):
            steps, features = _sequence_dims(self.kind, shape)
            x = x.to(torch.float32).reshape(x.shape[0], steps, features)
            p = F.linear(x, layer.weights[f"w_{name}"], layer.weights[f"b_{name}"])
            projected.append(p.reshape(p.shape[0], steps, heads, head_dim).transpose(1, 2))
        q, k, v = projected

        rate = float(layer.params.get("dropout", 0.0)) if training else 0.0
        if rate > 0.0 and generator is not None:
            seed = int(torch.randint(0, 2**31 - 1, (1,), generator=generator).item())
            with torch.random.fork_rng(devices=[]):
                torch.manual_seed(seed)
                context = F.scaled_dot_product_attention(q, k, v, dropout_p=rate)
        else:
            context = F.scaled_dot_product_attention(q, k, v, dropout_p=rate)
        context = context.transpose(1, 2).reshape(q.shape[0], q.shape[2], dim)
        return F.linear(context, layer.weights["w_o"], layer.weights["b_o"])


KERNELS: Dict[str, LayerKernel] = {
    kernel.kind: kernel
    for kernel in (
        DenseKernel(),
        Conv2DKernel(),
        MaxPooling2DKernel(),
        FlattenKernel(),
        DropoutKernel(),
        ActivationKernel(),
        BatchNormKernel(),
        LayerNormKernel(),
        AddKernel(),
        ConcatenateKernel(),
        LSTMKernel(),
        MultiHeadAttentionKernel(),
    )
}


def get_kernel(kind: str) -> Optional[LayerKernel]:
    return KERNELS.get(kind)
