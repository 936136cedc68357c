# blockml/executor.py

from __future__ import annotations

from collections import OrderedDict
from typing import Dict, Mapping, Optional, Union

import torch

from .compiler import MODEL_INPUT, CompiledModel
from .layers import conform, get_kernel

Inputs = Union[torch.Tensor, Mapping[str, torch.Tensor]]


def _is_unbatched(x: torch.Tensor, model: CompiledModel) -> bool:
    sample = model.input_shape.sample_dims
    if sample and tuple(x.shape) == tuple(sample):
        return True
    size = model.input_shape.sample_size()
    return x.dim() == 1 and size is not None and x.numel() == size


class _Feeds:
    """Resolves layer feed ids to tensors for a single forward pass."""

    def __init__(self, model: CompiledModel, inputs: Inputs) -> None:
        self.model = model
        self.values: Dict[str, torch.Tensor] = {}
        self.single: Optional[torch.Tensor] = None
        self.mapping: Mapping[str, torch.Tensor] = {}
        if isinstance(inputs, torch.Tensor):
            self.single = inputs
        else:
            self.mapping = inputs

    def get(self, key: str) -> torch.Tensor:
        if key in self.values:
            return self.values[key]
        shape = self.model.input_shape if key == MODEL_INPUT else self.model.external_inputs.get(key)
        if key in self.mapping:
            raw = self.mapping[key]
        elif key in self.model.port_inputs:
            raise KeyError(f"No input provided for {key!r}; secondary port feeds need an explicit entry")
        elif self.single is not None:
            raw = self.single
        elif MODEL_INPUT in self.mapping:
            raw = self.mapping[MODEL_INPUT]
        else:
            raise KeyError(f"No input provided for {key!r}")
        value = raw if shape is None else conform(raw, shape)
        self.values[key] = value
        return value


def forward(
    model: CompiledModel,
    inputs: Inputs,
    *,
    training: bool = False,
    generator: Optional[torch.Generator] = None,
    return_all: bool = False,
) -> Union[torch.Tensor, "OrderedDict[str, torch.Tensor]"]:
    """
    Run ``model`` on ``inputs`` and return the last layer's output.

    ``inputs`` is a batched tensor bound to the model input and to every
    primary-port external input, or a mapping from external key (or
    MODEL_INPUT) to tensor. Keys from secondary ports such as
    ``loader.labels`` must be given in a mapping. A single unbatched sample
    gets a batch axis added and removed again.
    Weights are never modified; with ``training=False`` the result is a
    pure function of weights and inputs.
    """
    unbatched = False
    if isinstance(inputs, torch.Tensor) and _is_unbatched(inputs, model):
        unbatched = True
        inputs = inputs.unsqueeze(0)

    feeds = _Feeds(model, inputs)
    outputs: "OrderedDict[str, torch.Tensor]" = OrderedDict()
    notify = model.has_listeners
    if notify:
        model.emit({"event": "forward_start", "training": training})

    for layer in model.layers:
        kernel = get_kernel(layer.kind)
        if kernel is None:
            raise RuntimeError(f"No kernel registered for layer kind {layer.kind!r}")
        args = [outputs[key] if key in outputs else feeds.get(key) for key in layer.inputs]
        out = kernel.forward(layer, args, training=training, generator=generator)
        outputs[layer.node_id] = out
        if notify:
            model.emit(
                {
                    "event": "layer_output",
                    "node": layer.node_id,
                    "kind": layer.kind,
                    "shape": tuple(out.shape),
                    "dtype": str(out.dtype).replace("torch.", ""),
                }
            )

    if notify:
        model.emit({"event": "forward_end", "layers": len(outputs)})

    if return_all:
        if unbatched:
            return OrderedDict((k, v.squeeze(0)) for k, v in outputs.items())
        return outputs
    result = outputs[model.output_layer.node_id]
    return result.squeeze(0) if unbatched else result
