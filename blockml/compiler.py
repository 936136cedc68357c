# blockml/compiler.py

from __future__ import annotations

import math
from collections import OrderedDict
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

import torch
import torch.nn as nn
from loguru import logger

from .catalog import BlockCatalog, resolve_catalog
from .datasets import get_dataset_spec
from .errors import NoComputationalLayersError, UnresolvedShapeError
from .graph import Connection, ConnectionLike, GraphSnapshot, Node, NodeLike, split_graph
from .layers import CompiledLayer, get_kernel
from .scheduler import topological_sort
from .shapes import BATCH, TensorShape, batched

MODEL_INPUT = "__input__"
DEFAULT_INPUT_SHAPE = batched((784,))

EventListener = Callable[[Dict[str, Any]], None]

_COMPLEXITY_RANGE = (0.5, 5.0)


def _complexity_term(kind: str, params: Dict[str, Any]) -> float:
    if kind == "Dense":
        return math.log10(int(params["units"]) / 10)
    if kind == "Conv2D":
        return math.log10(int(params["filters"]) / 8) + 0.5
    if kind == "LSTM":
        return math.log10(int(params["units"]) / 32) + 1
    if kind == "MultiHeadAttention":
        return 2.0
    if kind == "Dropout":
        return -0.2
    return 0.0


def complexity_score(layers: Iterable[CompiledLayer]) -> float:
    """Relative model size on a 0.5 to 5.0 scale."""
    total = sum(_complexity_term(layer.kind, layer.params) for layer in layers)
    low, high = _COMPLEXITY_RANGE
    return max(low, min(high, total))


class CompiledModel:
    """
    Executable form of a graph: weight-bearing layers in topological order.

    Responsibilities:
      - Own the compiled layers and their weights.
      - Expose aggregates for the UI (parameter count, complexity, summary).
      - Fan out layer-level events to listeners during forward passes.
    """

    def __init__(
        self,
        layers: Sequence[CompiledLayer],
        *,
        input_shape: TensorShape,
        external_inputs: Optional[Dict[str, TensorShape]] = None,
        port_inputs: Iterable[str] = (),
        label_inputs: Iterable[str] = (),
        connection_count: int = 0,
        warnings: Sequence[str] = (),
        cycle_detected: bool = False,
        skipped_nodes: Sequence[str] = (),
        dataset: Optional[str] = None,
    ) -> None:
        self.layers: Tuple[CompiledLayer, ...] = tuple(layers)
        self.input_shape = input_shape
        self.external_inputs: Dict[str, TensorShape] = dict(external_inputs or {})
        # External keys fed from a producer's non-primary output port, and the
        # subset of those carrying DataLoader labels.
        self.port_inputs: FrozenSet[str] = frozenset(port_inputs)
        self.label_inputs: FrozenSet[str] = frozenset(label_inputs)
        self.connection_count = connection_count
        self.warnings: Tuple[str, ...] = tuple(warnings)
        self.cycle_detected = cycle_detected
        self.skipped_nodes: Tuple[str, ...] = tuple(skipped_nodes)
        self.dataset = dataset
        self._index = {layer.node_id: layer for layer in self.layers}
        self._listeners: List[EventListener] = []

    # --- Aggregates ---

    @property
    def output_shape(self) -> TensorShape:
        return self.layers[-1].output_shape

    @property
    def output_layer(self) -> CompiledLayer:
        return self.layers[-1]

    @property
    def total_params(self) -> int:
        return sum(layer.parameter_count for layer in self.layers)

    @property
    def complexity(self) -> float:
        return complexity_score(self.layers)

    @property
    def summary(self) -> str:
        lines = [
            "Model Architecture:",
            f"Total Layers: {len(self.layers)}",
            f"Total Connections: {self.connection_count}",
            f"Estimated Parameters: {self.total_params:,}",
            f"Model Complexity: {self.complexity:.1f}/5.0",
            "",
        ]
        for index, layer in enumerate(self.layers, start=1):
            line = f"{index}. {layer.kind}"
            shown = list(layer.params.items())[:2]
            if shown:
                line += " (" + ", ".join(f"{k}={v}" for k, v in shown) + ")"
            lines.append(line)
        return "\n".join(lines) + "\n"

    def parameter_table(self) -> List[Dict[str, Any]]:
        """Per-layer rows for code export and inspection panels."""
        return [
            {
                "node_id": layer.node_id,
                "label": layer.label,
                "type": layer.kind,
                "params": dict(layer.params),
                "input_shapes": [shape.describe() for shape in layer.input_shapes],
                "output_shape": layer.output_shape.describe(),
                "weights": {name: tuple(w.shape) for name, w in layer.weights.items()},
                "parameter_count": layer.parameter_count,
            }
            for layer in self.layers
        ]

    # --- Lookup ---

    def layer(self, node_id: str) -> CompiledLayer:
        try:
            return self._index[node_id]
        except KeyError:
            raise KeyError(f"No compiled layer for node {node_id!r}") from None

    def weight_bearing_layers(self) -> List[CompiledLayer]:
        return [layer for layer in self.layers if layer.weight_bearing]

    def parameters(self) -> Iterator[nn.Parameter]:
        for layer in self.layers:
            yield from layer.parameters()

    def named_parameters(self) -> Iterator[Tuple[str, nn.Parameter]]:
        for layer in self.layers:
            yield from layer.named_parameters()

    def state_dict(self) -> Dict[str, torch.Tensor]:
        return {name: weight.detach().clone() for name, weight in self.named_parameters()}

    def load_state_dict(self, state: Dict[str, torch.Tensor]) -> None:
        with torch.no_grad():
            for name, weight in self.named_parameters():
                if name not in state:
                    raise KeyError(f"Missing weight {name!r}")
                if tuple(state[name].shape) != tuple(weight.shape):
                    raise ValueError(f"Weight {name!r} expects {tuple(weight.shape)}, got {tuple(state[name].shape)}")
                weight.copy_(state[name])

    # --- Events ---

    def register_listener(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unregister_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(payload)

    @property
    def has_listeners(self) -> bool:
        return bool(self._listeners)

    def __repr__(self) -> str:
        return f"CompiledModel(layers={len(self.layers)}, params={self.total_params})"


def _as_batched(shape: Union[TensorShape, Sequence[int]]) -> TensorShape:
    if not isinstance(shape, TensorShape):
        return batched(tuple(int(d) for d in shape))
    if shape.dimensions and shape.dimensions[0] is BATCH:
        return shape
    return TensorShape((BATCH, *shape.dimensions), shape.dtype)


class ModelCompiler:
    """
    Turns a graph snapshot into a CompiledModel.

    Only computational block types become layers. Weights come from a
    generator seeded with ``seed`` so the same graph compiles to the same
    weights.
    """

    def __init__(self, catalog: Optional[BlockCatalog] = None, seed: int = 0) -> None:
        self.catalog = resolve_catalog(catalog)
        self.seed = seed

    def compile(
        self,
        nodes: Union[GraphSnapshot, Iterable[NodeLike]],
        edges: Optional[Iterable[ConnectionLike]] = None,
        input_shape: Optional[Union[TensorShape, Sequence[int]]] = None,
    ) -> CompiledModel:
        node_list, connections = split_graph(nodes, edges)
        warnings: List[str] = []
        skipped: List[str] = []

        known: "OrderedDict[str, Node]" = OrderedDict()
        for node in node_list:
            if node.block_type not in self.catalog:
                logger.warning("Skipping node {} with unknown block type {}", node.id, node.block_type)
                warnings.append(f"{node.display_label}: Unknown block type: {node.block_type}")
                skipped.append(node.id)
                continue
            known[node.id] = node

        layer_nodes = [n for n in known.values() if self.catalog.is_computational(n.block_type)]
        if not layer_nodes:
            raise NoComputationalLayersError()

        dataset = self._first_dataset(known.values())
        if input_shape is not None:
            model_input = _as_batched(input_shape)
        elif dataset is not None:
            model_input = get_dataset_spec(dataset).input_shape
        else:
            model_input = DEFAULT_INPUT_SHAPE

        layer_ids = [n.id for n in layer_nodes]
        schedule = topological_sort(
            layer_ids,
            [(c.source, c.target) for c in connections],
            sources=[n.id for n in layer_nodes if n.is_source],
        )
        if schedule.cycle_detected:
            logger.warning("Cycle detected in graph; compiling with best-effort order (back edges: {})",
                           list(schedule.back_edges))
            warnings.append("Cycle detected: layer order is best-effort")

        generator = torch.Generator().manual_seed(self.seed)
        compiled: "OrderedDict[str, CompiledLayer]" = OrderedDict()
        external: Dict[str, TensorShape] = {}
        port_keys: Set[str] = set()
        label_keys: Set[str] = set()

        for node_id in schedule.order:
            node = known[node_id]
            kernel = get_kernel(node.block_type)
            if kernel is None:
                logger.warning("No kernel for {} ({}); skipping", node.display_label, node.block_type)
                warnings.append(f"{node.display_label}: {node.block_type} cannot be executed")
                skipped.append(node.id)
                continue

            feeds, shapes = self._resolve_feeds(
                node, connections, known, compiled, external, port_keys, label_keys
            )
            if not feeds:
                feeds, shapes = [MODEL_INPUT], [model_input]
            if kernel.max_inputs is not None and len(feeds) > kernel.max_inputs:
                warnings.append(f"{node.display_label}: ignoring {len(feeds) - kernel.max_inputs} extra input(s)")
                feeds, shapes = feeds[: kernel.max_inputs], shapes[: kernel.max_inputs]

            params = self.catalog[node.block_type].effective_params(node.params)
            try:
                output_shape = kernel.output_shape(params, shapes)
                weights = kernel.build(params, shapes, generator)
            except UnresolvedShapeError as exc:
                logger.warning("Skipping {}: {}", node.display_label, exc)
                warnings.append(f"{node.display_label}: {exc}")
                skipped.append(node.id)
                continue

            if node.block_type == "Add" and len({s.sample_dims for s in shapes}) > 1:
                message = f"{node.display_label}: adding mismatched shapes " + " + ".join(s.describe() for s in shapes)
                logger.warning(message)
                warnings.append(message)

            compiled[node.id] = CompiledLayer(
                node_id=node.id,
                label=node.display_label,
                kind=node.block_type,
                params=params,
                input_shapes=tuple(shapes),
                output_shape=output_shape,
                inputs=tuple(feeds),
                weights=weights,
            )

        if not compiled:
            raise NoComputationalLayersError()

        model = CompiledModel(
            list(compiled.values()),
            input_shape=model_input,
            external_inputs=external,
            port_inputs=port_keys,
            label_inputs=label_keys,
            connection_count=len(connections),
            warnings=warnings,
            cycle_detected=schedule.cycle_detected,
            skipped_nodes=skipped,
            dataset=dataset,
        )
        logger.info(
            "Compiled {} layers ({} weight-bearing, {:,} parameters)",
            len(model.layers), len(model.weight_bearing_layers()), model.total_params,
        )
        return model

    def _first_dataset(self, nodes: Iterable[Node]) -> Optional[str]:
        for node in nodes:
            if node.block_type == "DataLoader":
                return str(self.catalog["DataLoader"].effective_params(node.params)["dataset"])
        return None

    def _resolve_feeds(
        self,
        node: Node,
        connections: Sequence[Connection],
        known: Dict[str, Node],
        compiled: Dict[str, CompiledLayer],
        external: Dict[str, TensorShape],
        port_keys: Set[str],
        label_keys: Set[str],
    ) -> Tuple[List[str], List[TensorShape]]:
        """Feeds into ``node`` ordered by target port; uncompiled layers are ignored."""
        definition = self.catalog[node.block_type]
        incoming = sorted(
            (c for c in connections if c.target == node.id and c.source in known),
            key=lambda c: definition.input_index(c.target_port),
        )
        feeds: List[str] = []
        shapes: List[TensorShape] = []
        for connection in incoming:
            source = known[connection.source]
            if source.id in compiled:
                feeds.append(source.id)
                shapes.append(compiled[source.id].output_shape)
                continue
            if self.catalog.is_computational(source.block_type):
                # Producer comes later in a best-effort (cyclic) order, or was skipped.
                continue
            shape = self._external_shape(source, connection.source_port)
            if shape is None:
                continue
            key = external_key(source, connection.source_port, self.catalog)
            external[key] = shape
            if key != source.id:
                port_keys.add(key)
                if source.block_type == "DataLoader" and connection.source_port == "labels":
                    label_keys.add(key)
            feeds.append(key)
            shapes.append(shape)
        return feeds, shapes

    def _external_shape(self, source: Node, port: str) -> Optional[TensorShape]:
        definition = self.catalog[source.block_type]
        output = definition.output_port(port)
        if output is None:
            return None
        if source.block_type == "DataLoader":
            spec = get_dataset_spec(definition.effective_params(source.params)["dataset"])
            return spec.input_shape if port == "data" else spec.label_shape
        return output.shape


def external_key(source: Node, port: str, catalog: Optional[BlockCatalog] = None) -> str:
    """Input key for a non-layer producer: its node id for the first output port, else ``id.port``."""
    definition = resolve_catalog(catalog)[source.block_type]
    if definition.outputs and definition.outputs[0].name == port:
        return source.id
    return f"{source.id}.{port}"


def compile_graph(
    nodes: Union[GraphSnapshot, Iterable[NodeLike]],
    edges: Optional[Iterable[ConnectionLike]] = None,
    input_shape: Optional[Union[TensorShape, Sequence[int]]] = None,
    *,
    catalog: Optional[BlockCatalog] = None,
    seed: int = 0,
) -> CompiledModel:
    return ModelCompiler(catalog, seed).compile(nodes, edges, input_shape)
