# blockml/templates.py

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .graph import GraphSnapshot

CATEGORIES = ("vision", "nlp", "tabular", "custom")
DIFFICULTIES = ("beginner", "intermediate", "advanced")


@dataclass(frozen=True)
class ModelTemplate:
    """A starter graph the editor can drop onto an empty canvas."""

    id: str
    name: str
    description: str
    category: str
    difficulty: str
    suggested_dataset: str
    expected_accuracy: str
    nodes: Tuple[Dict[str, Any], ...] = field(repr=False)
    connections: Tuple[Dict[str, Any], ...] = field(repr=False)

    def __post_init__(self) -> None:
        if self.category not in CATEGORIES:
            raise ValueError(f"Unknown template category {self.category!r}")
        if self.difficulty not in DIFFICULTIES:
            raise ValueError(f"Unknown template difficulty {self.difficulty!r}")

    def to_dict(self) -> Dict[str, Any]:
        """Editor JSON (deep copy, safe to mutate)."""
        return {
            "nodes": copy.deepcopy(list(self.nodes)),
            "edges": copy.deepcopy(list(self.connections)),
        }

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot.from_dict(self.to_dict())


def _node(node_id: str, block_type: str, label: str, x: float, y: float, **params: Any) -> Dict[str, Any]:
    return {
        "id": node_id,
        "type": "mlBlock",
        "position": {"x": x, "y": y},
        "data": {"blockType": block_type, "label": label, "parameters": params},
    }


def _edge(edge_id: str, source: str, source_port: str, target: str, target_port: str) -> Dict[str, Any]:
    return {
        "id": edge_id,
        "source": source,
        "target": target,
        "sourceHandle": source_port,
        "targetHandle": target_port,
    }


def _chain(pairs: List[Tuple[str, str, str, str]], start: int = 1) -> List[Dict[str, Any]]:
    return [_edge(f"c{i}", *pair) for i, pair in enumerate(pairs, start=start)]


MODEL_TEMPLATES: Tuple[ModelTemplate, ...] = (
    ModelTemplate(
        id="simple-mlp",
        name="Simple MLP",
        description="Basic multi-layer perceptron for tabular data",
        category="tabular",
        difficulty="beginner",
        suggested_dataset="iris",
        expected_accuracy="95%+",
        nodes=(
            _node("data-1", "DataLoader", "DataLoader", 50, 100, batch_size=32, shuffle=True, dataset="iris"),
            _node("dense-1", "Dense", "Hidden Layer 1", 300, 80, units=64, activation="relu"),
            _node("dropout-1", "Dropout", "Dropout", 550, 80, rate=0.3),
            _node("dense-2", "Dense", "Hidden Layer 2", 800, 80, units=32, activation="relu"),
            _node("dense-3", "Dense", "Output Layer", 1050, 80, units=3, activation="softmax"),
            _node("loss-1", "CrossEntropy", "CrossEntropy", 1300, 120),
        ),
        connections=tuple(_chain([
            ("data-1", "data", "dense-1", "input"),
            ("dense-1", "output", "dropout-1", "input"),
            ("dropout-1", "output", "dense-2", "input"),
            ("dense-2", "output", "dense-3", "input"),
            ("dense-3", "output", "loss-1", "predictions"),
            ("data-1", "labels", "loss-1", "targets"),
        ])),
    ),
    ModelTemplate(
        id="cnn-mnist",
        name="CNN for MNIST",
        description="Convolutional neural network for handwritten digit recognition",
        category="vision",
        difficulty="intermediate",
        suggested_dataset="mnist",
        expected_accuracy="98%+",
        nodes=(
            _node("data-1", "DataLoader", "MNIST Data", 50, 150, batch_size=64, shuffle=True, dataset="mnist"),
            _node("conv-1", "Conv2D", "Conv2D 1", 300, 100, filters=32, kernel_size=3, activation="relu"),
            _node("pool-1", "MaxPooling2D", "MaxPool 1", 550, 100, pool_size=2),
            _node("conv-2", "Conv2D", "Conv2D 2", 800, 100, filters=64, kernel_size=3, activation="relu"),
            _node("pool-2", "MaxPooling2D", "MaxPool 2", 1050, 100, pool_size=2),
            _node("flatten-1", "Flatten", "Flatten", 1300, 100),
            _node("dense-1", "Dense", "Dense", 1550, 100, units=128, activation="relu"),
            _node("dropout-1", "Dropout", "Dropout", 1800, 100, rate=0.5),
            _node("output-1", "Dense", "Output", 2050, 100, units=10, activation="softmax"),
        ),
        connections=tuple(_chain([
            ("data-1", "data", "conv-1", "input"),
            ("conv-1", "output", "pool-1", "input"),
            ("pool-1", "output", "conv-2", "input"),
            ("conv-2", "output", "pool-2", "input"),
            ("pool-2", "output", "flatten-1", "input"),
            ("flatten-1", "output", "dense-1", "input"),
            ("dense-1", "output", "dropout-1", "input"),
            ("dropout-1", "output", "output-1", "input"),
        ])),
    ),
    ModelTemplate(
        id="resnet-block",
        name="ResNet Block",
        description="Residual connection block for deep networks",
        category="vision",
        difficulty="advanced",
        suggested_dataset="cifar10",
        expected_accuracy="92%+",
        nodes=(
            _node("input-1", "DataLoader", "Input", 50, 200, batch_size=32, dataset="cifar10"),
            _node("conv-1", "Conv2D", "Conv 1", 300, 150, filters=64, kernel_size=3, activation="relu"),
            _node("conv-2", "Conv2D", "Conv 2", 550, 150, filters=64, kernel_size=3, activation="linear"),
            _node("add-1", "Add", "Residual Add", 800, 200),
            _node("activation-1", "Activation", "ReLU", 1050, 200, activation="relu"),
        ),
        connections=tuple(_chain([
            ("input-1", "data", "conv-1", "input"),
            ("conv-1", "output", "conv-2", "input"),
            ("conv-2", "output", "add-1", "input1"),
            ("input-1", "data", "add-1", "input2"),
            ("add-1", "output", "activation-1", "input"),
        ])),
    ),
    ModelTemplate(
        id="transformer-encoder",
        name="Transformer Encoder",
        description="Self-attention transformer encoder block",
        category="nlp",
        difficulty="advanced",
        suggested_dataset="text",
        expected_accuracy="85%+",
        nodes=(
            _node("input-1", "DataLoader", "Sequence Input", 50, 250, batch_size=16, sequence_length=128,
                  dataset="text"),
            _node("attention-1", "MultiHeadAttention", "Multi-Head Attention", 300, 200, heads=8, dim=512),
            _node("add-1", "Add", "Residual Add 1", 550, 250),
            _node("norm-1", "LayerNorm", "Layer Norm 1", 800, 250),
            _node("ffn-1", "Dense", "Feed Forward", 1050, 250, units=2048, activation="relu"),
            _node("add-2", "Add", "Residual Add 2", 1300, 250),
            _node("norm-2", "LayerNorm", "Layer Norm 2", 1550, 250),
        ),
        connections=tuple(_chain([
            ("input-1", "data", "attention-1", "query"),
            ("input-1", "data", "attention-1", "key"),
            ("input-1", "data", "attention-1", "value"),
            ("attention-1", "output", "add-1", "input1"),
            ("input-1", "data", "add-1", "input2"),
            ("add-1", "output", "norm-1", "input"),
            ("norm-1", "output", "ffn-1", "input"),
            ("ffn-1", "output", "add-2", "input1"),
            ("norm-1", "output", "add-2", "input2"),
            ("add-2", "output", "norm-2", "input"),
        ])),
    ),
)


def list_templates(category: Optional[str] = None) -> List[ModelTemplate]:
    if category is None:
        return list(MODEL_TEMPLATES)
    return [t for t in MODEL_TEMPLATES if t.category == category]


def get_template(template_id: str) -> ModelTemplate:
    for template in MODEL_TEMPLATES:
        if template.id == template_id:
            return template
    raise KeyError(f"No template with id {template_id!r}")
