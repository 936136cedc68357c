from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence

import torch
from torch.utils.hooks import RemovableHandle

from .compiler import CompiledModel

if TYPE_CHECKING:
    from .training import TrainingMetrics


@dataclass
class LayerGradient:
    """Gradient statistics for one layer (or one weight) since the last summary."""

    name: str
    kind: str
    steps: int
    grad_norm: float
    max_abs: float
    zero_frac: float
    weight_norm: float

    @property
    def update_ratio(self) -> float:
        """Mean gradient norm relative to the current weight norm."""
        if self.weight_norm == 0.0:
            return float("inf") if self.grad_norm > 0.0 else 0.0
        return self.grad_norm / self.weight_norm

    def to_line(self) -> str:
        return (
            f"{self.name:<24} {self.kind:<18} grad={self.grad_norm:.3e} "
            f"max={self.max_abs:.3e} ratio={self.update_ratio:.3e} dead={self.zero_frac:6.2%}"
        )


@dataclass
class GradientSummary:
    layers: List[LayerGradient]
    weights: List[LayerGradient]

    def vanishing(self, threshold: float = 1e-7) -> List[str]:
        """Layers whose mean gradient norm fell below ``threshold``."""
        return [rec.name for rec in self.layers if rec.grad_norm < threshold]

    def to_text(self, top_k: Optional[int] = None) -> str:
        lines: List[str] = []
        if self.layers:
            lines.append("Layer gradients:")
            lines.extend("  " + rec.to_line() for rec in self.layers[:top_k])
        if self.weights:
            lines.append("Weight gradients:")
            lines.extend("  " + rec.to_line() for rec in self.weights[:top_k])
        quiet = self.vanishing()
        if quiet:
            lines.append("Vanishing: " + ", ".join(quiet))
        return "\n".join(lines)


class _GradAccumulator:
    """Running sums for the gradients seen by one hook target."""

    def __init__(self, kind: str, tensors: Sequence[torch.Tensor]) -> None:
        self.kind = kind
        self.tensors = list(tensors)
        self.steps = 0
        self.norm_sq_sum = 0.0
        self.max_abs = 0.0
        self.zeros = 0
        self.elements = 0

    def add(self, grad: torch.Tensor) -> None:
        data = grad.detach()
        if data.numel() == 0:
            return
        self.norm_sq_sum += float(data.pow(2).sum())
        self.max_abs = max(self.max_abs, float(data.abs().max()))
        self.zeros += int((data == 0).sum())
        self.elements += data.numel()

    def finish(self, name: str) -> LayerGradient:
        steps = max(self.steps, 1)
        with torch.no_grad():
            weight_norm = float(torch.sqrt(sum(t.detach().pow(2).sum() for t in self.tensors)))
        return LayerGradient(
            name=name,
            kind=self.kind,
            steps=self.steps,
            grad_norm=(self.norm_sq_sum / steps) ** 0.5,
            max_abs=self.max_abs,
            zero_frac=self.zeros / max(self.elements, 1),
            weight_norm=weight_norm,
        )


class GradientWatcher:
    """
    Hook every weight of a CompiledModel and aggregate gradient statistics per
    layer (and, with ``track_weights``, per named weight) until the next
    ``pop_summary``.

    A "step" is one backward pass: the layer norm reported is the mean over
    steps of the norm of all that layer's weight gradients together.
    """

    def __init__(self, model: CompiledModel, *, track_weights: bool = True) -> None:
        self.model = model
        self.track_weights = track_weights
        self._handles: List[RemovableHandle] = []
        self._layers: Dict[str, _GradAccumulator] = {}
        self._weights: Dict[str, _GradAccumulator] = {}
        self._pending: Dict[str, int] = {}
        for layer in model.weight_bearing_layers():
            trainable = [(name, w) for name, w in layer.weights.items() if w.requires_grad]
            if not trainable:
                continue
            self._layers[layer.node_id] = _GradAccumulator(layer.kind, [w for _, w in trainable])
            for name, weight in trainable:
                key = f"{layer.node_id}.{name}"
                self._weights[key] = _GradAccumulator(layer.kind, [weight])
                hook = self._make_hook(layer.node_id, key, len(trainable))
                self._handles.append(weight.register_hook(hook))

    def _make_hook(self, node_id: str, key: str, per_step: int) -> Callable[[torch.Tensor], torch.Tensor]:
        def _hook(grad: torch.Tensor) -> torch.Tensor:
            layer = self._layers[node_id]
            layer.add(grad)
            # Count a layer step once all of its weights have reported.
            seen = self._pending.get(node_id, 0) + 1
            if seen == per_step:
                layer.steps += 1
                seen = 0
            self._pending[node_id] = seen
            if self.track_weights:
                weight = self._weights[key]
                weight.add(grad)
                weight.steps += 1
            return grad

        return _hook

    def close(self) -> None:
        for handle in self._handles:
            handle.remove()
        self._handles.clear()

    def reset(self) -> None:
        for acc in (*self._layers.values(), *self._weights.values()):
            acc.steps = 0
            acc.norm_sq_sum = 0.0
            acc.max_abs = 0.0
            acc.zeros = 0
            acc.elements = 0
        self._pending.clear()

    def pop_summary(self, *, top_k: Optional[int] = None) -> Optional[GradientSummary]:
        layers = self._collect(self._layers, top_k)
        weights = self._collect(self._weights, top_k) if self.track_weights else []
        self.reset()
        if not layers and not weights:
            return None
        return GradientSummary(layers=layers, weights=weights)

    @staticmethod
    def _collect(store: Dict[str, _GradAccumulator], top_k: Optional[int]) -> List[LayerGradient]:
        records = [acc.finish(name) for name, acc in store.items() if acc.elements]
        records.sort(key=lambda rec: rec.grad_norm, reverse=True)
        return records[:top_k]


def plot_gradient_norms(
    summary: GradientSummary,
    *,
    metric: str = "grad_norm",
    ax: Optional["matplotlib.axes.Axes"] = None,
) -> "matplotlib.axes.Axes":
    """Horizontal bar chart of one per-layer statistic on a log scale, layers sorted by name."""
    if not summary.layers:
        raise ValueError("Summary has no layer gradients to plot.")
    try:
        import matplotlib.pyplot as plt  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for gradient plots.") from exc

    rows = sorted(summary.layers, key=lambda rec: rec.name)
    values = [getattr(rec, metric) for rec in rows]
    if ax is None:
        _, ax = plt.subplots(figsize=(6, max(2, 0.4 * len(rows))))
    ax.barh([f"{rec.name} ({rec.kind})" for rec in rows], values, color="tab:purple")
    ax.set_xscale("log")
    ax.set_xlabel(metric.replace("_", " "))
    ax.invert_yaxis()
    ax.set_title("Per-layer gradients")
    return ax


def plot_training_history(
    history: Sequence["TrainingMetrics"],
    *,
    save_path: Optional[str] = None,
    title: Optional[str] = None,
) -> "matplotlib.figure.Figure":
    """
    Plot loss and accuracy curves (train and, when present, validation) per epoch.

    Args:
        history: Metrics in epoch order, as passed to ``on_complete``.
        save_path: When given, the figure is written there and closed.
        title: Optional figure title.

    Returns:
        The matplotlib Figure.
    """
    if not history:
        raise ValueError("history is empty; nothing to plot.")
    try:
        import matplotlib.pyplot as plt  # type: ignore
        import numpy as np
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for visualization helpers.") from exc

    epochs = np.array([m.epoch for m in history])
    fig, (loss_ax, acc_ax) = plt.subplots(1, 2, figsize=(10, 4))
    loss_ax.plot(epochs, [m.loss for m in history], label="train")
    acc_ax.plot(epochs, [m.accuracy for m in history], label="train")
    if all(m.val_loss is not None for m in history):
        loss_ax.plot(epochs, [m.val_loss for m in history], label="val")
    if all(m.val_accuracy is not None for m in history):
        acc_ax.plot(epochs, [m.val_accuracy for m in history], label="val")
    loss_ax.set_xlabel("epoch")
    loss_ax.set_ylabel("loss")
    acc_ax.set_xlabel("epoch")
    acc_ax.set_ylabel("accuracy")
    acc_ax.set_ylim(0.0, 1.0)
    loss_ax.legend()
    acc_ax.legend()
    if title:
        fig.suptitle(title)
    fig.tight_layout()
    if save_path is not None:
        fig.savefig(save_path)
        plt.close(fig)
    return fig
