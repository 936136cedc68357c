import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import blockml  # noqa: E402
from blockml import GradientWatcher, Node, compile_graph, forward  # noqa: E402
from blockml.diagnostics import GradientSummary, LayerGradient  # noqa: E402


def _model():
    nodes = [Node("hidden", "Dense", {"units": 6}), Node("out", "Dense", {"units": 3, "activation": "linear"})]
    edges = [blockml.Connection("e1", "hidden", "output", "out", "input")]
    return compile_graph(nodes, edges, input_shape=(4,))


def _backward(model, steps=1):
    for _ in range(steps):
        out = forward(model, torch.randn(5, 4), training=True)
        blockml.cross_entropy(out, torch.tensor([0, 1, 2, 0, 1])).backward()


def test_watcher_counts_steps_per_layer_and_weight():
    model = _model()
    watcher = GradientWatcher(model)
    _backward(model, steps=3)
    summary = watcher.pop_summary()
    watcher.close()

    by_name = {rec.name: rec for rec in summary.layers}
    assert set(by_name) == {"hidden", "out"}
    assert by_name["out"].steps == 3
    assert by_name["out"].kind == "Dense"
    assert by_name["out"].grad_norm > 0
    assert {rec.name for rec in summary.weights} == {"hidden.kernel", "hidden.bias", "out.kernel", "out.bias"}
    assert all(rec.steps == 3 for rec in summary.weights)
    assert watcher.pop_summary() is None


def test_watcher_without_weight_tracking_and_top_k():
    model = _model()
    watcher = GradientWatcher(model, track_weights=False)
    _backward(model)
    summary = watcher.pop_summary(top_k=1)
    watcher.close()
    assert len(summary.layers) == 1
    assert summary.weights == []


def test_closed_watcher_sees_nothing():
    model = _model()
    watcher = GradientWatcher(model)
    watcher.close()
    _backward(model)
    assert watcher.pop_summary() is None


def test_summary_text_flags_vanishing_layers():
    summary = GradientSummary(
        layers=[
            LayerGradient("hidden", "Dense", 1, 1e-9, 1e-9, 0.5, 2.0),
            LayerGradient("out", "Dense", 1, 0.2, 0.1, 0.0, 0.0),
        ],
        weights=[],
    )
    text = summary.to_text()
    assert text.startswith("Layer gradients:")
    assert text.splitlines()[-1] == "Vanishing: hidden"
    assert summary.layers[1].update_ratio == float("inf")


def test_plots_render_without_display(tmp_path):
    matplotlib = pytest.importorskip("matplotlib")
    matplotlib.use("Agg")
    history = [
        blockml.TrainingMetrics(epoch=1, loss=1.0, accuracy=0.3, val_loss=1.1, val_accuracy=0.25),
        blockml.TrainingMetrics(epoch=2, loss=0.7, accuracy=0.6, val_loss=0.8, val_accuracy=0.55),
    ]
    path = tmp_path / "history.png"
    blockml.plot_training_history(history, save_path=str(path), title="iris")
    assert path.exists()

    model = _model()
    watcher = GradientWatcher(model)
    _backward(model)
    ax = blockml.plot_gradient_norms(watcher.pop_summary())
    watcher.close()
    assert ax.get_title() == "Per-layer gradients"
    with pytest.raises(ValueError):
        blockml.plot_training_history([])
