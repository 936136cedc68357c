import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import blockml  # noqa: E402


def _build_simple_model(output_dim: int = 4) -> blockml.CompiledModel:
    graph = blockml.GraphSnapshot()
    graph.add_node(blockml.Node("x", "DataLoader", {"dataset": "iris"}))
    graph.add_node(blockml.Node("enc", "Dense", {"units": 16}))
    graph.add_node(blockml.Node("head", "Dense", {"units": output_dim, "activation": "linear"}))
    graph.connect("x", "data", "enc", "input")
    graph.connect("enc", "output", "head", "input")
    return blockml.compile_graph(graph)


def test_record_trace_captures_shapes_and_summary():
    torch.manual_seed(5)
    model = _build_simple_model()
    x = torch.randn(3, 4)

    with blockml.record(model) as trace:
        blockml.forward(model, x)
        out = blockml.forward(model, x, training=True)

    summary = trace.summary()
    assert summary["calls"] == 2
    assert summary["training_calls"] == 1
    assert summary["layers"] == {"enc": 2, "head": 2}
    assert summary["events"] == 4
    assert len(trace.events) == summary["events"]
    assert trace.shapes() == {"enc": (3, 16), "head": (3, 4)}
    assert trace.shapes(call=1)["head"] == tuple(out.shape)
    assert trace.events[0].kind == "Dense"


def test_record_detaches_after_exit():
    model = _build_simple_model()
    with blockml.record(model) as trace:
        blockml.forward(model, torch.randn(2, 4))
    assert not model.has_listeners
    blockml.forward(model, torch.randn(2, 4))
    assert trace.calls == 1
