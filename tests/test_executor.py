import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import blockml  # noqa: E402
from blockml import GraphSnapshot, Node, compile_graph, forward  # noqa: E402


def mlp(dropout: float = 0.0):
    graph = GraphSnapshot()
    graph.add_node(Node("data", "DataLoader", {"dataset": "iris"}))
    graph.add_node(Node("hidden", "Dense", {"units": 8}))
    graph.add_node(Node("drop", "Dropout", {"rate": dropout}))
    graph.add_node(Node("out", "Dense", {"units": 3, "activation": "softmax"}))
    graph.connect("data", "data", "hidden", "input")
    graph.connect("hidden", "output", "drop", "input")
    graph.connect("drop", "output", "out", "input")
    return compile_graph(graph)


def test_inference_is_deterministic_and_pure():
    model = mlp()
    before = model.state_dict()
    x = torch.randn(5, 4, generator=torch.Generator().manual_seed(0))
    first = forward(model, x)
    second = forward(model, x)
    assert first.shape == (5, 3)
    assert torch.equal(first, second)
    for name, weight in model.state_dict().items():
        assert torch.equal(weight, before[name])


def test_softmax_rows_sum_to_one():
    out = forward(mlp(), torch.randn(6, 4))
    assert torch.allclose(out.sum(dim=-1), torch.ones(6), atol=1e-5)


def test_unbatched_sample_round_trips_batch_axis():
    model = mlp()
    sample = torch.randn(4)
    single = forward(model, sample)
    assert single.shape == (3,)
    assert torch.allclose(single, forward(model, sample.unsqueeze(0))[0])


def test_mapping_inputs_by_source_id():
    model = mlp()
    x = torch.randn(2, 4)
    assert torch.equal(forward(model, {"data": x}), forward(model, x))
    with pytest.raises(KeyError):
        forward(model, {"other": x})


def test_flat_input_is_reshaped_to_loader_shape():
    graph = GraphSnapshot()
    graph.add_node(Node("data", "DataLoader", {"dataset": "mnist"}))
    graph.add_node(Node("conv", "Conv2D", {"filters": 4}))
    graph.add_node(Node("pool", "MaxPooling2D"))
    graph.add_node(Node("flat", "Flatten"))
    graph.connect("data", "data", "conv", "input")
    graph.connect("conv", "output", "pool", "input")
    graph.connect("pool", "output", "flat", "input")
    model = compile_graph(graph)
    outputs = forward(model, torch.randn(2, 784), return_all=True)
    assert outputs["conv"].shape == (2, 28, 28, 4)
    assert outputs["pool"].shape == (2, 14, 14, 4)
    assert outputs["flat"].shape == (2, 14 * 14 * 4)


def test_dropout_only_in_training():
    model = mlp(dropout=0.5)
    x = torch.randn(16, 4)
    assert torch.equal(forward(model, x), forward(model, x))
    train_a = forward(model, x, training=True, generator=torch.Generator().manual_seed(1))
    train_b = forward(model, x, training=True, generator=torch.Generator().manual_seed(2))
    assert not torch.equal(train_a, train_b)


def test_layer_events_reach_listeners():
    model = mlp()
    events = []
    model.register_listener(events.append)
    forward(model, torch.randn(3, 4))
    model.unregister_listener(events.append)
    kinds = [e["event"] for e in events]
    assert kinds[0] == "forward_start"
    assert kinds[-1] == "forward_end"
    layer_events = [e for e in events if e["event"] == "layer_output"]
    assert [e["node"] for e in layer_events] == ["hidden", "drop", "out"]
    assert layer_events[-1]["shape"] == (3, 3)
    assert layer_events[-1]["dtype"] == "float32"
    forward(model, torch.randn(3, 4))
    assert len(events) == len(kinds)


def test_attention_and_residual_forward():
    nodes = [
        Node("attn", "MultiHeadAttention", {"dim": 8, "heads": 3, "dropout": 0.0}),
        Node("res", "Add"),
        Node("norm", "LayerNorm"),
    ]
    edges = [
        blockml.Connection("e1", "attn", "output", "res", "input1"),
        blockml.Connection("e2", "norm", "output", "res", "input2"),
    ]
    model = compile_graph(nodes, edges, input_shape=(5, 8))
    out = forward(model, torch.randn(2, 5, 8), return_all=True)
    assert out["attn"].shape == (2, 5, 8)
    assert out["res"].shape == (2, 5, 8)


def test_lstm_returns_last_state():
    model = compile_graph([Node("lstm", "LSTM", {"units": 6})], input_shape=(7, 3))
    out = forward(model, torch.randn(4, 7, 3))
    assert out.shape == (4, 6)
    seq = compile_graph([Node("lstm", "LSTM", {"units": 6, "return_sequences": True})], input_shape=(7, 3))
    assert forward(seq, torch.randn(4, 7, 3)).shape == (4, 7, 6)


def test_lstm_matches_torch_reference():
    model = compile_graph([Node("lstm", "LSTM", {"units": 6, "return_sequences": True})], input_shape=(7, 3))
    weights = model.layers[0].weights
    reference = torch.nn.LSTM(3, 6, batch_first=True)
    with torch.no_grad():
        reference.weight_ih_l0.copy_(weights["w_ih"])
        reference.weight_hh_l0.copy_(weights["w_hh"])
        reference.bias_ih_l0.copy_(weights["bias"])
        reference.bias_hh_l0.zero_()
    x = torch.randn(4, 7, 3)
    expected, _ = reference(x)
    assert torch.allclose(forward(model, x), expected, atol=1e-5)


def test_attention_matches_torch_reference():
    model = compile_graph([Node("attn", "MultiHeadAttention", {"dim": 8, "heads": 2})], input_shape=(5, 8))
    w = model.layers[0].weights
    reference = torch.nn.MultiheadAttention(8, 2, batch_first=True)
    with torch.no_grad():
        reference.in_proj_weight.copy_(torch.cat([w["w_q"], w["w_k"], w["w_v"]]))
        reference.in_proj_bias.copy_(torch.cat([w["b_q"], w["b_k"], w["b_v"]]))
        reference.out_proj.weight.copy_(w["w_o"])
        reference.out_proj.bias.copy_(w["b_o"])
    reference.eval()
    x = torch.randn(3, 5, 8)
    expected, _ = reference(x, x, x, need_weights=False)
    assert torch.allclose(forward(model, x), expected, atol=1e-5)


def test_attention_dropout_follows_generator():
    model = compile_graph([Node("attn", "MultiHeadAttention", {"dim": 8, "heads": 2, "dropout": 0.5})], input_shape=(5, 8))
    x = torch.randn(3, 5, 8)
    first = forward(model, x, training=True, generator=torch.Generator().manual_seed(3))
    second = forward(model, x, training=True, generator=torch.Generator().manual_seed(3))
    assert torch.equal(first, second)
    assert not torch.allclose(first, forward(model, x))


def test_gradients_flow_to_every_weight():
    model = mlp()
    out = forward(model, torch.randn(4, 4), training=True)
    blockml.cross_entropy(out, torch.tensor([0, 1, 2, 0])).backward()
    for name, weight in model.named_parameters():
        assert weight.grad is not None, name


def test_secondary_port_feed_needs_explicit_tensor():
    graph = GraphSnapshot()
    graph.add_node(Node("data", "DataLoader", {"dataset": "iris"}))
    graph.add_node(Node("cat", "Concatenate"))
    graph.connect("data", "data", "cat", "input1")
    graph.connect("data", "labels", "cat", "input2")
    model = compile_graph(graph)
    x = torch.randn(2, 4)
    with pytest.raises(KeyError):
        forward(model, x)
    out = forward(model, {"data": x, "data.labels": torch.tensor([2, 0])})
    assert out.shape == (2, 5)
    assert out[:, -1].tolist() == [2.0, 0.0]
