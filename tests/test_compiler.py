import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import blockml  # noqa: E402
from blockml import GraphSnapshot, ModelCompiler, Node, compile_graph  # noqa: E402
from blockml.compiler import MODEL_INPUT  # noqa: E402
from blockml.shapes import BATCH  # noqa: E402


def mnist_graph() -> GraphSnapshot:
    graph = GraphSnapshot()
    graph.add_node(Node("data", "DataLoader", {"dataset": "mnist"}))
    graph.add_node(Node("flat", "Flatten"))
    graph.add_node(Node("hidden", "Dense", {"units": 128, "activation": "relu"}))
    graph.add_node(Node("out", "Dense", {"units": 10, "activation": "softmax"}))
    graph.add_node(Node("loss", "CrossEntropy"))
    graph.connect("data", "data", "flat", "input")
    graph.connect("flat", "output", "hidden", "input")
    graph.connect("hidden", "output", "out", "input")
    graph.connect("out", "output", "loss", "predictions")
    graph.connect("data", "labels", "loss", "targets")
    return graph


def test_empty_graph_has_no_layers():
    with pytest.raises(blockml.NoComputationalLayersError, match="No valid layers found"):
        compile_graph([])


def test_non_computational_graph_has_no_layers():
    nodes = [Node("data", "DataLoader"), Node("loss", "CrossEntropy"), Node("opt", "Adam")]
    with pytest.raises(blockml.NoComputationalLayersError):
        compile_graph(nodes)


def test_mnist_graph_compiles_two_weight_bearing_layers():
    model = compile_graph(mnist_graph())
    assert [layer.node_id for layer in model.layers] == ["flat", "hidden", "out"]
    assert [layer.node_id for layer in model.weight_bearing_layers()] == ["hidden", "out"]
    assert model.total_params == 784 * 128 + 128 + 128 * 10 + 10
    assert model.layer("hidden").weights["kernel"].shape == (784, 128)
    assert model.output_shape.dimensions == (BATCH, 10)
    assert model.dataset == "mnist"
    assert model.external_inputs["data"].dimensions == (BATCH, 28, 28, 1)
    assert model.layer("flat").inputs == ("data",)
    assert not model.warnings


def test_summary_text():
    model = compile_graph(mnist_graph())
    lines = model.summary.splitlines()
    assert lines[:5] == [
        "Model Architecture:",
        "Total Layers: 3",
        "Total Connections: 5",
        "Estimated Parameters: 101,770",
        "Model Complexity: 1.1/5.0",
    ]
    assert lines[6] == "1. Flatten"
    assert lines[7] == "2. Dense (units=128, activation=relu)"


def test_complexity_is_clamped():
    small = compile_graph([Node("d", "Dense", {"units": 10})])
    assert small.complexity == 0.5
    nodes = [Node(f"m{i}", "MultiHeadAttention", {"dim": 8, "heads": 2}) for i in range(4)]
    edges = [blockml.Connection(f"e{i}", f"m{i}", "output", f"m{i + 1}", "query") for i in range(3)]
    big = compile_graph(nodes, edges, input_shape=(4, 8))
    assert big.complexity == 5.0


def test_explicit_input_shape_without_loader():
    model = compile_graph([Node("d", "Dense", {"units": 3})], input_shape=(4,))
    assert model.layers[0].inputs == (MODEL_INPUT,)
    assert model.layer("d").weights["kernel"].shape == (4, 3)
    assert model.input_shape.dimensions == (BATCH, 4)


def test_default_input_is_flat_mnist():
    model = compile_graph([Node("d", "Dense", {"units": 3})])
    assert model.input_shape.dimensions == (BATCH, 784)


def test_unknown_block_types_are_skipped_with_warning():
    model = compile_graph([Node("x", "Teleport"), Node("d", "Dense")])
    assert model.skipped_nodes == ("x",)
    assert any("Unknown block type: Teleport" in w for w in model.warnings)
    assert [layer.node_id for layer in model.layers] == ["d"]


def test_cycle_compiles_best_effort():
    nodes = [Node("a", "Dense", {"units": 16}), Node("b", "Dense", {"units": 16})]
    edges = [
        blockml.Connection("e1", "a", "output", "b", "input"),
        blockml.Connection("e2", "b", "output", "a", "input"),
    ]
    model = compile_graph(nodes, edges, input_shape=(16,))
    assert model.cycle_detected
    assert sorted(layer.node_id for layer in model.layers) == ["a", "b"]
    assert any("Cycle detected" in w for w in model.warnings)


def test_feeds_follow_target_port_order():
    nodes = [
        Node("a", "Dense", {"units": 3}),
        Node("b", "Dense", {"units": 5}),
        Node("cat", "Concatenate"),
    ]
    edges = [
        blockml.Connection("e1", "a", "output", "cat", "input2"),
        blockml.Connection("e2", "b", "output", "cat", "input1"),
    ]
    model = compile_graph(nodes, edges, input_shape=(4,))
    cat = model.layer("cat")
    assert cat.inputs == ("b", "a")
    assert cat.output_shape.dimensions == (BATCH, 8)


def test_add_with_mismatched_inputs_warns():
    nodes = [Node("a", "Dense", {"units": 3}), Node("b", "Dense", {"units": 5}), Node("sum", "Add")]
    edges = [
        blockml.Connection("e1", "a", "output", "sum", "input1"),
        blockml.Connection("e2", "b", "output", "sum", "input2"),
    ]
    model = compile_graph(nodes, edges, input_shape=(4,))
    assert model.layer("sum").output_shape.dimensions == (BATCH, 3)
    assert any("adding mismatched shapes" in w for w in model.warnings)


def test_unresolvable_layer_is_skipped():
    nodes = [Node("pool", "MaxPooling2D", {"pool_size": 8}), Node("d", "Dense")]
    model = compile_graph(nodes, input_shape=(4, 4, 1))
    assert "pool" in model.skipped_nodes
    assert [layer.node_id for layer in model.layers] == ["d"]


def test_same_seed_same_weights():
    first = ModelCompiler(seed=7).compile(mnist_graph())
    second = ModelCompiler(seed=7).compile(mnist_graph())
    other = ModelCompiler(seed=8).compile(mnist_graph())
    for name, weight in first.state_dict().items():
        assert torch.equal(weight, second.state_dict()[name])
    assert not torch.equal(first.state_dict()["hidden.kernel"], other.state_dict()["hidden.kernel"])


def test_state_dict_round_trip_and_shape_check():
    model = compile_graph(mnist_graph())
    state = model.state_dict()
    state["out.bias"] = torch.ones(10)
    model.load_state_dict(state)
    assert torch.equal(model.layer("out").weights["bias"].detach(), torch.ones(10))
    state["out.bias"] = torch.ones(11)
    with pytest.raises(ValueError):
        model.load_state_dict(state)


def test_parameter_table_rows():
    rows = compile_graph(mnist_graph()).parameter_table()
    hidden = rows[1]
    assert hidden["node_id"] == "hidden"
    assert hidden["weights"] == {"kernel": (784, 128), "bias": (128,)}
    assert hidden["parameter_count"] == 784 * 128 + 128
