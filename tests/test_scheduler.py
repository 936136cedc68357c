import os
import random
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from blockml import topological_sort  # noqa: E402


def _assert_topological(order, edges):
    position = {node: i for i, node in enumerate(order)}
    for src, dst in edges:
        assert position[src] < position[dst], f"{src} -> {dst} out of order in {order}"


def test_chain_keeps_natural_order():
    schedule = topological_sort(["a", "b", "c"], [("a", "b"), ("b", "c")])
    assert schedule.order == ("a", "b", "c")
    assert not schedule.cycle_detected


def test_input_order_independent_of_edge_direction():
    schedule = topological_sort(["c", "b", "a"], [("a", "b"), ("b", "c")])
    assert schedule.order == ("a", "b", "c")


def test_diamond_and_independent_roots():
    edges = [("in", "left"), ("in", "right"), ("left", "join"), ("right", "join")]
    schedule = topological_sort(["in", "left", "right", "join", "lonely"], edges)
    assert set(schedule.order) == {"in", "left", "right", "join", "lonely"}
    _assert_topological(schedule.order, edges)
    assert schedule.order[0] == "in"


def test_random_dags_are_ordered():
    rng = random.Random(3)
    for _ in range(25):
        nodes = [f"n{i}" for i in range(12)]
        edges = [(nodes[i], nodes[j]) for i in range(12) for j in range(i + 1, 12) if rng.random() < 0.2]
        shuffled = nodes[:]
        rng.shuffle(shuffled)
        schedule = topological_sort(shuffled, edges)
        assert sorted(schedule.order) == sorted(nodes)
        _assert_topological(schedule.order, edges)
        assert not schedule.cycle_detected


def test_cycle_terminates_and_visits_everything_once():
    edges = [("a", "b"), ("b", "c"), ("c", "a"), ("c", "d")]
    schedule = topological_sort(["a", "b", "c", "d"], edges)
    assert schedule.cycle_detected
    assert sorted(schedule.order) == ["a", "b", "c", "d"]
    assert len(schedule.back_edges) == 1


def test_self_loop_is_a_cycle():
    schedule = topological_sort(["a"], [("a", "a")])
    assert schedule.order == ("a",)
    assert schedule.back_edges == (("a", "a"),)


def test_deterministic_for_identical_input():
    edges = [("x", "y"), ("y", "x"), ("z", "x")]
    first = topological_sort(["x", "y", "z"], edges)
    second = topological_sort(["x", "y", "z"], edges)
    assert first == second


def test_edges_outside_node_set_are_ignored():
    schedule = topological_sort(["a", "b"], [("a", "b"), ("ghost", "a"), ("b", "ghost")])
    assert schedule.order == ("a", "b")


def test_explicit_sources_start_traversal():
    schedule = topological_sort(["a", "b"], [("a", "b"), ("b", "a")], sources=["b"])
    assert schedule.order == ("b", "a")
    assert schedule.cycle_detected
