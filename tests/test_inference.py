import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from blockml import Node, infer_output_shape  # noqa: E402
from blockml.shapes import BATCH, UNKNOWN, TensorShape, batched  # noqa: E402


def test_dense_rewrites_last_slot_with_default_units():
    shape = infer_output_shape(Node("d", "Dense"))
    assert shape.dimensions == (BATCH, 64)
    shape = infer_output_shape(Node("d", "Dense", {"units": 10}), input_shape=batched((5, 32)))
    assert shape.dimensions == (BATCH, 5, 10)


def test_lstm_rewrites_last_slot():
    shape = infer_output_shape(Node("l", "LSTM", {"units": 16}))
    assert shape.dimensions == (BATCH, 16)


def test_conv_rewrites_channels_only():
    shape = infer_output_shape(Node("c", "Conv2D", {"filters": 8}), input_shape=batched((28, 28, 1)))
    assert shape.dimensions == (BATCH, 28, 28, 8)
    template = infer_output_shape(Node("c", "Conv2D"))
    assert template.dimensions == (BATCH, UNKNOWN, UNKNOWN, 32)


def test_max_pool_halves_spatial_slots():
    shape = infer_output_shape(Node("p", "MaxPooling2D"), input_shape=batched((28, 28, 1)))
    assert shape.dimensions == (BATCH, 14, 14, 1)
    odd = infer_output_shape(Node("p", "MaxPooling2D", {"pool_size": 3}), input_shape=batched((28, 28, 4)))
    assert odd.dimensions == (BATCH, 9, 9, 4)


def test_max_pool_leaves_dynamic_slots():
    shape = infer_output_shape(Node("p", "MaxPooling2D"))
    assert shape.dimensions == (BATCH, UNKNOWN, UNKNOWN, UNKNOWN)


def test_attention_rewrites_model_dim():
    shape = infer_output_shape(Node("m", "MultiHeadAttention", {"dim": 64}))
    assert shape.dimensions == (BATCH, UNKNOWN, 64)


def test_other_blocks_pass_through():
    assert infer_output_shape(Node("f", "Flatten")) == TensorShape.of(BATCH, UNKNOWN)
    labels = infer_output_shape(Node("d", "DataLoader"), "labels")
    assert labels.dtype == "int32"
    assert infer_output_shape(Node("l", "CrossEntropy")).rank == 0


def test_input_shape_takes_port_dtype():
    shape = infer_output_shape(Node("d", "Dense"), input_shape=batched((3,), dtype="int32"))
    assert shape.dtype == "float32"


def test_missing_port_raises():
    with pytest.raises(KeyError):
        infer_output_shape(Node("d", "Dense"), "nope")
