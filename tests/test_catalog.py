import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import blockml  # noqa: E402
from blockml.catalog import BlockDefinition, Port, default_catalog, integer  # noqa: E402
from blockml.shapes import BATCH, TensorShape  # noqa: E402


def test_default_catalog_contents():
    catalog = default_catalog()
    assert catalog is default_catalog()
    for block_type in (
        "DataLoader", "Dense", "Conv2D", "MaxPooling2D", "Flatten", "Dropout", "LSTM",
        "Add", "Concatenate", "Activation", "BatchNorm", "LayerNorm", "MultiHeadAttention",
        "CrossEntropy", "MSE", "SGD", "Adam",
    ):
        assert block_type in catalog
    assert "CrossEntropy" not in catalog.computational_types
    assert "DataLoader" not in catalog.computational_types
    assert "Dense" in catalog.computational_types
    categories = catalog.categories()
    assert categories["Loss Functions"] == ["CrossEntropy", "MSE"]
    assert categories["Optimizers"] == ["SGD", "Adam"]


def test_catalog_is_read_only_and_lookup_errors():
    catalog = default_catalog()
    with pytest.raises(TypeError):
        catalog["Dense"] = catalog["Dense"]  # type: ignore[index]
    with pytest.raises(blockml.UnknownBlockTypeError, match="Unknown block type: Teleport"):
        catalog.require("Teleport")
    assert catalog.get("Teleport") is None


def test_port_templates_and_defaults():
    dense = default_catalog()["Dense"]
    assert dense.input_port("input").shape == TensorShape.of(BATCH, -1)
    assert dense.output_port("missing") is None
    assert dense.defaults() == {"units": 64, "activation": "relu", "use_bias": True, "bias_init": 0.0}
    loss = default_catalog()["CrossEntropy"].output_port("loss")
    assert loss.shape.rank == 0
    labels = default_catalog()["DataLoader"].output_port("labels")
    assert labels.shape.dtype == "int32"


def test_param_coercion_accepts_editor_strings():
    dense = default_catalog()["Dense"]
    assert dense.coerce_param("units", "128") == 128
    assert dense.coerce_param("units", 32.0) == 32
    assert dense.coerce_param("use_bias", "false") is False
    assert dense.coerce_param("bias_init", "0.5") == 0.5
    assert dense.coerce_param("activation", "softmax") == "softmax"


@pytest.mark.parametrize(
    "name,value",
    [
        ("units", 0),
        ("units", 2.5),
        ("units", "many"),
        ("units", True),
        ("activation", "swish"),
        ("use_bias", "maybe"),
        ("nonexistent", 1),
    ],
)
def test_param_coercion_rejects_invalid(name, value):
    with pytest.raises(blockml.InvalidParameterError):
        default_catalog()["Dense"].coerce_param(name, value)


def test_effective_params_keep_unknown_keys():
    loader = default_catalog()["DataLoader"]
    params = loader.effective_params({"batch_size": "16", "sequence_length": 128})
    assert params["batch_size"] == 16
    assert params["sequence_length"] == 128
    assert params["dataset"] == "mnist"


def test_catalog_can_be_extended_for_fixtures():
    custom = BlockDefinition(
        type="Scale",
        inputs=(Port("input", TensorShape.of(BATCH, -1)),),
        outputs=(Port("output", TensorShape.of(BATCH, -1)),),
        parameters=(integer("factor", 2, minimum=1),),
        computational=True,
    )
    catalog = default_catalog().extended(custom)
    assert "Scale" in catalog
    assert "Scale" not in default_catalog()
    assert catalog["Scale"].defaults() == {"factor": 2}
