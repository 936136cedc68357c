import math
import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from blockml.objectives import accuracy, cross_entropy, get_loss, mse, one_hot  # noqa: E402


def test_cross_entropy_on_probabilities_uses_floor():
    probs = torch.tensor([[1.0, 0.0], [0.5, 0.5]])
    loss = cross_entropy(probs, torch.tensor([1, 0]), reduction="none")
    assert loss[0].item() == pytest.approx(-math.log(1e-7), rel=1e-4)
    assert loss[1].item() == pytest.approx(math.log(2), rel=1e-5)


def test_cross_entropy_on_logits_matches_torch():
    logits = torch.tensor([[2.0, -1.0, 0.5], [0.1, 0.2, 3.0]])
    labels = torch.tensor([0, 2])
    expected = torch.nn.functional.cross_entropy(logits, labels)
    assert cross_entropy(logits, labels).item() == pytest.approx(expected.item(), rel=1e-5)


def test_out_of_range_labels_raise():
    with pytest.raises(ValueError, match="Labels must lie in"):
        cross_entropy(torch.zeros(2, 3), torch.tensor([0, 3]))


def test_mse_one_hot_for_integer_labels():
    preds = torch.tensor([[0.0, 1.0], [1.0, 0.0]])
    assert mse(preds, torch.tensor([1, 0])).item() == 0.0
    assert mse(preds, torch.tensor([[0.0, 0.0], [0.0, 0.0]])).item() == pytest.approx(0.5)
    assert one_hot(torch.tensor([2]), 3).tolist() == [[0.0, 0.0, 1.0]]


def test_accuracy_and_lookup():
    preds = torch.tensor([[0.9, 0.1], [0.2, 0.8], [0.6, 0.4]])
    assert accuracy(preds, torch.tensor([0, 1, 1])).item() == pytest.approx(2 / 3)
    assert get_loss("mse") is mse
    with pytest.raises(KeyError):
        get_loss("hinge")
