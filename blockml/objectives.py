# blockml/objectives.py

from __future__ import annotations

from typing import Callable, Dict

import torch
import torch.nn.functional as F

PROBABILITY_FLOOR = 1e-7

LossFn = Callable[..., torch.Tensor]


def _as_rows(predictions: torch.Tensor) -> torch.Tensor:
    """[B, ...] -> [B, C]."""
    if predictions.dim() == 1:
        return predictions.unsqueeze(0)
    return predictions.reshape(predictions.shape[0], -1)


def _as_labels(labels: torch.Tensor, num_classes: int) -> torch.Tensor:
    labels = labels.reshape(-1).long()
    if labels.numel() and (int(labels.min()) < 0 or int(labels.max()) >= num_classes):
        raise ValueError(
            f"Labels must lie in [0, {num_classes}); got range "
            f"[{int(labels.min())}, {int(labels.max())}]. Is the output layer wide enough?"
        )
    return labels


def one_hot(labels: torch.Tensor, num_classes: int) -> torch.Tensor:
    return F.one_hot(_as_labels(labels, num_classes), num_classes).to(torch.float32)


def looks_like_probabilities(rows: torch.Tensor, atol: float = 1e-3) -> bool:
    with torch.no_grad():
        if rows.numel() == 0 or bool((rows < 0).any()):
            return False
        sums = rows.sum(dim=-1)
        return bool(torch.allclose(sums, torch.ones_like(sums), atol=atol))


def _reduce(per_sample: torch.Tensor, reduction: str) -> torch.Tensor:
    if reduction == "mean":
        return per_sample.mean()
    if reduction == "sum":
        return per_sample.sum()
    if reduction == "none":
        return per_sample
    raise ValueError(f"Unsupported reduction {reduction!r}")


def cross_entropy(predictions: torch.Tensor, labels: torch.Tensor, reduction: str = "mean") -> torch.Tensor:
    """
    Categorical cross-entropy against integer labels.

    Softmax outputs are used as probabilities with a floor of 1e-7 before the
    log; anything else is treated as logits.
    """
    rows = _as_rows(predictions).to(torch.float32)
    targets = _as_labels(labels, rows.shape[-1])
    if looks_like_probabilities(rows):
        picked = rows.gather(1, targets.unsqueeze(1)).squeeze(1)
        per_sample = -torch.log(picked.clamp_min(PROBABILITY_FLOOR))
    else:
        per_sample = -F.log_softmax(rows, dim=-1).gather(1, targets.unsqueeze(1)).squeeze(1)
    return _reduce(per_sample, reduction)


def mse(predictions: torch.Tensor, labels: torch.Tensor, reduction: str = "mean") -> torch.Tensor:
    """Mean squared error per sample; integer labels are one-hot encoded to the prediction width."""
    rows = _as_rows(predictions).to(torch.float32)
    if labels.dtype.is_floating_point:
        targets = labels.reshape(rows.shape[0], -1).to(torch.float32)
    else:
        targets = one_hot(labels, rows.shape[-1])
    per_sample = ((rows - targets) ** 2).mean(dim=-1)
    return _reduce(per_sample, reduction)


@torch.no_grad()
def accuracy(predictions: torch.Tensor, labels: torch.Tensor) -> torch.Tensor:
    rows = _as_rows(predictions)
    correct = rows.argmax(dim=-1) == labels.reshape(-1).long()
    return correct.to(torch.float32).mean()


LOSSES: Dict[str, LossFn] = {
    "crossEntropy": cross_entropy,
    "mse": mse,
}


def get_loss(name: str) -> LossFn:
    try:
        return LOSSES[name]
    except KeyError:
        raise KeyError(f"Unknown loss function {name!r}; expected one of {sorted(LOSSES)}") from None
