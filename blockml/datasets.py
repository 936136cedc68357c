"""
Synthetic stand-ins for the datasets a DataLoader block can name.

Each dataset id maps to a DatasetSpec describing its sample shape, class
count and how separable it is. ``SyntheticDataset`` turns a spec into a
deterministic stream of ``(inputs, labels)`` batches drawn around one
prototype per class, so training curves behave like the real data without
any download.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Tuple, Union

import torch
from loguru import logger

from .shapes import TensorShape, batched

Batch = Tuple[torch.Tensor, torch.Tensor]

_SPLITS = ("train", "val")


@dataclass(frozen=True)
class DatasetSpec:
    name: str
    samples: int
    val_samples: int
    features: Tuple[int, ...]
    classes: int
    difficulty: float
    noise_level: float

    def __post_init__(self) -> None:
        if self.samples < 1 or self.val_samples < 1:
            raise ValueError(f"Dataset {self.name!r} needs at least one sample per split")
        if self.classes < 2:
            raise ValueError(f"Dataset {self.name!r} needs at least two classes")
        if not 0.0 < self.difficulty <= 1.0:
            raise ValueError(f"Dataset {self.name!r} difficulty must be in (0, 1]")
        if self.noise_level < 0.0:
            raise ValueError(f"Dataset {self.name!r} noise_level must be >= 0")

    @property
    def feature_size(self) -> int:
        return int(math.prod(self.features))

    @property
    def input_shape(self) -> TensorShape:
        return batched(self.features)

    @property
    def label_shape(self) -> TensorShape:
        return batched((1,), dtype="int32")


DATASETS: Dict[str, DatasetSpec] = {
    "mnist": DatasetSpec("mnist", 60000, 10000, (28, 28, 1), 10, difficulty=0.8, noise_level=0.1),
    "cifar10": DatasetSpec("cifar10", 50000, 10000, (32, 32, 3), 10, difficulty=0.6, noise_level=0.15),
    "iris": DatasetSpec("iris", 120, 30, (4,), 3, difficulty=0.9, noise_level=0.05),
    "text": DatasetSpec("text", 2000, 500, (128, 512), 2, difficulty=0.7, noise_level=0.1),
}

DEFAULT_DATASET = "mnist"


def get_dataset_spec(name: Optional[str]) -> DatasetSpec:
    """Look up ``name``; unknown ids fall back to mnist."""
    if name is None:
        return DATASETS[DEFAULT_DATASET]
    spec = DATASETS.get(str(name).lower())
    if spec is None:
        logger.warning("Unknown dataset {!r}; falling back to {}", name, DEFAULT_DATASET)
        return DATASETS[DEFAULT_DATASET]
    return spec


@dataclass
class SyntheticDataset:
    """
    Deterministic batches for one split of a DatasetSpec.

    Every class gets a fixed prototype drawn from ``seed``. A sample is its
    class prototype scaled by ``difficulty`` plus Gaussian noise, so easier
    datasets are more separable. The train split draws fresh samples each
    epoch; the val split repeats the same samples every epoch.
    """

    spec: DatasetSpec
    split: str = "train"
    batch_size: int = 32
    seed: int = 0
    max_batches: Optional[int] = None
    _prototypes: torch.Tensor = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.split not in _SPLITS:
            raise ValueError(f"split must be one of {_SPLITS}, got {self.split!r}")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_batches is not None and self.max_batches < 1:
            raise ValueError("max_batches must be >= 1 when provided")
        gen = torch.Generator().manual_seed(self.seed)
        self._prototypes = torch.randn((self.spec.classes, *self.spec.features), generator=gen)

    @property
    def num_samples(self) -> int:
        return self.spec.samples if self.split == "train" else self.spec.val_samples

    @property
    def batches_per_epoch(self) -> int:
        full = max(1, math.ceil(self.num_samples / self.batch_size))
        return full if self.max_batches is None else min(full, self.max_batches)

    @property
    def num_classes(self) -> int:
        return self.spec.classes

    def _generator(self, epoch: int, step: int) -> torch.Generator:
        split_offset = _SPLITS.index(self.split) + 1
        epoch_key = epoch if self.split == "train" else 0
        return torch.Generator().manual_seed(
            self.seed * 1_000_003 + split_offset * 7_919 + epoch_key * 101 + step
        )

    def iter_batches(self, epoch: int = 1) -> Iterator[Batch]:
        """Yield ``(inputs [B, *features] float32, labels [B] int64)`` batches."""
        remaining = self.num_samples
        for step in range(self.batches_per_epoch):
            size = min(self.batch_size, remaining)
            remaining -= size
            gen = self._generator(epoch, step)
            labels = torch.randint(0, self.spec.classes, (size,), generator=gen)
            noise = torch.randn((size, *self.spec.features), generator=gen)
            scale = (1.0 - self.spec.difficulty) + self.spec.noise_level
            inputs = self.spec.difficulty * self._prototypes[labels] + scale * noise
            yield inputs, labels

    def metadata(self) -> Dict[str, Union[str, int]]:
        return {
            "dataset": self.spec.name,
            "split": self.split,
            "num_samples": self.num_samples,
            "num_classes": self.num_classes,
            "batch_size": self.batch_size,
            "batches_per_epoch": self.batches_per_epoch,
        }

    def summary(self) -> str:
        meta = self.metadata()
        features = " × ".join(str(d) for d in self.spec.features)
        return (
            f"{meta['dataset']} {meta['split']} split: {meta['num_samples']} samples of "
            f"{features} ({meta['num_classes']} classes, batch={meta['batch_size']}, "
            f"steps/epoch={meta['batches_per_epoch']})"
        )


def load_dataset(
    name: Optional[str],
    *,
    batch_size: int = 32,
    seed: int = 0,
    max_batches: Optional[int] = None,
    val_batches: Optional[int] = None,
) -> Tuple[SyntheticDataset, SyntheticDataset]:
    """Train and validation splits for dataset ``name`` sharing one set of prototypes."""
    spec = get_dataset_spec(name)
    train = SyntheticDataset(spec, "train", batch_size, seed, max_batches)
    val = SyntheticDataset(spec, "val", batch_size, seed, val_batches)
    return train, val
