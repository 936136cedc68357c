from __future__ import annotations

import asyncio
import math
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import torch
from loguru import logger

from .compiler import MODEL_INPUT, CompiledModel
from .datasets import SyntheticDataset, load_dataset
from .errors import ModelNotReadyError
from .executor import Inputs, forward
from .objectives import accuracy, get_loss

if TYPE_CHECKING:
    from .diagnostics import GradientWatcher

OPTIMIZERS = ("sgd", "adam")

# UI / legacy spellings accepted by TrainingConfig.from_mapping.
_LOSS_ALIASES = {
    "crossentropy": "crossEntropy",
    "categoricalcrossentropy": "crossEntropy",
    "sparsecategoricalcrossentropy": "crossEntropy",
    "mse": "mse",
    "meansquarederror": "mse",
}

_CONFIG_KEYS = {
    "epochs": "epochs",
    "batchSize": "batch_size",
    "batch_size": "batch_size",
    "learningRate": "learning_rate",
    "learning_rate": "learning_rate",
    "lr": "learning_rate",
    "optimizer": "optimizer",
    "lossFunction": "loss_function",
    "loss_function": "loss_function",
    "loss": "loss_function",
    "batchesPerEpoch": "batches_per_epoch",
    "batches_per_epoch": "batches_per_epoch",
    "validationBatches": "validation_batches",
    "validation_batches": "validation_batches",
    "momentum": "momentum",
    "lrDecay": "lr_decay",
    "lr_decay": "lr_decay",
    "lrDecayEvery": "lr_decay_every",
    "lr_decay_every": "lr_decay_every",
    "gradClip": "grad_clip",
    "grad_clip": "grad_clip",
    "epochDelay": "epoch_delay",
    "epoch_delay": "epoch_delay",
    "seed": "seed",
}


def normalize_loss_name(name: str) -> str:
    key = str(name).replace("_", "").replace("-", "").lower()
    try:
        return _LOSS_ALIASES[key]
    except KeyError:
        raise ValueError(f"Unsupported loss function {name!r}") from None


@dataclass(frozen=True)
class TrainingConfig:
    epochs: int = 10
    batch_size: int = 32
    learning_rate: float = 0.001
    optimizer: str = "adam"
    loss_function: str = "crossEntropy"
    batches_per_epoch: Optional[int] = 20
    validation_batches: int = 2
    momentum: float = 0.0
    lr_decay: float = 0.95
    lr_decay_every: int = 10
    grad_clip: Optional[float] = None
    epoch_delay: float = 0.0
    seed: int = 0

    def __post_init__(self) -> None:
        if self.epochs < 1:
            raise ValueError("epochs must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if not self.learning_rate > 0:
            raise ValueError("learning_rate must be > 0")
        optimizer = str(self.optimizer).lower()
        if optimizer not in OPTIMIZERS:
            raise ValueError(f"optimizer must be one of {OPTIMIZERS}, got {self.optimizer!r}")
        object.__setattr__(self, "optimizer", optimizer)
        object.__setattr__(self, "loss_function", normalize_loss_name(self.loss_function))
        if self.batches_per_epoch is not None and self.batches_per_epoch < 1:
            raise ValueError("batches_per_epoch must be >= 1 when provided")
        if self.validation_batches < 0:
            raise ValueError("validation_batches must be >= 0")
        if self.momentum < 0:
            raise ValueError("momentum must be >= 0")
        if not 0 < self.lr_decay <= 1:
            raise ValueError("lr_decay must be in (0, 1]")
        if self.lr_decay_every < 1:
            raise ValueError("lr_decay_every must be >= 1")
        if self.grad_clip is not None and self.grad_clip <= 0:
            raise ValueError("grad_clip must be > 0 when provided")
        if self.epoch_delay < 0:
            raise ValueError("epoch_delay must be >= 0")

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "TrainingConfig":
        """
        Build from a UI/JSON dictionary. camelCase and snake_case keys are both
        accepted; unrecognised keys are ignored.
        """
        kwargs: Dict[str, Any] = {}
        for key, value in cfg.items():
            field_name = _CONFIG_KEYS.get(key)
            if field_name is not None:
                kwargs[field_name] = value
        return cls(**kwargs)

    def learning_rate_at(self, epoch: int) -> float:
        """Step decay: ``lr * lr_decay ** floor((epoch - 1) / lr_decay_every)`` for 1-based epochs."""
        return self.learning_rate * self.lr_decay ** math.floor((epoch - 1) / self.lr_decay_every)


@dataclass(frozen=True)
class TrainingMetrics:
    epoch: int
    loss: float
    accuracy: float
    val_loss: Optional[float] = None
    val_accuracy: Optional[float] = None
    learning_rate: Optional[float] = None
    gradient_norm: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"epoch": self.epoch, "loss": self.loss, "accuracy": self.accuracy}
        for key, value in (
            ("valLoss", self.val_loss),
            ("valAccuracy", self.val_accuracy),
            ("learningRate", self.learning_rate),
            ("gradientNorm", self.gradient_norm),
        ):
            if value is not None:
                out[key] = value
        return out

    def to_text(self) -> str:
        text = f"Epoch {self.epoch} loss={self.loss:.4f} acc={self.accuracy:.4f}"
        if self.val_loss is not None:
            text += f" val_loss={self.val_loss:.4f}"
        if self.val_accuracy is not None:
            text += f" val_acc={self.val_accuracy:.4f}"
        if self.learning_rate is not None:
            text += f" lr={self.learning_rate:.2e}"
        if self.gradient_norm is not None:
            text += f" grad_norm={self.gradient_norm:.4e}"
        return text


EpochCallback = Callable[[TrainingMetrics], None]
CompleteCallback = Callable[[List[TrainingMetrics]], None]


class Trainer:
    """
    Epoch loop over a CompiledModel.

    ``stop()`` may be called from any thread or from ``on_epoch_end``; it is
    honoured at the next epoch boundary, so the running epoch always
    completes and is reported. The flag is never cleared, so a stopped
    trainer runs no further epochs.
    """

    def __init__(
        self,
        model: CompiledModel,
        dataset: SyntheticDataset,
        config: TrainingConfig,
        *,
        val_dataset: Optional[SyntheticDataset] = None,
        on_epoch_end: Optional[EpochCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        grad_monitor: Optional["GradientWatcher"] = None,
        grad_summary_top_k: Optional[int] = 5,
    ) -> None:
        self.model = model
        self.dataset = dataset
        self.config = config
        self.val_dataset = val_dataset
        self.on_epoch_end = on_epoch_end
        self.on_complete = on_complete
        self.grad_monitor = grad_monitor
        self.grad_summary_top_k = grad_summary_top_k
        self.loss_fn = get_loss(config.loss_function)
        self.optimizer: Optional[torch.optim.Optimizer] = None
        self.history: List[TrainingMetrics] = []
        self.finished = threading.Event()
        self._stop = threading.Event()
        self._running = False
        self._generator = torch.Generator().manual_seed(config.seed)

    # --- Control ---

    def stop(self) -> None:
        self._stop.set()

    @property
    def is_training(self) -> bool:
        return self._running

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def run(self) -> List[TrainingMetrics]:
        self._begin()
        try:
            for epoch in range(1, self.config.epochs + 1):
                if self._stop.is_set():
                    break
                self._record(self._train_epoch(epoch))
        except BaseException:
            self._end()
            raise
        return self._complete()

    async def run_async(self) -> List[TrainingMetrics]:
        """Same loop as ``run``, yielding to the event loop for ``epoch_delay`` between epochs."""
        self._begin()
        try:
            for epoch in range(1, self.config.epochs + 1):
                if self._stop.is_set():
                    break
                self._record(self._train_epoch(epoch))
                if epoch < self.config.epochs:
                    await asyncio.sleep(self.config.epoch_delay)
        except BaseException:
            self._end()
            raise
        return self._complete()

    # --- Loop internals ---

    def _begin(self) -> None:
        if self._running:
            raise RuntimeError("Trainer is already running")
        self.history = []
        self.finished.clear()
        self._running = True
        logger.info("Training started: {}", self.config)

    def _end(self) -> None:
        self._running = False
        self.finished.set()

    def _complete(self) -> List[TrainingMetrics]:
        history = list(self.history)
        self._end()
        if self._stop.is_set() and len(history) < self.config.epochs:
            logger.info("Training stopped after {} epoch(s)", len(history))
        else:
            logger.info("Training finished after {} epoch(s)", len(history))
        if self.on_complete is not None:
            self.on_complete(history)
        return history

    def _record(self, metrics: TrainingMetrics) -> None:
        self.history.append(metrics)
        logger.info(metrics.to_text())
        self._log_gradient_summary()
        if self.on_epoch_end is not None:
            self.on_epoch_end(metrics)

    def _parameters(self) -> List[torch.nn.Parameter]:
        # Output layer first, mirroring the order gradients are produced.
        return [w for layer in reversed(self.model.weight_bearing_layers()) for w in layer.weights.values()]

    def _ensure_optimizer(self) -> Optional[torch.optim.Optimizer]:
        if self.optimizer is not None:
            return self.optimizer
        params = self._parameters()
        if not params:
            return None
        if self.config.optimizer == "sgd":
            self.optimizer = torch.optim.SGD(params, lr=self.config.learning_rate, momentum=self.config.momentum)
        else:
            self.optimizer = torch.optim.Adam(params, lr=self.config.learning_rate)
        return self.optimizer

    def _feeds(self, inputs: torch.Tensor, labels: torch.Tensor) -> Inputs:
        if not self.model.port_inputs:
            return inputs
        feeds: Dict[str, torch.Tensor] = {MODEL_INPUT: inputs}
        for key in self.model.port_inputs:
            if key not in self.model.label_inputs:
                raise ModelNotReadyError(f"Training cannot feed external input {key!r}")
            feeds[key] = labels
        return feeds

    def _train_epoch(self, epoch: int) -> TrainingMetrics:
        optimizer = self._ensure_optimizer()
        lr = self.config.learning_rate_at(epoch)
        if optimizer is not None:
            for group in optimizer.param_groups:
                group["lr"] = lr

        total_loss = 0.0
        total_acc = 0.0
        total_norm = 0.0
        steps = 0
        for inputs, labels in self.dataset.iter_batches(epoch):
            if optimizer is not None:
                optimizer.zero_grad()
            outputs = forward(self.model, self._feeds(inputs, labels), training=True, generator=self._generator)
            loss = self.loss_fn(outputs, labels)
            acc = accuracy(outputs, labels)
            if optimizer is not None and loss.requires_grad:
                loss.backward()
                total_norm += self._gradient_norm()
                if self.config.grad_clip is not None:
                    torch.nn.utils.clip_grad_norm_(self._parameters(), self.config.grad_clip)
                optimizer.step()
            total_loss += float(loss.item())
            total_acc += float(acc.item())
            steps += 1

        steps = max(steps, 1)
        val_loss, val_acc = self._evaluate()
        return TrainingMetrics(
            epoch=epoch,
            loss=total_loss / steps,
            accuracy=total_acc / steps,
            val_loss=val_loss,
            val_accuracy=val_acc,
            learning_rate=lr,
            gradient_norm=total_norm / steps,
        )

    def _gradient_norm(self) -> float:
        norms = [p.grad.detach().norm() for p in self._parameters() if p.grad is not None]
        if not norms:
            return 0.0
        return float(torch.norm(torch.stack(norms)).item())

    @torch.inference_mode()
    def _evaluate(self) -> Tuple[Optional[float], Optional[float]]:
        if self.val_dataset is None:
            return None, None
        total_loss = 0.0
        total_acc = 0.0
        steps = 0
        for inputs, labels in self.val_dataset.iter_batches():
            outputs = forward(self.model, self._feeds(inputs, labels), training=False)
            total_loss += float(self.loss_fn(outputs, labels).item())
            total_acc += float(accuracy(outputs, labels).item())
            steps += 1
        if steps == 0:
            return None, None
        return total_loss / steps, total_acc / steps

    def _log_gradient_summary(self) -> None:
        if self.grad_monitor is None:
            return
        summary = self.grad_monitor.pop_summary(top_k=self.grad_summary_top_k)
        if summary is None:
            return
        for line in summary.to_text().splitlines():
            logger.info("    {}", line)


def build_trainer(
    model: Optional[CompiledModel],
    config: Union[TrainingConfig, Mapping[str, Any], None] = None,
    *,
    on_epoch_end: Optional[EpochCallback] = None,
    on_complete: Optional[CompleteCallback] = None,
    dataset: Optional[SyntheticDataset] = None,
    val_dataset: Optional[SyntheticDataset] = None,
    grad_monitor: Optional["GradientWatcher"] = None,
) -> Trainer:
    """
    Wire a Trainer for ``model``. When ``dataset`` is omitted, the model's
    DataLoader dataset (mnist if none) is loaded with the config's batch
    settings, along with a validation split unless ``validation_batches`` is 0.
    """
    if model is None:
        raise ModelNotReadyError()
    if config is None:
        config = TrainingConfig()
    elif not isinstance(config, TrainingConfig):
        config = TrainingConfig.from_mapping(config)
    if dataset is None:
        train_split, val_split = load_dataset(
            model.dataset,
            batch_size=config.batch_size,
            seed=config.seed,
            max_batches=config.batches_per_epoch,
            val_batches=max(config.validation_batches, 1),
        )
        dataset = train_split
        if val_dataset is None and config.validation_batches > 0:
            val_dataset = val_split
    return Trainer(
        model,
        dataset,
        config,
        val_dataset=val_dataset,
        on_epoch_end=on_epoch_end,
        on_complete=on_complete,
        grad_monitor=grad_monitor,
    )


def train_model(
    model: Optional[CompiledModel],
    config: Union[TrainingConfig, Mapping[str, Any], None] = None,
    on_epoch_end: Optional[EpochCallback] = None,
    on_complete: Optional[CompleteCallback] = None,
    *,
    dataset: Optional[SyntheticDataset] = None,
    val_dataset: Optional[SyntheticDataset] = None,
    grad_monitor: Optional["GradientWatcher"] = None,
) -> List[TrainingMetrics]:
    """
    Train ``model`` and return the per-epoch history.

    ``on_epoch_end`` fires once per completed epoch; ``on_complete`` fires
    once with the whole history.
    """
    trainer = build_trainer(
        model,
        config,
        on_epoch_end=on_epoch_end,
        on_complete=on_complete,
        dataset=dataset,
        val_dataset=val_dataset,
        grad_monitor=grad_monitor,
    )
    return trainer.run()
