# blockml/runtime.py

from __future__ import annotations

import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import torch
from loguru import logger

from .catalog import BlockCatalog, resolve_catalog
from .compiler import CompiledModel, ModelCompiler
from .datasets import DatasetSpec, get_dataset_spec
from .errors import ModelNotReadyError, RuntimeNotInitializedError
from .graph import ConnectionLike, GraphSnapshot, NodeLike
from .shapes import TensorShape
from .training import (
    CompleteCallback,
    EpochCallback,
    Trainer,
    TrainingConfig,
    TrainingMetrics,
    build_trainer,
)
from .validation import ConnectionIssue, GraphValidator

ConfigLike = Union[TrainingConfig, Mapping[str, Any], None]


class Runtime:
    """
    Session facade used by the editor: one compiled model, one dataset and at
    most one active training run at a time.

    Responsibilities:
      - Gate model building and training behind ``initialize()``.
      - Stop any active run before a new build or training run starts.
      - Keep the most recent model summary for display.
    """

    def __init__(self, catalog: Optional[BlockCatalog] = None, *, seed: int = 0) -> None:
        self.catalog = resolve_catalog(catalog)
        self.seed = seed
        self.model: Optional[CompiledModel] = None
        self.dataset: Optional[DatasetSpec] = None
        self._initialized = False
        self._lock = threading.Lock()
        self._trainer: Optional[Trainer] = None
        self._trainer_thread: Optional[int] = None

    # --- Lifecycle ---

    def initialize(self) -> bool:
        if not self._initialized:
            self._initialized = True
            logger.info("Runtime initialized: {}", self.backend_info)
        return True

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def backend_info(self) -> Dict[str, Any]:
        return {
            "backend": "torch",
            "version": torch.__version__,
            "device": "cpu",
            "threads": torch.get_num_threads(),
        }

    def dispose(self) -> None:
        self.stop_training()
        self.model = None
        self.dataset = None
        self._initialized = False
        logger.info("Runtime disposed")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeNotInitializedError()

    # --- Graph ---

    def validate(
        self,
        nodes: Union[GraphSnapshot, Iterable[NodeLike]],
        edges: Optional[Iterable[ConnectionLike]] = None,
    ) -> List[ConnectionIssue]:
        return GraphValidator(self.catalog).validate_graph(nodes, edges)

    def build_model_from_graph(
        self,
        nodes: Union[GraphSnapshot, Iterable[NodeLike]],
        edges: Optional[Iterable[ConnectionLike]] = None,
        input_shape: Optional[Union[TensorShape, Sequence[int]]] = None,
    ) -> CompiledModel:
        self._require_initialized()
        self.stop_training()
        self.model = ModelCompiler(self.catalog, self.seed).compile(nodes, edges, input_shape)
        return self.model

    def load_dataset(self, name: str) -> DatasetSpec:
        self.dataset = get_dataset_spec(name)
        logger.info("Loaded dataset {}", self.dataset.name)
        return self.dataset

    def get_model_summary(self) -> str:
        if self.model is None:
            return "No model available"
        return self.model.summary

    # --- Training ---

    @property
    def is_training(self) -> bool:
        trainer = self._trainer
        return trainer is not None and trainer.is_training

    def _start_session(
        self,
        config: ConfigLike,
        on_epoch_end: Optional[EpochCallback],
        on_complete: Optional[CompleteCallback],
    ) -> Trainer:
        self._require_initialized()
        if self.model is None or self.dataset is None:
            raise ModelNotReadyError()
        if config is None:
            config = TrainingConfig()
        elif not isinstance(config, TrainingConfig):
            config = TrainingConfig.from_mapping(config)
        model = self.model
        dataset = self.dataset
        trainer = build_trainer(model, config, on_epoch_end=on_epoch_end, on_complete=on_complete)
        me = threading.get_ident()
        while True:
            with self._lock:
                active = self._trainer
                owner = self._trainer_thread
                if active is None or owner == me:
                    # Same thread: a nested start from the active run's callback.
                    if active is not None:
                        active.stop()
                    self._trainer = trainer
                    self._trainer_thread = me
                    break
            if not active.stop_requested:
                active.stop()
                logger.info("Training stop requested")
            active.finished.wait(0.05)
            if active.finished.is_set() and not active.is_training:
                self._end_session(active)
        model.dataset = dataset.name
        logger.info("Training session started on {}", dataset.name)
        return trainer

    def _end_session(self, trainer: Trainer) -> None:
        with self._lock:
            if self._trainer is trainer:
                self._trainer = None
                self._trainer_thread = None

    def train_model(
        self,
        config: ConfigLike = None,
        on_epoch_end: Optional[EpochCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> List[TrainingMetrics]:
        trainer = self._start_session(config, on_epoch_end, on_complete)
        try:
            return trainer.run()
        finally:
            self._end_session(trainer)

    async def train_model_async(
        self,
        config: ConfigLike = None,
        on_epoch_end: Optional[EpochCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> List[TrainingMetrics]:
        trainer = self._start_session(config, on_epoch_end, on_complete)
        try:
            return await trainer.run_async()
        finally:
            self._end_session(trainer)

    def stop_training(self, timeout: Optional[float] = None) -> bool:
        """
        Ask the active run to stop at its next epoch boundary.

        From another thread this waits (up to ``timeout``) for the run to
        drain; from the run's own thread it only sets the flag. Returns True
        if a run was active.
        """
        with self._lock:
            trainer = self._trainer
            owner = self._trainer_thread
        if trainer is None:
            return False
        trainer.stop()
        logger.info("Training stop requested")
        if owner != threading.get_ident() and trainer.is_training:
            trainer.finished.wait(timeout)
        return True
