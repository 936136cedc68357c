import asyncio
import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import blockml  # noqa: E402
from blockml import Runtime, get_template  # noqa: E402


def _ready_runtime() -> Runtime:
    runtime = Runtime()
    runtime.initialize()
    runtime.build_model_from_graph(get_template("simple-mlp").snapshot())
    runtime.load_dataset("iris")
    return runtime


def test_requires_initialize():
    runtime = Runtime()
    assert not runtime.initialized
    with pytest.raises(blockml.RuntimeNotInitializedError):
        runtime.build_model_from_graph(get_template("simple-mlp").snapshot())
    runtime.initialize()
    assert runtime.initialize() is True
    assert runtime.backend_info["backend"] == "torch"


def test_summary_without_model():
    runtime = Runtime()
    runtime.initialize()
    assert runtime.get_model_summary() == "No model available"


def test_training_needs_model_and_dataset():
    runtime = Runtime()
    runtime.initialize()
    with pytest.raises(blockml.ModelNotReadyError):
        runtime.train_model({"epochs": 1})
    runtime.build_model_from_graph(get_template("simple-mlp").snapshot())
    with pytest.raises(blockml.ModelNotReadyError):
        runtime.train_model({"epochs": 1})


def test_train_and_summary():
    runtime = _ready_runtime()
    assert runtime.get_model_summary().startswith("Model Architecture:\nTotal Layers: 4\n")
    history = runtime.train_model({"epochs": 2, "batchesPerEpoch": 1, "validationBatches": 0})
    assert [m.epoch for m in history] == [1, 2]
    assert not runtime.is_training
    assert runtime.stop_training() is False


def test_stop_from_callback():
    runtime = _ready_runtime()
    history = runtime.train_model(
        {"epochs": 10, "batchesPerEpoch": 1, "validationBatches": 0},
        on_epoch_end=lambda m: runtime.stop_training() if m.epoch == 2 else None,
    )
    assert len(history) == 2


def test_stop_from_another_thread():
    runtime = _ready_runtime()
    started = threading.Event()
    result = {}

    def run():
        result["history"] = runtime.train_model(
            {"epochs": 10000, "batchesPerEpoch": 1, "validationBatches": 0},
            on_epoch_end=lambda m: started.set(),
        )

    worker = threading.Thread(target=run)
    worker.start()
    assert started.wait(30)
    runtime.stop_training(timeout=30)
    worker.join(30)
    assert not worker.is_alive()
    assert 1 <= len(result["history"]) < 10000


def test_simultaneous_starts_never_overlap():
    runtime = _ready_runtime()
    for _ in range(3):
        barrier = threading.Barrier(2)
        events = []
        results = {}
        errors = []

        def run(name):
            barrier.wait()
            try:
                results[name] = runtime.train_model(
                    {"epochs": 5, "batchesPerEpoch": 2, "validationBatches": 0},
                    on_epoch_end=lambda m: events.append(name),
                )
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        workers = [threading.Thread(target=run, args=(name,)) for name in ("a", "b")]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(60)

        assert errors == []
        assert max(len(history) for history in results.values()) == 5
        # One run drains completely before the other reports its first epoch.
        switches = sum(1 for prev, cur in zip(events, events[1:]) if prev != cur)
        assert switches <= 1
        assert not runtime.is_training


def test_async_training():
    runtime = _ready_runtime()
    history = asyncio.run(runtime.train_model_async({"epochs": 2, "batchesPerEpoch": 1, "validationBatches": 0}))
    assert len(history) == 2


def test_dispose_resets_state():
    runtime = _ready_runtime()
    runtime.dispose()
    assert runtime.model is None
    assert runtime.dataset is None
    assert not runtime.initialized
    assert runtime.get_model_summary() == "No model available"


def test_validate_passes_through():
    runtime = Runtime()
    assert runtime.validate(get_template("cnn-mnist").snapshot()) == []
