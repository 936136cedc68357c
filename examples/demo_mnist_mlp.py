"""
Demo: build the MNIST MLP from an editor snapshot, validate, compile and train.

The graph is the one a user would draw on the canvas:
DataLoader(mnist) → Flatten → Dense(128, relu) → Dense(10, softmax).
"""

from __future__ import annotations

import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import blockml


TRAINING = {
    "epochs": 3,
    "batchSize": 32,
    "learningRate": 1e-3,
    "optimizer": "adam",
    "lossFunction": "categoricalCrossentropy",
    "batchesPerEpoch": 20,
    "validationBatches": 2,
    "seed": 7,
}


def build_snapshot() -> blockml.GraphSnapshot:
    graph = blockml.GraphSnapshot()
    graph.add_node(blockml.Node("data", "DataLoader", {"dataset": "mnist"}, label="MNIST"))
    graph.add_node(blockml.Node("flat", "Flatten"))
    graph.add_node(blockml.Node("hidden", "Dense", {"units": 128, "activation": "relu"}, label="Hidden"))
    graph.add_node(blockml.Node("out", "Dense", {"units": 10, "activation": "softmax"}, label="Output"))
    graph.connect("data", "data", "flat", "input")
    graph.connect("flat", "output", "hidden", "input")
    graph.connect("hidden", "output", "out", "input")
    return graph


def run() -> None:
    blockml.configure_logging("INFO")
    graph = build_snapshot()

    issues = blockml.validate_graph(graph)
    for issue in issues:
        print(f"  ! {issue}")
    if issues:
        return

    runtime = blockml.Runtime()
    runtime.initialize()
    model = runtime.build_model_from_graph(graph)
    print(runtime.get_model_summary())
    runtime.load_dataset(model.dataset or "mnist")

    watcher = blockml.GradientWatcher(model)
    try:
        history = runtime.train_model(
            TRAINING,
            on_epoch_end=lambda m: print(f"[epoch {m.epoch}] {m.as_dict()}"),
        )
        summary = watcher.pop_summary(top_k=3)
        if summary is not None:
            print(summary.to_text())
    finally:
        watcher.close()

    best = max(history, key=lambda m: m.val_accuracy or 0.0)
    print(f"Best val accuracy {best.val_accuracy:.3f} at epoch {best.epoch}")
    runtime.dispose()
    print("Done.")


if __name__ == "__main__":
    run()
