"""
Demo: compile every starter template, print its summary, and record one
forward pass to show the per-layer output shapes.
"""

from __future__ import annotations

import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import blockml


def run() -> None:
    for template in blockml.list_templates():
        snapshot = template.snapshot()
        issues = blockml.validate_graph(snapshot)
        print(f"== {template.name} ({template.suggested_dataset}, {len(issues)} issue(s))")

        model = blockml.compile_graph(snapshot)
        print(model.summary)
        for warning in model.warnings:
            print(f"  warning: {warning}")

        batch = torch.randn(2, *model.input_shape.sample_dims)
        with blockml.record(model) as trace:
            blockml.forward(model, batch)
        for node, shape in trace.shapes().items():
            print(f"  {node:<14} {tuple(shape)}")
        print()


if __name__ == "__main__":
    run()
