#!/usr/bin/env python3
"""
Simple example: check gradient averaging across real worker processes.

Every rank builds a one-parameter model, plants the gradient ``rank + 1``
and runs it through the same GradientAverager the training loop uses. With
three workers every rank must end up holding (1 + 2 + 3) / 3 = 2.

Requirements:
- PyTorch with the Gloo backend
- Run with: torchrun --standalone --nproc_per_node=3 examples/gradient_average_check.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import torch
import torch.nn as nn

# Add the project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dist_mnist import config as config_utils
from dist_mnist import distributed as dist_utils
from dist_mnist.config import TrainingConfig
from dist_mnist.trainer import GradientAverager


def main() -> int:
    """Run the averaging check on this rank."""
    world_size = int(os.environ.get("WORLD_SIZE", "1"))
    resolved = config_utils.resolve_config([], overrides=[f"training.total_batch_size={world_size}"])
    cfg = TrainingConfig.from_mapping(resolved)

    dist_utils.init_distributed(cfg)
    try:
        model = nn.Linear(1, 1, bias=False)
        model.weight.grad = torch.full_like(model.weight, float(cfg.rank + 1))

        GradientAverager(cfg.world_size, on_error="raise").synchronize(model)

        expected = (cfg.world_size + 1) / 2.0
        got = float(model.weight.grad.item())
        print(f"rank={cfg.rank} world_size={cfg.world_size} averaged_grad={got} expected={expected}", flush=True)
        return 0 if abs(got - expected) < 1e-6 else 1
    finally:
        dist_utils.destroy_process_group()


if __name__ == "__main__":
    raise SystemExit(main())
