### dist_mnist/trainer.py
## Synchronous data-parallel training loop and coordinator-side evaluation.
# Per batch: zero grads, forward, NLL loss, backward, allreduce every gradient
# (sorted by parameter name), divide by world size, SGD step, count hits.

from __future__ import annotations

import sys
from typing import Any, Callable, Mapping, Sequence

import torch
import torch.distributed as dist
import torch.nn as nn
import torch.nn.functional as F
from torch.utils.data import DataLoader

from .logging_utils import log_metrics
from .metrics import EpochStats, EvalResult, TimerRegistry


class PartialSyncError(RuntimeError):
    """Some gradients were not summed across all workers this step."""

    def __init__(self, failed: Sequence[str]) -> None:
        self.failed = tuple(failed)
        super().__init__(f"gradient allreduce failed for {len(self.failed)} parameter(s): {', '.join(self.failed)}")


def _dist_all_reduce(tensor: torch.Tensor):
    return dist.all_reduce(tensor, op=dist.ReduceOp.SUM, async_op=True)


def sync_order(model: nn.Module) -> list[tuple[str, nn.Parameter]]:
    """Trainable parameters in lexical name order.

    Every worker must issue its collectives in this same order; nothing
    else is exchanged to line them up.
    """
    return sorted(
        ((name, param) for name, param in model.named_parameters() if param.requires_grad),
        key=lambda item: item[0],
    )


class GradientAverager:
    """Turns each worker's local gradients into the mean over all workers.

    Args:
        world_size: Number of workers contributing to each sum
        all_reduce: Callable issuing an in-place SUM allreduce on a tensor and
            returning a handle with ``wait()``; defaults to
            ``torch.distributed.all_reduce(..., async_op=True)``
        on_error: ``"log"`` reports failed waits on stderr and keeps going;
            ``"raise"`` drains every handle then raises PartialSyncError
    """

    def __init__(
        self,
        world_size: int,
        all_reduce: Callable[[torch.Tensor], Any] | None = None,
        on_error: str = "log",
    ) -> None:
        if world_size < 1:
            raise ValueError(f"world_size must be positive, got {world_size}")
        if on_error not in ("log", "raise"):
            raise ValueError(f"Unsupported on_error policy: {on_error}")
        self.world_size = world_size
        self.all_reduce = all_reduce or _dist_all_reduce
        self.on_error = on_error

    def submit(self, model: nn.Module) -> list[tuple[str, torch.Tensor, Any]]:
        pending: list[tuple[str, torch.Tensor, Any]] = []
        for name, param in sync_order(model):
            if param.grad is None:
                # Still contribute, or the peers' collectives misalign.
                param.grad = torch.zeros_like(param)
            pending.append((name, param.grad, self.all_reduce(param.grad)))
        return pending

    def wait(self, pending: Sequence[tuple[str, torch.Tensor, Any]]) -> list[str]:
        failed: list[str] = []
        for name, _grad, work in pending:
            try:
                work.wait()
            except RuntimeError as exc:
                print(f"sync error on {name}: {exc}", file=sys.stderr, flush=True)
                failed.append(name)
        return failed

    def average(self, pending: Sequence[tuple[str, torch.Tensor, Any]]) -> None:
        with torch.no_grad():
            for _name, grad, _work in pending:
                grad.div_(self.world_size)

    def synchronize(self, model: nn.Module) -> list[str]:
        """Allreduce then average every gradient of model in place.

        Returns:
            Names of parameters whose allreduce failed (only non-empty under
            the ``log`` policy; those gradients are averaged regardless)

        Raises:
            PartialSyncError: Under the ``raise`` policy if any wait failed
        """
        pending = self.submit(model)
        failed = self.wait(pending)
        if failed and self.on_error == "raise":
            raise PartialSyncError(failed)
        self.average(pending)
        return failed


def _shard_len(loader: DataLoader) -> int:
    sampler = loader.sampler
    return len(sampler) if sampler is not None else len(loader.dataset)


def train_epoch(
    model: nn.Module,
    loader: DataLoader,
    optimizer: torch.optim.Optimizer,
    averager: GradientAverager,
    device: torch.device,
    epoch: int,
    rank: int = 0,
    timers: TimerRegistry | None = None,
) -> EpochStats:
    """Run one pass over this worker's shard."""
    timers = timers or TimerRegistry(sync_mode="none")
    set_epoch = getattr(loader.sampler, "set_epoch", None)
    if set_epoch is not None:
        set_epoch(epoch)

    model.train()
    stats = EpochStats(epoch=epoch, rank=rank, samples=_shard_len(loader))

    for data, target in loader:
        data = data.to(device=device, dtype=torch.float32)
        target = target.to(device=device, dtype=torch.long)

        with timers.time("batch"):
            optimizer.zero_grad()
            with timers.time("forward"):
                prediction = model(data)
                loss = F.nll_loss(prediction, target)
            with timers.time("backward"):
                loss.backward()
            with timers.time("allreduce"):
                failed = averager.synchronize(model)
            with timers.time("opt_step"):
                optimizer.step()

        stats.sync_failures += len(failed)
        stats.correct += int((prediction.argmax(dim=1) == target).sum().item())
        stats.loss_sum += float(loss.item())
        stats.batches += 1

    stats.timings_ms = timers.summary()
    return stats


def train(
    model: nn.Module,
    loader: DataLoader,
    optimizer: torch.optim.Optimizer,
    averager: GradientAverager,
    device: torch.device,
    epochs: int,
    rank: int = 0,
    logger: Mapping[str, Any] | None = None,
    timing_mode: str = "sync",
) -> list[EpochStats]:
    history: list[EpochStats] = []
    for epoch in range(1, epochs + 1):
        timers = TimerRegistry(sync_mode=timing_mode)
        stats = train_epoch(model, loader, optimizer, averager, device, epoch, rank=rank, timers=timers)
        print(f"Accuracy in rank {rank} in epoch {epoch} - {stats.accuracy}", flush=True)
        log_metrics(logger, stats.to_record())
        history.append(stats)
    return history


@torch.no_grad()
def evaluate(
    model: nn.Module,
    loader: DataLoader,
    device: torch.device,
    logger: Mapping[str, Any] | None = None,
    verbose: bool = True,
) -> EvalResult:
    """Score model on a held-out loader without touching gradients or peers."""
    model.eval()
    correct = 0
    samples = 0
    loss_total = 0.0

    for data, target in loader:
        data = data.to(device=device, dtype=torch.float32)
        target = target.to(device=device, dtype=torch.long)

        prediction = model(data)
        loss = F.nll_loss(prediction, target)
        if verbose:
            print(f"Test loss - {loss.item()}", flush=True)

        batch = target.size(0)
        loss_total += float(loss.item()) * batch
        samples += batch
        correct += int((prediction.argmax(dim=1) == target).sum().item())

    result = EvalResult(loss=loss_total / samples if samples else 0.0, correct=correct, samples=samples)
    if verbose:
        print(f"Num correct - {result.correct}", flush=True)
        print(f"Test Accuracy - {result.accuracy}", flush=True)
    log_metrics(logger, result.to_record())
    return result
