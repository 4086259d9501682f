### dist_mnist/metrics.py
## Per-region step timing and epoch accuracy bookkeeping.

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import math
import time
from typing import Dict, Iterable

import torch

TRAIN_REGIONS = (
    "forward",
    "backward",
    "allreduce",
    "opt_step",
    "batch",
)


def _cuda_sync_if_needed(sync: bool) -> None:
    if sync and torch.cuda.is_available():
        torch.cuda.synchronize()


def _cuda_events_available() -> bool:
    return torch.cuda.is_available()


def percentile(values: list[float], q: float) -> float:
    """Linear-interpolated percentile, q in [0, 1]."""
    if not values:
        return 0.0
    if len(values) == 1:
        return values[0]
    sorted_vals = sorted(values)
    k = (len(sorted_vals) - 1) * q
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return sorted_vals[int(k)]
    return sorted_vals[f] + (sorted_vals[c] - sorted_vals[f]) * (k - f)


def summarize_samples_ms(samples_ms: list[float]) -> Dict[str, float]:
    if not samples_ms:
        return {"count": 0.0, "sum_ms": 0.0, "avg_ms": 0.0, "p50_ms": 0.0, "p95_ms": 0.0}
    total = sum(samples_ms)
    return {
        "count": float(len(samples_ms)),
        "sum_ms": total,
        "avg_ms": total / len(samples_ms),
        "p50_ms": percentile(samples_ms, 0.50),
        "p95_ms": percentile(samples_ms, 0.95),
    }


@dataclass
class TimerRegion:
    name: str
    mode: str = "sync"
    durations_s: list[float] = field(default_factory=list)
    event_pairs: list[tuple[object, object]] = field(default_factory=list)
    _start_s: float | None = None
    _start_event: object | None = None

    def start(self) -> None:
        if self._start_s is not None or self._start_event is not None:
            raise RuntimeError(f"Timer region '{self.name}' already started.")

        if self.mode == "cuda_events" and _cuda_events_available():
            self._start_event = torch.cuda.Event(enable_timing=True)
            self._start_event.record(torch.cuda.current_stream())
            return

        _cuda_sync_if_needed(self.mode == "sync")
        self._start_s = time.perf_counter()

    def stop(self) -> None:
        if self._start_s is None and self._start_event is None:
            raise RuntimeError(f"Timer region '{self.name}' was not started.")

        if self._start_event is not None:
            end_event = torch.cuda.Event(enable_timing=True)
            end_event.record(torch.cuda.current_stream())
            self.event_pairs.append((self._start_event, end_event))
            self._start_event = None
            return

        _cuda_sync_if_needed(self.mode == "sync")
        self.durations_s.append(time.perf_counter() - self._start_s)
        self._start_s = None

    def samples_ms(self) -> list[float]:
        samples = [d * 1e3 for d in self.durations_s]
        samples.extend(float(start.elapsed_time(end)) for start, end in self.event_pairs)
        return samples

    def summary_ms(self) -> Dict[str, float]:
        return summarize_samples_ms(self.samples_ms())


class TimerRegistry:
    """Named timing regions; ``with timers.time("forward"): ...``."""

    def __init__(self, regions: Iterable[str] = TRAIN_REGIONS, sync_mode: str = "sync") -> None:
        self._sync_mode = sync_mode
        self._regions: Dict[str, TimerRegion] = {
            name: TimerRegion(name, mode=sync_mode) for name in regions
        }

    def region(self, name: str) -> TimerRegion:
        if name not in self._regions:
            self._regions[name] = TimerRegion(name, mode=self._sync_mode)
        return self._regions[name]

    @contextmanager
    def time(self, name: str):
        region = self.region(name)
        region.start()
        try:
            yield
        finally:
            region.stop()

    def summary(self) -> Dict[str, Dict[str, float]]:
        if self._sync_mode == "cuda_events" and _cuda_events_available():
            torch.cuda.synchronize()
        return {name: region.summary_ms() for name, region in self._regions.items()}


def accuracy_pct(correct: int, samples: int) -> float:
    """100 * correct / samples; 0.0 for an empty shard."""
    if samples <= 0:
        return 0.0
    return 100.0 * correct / samples


@dataclass
class EpochStats:
    epoch: int
    rank: int
    correct: int = 0
    samples: int = 0
    loss_sum: float = 0.0
    batches: int = 0
    sync_failures: int = 0
    timings_ms: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def accuracy(self) -> float:
        return accuracy_pct(self.correct, self.samples)

    @property
    def mean_loss(self) -> float:
        return self.loss_sum / self.batches if self.batches else 0.0

    def to_record(self) -> dict[str, object]:
        return {
            "phase": "train",
            "epoch": self.epoch,
            "rank": self.rank,
            "correct": self.correct,
            "samples": self.samples,
            "accuracy": self.accuracy,
            "mean_loss": self.mean_loss,
            "batches": self.batches,
            "sync_failures": self.sync_failures,
            "timings_ms": self.timings_ms,
        }


@dataclass
class EvalResult:
    loss: float
    correct: int
    samples: int

    @property
    def accuracy(self) -> float:
        return accuracy_pct(self.correct, self.samples)

    def to_record(self) -> dict[str, object]:
        return {
            "phase": "test",
            "loss": self.loss,
            "correct": self.correct,
            "samples": self.samples,
            "accuracy": self.accuracy,
        }
