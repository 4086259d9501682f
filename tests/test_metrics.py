## Unit tests for timing regions and epoch statistics.

from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

# Check if torch is available
try:
    import torch  # noqa: F401
    TORCH_AVAILABLE = True
except ImportError:
    TORCH_AVAILABLE = False

pytestmark = pytest.mark.skipif(not TORCH_AVAILABLE, reason="PyTorch not available")

if TORCH_AVAILABLE:
    from dist_mnist import metrics


def test_percentile_interpolates():
    values = [1.0, 2.0, 3.0, 4.0]
    assert metrics.percentile(values, 0.0) == 1.0
    assert metrics.percentile(values, 1.0) == 4.0
    assert metrics.percentile(values, 0.5) == pytest.approx(2.5)
    assert metrics.percentile([], 0.5) == 0.0


def test_summarize_empty_samples():
    summary = metrics.summarize_samples_ms([])
    assert summary["count"] == 0.0
    assert summary["avg_ms"] == 0.0


def test_timer_registry_counts_regions():
    timers = metrics.TimerRegistry(sync_mode="none")
    for _ in range(3):
        with timers.time("forward"):
            pass
    with timers.time("custom"):
        pass

    summary = timers.summary()
    assert summary["forward"]["count"] == 3.0
    assert summary["custom"]["count"] == 1.0
    assert summary["allreduce"]["count"] == 0.0
    assert summary["forward"]["sum_ms"] >= 0.0


def test_timer_region_misuse():
    region = metrics.TimerRegion("x", mode="none")
    with pytest.raises(RuntimeError, match="was not started"):
        region.stop()
    region.start()
    with pytest.raises(RuntimeError, match="already started"):
        region.start()


def test_epoch_stats_accuracy():
    stats = metrics.EpochStats(epoch=1, rank=2, correct=3, samples=4, loss_sum=2.0, batches=2)
    assert stats.accuracy == pytest.approx(75.0)
    assert stats.mean_loss == pytest.approx(1.0)

    record = stats.to_record()
    assert record["phase"] == "train"
    assert record["rank"] == 2
    assert record["accuracy"] == pytest.approx(75.0)


def test_accuracy_of_empty_shard():
    assert metrics.EpochStats(epoch=1, rank=0).accuracy == 0.0
    assert metrics.EvalResult(loss=0.0, correct=0, samples=0).accuracy == 0.0


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
