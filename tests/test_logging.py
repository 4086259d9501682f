## Unit tests for JSONL run logging and aggregation.

from __future__ import annotations

import dataclasses
import json
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
    from analysis import aggregate
    from dist_mnist import logging_utils
    from dist_mnist.config import TrainingConfig


def _cfg(rank=0, out_dir=None):
    return TrainingConfig(
        master_addr="127.0.0.1",
        master_port=29500,
        world_size=2,
        rank=rank,
        out_dir=out_dir,
        run_id="run42",
    )


def test_run_dir_disabled_without_out_dir():
    assert logging_utils.run_dir_for(_cfg()) is None


def test_init_logger_layout(tmp_path):
    cfg0 = _cfg(rank=0, out_dir=str(tmp_path))
    cfg1 = _cfg(rank=1, out_dir=str(tmp_path))
    run_dir = logging_utils.run_dir_for(cfg0)

    logger0 = logging_utils.init_logger(cfg0, run_dir)
    logger1 = logging_utils.init_logger(cfg1, run_dir)

    assert run_dir == tmp_path / "run42"
    assert Path(logger0["metrics_path"]) == run_dir / "rank0" / "metrics.jsonl"
    assert Path(logger1["metrics_path"]) == run_dir / "rank1" / "metrics.jsonl"
    env = json.loads((run_dir / "env.json").read_text())
    assert "torch_version" in env


def test_log_metrics_appends_stamped_records(tmp_path):
    cfg = _cfg(rank=1, out_dir=str(tmp_path))
    logger = logging_utils.init_logger(cfg, logging_utils.run_dir_for(cfg))

    logging_utils.log_metrics(logger, {"phase": "train", "epoch": 1, "rank": 99})
    logging_utils.log_metrics(logger, {"phase": "train", "epoch": 2})

    lines = Path(logger["metrics_path"]).read_text().splitlines()
    records = [json.loads(line) for line in lines]
    assert [r["epoch"] for r in records] == [1, 2]
    assert all(r["run_id"] == "run42" and r["world_size"] == 2 for r in records)
    # Logger identity wins over caller-supplied keys.
    assert records[0]["rank"] == 1


def test_log_metrics_noop_without_logger():
    assert logging_utils.log_metrics(None, {"phase": "train"}) is None


def test_echo_config(capsys):
    logging_utils.echo_config(_cfg())
    out = capsys.readouterr().out
    assert "master: 127.0.0.1" in out
    assert "world size: 2" in out
    assert "interfaces: <hostname>" in out
    assert "#devices: 1" in out
    assert "batch size per worker: 32" in out


def test_echo_config_counts_interfaces(capsys):
    cfg = dataclasses.replace(_cfg(), network_interfaces=("eth0", "eth1"))
    logging_utils.echo_config(cfg)
    out = capsys.readouterr().out
    assert "interfaces: eth0,eth1" in out
    assert "#devices: 2" in out
    assert "nccl process group" not in out


def test_echo_config_nccl(capsys):
    logging_utils.echo_config(dataclasses.replace(_cfg(), backend="nccl"))
    out = capsys.readouterr().out
    assert "device: cuda" in out
    assert "nccl process group" in out
    assert "#devices" not in out


def test_aggregate_splits_epoch_and_eval_tables(tmp_path):
    for rank in (0, 1):
        cfg = _cfg(rank=rank, out_dir=str(tmp_path))
        logger = logging_utils.init_logger(cfg, logging_utils.run_dir_for(cfg))
        for epoch in (2, 1):
            logging_utils.log_metrics(
                logger,
                {
                    "phase": "train",
                    "epoch": epoch,
                    "accuracy": 50.0,
                    "sync_failures": 0,
                    "timings_ms": {"allreduce": {"avg_ms": 1.5, "p95_ms": 2.0, "count": 3.0}},
                },
            )
        if rank == 0:
            logging_utils.log_metrics(logger, {"phase": "test", "loss": 0.3, "correct": 9, "samples": 10, "accuracy": 90.0})

    epochs, evals = aggregate.split_tables(tmp_path)

    assert [(r["rank"], r["epoch"]) for r in epochs] == [(0, 1), (0, 2), (1, 1), (1, 2)]
    assert epochs[0]["allreduce_avg_ms"] == 1.5
    assert epochs[0]["forward_avg_ms"] is None
    assert "allreduce_count" not in epochs[0]
    assert evals == [
        {"run_id": "run42", "world_size": 2, "backend": "gloo", "samples": 10, "correct": 9, "accuracy": 90.0, "loss": 0.3}
    ]

    out_csv = tmp_path / "tables" / "epochs.csv"
    aggregate.write_table(out_csv, aggregate.epoch_columns(), epochs)
    lines = out_csv.read_text().splitlines()
    assert lines[0].startswith("run_id,world_size,backend,rank,epoch")
    assert len(lines) == 5


def test_aggregate_rejects_corrupt_record(tmp_path):
    path = tmp_path / "run" / "rank0" / "metrics.jsonl"
    path.parent.mkdir(parents=True)
    path.write_text('{"phase": "train"}\n{not json\n')

    with pytest.raises(ValueError, match="metrics.jsonl:2"):
        aggregate.split_tables(tmp_path)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
