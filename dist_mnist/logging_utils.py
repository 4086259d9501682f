### dist_mnist/logging_utils.py
## Structured run logging to JSONL plus console echo helpers.

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping
import json
import platform
import sys
import time

import torch
import torch.distributed as dist
import torchvision

from .config import TrainingConfig


def collect_env_info() -> dict[str, Any]:
    info: dict[str, Any] = {
        "python_version": sys.version.split()[0],
        "platform": platform.platform(),
        "executable": sys.executable,
        "torch_version": torch.__version__,
        "cuda_available": torch.cuda.is_available(),
        "gloo_available": dist.is_available() and dist.is_gloo_available(),
    }
    if torch.cuda.is_available():
        info["cuda_device_name"] = torch.cuda.get_device_name(0)
        info["cuda_device_count"] = torch.cuda.device_count()
        info["nccl_available"] = dist.is_nccl_available()
    info["torchvision_version"] = torchvision.__version__
    return info


def run_dir_for(cfg: TrainingConfig) -> Path | None:
    if cfg.out_dir is None:
        return None
    return Path(cfg.out_dir) / cfg.run_id


def init_logger(cfg: TrainingConfig, run_dir: Path) -> dict[str, Any]:
    """Prepare this rank's log directory and return a logger handle.

    Rank 0 additionally writes ``env.json`` at the run root.
    """
    rank_dir = run_dir / f"rank{cfg.rank}"
    rank_dir.mkdir(parents=True, exist_ok=True)

    if cfg.is_coordinator:
        env_path = run_dir / "env.json"
        env_path.write_text(json.dumps(collect_env_info(), indent=2, sort_keys=True), encoding="utf-8")

    metrics_path = rank_dir / "metrics.jsonl"
    metrics_path.touch(exist_ok=True)

    return {
        "run_dir": str(run_dir),
        "metrics_path": str(metrics_path),
        "run_id": cfg.run_id,
        "rank": cfg.rank,
        "world_size": cfg.world_size,
        "backend": cfg.backend,
    }


def log_record(logger: Mapping[str, Any], record: Mapping[str, Any]) -> None:
    metrics_path = Path(logger["metrics_path"])
    with metrics_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record) + "\n")


def build_record(logger: Mapping[str, Any], metrics: Mapping[str, Any]) -> dict[str, Any]:
    record: dict[str, Any] = {
        "timestamp_unix": time.time(),
        "run_id": logger.get("run_id"),
        "rank": logger.get("rank"),
        "world_size": logger.get("world_size"),
        "backend": logger.get("backend"),
    }
    for key, value in metrics.items():
        if key in record:
            continue
        record[key] = value
    return record


def log_metrics(logger: Mapping[str, Any] | None, metrics: Mapping[str, Any]) -> dict[str, Any] | None:
    """Append a metrics record; no-op when logging is disabled."""
    if logger is None:
        return None
    record = build_record(logger, metrics)
    log_record(logger, record)
    return record


def echo_config(cfg: TrainingConfig) -> None:
    print(f"master: {cfg.master_addr}", flush=True)
    print(f"port: {cfg.master_port}", flush=True)
    print(f"world size: {cfg.world_size}", flush=True)
    print(f"rank: {cfg.rank}", flush=True)
    print(f"backend: {cfg.backend}", flush=True)
    print(f"device: {cfg.device}", flush=True)
    if cfg.backend == "gloo":
        interfaces = ",".join(cfg.network_interfaces) or "<hostname>"
        print(f"interfaces: {interfaces}", flush=True)
        print(f"#devices: {len(cfg.network_interfaces) or 1}", flush=True)
    else:
        print("nccl process group", flush=True)
    print(f"batch size per worker: {cfg.per_worker_batch_size}", flush=True)
