#!/usr/bin/env python3
"""
Environment check for dist-mnist workers.

Run on every host that will launch a worker. Beyond import checks, it forms a
one-rank Gloo group on the loopback interface and runs a single allreduce,
which is the same path a training step takes.

Usage:
    python verify_setup.py [--ifname lo] [--skip-group]
"""

from __future__ import annotations

import argparse
import importlib
import socket
import sys
from pathlib import Path
from typing import Callable

PROJECT_ROOT = Path(__file__).parent
REQUIRED = [("torchvision", "torchvision"), ("yaml", "pyyaml"), ("numpy", "numpy")]
OPTIONAL = [("matplotlib", "matplotlib"), ("pytest", "pytest")]
PROJECT_MODULES = ["config", "distributed", "data", "model", "trainer", "metrics", "logging_utils"]


class Report:
    def __init__(self) -> None:
        self.failures: list[str] = []

    def section(self, title: str) -> None:
        print(f"\n[{title}]")

    def record(self, name: str, ok: bool, hint: str = "", critical: bool = True) -> bool:
        mark = "ok  " if ok else ("FAIL" if critical else "warn")
        print(f"  {mark} {name}")
        if not ok:
            if hint:
                print(f"       {hint}")
            if critical:
                self.failures.append(name)
        return ok

    def attempt(self, name: str, fn: Callable[[], object], critical: bool = True) -> bool:
        try:
            fn()
        except Exception as exc:  # report any import or runtime failure as a failed check
            return self.record(name, False, f"{type(exc).__name__}: {exc}", critical)
        return self.record(name, True)


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _loopback_allreduce(ifname: str) -> None:
    from dist_mnist import distributed as dist_utils
    from dist_mnist.config import TrainingConfig
    from dist_mnist.trainer import GradientAverager
    import torch

    cfg = TrainingConfig(
        master_addr="127.0.0.1",
        master_port=_free_port(),
        world_size=1,
        rank=0,
        network_interfaces=(ifname,),
        timeout_s=10.0,
        total_batch_size=1,
    )
    dist_utils.init_distributed(cfg)
    try:
        model = torch.nn.Linear(2, 1)
        for param in model.parameters():
            param.grad = torch.full_like(param, 3.0)
        GradientAverager(1, on_error="raise").synchronize(model)
        if not all(torch.all(p.grad == 3.0) for p in model.parameters()):
            raise RuntimeError("allreduce over one rank changed the gradient")
    finally:
        dist_utils.destroy_process_group()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Check that this host can run a dist-mnist worker.")
    parser.add_argument("--ifname", default="lo", help="Interface for the loopback group check.")
    parser.add_argument("--skip-group", action="store_true", help="Skip forming a one-rank Gloo group.")
    args = parser.parse_args(argv)

    report = Report()
    print("dist-mnist setup check")

    report.section("python")
    version = ".".join(str(v) for v in sys.version_info[:3])
    report.record(f"Python {version}", sys.version_info >= (3, 9), "Python 3.9 or newer required")

    report.section("torch")
    try:
        import torch
        import torch.distributed as dist
    except ImportError as exc:
        report.record("torch importable", False, f"pip install torch ({exc})")
        torch = dist = None
    else:
        report.record(f"torch {torch.__version__}", True)
        has_dist = report.record("torch.distributed", dist.is_available(), "build has no distributed support")
        if has_dist:
            report.record("gloo (socket transport)", dist.is_gloo_available())
        if torch.cuda.is_available():
            names = ", ".join(torch.cuda.get_device_name(i) for i in range(torch.cuda.device_count()))
            report.record(f"cuda: {names}", True)
            if has_dist:
                report.record("nccl (GPU-direct transport)", dist.is_nccl_available(), critical=False)
        else:
            report.record("cuda", False, "only backend=gloo device=cpu will work", critical=False)

    report.section("packages")
    for module, dist_name in REQUIRED:
        report.attempt(dist_name, lambda m=module: importlib.import_module(m))
    for module, dist_name in OPTIONAL:
        report.attempt(f"{dist_name} (optional)", lambda m=module: importlib.import_module(m), critical=False)

    report.section("project")
    sys.path.insert(0, str(PROJECT_ROOT))
    for name in PROJECT_MODULES:
        report.attempt(f"dist_mnist.{name}", lambda n=name: importlib.import_module(f"dist_mnist.{n}"))
    report.record(
        "configs/base.yaml",
        (PROJECT_ROOT / "configs" / "base.yaml").exists(),
        "default config layer missing",
    )
    report.record(
        "MNIST files under data/mnist",
        (PROJECT_ROOT / "data" / "mnist" / "MNIST" / "raw").exists(),
        "use --set data.download=true once, or --config configs/smoke.yaml",
        critical=False,
    )

    if torch is not None and dist is not None and dist.is_available() and not args.skip_group:
        report.section("collectives")
        report.attempt(f"one-rank gloo allreduce on {args.ifname}", lambda: _loopback_allreduce(args.ifname))

    print()
    if report.failures:
        print(f"{len(report.failures)} check(s) failed: {', '.join(report.failures)}")
        return 1
    print("Ready. Try: python scripts/launch_local.py --nproc 2 --config configs/base.yaml --config configs/smoke.yaml")
    return 0


if __name__ == "__main__":
    sys.exit(main())
