#!/usr/bin/env python3
### dist_mnist/scripts/launch_local.py
## Launch N training workers on this machine, one process per rank.

from __future__ import annotations

import argparse
import os
import shutil
import subprocess
import sys
from typing import Sequence


def _torchrun_cmd() -> list[str]:
    torchrun = shutil.which("torchrun")
    if torchrun:
        return [torchrun]
    return [sys.executable, "-m", "torch.distributed.run"]


def _worker_args(configs: Sequence[str], overrides: Sequence[str]) -> list[str]:
    args: list[str] = []
    for path in configs:
        args += ["--config", path]
    for text in overrides:
        args += ["--set", text]
    return args


def _worker_env(rank: int, args: argparse.Namespace) -> dict[str, str]:
    env = dict(os.environ)
    env.update(
        {
            "MASTER_ADDR": args.master_addr,
            "MASTER_PORT": str(args.master_port),
            "WORLD_SIZE": str(args.nproc),
            "RANK": str(rank),
            "BACKEND": args.backend,
            "DEVICE": args.device,
        }
    )
    if args.ifname:
        env["GLOO_SOCKET_IFNAME"] = args.ifname
    return env


def launch_processes(args: argparse.Namespace) -> int:
    cmd = [sys.executable, "-m", "dist_mnist.main"] + _worker_args(args.config, args.set)
    print("launch_local:", " ".join(cmd), f"x{args.nproc}", flush=True)
    if args.dry_run:
        return 0

    procs = [subprocess.Popen(cmd, env=_worker_env(rank, args)) for rank in range(args.nproc)]
    exit_code = 0
    for rank, proc in enumerate(procs):
        code = proc.wait()
        if code != 0:
            print(f"launch_local: rank {rank} exited with {code}", file=sys.stderr, flush=True)
            exit_code = exit_code or code
    return exit_code


def launch_torchrun(args: argparse.Namespace) -> int:
    cmd = (
        _torchrun_cmd()
        + ["--standalone", f"--nproc_per_node={args.nproc}", "-m", "dist_mnist.main"]
        + _worker_args(args.config, args.set)
        + ["--set", f"distributed.backend={args.backend}", "--set", f"distributed.device={args.device}"]
    )
    print("launch_local:", " ".join(cmd), flush=True)
    if args.dry_run:
        return 0
    return subprocess.call(cmd)


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a local multi-process training job.")
    parser.add_argument("--nproc", type=int, default=2, help="Number of workers (world size).")
    parser.add_argument("--config", action="append", default=[], help="Config YAML passed to every worker.")
    parser.add_argument("--set", action="append", default=[], metavar="KEY=VALUE", help="Config override.")
    parser.add_argument("--master-addr", default="127.0.0.1")
    parser.add_argument("--master-port", type=int, default=29500)
    parser.add_argument("--backend", default="gloo", choices=["gloo", "nccl"])
    parser.add_argument("--device", default="cpu", choices=["cpu", "cuda"])
    parser.add_argument("--ifname", help="Comma-separated interfaces for Gloo (e.g. lo).")
    parser.add_argument("--torchrun", action="store_true", help="Delegate process spawning to torchrun.")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if args.nproc < 1:
        parser.error("--nproc must be positive")
    if args.torchrun:
        return launch_torchrun(args)
    return launch_processes(args)


if __name__ == "__main__":
    raise SystemExit(main())
