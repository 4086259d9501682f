### dist_mnist/distributed.py
## Distributed helpers: rendezvous store, process group init and teardown.

from __future__ import annotations

import datetime as dt
import os

import torch
import torch.distributed as dist

from .config import TrainingConfig


class RendezvousError(RuntimeError):
    """Raised when the store or the process group cannot be formed."""


def _timeout(cfg: TrainingConfig) -> dt.timedelta:
    return dt.timedelta(seconds=cfg.timeout_s)


def create_store(cfg: TrainingConfig) -> dist.TCPStore:
    """Create the TCP key-value store used for rendezvous.

    Rank 0 binds ``master_addr:master_port`` and hosts the store; every other
    rank connects to it. Both sides give up after ``timeout_s``.

    Args:
        cfg: Validated training configuration

    Returns:
        Connected TCPStore

    Raises:
        RendezvousError: If the coordinator cannot bind or a worker cannot
            reach it before the timeout
    """
    try:
        return dist.TCPStore(
            cfg.master_addr,
            cfg.master_port,
            cfg.world_size,
            cfg.is_coordinator,
            timeout=_timeout(cfg),
        )
    except (RuntimeError, OSError) as exc:
        role = "host" if cfg.is_coordinator else "reach"
        raise RendezvousError(
            f"rank {cfg.rank} could not {role} store at {cfg.master_addr}:{cfg.master_port}: {exc}"
        ) from exc


def init_distributed(cfg: TrainingConfig, store: dist.Store | None = None) -> None:
    """Initialize the default process group for this worker.

    Exports ``GLOO_SOCKET_IFNAME`` when network interfaces are configured;
    otherwise Gloo picks the address the hostname resolves to. For CUDA runs
    the current device is pinned to ``rank % device_count``.

    Args:
        cfg: Validated training configuration
        store: Optional pre-built store (created from cfg if None)

    Raises:
        RendezvousError: If the process group cannot be formed
    """
    if not dist.is_available():
        raise RendezvousError("torch.distributed is not available in this build")
    if dist.is_initialized():
        return

    if cfg.backend == "gloo" and cfg.network_interfaces:
        os.environ["GLOO_SOCKET_IFNAME"] = ",".join(cfg.network_interfaces)

    if cfg.device == "cuda":
        if not torch.cuda.is_available():
            raise RendezvousError(f"backend {cfg.backend!r} with device 'cuda' requested but CUDA is unavailable")
        torch.cuda.set_device(cfg.rank % torch.cuda.device_count())

    if store is None:
        store = create_store(cfg)

    try:
        dist.init_process_group(
            backend=cfg.backend,
            store=store,
            rank=cfg.rank,
            world_size=cfg.world_size,
            timeout=_timeout(cfg),
        )
    except (RuntimeError, ValueError) as exc:
        raise RendezvousError(f"rank {cfg.rank} failed to join {cfg.backend} group: {exc}") from exc


def is_distributed() -> bool:
    """Check if a process group is active."""
    return dist.is_available() and dist.is_initialized()


def broadcast_object(obj, src: int = 0):
    """Broadcast a picklable Python object from src to all ranks."""
    if not is_distributed():
        return obj
    obj_list = [obj]
    dist.broadcast_object_list(obj_list, src=src)
    return obj_list[0]


def destroy_process_group() -> None:
    """Destroy the process group; no-op outside distributed mode."""
    if is_distributed():
        dist.destroy_process_group()
