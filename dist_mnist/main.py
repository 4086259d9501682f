### dist_mnist/main.py
## Entrypoint for one training worker.
# Resolves config, joins the process group, trains on its shard, and on
# rank 0 evaluates on the held-out set.

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import Mapping, Sequence

import torch

from . import config as config_utils
from . import data
from . import distributed as dist_utils
from . import logging_utils
from . import trainer
from .config import ConfigError, TrainingConfig
from .model import build_model
from .utils import resolve_device, set_seed

DEFAULT_CONFIG = Path("configs/base.yaml")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dist-mnist",
        description="Data-parallel MNIST training with manual gradient allreduce.",
    )
    parser.add_argument(
        "--config",
        action="append",
        default=[],
        help="Config YAML path; repeat to layer files (default: configs/base.yaml if present).",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a dotted config key, e.g. training.epochs=2.",
    )
    parser.add_argument("--run-id", help="Override run_id (optional).")
    parser.add_argument("--print-config", action="store_true", help="Print resolved config and exit.")
    return parser


def load_config(
    args: argparse.Namespace,
    environ: Mapping[str, str] | None = None,
) -> tuple[dict, TrainingConfig]:
    config_paths = [Path(p) for p in args.config]
    if not config_paths and DEFAULT_CONFIG.exists():
        config_paths = [DEFAULT_CONFIG]
    resolved = config_utils.resolve_config(
        config_paths,
        overrides=args.overrides,
        environ=environ,
        run_id=args.run_id,
    )
    return resolved, TrainingConfig.from_mapping(resolved)


def run(cfg: TrainingConfig) -> dict:
    """Train one worker end to end and return its results."""
    dist_utils.init_distributed(cfg)
    try:
        # All ranks log under the coordinator's run id.
        cfg = dataclasses.replace(cfg, run_id=dist_utils.broadcast_object(cfg.run_id, src=0))

        logger = None
        run_dir = logging_utils.run_dir_for(cfg)
        if run_dir is not None:
            if cfg.is_coordinator:
                config_utils.write_config(cfg.to_dict(), run_dir)
            logger = logging_utils.init_logger(cfg, run_dir)

        device = resolve_device(cfg.device)
        train_loader = data.build_train_loader(cfg, data.build_dataset(cfg, train=True))

        set_seed(cfg.seed)
        model = build_model(device)
        optimizer = torch.optim.SGD(model.parameters(), lr=cfg.learning_rate)
        averager = trainer.GradientAverager(cfg.world_size, on_error=cfg.on_sync_error)

        print("begin epoch ...", flush=True)
        history = trainer.train(
            model,
            train_loader,
            optimizer,
            averager,
            device,
            cfg.epochs,
            rank=cfg.rank,
            logger=logger,
            timing_mode=cfg.timing_mode,
        )

        result = None
        if cfg.is_coordinator:
            test_loader = data.build_test_loader(data.build_dataset(cfg, train=False))
            result = trainer.evaluate(model, test_loader, device, logger=logger)
        return {"history": history, "test": result, "model": model}
    finally:
        dist_utils.destroy_process_group()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    try:
        _resolved, cfg = load_config(args)
    except ConfigError as exc:
        raise SystemExit(f"dist-mnist: config error: {exc}") from exc

    if args.print_config:
        print(config_utils.config_to_yaml(cfg.to_dict()), end="")
        return 0

    logging_utils.echo_config(cfg)
    run(cfg)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
