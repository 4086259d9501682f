### dist_mnist/analysis/aggregate.py
## Collect per-rank metrics.jsonl records into an epoch table and an eval table.
# Epoch rows are keyed by (run_id, rank, epoch); eval rows by run_id, since
# only rank 0 evaluates.

from __future__ import annotations

import argparse
import csv
import json
from pathlib import Path
from typing import Any, Iterator

EPOCH_COLUMNS = [
    "run_id",
    "world_size",
    "backend",
    "rank",
    "epoch",
    "samples",
    "correct",
    "accuracy",
    "mean_loss",
    "batches",
    "sync_failures",
]
EVAL_COLUMNS = ["run_id", "world_size", "backend", "samples", "correct", "accuracy", "loss"]
TIMING_REGIONS = ("forward", "backward", "allreduce", "opt_step", "batch")
TIMING_STATS = ("avg_ms", "p95_ms")


def iter_records(root: Path) -> Iterator[dict[str, Any]]:
    for metrics_path in sorted(root.rglob("metrics.jsonl")):
        with metrics_path.open("r", encoding="utf-8") as handle:
            for lineno, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError as exc:
                    raise ValueError(f"{metrics_path}:{lineno}: bad JSON record: {exc}") from exc


def epoch_row(record: dict[str, Any]) -> dict[str, Any]:
    row = {key: record.get(key) for key in EPOCH_COLUMNS}
    timings = record.get("timings_ms") or {}
    for region in TIMING_REGIONS:
        stats = timings.get(region) or {}
        for stat in TIMING_STATS:
            row[f"{region}_{stat}"] = stats.get(stat)
    return row


def eval_row(record: dict[str, Any]) -> dict[str, Any]:
    return {key: record.get(key) for key in EVAL_COLUMNS}


def split_tables(root: Path) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Return (epoch_rows, eval_rows), each sorted for stable output.

    Records with an unknown phase are skipped.
    """
    epochs: list[dict[str, Any]] = []
    evals: list[dict[str, Any]] = []
    for record in iter_records(root):
        phase = record.get("phase")
        if phase == "train":
            epochs.append(epoch_row(record))
        elif phase == "test":
            evals.append(eval_row(record))
    epochs.sort(key=lambda r: (str(r["run_id"]), r["rank"] or 0, r["epoch"] or 0))
    evals.sort(key=lambda r: str(r["run_id"]))
    return epochs, evals


def epoch_columns() -> list[str]:
    timing = [f"{region}_{stat}" for region in TIMING_REGIONS for stat in TIMING_STATS]
    return EPOCH_COLUMNS + timing


def write_table(path: Path, columns: list[str], rows: list[dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=columns)
        writer.writeheader()
        writer.writerows(rows)


def main() -> None:
    parser = argparse.ArgumentParser(description="Build epoch and eval CSV tables from run logs.")
    parser.add_argument("--input", default="results/raw", help="Root results directory.")
    parser.add_argument("--out-dir", default="results/tables", help="Directory for epochs.csv and eval.csv.")
    args = parser.parse_args()

    epochs, evals = split_tables(Path(args.input))
    out_dir = Path(args.out_dir)
    write_table(out_dir / "epochs.csv", epoch_columns(), epochs)
    write_table(out_dir / "eval.csv", EVAL_COLUMNS, evals)
    print(f"aggregate: {len(epochs)} epoch rows, {len(evals)} eval rows -> {out_dir}")
    for row in evals:
        print(f"  {row['run_id']}: test accuracy {row['accuracy']} ({row['correct']}/{row['samples']})")


if __name__ == "__main__":
    main()
