### dist_mnist/analysis/plot_accuracy.py
## Plot per-rank training accuracy and allreduce time across epochs.

from __future__ import annotations

import argparse
import csv
from pathlib import Path
from typing import Any

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402


def _load_rows(path: Path) -> list[dict[str, Any]]:
    with path.open("r", encoding="utf-8") as handle:
        return list(csv.DictReader(handle))


def _to_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _series_by_rank(rows: list[dict[str, Any]], y_key: str) -> dict[str, list[tuple[float, float]]]:
    series: dict[str, list[tuple[float, float]]] = {}
    for row in rows:
        epoch = _to_float(row.get("epoch"))
        y_val = _to_float(row.get(y_key))
        if epoch is None or y_val is None:
            continue
        label = f"{row.get('run_id', '?')} rank {row.get('rank', '?')}"
        series.setdefault(label, []).append((epoch, y_val))
    return series


def plot_epochs(rows: list[dict[str, Any]], y_key: str, out_path: Path, title: str) -> bool:
    series = _series_by_rank(rows, y_key)
    if not series:
        print(f"plot_accuracy: no data for {y_key}")
        return False

    plt.figure()
    for label, points in sorted(series.items()):
        points = sorted(points)
        plt.plot([p[0] for p in points], [p[1] for p in points], marker="o", label=label)

    plt.xlabel("epoch")
    plt.ylabel(y_key)
    plt.title(title)
    plt.legend(fontsize="small")
    plt.grid(True, alpha=0.3)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(out_path, dpi=160, bbox_inches="tight")
    plt.close()
    return True


def main() -> None:
    parser = argparse.ArgumentParser(description="Plot training curves from the aggregated epoch table.")
    parser.add_argument("--input", default="results/tables/epochs.csv", help="Input CSV path.")
    parser.add_argument("--out-dir", default="results/plots", help="Output directory.")
    args = parser.parse_args()

    rows = _load_rows(Path(args.input))
    out_dir = Path(args.out_dir)

    plot_epochs(rows, "accuracy", out_dir / "train_accuracy.png", "Training accuracy (%) per epoch")
    plot_epochs(rows, "mean_loss", out_dir / "train_loss.png", "Mean training loss per epoch")
    plot_epochs(rows, "allreduce_avg_ms", out_dir / "allreduce_avg_ms.png", "Gradient allreduce avg (ms) per batch")


if __name__ == "__main__":
    main()
