"""Summarise exported benchmark JSON files into a CSV table and bar charts.

Example:
    python scripts/plot_results.py results/*.json --outdir results/report
"""

import argparse
import json
from pathlib import Path
from typing import List

import matplotlib
import matplotlib.pyplot as plt
import pandas as pd

matplotlib.use("Agg")

COLUMNS = [
    "device",
    "model_id",
    "load_latency_ms",
    "avg_detection_time_ms",
    "avg_accuracy_pct",
    "total_detections",
    "error_count",
    "note",
]

CHARTS = [
    ("load_latency_ms", "Load time (ms)", "load_time.png"),
    ("avg_detection_time_ms", "Avg detection (ms)", "avg_detection.png"),
    ("avg_accuracy_pct", "Avg accuracy (%)", "avg_accuracy.png"),
]


def results_frame(export_files: List[str]) -> pd.DataFrame:
    """One row per (device, model) across all exports."""
    rows = []
    for path in export_files:
        with open(path, "r", encoding="utf-8") as f:
            doc = json.load(f)
        for r in doc.get("results", []):
            rows.append(
                {
                    "device": doc.get("device", Path(path).stem),
                    "model_id": r["model_id"],
                    "load_latency_ms": r.get("load_latency_ms", 0.0),
                    "avg_detection_time_ms": r.get("avg_detection_time_ms", 0.0),
                    "avg_accuracy_pct": r.get("avg_score", 0.0) * 100,
                    "total_detections": r.get("total_detections", 0),
                    "error_count": r.get("error_count", 0),
                    "note": r.get("skip_reason") or r.get("error_message") or "",
                }
            )
    return pd.DataFrame(rows, columns=COLUMNS)


def plot_results(df: pd.DataFrame, outdir: str = ".") -> List[Path]:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    # skipped and failed artifacts would show up as misleading zero bars
    tested = df[df["note"] == ""]
    written = []
    for column, label, filename in CHARTS:
        table = tested.pivot_table(index="model_id", columns="device", values=column, aggfunc="mean")
        if table.empty:
            continue
        ax = table.plot(kind="bar", rot=0)
        ax.set_xlabel("model")
        ax.set_ylabel(label)
        ax.set_title(label)
        plt.tight_layout()
        out = outdir / filename
        plt.savefig(out)
        plt.close()
        written.append(out)
    return written


def main() -> None:
    ap = argparse.ArgumentParser(description="Tabulate and plot benchmark exports")
    ap.add_argument("exports", nargs="+", help="JSON files written by run_benchmark.py or /benchmark/export")
    ap.add_argument("--outdir", default="report")
    args = ap.parse_args()

    df = results_frame(args.exports)
    outdir = Path(args.outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    df.to_csv(outdir / "summary.csv", index=False)
    print(df.to_string(index=False))

    for p in plot_results(df, args.outdir):
        print(f"Wrote {p}")


if __name__ == "__main__":
    main()
