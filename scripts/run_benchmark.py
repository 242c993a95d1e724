"""Run one benchmark headless and write the export JSON next to the results.

Example:
    python scripts/run_benchmark.py --device pixel-7 --images-dir images --output-dir results
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import time
from pathlib import Path

from tqdm import tqdm

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from modelbench.models import Progress  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Benchmark YOLO artifacts on this device")
    ap.add_argument("--device", required=True, help="Device name recorded with the results")
    ap.add_argument("--artifacts-dir", default=None, help="Overrides ARTIFACTS_DIR")
    ap.add_argument("--images-dir", default=None, help="Overrides IMAGES_DIR")
    ap.add_argument("--output-dir", default="results")
    ap.add_argument("--telemetry", choices=["sqlite", "pocketbase", "none"], default=None)
    ap.add_argument("--verbose", action="store_true")
    return ap


class ProgressBar:
    """Progress sink drawing a tqdm bar over the planned image count."""

    def __init__(self) -> None:
        self.bar = tqdm(total=0, desc="benchmark", unit="img", leave=True)

    def __call__(self, p: Progress) -> None:
        if p.total_planned and self.bar.total != p.total_planned:
            self.bar.total = p.total_planned
            self.bar.refresh()
        if p.completed > self.bar.n:
            self.bar.update(p.completed - self.bar.n)
        self.bar.set_postfix_str(p.status, refresh=False)

    def close(self) -> None:
        self.bar.close()


async def async_main(args: argparse.Namespace) -> int:
    # Settings are read from the environment at import time
    if args.artifacts_dir:
        os.environ["ARTIFACTS_DIR"] = args.artifacts_dir
    if args.images_dir:
        os.environ["IMAGES_DIR"] = args.images_dir
    if args.telemetry:
        os.environ["TELEMETRY_BACKEND"] = args.telemetry

    from modelbench.orchestrator import build_orchestrator
    from modelbench.telemetry import export_document

    bar = ProgressBar()
    orchestrator = build_orchestrator(progress_sink=bar)
    try:
        run = await orchestrator.run(args.device)
    finally:
        bar.close()

    out_dir = Path(args.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_file = out_dir / f"benchmark_{args.device}_{int(time.time() * 1000)}.json"
    with out_file.open("w", encoding="utf-8") as f:
        json.dump(export_document(run), f, indent=2)

    print(f"{'Model':<10} {'Load (ms)':>10} {'Avg det (ms)':>13} {'Accuracy':>9} {'Dets':>6}  Note")
    for r in run.results:
        note = r.skip_reason or r.error_message or (f"{r.error_count} image errors" if r.error_count else "")
        print(
            f"{r.model_id:<10} {r.load_latency_ms:>10.2f} {r.avg_detection_time_ms:>13.2f} "
            f"{r.avg_score * 100:>8.1f}% {r.total_detections:>6}  {note}"
        )
    print(f"Benchmark {run.state.value}. Results: {out_file}")
    return 0


def main() -> int:
    args = build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    return asyncio.run(async_main(args))


if __name__ == "__main__":
    raise SystemExit(main())
