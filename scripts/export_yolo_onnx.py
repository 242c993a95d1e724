# export_yolo_onnx.py
from __future__ import annotations

import argparse
import sys
from pathlib import Path

DEFAULT_MODELS = "yolo11n,yolo11s,yolo11m"


def export_one(model_id: str, weights: Path, artifacts_dir: Path, args: argparse.Namespace) -> Path:
    from ultralytics import YOLO

    out_path = artifacts_dir / f"{model_id}_web_model" / "model.onnx"
    out_path.parent.mkdir(parents=True, exist_ok=True)

    # Ultralytics decides the output name automatically (usually <weights>.onnx),
    # so we export into a temp folder then move it into the artifact layout.
    tmp_dir = artifacts_dir / "_tmp_export"
    tmp_dir.mkdir(parents=True, exist_ok=True)

    model = YOLO(str(weights))
    exported = model.export(
        format="onnx",
        imgsz=args.imgsz,
        opset=args.opset,
        dynamic=False,
        simplify=args.simplify,
        device="cpu",
        project=str(tmp_dir),
        name=model_id,
    )

    exported_path = Path(str(exported))
    if not exported_path.exists():
        candidates = list(tmp_dir.rglob(f"*{model_id}*.onnx")) or list(tmp_dir.rglob("*.onnx"))
        if not candidates:
            raise SystemExit(f"Export of {model_id} completed but ONNX file not found. Check Ultralytics output.")
        exported_path = candidates[0]

    if out_path.exists():
        out_path.unlink()
    exported_path.replace(out_path)
    return out_path


def main() -> None:
    ap = argparse.ArgumentParser(description="Export YOLO11 weights into the benchmark artifact layout")
    ap.add_argument("--models", default=DEFAULT_MODELS, help="Comma separated model ids, lightest first")
    ap.add_argument("--weights-dir", default=".", help="Directory holding <model_id>.pt (downloaded if missing)")
    ap.add_argument("--artifacts-dir", default="weights", help="Output root: <dir>/<model_id>_web_model/model.onnx")
    ap.add_argument("--imgsz", type=int, default=640, help="Export image size (square)")
    ap.add_argument("--opset", type=int, default=17, help="ONNX opset version")
    ap.add_argument("--simplify", action="store_true", help="Run onnxsim to simplify graph (requires onnxsim)")
    args = ap.parse_args()

    try:
        import ultralytics  # noqa: F401
    except ImportError as e:
        raise SystemExit(
            "Ultralytics not installed. Install with:\n"
            "  pip install 'edge-model-bench[export]'\n"
        ) from e

    artifacts_dir = Path(args.artifacts_dir)
    for model_id in [m.strip() for m in args.models.split(",") if m.strip()]:
        weights = Path(args.weights_dir) / f"{model_id}.pt"
        # Ultralytics fetches the official weights when given a bare name
        source = weights if weights.exists() else Path(f"{model_id}.pt")
        out_path = export_one(model_id, source, artifacts_dir, args)
        print(f"Exported {model_id}: {out_path}")

        try:
            import onnx
            onnx.checker.check_model(onnx.load(str(out_path)))
            print("ONNX check: OK")
        except Exception as e:
            print(f"ONNX check: WARNING ({e})", file=sys.stderr)


if __name__ == "__main__":
    main()
