import importlib.util
import json
from pathlib import Path

from modelbench.models import BenchmarkRun, ImageResult, ModelResult
from modelbench.telemetry import export_document

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "plot_results.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("plot_results", SCRIPT)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


def _export(tmp_path, device):
    run = BenchmarkRun(device_id=device)
    r = ModelResult(model_id="yolo11n", load_latency_ms=100.0)
    r.images = [ImageResult("card1.png", detection_time_ms=20.0, score=0.5, detection_count=1)]
    run.results.append(r.aggregate())
    run.results.append(ModelResult.skipped("yolo11m", "Skipped due to insufficient RAM: 2GB (minimum 4GB required)"))
    path = tmp_path / f"{device}.json"
    path.write_text(json.dumps(export_document(run)))
    return str(path)


def test_report_tables_and_plots(tmp_path):
    plot_results = _load_script()
    files = [_export(tmp_path, "pixel-7"), _export(tmp_path, "iphone-13")]

    df = plot_results.results_frame(files)
    assert len(df) == 4
    assert set(df["device"]) == {"pixel-7", "iphone-13"}
    row = df[(df["device"] == "pixel-7") & (df["model_id"] == "yolo11n")].iloc[0]
    assert row["avg_accuracy_pct"] == 50.0
    assert row["note"] == ""

    written = plot_results.plot_results(df, str(tmp_path / "report"))
    assert [p.name for p in written] == ["load_time.png", "avg_detection.png", "avg_accuracy.png"]
    assert all(p.exists() for p in written)
