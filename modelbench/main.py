from __future__ import annotations

import io
import json
import logging
import time
from dataclasses import asdict
from typing import Optional

from fastapi import Body, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import PlainTextResponse, Response
from PIL import Image

from .config import settings
from .errors import ArtifactError, BenchmarkBusy, LoadTimeout
from .metrics import metrics
from .models import ArtifactVariant
from .orchestrator import build_orchestrator
from .resources import registry
from .telemetry import SqliteTelemetryStore, export_document

logger = logging.getLogger("modelbench")
app = FastAPI(title="Edge Model Benchmark", version="1.0")

orchestrator = build_orchestrator()


@app.on_event("startup")
async def _startup() -> None:
    metrics.set_gauge("service_up", 1.0)


@app.on_event("shutdown")
async def _shutdown() -> None:
    metrics.set_gauge("service_up", 0.0)


@app.get("/health")
def health() -> dict:
    snap = registry.snapshot()
    profile = orchestrator.profiler.profile()
    return {
        "status": "ok",
        "running": orchestrator.running,
        "state": orchestrator.state.value,
        "low_end": profile.low_end,
        "device_memory_gb": profile.device_memory_gb,
        "live_resources": snap.live_resource_count,
        "live_mb": round(snap.live_mb, 1),
    }


@app.get("/metrics", response_class=PlainTextResponse)
def get_metrics() -> str:
    return metrics.snapshot()


@app.post("/detect")
async def detect(model: str = Query(default="yolo11n"), file: UploadFile = File(...)) -> dict:
    try:
        variant = ArtifactVariant.from_id(model)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown model: {model}")

    if file.content_type not in ("image/jpeg", "image/png", "image/webp"):
        metrics.inc("bad_content_type_total", 1)
        raise HTTPException(status_code=415, detail="Unsupported image type")

    try:
        data = await file.read()
        img = Image.open(io.BytesIO(data)).convert("RGB")
    except (OSError, ValueError):
        metrics.inc("bad_image_total", 1)
        raise HTTPException(status_code=400, detail="Invalid image")

    try:
        result, load_latency_ms = await orchestrator.detect_once(variant, img, file.filename or "upload")
    except BenchmarkBusy:
        raise HTTPException(status_code=409, detail="Benchmark already running")
    except LoadTimeout as e:
        raise HTTPException(status_code=504, detail=str(e))
    except ArtifactError as e:
        raise HTTPException(status_code=503, detail=str(e))
    finally:
        img.close()

    return {
        "model": variant.model_id,
        "load_latency_ms": load_latency_ms,
        "image_size": {"w": img.width, "h": img.height},
        "result": asdict(result),
    }


@app.post("/benchmark", status_code=202)
async def start_benchmark(device: Optional[str] = Body(default=None, embed=True)) -> dict:
    device_id = (device or settings.device_name).strip()
    if not device_id:
        raise HTTPException(status_code=400, detail="device must not be empty")
    try:
        orchestrator.launch(device_id)
    except BenchmarkBusy:
        raise HTTPException(status_code=409, detail="Benchmark already running")
    logger.info("Benchmark launched for %s", device_id)
    return {"status": "started", "device": device_id}


@app.get("/benchmark")
def benchmark_status() -> dict:
    p = orchestrator.progress
    run = orchestrator.current_run
    return {
        "running": orchestrator.running,
        "state": orchestrator.state.value,
        "progress": {
            "completed": p.completed,
            "total_planned": p.total_planned,
            "percent": round(p.fraction * 100, 1),
            "status": p.status,
        },
        "run": run.to_dict() if run is not None else None,
    }


@app.get("/benchmark/export")
def export_benchmark() -> Response:
    run = orchestrator.last_run
    if run is None:
        raise HTTPException(status_code=404, detail="No finished benchmark")
    body = json.dumps(export_document(run), indent=2)
    filename = f"benchmark_{run.device_id}_{int(time.time() * 1000)}.json"
    return Response(
        content=body,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/benchmark/history")
def benchmark_history(limit: int = 20) -> dict:
    store = orchestrator.store
    if not isinstance(store, SqliteTelemetryStore):
        raise HTTPException(status_code=404, detail="History needs the sqlite telemetry backend")
    return {"records": store.list_records(orchestrator.collection, limit=limit)}
