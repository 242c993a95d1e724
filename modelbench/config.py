from dataclasses import dataclass
import os
from typing import List, Optional


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else None


@dataclass(frozen=True)
class Settings:
    # Artifacts: "<artifacts_dir>/<model_id>_web_model/model.onnx"
    artifacts_dir: str = os.getenv("ARTIFACTS_DIR", "weights")
    images_dir: str = os.getenv("IMAGES_DIR", "images")

    # Priority order, lightest first. The last one is treated as the heaviest.
    model_ids: str = os.getenv("MODEL_IDS", "yolo11n,yolo11s,yolo11m")

    # Order must match training class IDs
    class_names: str = os.getenv("CLASS_NAMES", "card,id,face,signature")

    score_threshold: float = float(os.getenv("SCORE_THRESHOLD", "0.25"))
    nms_iou_threshold: float = float(os.getenv("NMS_IOU_THRESHOLD", "0.45"))

    # Time bounds (ms)
    load_timeout_ms: int = int(os.getenv("LOAD_TIMEOUT_MS", "30000"))
    detect_timeout_ms: int = int(os.getenv("DETECT_TIMEOUT_MS", "15000"))
    image_load_timeout_ms: int = int(os.getenv("IMAGE_LOAD_TIMEOUT_MS", "10000"))

    # Reclamation / pacing cadence
    reclaim_every: int = int(os.getenv("RECLAIM_EVERY", "10"))
    pace_every: int = int(os.getenv("PACE_EVERY", "5"))
    pace_delay_ms: int = int(os.getenv("PACE_DELAY_MS", "200"))
    live_resource_watermark: int = int(os.getenv("LIVE_RESOURCE_WATERMARK", "20"))

    # Capability probing overrides. Unset means "ask the host".
    device_memory_gb: Optional[float] = _optional_float("DEVICE_MEMORY_GB")
    platform_id: str = os.getenv("PLATFORM_ID", "")
    # At or below this much memory the heaviest artifact is skipped
    skip_memory_gb: float = float(os.getenv("SKIP_MEMORY_GB", "3"))

    # Telemetry: "sqlite", "pocketbase" or "none"
    telemetry_backend: str = os.getenv("TELEMETRY_BACKEND", "sqlite").lower()
    telemetry_collection: str = os.getenv("TELEMETRY_COLLECTION", "Benchmark")
    sqlite_path: str = os.getenv("SQLITE_PATH", "data_db/benchmarks.db")
    pocketbase_url: str = os.getenv("POCKETBASE_URL", "https://objectbenchmark.pockethost.io")

    device_name: str = os.getenv("DEVICE_NAME", "unknown-device")

    def model_id_list(self) -> List[str]:
        return [x.strip() for x in self.model_ids.split(",") if x.strip()]

    def class_name_list(self) -> List[str]:
        return [x.strip() for x in self.class_names.split(",") if x.strip()]


settings = Settings()
