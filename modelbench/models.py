from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class CapabilityProfile:
    low_end: bool
    ios_like: bool
    max_memory_budget_bytes: int
    reclamation_delay_ms: int
    device_memory_gb: float = 4.0
    platform_id: str = ""


class ArtifactVariant(enum.Enum):
    """The closed set of artifacts under test, lightest first.

    Values are (model id, approximate resident bytes once loaded).
    """

    SMALL = ("yolo11n", 11 * 1024 * 1024)
    MEDIUM = ("yolo11s", 38 * 1024 * 1024)
    LARGE = ("yolo11m", 81 * 1024 * 1024)

    @property
    def model_id(self) -> str:
        return self.value[0]

    @property
    def approx_bytes(self) -> int:
        return self.value[1]

    @classmethod
    def from_id(cls, model_id: str) -> "ArtifactVariant":
        for v in cls:
            if v.model_id == model_id:
                return v
        raise ValueError(f"Unknown model id: {model_id}")

    @staticmethod
    def heaviest(variants: Sequence["ArtifactVariant"]) -> Optional["ArtifactVariant"]:
        if not variants:
            return None
        return max(variants, key=lambda v: v.approx_bytes)


@dataclass(eq=False)
class ArtifactHandle:
    """A loaded artifact. Owns exactly one runtime session until disposed."""

    id: str
    input_shape: Tuple[int, int, int, int]
    session: Any
    load_latency_ms: float = 0.0
    input_name: str = "images"
    nbytes: int = 0
    _on_dispose: Optional[Callable[["ArtifactHandle"], None]] = field(default=None, repr=False)
    _disposed: bool = field(default=False, repr=False)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self.session = None
        if self._on_dispose is not None:
            self._on_dispose(self)


@dataclass(frozen=True)
class Detection:
    score: float
    class_index: int
    box: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)


@dataclass(frozen=True)
class DetectionOutput:
    detections: List[Detection]


@dataclass(frozen=True)
class ImageResult:
    image_name: str
    detection_time_ms: float = 0.0
    score: float = 0.0
    class_index: int = -1
    class_name: str = "unknown"
    detection_count: int = 0
    error_message: Optional[str] = None

    @classmethod
    def failed(cls, image_name: str, message: str) -> "ImageResult":
        return cls(image_name=image_name, class_name="error", error_message=message)


@dataclass
class ModelResult:
    model_id: str
    load_latency_ms: float = 0.0
    images: List[ImageResult] = field(default_factory=list)
    total_detections: int = 0
    error_count: int = 0
    avg_detection_time_ms: float = 0.0
    avg_score: float = 0.0
    skip_reason: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def skipped(cls, model_id: str, reason: str) -> "ModelResult":
        return cls(model_id=model_id, skip_reason=reason)

    @classmethod
    def load_failed(cls, model_id: str, message: str) -> "ModelResult":
        return cls(model_id=model_id, error_count=1, error_message=message)

    def aggregate(self) -> "ModelResult":
        # Averages only cover images without an error; none at all means 0.
        ok = [r for r in self.images if r.error_message is None]
        if ok:
            self.avg_detection_time_ms = sum(r.detection_time_ms for r in ok) / len(ok)
            self.avg_score = sum(r.score for r in ok) / len(ok)
        else:
            self.avg_detection_time_ms = 0.0
            self.avg_score = 0.0
        self.total_detections = sum(r.detection_count for r in self.images)
        self.error_count = len(self.images) - len(ok)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RunState(str, enum.Enum):
    IDLE = "idle"
    SELECTING_ARTIFACTS = "selecting_artifacts"
    PREPARING = "preparing"
    LOADING = "loading"
    WARMING = "warming"
    TESTING_IMAGES = "testing_images"
    AGGREGATING = "aggregating"
    CLEANING_UP = "cleaning_up"
    PERSISTING = "persisting"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class BenchmarkRun:
    device_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    results: List[ModelResult] = field(default_factory=list)
    finished_at: Optional[datetime] = None
    state: RunState = RunState.IDLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device": self.device_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "state": self.state.value,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class MemorySnapshot:
    live_resource_count: int
    live_bytes: int

    @property
    def live_mb(self) -> float:
        return self.live_bytes / 1024 / 1024


@dataclass(frozen=True)
class Progress:
    completed: int
    total_planned: int
    status: str = ""

    @property
    def fraction(self) -> float:
        if self.total_planned <= 0:
            return 0.0
        return self.completed / self.total_planned
