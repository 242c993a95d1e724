"""Failure taxonomy for a benchmark run.

Every one of these is caught by the orchestrator and turned into data on the
run record. Only ``BenchmarkBusy`` reaches callers, and only from ``run`` or ``launch``.
"""

from __future__ import annotations

from typing import Optional


class BenchmarkError(Exception):
    """Base class for benchmark failures."""


class ArtifactError(BenchmarkError):
    """An artifact could not be acquired or warmed up."""

    def __init__(self, model_id: str, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.model_id = model_id
        if cause is not None:
            self.__cause__ = cause


# Any load or warmup failure that is not memory related
GenericArtifactError = ArtifactError


class LoadTimeout(ArtifactError):
    def __init__(self, model_id: str, timeout_ms: float) -> None:
        super().__init__(model_id, f"Loading timeout: {model_id} not ready after {timeout_ms:.0f} ms")
        self.timeout_ms = timeout_ms


class MemoryExhaustion(ArtifactError):
    """Acquisition failed because the runtime ran out of memory."""


class DetectionTimeout(BenchmarkError):
    def __init__(self, timeout_ms: float) -> None:
        super().__init__(f"Detection timeout after {timeout_ms:.0f} ms")
        self.timeout_ms = timeout_ms


class ImageLoadFailure(BenchmarkError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to load {path}: {reason}")
        self.path = path


class PersistenceFailure(BenchmarkError):
    pass


class BenchmarkBusy(RuntimeError):
    def __init__(self) -> None:
        super().__init__("busy")


_MEMORY_MARKERS = ("out of memory", "failed to allocate", "bad_alloc", "memory")


def is_memory_exhaustion(exc: BaseException) -> bool:
    """Default memory-exhaustion classifier.

    Text matching is a heuristic; pass a different predicate to the loader
    when the runtime reports allocation failures some other way.
    """
    if isinstance(exc, (MemoryError, MemoryExhaustion)):
        return True
    msg = str(exc).lower()
    return any(marker in msg for marker in _MEMORY_MARKERS)
