from __future__ import annotations

import asyncio
import os
from typing import Dict, List, Optional

import numpy as np
import pytest

from modelbench.artifacts import FetchedArtifact
from modelbench.capability import CapabilityProfiler
from modelbench.cancel import CancelToken
from modelbench.errors import ImageLoadFailure
from modelbench.images import DEFAULT_CORPUS
from modelbench.loader import ArtifactLoader
from modelbench.models import ArtifactHandle, ArtifactVariant, Detection, DetectionOutput
from modelbench.orchestrator import BenchmarkOrchestrator
from modelbench.resources import ReclamationCoordinator, ResourceRegistry
from modelbench.runner import InferenceRunner


class FakeSource:
    def __init__(self, failures: Optional[Dict[str, BaseException]] = None, delay_s: float = 0.0) -> None:
        self.failures = failures or {}
        self.delay_s = delay_s
        self.fetched: List[str] = []
        self.tokens: List[CancelToken] = []

    async def fetch(self, model_id: str, token: CancelToken) -> FetchedArtifact:
        self.fetched.append(model_id)
        self.tokens.append(token)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if model_id in self.failures:
            raise self.failures[model_id]
        return FetchedArtifact(
            model_id=model_id,
            session=object(),
            input_name="images",
            input_shape=(1, 3, 32, 32),
            nbytes=1024,
        )


class FakeDetector:
    def __init__(
        self,
        delay_s: float = 0.0,
        detections: Optional[List[Detection]] = None,
        fail_with: Optional[BaseException] = None,
        fail_warmup: Optional[BaseException] = None,
    ) -> None:
        self.delay_s = delay_s
        self.detections = [Detection(0.9, 1), Detection(0.5, 2)] if detections is None else detections
        self.fail_with = fail_with
        self.fail_warmup = fail_warmup
        self.warmups: List[tuple] = []
        self.seen_handles: List[ArtifactHandle] = []
        self.tokens: List[CancelToken] = []
        self.max_live_handles = 0

    def execute(self, handle: ArtifactHandle, tensor: np.ndarray) -> List[np.ndarray]:
        if self.fail_warmup is not None:
            raise self.fail_warmup
        self.warmups.append((handle.id, tensor.shape, float(tensor.min()), float(tensor.max())))
        return [np.zeros((1, 8, 10), dtype=np.float32)]

    async def run(self, handle: ArtifactHandle, image, token: CancelToken) -> DetectionOutput:
        assert not handle.disposed
        if handle not in self.seen_handles:
            self.seen_handles.append(handle)
        live = [h for h in self.seen_handles if not h.disposed]
        self.max_live_handles = max(self.max_live_handles, len(live))
        self.tokens.append(token)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail_with is not None:
            raise self.fail_with
        return DetectionOutput(detections=list(self.detections))


class FakeImage:
    def __init__(self, name: str) -> None:
        self.name = name
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeImageLoader:
    def __init__(self, failing: Optional[List[str]] = None) -> None:
        self.failing = set(failing or [])
        self.loaded: List[str] = []

    async def load(self, path: str) -> FakeImage:
        name = os.path.basename(path)
        self.loaded.append(name)
        if name in self.failing:
            raise ImageLoadFailure(path, "decode error")
        return FakeImage(name)


class RecordingStore:
    def __init__(self, fail_with: Optional[BaseException] = None) -> None:
        self.fail_with = fail_with
        self.calls: List[tuple] = []

    async def create(self, collection: str, record: dict) -> None:
        self.calls.append((collection, record))
        if self.fail_with is not None:
            raise self.fail_with


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class Rig:
    """A fully faked orchestrator plus handles on every collaborator."""

    def __init__(
        self,
        memory_gb: float = 4,
        platform_id: str = "Linux-6.1-x86_64",
        corpus_size: int = 40,
        variants: Optional[List[ArtifactVariant]] = None,
        source: Optional[FakeSource] = None,
        detector: Optional[FakeDetector] = None,
        image_loader: Optional[FakeImageLoader] = None,
        store: Optional[RecordingStore] = None,
        progress: Optional[list] = None,
    ) -> None:
        self.sleep = SleepRecorder()
        self.registry = ResourceRegistry()
        self.profiler = CapabilityProfiler(device_memory_gb=memory_gb, platform_id=platform_id)
        self.reclaimer = ReclamationCoordinator(registry=self.registry, sleep=self.sleep)
        self.source = source or FakeSource()
        self.detector = detector or FakeDetector()
        self.image_loader = image_loader or FakeImageLoader()
        self.store = store or RecordingStore()
        self.progress = progress if progress is not None else []
        self.loader = ArtifactLoader(
            self.source,
            self.detector,
            self.reclaimer,
            self.profiler,
            timeout_ms=1000,
            registry=self.registry,
        )
        self.runner = InferenceRunner(self.detector, timeout_ms=1000, class_names=["card", "id", "face"])
        corpus = [f"images/{n}" for n in (DEFAULT_CORPUS * 2)[:corpus_size]]
        self.orchestrator = BenchmarkOrchestrator(
            loader=self.loader,
            runner=self.runner,
            image_loader=self.image_loader,
            reclaimer=self.reclaimer,
            profiler=self.profiler,
            store=self.store,
            variants=variants if variants is not None else list(ArtifactVariant),
            corpus=corpus,
            collection="Benchmark",
            progress_sink=self.progress.append,
            sleep=self.sleep,
        )


@pytest.fixture
def make_rig():
    return Rig
