"""Benchmark orchestration.

One run walks the artifacts in priority order. For each one it reclaims
memory, loads and warms the artifact, runs every corpus image through it,
aggregates, then disposes the artifact before touching the next. Exactly one
artifact handle is live at a time. Whatever happens, the run ends with a
complete ``BenchmarkRun`` and a single persistence attempt.

States::

    IDLE -> SELECTING_ARTIFACTS
         -> [PREPARING -> LOADING -> WARMING -> TESTING_IMAGES
             -> AGGREGATING -> CLEANING_UP] per artifact
         -> PERSISTING -> DONE | ABORTED
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from .capability import LOW_END_MEMORY_GB, CapabilityProfiler
from .config import settings
from .errors import BenchmarkBusy, MemoryExhaustion
from .images import ImageLoader, corpus_paths
from .loader import ArtifactLoader
from .metrics import metrics
from .models import (
    ArtifactHandle,
    ArtifactVariant,
    BenchmarkRun,
    CapabilityProfile,
    ImageResult,
    ModelResult,
    Progress,
    RunState,
)
from .resources import ReclamationCoordinator
from .runner import InferenceRunner
from .telemetry import TelemetryStore, build_summary_record

logger = logging.getLogger("modelbench.orchestrator")

ProgressSink = Callable[[Progress], None]


def default_variants() -> List[ArtifactVariant]:
    return [ArtifactVariant.from_id(m) for m in settings.model_id_list()]


class BenchmarkOrchestrator:
    def __init__(
        self,
        loader: ArtifactLoader,
        runner: InferenceRunner,
        image_loader: ImageLoader,
        reclaimer: ReclamationCoordinator,
        profiler: CapabilityProfiler,
        store: TelemetryStore,
        *,
        variants: Optional[Sequence[ArtifactVariant]] = None,
        corpus: Optional[Sequence[str]] = None,
        collection: Optional[str] = None,
        reclaim_every: Optional[int] = None,
        pace_every: Optional[int] = None,
        pace_delay_ms: Optional[int] = None,
        skip_memory_gb: Optional[float] = None,
        progress_sink: Optional[ProgressSink] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.loader = loader
        self.runner = runner
        self.image_loader = image_loader
        self.reclaimer = reclaimer
        self.profiler = profiler
        self.store = store

        self.variants: List[ArtifactVariant] = list(variants) if variants is not None else default_variants()
        self.corpus: List[str] = list(corpus) if corpus is not None else corpus_paths()
        self.collection = collection or settings.telemetry_collection
        self.reclaim_every = reclaim_every or settings.reclaim_every
        self.pace_every = pace_every or settings.pace_every
        self.pace_delay_ms = settings.pace_delay_ms if pace_delay_ms is None else pace_delay_ms
        self.skip_memory_gb = settings.skip_memory_gb if skip_memory_gb is None else skip_memory_gb
        self.progress_sink = progress_sink
        self._sleep = sleep

        self.state = RunState.IDLE
        self.progress = Progress(0, 0)
        self.current_run: Optional[BenchmarkRun] = None
        self.last_run: Optional[BenchmarkRun] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._completed = 0
        self._total_planned = 0

    @property
    def running(self) -> bool:
        return self._running

    def _acquire(self) -> None:
        if self._running:
            raise BenchmarkBusy()
        self._running = True
        metrics.set_gauge("benchmark_running", 1.0)

    def _release(self) -> None:
        self._running = False
        metrics.set_gauge("benchmark_running", 0.0)

    async def run(self, device_id: str) -> BenchmarkRun:
        """Run one benchmark to completion. Raises only ``BenchmarkBusy``."""
        self._acquire()
        return await self._run_and_release(device_id)

    async def _run_and_release(self, device_id: str) -> BenchmarkRun:
        try:
            return await self._execute(device_id)
        finally:
            self._release()

    def launch(self, device_id: str) -> asyncio.Task:
        """Start a run in the background on the current loop."""
        self._acquire()
        coro = self._run_and_release(device_id)
        try:
            self._task = asyncio.create_task(coro)
        except BaseException:
            # No running loop: the run never started, so nothing holds the flag
            coro.close()
            self._release()
            raise
        return self._task

    async def detect_once(
        self, variant: ArtifactVariant, image: Any, image_name: str = "upload"
    ) -> Tuple[ImageResult, float]:
        """Load one artifact, run one detection, dispose it.

        Shares the exclusion flag with benchmark runs. Returns the image
        result and the artifact's load latency; load failures propagate.
        """
        self._acquire()
        try:
            profile = self.profiler.profile()
            await self.reclaimer.reclaim(profile)
            handle = await self.loader.load(variant)
            try:
                load_latency_ms = handle.load_latency_ms
                result = await self.runner.run(handle, image, image_name)
            finally:
                handle.dispose()
                del handle
                await self.reclaimer.reclaim(profile)
            logger.info(
                "Single detection with %s: load %.2f ms, detect %.2f ms",
                variant.model_id,
                load_latency_ms,
                result.detection_time_ms,
            )
            return result, load_latency_ms
        finally:
            self._release()

    def _set_state(self, state: RunState) -> None:
        self.state = state
        if self.current_run is not None:
            self.current_run.state = state

    def _report(self, status: str) -> None:
        self.progress = Progress(self._completed, self._total_planned, status)
        metrics.set_gauge("benchmark_progress", self.progress.fraction)
        if self.progress_sink is not None:
            try:
                self.progress_sink(self.progress)
            except Exception:
                logger.exception("Progress sink failed")

    def select(self, profile: CapabilityProfile, run: BenchmarkRun) -> List[ArtifactVariant]:
        """Drop the heaviest artifact on low-memory devices, recording why."""
        to_test = list(self.variants)
        heaviest = ArtifactVariant.heaviest(to_test)
        memory = profile.device_memory_gb
        if heaviest is not None and memory <= self.skip_memory_gb:
            to_test.remove(heaviest)
            logger.warning("Skipping %s due to low memory: %sGB", heaviest.model_id, memory)
            run.results.append(
                ModelResult.skipped(
                    heaviest.model_id,
                    f"Skipped due to insufficient RAM: {memory:g}GB (minimum {LOW_END_MEMORY_GB:g}GB required)",
                )
            )
        return to_test

    async def _execute(self, device_id: str) -> BenchmarkRun:
        run = BenchmarkRun(device_id=device_id)
        self.current_run = run
        self._completed = 0
        self._total_planned = 0
        metrics.inc("runs_total", 1)
        logger.info("Benchmark started for device %s", device_id)

        outcome = RunState.DONE
        profile: Optional[CapabilityProfile] = None
        try:
            profile = self.profiler.profile()
            self._set_state(RunState.SELECTING_ARTIFACTS)
            to_test = self.select(profile, run)
            heaviest = ArtifactVariant.heaviest(self.variants)

            self._total_planned = len(to_test) * len(self.corpus)
            self._report(f"Testing {len(to_test)} models on {len(self.corpus)} images")

            for variant in to_test:
                if await self._test_artifact(run, variant, heaviest, profile):
                    outcome = RunState.ABORTED
                    metrics.inc("runs_aborted_total", 1)
                    break
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Benchmark run failed unexpectedly")

        self._set_state(RunState.PERSISTING)
        await self._persist(run)

        run.finished_at = datetime.now(timezone.utc)
        self._set_state(outcome)
        self.last_run = run

        if profile is not None:
            await self.reclaimer.reclaim(profile)
        logger.info(
            "Benchmark %s: %d results, %d/%d images processed",
            outcome.value,
            len(run.results),
            self._completed,
            self._total_planned,
        )
        return run

    async def _test_artifact(
        self,
        run: BenchmarkRun,
        variant: ArtifactVariant,
        heaviest: Optional[ArtifactVariant],
        profile: CapabilityProfile,
    ) -> bool:
        """Test one artifact. Returns True when the run must abort."""
        model_id = variant.model_id
        self._set_state(RunState.PREPARING)
        self._report(f"Preparing memory for {model_id}...")
        await self.reclaimer.reclaim(profile)

        self._set_state(RunState.LOADING)
        self._report(f"Loading {model_id}...")
        try:
            handle = await self.loader.load(variant, on_stage=self._on_loader_stage)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error with model %s: %s", model_id, e)
            run.results.append(ModelResult.load_failed(model_id, str(e)))
            if isinstance(e, MemoryExhaustion) and variant is heaviest:
                self._report("Memory limit reached, stopping...")
                return True
            return False

        result = ModelResult(model_id=model_id, load_latency_ms=handle.load_latency_ms)
        try:
            self._set_state(RunState.TESTING_IMAGES)
            try:
                await self._test_images(handle, result, profile)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Testing %s stopped early", model_id)
                result.error_message = str(e)

            self._set_state(RunState.AGGREGATING)
            result.aggregate()
            run.results.append(result)
        finally:
            self._set_state(RunState.CLEANING_UP)
            self._report(f"Cleaning up {model_id}...")
            handle.dispose()
            del handle
            await self.reclaimer.reclaim(profile)
        return False

    def _on_loader_stage(self, state: RunState) -> None:
        self._set_state(state)
        if state is RunState.WARMING:
            self._report("Warming up...")

    async def _test_images(self, handle: ArtifactHandle, result: ModelResult, profile: CapabilityProfile) -> None:
        for path in self.corpus:
            name = os.path.basename(path)
            self._report(f"Testing {handle.id} on {name}")

            try:
                image = await self.image_loader.load(path)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error processing %s: %s", name, e)
                image_result = ImageResult.failed(name, str(e))
            else:
                image_result = await self.runner.run(handle, image, name)
                close = getattr(image, "close", None)
                if close is not None:
                    close()
                del image

            if image_result.error_message is not None:
                metrics.inc("image_failures_total", 1)
            result.images.append(image_result)

            self._completed += 1
            self._report(f"Tested {handle.id} on {name}")

            if self._completed % self.reclaim_every == 0:
                await self.reclaimer.reclaim(profile)
            if profile.low_end and self._completed % self.pace_every == 0:
                await self._sleep(self.pace_delay_ms / 1000.0)

    async def _persist(self, run: BenchmarkRun) -> bool:
        self._report("Saving to database...")
        try:
            record = build_summary_record(run, [v.model_id for v in self.variants])
            await self.store.create(self.collection, record)
        except asyncio.CancelledError:
            raise
        except Exception:
            metrics.inc("persistence_failures_total", 1)
            logger.exception("Save error")
            self._report("Benchmark completed (save failed)")
            return False
        self._report("Benchmark completed and saved!")
        return True


def build_orchestrator(
    progress_sink: Optional[ProgressSink] = None,
    store: Optional[TelemetryStore] = None,
) -> BenchmarkOrchestrator:
    """Wire the orchestrator to the ONNX runtime, PIL and the configured store."""
    from .artifacts import OnnxArtifactSource
    from .detector import OnnxYoloDetector
    from .images import PILImageLoader
    from .telemetry import build_store

    profiler = CapabilityProfiler()
    reclaimer = ReclamationCoordinator()
    detector = OnnxYoloDetector()
    loader = ArtifactLoader(OnnxArtifactSource(), detector, reclaimer, profiler)
    return BenchmarkOrchestrator(
        loader=loader,
        runner=InferenceRunner(detector),
        image_loader=PILImageLoader(),
        reclaimer=reclaimer,
        profiler=profiler,
        store=store if store is not None else build_store(),
        progress_sink=progress_sink,
    )
