from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, Union

import numpy as np

from .artifacts import ArtifactSource, FetchedArtifact
from .cancel import CancelToken, race
from .capability import CapabilityProfiler
from .config import settings
from .detector import Detector
from .errors import ArtifactError, LoadTimeout, MemoryExhaustion, is_memory_exhaustion
from .metrics import metrics
from .models import ArtifactHandle, ArtifactVariant, RunState
from .resources import ReclamationCoordinator, ResourceRegistry, registry as default_registry

logger = logging.getLogger("modelbench.loader")

# An artifact is "large" when it would take more than this share of the budget
LARGE_ARTIFACT_FRACTION = 0.5


class ArtifactLoader:
    """Acquires one artifact, warms it up once and times both."""

    def __init__(
        self,
        source: ArtifactSource,
        detector: Detector,
        reclaimer: ReclamationCoordinator,
        profiler: CapabilityProfiler,
        timeout_ms: Optional[int] = None,
        classify_memory: Callable[[BaseException], bool] = is_memory_exhaustion,
        registry: ResourceRegistry = default_registry,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.source = source
        self.detector = detector
        self.reclaimer = reclaimer
        self.profiler = profiler
        self.timeout_ms = settings.load_timeout_ms if timeout_ms is None else timeout_ms
        self.classify_memory = classify_memory
        self.registry = registry
        self.clock = clock

    def is_large(self, variant: ArtifactVariant) -> bool:
        profile = self.profiler.profile()
        return variant.approx_bytes > profile.max_memory_budget_bytes * LARGE_ARTIFACT_FRACTION

    def _wrap(self, model_id: str, exc: BaseException) -> ArtifactError:
        if isinstance(exc, ArtifactError):
            return exc
        if self.classify_memory(exc):
            return MemoryExhaustion(model_id, str(exc) or type(exc).__name__, exc)
        return ArtifactError(model_id, str(exc) or type(exc).__name__, exc)

    async def _fail(self, model_id: str, exc: BaseException) -> ArtifactError:
        err = self._wrap(model_id, exc)
        metrics.inc("artifact_load_failures_total", 1)
        logger.error("Failed to load model %s: %s", model_id, err)
        await self.reclaimer.reclaim(self.profiler.profile())
        return err

    async def load(
        self,
        variant: Union[ArtifactVariant, str],
        on_stage: Optional[Callable[[RunState], None]] = None,
    ) -> ArtifactHandle:
        if isinstance(variant, str):
            variant = ArtifactVariant.from_id(variant)
        model_id = variant.model_id
        profile = self.profiler.profile()

        if profile.low_end and self.is_large(variant):
            logger.info("Pre-load reclamation for large artifact %s", model_id)
            await self.reclaimer.reclaim(profile)

        start = self.clock()

        async def acquire(token: CancelToken) -> FetchedArtifact:
            return await self.source.fetch(model_id, token)

        try:
            fetched = await race(acquire, self.timeout_ms, lambda: LoadTimeout(model_id, self.timeout_ms))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = await self._fail(model_id, e)
            if err is e:
                raise
            raise err from e

        handle = ArtifactHandle(
            id=model_id,
            input_shape=tuple(fetched.input_shape),
            session=fetched.session,
            input_name=fetched.input_name,
            nbytes=fetched.nbytes,
            _on_dispose=self.registry.release,
        )
        self.registry.track(handle, fetched.nbytes)
        del fetched

        if on_stage is not None:
            on_stage(RunState.WARMING)
        try:
            await self._warmup(handle)
        except asyncio.CancelledError:
            handle.dispose()
            raise
        except Exception as e:
            handle.dispose()
            err = await self._fail(model_id, e)
            if err is e:
                raise
            raise err from e

        handle.load_latency_ms = (self.clock() - start) * 1000.0
        metrics.observe_latency_ms("load", model_id, handle.load_latency_ms)
        logger.info("Loaded %s in %.2f ms (input %s)", model_id, handle.load_latency_ms, handle.input_shape)
        return handle

    async def _warmup(self, handle: ArtifactHandle) -> None:
        dummy = np.ones(handle.input_shape, dtype=np.float32)
        self.registry.track(dummy, dummy.nbytes)
        try:
            outputs = await asyncio.to_thread(self.detector.execute, handle, dummy)
            del outputs
        finally:
            self.registry.release(dummy)
            del dummy
