from __future__ import annotations

import asyncio
import gc
import logging
import threading
import weakref
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import settings
from .metrics import metrics
from .models import CapabilityProfile, MemorySnapshot

logger = logging.getLogger("modelbench.resources")

BASE_YIELD_CYCLES = 4
IOS_YIELD_CYCLES = 6
EXTRA_YIELD_CYCLES = 3


class ResourceRegistry:
    """Counts live runtime resources (sessions, tensors, decoded images).

    Entries are weak: once the last strong reference goes away and the
    collector runs, the entry drops out on its own. ``release`` drops it
    straight away for resources disposed explicitly.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._live: Dict[int, int] = {}
        self._finalizers: Dict[int, weakref.finalize] = {}

    def track(self, obj: Any, nbytes: int = 0) -> Any:
        key = id(obj)
        with self._lock:
            self._live[key] = int(nbytes)
        try:
            self._finalizers[key] = weakref.finalize(obj, self._forget, key)
        except TypeError:
            # Not weak-referenceable: only an explicit release removes it
            pass
        return obj

    def release(self, obj: Any) -> None:
        key = id(obj)
        fin = self._finalizers.pop(key, None)
        if fin is not None:
            fin.detach()
        self._forget(key)

    def _forget(self, key: int) -> None:
        with self._lock:
            self._live.pop(key, None)
        self._finalizers.pop(key, None)

    def snapshot(self) -> MemorySnapshot:
        with self._lock:
            return MemorySnapshot(live_resource_count=len(self._live), live_bytes=sum(self._live.values()))


registry = ResourceRegistry()


class ReclamationCoordinator:
    """Best-effort release of unreferenced runtime resources between stages.

    Callers may not assume zero live resources afterwards.
    """

    def __init__(
        self,
        registry: ResourceRegistry = registry,
        watermark: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.watermark = settings.live_resource_watermark if watermark is None else watermark
        self._sleep = sleep
        self.passes = 0

    async def _yield_cycles(self, n: int) -> None:
        for _ in range(n):
            gc.collect()
            await asyncio.sleep(0)

    async def reclaim(self, profile: CapabilityProfile) -> MemorySnapshot:
        try:
            gc.collect()
            await self._yield_cycles(IOS_YIELD_CYCLES if profile.ios_like else BASE_YIELD_CYCLES)

            for _ in range(EXTRA_YIELD_CYCLES):
                if self.registry.snapshot().live_resource_count <= self.watermark:
                    break
                await self._yield_cycles(1)

            if profile.low_end:
                await self._sleep(profile.reclamation_delay_ms / 1000.0)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Reclamation pass failed")

        self.passes += 1
        snap = self.registry.snapshot()
        metrics.inc("reclaim_passes_total", 1)
        metrics.set_gauge("live_resources", float(snap.live_resource_count))
        metrics.set_gauge("live_bytes", float(snap.live_bytes))
        logger.info(
            "Memory after cleanup: %d resources, %.1f MB",
            snap.live_resource_count,
            snap.live_mb,
        )
        return snap
