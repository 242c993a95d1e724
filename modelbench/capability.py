from __future__ import annotations

import logging
import platform
import re
import threading
from typing import Optional

import psutil

from .config import settings
from .models import CapabilityProfile

logger = logging.getLogger("modelbench.capability")

CONSTRAINED_PLATFORM = re.compile(r"iPhone|iPad|Android", re.IGNORECASE)
IOS_LIKE_PLATFORM = re.compile(r"iPhone|iPad", re.IGNORECASE)

LOW_END_MEMORY_GB = 4.0
LOW_END_BUDGET_BYTES = 80 * 1024 * 1024
DEFAULT_BUDGET_BYTES = 200 * 1024 * 1024
IOS_RECLAIM_DELAY_MS = 2000
DEFAULT_RECLAIM_DELAY_MS = 1000
FALLBACK_MEMORY_GB = 4.0


def probe_device_memory_gb() -> float:
    """Physical memory in GB (one decimal). Hosts that won't say report 4."""
    try:
        total = psutil.virtual_memory().total
    except (OSError, RuntimeError):
        return FALLBACK_MEMORY_GB
    if total <= 0:
        return FALLBACK_MEMORY_GB
    return round(total / 1024**3, 1)


def classify(device_memory_gb: float, platform_id: str) -> CapabilityProfile:
    low_end = device_memory_gb < LOW_END_MEMORY_GB or bool(CONSTRAINED_PLATFORM.search(platform_id))
    ios_like = bool(IOS_LIKE_PLATFORM.search(platform_id))
    return CapabilityProfile(
        low_end=low_end,
        ios_like=ios_like,
        max_memory_budget_bytes=LOW_END_BUDGET_BYTES if low_end else DEFAULT_BUDGET_BYTES,
        reclamation_delay_ms=IOS_RECLAIM_DELAY_MS if ios_like else DEFAULT_RECLAIM_DELAY_MS,
        device_memory_gb=device_memory_gb,
        platform_id=platform_id,
    )


class CapabilityProfiler:
    """Classifies the host once and hands back the same profile afterwards."""

    def __init__(
        self,
        device_memory_gb: Optional[float] = None,
        platform_id: Optional[str] = None,
    ) -> None:
        self._device_memory_gb = device_memory_gb if device_memory_gb is not None else settings.device_memory_gb
        self._platform_id = platform_id if platform_id is not None else settings.platform_id
        self._lock = threading.Lock()
        self._profile: Optional[CapabilityProfile] = None

    def profile(self) -> CapabilityProfile:
        with self._lock:
            if self._profile is None:
                memory = self._device_memory_gb
                if memory is None:
                    memory = probe_device_memory_gb()
                platform_id = self._platform_id or platform.platform()
                self._profile = classify(memory, platform_id)
                logger.info(
                    "Device profile: memory=%.1fGB platform=%s low_end=%s ios_like=%s budget=%dMB",
                    memory,
                    platform_id,
                    self._profile.low_end,
                    self._profile.ios_like,
                    self._profile.max_memory_budget_bytes // (1024 * 1024),
                )
            return self._profile
