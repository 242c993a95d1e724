from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, List, Optional

from PIL import Image

from .cancel import CancelToken, race
from .config import settings
from .detector import Detector
from .errors import DetectionTimeout
from .metrics import metrics
from .models import ArtifactHandle, DetectionOutput, ImageResult

logger = logging.getLogger("modelbench.runner")


class InferenceRunner:
    """One detection against one input, bounded in time.

    ``run`` never raises: a timeout or detector failure comes back as an
    ``ImageResult`` with zeroed fields and an error message.
    """

    def __init__(
        self,
        detector: Detector,
        timeout_ms: Optional[int] = None,
        class_names: Optional[List[str]] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.detector = detector
        self.timeout_ms = settings.detect_timeout_ms if timeout_ms is None else timeout_ms
        self.class_names = settings.class_name_list() if class_names is None else class_names
        self.clock = clock

    def _class_name(self, idx: int) -> str:
        if 0 <= idx < len(self.class_names):
            return self.class_names[idx]
        return "unknown"

    async def run(self, handle: ArtifactHandle, image: Image.Image, image_name: str = "") -> ImageResult:
        t0 = self.clock()

        async def detect(token: CancelToken) -> DetectionOutput:
            return await self.detector.run(handle, image, token)

        try:
            out = await race(detect, self.timeout_ms, lambda: DetectionTimeout(self.timeout_ms))
        except asyncio.CancelledError:
            raise
        except DetectionTimeout as e:
            metrics.inc("detect_timeouts_total", 1)
            logger.warning("Detection timeout on %s with %s", image_name, handle.id)
            return ImageResult.failed(image_name, str(e))
        except Exception as e:
            metrics.inc("detect_failures_total", 1)
            logger.exception("Detection error on %s with %s", image_name, handle.id)
            return ImageResult.failed(image_name, str(e) or type(e).__name__)

        dt = (self.clock() - t0) * 1000.0
        metrics.observe_latency_ms("detection", handle.id, dt)

        dets = out.detections
        first = dets[0] if dets else None
        idx = first.class_index if first is not None else -1
        return ImageResult(
            image_name=image_name,
            detection_time_ms=dt,
            score=float(first.score) if first is not None else 0.0,
            class_index=idx,
            class_name=self._class_name(idx),
            detection_count=len(dets),
        )
