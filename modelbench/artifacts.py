from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Sequence, Tuple

import onnxruntime as ort

from .cancel import CancelToken
from .config import settings

logger = logging.getLogger("modelbench.artifacts")

# Concrete size used for dynamic (symbolic) input dimensions
DEFAULT_IMGSZ = 640


@dataclass
class FetchedArtifact:
    model_id: str
    session: Any
    input_name: str
    input_shape: Tuple[int, int, int, int]
    nbytes: int = 0


class ArtifactSource(Protocol):
    async def fetch(self, model_id: str, token: CancelToken) -> FetchedArtifact: ...


def resolve_input_shape(shape: Sequence[Any]) -> Tuple[int, int, int, int]:
    """Turn an ONNX input shape with symbolic dims into four concrete ints."""
    dims = list(shape)
    if len(dims) != 4:
        raise ValueError(f"expected a 4-d image input, got shape {dims}")

    def concrete(d: Any) -> Optional[int]:
        return int(d) if isinstance(d, int) and d > 0 else None

    b, d1, d2, d3 = (concrete(d) for d in dims)
    b = b or 1
    # NCHW when the channel axis is 1, otherwise NHWC
    if d1 == 3 or (d1 is None and d3 != 3):
        return (b, 3, d2 or DEFAULT_IMGSZ, d3 or DEFAULT_IMGSZ)
    return (b, d1 or DEFAULT_IMGSZ, d2 or DEFAULT_IMGSZ, 3)


def artifact_path(model_id: str, artifacts_dir: Optional[str] = None) -> str:
    return os.path.join(artifacts_dir or settings.artifacts_dir, f"{model_id}_web_model", "model.onnx")


class OnnxArtifactSource:
    """Opens artifacts from disk as onnxruntime sessions (CPU)."""

    def __init__(self, artifacts_dir: Optional[str] = None, providers: Optional[List[str]] = None) -> None:
        self.artifacts_dir = artifacts_dir or settings.artifacts_dir
        self.providers = providers or ["CPUExecutionProvider"]

    def _open(self, model_id: str, token: CancelToken) -> Optional[FetchedArtifact]:
        path = artifact_path(model_id, self.artifacts_dir)
        if not os.path.exists(path):
            raise FileNotFoundError(f"artifact not found: {path}")

        opts = ort.SessionOptions()
        opts.log_severity_level = 3
        session = ort.InferenceSession(path, sess_options=opts, providers=self.providers)

        if token.cancelled:
            # Caller gave up waiting; drop the session instead of handing it back
            logger.warning("Discarding session for %s opened after timeout", model_id)
            del session
            return None

        inp = session.get_inputs()[0]
        return FetchedArtifact(
            model_id=model_id,
            session=session,
            input_name=inp.name,
            input_shape=resolve_input_shape(inp.shape),
            nbytes=os.path.getsize(path),
        )

    async def fetch(self, model_id: str, token: CancelToken) -> FetchedArtifact:
        fetched = await asyncio.to_thread(self._open, model_id, token)
        token.raise_if_cancelled()
        if fetched is None:
            raise RuntimeError(f"fetch of {model_id} abandoned")
        return fetched
