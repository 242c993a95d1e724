from __future__ import annotations

import asyncio
from typing import List, Optional, Protocol, Sequence, Tuple

import numpy as np
from PIL import Image

from .cancel import CancelToken
from .config import settings
from .models import ArtifactHandle, Detection, DetectionOutput

LETTERBOX_FILL = (114, 114, 114)


class Detector(Protocol):
    """Runs a loaded artifact.

    ``execute`` is the raw forward pass used for warmup; ``run`` is a full
    detection including pre/post-processing.
    """

    def execute(self, handle: ArtifactHandle, tensor: np.ndarray) -> List[np.ndarray]: ...

    async def run(self, handle: ArtifactHandle, image: Image.Image, token: CancelToken) -> DetectionOutput: ...


def _cxcywh_to_xyxy(boxes: np.ndarray) -> np.ndarray:
    cx, cy, w, h = boxes[..., 0], boxes[..., 1], boxes[..., 2], boxes[..., 3]
    x1 = cx - 0.5 * w
    y1 = cy - 0.5 * h
    x2 = cx + 0.5 * w
    y2 = cy + 0.5 * h
    return np.stack([x1, y1, x2, y2], axis=-1)


def _nms_xyxy(boxes: np.ndarray, scores: np.ndarray, iou_thresh: float) -> np.ndarray:
    """
    boxes: [N,4] in xyxy (pixel coordinates)
    scores: [N]
    returns: indices to keep (in descending score order)
    """
    if boxes.size == 0:
        return np.array([], dtype=np.int64)

    x1 = boxes[:, 0].astype(np.float32)
    y1 = boxes[:, 1].astype(np.float32)
    x2 = boxes[:, 2].astype(np.float32)
    y2 = boxes[:, 3].astype(np.float32)

    areas = np.maximum(0.0, x2 - x1) * np.maximum(0.0, y2 - y1)
    order = scores.argsort()[::-1].astype(np.int64)

    keep = []
    while order.size > 0:
        i = order[0]
        keep.append(i)

        xx1 = np.maximum(x1[i], x1[order[1:]])
        yy1 = np.maximum(y1[i], y1[order[1:]])
        xx2 = np.minimum(x2[i], x2[order[1:]])
        yy2 = np.minimum(y2[i], y2[order[1:]])

        w = np.maximum(0.0, xx2 - xx1)
        h = np.maximum(0.0, yy2 - yy1)
        inter = w * h

        union = areas[i] + areas[order[1:]] - inter + 1e-6
        iou = inter / union

        remain = np.where(iou <= iou_thresh)[0]
        order = order[remain + 1]

    return np.array(keep, dtype=np.int64)


def _is_nchw(shape: Sequence[int]) -> bool:
    return shape[1] == 3


def letterbox(image: Image.Image, input_shape: Sequence[int]) -> Tuple[np.ndarray, float]:
    """Resize keeping aspect ratio, pad right/bottom, return (batch tensor, scale)."""
    if _is_nchw(input_shape):
        target_h, target_w = int(input_shape[2]), int(input_shape[3])
    else:
        target_h, target_w = int(input_shape[1]), int(input_shape[2])

    img = image.convert("RGB")
    scale = min(target_w / img.width, target_h / img.height)
    new_w = max(1, int(round(img.width * scale)))
    new_h = max(1, int(round(img.height * scale)))
    resized = img.resize((new_w, new_h), Image.BILINEAR)

    canvas = Image.new("RGB", (target_w, target_h), LETTERBOX_FILL)
    canvas.paste(resized, (0, 0))

    arr = np.asarray(canvas, dtype=np.float32) / 255.0  # [H,W,3]
    if _is_nchw(input_shape):
        arr = arr.transpose(2, 0, 1)
    return np.ascontiguousarray(arr[None, ...]), scale


def decode_yolo(
    output: np.ndarray,
    scale: float,
    score_thresh: float,
    nms_iou: float,
    max_dets: int = 100,
) -> List[Detection]:
    pred = np.asarray(output)
    if pred.ndim == 3:
        pred = pred[0]
    # [4+nc, N] -> [N, 4+nc]
    if pred.shape[0] < pred.shape[1]:
        pred = pred.T

    cls_scores = pred[:, 4:]
    if cls_scores.size == 0:
        return []
    scores = cls_scores.max(axis=-1)
    labels = cls_scores.argmax(axis=-1)

    idx = np.where(scores >= score_thresh)[0]
    if idx.size == 0:
        return []

    b = _cxcywh_to_xyxy(pred[idx, :4]) / max(scale, 1e-9)
    s = scores[idx].astype(np.float32)
    l = labels[idx].astype(np.int64)

    keep_global = []
    for cls in np.unique(l):
        cls_mask = (l == cls)
        cls_keep = _nms_xyxy(b[cls_mask], s[cls_mask], nms_iou)
        keep_global.append(np.where(cls_mask)[0][cls_keep])

    keep = np.concatenate(keep_global) if keep_global else np.array([], dtype=np.int64)
    keep = keep[np.argsort(-s[keep])][:max_dets]

    return [
        Detection(
            score=float(s[k]),
            class_index=int(l[k]),
            box=(float(b[k, 0]), float(b[k, 1]), float(b[k, 2]), float(b[k, 3])),
        )
        for k in keep
    ]


class OnnxYoloDetector:
    """YOLO detector over an onnxruntime session held by the artifact handle."""

    def __init__(
        self,
        score_threshold: Optional[float] = None,
        nms_iou_threshold: Optional[float] = None,
    ) -> None:
        self.score_threshold = settings.score_threshold if score_threshold is None else score_threshold
        self.nms_iou_threshold = settings.nms_iou_threshold if nms_iou_threshold is None else nms_iou_threshold

    def execute(self, handle: ArtifactHandle, tensor: np.ndarray) -> List[np.ndarray]:
        if handle.session is None:
            raise RuntimeError(f"artifact {handle.id} already disposed")
        return handle.session.run(None, {handle.input_name: tensor})

    def _infer(self, handle: ArtifactHandle, image: Image.Image, token: CancelToken) -> DetectionOutput:
        token.raise_if_cancelled()
        tensor, scale = letterbox(image, handle.input_shape)
        outs = self.execute(handle, tensor)
        del tensor
        token.raise_if_cancelled()
        dets = decode_yolo(outs[0], scale, self.score_threshold, self.nms_iou_threshold)
        return DetectionOutput(detections=dets)

    async def run(self, handle: ArtifactHandle, image: Image.Image, token: CancelToken) -> DetectionOutput:
        return await asyncio.to_thread(self._infer, handle, image, token)
