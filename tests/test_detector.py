import asyncio

import numpy as np
import pytest
from PIL import Image

from modelbench.artifacts import resolve_input_shape
from modelbench.cancel import CancelledByTimeout, CancelToken
from modelbench.detector import OnnxYoloDetector, _nms_xyxy, decode_yolo, letterbox
from modelbench.models import ArtifactHandle


def _yolo_output(n=8, nc=2):
    # rows: cx, cy, w, h, score per class ; columns: candidates
    pred = np.zeros((4 + nc, n), dtype=np.float32)
    pred[:, 0] = [50, 50, 20, 20, 0.9, 0.0]
    pred[:, 1] = [52, 50, 20, 20, 0.6, 0.0]  # overlaps candidate 0, same class
    pred[:, 2] = [50, 50, 20, 20, 0.0, 0.8]  # same place, other class
    return pred[None, ...]


def test_decode_yolo_applies_per_class_nms_and_scale():
    dets = decode_yolo(_yolo_output(), scale=0.5, score_thresh=0.25, nms_iou=0.45)

    assert [(round(d.score, 2), d.class_index) for d in dets] == [(0.9, 0), (0.8, 1)]
    assert dets[0].box == pytest.approx((80.0, 80.0, 120.0, 120.0))


def test_decode_yolo_below_threshold():
    assert decode_yolo(_yolo_output(), scale=1.0, score_thresh=0.95, nms_iou=0.45) == []


def test_nms_empty():
    keep = _nms_xyxy(np.zeros((0, 4)), np.zeros((0,)), 0.5)
    assert keep.size == 0


def test_letterbox_nchw_pads_right_and_bottom():
    img = Image.new("RGB", (100, 50), (255, 0, 0))
    tensor, scale = letterbox(img, (1, 3, 64, 64))

    assert tensor.shape == (1, 3, 64, 64)
    assert tensor.dtype == np.float32
    assert scale == pytest.approx(0.64)
    assert tensor[0, 0, 0, 0] == pytest.approx(1.0)
    assert tensor[0, 0, 63, 0] == pytest.approx(114 / 255)


def test_letterbox_nhwc():
    tensor, _ = letterbox(Image.new("RGB", (30, 30)), (1, 32, 32, 3))
    assert tensor.shape == (1, 32, 32, 3)


def test_resolve_input_shape():
    assert resolve_input_shape([1, 3, 640, 640]) == (1, 3, 640, 640)
    assert resolve_input_shape(["batch", 3, "height", "width"]) == (1, 3, 640, 640)
    assert resolve_input_shape([1, "h", "w", 3]) == (1, 640, 640, 3)
    with pytest.raises(ValueError):
        resolve_input_shape([1, 3, 640])


class FakeSession:
    def __init__(self):
        self.feeds = []

    def run(self, names, feed):
        self.feeds.append(feed)
        return [_yolo_output()]


def test_onnx_detector_runs_session():
    session = FakeSession()
    handle = ArtifactHandle(id="yolo11n", input_shape=(1, 3, 64, 64), session=session)
    detector = OnnxYoloDetector(score_threshold=0.25, nms_iou_threshold=0.45)

    out = asyncio.run(detector.run(handle, Image.new("RGB", (64, 64)), CancelToken()))

    assert len(out.detections) == 2
    assert session.feeds[0]["images"].shape == (1, 3, 64, 64)


def test_onnx_detector_stops_when_cancelled():
    session = FakeSession()
    handle = ArtifactHandle(id="yolo11n", input_shape=(1, 3, 64, 64), session=session)
    token = CancelToken()
    token.cancel()

    with pytest.raises(CancelledByTimeout):
        asyncio.run(OnnxYoloDetector().run(handle, Image.new("RGB", (64, 64)), token))
    assert session.feeds == []


def test_disposed_handle_cannot_execute():
    handle = ArtifactHandle(id="yolo11n", input_shape=(1, 3, 64, 64), session=FakeSession())
    handle.dispose()
    with pytest.raises(RuntimeError):
        OnnxYoloDetector().execute(handle, np.ones((1, 3, 64, 64), dtype=np.float32))
