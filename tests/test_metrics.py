import pytest

from modelbench.metrics import Metrics


def test_counters_and_gauges():
    m = Metrics()
    m.inc("runs_total")
    m.inc("runs_total", 2)
    m.set_gauge("live_resources", 3.0)

    assert m.get("runs_total") == 3
    assert m.get("live_resources") == 3.0
    assert m.get("missing") == 0.0

    text = m.snapshot()
    assert "# TYPE runs_total counter\nruns_total 3" in text
    assert "live_resources 3.0" in text


def test_latency_summary_per_model():
    m = Metrics()
    for v in (10.0, 20.0, 30.0):
        m.observe_latency_ms("detection", "yolo11n", v)
    m.observe_latency_ms("load", "yolo11s", 500.0)

    text = m.snapshot()
    assert 'detection_latency_ms{model="yolo11n",quantile="0.5"} 20.0' in text
    assert 'detection_latency_ms_count{model="yolo11n"} 3' in text
    assert 'load_latency_ms_sum{model="yolo11s"} 500.0' in text
    assert 'detection_latency_ms{model="yolo11s"' not in text


def test_unknown_latency_kind():
    with pytest.raises(ValueError):
        Metrics().observe_latency_ms("warmup", "yolo11n", 1.0)
