import asyncio
from types import SimpleNamespace

import modelbench.resources as resources
from conftest import SleepRecorder
from modelbench.capability import classify
from modelbench.resources import ReclamationCoordinator, ResourceRegistry


class Blob:
    pass


def _counting_gc(monkeypatch):
    calls = []
    monkeypatch.setattr(resources, "gc", SimpleNamespace(collect=lambda: calls.append(1)))
    return calls


def test_registry_tracks_and_forgets():
    reg = ResourceRegistry()
    a, b = Blob(), Blob()
    reg.track(a, 100)
    reg.track(b, 50)
    assert reg.snapshot().live_resource_count == 2
    assert reg.snapshot().live_bytes == 150

    reg.release(a)
    assert reg.snapshot().live_resource_count == 1

    del b
    import gc
    gc.collect()
    assert reg.snapshot().live_resource_count == 0


def test_registry_accepts_non_weakrefable_objects():
    reg = ResourceRegistry()
    t = (1, 2, 3)
    reg.track(t, 10)
    assert reg.snapshot().live_resource_count == 1
    reg.release(t)
    assert reg.snapshot().live_resource_count == 0


def test_reclaim_capable_device(monkeypatch):
    calls = _counting_gc(monkeypatch)
    sleep = SleepRecorder()
    coord = ReclamationCoordinator(registry=ResourceRegistry(), watermark=20, sleep=sleep)

    snap = asyncio.run(coord.reclaim(classify(8.0, "Linux-6.1-x86_64")))

    assert len(calls) == 5
    assert sleep.calls == []
    assert snap.live_resource_count == 0
    assert coord.passes == 1


def test_reclaim_ios_like_runs_more_cycles_and_waits_longer(monkeypatch):
    calls = _counting_gc(monkeypatch)
    sleep = SleepRecorder()
    coord = ReclamationCoordinator(registry=ResourceRegistry(), watermark=20, sleep=sleep)

    asyncio.run(coord.reclaim(classify(6.0, "iPhone; CPU iPhone OS 17_0")))

    assert len(calls) == 7
    assert sleep.calls == [2.0]


def test_reclaim_low_memory_waits(monkeypatch):
    _counting_gc(monkeypatch)
    sleep = SleepRecorder()
    coord = ReclamationCoordinator(registry=ResourceRegistry(), watermark=20, sleep=sleep)

    asyncio.run(coord.reclaim(classify(2.0, "Linux")))

    assert sleep.calls == [1.0]


def test_reclaim_above_watermark_adds_cycles(monkeypatch):
    calls = _counting_gc(monkeypatch)
    reg = ResourceRegistry()
    held = [reg.track(Blob(), 1) for _ in range(3)]
    coord = ReclamationCoordinator(registry=reg, watermark=1, sleep=SleepRecorder())

    snap = asyncio.run(coord.reclaim(classify(8.0, "Linux")))

    assert len(calls) == 8
    assert snap.live_resource_count == len(held)


def test_reclaim_never_raises():
    async def broken_sleep(seconds):
        raise RuntimeError("timer gone")

    coord = ReclamationCoordinator(registry=ResourceRegistry(), sleep=broken_sleep)
    snap = asyncio.run(coord.reclaim(classify(2.0, "Android 14")))

    assert snap.live_resource_count == 0
    assert coord.passes == 1
