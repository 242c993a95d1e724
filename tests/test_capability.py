from modelbench.capability import (
    DEFAULT_BUDGET_BYTES,
    LOW_END_BUDGET_BYTES,
    CapabilityProfiler,
    classify,
    probe_device_memory_gb,
)


def test_capable_desktop():
    p = classify(16.0, "Linux-6.1-x86_64-with-glibc2.36")
    assert not p.low_end
    assert not p.ios_like
    assert p.max_memory_budget_bytes == DEFAULT_BUDGET_BYTES
    assert p.reclamation_delay_ms == 1000


def test_low_memory_is_low_end():
    p = classify(3.9, "Linux")
    assert p.low_end
    assert p.max_memory_budget_bytes == LOW_END_BUDGET_BYTES


def test_four_gb_is_not_low_end_by_memory():
    assert not classify(4.0, "Windows-10").low_end


def test_mobile_platforms_are_low_end_regardless_of_memory():
    assert classify(12.0, "Linux; Android 14; Pixel 8").low_end
    ipad = classify(8.0, "iPad; CPU OS 17_1")
    assert ipad.low_end
    assert ipad.ios_like
    assert ipad.reclamation_delay_ms == 2000


def test_platform_match_is_case_insensitive():
    assert classify(8.0, "IPHONE").ios_like
    assert classify(8.0, "android").low_end


def test_profiler_caches_first_answer():
    profiler = CapabilityProfiler(device_memory_gb=2.0, platform_id="Linux")
    first = profiler.profile()
    assert profiler.profile() is first
    assert first.device_memory_gb == 2.0
    assert first.low_end


def test_profiler_falls_back_to_host():
    p = CapabilityProfiler(device_memory_gb=8.0, platform_id="").profile()
    assert p.platform_id != ""


def test_probe_reports_positive_memory():
    assert probe_device_memory_gb() > 0


def test_probe_falls_back_when_host_will_not_say(monkeypatch):
    import modelbench.capability as capability

    def boom():
        raise OSError("no /proc/meminfo")

    monkeypatch.setattr(capability.psutil, "virtual_memory", boom)
    assert probe_device_memory_gb() == 4.0
