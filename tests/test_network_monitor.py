import socket

import pytest

from segrelay.network_monitor import ConnectivityProbe, NetworkQuality, NetworkQualityMonitor, classify


@pytest.mark.parametrize(
    "kwargs, expected",
    [
        ({"online": False, "effective_type": "4g"}, NetworkQuality.OFFLINE),
        ({"online": True}, NetworkQuality.GOOD),
        ({"online": True, "effective_type": "2g"}, NetworkQuality.POOR),
        ({"online": True, "effective_type": "slow-2g"}, NetworkQuality.POOR),
        ({"online": True, "effective_type": "3g"}, NetworkQuality.FAIR),
        ({"online": True, "effective_type": "4g", "downlink_mbps": 0.3}, NetworkQuality.POOR),
        ({"online": True, "effective_type": "4g", "rtt_ms": 800}, NetworkQuality.FAIR),
        ({"online": True, "downlink_mbps": 10, "rtt_ms": 40}, NetworkQuality.GOOD),
        ({"online": True, "effective_type": "unknown"}, NetworkQuality.GOOD),
    ],
)
def test_classify(kwargs, expected):
    assert classify(**kwargs) is expected


def test_eligibility_respects_threshold():
    monitor = NetworkQualityMonitor(min_quality=NetworkQuality.FAIR)
    assert monitor.is_upload_eligible()

    monitor.update(True, effective_type="2g")
    assert monitor.is_online()
    assert not monitor.is_upload_eligible()

    monitor.update(True, effective_type="3g")
    assert monitor.is_upload_eligible()

    monitor.update(False)
    assert not monitor.is_online()
    assert monitor.current_quality() is NetworkQuality.OFFLINE


def test_listeners_fire_only_on_eligibility_transitions():
    monitor = NetworkQualityMonitor()
    calls = []
    monitor.add_listener(lambda eligible, quality: calls.append((eligible, quality)))

    monitor.update(True, effective_type="4g")
    monitor.update(True, effective_type="3g")
    monitor.update(False)
    monitor.update(True, effective_type="2g")
    monitor.update(True)

    assert calls == [(False, NetworkQuality.OFFLINE), (True, NetworkQuality.GOOD)]


def test_failing_listener_does_not_block_others(caplog):
    monitor = NetworkQualityMonitor()
    seen = []

    def broken(eligible, quality):
        raise RuntimeError("listener bug")

    monitor.add_listener(broken)
    monitor.add_listener(lambda eligible, quality: seen.append(eligible))
    monitor.update(False)

    assert seen == [False]
    assert "network listener failed" in caplog.text


def test_removed_listener_is_not_called():
    monitor = NetworkQualityMonitor()
    calls = []

    def listener(eligible, quality):
        calls.append(eligible)

    monitor.add_listener(listener)
    monitor.remove_listener(listener)
    monitor.remove_listener(listener)
    monitor.update(False)
    assert calls == []


def test_min_quality_accepts_names():
    monitor = NetworkQualityMonitor(min_quality="poor")
    monitor.update(True, effective_type="2g")
    assert monitor.is_upload_eligible()


def test_probe_marks_offline_when_connect_fails():
    listener = socket.socket()
    listener.bind(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    listener.close()

    monitor = NetworkQualityMonitor()
    probe = ConnectivityProbe(monitor, "127.0.0.1", port, timeout=1.0)
    assert probe.probe_once() is NetworkQuality.OFFLINE
    assert not monitor.is_online()


def test_probe_measures_rtt_when_reachable():
    server = socket.socket()
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    try:
        monitor = NetworkQualityMonitor(initial_online=False)
        probe = ConnectivityProbe(monitor, "127.0.0.1", server.getsockname()[1], timeout=1.0)
        assert probe.probe_once() is NetworkQuality.GOOD
        assert monitor.is_upload_eligible()
    finally:
        server.close()
