"""Network quality classification and upload eligibility."""

from __future__ import annotations

import enum
import logging
import socket
import threading
import time
from collections.abc import Callable

log = logging.getLogger("segrelay.network")

POOR_DOWNLINK_MBPS = 0.5
FAIR_DOWNLINK_MBPS = 1.5
POOR_RTT_MS = 1500.0
FAIR_RTT_MS = 600.0


class NetworkQuality(enum.IntEnum):
    OFFLINE = 0
    POOR = 1
    FAIR = 2
    GOOD = 3

    @classmethod
    def parse(cls, value: "NetworkQuality | str") -> "NetworkQuality":
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"unknown network quality: {value!r}") from None


_EFFECTIVE_TYPES: dict[str, NetworkQuality] = {
    "slow-2g": NetworkQuality.POOR,
    "2g": NetworkQuality.POOR,
    "3g": NetworkQuality.FAIR,
    "4g": NetworkQuality.GOOD,
}


def classify(
    online: bool,
    effective_type: str | None = None,
    downlink_mbps: float | None = None,
    rtt_ms: float | None = None,
) -> NetworkQuality:
    """Map connectivity signals onto a coarse quality; the worst signal wins."""

    if not online:
        return NetworkQuality.OFFLINE

    verdicts: list[NetworkQuality] = []
    if effective_type:
        mapped = _EFFECTIVE_TYPES.get(effective_type.strip().lower())
        if mapped is not None:
            verdicts.append(mapped)
    if downlink_mbps is not None:
        if downlink_mbps < POOR_DOWNLINK_MBPS:
            verdicts.append(NetworkQuality.POOR)
        elif downlink_mbps < FAIR_DOWNLINK_MBPS:
            verdicts.append(NetworkQuality.FAIR)
        else:
            verdicts.append(NetworkQuality.GOOD)
    if rtt_ms is not None:
        if rtt_ms > POOR_RTT_MS:
            verdicts.append(NetworkQuality.POOR)
        elif rtt_ms > FAIR_RTT_MS:
            verdicts.append(NetworkQuality.FAIR)
        else:
            verdicts.append(NetworkQuality.GOOD)
    if not verdicts:
        return NetworkQuality.GOOD
    return min(verdicts)


EligibilityListener = Callable[[bool, NetworkQuality], None]


class NetworkQualityMonitor:
    """Track the latest connectivity signal and notify eligibility changes."""

    def __init__(
        self,
        *,
        min_quality: NetworkQuality = NetworkQuality.FAIR,
        initial_online: bool = True,
    ) -> None:
        self.min_quality = NetworkQuality.parse(min_quality)
        self._lock = threading.Lock()
        self._online = initial_online
        self._quality = classify(initial_online)
        self._listeners: list[EligibilityListener] = []

    def current_quality(self) -> NetworkQuality:
        with self._lock:
            return self._quality

    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def _eligible_locked(self) -> bool:
        return self._online and self._quality >= self.min_quality

    def is_upload_eligible(self) -> bool:
        with self._lock:
            return self._eligible_locked()

    def add_listener(self, callback: EligibilityListener) -> None:
        with self._lock:
            self._listeners.append(callback)

    def remove_listener(self, callback: EligibilityListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass

    def update(
        self,
        online: bool,
        effective_type: str | None = None,
        downlink_mbps: float | None = None,
        rtt_ms: float | None = None,
    ) -> NetworkQuality:
        quality = classify(online, effective_type, downlink_mbps, rtt_ms)
        with self._lock:
            was_eligible = self._eligible_locked()
            previous = self._quality
            self._online = bool(online)
            self._quality = quality
            eligible = self._eligible_locked()
            listeners = list(self._listeners) if eligible != was_eligible else []

        if quality != previous:
            log.info("network quality %s -> %s", previous.name, quality.name)
        if eligible != was_eligible:
            log.info("upload eligibility changed: %s", "eligible" if eligible else "ineligible")
        for callback in listeners:
            try:
                callback(eligible, quality)
            except Exception:
                log.exception("network listener failed")
        return quality


class ConnectivityProbe:
    """Background poller that times a TCP connect to feed the monitor."""

    def __init__(
        self,
        monitor: NetworkQualityMonitor,
        host: str,
        port: int = 443,
        *,
        interval: float = 15.0,
        timeout: float = 3.0,
    ) -> None:
        if not host:
            raise ValueError("probe host must not be empty")
        self.monitor = monitor
        self.host = host
        self.port = int(port)
        self.interval = max(0.1, float(interval))
        self.timeout = float(timeout)
        self.stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def probe_once(self) -> NetworkQuality:
        started = time.monotonic()
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                pass
        except OSError as exc:
            log.debug("probe %s:%s failed: %s", self.host, self.port, exc)
            return self.monitor.update(False)
        rtt_ms = (time.monotonic() - started) * 1000.0
        return self.monitor.update(True, rtt_ms=rtt_ms)

    def run(self) -> None:
        while not self.stop_event.is_set():
            self.probe_once()
            self.stop_event.wait(self.interval)

    def start(self) -> None:
        if self._thread is not None:
            return
        self.stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="connectivity-probe", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self.stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join(timeout=self.timeout + 1.0)
