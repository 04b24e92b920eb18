"""detector_link.core.worker

The owning side of the detector client: decides when to reconnect, when to
heartbeat and how often frames are submitted, and keeps the newest result for
whoever draws the overlay.

`DetectionLoop.tick()` is one synchronous pass and can be driven from any
application loop. `DetectionRunner` is a small thread that just calls it.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from detector_link.core.config import Settings
from detector_link.core.models import DetectionResult
from detector_link.services.detection_client import DetectionClient
from detector_link.services.frame_source import FrameSource

log = logging.getLogger(__name__)

# Results drained per tick; keeps one tick bounded if the detector floods us
MAX_RESULTS_PER_TICK = 64


@dataclass(frozen=True)
class LoopTimings:
    reconnect_interval_sec: float = 2.0
    heartbeat_interval_sec: float = 5.0
    detection_interval_sec: float = 0.1
    idle_sleep_sec: float = 0.01

    @classmethod
    def from_settings(cls, settings: Settings) -> "LoopTimings":
        return cls(
            reconnect_interval_sec=settings.reconnect_interval_sec,
            heartbeat_interval_sec=settings.heartbeat_interval_sec,
            detection_interval_sec=settings.detection_interval_sec,
        )


class DetectionLoop:
    def __init__(
        self,
        client: DetectionClient,
        source: Optional[FrameSource] = None,
        timings: LoopTimings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.source = source
        self.timings = timings or LoopTimings()
        self._clock = clock

        self._lock = threading.Lock()
        self._latest: Optional[DetectionResult] = None

        self._last_connect_attempt: Optional[float] = None
        self._last_heartbeat: Optional[float] = None
        self._last_frame_sent: Optional[float] = None

        self.stats = {
            "connect_attempts": 0,
            "connects": 0,
            "frames_sent": 0,
            "frames_failed": 0,
            "results": 0,
            "stale_results": 0,
            "heartbeats_ok": 0,
            "heartbeats_failed": 0,
            "last_frame_id": None,
        }

    @property
    def latest(self) -> Optional[DetectionResult]:
        with self._lock:
            return self._latest

    def tick(self) -> None:
        now = self._clock()

        if not self.client.is_connected():
            self._maybe_reconnect(now)
            if not self.client.is_connected():
                return

        self._maybe_heartbeat(now)
        if self.client.is_connected():
            self._maybe_send_frame(now)
        if self.client.is_connected():
            self._drain_results()

    def _due(self, last: Optional[float], interval: float, now: float) -> bool:
        return last is None or now - last >= interval

    def _maybe_reconnect(self, now: float) -> None:
        if self._last_connect_attempt is not None and not self.client.config.auto_reconnect:
            return
        if not self._due(self._last_connect_attempt, self.timings.reconnect_interval_sec, now):
            return

        self._last_connect_attempt = now
        self.stats["connect_attempts"] += 1
        if self.client.connect():
            self.stats["connects"] += 1
            # Fresh session: heartbeat on the normal cadence from here
            self._last_heartbeat = now
            self._last_frame_sent = None
        else:
            log.info(
                "Detector not available (%s), retrying in %.1fs",
                self.client.last_error,
                self.timings.reconnect_interval_sec,
            )

    def _maybe_heartbeat(self, now: float) -> None:
        if not self._due(self._last_heartbeat, self.timings.heartbeat_interval_sec, now):
            return
        self._last_heartbeat = now
        if self.client.send_heartbeat():
            self.stats["heartbeats_ok"] += 1
        else:
            self.stats["heartbeats_failed"] += 1
            log.warning("Heartbeat failed: %s", self.client.last_error)

    def _maybe_send_frame(self, now: float) -> None:
        if self.source is None:
            return
        if not self._due(self._last_frame_sent, self.timings.detection_interval_sec, now):
            return

        frame = self.source.read()
        if frame is None:
            return

        self._last_frame_sent = now
        if self.client.send_frame(frame.pixels, frame.width, frame.height, frame.frame_id):
            self.stats["frames_sent"] += 1
            self.stats["last_frame_id"] = frame.frame_id
        else:
            self.stats["frames_failed"] += 1

    def _drain_results(self) -> None:
        for _ in range(MAX_RESULTS_PER_TICK):
            result = self.client.receive_detections()
            if result is None:
                return
            self._accept(result)

    def _accept(self, result: DetectionResult) -> None:
        with self._lock:
            current = self._latest
            if current is not None and result.frame_id < current.frame_id:
                self.stats["stale_results"] += 1
                log.debug("Discarding stale result for frame %s (have %s)", result.frame_id, current.frame_id)
                return
            # Replace wholesale; detections are never merged across results
            self._latest = result
        self.stats["results"] += 1
        log.debug(
            "Frame %s: %d detections in %.1f ms",
            result.frame_id,
            len(result.detections),
            result.inference_time_ms,
        )


class DetectionRunner(threading.Thread):
    def __init__(self, loop: DetectionLoop):
        super().__init__(daemon=True, name="DetectionRunner")
        self.loop = loop
        self.stop_event = threading.Event()

    def run(self) -> None:
        log.info("Detection loop started")
        try:
            while not self.stop_event.is_set():
                try:
                    self.loop.tick()
                except Exception as e:
                    log.error("Loop error: %s", e, exc_info=True)
                    self.stop_event.wait(1.0)
                    continue
                self.stop_event.wait(self.loop.timings.idle_sleep_sec)
        finally:
            self.loop.client.disconnect()
            if self.loop.source is not None:
                self.loop.source.close()
            log.info("Detection loop stopped")

    def stop(self, timeout: float = 5.0) -> None:
        self.stop_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
