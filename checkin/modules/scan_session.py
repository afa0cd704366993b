"""
Scan Session Module - QR Check-in Attendance System

This module drives continuous camera scanning. A held-steady QR code is
decoded on every frame, so each payload goes through a ScanGuard that refuses
it while an earlier check-in for the same payload is still running and for a
short cool-down afterwards.

The camera is a scoped resource: ScanningSession opens it on entry and
releases it on every exit path.
"""

import logging
import threading
import time
from contextlib import contextmanager
from datetime import date
from typing import Callable, Dict, Iterator, List, Optional

from checkin.modules.attendance_resolver import AttendanceResolver, ScanOutcome
from checkin.modules.errors import CheckInError


class ScanGuard:
    """
    Thread-safe duplicate suppression keyed by the raw payload text.
    The canonical payload embeds its issue timestamp, so the key is
    effectively payload + timestamp.
    """

    def __init__(self, cooldown_seconds: float = 5.0,
                 clock: Callable[[], float] = time.monotonic):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight = set()
        self._completed_at: Dict[str, float] = {}
        self.logger = logging.getLogger(__name__)

    def _prune(self, now: float):
        expired = [key for key, finished in self._completed_at.items()
                   if now - finished >= self.cooldown_seconds]
        for key in expired:
            del self._completed_at[key]

    def acquire(self, payload: str) -> bool:
        """Reserve a payload; False when it is in flight or cooling down."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if payload in self._in_flight or payload in self._completed_at:
                return False
            self._in_flight.add(payload)
            return True

    def release(self, payload: str):
        with self._lock:
            self._in_flight.discard(payload)
            self._completed_at[payload] = self._clock()

    @contextmanager
    def claim(self, payload: str) -> Iterator[bool]:
        """
        Yields True when the caller owns the payload and should process it.
        The cool-down starts when the block exits, whatever the outcome.
        """
        acquired = self.acquire(payload)
        if not acquired:
            self.logger.warning("Suppressed duplicate scan of a payload already being processed")
            yield False
            return
        try:
            yield True
        finally:
            self.release(payload)


class OpenCVCamera:
    """Camera frame source with QR detection, backed by OpenCV."""

    def __init__(self, index: int = 0, max_failed_reads: int = 30):
        self.index = index
        self.max_failed_reads = max_failed_reads
        self._failed_reads = 0
        self._capture = None
        self._detector = None
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config) -> 'OpenCVCamera':
        return cls(config.CAMERA_INDEX)

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    def open(self):
        import cv2

        capture = cv2.VideoCapture(self.index)
        if not capture.isOpened():
            capture.release()
            raise RuntimeError(f"Could not open camera {self.index}; check permissions or CAMERA_INDEX")
        self._capture = capture
        self._detector = cv2.QRCodeDetector()
        self._failed_reads = 0
        self.logger.info(f"Camera {self.index} started")

    def read_payload(self) -> Optional[str]:
        """
        Grab one frame and return the decoded QR text, if any.

        Raises RuntimeError once ``max_failed_reads`` consecutive grabs fail,
        so a scanning loop ends and releases the device.
        """
        if self._capture is None:
            raise RuntimeError('Camera is not open')
        ok, frame = self._capture.read()
        if not ok:
            self._failed_reads += 1
            if self._failed_reads >= self.max_failed_reads:
                raise RuntimeError(
                    f"Camera {self.index} returned no frame {self._failed_reads} times in a row; "
                    f"device disconnected or busy"
                )
            return None
        self._failed_reads = 0
        data, _points, _ = self._detector.detectAndDecode(frame)
        return data or None

    def release(self):
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            self._detector = None
            self.logger.info(f"Camera {self.index} stopped")


class ScanningSession:
    """
    Scoped camera scanning session.

    Usage::

        with ScanningSession(resolver, roster_manager.snapshot, store, OpenCVCamera()) as session:
            session.run()

    ``roster_provider`` is called for every accepted payload so a refreshed
    roster is picked up without restarting the session.
    """

    def __init__(self, resolver: AttendanceResolver, roster_provider, sink, camera,
                 guard: Optional[ScanGuard] = None,
                 on_result: Optional[Callable[[ScanOutcome], None]] = None,
                 on_date: Optional[date] = None):
        self.resolver = resolver
        self.roster_provider = roster_provider
        self.sink = sink
        self.camera = camera
        self.guard = guard or ScanGuard()
        self.on_result = on_result
        self.on_date = on_date
        self.results: List[ScanOutcome] = []
        self._stop = threading.Event()
        self._active = False
        self.logger = logging.getLogger(__name__)

    @property
    def active(self) -> bool:
        return self._active

    def __enter__(self) -> 'ScanningSession':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def start(self):
        if self._active:
            return
        self._stop.clear()
        self.camera.open()
        self._active = True

    def stop(self):
        """Ask a running loop to finish; the camera is released on close."""
        self._stop.set()

    def close(self):
        self._stop.set()
        if self._active:
            self._active = False
            self.camera.release()

    def process_payload(self, payload: str) -> ScanOutcome:
        """Guarded decode-and-check-in; errors become failed outcomes."""
        with self.guard.claim(payload) as owned:
            if not owned:
                outcome = ScanOutcome(success=False, duplicate=True, payload=payload,
                                      message='This code was just scanned; ignoring repeat')
            else:
                try:
                    outcome = self.resolver.scan(payload, self.roster_provider(), self.sink,
                                                 on_date=self.on_date)
                except CheckInError as e:
                    self.logger.info(f"Scan rejected ({e.error_type}): {e.message}")
                    outcome = ScanOutcome(success=False, message=e.message,
                                          payload=payload, error=e)

        self.results.append(outcome)
        if self.on_result is not None:
            self.on_result(outcome)
        return outcome

    def poll(self) -> Optional[ScanOutcome]:
        """Process a single frame."""
        if not self._active:
            raise RuntimeError('Scanning session is not active')
        payload = self.camera.read_payload()
        if not payload:
            return None
        return self.process_payload(payload)

    def run(self, max_frames: Optional[int] = None):
        """Scan until stop() is called or ``max_frames`` frames were read."""
        frames = 0
        try:
            while self._active and not self._stop.is_set():
                if max_frames is not None and frames >= max_frames:
                    break
                self.poll()
                frames += 1
        finally:
            self.close()
