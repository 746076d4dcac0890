from __future__ import annotations

"""Capture backends for local devices, stream URLs and HTTP snapshot endpoints.

Each backend polls its source on a daemon thread at the configured frame rate
and hands every decoded frame to the `on_frame` callback. Read failures do not
invoke the callback, which lets the liveness watchdog notice a dead source.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Union

import cv2
import numpy as np
import requests
from requests.auth import HTTPBasicAuth, HTTPDigestAuth

from motionbot.config import Settings

logger = logging.getLogger(__name__)

FrameCallback = Callable[[Optional["Frame"]], None]


@dataclass(frozen=True)
class Frame:
    """Single decoded BGR frame plus capture timestamp."""

    pixels: Optional[np.ndarray]
    width: int
    height: int
    captured_at: float

    @classmethod
    def from_array(cls, pixels: np.ndarray, captured_at: Optional[float] = None) -> "Frame":
        """Wrap an `H x W x 3` array behind a read-only view; the caller's array is untouched."""
        pixels = pixels.view()
        pixels.setflags(write=False)
        height, width = pixels.shape[:2]
        return cls(
            pixels=pixels,
            width=int(width),
            height=int(height),
            captured_at=time.time() if captured_at is None else captured_at,
        )

    @property
    def is_empty(self) -> bool:
        return self.pixels is None or self.pixels.size == 0


class FrameSource(Protocol):
    """Capture collaborator consumed by the pipeline."""

    def start(self, device: str, frame_rate: float, on_frame: FrameCallback) -> None:
        ...

    def stop(self) -> None:
        ...


class _PollingCapture:
    """Shared thread loop: read one frame per period and forward it."""

    name = "capture"

    def __init__(self, reconnect_seconds: float = 1.0) -> None:
        self.reconnect_seconds = reconnect_seconds
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def _read(self, device: str) -> Optional[np.ndarray]:
        raise NotImplementedError

    def _release(self) -> None:
        pass

    def start(self, device: str, frame_rate: float, on_frame: FrameCallback) -> None:
        if self._thread is not None:
            return
        if frame_rate <= 0:
            raise ValueError("frame_rate must be > 0")
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            args=(device, 1.0 / frame_rate, on_frame),
            name=f"{self.name}-poller",
            daemon=True,
        )
        self._thread.start()
        logger.info("Capture started for device %s at %.2f fps", device, frame_rate)

    def _run(self, device: str, period: float, on_frame: FrameCallback) -> None:
        next_at = time.monotonic()
        while not self._stop.is_set():
            try:
                pixels = self._read(device)
            except Exception:
                logger.exception("Capture read failed for %s", device)
                pixels = None

            if pixels is not None:
                on_frame(Frame.from_array(pixels))
                next_at += period
            else:
                self._release()
                next_at = time.monotonic() + self.reconnect_seconds

            self._stop.wait(timeout=max(0.0, next_at - time.monotonic()))
        self._release()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None
        logger.info("Capture stopped")


class DeviceCapture(_PollingCapture):
    """OpenCV reader for a device index, device path or stream URL."""

    name = "device"

    def __init__(self, reconnect_seconds: float = 1.0) -> None:
        super().__init__(reconnect_seconds=reconnect_seconds)
        self._capture: Optional[cv2.VideoCapture] = None

    @staticmethod
    def _source(device: str) -> Union[int, str]:
        return int(device) if device.isdigit() else device

    def _ensure_open(self, device: str) -> None:
        """Lazily open the capture handle if it is not available."""
        if self._capture is not None and self._capture.isOpened():
            return
        self._capture = cv2.VideoCapture(self._source(device))
        self._capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)

    def _read(self, device: str) -> Optional[np.ndarray]:
        self._ensure_open(device)
        if self._capture is None:
            return None
        ok, frame = self._capture.read()
        if ok and frame is not None:
            return frame
        return None

    def _release(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None


class SnapshotCapture(_PollingCapture):
    """HTTP snapshot client for cameras exposing a JPEG picture endpoint."""

    name = "snapshot"

    def __init__(
        self,
        username: str = "",
        password: str = "",
        auth_mode: str = "digest",
        timeout_seconds: float = 4.0,
        reconnect_seconds: float = 1.0,
    ) -> None:
        super().__init__(reconnect_seconds=reconnect_seconds)
        self.timeout_seconds = timeout_seconds
        self._session = requests.Session()
        if not username:
            self._auth = None
        elif auth_mode == "basic":
            self._auth = HTTPBasicAuth(username, password)
        else:
            self._auth = HTTPDigestAuth(username, password)

    def _read(self, device: str) -> Optional[np.ndarray]:
        """Fetch and decode one JPEG snapshot."""
        try:
            response = self._session.get(device, auth=self._auth, timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Snapshot request failed: %s", exc)
            return None
        data = np.frombuffer(response.content, dtype=np.uint8)
        return cv2.imdecode(data, cv2.IMREAD_COLOR)

    def stop(self) -> None:
        super().stop()
        self._session.close()


def build_capture(settings: Settings) -> FrameSource:
    """Create the capture backend selected by `CAPTURE_MODE`."""
    if settings.capture_mode == "snapshot":
        return SnapshotCapture(
            username=settings.snapshot_username,
            password=settings.snapshot_password,
            auth_mode=settings.snapshot_auth_mode,
        )
    return DeviceCapture()
