from __future__ import annotations

"""Frame change detection against a cached baseline frame."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from motionbot.camera import Frame
from motionbot.errors import DiffOrEncodeError
from motionbot.threshold import ThresholdController

logger = logging.getLogger(__name__)


class DiffEngine(Protocol):
    """Compare/encode collaborator; see `motionbot.imaging.ImageEngine`."""

    def compare(self, previous: Frame, current: Frame, width: int, height: int, color_threshold: float) -> int:
        ...

    def encode(self, frame: Frame) -> bytes:
        ...


@dataclass(frozen=True)
class ChangedImage:
    """JPEG of a frame that differed enough from the baseline."""

    data: bytes
    diff_count: int


class ChangeDetector:
    """Hold the last frame and flag frames that change enough pixels.

    Callers serialize `evaluate` and `get_last_image` on the frame-cache
    transaction group; the detector itself only guards threshold reads.
    """

    def __init__(self, engine: DiffEngine, thresholds: ThresholdController) -> None:
        self.engine = engine
        self.thresholds = thresholds
        self._baseline: Optional[Frame] = None

    @property
    def baseline(self) -> Optional[Frame]:
        return self._baseline

    async def evaluate(self, frame: Optional[Frame]) -> Optional[ChangedImage]:
        """Return a `ChangedImage` when `frame` differs from the baseline, else None.

        The baseline advances to every valid frame that was compared
        successfully, changed or not. On a collaborator failure the baseline
        is kept and `DiffOrEncodeError` is raised.
        """
        if frame is None or frame.is_empty:
            return None

        previous = self._baseline
        if previous is None:
            self._baseline = frame
            logger.info("Baseline frame stored (%dx%d)", frame.width, frame.height)
            return None

        if (previous.width, previous.height) != (frame.width, frame.height):
            logger.warning(
                "Frame size changed from %dx%d to %dx%d, resetting baseline",
                previous.width,
                previous.height,
                frame.width,
                frame.height,
            )
            self._baseline = frame
            return None

        pixel_threshold, color_threshold = await self.thresholds.snapshot()
        try:
            diff_count = await asyncio.to_thread(
                self.engine.compare, previous, frame, frame.width, frame.height, color_threshold
            )
        except Exception as exc:
            raise DiffOrEncodeError(f"Frame comparison failed: {exc}") from exc

        if diff_count < pixel_threshold:
            self._baseline = frame
            return None

        logger.info("CHANGE DETECTED: %d pixels (threshold %d)", diff_count, pixel_threshold)
        try:
            data = await asyncio.to_thread(self.engine.encode, frame)
        except Exception as exc:
            raise DiffOrEncodeError(f"Frame encoding failed: {exc}") from exc

        self._baseline = frame
        return ChangedImage(data=data, diff_count=int(diff_count))

    async def get_last_image(self) -> Optional[bytes]:
        """Encode the cached baseline, or None when nothing was captured yet."""
        if self._baseline is None:
            return None
        try:
            return await asyncio.to_thread(self.engine.encode, self._baseline)
        except Exception as exc:
            raise DiffOrEncodeError(f"Frame encoding failed: {exc}") from exc
