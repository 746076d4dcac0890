from __future__ import annotations

"""Runtime-adjustable detection thresholds driven by bot commands."""

import logging
import math

from motionbot.config import DetectionConfig
from motionbot.errors import ValidationError
from motionbot.serializer import TransactionSerializer

logger = logging.getLogger(__name__)

THRESHOLD_GROUP = "threshold"
SET_THRESHOLD_COMMAND = "set-threshold"


class ThresholdController:
    """Owns `DetectionConfig`; every read and write holds the `threshold` group."""

    def __init__(self, config: DetectionConfig, serializer: TransactionSerializer) -> None:
        self._config = config
        self._serializer = serializer

    async def get_threshold(self) -> int:
        async with self._serializer.transaction(THRESHOLD_GROUP):
            return self._config.pixel_threshold

    async def snapshot(self) -> tuple[int, float]:
        """Return `(pixel_threshold, color_threshold)` read under one transaction."""
        async with self._serializer.transaction(THRESHOLD_GROUP):
            return self._config.pixel_threshold, self._config.color_threshold

    async def set_threshold(self, raw_value: str) -> int:
        """Replace the pixel threshold with a positive number parsed from `raw_value`.

        Fractional input is rounded up to a whole pixel count. Raises
        `ValidationError` and leaves the threshold unchanged otherwise.
        """
        text = (raw_value or "").strip()
        try:
            value = float(text)
        except ValueError:
            value = math.nan
        if not math.isfinite(value) or value <= 0:
            shown = text or "''"
            raise ValidationError(f"{SET_THRESHOLD_COMMAND} required number parameter. {shown} is not a number")

        async with self._serializer.transaction(THRESHOLD_GROUP):
            self._config.pixel_threshold = math.ceil(value)
            logger.info("Pixel threshold set to %d", self._config.pixel_threshold)
            return self._config.pixel_threshold

    async def increase_threshold(self) -> int:
        async with self._serializer.transaction(THRESHOLD_GROUP):
            self._config.pixel_threshold = math.ceil(self._config.pixel_threshold * 2)
            logger.info("Pixel threshold increased to %d", self._config.pixel_threshold)
            return self._config.pixel_threshold

    async def decrease_threshold(self) -> int:
        async with self._serializer.transaction(THRESHOLD_GROUP):
            self._config.pixel_threshold = math.ceil(self._config.pixel_threshold / 2)
            logger.info("Pixel threshold decreased to %d", self._config.pixel_threshold)
            return self._config.pixel_threshold
