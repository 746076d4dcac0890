from __future__ import annotations

"""Pixel diff and JPEG encoding for captured frames."""

import cv2
import numpy as np

from motionbot.camera import Frame

JPEG_QUALITY = 85


class ImageEngine:
    """Default compare/encode collaborator built on numpy and OpenCV."""

    def __init__(self, jpeg_quality: int = JPEG_QUALITY) -> None:
        self.jpeg_quality = jpeg_quality

    def compare(self, previous: Frame, current: Frame, width: int, height: int, color_threshold: float) -> int:
        """Count pixels whose mean absolute channel difference exceeds the threshold.

        `color_threshold` is a 0..1 sensitivity scaled to the 0..255 channel
        range; lower values flag smaller changes.
        """
        expected = (height, width)
        if previous.pixels is None or current.pixels is None:
            raise ValueError("Cannot compare an empty frame")
        if previous.pixels.shape[:2] != expected or current.pixels.shape[:2] != expected:
            raise ValueError(
                f"Frame size mismatch: {previous.pixels.shape[:2]} vs {current.pixels.shape[:2]}, expected {expected}"
            )
        limit = int(color_threshold * 255.0)
        delta = np.abs(previous.pixels.astype(np.int16) - current.pixels.astype(np.int16))
        mean_delta = delta.sum(axis=2) // delta.shape[2]
        return int(np.count_nonzero(mean_delta > limit))

    def encode(self, frame: Frame) -> bytes:
        """Encode the frame as JPEG bytes."""
        if frame.pixels is None:
            raise ValueError("Cannot encode an empty frame")
        ok, buffer = cv2.imencode(".jpg", frame.pixels, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not ok:
            raise RuntimeError("JPEG encoding failed")
        return buffer.tobytes()
