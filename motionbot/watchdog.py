from __future__ import annotations

"""Liveness watchdog for the capture stream."""

import asyncio
import logging
from typing import Callable, Optional

from motionbot.errors import LivenessTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 5.0


class LivenessWatchdog:
    """Fail the pipeline when no frame arrives within `window_seconds`.

    Must be driven from the event loop thread; capture threads bridge in with
    `loop.call_soon_threadsafe(watchdog.feed)`.
    """

    def __init__(
        self,
        on_failure: Callable[[LivenessTimeoutError], None],
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.window_seconds = window_seconds
        self._on_failure = on_failure
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self.failed = False

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        """Start (or restart) the deadline from now."""
        if self.failed:
            return
        self._cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(self.window_seconds, self._expire)

    def feed(self) -> None:
        """Record that the capture callback fired and push the deadline out."""
        self.arm()

    def stop(self) -> None:
        self._cancel()

    def _cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _expire(self) -> None:
        self._handle = None
        self.failed = True
        error = LivenessTimeoutError(
            f"Frame capturing produced no data within {self.window_seconds:.1f}s"
        )
        logger.error("%s", error)
        self._on_failure(error)
