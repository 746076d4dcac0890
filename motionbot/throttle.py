from __future__ import annotations

"""Notification policy: startup grace period and minimum alert spacing."""

import time
from dataclasses import dataclass
from typing import Callable, Optional

GRACE_PERIOD = "startup grace period"
SPAM_WINDOW = "spam window"


@dataclass(frozen=True)
class ThrottleDecision:
    """Outcome of one throttle check; `reason` is set only when suppressed."""

    allowed: bool
    reason: Optional[str] = None
    wait_seconds: float = 0.0


@dataclass
class NotificationState:
    process_started_at: float
    last_sent_at: Optional[float] = None


class AlertThrottle:
    """Decide whether a detected change may produce an outbound alert.

    Suppressed changes are dropped, not queued: at most one alert per spam
    window.
    """

    def __init__(
        self,
        initial_delay_seconds: float,
        spam_delay_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        started_at: Optional[float] = None,
    ) -> None:
        self.initial_delay_seconds = initial_delay_seconds
        self.spam_delay_seconds = spam_delay_seconds
        self.clock = clock
        self.state = NotificationState(process_started_at=clock() if started_at is None else started_at)

    def should_send(self, now: Optional[float] = None) -> ThrottleDecision:
        now = self.clock() if now is None else now
        last_sent = self.state.last_sent_at
        if last_sent is None:
            elapsed = now - self.state.process_started_at
            if elapsed < self.initial_delay_seconds:
                return ThrottleDecision(False, GRACE_PERIOD, self.initial_delay_seconds - elapsed)
            return ThrottleDecision(True)

        elapsed = now - last_sent
        if elapsed < self.spam_delay_seconds:
            return ThrottleDecision(False, SPAM_WINDOW, self.spam_delay_seconds - elapsed)
        return ThrottleDecision(True)

    def record_sent(self, now: Optional[float] = None) -> None:
        """Call once per confirmed send."""
        self.state.last_sent_at = self.clock() if now is None else now
