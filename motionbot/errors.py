from __future__ import annotations

"""Exception hierarchy shared by the detection pipeline and bot commands."""


class MotionBotError(Exception):
    """Base class for pipeline errors."""


class ValidationError(MotionBotError):
    """Bad operator input; reported back to the chat, pipeline continues."""


class QueueDisciplineError(MotionBotError):
    """A transaction was finished by someone other than the queue head."""


class LivenessTimeoutError(MotionBotError):
    """Capture produced no frame within the watchdog window."""


class TransportError(MotionBotError):
    """Outbound Telegram call failed."""


class DiffOrEncodeError(MotionBotError):
    """Frame comparison or JPEG encoding failed for the current frame."""
