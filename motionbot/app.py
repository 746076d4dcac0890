from __future__ import annotations

"""Core change-alert orchestration.

This module coordinates:
- capture callbacks bridged from the capture thread into the event loop
- change detection on the cached frame
- throttled Telegram photo alerts
- operator commands that read or adjust the detection threshold
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Set, TypeVar

from motionbot.camera import Frame, FrameSource, build_capture
from motionbot.config import Settings
from motionbot.detector import ChangedImage, ChangeDetector
from motionbot.errors import DiffOrEncodeError, QueueDisciplineError, TransportError, ValidationError
from motionbot.imaging import ImageEngine
from motionbot.notifier import TelegramNotifier
from motionbot.serializer import TransactionSerializer
from motionbot.threshold import SET_THRESHOLD_COMMAND, ThresholdController
from motionbot.throttle import GRACE_PERIOD, AlertThrottle
from motionbot.watchdog import LivenessWatchdog

logger = logging.getLogger(__name__)

T = TypeVar("T")

FRAME_CACHE_GROUP = "frame-cache"
NOTIFICATION_GROUP = "notification"

NO_IMAGE_REPLY = "No image in cache"


class RuntimeStats:
    """Counters used for `/status` responses; touched only from the event loop."""

    def __init__(self) -> None:
        self.started_at = time.time()
        self.frames_received = 0
        self.changes_detected = 0
        self.alerts_sent = 0
        self.alerts_suppressed = 0
        self.errors = 0
        self.last_frame_at: Optional[float] = None

    def inc_frames_received(self) -> None:
        self.frames_received += 1
        self.last_frame_at = time.time()

    def inc_changes_detected(self) -> None:
        self.changes_detected += 1

    def inc_alerts_sent(self) -> None:
        self.alerts_sent += 1

    def inc_alerts_suppressed(self) -> None:
        self.alerts_suppressed += 1

    def inc_errors(self) -> None:
        self.errors += 1

    def status_report(self) -> str:
        now = time.time()
        uptime = int(now - self.started_at)
        last_frame = "never" if self.last_frame_at is None else f"{int(now - self.last_frame_at)}s ago"
        return (
            "App status: running\n"
            f"Uptime: {uptime}s | Last frame: {last_frame}\n"
            f"Totals: frames={self.frames_received}, changes={self.changes_detected}, "
            f"alerts={self.alerts_sent}, suppressed={self.alerts_suppressed}, errors={self.errors}"
        )


class MotionAlertApp:
    """Top-level service wiring capture, detection, throttling and bot commands."""

    def __init__(
        self,
        settings: Settings,
        serializer: TransactionSerializer,
        thresholds: ThresholdController,
        detector: ChangeDetector,
        throttle: AlertThrottle,
        capture: FrameSource,
        notifier: TelegramNotifier,
    ) -> None:
        self.settings = settings
        self.serializer = serializer
        self.thresholds = thresholds
        self.detector = detector
        self.throttle = throttle
        self.capture = capture
        self.notifier = notifier
        self.stats = RuntimeStats()
        self.watchdog: Optional[LivenessWatchdog] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._fatal: Optional[asyncio.Future] = None
        self._frame_tasks: Set[asyncio.Task] = set()
        self._register_commands()

    # Operations

    async def _run_guarded(self, label: str, body: Callable[[], Awaitable[T]]) -> Optional[T]:
        """Run `body` as a root operation; queue-discipline failures are fatal."""
        try:
            return await self.serializer.run_operation(label, body)
        except QueueDisciplineError as exc:
            logger.critical("Transaction queue corrupted in %s: %s", label, exc)
            self.fail(exc)
        except Exception:
            logger.exception("Operation %s failed", label)
            self.stats.inc_errors()
        return None

    def fail(self, error: BaseException) -> None:
        """Deliver a fatal error to `run()`."""
        if self._fatal is None:
            raise error
        if not self._fatal.done():
            self._fatal.set_exception(error)

    # Frame path

    def _on_capture_frame(self, frame: Optional[Frame]) -> None:
        """Capture-thread callback; hands the frame over to the event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._accept_frame, frame)
        except RuntimeError:
            # Loop closed between the check and the call during shutdown.
            pass

    def _accept_frame(self, frame: Optional[Frame]) -> None:
        if self.watchdog is not None:
            self.watchdog.feed()
        if frame is None or frame.is_empty:
            return
        task = asyncio.create_task(self.on_new_frame(frame))
        self._frame_tasks.add(task)
        task.add_done_callback(self._frame_tasks.discard)

    async def on_new_frame(self, frame: Frame) -> None:
        """Detect change on one frame and alert when the throttle allows it."""
        self.stats.inc_frames_received()
        await self._run_guarded("frame", lambda: self._process_frame(frame))

    async def _process_frame(self, frame: Frame) -> None:
        async with self.serializer.transaction(FRAME_CACHE_GROUP):
            try:
                changed = await self.detector.evaluate(frame)
            except DiffOrEncodeError as exc:
                logger.error("Dropping frame: %s", exc)
                self.stats.inc_errors()
                return
        if changed is None:
            return
        self.stats.inc_changes_detected()
        await self.serializer.spawn_child("notify", lambda: self._notify(changed))

    async def _notify(self, changed: ChangedImage) -> bool:
        """Send one alert if the throttle allows; returns whether it was sent."""
        async with self.serializer.transaction(NOTIFICATION_GROUP):
            now = self.throttle.clock()
            decision = self.throttle.should_send(now)
            if not decision.allowed:
                self.stats.inc_alerts_suppressed()
                if decision.reason == GRACE_PERIOD:
                    logger.info(
                        "Awaiting startup delay %ss before sending notification",
                        self.settings.initial_delay_seconds,
                    )
                else:
                    logger.info(
                        "Awaiting %ss before next notification, %.0fs left",
                        self.settings.spam_delay_seconds,
                        decision.wait_seconds,
                    )
                return False

            try:
                await self.notifier.send_photo(changed.data, self.settings.alert_caption)
            except TransportError as exc:
                logger.error("Alert failed: %s", exc)
                self.stats.inc_errors()
                return False
            self.throttle.record_sent(now)
            self.stats.inc_alerts_sent()
            logger.info("Notification sent (%d changed pixels)", changed.diff_count)
            return True

    # Commands

    def _register_commands(self) -> None:
        commands = (
            ("get-image", self.on_ask_image, "Get the last image"),
            (
                SET_THRESHOLD_COMMAND,
                self.on_set_threshold,
                "Sets new amount of pixels to be changed to fire a notification",
            ),
            ("increase-threshold", self.on_increase_threshold, "Double the amount of changed pixels needed for an alert"),
            ("decrease-threshold", self.on_decrease_threshold, "Halve the amount of changed pixels needed for an alert"),
            ("threshold", self.on_get_threshold, "Show the current detection threshold"),
            ("status", self.on_status, "Show runtime counters"),
            ("ping", self.on_ping, "Check that the bot is alive"),
            ("help", self.on_help, "List commands"),
        )
        for name, body, description in commands:
            self.notifier.register_command(name, self._command_handler(name, body), description)

    def _command_handler(
        self, name: str, body: Callable[[str], Awaitable[Optional[str]]]
    ) -> Callable[[str], Awaitable[Optional[str]]]:
        async def handler(args: str) -> Optional[str]:
            logger.info("Got %s command", name)
            return await self._run_guarded(name, lambda: body(args))

        return handler

    async def on_ask_image(self, args: str = "") -> Optional[str]:
        async with self.serializer.transaction(FRAME_CACHE_GROUP):
            try:
                image = await self.detector.get_last_image()
            except DiffOrEncodeError as exc:
                logger.error("Cached image unavailable: %s", exc)
                self.stats.inc_errors()
                return "Could not encode the cached image"
        if image is None:
            logger.info("No current image found, skipping")
            return NO_IMAGE_REPLY
        try:
            await self.notifier.send_photo(image, "Current view")
        except TransportError as exc:
            logger.error("Image reply failed: %s", exc)
            self.stats.inc_errors()
        return None

    async def on_set_threshold(self, args: str) -> str:
        try:
            value = await self.thresholds.set_threshold(args)
        except ValidationError as exc:
            return str(exc)
        return f"Threshold set to {value}"

    async def on_increase_threshold(self, args: str = "") -> str:
        value = await self.thresholds.increase_threshold()
        return f"Increased threshold to {value}"

    async def on_decrease_threshold(self, args: str = "") -> str:
        value = await self.thresholds.decrease_threshold()
        return f"Decreased threshold to {value}"

    async def on_get_threshold(self, args: str = "") -> str:
        pixels, color = await self.thresholds.snapshot()
        return f"Current threshold: {pixels} pixels (color sensitivity {color:.2f})"

    async def on_status(self, args: str = "") -> str:
        pixels = await self.thresholds.get_threshold()
        return self.stats.status_report() + f"\nThreshold: {pixels} pixels"

    async def on_ping(self, args: str = "") -> str:
        return "pong"

    async def on_help(self, args: str = "") -> str:
        lines = ["Commands:"]
        for command in self.notifier.commands.values():
            lines.append(f"/{command.telegram_name} - {command.description}")
        return "\n".join(lines)

    # Lifecycle

    async def run(self) -> None:
        """Run until a fatal error (re-raised) or cancellation."""
        self._loop = asyncio.get_running_loop()
        self._fatal = self._loop.create_future()
        self.watchdog = LivenessWatchdog(
            on_failure=self.fail,
            window_seconds=self.settings.watchdog_seconds,
            loop=self._loop,
        )
        logger.info(
            "Starting change detection on %s (%s mode, %.2f fps, threshold %d pixels)",
            self.settings.camera_device,
            self.settings.capture_mode,
            self.settings.frame_rate,
            self.settings.pixel_threshold,
        )
        try:
            await self.notifier.launch()
            self.watchdog.arm()
            self.capture.start(self.settings.camera_device, self.settings.frame_rate, self._on_capture_frame)
            await self._fatal
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Stop capture, pending frame work and the bot."""
        if self.watchdog is not None:
            self.watchdog.stop()
        await asyncio.to_thread(self.capture.stop)
        pending = list(self._frame_tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.notifier.close()
        logger.info("All workers and resources stopped")


def build_app(settings: Settings) -> MotionAlertApp:
    """Compose the application from settings."""
    serializer = TransactionSerializer()
    thresholds = ThresholdController(settings.detection_config(), serializer)
    detector = ChangeDetector(ImageEngine(), thresholds)
    throttle = AlertThrottle(
        initial_delay_seconds=settings.initial_delay_seconds,
        spam_delay_seconds=settings.spam_delay_seconds,
    )
    return MotionAlertApp(
        settings=settings,
        serializer=serializer,
        thresholds=thresholds,
        detector=detector,
        throttle=throttle,
        capture=build_capture(settings),
        notifier=TelegramNotifier(bot_token=settings.telegram_bot_token, chat_id=settings.telegram_chat_id),
    )
