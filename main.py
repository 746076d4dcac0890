from __future__ import annotations

import asyncio
import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from motionbot.app import build_app
from motionbot.config import load_settings
from motionbot.errors import LivenessTimeoutError, QueueDisciplineError, TransportError
from motionbot.serializer import current_operation_id


class _SensitiveDataFilter(logging.Filter):
    """Redact sensitive Telegram bot token fragments from log messages."""

    _TELEGRAM_BOT_PATH_RE = re.compile(r"(https://api\.telegram\.org/(?:file/)?bot)[^/\s]+")

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._TELEGRAM_BOT_PATH_RE.sub(r"\1<redacted>", message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


class _OperationFilter(logging.Filter):
    """Stamp records with the id of the operation that emitted them."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.operation = current_operation_id() or "-"
        return True


def setup_logging(level: str = "INFO") -> None:
    """Configure console + rotating file logging."""
    log_dir = Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "motionbot.log"

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(operation)s | %(name)s | %(message)s")

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(_OperationFilter())
    stream_handler.addFilter(_SensitiveDataFilter())

    file_handler = RotatingFileHandler(
        filename=str(log_file),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(_OperationFilter())
    file_handler.addFilter(_SensitiveDataFilter())

    root.addHandler(stream_handler)
    root.addHandler(file_handler)

    # Avoid third-party HTTP request logging that can leak full Telegram URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def main() -> int:
    setup_logging()
    try:
        settings = load_settings(".secrets")
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 2
    logging.getLogger().setLevel(settings.log_level)

    app = build_app(settings)
    try:
        asyncio.run(app.run())
    except (LivenessTimeoutError, QueueDisciplineError, TransportError) as exc:
        # Exit non-zero so a process supervisor can restart capture from scratch.
        logging.critical("Fatal pipeline failure, exiting: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logging.info("Interrupted by user, exiting.")
