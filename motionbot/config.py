from __future__ import annotations

"""Configuration loading and validation.

Settings are read from the environment first, then from a local `.secrets`
file of KEY=VALUE lines, then fall back to defaults. The Telegram credentials
are required; everything else has a working default.
"""

import math
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

CAPTURE_MODES = ("device", "snapshot")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
SNAPSHOT_AUTH_MODES = ("basic", "digest")

_TOKEN_RE = re.compile(r"^\d{8,10}:[A-Za-z0-9_-]{35}$")


def _parse_secrets_file(path: Path) -> Dict[str, str]:
    """Parse KEY=VALUE lines from the local secrets file.

    The parser is intentionally permissive:
    - ignores blank lines/comments
    - accepts surrounding whitespace around keys/values
    - strips both single and double wrapping quotes
    """
    values: Dict[str, str] = {}
    if not path.exists():
        return values

    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


@dataclass
class DetectionConfig:
    """Live detection thresholds; mutated only through the threshold controller."""

    pixel_threshold: int
    color_threshold: float


@dataclass(frozen=True)
class Settings:
    """Runtime settings loaded from environment and/or `.secrets`."""

    telegram_bot_token: str
    telegram_chat_id: str
    camera_device: str
    capture_mode: str
    snapshot_username: str
    snapshot_password: str
    snapshot_auth_mode: str
    frame_rate: float
    pixel_threshold: int
    color_threshold: float
    spam_delay_seconds: float
    initial_delay_seconds: float
    alert_caption: str
    watchdog_seconds: float
    log_level: str

    def detection_config(self) -> DetectionConfig:
        return DetectionConfig(pixel_threshold=self.pixel_threshold, color_threshold=self.color_threshold)


def _get_env(name: str, file_values: Dict[str, str], default: str = "") -> str:
    """Read a setting from env first, then file, then default."""
    return os.getenv(name, file_values.get(name, default)).strip()


def read_setting(name: str, secrets_path: str = ".secrets", default: str = "") -> str:
    """Read one raw setting the same way `load_settings` does, without validation."""
    return _get_env(name, _parse_secrets_file(Path(secrets_path)), default)


def _get_number(name: str, file_values: Dict[str, str], default: str) -> float:
    raw = _get_env(name, file_values, default)
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if not math.isfinite(value):
        raise ValueError(f"{name} must be a finite number, got {raw!r}")
    return value


def load_settings(secrets_path: str = ".secrets") -> Settings:
    """Load and validate app settings.

    Any missing or out-of-range value raises `ValueError` naming the key.
    """
    file_values = _parse_secrets_file(Path(secrets_path))

    token = _get_env("TELEGRAM_BOT_TOKEN", file_values)
    chat_id = _get_env("TELEGRAM_CHAT_ID", file_values)
    if not token or not chat_id:
        raise ValueError(
            "Missing Telegram credentials. Set TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID in .secrets or environment."
        )
    if not _TOKEN_RE.match(token):
        raise ValueError("TELEGRAM_BOT_TOKEN has an invalid format (expected <bot id>:<35 characters>)")
    if not re.fullmatch(r"-?\d+", chat_id):
        raise ValueError(f"TELEGRAM_CHAT_ID must be an integer, got {chat_id!r}")

    camera_device = _get_env("CAMERA_DEVICE", file_values, "0")
    if not camera_device:
        raise ValueError("CAMERA_DEVICE cannot be empty")

    capture_mode = _get_env("CAPTURE_MODE", file_values, "device").lower()
    if capture_mode not in CAPTURE_MODES:
        raise ValueError(f"CAPTURE_MODE must be one of {', '.join(CAPTURE_MODES)}, got {capture_mode!r}")

    snapshot_auth_mode = _get_env("SNAPSHOT_AUTH_MODE", file_values, "digest").lower()
    if snapshot_auth_mode not in SNAPSHOT_AUTH_MODES:
        raise ValueError(f"SNAPSHOT_AUTH_MODE must be basic or digest, got {snapshot_auth_mode!r}")

    frame_rate = _get_number("FRAME_RATE", file_values, "1")
    if frame_rate <= 0:
        raise ValueError("FRAME_RATE must be > 0")

    pixel_threshold = _get_number("PIXEL_THRESHOLD", file_values, "1000")
    if pixel_threshold <= 0:
        raise ValueError("PIXEL_THRESHOLD must be > 0")

    color_threshold = _get_number("COLOR_THRESHOLD", file_values, "0.1")
    if not 0.0 <= color_threshold <= 1.0:
        raise ValueError("COLOR_THRESHOLD must be between 0.0 and 1.0")

    spam_delay = _get_number("SPAM_DELAY_SECONDS", file_values, "300")
    initial_delay = _get_number("INITIAL_DELAY_SECONDS", file_values, "10")
    if spam_delay < 0:
        raise ValueError("SPAM_DELAY_SECONDS must be >= 0")
    if initial_delay < 0:
        raise ValueError("INITIAL_DELAY_SECONDS must be >= 0")

    alert_caption = _get_env("ALERT_CAPTION", file_values, "Changes detected")
    if not alert_caption:
        raise ValueError("ALERT_CAPTION cannot be empty")

    watchdog_seconds = _get_number("WATCHDOG_SECONDS", file_values, "5")
    if watchdog_seconds <= 0:
        raise ValueError("WATCHDOG_SECONDS must be > 0")

    log_level = _get_env("LOG_LEVEL", file_values, "INFO").upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")

    return Settings(
        telegram_bot_token=token,
        telegram_chat_id=chat_id,
        camera_device=camera_device,
        capture_mode=capture_mode,
        snapshot_username=_get_env("SNAPSHOT_USERNAME", file_values),
        snapshot_password=_get_env("SNAPSHOT_PASSWORD", file_values),
        snapshot_auth_mode=snapshot_auth_mode,
        frame_rate=frame_rate,
        pixel_threshold=math.ceil(pixel_threshold),
        color_threshold=color_threshold,
        spam_delay_seconds=spam_delay,
        initial_delay_seconds=initial_delay,
        alert_caption=alert_caption,
        watchdog_seconds=watchdog_seconds,
        log_level=log_level,
    )
