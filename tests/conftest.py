"""
Pytest configuration and shared fixtures.
"""

import pytest

from fakes import FakeClock, FakeEngine, make_bot, make_settings

SETTING_KEYS = (
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
    "CAMERA_DEVICE",
    "CAPTURE_MODE",
    "SNAPSHOT_USERNAME",
    "SNAPSHOT_PASSWORD",
    "SNAPSHOT_AUTH_MODE",
    "FRAME_RATE",
    "PIXEL_THRESHOLD",
    "COLOR_THRESHOLD",
    "SPAM_DELAY_SECONDS",
    "INITIAL_DELAY_SECONDS",
    "ALERT_CAPTION",
    "WATCHDOG_SECONDS",
    "LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every setting from the environment so only the secrets file counts."""
    for key in SETTING_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def bot():
    return make_bot()
