"""
Tests for settings loading and validation.
"""

import pytest

from fakes import VALID_TOKEN

from motionbot.config import load_settings, read_setting


@pytest.fixture
def secrets_file(tmp_path):
    path = tmp_path / ".secrets"
    path.write_text(
        "\n".join(
            [
                "# bot credentials",
                f"TELEGRAM_BOT_TOKEN = '{VALID_TOKEN}'",
                'TELEGRAM_CHAT_ID="-100200300"',
                "",
                "PIXEL_THRESHOLD=2500",
                "not a setting line",
            ]
        ),
        encoding="utf-8",
    )
    return path


class TestLoadSettings:
    def test_reads_secrets_file_and_applies_defaults(self, clean_env, secrets_file):
        settings = load_settings(str(secrets_file))

        assert settings.telegram_bot_token == VALID_TOKEN
        assert settings.telegram_chat_id == "-100200300"
        assert settings.pixel_threshold == 2500
        assert settings.color_threshold == 0.1
        assert settings.frame_rate == 1.0
        assert settings.spam_delay_seconds == 300.0
        assert settings.initial_delay_seconds == 10.0
        assert settings.alert_caption == "Changes detected"
        assert settings.watchdog_seconds == 5.0
        assert settings.capture_mode == "device"
        assert settings.camera_device == "0"

    def test_environment_overrides_file(self, clean_env, secrets_file):
        clean_env.setenv("PIXEL_THRESHOLD", "40")
        clean_env.setenv("CAPTURE_MODE", "SNAPSHOT")
        clean_env.setenv("CAMERA_DEVICE", "http://10.0.0.5/picture")

        settings = load_settings(str(secrets_file))

        assert settings.pixel_threshold == 40
        assert settings.capture_mode == "snapshot"
        assert settings.camera_device == "http://10.0.0.5/picture"

    def test_detection_config_is_a_fresh_mutable_copy(self, clean_env, secrets_file):
        settings = load_settings(str(secrets_file))

        config = settings.detection_config()
        config.pixel_threshold = 1

        assert settings.pixel_threshold == 2500

    def test_missing_credentials(self, clean_env, tmp_path):
        with pytest.raises(ValueError, match="TELEGRAM_BOT_TOKEN"):
            load_settings(str(tmp_path / "missing"))

    def test_malformed_token(self, clean_env, secrets_file):
        clean_env.setenv("TELEGRAM_BOT_TOKEN", "not-a-token")

        with pytest.raises(ValueError, match="invalid format"):
            load_settings(str(secrets_file))

    def test_non_integer_chat_id(self, clean_env, secrets_file):
        clean_env.setenv("TELEGRAM_CHAT_ID", "@channel")

        with pytest.raises(ValueError, match="TELEGRAM_CHAT_ID"):
            load_settings(str(secrets_file))

    @pytest.mark.parametrize(
        "key, value",
        [
            ("COLOR_THRESHOLD", "1.5"),
            ("COLOR_THRESHOLD", "-0.1"),
            ("FRAME_RATE", "0"),
            ("PIXEL_THRESHOLD", "abc"),
            ("PIXEL_THRESHOLD", "0"),
            ("SPAM_DELAY_SECONDS", "-1"),
            ("INITIAL_DELAY_SECONDS", "-1"),
            ("WATCHDOG_SECONDS", "0"),
            ("CAPTURE_MODE", "ffmpeg"),
            ("SNAPSHOT_AUTH_MODE", "ntlm"),
            ("LOG_LEVEL", "chatty"),
        ],
    )
    def test_out_of_range_values(self, clean_env, secrets_file, key, value):
        clean_env.setenv(key, value)

        with pytest.raises(ValueError, match=key):
            load_settings(str(secrets_file))


class TestReadSetting:
    def test_reads_file_then_environment(self, clean_env, secrets_file):
        assert read_setting("TELEGRAM_BOT_TOKEN", str(secrets_file)) == VALID_TOKEN

        clean_env.setenv("TELEGRAM_BOT_TOKEN", " from-env ")

        assert read_setting("TELEGRAM_BOT_TOKEN", str(secrets_file)) == "from-env"

    def test_missing_file_uses_default(self, clean_env, tmp_path):
        assert read_setting("ALERT_CAPTION", str(tmp_path / "missing"), "fallback") == "fallback"
