from datetime import timedelta

import pytest
from pydantic import ValidationError

from musicez.config import JWTConfig, Settings, get_settings, parse_duration, reset_settings_cache
from musicez.service.errors import ConfigurationError


class TestParseDuration:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30s", timedelta(seconds=30)),
            ("15m", timedelta(minutes=15)),
            ("24h", timedelta(hours=24)),
            ("7d", timedelta(days=7)),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "15", "m15", "1w", "1.5h", "-5m", None, 15])
    def test_invalid(self, value):
        with pytest.raises(ConfigurationError):
            parse_duration(value)


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret="x" * 40)

        jwt = settings.jwt_config()
        assert jwt.issuer == "musicez-api"
        assert jwt.audience == "musicez-client"
        assert jwt.access_token_ttl == timedelta(minutes=15)
        assert jwt.refresh_token_ttl == timedelta(days=7)

        sessions = settings.session_config()
        assert sessions.max_sessions_per_user == 10
        assert sessions.cleanup_interval == "1h"
        assert sessions.track_device_info is True
        assert sessions.require_device_consistency is False

    def test_missing_secret_is_fatal(self):
        with pytest.raises(ConfigurationError):
            Settings(jwt_secret=None).jwt_config()

    def test_refresh_expiry_falls_back_to_session_timeout(self):
        settings = Settings(jwt_secret="x" * 40, jwt_refresh_token_expiry="", session_timeout="12h")

        assert settings.jwt_config().refresh_token_ttl == timedelta(hours=12)

    def test_invalid_duration_rejected_eagerly(self):
        with pytest.raises(ValidationError):
            Settings(session_timeout="forever")

    def test_negative_cap_rejected(self):
        with pytest.raises(ValidationError):
            Settings(max_sessions_per_user=-1)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "env-secret-that-is-long-enough-for-hs256")
        monkeypatch.setenv("JWT_ACCESS_TOKEN_EXPIRY", "5m")
        monkeypatch.setenv("MAX_SESSIONS_PER_USER", "4")
        monkeypatch.setenv("TRACK_DEVICE_INFO", "false")
        reset_settings_cache()

        settings = get_settings()

        assert settings.jwt_config().access_token_ttl == timedelta(minutes=5)
        assert settings.max_sessions_per_user == 4
        assert settings.track_device_info is False
        assert get_settings() is settings
        reset_settings_cache()

    def test_jwt_config_is_immutable(self):
        config = JWTConfig(secret="s" * 40)

        with pytest.raises(AttributeError):
            config.secret = "other"
