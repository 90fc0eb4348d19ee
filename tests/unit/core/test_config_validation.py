"""
Tests for usage_guard/shared/core/config.py - Configuration management
"""
import pytest
from unittest.mock import patch
from pydantic import ValidationError

from usage_guard.shared.core.config import (
    MODE_CLOUD,
    MODE_LOCAL,
    Settings,
    get_settings,
    reload_settings_from_environment,
)


class TestSettingsValidation:
    """Test settings validation and defaults."""

    def test_defaults(self):
        with patch.dict("os.environ", {}, clear=True):
            settings = Settings(TESTING=True, _env_file=None)
        assert settings.USAGE_GUARD_MODE == MODE_CLOUD
        assert settings.LIMIT_CACHE_TTL_SECONDS == 60.0
        assert settings.INGEST_DEBOUNCE_SECONDS == 1.0
        assert settings.THRESHOLD_SWEEP_ENABLED is True
        assert settings.is_local_mode is False

    def test_mode_is_normalised(self):
        with patch.dict("os.environ", {}, clear=True):
            settings = Settings(TESTING=True, USAGE_GUARD_MODE=" LOCAL ", _env_file=None)
        assert settings.USAGE_GUARD_MODE == MODE_LOCAL
        assert settings.is_local_mode is True

    def test_invalid_mode_rejected(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValidationError) as exc:
                Settings(TESTING=True, USAGE_GUARD_MODE="hybrid", _env_file=None)
        assert "USAGE_GUARD_MODE must be one of" in str(exc.value)

    @pytest.mark.parametrize(
        "field", ["LIMIT_CACHE_TTL_SECONDS", "INGEST_DEBOUNCE_SECONDS"]
    )
    def test_non_positive_engine_timings_rejected(self, field):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValidationError) as exc:
                Settings(TESTING=True, _env_file=None, **{field: 0})
        assert f"{field} must be > 0" in str(exc.value)

    def test_production_requires_database_url(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValidationError) as exc:
                Settings(ENVIRONMENT="production", TESTING=False, _env_file=None)
        assert "DATABASE_URL is required in production" in str(exc.value)

    def test_testing_forbidden_in_production(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValidationError) as exc:
                Settings(
                    ENVIRONMENT="production",
                    TESTING=True,
                    DATABASE_URL="postgresql://db/usage",
                    _env_file=None,
                )
        assert "TESTING must be false" in str(exc.value)

    def test_invalid_smtp_port_rejected(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValidationError) as exc:
                Settings(
                    TESTING=False,
                    DATABASE_URL="postgresql://db/usage",
                    SMTP_PORT=70000,
                    _env_file=None,
                )
        assert "SMTP_PORT must be between 1 and 65535" in str(exc.value)

    def test_production_settings_accepted(self):
        with patch.dict("os.environ", {}, clear=True):
            settings = Settings(
                ENVIRONMENT="production",
                TESTING=False,
                DATABASE_URL="postgresql://db/usage",
                SMTP_HOST="smtp.example.com",
                _env_file=None,
            )
        assert settings.is_production is True


def test_reload_settings_reads_environment():
    with patch.dict(
        "os.environ", {"TESTING": "true", "LIMIT_CACHE_TTL_SECONDS": "5"}, clear=False
    ):
        refreshed = reload_settings_from_environment()
        assert refreshed.LIMIT_CACHE_TTL_SECONDS == 5.0
        assert get_settings() is refreshed
    reload_settings_from_environment()
