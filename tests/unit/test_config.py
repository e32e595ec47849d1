"""Unit tests for settings and environment resolution."""

import pytest

from rentri_client.config import Environment, Settings, reload_settings
from rentri_client.core.retry import RetryPolicy


@pytest.fixture
def fresh_settings(monkeypatch):
    """Reload settings after the test so env overrides do not leak."""
    yield monkeypatch
    monkeypatch.undo()
    reload_settings()


@pytest.mark.unit
class TestEnvironment:

    @pytest.mark.parametrize("raw,expected", [
        ("demo", Environment.DEMO),
        ("PRODUCTION", Environment.PRODUCTION),
        (" prod ", Environment.PRODUCTION),
        (Environment.DEMO, Environment.DEMO),
    ])
    def test_parse(self, raw, expected):
        assert Environment.parse(raw) is expected

    def test_empty_value_uses_default_environment(self):
        assert Environment.parse(None) is Environment.DEMO
        assert Environment.parse("") is Environment.DEMO

    def test_unknown_environment(self):
        with pytest.raises(ValueError):
            Environment.parse("staging")


@pytest.mark.unit
class TestSettings:

    def test_gateway_and_audience_per_environment(self):
        settings = Settings(database_url="sqlite://")

        assert settings.gateway_url(Environment.DEMO) == "https://demoapi.rentri.gov.it"
        assert settings.gateway_url(Environment.PRODUCTION) == "https://api.rentri.gov.it"
        assert settings.audience(Environment.DEMO) == "rentrigov.demo.api"
        assert settings.audience(Environment.PRODUCTION) == "rentrigov.api"

    def test_protocol_defaults(self):
        settings = Settings(database_url="sqlite://")

        assert settings.rentri_jwt_ttl_seconds == 55
        assert settings.rentri_token_refresh_margin_seconds == 5
        assert settings.rentri_push_max_attempts == 3
        assert settings.rentri_max_batch_size == 1000

    def test_environment_variables_override_defaults(self, fresh_settings):
        fresh_settings.setenv("RENTRI_PUSH_MAX_ATTEMPTS", "5")
        fresh_settings.setenv("RENTRI_PUSH_BACKOFF_SECONDS", "0.5")
        reload_settings()

        policy = RetryPolicy.from_settings()

        assert policy.max_attempts == 5
        assert policy.base_delay == 0.5
        assert RetryPolicy.from_settings(max_attempts=1).max_attempts == 1
