"""Tests for Settings validation."""

from __future__ import annotations

import pytest
from pydantic import SecretStr, ValidationError

from config.settings import Settings


def _settings(**overrides) -> Settings:
    # _env_file=None keeps a developer's local .env out of the tests
    return Settings(_env_file=None, **overrides)


@pytest.fixture(autouse=True)
def _no_provider_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    # Keys exported in the shell must not leak into expectations
    for name in ("OPENAI_API_KEY", "GEMINI_API_KEY", "ANTHROPIC_API_KEY"):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_dev_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("QUOTA_FAILURE_POLICY", raising=False)
        settings = _settings()
        assert settings.gateway_env == "dev"
        assert settings.quota_failure_policy == "fail_closed"
        assert settings.usd_jpy_rate == 150.0
        assert settings.routing_cache_ttl_seconds == 30.0

    def test_env_vars_are_read(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("QUOTA_TIMEZONE", "Asia/Tokyo")
        monkeypatch.setenv("USAGE_WRITE_ATTEMPTS", "5")
        settings = _settings()
        assert settings.quota_timezone == "Asia/Tokyo"
        assert settings.usage_write_attempts == 5

    def test_provider_api_keys(self) -> None:
        settings = _settings(openai_api_key=SecretStr("sk-1"), gemini_api_key=SecretStr("g-1"))
        keys = settings.provider_api_keys()
        assert keys == {"openai": "sk-1", "gemini": "g-1", "anthropic": ""}

    def test_provider_key_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "a-env")
        assert _settings().provider_api_keys()["anthropic"] == "a-env"


class TestProdValidation:
    def test_prod_rejects_fail_open(self) -> None:
        with pytest.raises(ValidationError):
            _settings(gateway_env="prod", quota_failure_policy="fail_open", openai_api_key=SecretStr("sk-1"))

    def test_prod_requires_a_provider_key(self) -> None:
        with pytest.raises(ValidationError):
            _settings(
                gateway_env="prod",
                openai_api_key=SecretStr(""),
                gemini_api_key=SecretStr(""),
                anthropic_api_key=SecretStr(""),
            )

    def test_prod_ok(self) -> None:
        settings = _settings(gateway_env="prod", gemini_api_key=SecretStr("g-1"))
        assert settings.gateway_env == "prod"

    def test_write_attempts_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            _settings(usage_write_attempts=0)
