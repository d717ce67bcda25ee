"""
Unit tests for settings validation.
"""
from decimal import Decimal
from typing import Any

import pytest
from pydantic import ValidationError

from tutorpay.config import Settings

DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def build(**overrides: Any) -> Settings:
    values = {
        "paystack_secret_key": "sk_test_abc",
        "database_url": DATABASE_URL,
        **overrides,
    }
    return Settings(_env_file=None, **values)


class TestSettings:
    """Test suite for Settings."""

    @pytest.mark.unit
    def test_defaults(self) -> None:
        settings = build()
        assert settings.paystack_base_url == "https://api.paystack.co"
        assert settings.paystack_currency == "KES"
        assert settings.min_amount == Decimal("1")
        assert settings.max_amount == Decimal("1000000")
        assert settings.webhook_signature_header == "x-paystack-signature"
        assert settings.redis_url is None
        assert settings.is_test_mode
        assert not settings.is_production

    @pytest.mark.unit
    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PAYSTACK_SECRET_KEY", "sk_test_from_env")
        monkeypatch.setenv("DATABASE_URL", DATABASE_URL)
        monkeypatch.setenv("REDIS_LOCK_TIMEOUT", "12")
        settings = Settings(_env_file=None)
        assert settings.paystack_secret_key == "sk_test_from_env"
        assert settings.redis_lock_timeout == 12

    @pytest.mark.unit
    def test_rejects_unknown_key_prefix(self) -> None:
        with pytest.raises(ValidationError, match="sk_test_"):
            build(paystack_secret_key="pk_test_abc")

    @pytest.mark.unit
    def test_live_key_outside_production(self) -> None:
        with pytest.raises(ValidationError, match="live key"):
            build(paystack_secret_key="sk_live_abc", app_env="development")

    @pytest.mark.unit
    def test_test_key_in_production(self) -> None:
        with pytest.raises(ValidationError, match="test key"):
            build(app_env="production")

    @pytest.mark.unit
    def test_live_key_in_production(self) -> None:
        settings = build(paystack_secret_key="sk_live_abc", app_env="production")
        assert settings.is_production
        assert not settings.is_test_mode

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "bounds",
        [
            {"min_amount": "0"},
            {"min_amount": "-1"},
            {"min_amount": "100", "max_amount": "10"},
        ],
    )
    def test_rejects_bad_amount_bounds(self, bounds: dict) -> None:
        with pytest.raises(ValidationError, match="Amount bounds"):
            build(**bounds)

    @pytest.mark.unit
    def test_log_level_normalized(self) -> None:
        assert build(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            build(log_level="chatty")

    @pytest.mark.unit
    def test_lists(self) -> None:
        settings = build(
            paystack_channels="card, mobile_money,",
            allowed_origins="https://a.example, https://b.example",
        )
        assert settings.get_channels_list() == ["card", "mobile_money"]
        assert settings.get_allowed_origins_list() == ["https://a.example", "https://b.example"]

    @pytest.mark.unit
    def test_rate_limits(self) -> None:
        settings = build()
        assert settings.rate_limit_enabled
        assert settings.rate_limit_payments_per_minute == 10
        with pytest.raises(ValidationError, match="Rate limits"):
            build(rate_limit_webhooks_per_minute=0)
