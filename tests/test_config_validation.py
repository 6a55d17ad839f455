"""Tests for configuration validation and health checks."""

from __future__ import annotations

import dataclasses
import importlib.util
import os
from pathlib import Path
from unittest.mock import patch

import pytest

CONFIG_PATH = Path(__file__).resolve().parent.parent / "app" / "config.py"


@pytest.fixture(scope="module")
def real_config():
    """Load app/config.py directly; conftest.py replaces ``app.config`` in sys.modules."""
    spec = importlib.util.spec_from_file_location("_real_app_config", CONFIG_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def configured(real_config):
    return dataclasses.replace(
        real_config.Settings(),
        database_url="postgresql+psycopg://billing@db.internal/billing",
        waafipay_merchant_uid="M0000001",
        waafipay_api_user_id="1000001",
        waafipay_api_key="API-key",
        waafipay_webhook_url="https://billing.example.com/billing/callbacks/waafipay",
        gateway_max_retries=2,
        pending_payment_timeout_minutes=15,
        pending_payment_max_age_hours=24,
    )


class TestValidateSettings:
    def test_no_warnings_when_configured(self, real_config, configured) -> None:
        assert real_config.validate_settings(configured) == []

    def test_missing_waafipay_credentials(self, real_config, configured) -> None:
        s = dataclasses.replace(configured, waafipay_api_key="")
        warnings = real_config.validate_settings(s)
        assert any("WaafiPay credentials" in w for w in warnings)

    def test_missing_webhook_url(self, real_config, configured) -> None:
        s = dataclasses.replace(configured, waafipay_webhook_url="")
        warnings = real_config.validate_settings(s)
        assert any("WAAFIPAY_WEBHOOK_URL" in w for w in warnings)

    def test_negative_retries(self, real_config, configured) -> None:
        s = dataclasses.replace(configured, gateway_max_retries=-1)
        warnings = real_config.validate_settings(s)
        assert any("GATEWAY_MAX_RETRIES" in w for w in warnings)

    def test_max_age_shorter_than_timeout(self, real_config, configured) -> None:
        s = dataclasses.replace(
            configured, pending_payment_timeout_minutes=120, pending_payment_max_age_hours=1
        )
        warnings = real_config.validate_settings(s)
        assert any("PENDING_PAYMENT_MAX_AGE_HOURS" in w for w in warnings)

    def test_localhost_database_in_production(self, real_config, configured) -> None:
        s = dataclasses.replace(configured, database_url="postgresql+psycopg://localhost/billing")
        with patch.dict(os.environ, {"ENVIRONMENT": "production"}, clear=False):
            warnings = real_config.validate_settings(s)
        assert any("localhost" in w for w in warnings)

    def test_localhost_database_allowed_in_dev(self, real_config, configured) -> None:
        s = dataclasses.replace(configured, database_url="postgresql+psycopg://localhost/billing")
        with patch.dict(os.environ, {"ENVIRONMENT": "dev"}, clear=False):
            assert real_config.validate_settings(s) == []


class TestEnvBool:
    @pytest.mark.parametrize("value", ["1", "true", "YES", " on "])
    def test_truthy(self, real_config, monkeypatch, value) -> None:
        monkeypatch.setenv("SOME_FLAG", value)
        assert real_config._env_bool("SOME_FLAG", "false") is True

    @pytest.mark.parametrize("value", ["0", "false", "no", "off", "maybe"])
    def test_falsy(self, real_config, monkeypatch, value) -> None:
        monkeypatch.setenv("SOME_FLAG", value)
        assert real_config._env_bool("SOME_FLAG", "true") is False

    def test_default(self, real_config, monkeypatch) -> None:
        monkeypatch.delenv("SOME_FLAG", raising=False)
        assert real_config._env_bool("SOME_FLAG", "true") is True


class TestHealthCheck:
    """Test the health endpoint response format."""

    def test_liveness_always_ok(self, client) -> None:
        """Liveness check should always return ok."""
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_readiness_checks_database(self, client) -> None:
        resp = client.get("/health/ready")
        assert resp.status_code == 200
        assert resp.json() == {
            "status": "ok",
            "checks": {"database": "ok"},
            "payment_gateway": "configured",
        }
