from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from tocamais.config import Settings, load_settings
from tocamais.payments.gateway.base import ChargeKind
from tocamais.payments.gateway.factory import build_registry


def test_load_settings_reads_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("FEE_RATE_FREE", "0.15")
    monkeypatch.setenv("PIX_EXPIRATION_MINUTES", "45")
    monkeypatch.setenv("APP_URL", "https://staging.tocamais.test/")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    settings = load_settings()
    assert settings.fee_rate_free == Decimal("0.15")
    assert settings.pix_expiration_minutes == 45
    assert settings.app_url == "https://staging.tocamais.test"
    assert settings.log_level == "DEBUG"


def test_invalid_numbers_fall_back_to_defaults(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("FEE_RATE_PRO", "zero")
    monkeypatch.setenv("GATEWAY_MAX_ATTEMPTS", "many")
    monkeypatch.setenv("GATEWAY_TIMEOUT_SECONDS", "")
    settings = load_settings()
    assert settings.fee_rate_pro == Decimal("0.00")
    assert settings.gateway_max_attempts == 3
    assert settings.gateway_timeout_seconds == 8.0


def test_registry_without_credentials_uses_example_gateway():
    registry = build_registry(Settings())
    try:
        assert registry.providers == ["example"]
        for kind in ChargeKind:
            assert registry.for_kind(kind).name == "example"
    finally:
        registry.close()


def test_registry_routes_to_configured_providers():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    settings = Settings(
        mercado_pago_access_token="TEST-token",
        stripe_secret_key="sk_test",
        notification_url="https://api.tocamais.test",
    )
    registry = build_registry(settings, client=client)
    assert set(registry.providers) == {"example", "mercadopago", "stripe"}
    assert registry.for_kind(ChargeKind.PIX).name == "mercadopago"
    assert registry.for_kind(ChargeKind.CARD).name == "mercadopago"
    assert registry.for_kind(ChargeKind.CHECKOUT).name == "stripe"
    assert registry.get("paypal") is None

    registry.close()
    assert client.is_closed
