"""Configuração via variáveis de ambiente (.env opcional)."""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    raw = _env_str(name)
    try:
        return Decimal(raw or default)
    except InvalidOperation:
        return Decimal(default)


@dataclass(frozen=True)
class Settings:
    """Parâmetros do motor de pagamentos (taxas, gateways, prazos)."""

    database_url: str = ""
    redis_url: str = ""
    log_level: str = "INFO"
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 8080
    app_url: str = "https://tocamais.app"
    notification_url: str = ""

    fee_rate_free: Decimal = Decimal("0.20")
    fee_rate_pro: Decimal = Decimal("0.00")
    min_charge_amount: Decimal = Decimal("1.00")
    max_charge_amount: Decimal = Decimal("10000.00")
    pix_expiration_minutes: int = 30
    checkout_expiration_minutes: int = 60
    subscription_price: Decimal = Decimal("39.90")
    subscription_days: int = 30

    mercado_pago_access_token: str = ""
    mercado_pago_webhook_secret: str = ""
    mercado_pago_api_url: str = "https://api.mercadopago.com"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_url: str = "https://api.stripe.com"
    stripe_signature_tolerance_seconds: int = 300

    platform_pix_key: str = ""
    platform_pix_key_type: str = "aleatoria"
    platform_merchant_name: str = "TOCA MAIS"
    platform_merchant_city: str = "SAO PAULO"

    gateway_timeout_seconds: float = 8.0
    gateway_max_attempts: int = 3
    gateway_backoff_seconds: float = 0.5
    reconcile_stale_minutes: int = 15
    recover_after_minutes: int = 2
    abandon_after_minutes: int = 60

    sweep_interval_seconds: float = 60.0
    archive_after_days: int = 30
    purge_after_days: int = 90

    @property
    def redis_enabled(self) -> bool:
        return bool(self.redis_url)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Lê o ambiente (e o .env, se existir) e monta Settings."""
    from dotenv import load_dotenv

    load_dotenv(env_file)
    return Settings(
        database_url=_env_str("DATABASE_URL"),
        redis_url=_env_str("REDIS_URL"),
        log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        webhook_host=_env_str("WEBHOOK_HOST", "0.0.0.0"),
        webhook_port=_env_int("WEBHOOK_PORT", 8080),
        app_url=_env_str("APP_URL", "https://tocamais.app").rstrip("/"),
        notification_url=_env_str("NOTIFICATION_URL"),
        fee_rate_free=_env_decimal("FEE_RATE_FREE", "0.20"),
        fee_rate_pro=_env_decimal("FEE_RATE_PRO", "0.00"),
        min_charge_amount=_env_decimal("MIN_CHARGE_AMOUNT", "1.00"),
        max_charge_amount=_env_decimal("MAX_CHARGE_AMOUNT", "10000.00"),
        pix_expiration_minutes=_env_int("PIX_EXPIRATION_MINUTES", 30),
        checkout_expiration_minutes=_env_int("CHECKOUT_EXPIRATION_MINUTES", 60),
        subscription_price=_env_decimal("SUBSCRIPTION_PRICE", "39.90"),
        subscription_days=_env_int("SUBSCRIPTION_DAYS", 30),
        mercado_pago_access_token=_env_str("MERCADO_PAGO_ACCESS_TOKEN"),
        mercado_pago_webhook_secret=_env_str("MERCADO_PAGO_WEBHOOK_SECRET"),
        mercado_pago_api_url=_env_str("MERCADO_PAGO_API_URL", "https://api.mercadopago.com").rstrip("/"),
        stripe_secret_key=_env_str("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_env_str("STRIPE_WEBHOOK_SECRET"),
        stripe_api_url=_env_str("STRIPE_API_URL", "https://api.stripe.com").rstrip("/"),
        stripe_signature_tolerance_seconds=_env_int("STRIPE_SIGNATURE_TOLERANCE_SECONDS", 300),
        platform_pix_key=_env_str("PLATFORM_PIX_KEY"),
        platform_pix_key_type=_env_str("PLATFORM_PIX_KEY_TYPE", "aleatoria").lower(),
        platform_merchant_name=_env_str("PLATFORM_MERCHANT_NAME", "TOCA MAIS"),
        platform_merchant_city=_env_str("PLATFORM_MERCHANT_CITY", "SAO PAULO"),
        gateway_timeout_seconds=_env_float("GATEWAY_TIMEOUT_SECONDS", 8.0),
        gateway_max_attempts=max(1, _env_int("GATEWAY_MAX_ATTEMPTS", 3)),
        gateway_backoff_seconds=_env_float("GATEWAY_BACKOFF_SECONDS", 0.5),
        reconcile_stale_minutes=_env_int("RECONCILE_STALE_MINUTES", 15),
        recover_after_minutes=_env_int("RECOVER_AFTER_MINUTES", 2),
        abandon_after_minutes=_env_int("ABANDON_AFTER_MINUTES", 60),
        sweep_interval_seconds=_env_float("SWEEP_INTERVAL_SECONDS", 60.0),
        archive_after_days=_env_int("ARCHIVE_AFTER_DAYS", 30),
        purge_after_days=_env_int("PURGE_AFTER_DAYS", 90),
    )
