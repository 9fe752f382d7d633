"""
Verificação de assinatura e leitura de eventos de webhook, um verificador por provedor.

Mercado Pago: `x-signature: ts=<ts>,v1=<hmac>` + `x-request-id`, HMAC-SHA256 do
manifest `id:<data.id>;request-id:<x-request-id>;ts:<ts>;`.
Stripe: `Stripe-Signature` conferido pelo SDK (`stripe.Webhook.construct_event`, com tolerância de timestamp).
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

import stripe

from tocamais.db.models import ChargeStatus
from tocamais.payments.errors import SignatureInvalid, ValidationError
from tocamais.payments.gateway.stripe import map_stripe_status

logger = logging.getLogger(__name__)

MERCADO_PAGO_ACTIONS = {"payment.created", "payment.updated"}

STRIPE_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}


@dataclass
class WebhookEvent:
    """Evento de cobrança normalizado. state=None quando o payload não basta para decidir."""

    provider: str
    event_type: str
    external_id: str
    external_reference: Optional[str] = None
    state: Optional[ChargeStatus] = None
    provider_status: Optional[str] = None
    replacement_external_id: Optional[str] = None


class WebhookVerifier(Protocol):
    provider: str

    def verify(self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str]) -> None:
        """Levanta SignatureInvalid se a assinatura não confere."""
        ...

    def parse_event(self, payload: dict[str, Any]) -> Optional[WebhookEvent]:
        """Devolve o evento de cobrança, ou None para tipos de evento irrelevantes."""
        ...


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def _signature_parts(header: str) -> dict[str, list[str]]:
    parts: dict[str, list[str]] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep and value:
            parts.setdefault(key.strip(), []).append(value.strip())
    return parts


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class MercadoPagoVerifier:
    provider = "mercadopago"

    def __init__(self, secret: str):
        self._secret = secret

    @staticmethod
    def _data_id(raw_body: bytes, query: Mapping[str, str]) -> str:
        data_id = query.get("data.id") or query.get("id")
        if not data_id:
            try:
                body = json.loads(raw_body or b"{}")
            except ValueError:
                body = {}
            if isinstance(body, dict):
                data_id = (body.get("data") or {}).get("id") or body.get("id")
        return str(data_id or "").lower()

    def verify(self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str]) -> None:
        signature = _header(headers, "x-signature")
        request_id = _header(headers, "x-request-id")
        if not self._secret:
            raise SignatureInvalid("MERCADO_PAGO_WEBHOOK_SECRET não configurado")
        if not signature or not request_id:
            raise SignatureInvalid("Cabeçalhos de assinatura ausentes")
        parts = _signature_parts(signature)
        ts = (parts.get("ts") or [""])[0]
        received = (parts.get("v1") or [""])[0]
        if not ts or not received:
            raise SignatureInvalid("Formato de assinatura inválido")
        manifest = f"id:{self._data_id(raw_body, query)};request-id:{request_id};ts:{ts};"
        expected = _hmac_hex(self._secret, manifest.encode("utf-8"))
        if not hmac.compare_digest(expected, received.lower()):
            raise SignatureInvalid("Assinatura não confere")

    def parse_event(self, payload: dict[str, Any]) -> Optional[WebhookEvent]:
        event_type = str(payload.get("type") or "")
        action = str(payload.get("action") or "")
        if event_type != "payment" and action not in MERCADO_PAGO_ACTIONS:
            return None
        payment_id = (payload.get("data") or {}).get("id") or payload.get("id")
        if not payment_id:
            raise ValidationError("Webhook sem id de pagamento")
        # o payload do Mercado Pago não traz o status: sempre consultar a API
        return WebhookEvent(
            provider=self.provider,
            event_type=action or event_type,
            external_id=str(payment_id),
        )


class StripeVerifier:
    provider = "stripe"

    def __init__(self, secret: str, tolerance_seconds: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self._secret = secret
        self._tolerance = tolerance_seconds

    def verify(self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str]) -> None:
        if not self._secret:
            raise SignatureInvalid("STRIPE_WEBHOOK_SECRET não configurado")
        signature = _header(headers, "stripe-signature")
        try:
            stripe.Webhook.construct_event(raw_body, signature, self._secret, tolerance=self._tolerance)
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(f"Assinatura Stripe inválida: {e.user_message}")
        except (ValueError, AttributeError):
            raise ValidationError("Corpo do webhook não é um evento Stripe")

    def parse_event(self, payload: dict[str, Any]) -> Optional[WebhookEvent]:
        event_type = str(payload.get("type") or "")
        if event_type not in STRIPE_EVENTS:
            return None
        session = (payload.get("data") or {}).get("object") or {}
        session_id = session.get("id")
        if not session_id:
            raise ValidationError("Webhook sem id de sessão")
        status = session.get("status")
        payment_status = session.get("payment_status")
        if event_type == "checkout.session.async_payment_succeeded":
            state = ChargeStatus.APPROVED
        elif event_type == "checkout.session.async_payment_failed":
            state = ChargeStatus.REJECTED
        elif event_type == "checkout.session.expired":
            state = ChargeStatus.EXPIRED
        else:
            state = map_stripe_status(status, payment_status)
        payment_intent = session.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        return WebhookEvent(
            provider=self.provider,
            event_type=event_type,
            external_id=str(session_id),
            external_reference=session.get("client_reference_id")
            or (session.get("metadata") or {}).get("charge_id"),
            state=state,
            provider_status=f"{status}/{payment_status}" if payment_status else status,
            replacement_external_id=payment_intent or None,
        )
