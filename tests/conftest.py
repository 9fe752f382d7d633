"""
Pytest configuration for the Toca+ payments engine.

Provides fixtures for:
- In-memory SQLite ledger (one fresh database per test)
- Beneficiary directory seeded with free/pro/inactive artists
- Offline gateway registry, reconciler and charge service
- Webhook signing helpers for Mercado Pago and Stripe
- In-memory stand-in for stripe.StripeClient (checkout sessions and payment intents)
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Callable, Generator, Optional

import pytest
import stripe
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from tocamais.config import Settings
from tocamais.db.models import ChargeAttempt, ChargeRecord, utcnow
from tocamais.db.session import configure_engine, create_all_tables
from tocamais.payments.beneficiaries import SqlBeneficiaryDirectory
from tocamais.payments.events import ChargeApproved
from tocamais.payments.gateway.base import ChargeKind
from tocamais.payments.gateway.example import ExampleGateway
from tocamais.payments.gateway.factory import GatewayRegistry
from tocamais.payments.ledger import LedgerStore
from tocamais.payments.reconciler import Reconciler
from tocamais.payments.service import ChargeService
from tocamais.payments.subscriptions import SubscriptionActivator
from tocamais.payments.webhooks import MercadoPagoVerifier, StripeVerifier

FREE_ARTIST = "artist-free"
PRO_ARTIST = "artist-pro"
INACTIVE_ARTIST = "artist-inactive"
MP_WEBHOOK_SECRET = "mp-webhook-secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


class RecordingPublisher:
    """Coleta eventos publicados para asserções."""

    def __init__(self) -> None:
        self.events: list[ChargeApproved] = []

    def publish(self, event: ChargeApproved) -> None:
        self.events.append(event)


class FakeStripeClient:
    """
    Imita stripe.StripeClient (v1.checkout.sessions e v1.payment_intents) sobre dicts.
    Devolve StripeObject de verdade; `error` faz toda chamada levantar a exceção dada.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.payment_intents: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, Any, Any]] = []
        self.error: Optional[Exception] = None
        self.v1 = SimpleNamespace(
            checkout=SimpleNamespace(
                sessions=SimpleNamespace(create=self._create_session, retrieve=self._retrieve_session)
            ),
            payment_intents=SimpleNamespace(retrieve=self._retrieve_intent, search=self._search_intents),
        )

    def _record(self, operation: str, params: Any = None, options: Any = None) -> None:
        self.calls.append((operation, params, options))
        if self.error is not None:
            raise self.error

    @staticmethod
    def _wrap(values: dict[str, Any]) -> stripe.StripeObject:
        return stripe.StripeObject.construct_from(values, "sk_test")

    def _create_session(self, params: dict[str, Any], options: Optional[dict[str, Any]] = None):
        self._record("sessions.create", params, options)
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions[session_id] = {
            "id": session_id,
            "object": "checkout.session",
            "status": "open",
            "payment_status": "unpaid",
            "url": f"https://checkout.stripe.test/c/pay/{session_id}",
            "client_reference_id": params.get("client_reference_id"),
            "metadata": params.get("metadata", {}),
            "payment_intent": None,
        }
        return self._wrap(self.sessions[session_id])

    def _retrieve_session(self, session_id: str, params: Any = None, options: Any = None):
        self._record("sessions.retrieve", session_id)
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: {session_id}", "id", http_status=404)
        return self._wrap(self.sessions[session_id])

    def _retrieve_intent(self, intent_id: str, params: Any = None, options: Any = None):
        self._record("payment_intents.retrieve", intent_id)
        if intent_id not in self.payment_intents:
            raise stripe.InvalidRequestError(f"No such payment_intent: {intent_id}", "id", http_status=404)
        return self._wrap(self.payment_intents[intent_id])

    def _search_intents(self, params: dict[str, Any], options: Any = None):
        self._record("payment_intents.search", params)
        # consulta no formato metadata['charge_id']:'<referência>'
        reference = params["query"].split("'")[3]
        matches = [
            intent
            for intent in self.payment_intents.values()
            if (intent.get("metadata") or {}).get("charge_id") == reference
        ]
        return self._wrap({"object": "search_result", "data": matches[: params.get("limit", 10)]})


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    engine = configure_engine("sqlite://", poolclass=StaticPool)
    create_all_tables()
    yield engine
    engine.dispose()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        mercado_pago_webhook_secret=MP_WEBHOOK_SECRET,
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        gateway_backoff_seconds=0.0,
        sweep_interval_seconds=0,
    )


@pytest.fixture
def ledger(engine: Engine) -> LedgerStore:
    return LedgerStore(engine)


@pytest.fixture
def beneficiaries(engine: Engine) -> SqlBeneficiaryDirectory:
    directory = SqlBeneficiaryDirectory(engine)
    directory.upsert(FREE_ARTIST, "Banda Livre", tier="free", city="Recife")
    directory.upsert(PRO_ARTIST, "Trio Pro", tier="pro", city="São Paulo")
    directory.upsert(INACTIVE_ARTIST, "Dupla Parada", tier="free", active=False)
    return directory


@pytest.fixture
def example_registry() -> GatewayRegistry:
    example = ExampleGateway()
    return GatewayRegistry({example.name: example}, {kind: example.name for kind in ChargeKind})


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def fake_stripe() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def subscriptions(beneficiaries: SqlBeneficiaryDirectory) -> SubscriptionActivator:
    return SubscriptionActivator(beneficiaries, days=30)


@pytest.fixture
def verifiers() -> dict[str, Any]:
    return {
        "mercadopago": MercadoPagoVerifier(MP_WEBHOOK_SECRET),
        "stripe": StripeVerifier(STRIPE_WEBHOOK_SECRET),
    }


@pytest.fixture
def reconciler(
    ledger: LedgerStore,
    example_registry: GatewayRegistry,
    verifiers: dict[str, Any],
    publisher: RecordingPublisher,
    subscriptions: SubscriptionActivator,
) -> Reconciler:
    return Reconciler(ledger, example_registry, verifiers, publisher, subscriptions)


@pytest.fixture
def service(
    ledger: LedgerStore,
    example_registry: GatewayRegistry,
    beneficiaries: SqlBeneficiaryDirectory,
    settings: Settings,
    publisher: RecordingPublisher,
    reconciler: Reconciler,
) -> ChargeService:
    return ChargeService(
        ledger,
        example_registry,
        beneficiaries,
        settings=settings,
        publisher=publisher,
        reconciler=reconciler,
    )


@pytest.fixture
def make_record(ledger: LedgerStore) -> Callable[..., ChargeRecord]:
    """Persiste uma cobrança pendente (R$ 100,00, plano free) com campos sobrescrevíveis."""

    def _make(**overrides: Any) -> ChargeRecord:
        charge_id = overrides.pop("id", None) or str(uuid.uuid4())
        fields: dict[str, Any] = {
            "id": charge_id,
            "kind": "pix",
            "provider": "example",
            "external_charge_id": f"ext-{charge_id[:8]}",
            "external_reference": charge_id,
            "idempotency_key": f"key-{charge_id}",
            "gross_amount": Decimal("100.00"),
            "fee_amount": Decimal("20.00"),
            "net_amount": Decimal("80.00"),
            "fee_rate": Decimal("0.20"),
            "tier": "free",
            "session_token": str(uuid.uuid4()),
            "beneficiary_ref": FREE_ARTIST,
            "expires_at": utcnow() + timedelta(minutes=30),
        }
        fields.update(overrides)
        return ledger.create(ChargeRecord(**fields))

    return _make


@pytest.fixture
def make_attempt(ledger: LedgerStore) -> Callable[..., ChargeAttempt]:
    """Registra uma tentativa aberta no Mercado Pago (R$ 100,00, plano free), como antes da resposta do provedor."""

    def _make(**overrides: Any) -> ChargeAttempt:
        charge_id = overrides.pop("charge_id", None) or str(uuid.uuid4())
        fields: dict[str, Any] = {
            "charge_id": charge_id,
            "idempotency_key": f"key-{charge_id}",
            "provider": "mercadopago",
            "kind": "pix",
            "gross_amount": Decimal("100.00"),
            "fee_amount": Decimal("20.00"),
            "net_amount": Decimal("80.00"),
            "fee_rate": Decimal("0.20"),
            "tier": "free",
            "session_token": str(uuid.uuid4()),
            "beneficiary_ref": FREE_ARTIST,
            "expires_at": utcnow() + timedelta(minutes=30),
        }
        fields.update(overrides)
        return ledger.begin_attempt(ChargeAttempt(**fields))

    return _make


@pytest.fixture
def sign_mercadopago() -> Callable[..., dict[str, str]]:
    """Cabeçalhos x-signature/x-request-id válidos para um data.id."""

    def _sign(data_id: str, request_id: str = "req-1", secret: str = MP_WEBHOOK_SECRET) -> dict[str, str]:
        ts = str(int(time.time()))
        manifest = f"id:{data_id.lower()};request-id:{request_id};ts:{ts};"
        digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
        return {"x-signature": f"ts={ts},v1={digest}", "x-request-id": request_id}

    return _sign


@pytest.fixture
def sign_stripe() -> Callable[..., tuple[bytes, dict[str, str]]]:
    """Serializa o evento e devolve (corpo bruto, cabeçalho Stripe-Signature)."""

    def _sign(
        event: dict[str, Any] | bytes,
        secret: str = STRIPE_WEBHOOK_SECRET,
        timestamp: int | None = None,
    ) -> tuple[bytes, dict[str, str]]:
        raw_body = event if isinstance(event, bytes) else json.dumps(event).encode()
        header = stripe.WebhookSignature.generate_signature_header(raw_body.decode(), secret, timestamp)
        return raw_body, {"Stripe-Signature": header}

    return _sign
