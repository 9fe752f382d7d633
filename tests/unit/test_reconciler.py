from __future__ import annotations

import json
from datetime import timedelta
from decimal import Decimal
from typing import Any

import httpx
import pytest

from tocamais.db.models import AttemptOutcome, ChargeStatus, utcnow
from tocamais.payments.gateway.base import ChargeKind
from tocamais.payments.gateway.factory import GatewayRegistry
from tocamais.payments.gateway.mercadopago import MercadoPagoGateway
from tocamais.payments.gateway.stripe import StripeGateway
from tocamais.payments.ledger import LedgerStore
from tocamais.payments.reconciler import Reconciler

MP_PAYMENT_ID = "123456"


@pytest.fixture
def remote() -> dict[str, Any]:
    """Estado "remoto" do Mercado Pago, servido pelo MockTransport."""
    return {"payments": {}, "fail": False, "calls": []}


@pytest.fixture
def provider_registry(remote: dict[str, Any], fake_stripe) -> GatewayRegistry:
    def handler(request: httpx.Request) -> httpx.Response:
        remote["calls"].append(request.url.path)
        if remote["fail"]:
            return httpx.Response(503)
        item = request.url.path.removeprefix("/v1/payments/")
        if item == "search":
            reference = request.url.params["external_reference"]
            results = [p for p in remote["payments"].values() if p.get("external_reference") == reference]
            return httpx.Response(200, json={"results": results, "paging": {"total": len(results)}})
        if item not in remote["payments"]:
            return httpx.Response(404, json={"message": "not found"})
        return httpx.Response(200, json=remote["payments"][item])

    client = httpx.Client(transport=httpx.MockTransport(handler))
    retry = {"max_attempts": 2, "backoff_seconds": 0.0, "sleep": lambda _: None}
    mp = MercadoPagoGateway(client, "TEST-token", base_url="https://mp.test", **retry)
    stripe = StripeGateway(fake_stripe, **retry)
    return GatewayRegistry(
        {mp.name: mp, stripe.name: stripe},
        {ChargeKind.PIX: mp.name, ChargeKind.CARD: mp.name, ChargeKind.CHECKOUT: stripe.name},
        client,
    )


@pytest.fixture
def provider_reconciler(ledger, provider_registry, verifiers, publisher, subscriptions) -> Reconciler:
    return Reconciler(ledger, provider_registry, verifiers, publisher, subscriptions)


def _mp_body(payment_id: str = MP_PAYMENT_ID) -> bytes:
    return json.dumps({"type": "payment", "action": "payment.updated", "data": {"id": payment_id}}).encode()


def _stripe_event(event_type: str, reference: str, **session) -> dict[str, Any]:
    obj = {
        "id": "cs_test_abc",
        "status": "complete",
        "payment_status": "paid",
        "client_reference_id": reference,
        "payment_intent": "pi_test_xyz",
    }
    obj.update(session)
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


def test_approved_payment_then_duplicate_delivery(
    provider_reconciler, ledger: LedgerStore, make_record, remote, sign_mercadopago, publisher
):
    record = make_record(provider="mercadopago", external_charge_id=MP_PAYMENT_ID)
    remote["payments"][MP_PAYMENT_ID] = {"id": int(MP_PAYMENT_ID), "status": "approved"}
    headers = sign_mercadopago(MP_PAYMENT_ID)

    first = provider_reconciler.handle_webhook("mercadopago", _mp_body(), headers)
    assert first.status_code == 200
    assert first.body["status"] == "approved"
    assert first.body["changed"] is True

    second = provider_reconciler.handle_webhook("mercadopago", _mp_body(), headers)
    assert second.status_code == 200
    assert second.body["status"] == "approved"
    assert second.body["changed"] is False

    assert ledger.get(record.id).status == ChargeStatus.APPROVED.value
    assert [e.charge_id for e in publisher.events] == [record.id]
    assert publisher.events[0].net_amount == record.net_amount


def test_invalid_signature_leaves_record_untouched(
    provider_reconciler, ledger: LedgerStore, make_record, remote, sign_mercadopago
):
    record = make_record(provider="mercadopago", external_charge_id=MP_PAYMENT_ID)
    remote["payments"][MP_PAYMENT_ID] = {"id": int(MP_PAYMENT_ID), "status": "approved"}
    headers = sign_mercadopago(MP_PAYMENT_ID, secret="wrong-secret")

    result = provider_reconciler.handle_webhook("mercadopago", _mp_body(), headers)
    assert result.status_code == 401
    assert ledger.get(record.id).status == ChargeStatus.PENDING.value
    assert remote["calls"] == []


def test_unknown_provider(provider_reconciler):
    result = provider_reconciler.handle_webhook("paypal", b"{}", {})
    assert result.status_code == 404
    assert result.body == {"error": "unknown_provider"}


def test_malformed_json_is_bad_request(provider_reconciler, sign_stripe):
    raw_body, headers = sign_stripe(b"not-json")
    result = provider_reconciler.handle_webhook("stripe", raw_body, headers)
    assert result.status_code == 400


def test_irrelevant_event_is_acknowledged(provider_reconciler, sign_mercadopago):
    headers = sign_mercadopago(MP_PAYMENT_ID)
    body = json.dumps({"type": "subscription_preapproval", "data": {"id": MP_PAYMENT_ID}}).encode()
    result = provider_reconciler.handle_webhook("mercadopago", body, headers)
    assert result.status_code == 200
    assert result.body == {"received": True, "ignored": True}


def test_unknown_charge_is_not_found(provider_reconciler, remote, sign_mercadopago):
    remote["payments"]["555"] = {"id": 555, "status": "approved", "external_reference": "nobody"}
    result = provider_reconciler.handle_webhook("mercadopago", _mp_body("555"), sign_mercadopago("555"))
    assert result.status_code == 404
    assert result.body == {"error": "charge_not_found"}


def test_resolves_by_external_reference_from_provider(
    provider_reconciler, ledger: LedgerStore, make_record, remote, sign_mercadopago
):
    record = make_record(provider="mercadopago", external_charge_id="original-id")
    remote["payments"]["777"] = {"id": 777, "status": "rejected", "external_reference": record.external_reference}

    result = provider_reconciler.handle_webhook("mercadopago", _mp_body("777"), sign_mercadopago("777"))
    assert result.status_code == 200
    assert ledger.get(record.id).status == ChargeStatus.REJECTED.value


def test_intermediate_status_is_parked(
    provider_reconciler, ledger: LedgerStore, make_record, remote, sign_mercadopago, publisher
):
    record = make_record(provider="mercadopago", external_charge_id=MP_PAYMENT_ID)
    remote["payments"][MP_PAYMENT_ID] = {"id": int(MP_PAYMENT_ID), "status": "in_process"}

    result = provider_reconciler.handle_webhook("mercadopago", _mp_body(), sign_mercadopago(MP_PAYMENT_ID))
    assert result.status_code == 200
    assert result.body["parked"] is True
    assert ledger.get(record.id).status == ChargeStatus.PENDING.value
    assert publisher.events == []


def test_provider_unavailable_is_parked(
    provider_reconciler, ledger: LedgerStore, make_record, remote, sign_mercadopago
):
    record = make_record(provider="mercadopago", external_charge_id=MP_PAYMENT_ID)
    remote["fail"] = True

    result = provider_reconciler.handle_webhook("mercadopago", _mp_body(), sign_mercadopago(MP_PAYMENT_ID))
    assert result.status_code == 200
    assert result.body["parked"] is True
    assert len(remote["calls"]) == 2
    assert ledger.get(record.id).status == ChargeStatus.PENDING.value


def test_stripe_completed_session_reassigns_external_id(
    provider_reconciler, ledger: LedgerStore, make_record, sign_stripe, remote
):
    record = make_record(provider="stripe", kind="checkout", external_charge_id="cs_test_abc")
    raw_body, headers = sign_stripe(_stripe_event("checkout.session.completed", record.external_reference))

    result = provider_reconciler.handle_webhook("stripe", raw_body, headers)
    assert result.status_code == 200
    assert result.body["status"] == "approved"
    stored = ledger.get(record.id)
    assert stored.status == ChargeStatus.APPROVED.value
    assert stored.external_charge_id == "pi_test_xyz"
    assert remote["calls"] == []

    # reentrega com o id antigo da sessão ainda resolve pela referência
    again = provider_reconciler.handle_webhook("stripe", raw_body, headers)
    assert again.status_code == 200
    assert again.body["changed"] is False


def test_stripe_expired_session(provider_reconciler, ledger: LedgerStore, make_record, sign_stripe):
    record = make_record(provider="stripe", kind="checkout", external_charge_id="cs_test_abc")
    raw_body, headers = sign_stripe(
        _stripe_event(
            "checkout.session.expired",
            record.external_reference,
            status="expired",
            payment_status="unpaid",
            payment_intent=None,
        )
    )
    result = provider_reconciler.handle_webhook("stripe", raw_body, headers)
    assert result.status_code == 200
    assert ledger.get(record.id).status == ChargeStatus.EXPIRED.value


def test_refresh_applies_provider_status(reconciler: Reconciler, ledger: LedgerStore, make_record, publisher):
    record = make_record(external_charge_id="example-abc-paid")
    updated = reconciler.refresh(record)
    assert updated.status == ChargeStatus.APPROVED.value
    assert len(publisher.events) == 1

    pending = make_record(external_charge_id="example-def")
    assert reconciler.refresh(pending).status == ChargeStatus.PENDING.value


def test_reconcile_stale_counts_changes(reconciler: Reconciler, make_record):
    old = utcnow() - timedelta(hours=1)
    make_record(external_charge_id="example-1-rejected", created_at=old, kind="card", expires_at=None)
    make_record(external_charge_id="example-2", created_at=old)
    make_record(external_charge_id="example-3-paid")
    assert reconciler.reconcile_stale(utcnow() - timedelta(minutes=15)) == 1


def test_webhook_recovers_charge_whose_creation_timed_out(
    provider_reconciler, ledger: LedgerStore, make_attempt, remote, sign_mercadopago, publisher
):
    # o provedor gravou o pagamento, mas a resposta do POST nunca chegou
    attempt = make_attempt()
    remote["payments"]["999"] = {"id": 999, "status": "approved", "external_reference": attempt.charge_id}

    result = provider_reconciler.handle_webhook("mercadopago", _mp_body("999"), sign_mercadopago("999"))
    assert result.status_code == 200
    assert result.body["status"] == "approved"
    assert result.body["changed"] is True

    record = ledger.get(attempt.charge_id)
    assert record.external_charge_id == "999"
    assert record.idempotency_key == attempt.idempotency_key
    assert record.net_amount == Decimal("80.00")
    assert ledger.get_attempt(attempt.charge_id).outcome == AttemptOutcome.RECOVERED.value
    assert [e.charge_id for e in publisher.events] == [attempt.charge_id]


def test_attempt_of_other_provider_is_not_recovered(provider_reconciler, make_attempt, remote, sign_mercadopago):
    attempt = make_attempt(provider="stripe", kind="checkout")
    remote["payments"]["999"] = {"id": 999, "status": "approved", "external_reference": attempt.charge_id}

    result = provider_reconciler.handle_webhook("mercadopago", _mp_body("999"), sign_mercadopago("999"))
    assert result.status_code == 404


def test_maintenance_recovers_orphaned_charge_by_reference(
    provider_reconciler, ledger: LedgerStore, make_attempt, remote, publisher
):
    orphan = make_attempt(created_at=utcnow() - timedelta(minutes=10))
    in_flight = make_attempt()
    remote["payments"]["1001"] = {"id": 1001, "status": "approved", "external_reference": orphan.charge_id}

    recovered = provider_reconciler.recover_attempts(
        utcnow() - timedelta(minutes=2), utcnow() - timedelta(hours=1)
    )
    assert recovered == 1
    record = ledger.get(orphan.charge_id)
    assert record.external_charge_id == "1001"
    assert record.status == ChargeStatus.APPROVED.value
    assert ledger.get_attempt(orphan.charge_id).outcome == AttemptOutcome.RECOVERED.value
    assert [e.charge_id for e in publisher.events] == [orphan.charge_id]

    # a chamada ainda em andamento não é tocada
    assert ledger.get_attempt(in_flight.charge_id).is_open
    assert ledger.get(in_flight.charge_id) is None
    assert remote["calls"] == ["/v1/payments/search"]


def test_attempt_without_remote_trace_is_abandoned(provider_reconciler, ledger: LedgerStore, make_attempt):
    stale = make_attempt(created_at=utcnow() - timedelta(hours=2))
    recent = make_attempt(created_at=utcnow() - timedelta(minutes=10))

    assert provider_reconciler.recover_attempts(utcnow() - timedelta(minutes=2), utcnow() - timedelta(hours=1)) == 0
    assert ledger.get_attempt(stale.charge_id).outcome == AttemptOutcome.ABANDONED.value
    assert ledger.get_attempt(recent.charge_id).is_open
    assert ledger.get(stale.charge_id) is None


def test_search_failure_keeps_attempt_open(provider_reconciler, ledger: LedgerStore, make_attempt, remote):
    stale = make_attempt(created_at=utcnow() - timedelta(hours=2))
    remote["fail"] = True

    assert provider_reconciler.recover_attempts(utcnow() - timedelta(minutes=2), utcnow() - timedelta(hours=1)) == 0
    assert ledger.get_attempt(stale.charge_id).is_open


def test_attempt_already_materialized_is_closed(provider_reconciler, ledger: LedgerStore, make_attempt, make_record, remote):
    attempt = make_attempt(created_at=utcnow() - timedelta(minutes=10))
    make_record(id=attempt.charge_id, provider="mercadopago")

    assert provider_reconciler.recover_attempts(utcnow() - timedelta(minutes=2), utcnow() - timedelta(hours=1)) == 0
    assert ledger.get_attempt(attempt.charge_id).outcome == AttemptOutcome.CONFIRMED.value
    assert remote["calls"] == []


def test_refresh_without_retry_asks_provider_once(provider_reconciler, make_record, remote):
    record = make_record(provider="mercadopago", external_charge_id=MP_PAYMENT_ID)
    remote["fail"] = True

    assert provider_reconciler.refresh(record, retry=False).status == ChargeStatus.PENDING.value
    assert len(remote["calls"]) == 1
    assert provider_reconciler.refresh(record).status == ChargeStatus.PENDING.value
    assert len(remote["calls"]) == 3
