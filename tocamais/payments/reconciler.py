"""
Recepção de webhooks e conciliação com o ledger.

Fluxo: assinatura -> filtro de tipo -> localizar cobrança (id externo, depois
referência externa) -> status autoritativo (payload ou consulta ao provedor)
-> transição atômica. Todo caminho devolve um status HTTP definido; nada sobe
como exceção para o provedor.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from tocamais.db.models import AttemptOutcome, ChargeRecord, ChargeStatus, as_utc
from tocamais.payments.errors import (
    GatewayError,
    RecordNotFound,
    SignatureInvalid,
    ValidationError,
)
from tocamais.payments.events import EventPublisher, publish_if_approved
from tocamais.payments.gateway.base import PaymentGatewayProtocol, ProviderStatus
from tocamais.payments.gateway.factory import GatewayRegistry
from tocamais.payments.ledger import LedgerStore, TransitionResult, record_from_attempt
from tocamais.payments.subscriptions import SubscriptionActivator
from tocamais.payments.webhooks import WebhookEvent, WebhookVerifier

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


class Reconciler:
    def __init__(
        self,
        ledger: LedgerStore,
        registry: GatewayRegistry,
        verifiers: Mapping[str, WebhookVerifier],
        publisher: Optional[EventPublisher] = None,
        subscriptions: Optional[SubscriptionActivator] = None,
    ):
        self._ledger = ledger
        self._registry = registry
        self._verifiers = dict(verifiers)
        self._publisher = publisher
        self._subscriptions = subscriptions

    def handle_webhook(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        query: Optional[Mapping[str, str]] = None,
    ) -> WebhookResult:
        try:
            return self._handle(provider, raw_body, headers, query or {})
        except SignatureInvalid as e:
            logger.warning("Webhook rejeitado (assinatura): provider=%s motivo=%s", provider, e.message)
            return WebhookResult(401, {"error": "invalid_signature"})
        except ValidationError as e:
            logger.warning("Webhook malformado: provider=%s motivo=%s", provider, e.message)
            return WebhookResult(400, {"error": "malformed_payload", "detail": e.message})
        except RecordNotFound as e:
            logger.error("Webhook para cobrança desconhecida: provider=%s %s", provider, e.details)
            return WebhookResult(404, {"error": "charge_not_found"})
        except Exception:
            logger.exception("Erro inesperado ao processar webhook provider=%s", provider)
            return WebhookResult(500, {"error": "internal_error"})

    def _handle(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> WebhookResult:
        verifier = self._verifiers.get(provider)
        if verifier is None:
            return WebhookResult(404, {"error": "unknown_provider"})
        verifier.verify(raw_body, headers, query)

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Corpo do webhook não é JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Corpo do webhook não é um objeto")

        event = verifier.parse_event(payload)
        if event is None:
            logger.info("Webhook ignorado: provider=%s type=%s", provider, payload.get("type"))
            return WebhookResult(200, {"received": True, "ignored": True})

        gateway = self._registry.get(provider)
        lookup: Optional[ProviderStatus] = None
        record = self._resolve(event.external_id, event.external_reference)
        if record is None and not event.external_reference and gateway is not None:
            # só o provedor conhece a referência (ex.: pagamento criado fora do nosso id)
            lookup = self._lookup(gateway, event.external_id)
            if lookup is not None:
                record = self._resolve(None, lookup.external_reference)
        reference = event.external_reference or (lookup.external_reference if lookup else None)
        if record is None and reference:
            provider_status = event.provider_status or (lookup.provider_status if lookup else None)
            record = self._materialize(provider, reference, event.external_id, provider_status)
        if record is None:
            raise RecordNotFound(
                "Cobrança não encontrada",
                {"external_id": event.external_id, "external_reference": event.external_reference},
            )

        state, provider_status = event.state, event.provider_status
        replacement = event.replacement_external_id
        if state is None:
            if lookup is None and gateway is not None:
                lookup = self._lookup(gateway, event.external_id)
            if lookup is not None:
                state, provider_status = lookup.state, lookup.provider_status
                replacement = replacement or lookup.replacement_external_id
        if replacement and replacement != record.external_charge_id:
            record = self._ledger.reassign_external_id(record.id, replacement)
        if state is None:
            logger.info(
                "Status ainda intermediário, cobrança fica pendente: charge_id=%s provider_status=%s",
                record.id,
                provider_status,
            )
            return WebhookResult(200, {"received": True, "status": record.status, "parked": True})

        result = self.apply(record.id, state, provider_status)
        return WebhookResult(
            200,
            {"received": True, "status": result.record.status, "changed": result.changed},
        )

    def _resolve(self, external_id: Optional[str], reference: Optional[str]) -> Optional[ChargeRecord]:
        record = self._ledger.find_by_external_id(external_id) if external_id else None
        if record is None and reference:
            logger.info("Cobrança não achada pelo id externo %s, tentando referência %s", external_id, reference)
            record = self._ledger.find_by_external_reference(reference)
        return record

    def _materialize(
        self,
        provider: str,
        reference: str,
        external_id: str,
        provider_status: Optional[str],
    ) -> Optional[ChargeRecord]:
        """Provedor confirmou uma cobrança cuja criação falhou do nosso lado: grava a partir da tentativa."""
        attempt = self._ledger.get_attempt(reference)
        if attempt is None or attempt.provider != provider:
            return None
        logger.warning(
            "Cobrança %s recuperada via webhook (tentativa %s, id externo %s)",
            attempt.charge_id,
            attempt.outcome or "aberta",
            external_id,
        )
        record = record_from_attempt(
            attempt, external_charge_id=external_id, provider_status=(provider_status or "")[:64] or None
        )
        return self._ledger.confirm_attempt(record, AttemptOutcome.RECOVERED)

    @staticmethod
    def _lookup(
        gateway: PaymentGatewayProtocol, external_id: str, retry: bool = True
    ) -> Optional[ProviderStatus]:
        try:
            return gateway.get_charge_status(external_id, retry=retry)
        except GatewayError as e:
            logger.warning(
                "Consulta de status falhou: provider=%s external_id=%s motivo=%s",
                gateway.name,
                external_id,
                e.message,
            )
            return None

    def apply(
        self,
        charge_id: str,
        state: ChargeStatus,
        provider_status: Optional[str] = None,
    ) -> TransitionResult:
        result = self._ledger.transition(charge_id, state, provider_status)
        publish_if_approved(self._publisher, result)
        if self._subscriptions is not None:
            self._subscriptions.on_transition(result)
        return result

    def refresh(self, record: ChargeRecord, retry: bool = True) -> ChargeRecord:
        """
        Consulta o provedor para uma cobrança pendente; falhas mantêm o status atual.
        retry=False (consulta do app) faz uma única chamada, sem backoff.
        """
        if record.status != ChargeStatus.PENDING.value or not record.external_charge_id:
            return record
        gateway = self._registry.get(record.provider)
        if gateway is None:
            return record
        status = self._lookup(gateway, record.external_charge_id, retry=retry)
        if status is None:
            return record
        if status.replacement_external_id and status.replacement_external_id != record.external_charge_id:
            record = self._ledger.reassign_external_id(record.id, status.replacement_external_id)
        if status.state is None:
            return record
        return self.apply(record.id, status.state, status.provider_status).record

    def reconcile_stale(self, older_than: datetime) -> int:
        """Reconsulta pendentes antigas (inclusive cartões sem expiração). Devolve quantas mudaram."""
        changed = 0
        for record in self._ledger.list_stale_pending(older_than):
            updated = self.refresh(record)
            if updated.status != record.status:
                changed += 1
        if changed:
            logger.info("Conciliação de pendentes: %s cobranças atualizadas", changed)
        return changed

    def recover_attempts(self, older_than: datetime, abandon_before: datetime) -> int:
        """
        Tentativas ainda abertas (provedor não respondeu à criação): procura a cobrança
        pela referência e grava o ChargeRecord. Sem rastro no provedor depois de
        `abandon_before`, a tentativa é abandonada. Devolve quantas foram recuperadas.
        """
        recovered = 0
        for attempt in self._ledger.list_open_attempts(older_than):
            if self._ledger.get(attempt.charge_id) is not None:
                self._ledger.close_attempt(attempt.charge_id, AttemptOutcome.CONFIRMED)
                continue
            found: Optional[ProviderStatus] = None
            gateway = self._registry.get(attempt.provider)
            if gateway is not None:
                try:
                    found = gateway.find_charge(attempt.charge_id)
                except GatewayError as e:
                    logger.warning(
                        "Busca por referência falhou: provider=%s charge_id=%s motivo=%s",
                        attempt.provider,
                        attempt.charge_id,
                        e.message,
                    )
                    continue
            if found is None:
                if as_utc(attempt.created_at) <= as_utc(abandon_before):
                    self._ledger.close_attempt(attempt.charge_id, AttemptOutcome.ABANDONED)
                continue
            record = self._ledger.confirm_attempt(
                record_from_attempt(
                    attempt,
                    external_charge_id=found.external_id,
                    provider_status=found.provider_status[:64] or None,
                ),
                AttemptOutcome.RECOVERED,
            )
            recovered += 1
            if found.state is not None:
                self.apply(record.id, found.state, found.provider_status)
        if recovered:
            logger.info("Tentativas recuperadas no provedor: %s", recovered)
        return recovered
