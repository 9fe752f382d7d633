"""Serviço de domínio: criação de cobranças (gorjetas e assinaturas) e consulta de status."""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from tocamais.config import Settings
from tocamais.db.models import (
    AttemptOutcome,
    Beneficiary,
    ChargeAttempt,
    ChargePurpose,
    ChargeRecord,
    ChargeStatus,
    ChargeTerms,
    as_utc,
    utcnow,
)
from tocamais.payments.beneficiaries import BeneficiaryDirectory
from tocamais.payments.errors import GatewayRejected, RecordNotFound, ValidationError
from tocamais.payments.events import EventPublisher
from tocamais.payments.fees import FeePolicy, FeeSplit, Tier, compute_split, to_money
from tocamais.payments.gateway.base import CardDetails, ChargeKind, ChargeRequest
from tocamais.payments.gateway.factory import GatewayRegistry
from tocamais.payments.ledger import LedgerStore, record_from_attempt
from tocamais.payments.reconciler import Reconciler

logger = logging.getLogger(__name__)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


@dataclass
class CreateChargeCommand:
    """Pedido do cliente (fã) para pagar um artista."""

    gross_amount: Union[Decimal, str, int, float]
    beneficiary_ref: str
    payment_method: str
    payer_id: Optional[str] = None
    session_token: Optional[str] = None
    idempotency_key: Optional[str] = None
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None
    song_request: Optional[str] = None
    message: Optional[str] = None
    card: Optional[CardDetails] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


@dataclass
class CreateSubscriptionCommand:
    """Artista assina o plano pro (PIX, valor fixo, 100% para a plataforma)."""

    beneficiary_ref: str
    idempotency_key: Optional[str] = None
    payer_email: Optional[str] = None


class ChargeService:
    """Serviço síncrono (usar via asyncio.to_thread a partir da API)."""

    def __init__(
        self,
        ledger: LedgerStore,
        registry: GatewayRegistry,
        beneficiaries: BeneficiaryDirectory,
        settings: Optional[Settings] = None,
        publisher: Optional[EventPublisher] = None,
        reconciler: Optional[Reconciler] = None,
    ):
        self._ledger = ledger
        self._registry = registry
        self._beneficiaries = beneficiaries
        self._settings = settings or Settings()
        self._reconciler = reconciler or Reconciler(ledger, registry, {}, publisher)
        self._fee_policy = FeePolicy(
            free_rate=self._settings.fee_rate_free,
            pro_rate=self._settings.fee_rate_pro,
        )

    def _parse_amount(self, raw) -> Decimal:
        try:
            amount = to_money(raw)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError("Valor inválido", {"gross_amount": str(raw)})
        if not amount.is_finite():
            raise ValidationError("Valor inválido", {"gross_amount": str(raw)})
        low, high = self._settings.min_charge_amount, self._settings.max_charge_amount
        if amount < low or amount > high:
            raise ValidationError(
                f"Valor deve estar entre {low} e {high}",
                {"gross_amount": str(amount)},
            )
        return amount

    @staticmethod
    def _validate_payer(command: CreateChargeCommand) -> None:
        if bool(command.payer_id) == bool(command.session_token):
            raise ValidationError("Identificação necessária: informe payerRef ou sessionToken")
        if command.session_token and not _UUID_RE.match(command.session_token):
            raise ValidationError("sessionToken inválido")

    @staticmethod
    def _validate_card(kind: ChargeKind, card: Optional[CardDetails]) -> None:
        if kind != ChargeKind.CARD:
            return
        if card is None or not card.token or not card.payment_method_id:
            raise ValidationError("Dados obrigatórios do cartão ausentes")
        if not card.payer_email or not card.identification_type or not card.identification_number:
            raise ValidationError("Informações do pagador são obrigatórias")
        if card.installments < 1:
            raise ValidationError("Número de parcelas inválido")

    def _expiry_for(self, kind: ChargeKind):
        now = utcnow()
        if kind == ChargeKind.PIX:
            return now + timedelta(minutes=self._settings.pix_expiration_minutes)
        if kind == ChargeKind.CHECKOUT:
            return now + timedelta(minutes=self._settings.checkout_expiration_minutes)
        return None

    def _active_beneficiary(self, beneficiary_ref: str) -> Beneficiary:
        beneficiary = self._beneficiaries.get_beneficiary(beneficiary_ref)
        if beneficiary is None or not beneficiary.active:
            raise ValidationError("Artista não encontrado", {"beneficiaryRef": beneficiary_ref})
        return beneficiary

    @staticmethod
    def _check_same_terms(
        terms: ChargeTerms,
        kind: ChargeKind,
        amount: Decimal,
        beneficiary_ref: str,
        purpose: ChargePurpose,
    ) -> None:
        if (terms.kind, terms.gross_amount, terms.beneficiary_ref, terms.purpose) != (
            kind.value,
            amount,
            beneficiary_ref,
            purpose.value,
        ):
            raise ValidationError("Chave de idempotência reutilizada com dados diferentes")

    def _replay(
        self,
        idempotency_key: str,
        kind: ChargeKind,
        amount: Decimal,
        beneficiary_ref: str,
        purpose: ChargePurpose,
    ) -> Optional[ChargeRecord]:
        existing = self._ledger.find_by_idempotency_key(idempotency_key)
        if existing is None:
            return None
        self._check_same_terms(existing, kind, amount, beneficiary_ref, purpose)
        logger.info("Repetição idempotente: key=%s charge_id=%s", idempotency_key, existing.id)
        return existing

    def _open_attempt(
        self,
        idempotency_key: str,
        kind: ChargeKind,
        purpose: ChargePurpose,
        beneficiary: Beneficiary,
        split: FeeSplit,
        **terms,
    ) -> ChargeAttempt:
        """
        Tentativa desta chave: a já existente (retomada após timeout ou recusa, com os
        mesmos termos) ou uma nova, gravada antes de qualquer chamada ao provedor.
        """
        attempt = self._ledger.find_attempt(idempotency_key)
        if attempt is None:
            attempt = self._ledger.begin_attempt(
                ChargeAttempt(
                    charge_id=str(uuid.uuid4()),
                    idempotency_key=idempotency_key,
                    provider=self._registry.for_kind(kind).name,
                    kind=kind.value,
                    purpose=purpose.value,
                    gross_amount=split.gross_amount,
                    fee_amount=split.fee_amount,
                    net_amount=split.net_amount,
                    fee_rate=split.fee_rate,
                    tier=beneficiary.tier,
                    beneficiary_ref=beneficiary.id,
                    expires_at=self._expiry_for(kind),
                    **terms,
                )
            )
        else:
            logger.info(
                "Retomando tentativa: key=%s charge_id=%s (%s)",
                idempotency_key,
                attempt.charge_id,
                attempt.outcome or "aberta",
            )
        self._check_same_terms(attempt, kind, split.gross_amount, beneficiary.id, purpose)
        return attempt

    def _submit(self, attempt: ChargeAttempt, request: ChargeRequest) -> ChargeRecord:
        """
        Chama o provedor e grava a cobrança. Recusa fecha a tentativa; indisponibilidade
        (timeout, 5xx) sobe como erro e deixa a tentativa aberta para a conciliação.
        """
        gateway = self._registry.get(attempt.provider) or self._registry.for_kind(request.kind)
        try:
            handle = gateway.create_charge(request)
        except GatewayRejected:
            self._ledger.close_attempt(attempt.charge_id, AttemptOutcome.REJECTED)
            raise

        remote = {
            "provider": handle.provider,
            "external_charge_id": handle.external_id,
            "provider_status": handle.provider_status,
            "pix_payload": handle.pix_payload,
            "qr_code_base64": handle.qr_code_base64,
            "redirect_url": handle.redirect_url,
        }
        if handle.expires_at is not None:
            remote["expires_at"] = handle.expires_at
        saved = self._ledger.confirm_attempt(record_from_attempt(attempt, **remote))
        if handle.state != ChargeStatus.PENDING:
            saved = self._reconciler.apply(saved.id, handle.state, handle.provider_status).record
        return saved

    def create_charge(self, command: CreateChargeCommand) -> ChargeRecord:
        """
        Taxa -> tentativa -> cobrança remota -> registro pendente.
        Mesma chave de idempotência devolve a cobrança já criada, sem nova chamada ao provedor.
        """
        try:
            kind = ChargeKind(command.payment_method)
        except ValueError:
            raise ValidationError("Forma de pagamento inválida", {"paymentMethod": command.payment_method})
        amount = self._parse_amount(command.gross_amount)
        self._validate_payer(command)
        self._validate_card(kind, command.card)

        idempotency_key = (command.idempotency_key or "").strip() or str(uuid.uuid4())
        existing = self._replay(idempotency_key, kind, amount, command.beneficiary_ref, ChargePurpose.TIP)
        if existing is not None:
            return existing

        beneficiary = self._active_beneficiary(command.beneficiary_ref)
        attempt = self._open_attempt(
            idempotency_key,
            kind,
            ChargePurpose.TIP,
            beneficiary,
            compute_split(amount, beneficiary.tier, self._fee_policy),
            payer_id=command.payer_id or None,
            session_token=command.session_token or None,
            payer_name=command.payer_name,
            song_request=command.song_request,
            message=command.message,
        )
        charge_id = attempt.charge_id
        base_url = f"{self._settings.app_url}/artista/{beneficiary.id}"
        request = ChargeRequest(
            kind=kind,
            amount=attempt.gross_amount,
            description=f"Gorjeta para {beneficiary.name}",
            idempotency_key=idempotency_key,
            external_reference=charge_id,
            expires_at=attempt.expires_at,
            payer_email=command.payer_email,
            card=command.card,
            success_url=command.success_url or f"{base_url}?payment=success&gorjeta_id={charge_id}",
            cancel_url=command.cancel_url or f"{base_url}?payment=cancelled",
            metadata={"beneficiary_ref": beneficiary.id, "purpose": ChargePurpose.TIP.value},
        )
        return self._submit(attempt, request)

    def create_subscription(self, command: CreateSubscriptionCommand) -> ChargeRecord:
        """
        Cobrança PIX do plano pro. A plataforma fica com o valor inteiro (taxa = bruto);
        o plano só muda quando a cobrança é aprovada.
        """
        price = to_money(self._settings.subscription_price)
        idempotency_key = (command.idempotency_key or "").strip() or str(uuid.uuid4())
        existing = self._replay(
            idempotency_key, ChargeKind.PIX, price, command.beneficiary_ref, ChargePurpose.SUBSCRIPTION
        )
        if existing is not None:
            return existing

        beneficiary = self._active_beneficiary(command.beneficiary_ref)
        if self._ledger.find_attempt(idempotency_key) is None and self._has_active_pro(beneficiary):
            raise ValidationError("Você já possui uma assinatura ativa", {"beneficiaryRef": beneficiary.id})

        split = FeeSplit(gross_amount=price, fee_amount=price, net_amount=Decimal("0.00"), fee_rate=Decimal(1))
        attempt = self._open_attempt(
            idempotency_key,
            ChargeKind.PIX,
            ChargePurpose.SUBSCRIPTION,
            beneficiary,
            split,
            payer_id=beneficiary.id,
        )
        request = ChargeRequest(
            kind=ChargeKind.PIX,
            amount=price,
            description="Assinatura Pro - Gorjetas 100%",
            idempotency_key=idempotency_key,
            external_reference=attempt.charge_id,
            expires_at=attempt.expires_at,
            payer_email=command.payer_email,
            metadata={"beneficiary_ref": beneficiary.id, "purpose": ChargePurpose.SUBSCRIPTION.value},
        )
        return self._submit(attempt, request)

    @staticmethod
    def _has_active_pro(beneficiary: Beneficiary) -> bool:
        if beneficiary.tier != Tier.PRO.value:
            return False
        return beneficiary.pro_until is None or as_utc(beneficiary.pro_until) > utcnow()

    def get_status(self, charge_id: str, refresh: bool = True) -> ChargeRecord:
        """
        Status atual; se ainda pendente, consulta o provedor uma vez (sem retry),
        já que o app faz polling.
        """
        record = self._ledger.get(charge_id)
        if record is None:
            raise RecordNotFound("Cobrança não encontrada", {"charge_id": charge_id})
        if refresh:
            record = self._reconciler.refresh(record, retry=False)
        return record
