"""Modelos SQLModel: cobranças (gorjetas/assinaturas), tentativas em aberto e leitura dos beneficiários."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Agora em UTC, com tzinfo (o SQLModel grava em UTC e devolve aware)."""
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Datetime sem fuso é tratado como UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class ChargeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self != ChargeStatus.PENDING


TERMINAL_STATUSES = frozenset(
    {ChargeStatus.APPROVED, ChargeStatus.REJECTED, ChargeStatus.EXPIRED}
)


class ChargePurpose(str, Enum):
    TIP = "tip"
    SUBSCRIPTION = "subscription"


class AttemptOutcome(str, Enum):
    CONFIRMED = "confirmed"  # provedor respondeu, cobrança gravada
    RECOVERED = "recovered"  # achada depois no provedor pela referência
    REJECTED = "rejected"  # provedor recusou, nada foi criado
    ABANDONED = "abandoned"  # nunca apareceu no provedor


class ChargeTerms(SQLModel):
    """Termos congelados da cobrança: valores, plano e partes envolvidas."""

    kind: str = Field(max_length=16)  # pix, card, checkout
    purpose: str = Field(default=ChargePurpose.TIP.value, max_length=16)

    gross_amount: Decimal = Field(max_digits=12, decimal_places=2)
    fee_amount: Decimal = Field(max_digits=12, decimal_places=2)
    net_amount: Decimal = Field(max_digits=12, decimal_places=2)
    fee_rate: Decimal = Field(max_digits=5, decimal_places=4)
    tier: str = Field(max_length=16)

    payer_id: Optional[str] = Field(default=None, index=True, max_length=64)
    session_token: Optional[str] = Field(default=None, index=True, max_length=64)
    payer_name: Optional[str] = Field(default=None, max_length=128)
    beneficiary_ref: str = Field(index=True, max_length=64)
    song_request: Optional[str] = Field(default=None, max_length=256)
    message: Optional[str] = Field(default=None, max_length=512)


class ChargeRecord(ChargeTerms, table=True):
    """Cobrança no ledger. Taxa e líquido são congelados na criação."""

    __tablename__ = "charge"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36
    )
    provider: str = Field(max_length=32)
    external_charge_id: Optional[str] = Field(
        default=None, unique=True, index=True, max_length=256
    )
    external_charge_id_replaced_at: Optional[datetime] = Field(default=None)
    external_reference: str = Field(unique=True, index=True, max_length=64)
    idempotency_key: str = Field(unique=True, index=True, max_length=128)

    status: str = Field(default=ChargeStatus.PENDING.value, index=True, max_length=16)
    provider_status: Optional[str] = Field(default=None, max_length=64)
    pix_payload: Optional[str] = Field(default=None, max_length=512)
    qr_code_base64: Optional[str] = Field(default=None)
    redirect_url: Optional[str] = Field(default=None, max_length=2048)

    created_at: datetime = Field(default_factory=utcnow, index=True)
    expires_at: Optional[datetime] = Field(default=None, index=True)
    resolved_at: Optional[datetime] = Field(default=None)
    archived_at: Optional[datetime] = Field(default=None, index=True)

    @property
    def charge_status(self) -> ChargeStatus:
        return ChargeStatus(self.status)

    @property
    def payer_ref(self) -> str:
        return self.payer_id or self.session_token or ""


class ChargeAttempt(ChargeTerms, table=True):
    """
    Chamada ao provedor ainda sem resposta confirmada.
    Gravada antes da chamada; se o provedor não responde (timeout), a conciliação
    procura a cobrança remota pela referência e materializa o ChargeRecord.
    """

    __tablename__ = "charge_attempt"

    charge_id: str = Field(primary_key=True, max_length=36)
    idempotency_key: str = Field(unique=True, index=True, max_length=128)
    provider: str = Field(max_length=32)
    expires_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    resolved_at: Optional[datetime] = Field(default=None, index=True)
    outcome: Optional[str] = Field(default=None, max_length=16)

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


class Beneficiary(SQLModel, table=True):
    """Espelho local do perfil do artista (ativo + plano) usado para validar e precificar."""

    __tablename__ = "beneficiary"

    id: str = Field(primary_key=True, max_length=64)
    name: str = Field(max_length=128)
    city: str = Field(default="", max_length=64)
    active: bool = Field(default=True)
    tier: str = Field(default="free", max_length=16)
    # fim do plano pro pago; None com tier pro = concedido manualmente, sem prazo
    pro_until: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=utcnow)
