"""
Ledger de cobranças: criação (pending), transição idempotente de status,
consultas por id interno / id externo / referência externa e arquivamento.

Toda mutação de status passa por `transition`, um UPDATE condicional
(`WHERE status = 'pending'`): duas entregas concorrentes do mesmo webhook,
ou um webhook correndo contra o sweeper, resultam em exatamente uma transição.

Antes de chamar o provedor o serviço grava uma ChargeAttempt; a cobrança só
vira ChargeRecord quando o provedor confirma (na resposta, num webhook ou na
busca pela referência feita pela manutenção).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from sqlalchemy import delete, func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from tocamais.db.models import (
    AttemptOutcome,
    ChargeAttempt,
    ChargeRecord,
    ChargeStatus,
    ChargeTerms,
    TERMINAL_STATUSES,
    as_utc,
    utcnow,
)
from tocamais.db.session import get_engine
from tocamais.payments.errors import RecordNotFound, ValidationError
from tocamais.payments.fees import CENTS

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


@dataclass
class TransitionResult:
    record: ChargeRecord
    changed: bool


def record_from_attempt(attempt: ChargeAttempt, **remote: Any) -> ChargeRecord:
    """ChargeRecord pendente com os termos da tentativa e os dados devolvidos pelo provedor."""
    fields = attempt.model_dump(include=set(ChargeTerms.model_fields))
    fields.update(
        id=attempt.charge_id,
        external_reference=attempt.charge_id,
        idempotency_key=attempt.idempotency_key,
        provider=attempt.provider,
        expires_at=attempt.expires_at,
    )
    fields.update(remote)
    return ChargeRecord(**fields)


class LedgerStore:
    """Único dono do ciclo de vida de ChargeRecord e ChargeAttempt."""

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine or get_engine(), expire_on_commit=False)

    @staticmethod
    def _validate_terms(terms: ChargeTerms, charge_id: str) -> None:
        if terms.gross_amount is None or terms.gross_amount <= 0:
            raise ValidationError("Valor bruto deve ser positivo")
        if abs(terms.fee_amount + terms.net_amount - terms.gross_amount) > CENTS:
            raise ValidationError(
                "Taxa + líquido não fecha com o bruto",
                {"charge_id": charge_id},
            )
        if bool(terms.payer_id) == bool(terms.session_token):
            raise ValidationError("Informe exatamente um pagador (usuário ou sessão)")

    @classmethod
    def _validate_new(cls, record: ChargeRecord) -> None:
        cls._validate_terms(record, record.id)
        if record.status != ChargeStatus.PENDING.value:
            raise ValidationError("Cobrança deve nascer pendente")

    def create(self, record: ChargeRecord) -> ChargeRecord:
        """Persiste uma cobrança pendente. Chave de idempotência repetida devolve a existente."""
        self._validate_new(record)
        with self._session() as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self.find_by_idempotency_key(record.idempotency_key)
                if existing is None:
                    raise
                logger.info(
                    "Cobrança já existente para idempotency_key=%s charge_id=%s",
                    record.idempotency_key,
                    existing.id,
                )
                return existing
            session.refresh(record)
        logger.info(
            "Cobrança criada: charge_id=%s provider=%s external_id=%s gross=%s",
            record.id,
            record.provider,
            record.external_charge_id,
            record.gross_amount,
        )
        return record

    def get(self, charge_id: str) -> Optional[ChargeRecord]:
        with self._session() as session:
            return session.get(ChargeRecord, charge_id)

    def _first(self, *criteria) -> Optional[ChargeRecord]:
        with self._session() as session:
            return session.exec(select(ChargeRecord).where(*criteria)).first()

    def find_by_external_id(self, external_id: str) -> Optional[ChargeRecord]:
        if not external_id:
            return None
        return self._first(ChargeRecord.external_charge_id == str(external_id))

    def find_by_external_reference(self, reference: str) -> Optional[ChargeRecord]:
        if not reference:
            return None
        return self._first(ChargeRecord.external_reference == str(reference))

    def find_by_idempotency_key(self, key: str) -> Optional[ChargeRecord]:
        if not key:
            return None
        return self._first(ChargeRecord.idempotency_key == key)

    def begin_attempt(self, attempt: ChargeAttempt) -> ChargeAttempt:
        """Grava a tentativa antes da chamada ao provedor. Chave repetida devolve a tentativa existente."""
        self._validate_terms(attempt, attempt.charge_id)
        with self._session() as session:
            session.add(attempt)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self.find_attempt(attempt.idempotency_key)
                if existing is None:
                    raise
                return existing
            session.refresh(attempt)
        logger.info(
            "Tentativa de cobrança registrada: charge_id=%s provider=%s key=%s",
            attempt.charge_id,
            attempt.provider,
            attempt.idempotency_key,
        )
        return attempt

    def find_attempt(self, idempotency_key: str) -> Optional[ChargeAttempt]:
        if not idempotency_key:
            return None
        with self._session() as session:
            return session.exec(
                select(ChargeAttempt).where(ChargeAttempt.idempotency_key == idempotency_key)
            ).first()

    def get_attempt(self, charge_id: str) -> Optional[ChargeAttempt]:
        if not charge_id:
            return None
        with self._session() as session:
            return session.get(ChargeAttempt, charge_id)

    def close_attempt(self, charge_id: str, outcome: Union[AttemptOutcome, str]) -> bool:
        """Fecha a tentativa uma única vez; devolve False se já estava fechada."""
        outcome = AttemptOutcome(outcome)
        with self._session() as session:
            result = session.execute(
                update(ChargeAttempt)
                .where(ChargeAttempt.charge_id == charge_id, ChargeAttempt.resolved_at.is_(None))
                .values(resolved_at=utcnow(), outcome=outcome.value)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        closed = result.rowcount == 1
        if closed:
            logger.info("Tentativa %s fechada: %s", charge_id, outcome.value)
        return closed

    def list_open_attempts(self, older_than: datetime, limit: int = 100) -> list[ChargeAttempt]:
        older_than = as_utc(older_than)
        with self._session() as session:
            return list(
                session.exec(
                    select(ChargeAttempt)
                    .where(ChargeAttempt.resolved_at.is_(None), ChargeAttempt.created_at <= older_than)
                    .order_by(ChargeAttempt.created_at)
                    .limit(limit)
                )
            )

    def confirm_attempt(
        self,
        record: ChargeRecord,
        outcome: Union[AttemptOutcome, str] = AttemptOutcome.CONFIRMED,
    ) -> ChargeRecord:
        """
        Grava a cobrança e fecha a tentativa de mesmo id na mesma transação.
        Se outro caminho (webhook, manutenção) já materializou a cobrança, devolve a existente.
        """
        outcome = AttemptOutcome(outcome)
        self._validate_new(record)
        with self._session() as session:
            try:
                session.add(record)
                session.execute(
                    update(ChargeAttempt)
                    .where(ChargeAttempt.charge_id == record.id)
                    .values(resolved_at=utcnow(), outcome=outcome.value)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self.get(record.id)
                if existing is None:
                    raise
                self.close_attempt(record.id, outcome)
                logger.info("Cobrança %s já materializada por outro caminho", record.id)
                return existing
            session.refresh(record)
        logger.info(
            "Cobrança confirmada: charge_id=%s provider=%s external_id=%s gross=%s (%s)",
            record.id,
            record.provider,
            record.external_charge_id,
            record.gross_amount,
            outcome.value,
        )
        return record

    def transition(
        self,
        charge_id: str,
        new_status: Union[ChargeStatus, str],
        provider_status: Optional[str] = None,
    ) -> TransitionResult:
        """
        pending -> approved/rejected/expired, uma única vez.
        Qualquer outra transição é no-op e devolve o registro atual (changed=False).
        """
        new_status = ChargeStatus(new_status)
        changed = False
        with self._session() as session:
            if new_status.is_terminal:
                values = {"status": new_status.value, "resolved_at": utcnow()}
                if provider_status:
                    values["provider_status"] = provider_status[:64]
                result = session.execute(
                    update(ChargeRecord)
                    .where(
                        ChargeRecord.id == charge_id,
                        ChargeRecord.status == ChargeStatus.PENDING.value,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                changed = result.rowcount == 1
            record = session.get(ChargeRecord, charge_id)
        if record is None:
            raise RecordNotFound("Cobrança não encontrada", {"charge_id": charge_id})
        if changed:
            logger.info("Cobrança %s: pending -> %s", charge_id, new_status.value)
        elif record.status != new_status.value:
            logger.info(
                "Transição ignorada: charge_id=%s atual=%s pedido=%s",
                charge_id,
                record.status,
                new_status.value,
            )
        return TransitionResult(record=record, changed=changed)

    def reassign_external_id(self, charge_id: str, new_external_id: str) -> ChargeRecord:
        """
        Troca o id externo uma única vez (ex.: sessão de checkout -> payment intent).
        Repetir o mesmo valor é no-op; uma segunda troca diferente é ignorada.
        """
        with self._session() as session:
            try:
                result = session.execute(
                    update(ChargeRecord)
                    .where(
                        ChargeRecord.id == charge_id,
                        ChargeRecord.external_charge_id_replaced_at.is_(None),
                        func.coalesce(ChargeRecord.external_charge_id, "") != new_external_id,
                    )
                    .values(
                        external_charge_id=new_external_id,
                        external_charge_id_replaced_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.error(
                    "Id externo %s já pertence a outra cobrança (charge_id=%s)",
                    new_external_id,
                    charge_id,
                )
                result = None
            record = session.get(ChargeRecord, charge_id)
        if record is None:
            raise RecordNotFound("Cobrança não encontrada", {"charge_id": charge_id})
        if result is not None and result.rowcount == 1:
            logger.info("Id externo atualizado: charge_id=%s external_id=%s", charge_id, new_external_id)
        return record

    def list_expired_pending(self, now: datetime) -> list[ChargeRecord]:
        now = as_utc(now)
        with self._session() as session:
            return list(
                session.exec(
                    select(ChargeRecord).where(
                        ChargeRecord.status == ChargeStatus.PENDING.value,
                        ChargeRecord.expires_at.is_not(None),
                        ChargeRecord.expires_at <= now,
                    )
                )
            )

    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> list[ChargeRecord]:
        """Pendentes com id externo criados antes de `older_than` (candidatas a nova consulta no provedor)."""
        older_than = as_utc(older_than)
        with self._session() as session:
            return list(
                session.exec(
                    select(ChargeRecord)
                    .where(
                        ChargeRecord.status == ChargeStatus.PENDING.value,
                        ChargeRecord.external_charge_id.is_not(None),
                        ChargeRecord.created_at <= older_than,
                    )
                    .order_by(ChargeRecord.created_at)
                    .limit(limit)
                )
            )

    def archive_terminal(self, older_than: datetime) -> int:
        """Marca archived_at em cobranças finalizadas antes de `older_than`."""
        older_than = as_utc(older_than)
        with self._session() as session:
            result = session.execute(
                update(ChargeRecord)
                .where(
                    ChargeRecord.status.in_(_TERMINAL_VALUES),
                    ChargeRecord.archived_at.is_(None),
                    func.coalesce(ChargeRecord.resolved_at, ChargeRecord.created_at) <= older_than,
                )
                .values(archived_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount or 0

    def purge_archived(self, older_than: datetime) -> int:
        """Apaga cobranças arquivadas antes de `older_than`. Pendentes nunca são apagadas."""
        older_than = as_utc(older_than)
        with self._session() as session:
            result = session.execute(
                delete(ChargeRecord)
                .where(
                    ChargeRecord.archived_at.is_not(None),
                    ChargeRecord.archived_at <= older_than,
                    ChargeRecord.status.in_(_TERMINAL_VALUES),
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            deleted = result.rowcount or 0
        if deleted:
            logger.info("Cobranças arquivadas removidas: %s (antes de %s)", deleted, older_than.isoformat())
        return deleted
