"""Diretório de beneficiários (artistas): o perfil é de outro sistema; aqui lemos ativo + plano e mantemos o prazo do pro."""

import logging
from datetime import datetime, timedelta
from typing import Optional, Protocol

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session

from tocamais.db.models import Beneficiary, as_utc, utcnow
from tocamais.db.session import get_engine
from tocamais.payments.fees import Tier

logger = logging.getLogger(__name__)


class BeneficiaryDirectory(Protocol):
    def get_beneficiary(self, beneficiary_id: str) -> Optional[Beneficiary]:
        ...


class SqlBeneficiaryDirectory:
    """Lê a tabela `beneficiary`, mantida em sincronia com o cadastro de perfis."""

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine or get_engine(), expire_on_commit=False)

    def get_beneficiary(self, beneficiary_id: str) -> Optional[Beneficiary]:
        if not beneficiary_id:
            return None
        with self._session() as session:
            return session.get(Beneficiary, beneficiary_id)

    def upsert(
        self,
        beneficiary_id: str,
        name: str,
        tier: str = Tier.FREE.value,
        active: bool = True,
        city: str = "",
        pro_until: Optional[datetime] = None,
    ) -> Beneficiary:
        with self._session() as session:
            beneficiary = session.get(Beneficiary, beneficiary_id)
            if beneficiary is None:
                beneficiary = Beneficiary(id=beneficiary_id, name=name)
            beneficiary.name = name
            beneficiary.tier = tier
            beneficiary.active = active
            beneficiary.city = city
            beneficiary.pro_until = pro_until
            beneficiary.updated_at = utcnow()
            session.add(beneficiary)
            session.commit()
            session.refresh(beneficiary)
            return beneficiary

    def extend_pro(self, beneficiary_id: str, period: timedelta, start: datetime) -> Optional[Beneficiary]:
        """
        Plano pro até max(start, prazo atual) + period. Pro manual (sem prazo) fica como está.
        Devolve None se o beneficiário não existe.
        """
        start = as_utc(start)
        with self._session() as session:
            beneficiary = session.get(Beneficiary, beneficiary_id, with_for_update=True)
            if beneficiary is None:
                logger.error("Assinatura aprovada para beneficiário inexistente: %s", beneficiary_id)
                return None
            if beneficiary.tier == Tier.PRO.value and beneficiary.pro_until is None:
                logger.info("Beneficiário %s já é pro sem prazo; assinatura não altera o plano", beneficiary_id)
                return beneficiary
            if beneficiary.tier == Tier.PRO.value:
                start = max(start, as_utc(beneficiary.pro_until))
            beneficiary.tier = Tier.PRO.value
            beneficiary.pro_until = start + period
            beneficiary.updated_at = utcnow()
            session.add(beneficiary)
            session.commit()
            session.refresh(beneficiary)
        logger.info("Plano pro ativo: beneficiary=%s até %s", beneficiary_id, beneficiary.pro_until.isoformat())
        return beneficiary

    def expire_pro(self, now: datetime) -> int:
        """Volta para free quem tem pro pago vencido (pro_until <= now). Devolve quantos mudaram."""
        with self._session() as session:
            result = session.execute(
                update(Beneficiary)
                .where(
                    Beneficiary.tier == Tier.PRO.value,
                    Beneficiary.pro_until.is_not(None),
                    Beneficiary.pro_until <= as_utc(now),
                )
                .values(tier=Tier.FREE.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            downgraded = result.rowcount or 0
        if downgraded:
            logger.info("Planos pro vencidos: %s beneficiários voltaram para free", downgraded)
        return downgraded
