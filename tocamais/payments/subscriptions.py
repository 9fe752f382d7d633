"""
Assinatura do plano pro: uma cobrança PIX (purpose=subscription) cuja aprovação
libera N dias de gorjetas sem taxa para o artista. A plataforma fica com 100%
do valor da assinatura.
"""

import logging
from datetime import datetime, timedelta

from tocamais.db.models import ChargePurpose, ChargeStatus, utcnow
from tocamais.payments.beneficiaries import SqlBeneficiaryDirectory
from tocamais.payments.ledger import TransitionResult

logger = logging.getLogger(__name__)


class SubscriptionActivator:
    """Reage às transições de cobranças de assinatura e vence planos pro pagos."""

    def __init__(self, beneficiaries: SqlBeneficiaryDirectory, days: int = 30):
        self._beneficiaries = beneficiaries
        self._period = timedelta(days=days)

    def on_transition(self, result: TransitionResult) -> None:
        record = result.record
        if not result.changed or record.purpose != ChargePurpose.SUBSCRIPTION.value:
            return
        if record.status == ChargeStatus.APPROVED.value:
            self._beneficiaries.extend_pro(
                record.beneficiary_ref, self._period, record.resolved_at or utcnow()
            )
            return
        logger.info(
            "Assinatura cancelada: charge_id=%s beneficiary=%s status=%s",
            record.id,
            record.beneficiary_ref,
            record.status,
        )

    def expire_lapsed(self, now: datetime) -> int:
        return self._beneficiaries.expire_pro(now)
