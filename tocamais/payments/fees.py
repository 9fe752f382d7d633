"""Política de taxa da plataforma: divide o valor bruto em taxa e líquido do artista."""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Union

from tocamais.payments.errors import ReconciliationMismatch, ValidationError

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"


@dataclass(frozen=True)
class FeePolicy:
    """Taxas por plano (fração do bruto). Pro não paga taxa por padrão."""

    free_rate: Decimal = Decimal("0.20")
    pro_rate: Decimal = Decimal("0.00")

    def rate_for(self, tier: Union[Tier, str]) -> Decimal:
        try:
            tier = Tier(tier)
        except ValueError:
            raise ValidationError("Plano desconhecido", {"tier": str(tier)})
        return self.pro_rate if tier == Tier.PRO else self.free_rate


@dataclass(frozen=True)
class FeeSplit:
    gross_amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    fee_rate: Decimal

    def check(self) -> None:
        drift = abs(self.fee_amount + self.net_amount - self.gross_amount)
        if drift > CENTS:
            raise ReconciliationMismatch(
                "taxa + líquido diverge do bruto",
                {
                    "gross": str(self.gross_amount),
                    "fee": str(self.fee_amount),
                    "net": str(self.net_amount),
                },
            )


def to_money(value: Union[Decimal, int, float, str]) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_split(
    gross_amount: Union[Decimal, int, float, str],
    tier: Union[Tier, str],
    policy: Optional[FeePolicy] = None,
) -> FeeSplit:
    """
    Calcula taxa e líquido, cada um arredondado a 2 casas (ROUND_HALF_UP).
    Se a soma não fechar com o bruto (±0,01), registra aviso e recalcula o líquido a partir do bruto.
    """
    policy = policy or FeePolicy()
    gross = to_money(gross_amount)
    if gross <= 0:
        raise ValidationError("Valor inválido", {"gross_amount": str(gross_amount)})
    rate = policy.rate_for(tier)
    split = FeeSplit(
        gross_amount=gross,
        fee_amount=to_money(gross * rate),
        net_amount=to_money(gross * (Decimal(1) - rate)),
        fee_rate=rate,
    )
    try:
        split.check()
    except ReconciliationMismatch as e:
        logger.warning("Divergência na divisão de taxa: %s", e.details)
        split = FeeSplit(
            gross_amount=gross,
            fee_amount=split.fee_amount,
            net_amount=gross - split.fee_amount,
            fee_rate=rate,
        )
    return split
