"""Eventos de domínio para o sistema de notificações (entrega e formatação não são nossas)."""

import json
import logging
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, Protocol

from tocamais.db.models import ChargePurpose, ChargeStatus

if TYPE_CHECKING:
    from redis import Redis

    from tocamais.payments.ledger import TransitionResult

logger = logging.getLogger(__name__)

EVENTS_QUEUE_KEY = "tocamais:charge_events"


@dataclass(frozen=True)
class ChargeApproved:
    charge_id: str
    beneficiary_ref: str
    net_amount: Decimal
    purpose: str = ChargePurpose.TIP.value

    def to_json(self) -> str:
        data = asdict(self)
        data["type"] = "charge.approved"
        data["net_amount"] = str(self.net_amount)
        return json.dumps(data)


class EventPublisher(Protocol):
    def publish(self, event: ChargeApproved) -> None:
        ...


class LoggingEventPublisher:
    """Publicador padrão sem fila: só registra o evento."""

    def publish(self, event: ChargeApproved) -> None:
        logger.info(
            "Cobrança aprovada: charge_id=%s purpose=%s beneficiary=%s net=%s",
            event.charge_id,
            event.purpose,
            event.beneficiary_ref,
            event.net_amount,
        )


class RedisEventPublisher:
    """Enfileira o evento (LPUSH) para o worker de notificações consumir."""

    def __init__(self, redis: "Redis", queue_key: str = EVENTS_QUEUE_KEY):
        self._redis = redis
        self._queue_key = queue_key

    def publish(self, event: ChargeApproved) -> None:
        try:
            self._redis.lpush(self._queue_key, event.to_json())
        except Exception as e:
            # a transição já foi gravada; a notificação é melhor esforço
            logger.warning("Erro ao publicar evento charge_id=%s: %s", event.charge_id, e)
            return
        logger.info("Evento enfileirado: charge_id=%s", event.charge_id)


def publish_if_approved(publisher: Optional[EventPublisher], result: "TransitionResult") -> None:
    """Emite ChargeApproved só quando esta chamada fez a transição para approved."""
    if publisher is None or not result.changed:
        return
    record = result.record
    if record.status != ChargeStatus.APPROVED.value:
        return
    publisher.publish(
        ChargeApproved(
            charge_id=record.id,
            beneficiary_ref=record.beneficiary_ref,
            net_amount=record.net_amount,
            purpose=record.purpose,
        )
    )
