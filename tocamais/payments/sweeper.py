"""
Job periódico: recupera tentativas sem resposta do provedor, expira pendentes vencidas,
reconsulta pendentes antigas, vence planos pro pagos e arquiva o ledger.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from tocamais.db.models import ChargeStatus, as_utc, utcnow
from tocamais.payments.ledger import LedgerStore

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from tocamais.payments.reconciler import Reconciler
    from tocamais.payments.subscriptions import SubscriptionActivator

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "tocamais:sweeper_lock"


@dataclass
class MaintenanceReport:
    recovered: int = 0
    expired: int = 0
    reconciled: int = 0
    archived: int = 0
    purged: int = 0
    downgraded: int = 0


class ExpirySweeper:
    def __init__(
        self,
        ledger: LedgerStore,
        reconciler: Optional["Reconciler"] = None,
        subscriptions: Optional["SubscriptionActivator"] = None,
        stale_after_minutes: int = 15,
        recover_after_minutes: int = 2,
        abandon_after_minutes: int = 60,
        archive_after_days: int = 30,
        purge_after_days: int = 90,
    ):
        self._ledger = ledger
        self._reconciler = reconciler
        self._subscriptions = subscriptions
        self._stale_after = timedelta(minutes=stale_after_minutes)
        self._recover_after = timedelta(minutes=recover_after_minutes)
        self._abandon_after = timedelta(minutes=abandon_after_minutes)
        self._archive_after = timedelta(days=archive_after_days)
        self._purge_after = timedelta(days=purge_after_days)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Marca como expired toda pendente com expires_at <= now. Sem expires_at nunca expira aqui."""
        now = as_utc(now) if now else utcnow()
        expired = 0
        for record in self._ledger.list_expired_pending(now):
            result = self._ledger.transition(record.id, ChargeStatus.EXPIRED, "expired")
            if self._subscriptions is not None:
                self._subscriptions.on_transition(result)
            if result.changed:
                expired += 1
        if expired:
            logger.info("Sweeper: %s cobranças expiradas", expired)
        return expired

    def run_maintenance(self, now: Optional[datetime] = None) -> MaintenanceReport:
        now = as_utc(now) if now else utcnow()
        report = MaintenanceReport()
        if self._reconciler is not None:
            report.recovered = self._reconciler.recover_attempts(
                now - self._recover_after, now - self._abandon_after
            )
        report.expired = self.sweep(now)
        if self._reconciler is not None:
            report.reconciled = self._reconciler.reconcile_stale(now - self._stale_after)
        if self._subscriptions is not None:
            report.downgraded = self._subscriptions.expire_lapsed(now)
        report.archived = self._ledger.archive_terminal(now - self._archive_after)
        report.purged = self._ledger.purge_archived(now - self._purge_after)
        return report


async def _acquire_lock(redis: Optional["Redis"], ttl_seconds: int) -> bool:
    """Com Redis, só uma réplica roda o tick (SET NX EX); sem Redis, sempre roda."""
    if redis is None:
        return True
    try:
        return bool(await redis.set(SWEEP_LOCK_KEY, "1", nx=True, ex=max(1, ttl_seconds)))
    except Exception as e:
        logger.warning("Erro ao obter lock do sweeper, pulando tick: %s", e)
        return False


async def run_periodically(
    sweeper: ExpirySweeper,
    interval_seconds: float,
    stop_event: asyncio.Event,
    redis: Optional["Redis"] = None,
) -> None:
    """Loop do sweeper: um tick por intervalo, cada tick em thread (o ledger é síncrono)."""
    while not stop_event.is_set():
        try:
            if await _acquire_lock(redis, int(interval_seconds)):
                report = await asyncio.to_thread(sweeper.run_maintenance)
                logger.debug("Manutenção do ledger: %s", report)
        except asyncio.CancelledError:
            logger.info("Sweeper cancelado")
            break
        except Exception as e:
            logger.exception("Erro no sweeper: %s", e)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
