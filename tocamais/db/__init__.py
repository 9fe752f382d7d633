"""Camada de persistência (SQLModel)."""

from tocamais.db.models import (
    AttemptOutcome,
    Beneficiary,
    ChargeAttempt,
    ChargePurpose,
    ChargeRecord,
    ChargeStatus,
    TERMINAL_STATUSES,
    as_utc,
    utcnow,
)
from tocamais.db.session import configure_engine, create_all_tables, get_engine

__all__ = [
    "AttemptOutcome",
    "Beneficiary",
    "ChargeAttempt",
    "ChargePurpose",
    "ChargeRecord",
    "ChargeStatus",
    "TERMINAL_STATUSES",
    "as_utc",
    "configure_engine",
    "create_all_tables",
    "get_engine",
    "utcnow",
]
