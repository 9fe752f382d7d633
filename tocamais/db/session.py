"""Engine e sessão (SQLite por padrão, Postgres via DATABASE_URL); uso síncrono."""

import os
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from tocamais.db import models  # noqa: F401  (registra as tabelas no metadata)

_engine: Optional[Engine] = None


def get_database_url() -> str:
    url = (os.getenv("DATABASE_URL") or os.getenv("SQLITE_PATH") or "").strip()
    if not url:
        url = "sqlite:///./data/tocamais.db"
    if url.startswith("sqlite:///") and ":memory:" not in url:
        Path(url.replace("sqlite:///", "").split("?")[0]).parent.mkdir(parents=True, exist_ok=True)
    return url


def _build_engine(url: str, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, **kwargs)


def configure_engine(url: Optional[str] = None, **kwargs) -> Engine:
    """Substitui o engine global (testes e entrypoint com URL explícita)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = _build_engine(url or get_database_url(), **kwargs)
    return _engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = _build_engine(get_database_url())
    return _engine


def create_all_tables() -> None:
    SQLModel.metadata.create_all(get_engine())
