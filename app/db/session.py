# app/db/session.py
from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.db.models import Base  # важно, чтобы модели были импортированы


def _ensure_sqlite_dir(db_url: str) -> None:
    # sqlite:///./data/automation.db  → ./data
    if db_url.startswith("sqlite"):
        # Отбрасываем префикс sqlite:///
        prefix = "sqlite:///"
        if db_url.startswith(prefix):
            fs_path = db_url[len(prefix):]
            # :memory:: ничего не делаем
            if fs_path in ("", ":memory:"):
                return
            d = Path(fs_path).resolve().parent
            d.mkdir(parents=True, exist_ok=True)


def make_engine(db_url: str) -> Engine:
    """
    Engine под URL. Для SQLite разрешаем работу из разных потоков
    (FastAPI гоняет sync-эндпоинты в пуле), а :memory: держим на одном соединении.
    """
    _ensure_sqlite_dir(db_url)
    if db_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(db_url, future=True, **kwargs)
    return create_engine(db_url, future=True, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
        future=True,
    )


# создаём лениво: URL известен только после settings.load_yaml_config()
_ENGINE: Optional[Engine] = None
_SESSION_FACTORY: Optional[sessionmaker] = None
_LOCK = threading.Lock()


def get_engine() -> Engine:
    global _ENGINE, _SESSION_FACTORY
    with _LOCK:
        if _ENGINE is None:
            _ENGINE = make_engine(settings.db_url)
            _SESSION_FACTORY = make_session_factory(_ENGINE)
        return _ENGINE


def session_factory() -> sessionmaker:
    get_engine()
    assert _SESSION_FACTORY is not None
    return _SESSION_FACTORY


def init_db(engine: Optional[Engine] = None) -> None:
    """Создать таблицы, если их ещё нет."""
    Base.metadata.create_all(bind=engine or get_engine())

