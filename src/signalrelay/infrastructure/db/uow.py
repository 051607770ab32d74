# src/signalrelay/infrastructure/db/uow.py
"""
Database engine, session factory and the Unit of Work context manager.

Every write in the system happens inside a short `session_scope()`; no
session is ever held open across network I/O (Telegram sends, file writes).
"""

import json
import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Callable, ContextManager, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from signalrelay.config import settings
from signalrelay.domain.errors import SignalRelayError

log = logging.getLogger(__name__)

SessionScope = Callable[[], ContextManager[Session]]


def _custom_json_serializer(obj):
    """Decimals inside JSON columns are stored as strings."""
    if isinstance(obj, Decimal):
        return str(obj)
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


def build_engine(url: str) -> Engine:
    kwargs = {
        "pool_pre_ping": True,
        "json_serializer": lambda obj: json.dumps(obj, default=_custom_json_serializer),
    }
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_recycle"] = 3600
        if url.startswith("postgresql"):
            kwargs["connect_args"] = {
                "keepalives": 1,
                "keepalives_idle": 30,
                "keepalives_interval": 10,
                "keepalives_count": 5,
            }
    return create_engine(url, **kwargs)


def build_session_scope(factory: sessionmaker) -> SessionScope:
    """Returns a `session_scope`-style context manager bound to `factory`."""

    @contextmanager
    def _scope() -> Generator[Session, None, None]:
        session = factory()
        log.debug(f"Session {id(session)} opened.")
        try:
            yield session
            session.commit()
            log.debug(f"Session {id(session)} committed.")
        except SignalRelayError as e:
            log.debug(f"Session {id(session)} rollback due to domain error: {e!r}")
            session.rollback()
            raise
        except Exception as e:
            log.error(f"Session {id(session)} rollback due to exception: {e}", exc_info=True)
            session.rollback()
            raise
        finally:
            session.close()

    return _scope


# --- Database Engine & Session Setup ---

try:
    log.info(f"Initializing database engine for URL: ...{settings.DATABASE_URL[-20:]}")
    engine = build_engine(settings.DATABASE_URL)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
except Exception as e:
    log.critical(f"Failed to initialize database engine: {e}", exc_info=True)
    raise

session_scope = build_session_scope(SessionLocal)
