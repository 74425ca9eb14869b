"""SQLAlchemy declarative base, column types, and session management.

Every status-like column goes through ``CanonicalEnum`` so that the rest of
the code only ever sees closed enum members, and every timestamp goes
through ``UTCDateTime`` so that comparisons against ``datetime.now(UTC)``
behave the same on SQLite (which drops tzinfo) and PostgreSQL.
"""

from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import DateTime, String, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

logger = structlog.get_logger(__name__)


class CanonicalEnum(TypeDecorator):
    """Enum stored as upper-case text and normalized in both directions."""

    impl = String(32)
    cache_ok = True

    def __init__(self, enum_cls: type[Enum], *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.enum_cls = enum_cls

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return self.enum_cls.normalize(value).value  # type: ignore[attr-defined]

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.enum_cls.normalize(value)  # type: ignore[attr-defined]


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime, stored as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to ledger; use timezone-aware values")
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Declarative base for all ledger models."""

    type_annotation_map = {
        datetime: UTCDateTime(),
    }


def utcnow() -> datetime:
    return datetime.now(UTC)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for the ledger database.

    In-memory SQLite URLs share one connection so that every session sees
    the same database.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True

    engine = create_engine(database_url, **kwargs)
    logger.info("engine_initialized", dialect=engine.dialect.name, echo=echo)
    return engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_tables(engine: Engine) -> None:
    """Create all ledger tables (idempotent)."""
    # Import models so they register on Base.metadata
    from fieldbill.ledger import models  # noqa: F401

    Base.metadata.create_all(engine)
    logger.info("tables_created", tables=len(Base.metadata.tables))


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Commits on success, rolls back and re-raises on any exception.
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
