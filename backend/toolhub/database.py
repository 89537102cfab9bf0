"""Async SQLAlchemy engine, session factory, and declarative base."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from toolhub.config import settings

engine = create_async_engine(
    settings.async_database_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=10,
    max_overflow=20,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now(),
    )


class UUIDPrimaryKeyMixin:
    """Mixin that adds a UUID primary key column."""

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)


class SoftDeleteMixin:
    """Mixin that adds a nullable deleted_at column for soft deletes."""

    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True, default=None)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def insert_for(db: AsyncSession, model):
    """Return a dialect-specific INSERT supporting ``on_conflict_do_*``.

    Natural-key upserts (webhook ledger, subscriptions, entitlements) are
    issued as a single ``INSERT ... ON CONFLICT`` statement. PostgreSQL is the
    production dialect; SQLite backs the test suite.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect!r}")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory (overridable in tests)."""
    return async_session_factory

