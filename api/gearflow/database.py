# gearflow/database.py
"""
Database connection for the Gearflow booking engine.

Uses SQLAlchemy 2.0 async with the asyncpg driver on PostgreSQL. Every
transaction runs SERIALIZABLE there; on SQLite (aiosqlite, used by the
test-suite and local demos) each transaction starts with BEGIN IMMEDIATE,
which serializes writers the same way.
"""
from __future__ import annotations
from typing import Any, AsyncGenerator, Dict, Optional
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import BigInteger, DateTime, Integer, JSON, event, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import URL, make_url
from sqlalchemy.types import TypeDecorator

from gearflow.settings import settings

log = logging.getLogger(__name__)

class Base(DeclarativeBase):
    """Declarative base shared by db_models and db_models_ext."""


# SQLite only autoincrements INTEGER PRIMARY KEY
IdType = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB, "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    PostgreSQL stores ``timestamptz``; SQLite has no timezone support, so
    values are normalized to UTC and stored naive, then re-tagged on load.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ----------------------------------------------------------------------------
# Engine lifecycle
# ----------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_database_url() -> str:
    """DATABASE_URL when set, else an asyncpg URL assembled from DB_*."""
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    return URL.create(
        "postgresql+asyncpg",
        username=settings.DB_USER,
        password=settings.DB_PASSWORD,
        host=settings.DB_HOST,
        port=settings.DB_PORT,
        database=settings.DB_NAME,
    ).render_as_string(hide_password=False)


def _engine_kwargs(url: str) -> Dict[str, Any]:
    backend = make_url(url).get_backend_name()
    kwargs: Dict[str, Any] = {"echo": settings.DB_ECHO}
    if backend == "sqlite":
        kwargs["connect_args"] = {"timeout": 30}
        return kwargs
    kwargs.update(
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
    )
    if backend == "postgresql":
        kwargs["isolation_level"] = "SERIALIZABLE"
    return kwargs


def _install_sqlite_transaction_hooks(engine: AsyncEngine) -> None:
    # pysqlite's implicit BEGIN is disabled; we emit BEGIN IMMEDIATE ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


async def init_db(url: Optional[str] = None) -> None:
    """Create the engine and session factory once; later calls are no-ops."""
    global _engine, _async_session_factory

    if _engine is not None:
        return

    url = url or get_database_url()
    _engine = create_async_engine(url, **_engine_kwargs(url))
    if _engine.dialect.name == "sqlite":
        _install_sqlite_transaction_hooks(_engine)

    _async_session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    log.info("database engine ready (%s)", _engine.dialect.name)


async def close_db() -> None:
    """Dispose the engine (lifespan shutdown, test teardown)."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database is not initialized; call init_db() first")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _async_session_factory is None:
        raise RuntimeError("Database is not initialized; call init_db() first")
    return _async_session_factory


async def create_schema() -> None:
    """Create all tables plus the dialect-specific allocation guards.

    Safe to call repeatedly: ``create_all`` skips existing tables and the
    guard DDL is attached to the table's ``after_create`` event.
    """
    # models register themselves on Base.metadata at import time
    from gearflow import db_models, db_models_ext  # noqa: F401

    if _engine is None:
        await init_db()
    async with _engine.begin() as conn:
        if conn.dialect.name == "postgresql":
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """``async with get_session_context() as db:`` for scripts and health probes."""
    if _async_session_factory is None:
        await init_db()
    async with _async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, rolled back if the handler raises.

    Services open their own ``transaction(db)``; the trailing commit here only
    closes out read-only work done after it.
    """
    async with get_session_context() as session:
        yield session


async def check_db_health() -> Dict[str, Any]:
    try:
        async with get_session_context() as db:
            await db.scalar(text("SELECT 1"))
    except Exception as e:
        log.warning("database health check failed: %s", e)
        return {"status": "unhealthy", "error": str(e)}
    return {"status": "healthy", "dialect": get_engine().dialect.name}


@asynccontextmanager
async def transaction(session: AsyncSession):
    """Commit everything done inside the block, or roll all of it back.

    Concurrency failures surface as the original ``DBAPIError``; callers
    decide whether that means a 409.
    """
    try:
        yield
        await session.commit()
    except Exception:
        await session.rollback()
        raise
