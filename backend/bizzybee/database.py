"""Database engines and sessions.

Relay hops, queue consumers, webhook processing and Alembic run on the sync
engine (psycopg). The read-only pipeline endpoints use the async engine
(asyncpg / aiosqlite). Both are built from the same DATABASE_URL.
"""

from __future__ import annotations

import logging
import ssl
from pathlib import Path
from typing import AsyncGenerator, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from .config import settings

logger = logging.getLogger(__name__)

BACKEND_DIR = Path(__file__).resolve().parents[1]

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


def is_sqlite_url(url: URL) -> bool:
    return url.drivername.startswith("sqlite")


def _with_driver(url: URL, plain: str, driver: str) -> URL:
    """postgresql:// -> postgresql+psycopg:// etc.; explicit drivers are kept."""
    return url.set(drivername=driver) if url.drivername == plain else url


def _postgres_pool() -> dict:
    return {
        "pool_pre_ping": True,
        "pool_size": max(1, settings.db_pool_size),
        "max_overflow": max(0, settings.db_max_overflow),
        "pool_timeout": max(1, settings.db_pool_timeout_s),
        "pool_recycle": max(0, settings.db_pool_recycle_s),
    }


def _async_ssl_context() -> ssl.SSLContext:
    if not settings.database_ssl_ca_file:
        return ssl.create_default_context()
    cafile = Path(settings.database_ssl_ca_file)
    if not cafile.is_absolute():
        cafile = BACKEND_DIR / cafile
    ctx = ssl.create_default_context(cafile=str(cafile))
    # some managed-Postgres CAs lack the key usage extension strict mode demands
    strict_flag = getattr(ssl, "VERIFY_X509_STRICT", None)
    if strict_flag is not None:
        ctx.verify_flags &= ~strict_flag
    return ctx


def build_sync_engine(url: URL) -> Engine:
    if is_sqlite_url(url):
        busy_ms = max(0, settings.sqlite_busy_timeout_ms)
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": busy_ms / 1000.0},
            poolclass=NullPool,
        )

        @event.listens_for(engine, "connect")
        def _apply_pragmas(dbapi_connection, connection_record):
            """Relay workers and the webhook share one file; writers wait instead of failing."""
            cursor = dbapi_connection.cursor()
            try:
                for pragma in SQLITE_PRAGMAS:
                    cursor.execute(pragma)
                cursor.execute(f"PRAGMA busy_timeout={busy_ms};")
            except Exception as e:
                logger.warning(f"Could not apply SQLite pragmas: {e}")
            finally:
                cursor.close()

        return engine

    connect_args = {"prepare_threshold": None} if settings.database_transaction_pooler else {}
    return create_engine(
        _with_driver(url, "postgresql", "postgresql+psycopg"),
        connect_args=connect_args,
        **_postgres_pool(),
    )


def build_async_engine(url: URL) -> AsyncEngine:
    if is_sqlite_url(url):
        return create_async_engine(_with_driver(url, "sqlite", "sqlite+aiosqlite"), pool_pre_ping=True)

    url = _with_driver(url, "postgresql", "postgresql+asyncpg")
    connect_args: dict = {}
    if settings.database_require_ssl or "sslmode" in url.query:
        connect_args["ssl"] = _async_ssl_context()
        # asyncpg takes SSL through connect_args and rejects libpq's sslmode
        url = url.difference_update_query(["sslmode"])
    if settings.database_transaction_pooler:
        connect_args["statement_cache_size"] = 0
    return create_async_engine(url, connect_args=connect_args, **_postgres_pool())


database_url: URL = make_url(settings.database_url)

sync_engine = build_sync_engine(database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)

async_engine = build_async_engine(database_url)
AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)


def init_db():
    """SQLite only: create the tables in place. Postgres is migrated with Alembic."""
    if not is_sqlite_url(database_url):
        return
    from .models import Base
    Base.metadata.create_all(bind=sync_engine)


def dialect_name(db: Session) -> str:
    return db.get_bind().dialect.name


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Async session for the read endpoints."""
    async with AsyncSessionLocal() as session:
        yield session


def get_sync_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
