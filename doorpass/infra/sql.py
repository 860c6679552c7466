"""
Async engine factory shared by the server and the tests.

Every engine comes with a "DB gate": a semaphore sized to the connection pool
so that a burst of requests queues in the app instead of timing out in the
pool. Database work is written as

    async with db.gated():
        async with db.session.begin():
            ...
"""
import os
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, Callable, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

Gated = Callable[[], AsyncContextManager[None]]

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated


_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def normalize_async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _install_sqlite_hooks(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        # SQLAlchemy emits BEGIN itself; needed for SAVEPOINT support
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()

    # Take the write lock up front. A deferred transaction that reads and
    # then writes gets SQLITE_BUSY immediately instead of waiting.
    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _gate_limit(pool_size: Optional[int]) -> int:
    fallback = pool_size if pool_size is not None else 10
    return max(1, int(os.getenv("DB_GATE_LIMIT", fallback)))


def make_async_engine(database_url: str):
    """Returns (engine, SessionAsync, db_gate, gated)."""
    db_url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_hooks(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    db_gate = asyncio.Semaphore(_gate_limit(pool_size))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, db_gate, gated
