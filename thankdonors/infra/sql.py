import asyncio
from dataclasses import dataclass
from typing import AsyncContextManager, Callable, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)
from contextlib import asynccontextmanager

Gated = Callable[[], AsyncContextManager[None]]


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB gate: bounds concurrent database work per engine
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(database_url: str, *, pool_size: int = 10,
                      max_overflow: int = 10, pool_timeout: int = 30,
                      gate_limit: Optional[int] = None):
    db_url = _normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    is_pg = db_url.startswith("postgresql+asyncpg://")
    if is_pg:
        kw.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # sqlite has no pool; the gate defaults to 10 there, else pool_size
    if gate_limit is None:
        gate_limit = pool_size if is_pg else 10

    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, gated


@asynccontextmanager
async def open_db(SessionAsync: async_sessionmaker, gated: Gated):
    """
    One short-lived session wrapped with the engine's gate, for code that
    runs outside a request (workers, CLI, background sweeps).
    """
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)
