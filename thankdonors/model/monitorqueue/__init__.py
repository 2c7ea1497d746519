from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import async_sessionmaker

from ...infra.sql import Gated
from ._types import JobState, Q_DONE, Q_EXHAUSTED, Q_QUEUED, Q_RUNNING
from ._postgres import MonitorQueue as PgMonitorQueue
from ._redis import MonitorQueue as RedisMonitorQueue

LEASE_SECONDS = 300


# Factory keeps the app wiring constructor-agnostic:
def new_queue(backend: str, *,
              session_factory: Optional[async_sessionmaker] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None,
              lease_seconds: int = LEASE_SECONDS):
    if backend == "pg":
        if session_factory is None or gated is None:
            raise RuntimeError(
                "MonitorQueue(pg) requires session_factory and gated"
            )
        return PgMonitorQueue(session_factory=session_factory, gated=gated,
                              lease_seconds=lease_seconds)
    if backend == "redis":
        if r is None:
            raise RuntimeError("MonitorQueue(redis) requires r=redis.Redis")
        return RedisMonitorQueue(r=r, lease_seconds=lease_seconds)
    raise RuntimeError(f"unknown monitor queue backend: {backend!r}")


MonitorQueue = PgMonitorQueue | RedisMonitorQueue

__all__ = [
    "JobState", "MonitorQueue", "PgMonitorQueue", "RedisMonitorQueue",
    "new_queue", "LEASE_SECONDS",
    "Q_QUEUED", "Q_RUNNING", "Q_DONE", "Q_EXHAUSTED",
]
