from __future__ import annotations
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker

from ...helpers import now_ts
from ...infra.sql import Gated
from ._types import JobState, Q_QUEUED, Q_RUNNING

# a job is claimable when it is due, or when a worker claimed it and its
# lease ran out without reschedule/complete
_CLAIMABLE = """
    ((status = 'queued' AND next_run_at <= :now)
     OR (status = 'running' AND claimed_at < :stale))
"""


def _row_to_job(row) -> JobState:
    return JobState(
        postcard_id=row["postcard_id"],
        status=row["status"],
        attempts=int(row["attempts"]),
        next_run_at=float(row["next_run_at"]),
        outcome=row["outcome"],
        last_error=row["last_error"],
    )


class MonitorQueue:
    """
    Durable postcard-monitor queue in the `monitor_jobs` table. Each
    operation runs in its own short transaction.
    """

    def __init__(
        self, *, session_factory: async_sessionmaker, gated: Gated,
        lease_seconds: int,
    ) -> None:
        self.session_factory = session_factory
        self.gated = gated
        self.lease = lease_seconds

    async def enqueue(self, postcard_id: str,
                      run_at: Optional[float] = None) -> bool:
        now = now_ts()
        async with self.session_factory() as session:
            async with self.gated():
                async with session.begin():
                    res = await session.execute(text("""
                      INSERT INTO monitor_jobs(
                        postcard_id, status, attempts, next_run_at,
                        created_at, updated_at
                      ) VALUES (:id, :status, 0, :run_at, :now, :now)
                      ON CONFLICT (postcard_id) DO NOTHING
                    """), {
                        "id": postcard_id, "status": Q_QUEUED,
                        "run_at": now if run_at is None else run_at,
                        "now": now,
                    })
        return res.rowcount == 1

    async def claim_due(self, now: float, limit: int = 50) -> List[JobState]:
        params = {"now": now, "stale": now - self.lease}
        claimed: List[JobState] = []
        async with self.session_factory() as session:
            async with self.gated():
                async with session.begin():
                    ids = (await session.execute(text(f"""
                      SELECT postcard_id FROM monitor_jobs
                      WHERE {_CLAIMABLE}
                      ORDER BY next_run_at
                      LIMIT :lim
                    """), {**params, "lim": int(limit)})).scalars().all()

                for postcard_id in ids:
                    # compare-and-set claim; another worker may win
                    async with session.begin():
                        res = await session.execute(text(f"""
                          UPDATE monitor_jobs
                          SET status = :running, claimed_at = :now,
                              updated_at = :now
                          WHERE postcard_id = :id AND {_CLAIMABLE}
                        """), {**params, "id": postcard_id,
                               "running": Q_RUNNING})
                        if res.rowcount != 1:
                            continue
                        row = (await session.execute(text("""
                          SELECT * FROM monitor_jobs WHERE postcard_id=:id
                        """), {"id": postcard_id})).mappings().first()
                        claimed.append(_row_to_job(row))
        return claimed

    async def reschedule(self, postcard_id: str, attempts: int,
                         run_at: float, error: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            async with self.gated():
                async with session.begin():
                    await session.execute(text("""
                      UPDATE monitor_jobs
                      SET status = :queued, attempts = :attempts,
                          next_run_at = :run_at, claimed_at = NULL,
                          last_error = :err, updated_at = :now
                      WHERE postcard_id = :id
                    """), {
                        "queued": Q_QUEUED, "attempts": attempts,
                        "run_at": run_at, "err": error, "now": now_ts(),
                        "id": postcard_id,
                    })

    async def complete(self, postcard_id: str, status: str, outcome: str,
                       attempts: int, error: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            async with self.gated():
                async with session.begin():
                    await session.execute(text("""
                      UPDATE monitor_jobs
                      SET status = :status, outcome = :outcome,
                          attempts = :attempts, claimed_at = NULL,
                          last_error = COALESCE(:err, last_error),
                          updated_at = :now
                      WHERE postcard_id = :id
                    """), {
                        "status": status, "outcome": outcome,
                        "attempts": attempts, "err": error, "now": now_ts(),
                        "id": postcard_id,
                    })

    async def get(self, postcard_id: str) -> Optional[JobState]:
        async with self.session_factory() as session:
            async with self.gated():
                async with session.begin():
                    row = (await session.execute(text("""
                      SELECT * FROM monitor_jobs WHERE postcard_id=:id
                    """), {"id": postcard_id})).mappings().first()
        return _row_to_job(row) if row else None
