from __future__ import annotations
from typing import Dict, List, Optional

import redis.asyncio as redis

from ...helpers import now_ts
from ._types import JobState, Q_QUEUED, Q_RUNNING


# ---- keys
def k_job(postcard_id: str) -> str: return f"monitor:job:{postcard_id}"


DUE_INDEX = "monitor:due"  # score = next_run_at
RUNNING_INDEX = "monitor:running"  # score = lease expiry


def _hash_to_job(postcard_id: str, h: Dict[str, str]) -> JobState:
    return JobState(
        postcard_id=postcard_id,
        status=h.get("status", Q_QUEUED),
        attempts=int(h.get("attempts", 0)),
        next_run_at=float(h.get("next_run_at", 0.0)),
        outcome=h.get("outcome") or None,
        last_error=h.get("last_error") or None,
    )


class MonitorQueue:
    """
    Durable postcard-monitor queue in Redis: a hash per job plus a sorted
    set of due times. ZREM decides which worker owns a job.
    """

    def __init__(self, r: redis.Redis, lease_seconds: int) -> None:
        self.r = r
        self.lease = lease_seconds

    async def enqueue(self, postcard_id: str,
                      run_at: Optional[float] = None) -> bool:
        now = now_ts()
        run_at = now if run_at is None else run_at
        created = await self.r.hsetnx(k_job(postcard_id), "status", Q_QUEUED)
        if not created:
            return False
        # mapping values should be strings for decode_responses=True
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_job(postcard_id), mapping={
            "attempts": "0",
            "next_run_at": str(run_at),
            "created_at": str(now),
        })
        pipe.zadd(DUE_INDEX, {postcard_id: run_at})
        await pipe.execute()
        return True

    async def _claim_from(self, index: str, now: float,
                          limit: int) -> List[str]:
        ids = await self.r.zrangebyscore(index, "-inf", now,
                                         start=0, num=limit)
        won = []
        for postcard_id in ids:
            if await self.r.zrem(index, postcard_id) == 1:
                won.append(postcard_id)
        return won

    async def claim_due(self, now: float, limit: int = 50) -> List[JobState]:
        ids = await self._claim_from(DUE_INDEX, now, limit)
        # expired leases: a worker died between claim and complete
        if len(ids) < limit:
            ids += await self._claim_from(RUNNING_INDEX, now, limit - len(ids))

        claimed: List[JobState] = []
        for postcard_id in ids:
            pipe = self.r.pipeline(transaction=True)
            pipe.hset(k_job(postcard_id), "status", Q_RUNNING)
            pipe.zadd(RUNNING_INDEX, {postcard_id: now + self.lease})
            pipe.hgetall(k_job(postcard_id))
            _, _, h = await pipe.execute()
            claimed.append(_hash_to_job(postcard_id, h))
        return claimed

    async def reschedule(self, postcard_id: str, attempts: int,
                         run_at: float, error: Optional[str] = None) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_job(postcard_id), mapping={
            "status": Q_QUEUED,
            "attempts": str(attempts),
            "next_run_at": str(run_at),
            "last_error": error or "",
        })
        pipe.zrem(RUNNING_INDEX, postcard_id)
        pipe.zadd(DUE_INDEX, {postcard_id: run_at})
        await pipe.execute()

    async def complete(self, postcard_id: str, status: str, outcome: str,
                       attempts: int, error: Optional[str] = None) -> None:
        mapping = {
            "status": status,
            "outcome": outcome,
            "attempts": str(attempts),
        }
        if error:
            mapping["last_error"] = error
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_job(postcard_id), mapping=mapping)
        pipe.zrem(RUNNING_INDEX, postcard_id)
        pipe.zrem(DUE_INDEX, postcard_id)
        await pipe.execute()

    async def get(self, postcard_id: str) -> Optional[JobState]:
        h = await self.r.hgetall(k_job(postcard_id))
        return _hash_to_job(postcard_id, h) if h else None
