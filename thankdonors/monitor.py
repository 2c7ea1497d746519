"""
Postcard status monitor.

Each created postcard gets a durable job in the monitor queue. A worker
claims due jobs, polls the postcard once per claim, bills it when
production has started and reschedules it otherwise. A job that never
reaches production ends `exhausted` after `RetryPolicy.max_attempts` polls.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker

from .billing import MSG_ALREADY_BILLED, bill_postcard
from .helpers import now_ts
from .infra.sql import Gated, GatedAsyncSession, open_db
from .model.db import BILLABLE_STATUSES
from .model.monitorqueue import Q_DONE, Q_EXHAUSTED
from .payments import PaymentGateway

logger = logging.getLogger(__name__)

OUTCOME_BILLED = "billed"
OUTCOME_ALREADY_BILLED = "already_billed"
OUTCOME_EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 20
    delay: float = 30.0
    backoff: float = 1.0
    max_delay: float = 600.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.monitor_max_attempts,
            delay=settings.monitor_delay_seconds,
            backoff=settings.monitor_backoff,
            max_delay=settings.monitor_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Wait after the `attempt`-th poll (1-based)."""
        n = max(0, int(attempt) - 1)
        return min(self.max_delay, self.delay * (self.backoff ** n))

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    @staticmethod
    def is_settled(postcard: Mapping[str, Any]) -> bool:
        return bool(postcard["usage_billed"])

    @staticmethod
    def should_bill(postcard: Mapping[str, Any]) -> bool:
        return (not postcard["usage_billed"]
                and postcard["status"] in BILLABLE_STATUSES)


@dataclass
class Poll:
    done: bool
    outcome: str
    error: Optional[str] = None


async def _read_postcard(db: GatedAsyncSession,
                         postcard_id: str) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT id, status, usage_billed FROM postcards WHERE id=:id
            """), {"id": postcard_id})).mappings().first()
    return dict(row) if row else None


async def check_postcard(db: GatedAsyncSession, gateway: PaymentGateway,
                         postcard_id: str,
                         policy: RetryPolicy = RetryPolicy()) -> Poll:
    """
    One poll. Never raises: read and billing failures become a retry.
    """
    try:
        pc = await _read_postcard(db, postcard_id)
    except Exception as e:
        logger.warning("Reading postcard %s failed", postcard_id,
                       exc_info=True)
        return Poll(False, "read_failed", str(e))

    if pc is None:
        return Poll(False, "missing")
    if policy.is_settled(pc):
        return Poll(True, OUTCOME_ALREADY_BILLED)
    if not policy.should_bill(pc):
        return Poll(False, "waiting")

    try:
        result = await bill_postcard(db, gateway, postcard_id)
    except Exception as e:
        logger.warning("Billing postcard %s failed", postcard_id,
                       exc_info=True)
        return Poll(False, "billing_failed", str(e))

    if result.get("success"):
        return Poll(True, OUTCOME_BILLED)
    if result.get("message") == MSG_ALREADY_BILLED:
        return Poll(True, OUTCOME_ALREADY_BILLED)
    return Poll(False, "waiting")


class MonitorWorker:

    def __init__(self, *, queue, session_factory: async_sessionmaker,
                 gated: Gated, gateway: PaymentGateway, policy: RetryPolicy,
                 batch_size: int = 50, idle_seconds: float = 1.0) -> None:
        self.queue = queue
        self.session_factory = session_factory
        self.gated = gated
        self.gateway = gateway
        self.policy = policy
        self.batch_size = batch_size
        self.idle_seconds = idle_seconds

    async def run_once(self, now: Optional[float] = None) -> int:
        """Poll every due job once. Returns the number of jobs handled."""
        now = now_ts() if now is None else now
        jobs = await self.queue.claim_due(now, self.batch_size)
        for job in jobs:
            async with open_db(self.session_factory, self.gated) as db:
                poll = await check_postcard(
                    db, self.gateway, job.postcard_id, self.policy
                )
            attempts = job.attempts + 1

            if poll.done:
                logger.info("Postcard %s monitor done: %s",
                            job.postcard_id, poll.outcome)
                await self.queue.complete(
                    job.postcard_id, Q_DONE, poll.outcome, attempts
                )
            elif self.policy.exhausted(attempts):
                logger.warning(
                    "Postcard %s still not billable after %d polls "
                    "(last: %s), giving up",
                    job.postcard_id, attempts, poll.outcome,
                )
                await self.queue.complete(
                    job.postcard_id, Q_EXHAUSTED, OUTCOME_EXHAUSTED,
                    attempts, poll.error,
                )
            else:
                await self.queue.reschedule(
                    job.postcard_id, attempts,
                    now + self.policy.delay_for(attempts), poll.error,
                )
        return len(jobs)

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        logger.info("Monitor worker started")
        while stop is None or not stop.is_set():
            try:
                handled = await self.run_once()
            except Exception:
                logger.error("Monitor pass failed", exc_info=True)
                handled = 0
            if handled < self.batch_size:
                await asyncio.sleep(self.idle_seconds)
        logger.info("Monitor worker stopped")


async def monitor_postcard(
    session_factory: async_sessionmaker,
    gated: Gated,
    gateway: PaymentGateway,
    postcard_id: str,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> str:
    """
    Watch one postcard in-process until it is billed or the policy gives
    up. Returns the final outcome.
    """
    for attempt in range(1, policy.max_attempts + 1):
        async with open_db(session_factory, gated) as db:
            poll = await check_postcard(db, gateway, postcard_id, policy)
        if poll.done:
            return poll.outcome
        if not policy.exhausted(attempt):
            await sleep(policy.delay_for(attempt))

    logger.warning("Postcard %s still not billable after %d polls, giving up",
                   postcard_id, policy.max_attempts)
    return OUTCOME_EXHAUSTED
