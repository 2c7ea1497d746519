import fakeredis
import pytest

from thankdonors.model.monitorqueue import (
    Q_DONE, Q_QUEUED, Q_RUNNING, new_queue,
)
from thankdonors.model.monitorqueue._redis import DUE_INDEX, RUNNING_INDEX


@pytest.fixture
async def r():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def rqueue(r):
    return new_queue("redis", r=r, lease_seconds=60)


async def test_enqueue_once(rqueue, r):
    assert await rqueue.enqueue("pc-1", run_at=5.0) is True
    assert await rqueue.enqueue("pc-1", run_at=9.0) is False

    job = await rqueue.get("pc-1")
    assert job.status == Q_QUEUED
    assert job.next_run_at == 5.0
    assert await r.zscore(DUE_INDEX, "pc-1") == 5.0


async def test_claim_reschedule_complete(rqueue, r):
    await rqueue.enqueue("pc-1", run_at=5.0)
    await rqueue.enqueue("pc-2", run_at=50.0)

    claimed = await rqueue.claim_due(now=10.0)
    assert [j.postcard_id for j in claimed] == ["pc-1"]
    assert claimed[0].status == Q_RUNNING
    assert await rqueue.claim_due(now=10.0) == []

    await rqueue.reschedule("pc-1", 1, 40.0, "waiting")
    job = await rqueue.get("pc-1")
    assert (job.status, job.attempts, job.last_error) == (
        Q_QUEUED, 1, "waiting")
    assert await r.zscore(RUNNING_INDEX, "pc-1") is None

    claimed = await rqueue.claim_due(now=60.0)
    assert sorted(j.postcard_id for j in claimed) == ["pc-1", "pc-2"]
    await rqueue.complete("pc-1", Q_DONE, "billed", 2)

    job = await rqueue.get("pc-1")
    assert (job.status, job.outcome, job.attempts) == (Q_DONE, "billed", 2)
    assert await r.zscore(DUE_INDEX, "pc-1") is None
    assert await r.zscore(RUNNING_INDEX, "pc-1") is None


async def test_expired_lease_is_reclaimed(rqueue):
    await rqueue.enqueue("pc-1", run_at=0.0)
    await rqueue.claim_due(now=1.0)

    assert await rqueue.claim_due(now=30.0) == []
    again = await rqueue.claim_due(now=62.0)
    assert [j.postcard_id for j in again] == ["pc-1"]


def test_unknown_backend():
    with pytest.raises(RuntimeError):
        new_queue("kafka")
