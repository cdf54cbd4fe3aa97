"""
RedisQueueStore against an in-process Redis (fakeredis with Lua support).

These run the real Lua transitions through JobQueue, so priority scoring,
retention trimming, retries, promotion and stall recovery are checked on
the production store rather than the in-memory fake.
"""

import fakeredis
import pytest
import pytest_asyncio

from zapninja.models.domain.queue_domain import BackoffPolicy, QueuePolicy
from zapninja.queues.engine import JobQueue
from zapninja.queues.store import RedisQueueStore
from zapninja.services.infrastructure.redis_client import BrokerClient

QUEUE = "store-queue"


class InMemoryBroker(BrokerClient):
    async def initialize(self) -> None:
        self.client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
        self._initialized = True


class StepClock:
    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest_asyncio.fixture
async def broker():
    broker = InMemoryBroker()
    await broker.initialize()
    yield broker
    await broker.close()


@pytest.fixture
def store(broker):
    return RedisQueueStore(broker, prefix="test")


@pytest.fixture
def clock():
    return StepClock()


def make_queue(store, clock, **policy_fields) -> JobQueue:
    fields = {"name": QUEUE, "concurrency": 1, "attempts": 1}
    fields.update(policy_fields)
    return JobQueue(QueuePolicy(**fields), store, poll_interval=0.01, stall_timeout=30, clock=clock)


async def drain(queue: JobQueue) -> int:
    processed = 0
    while await queue.process_next():
        processed += 1
    return processed


@pytest.mark.asyncio
async def test_priority_then_fifo_order(store, clock):
    queue = make_queue(store, clock)
    order = []

    async def handler(job):
        order.append(job.data["n"])

    queue.register_handler("ai-request", handler)
    await queue.add("ai-request", {"n": 1}, priority=10)
    await queue.add("ai-request", {"n": 2}, priority=1)
    await queue.add("ai-request", {"n": 3}, priority=5)
    await queue.add("ai-request", {"n": 4}, priority=1)

    assert await drain(queue) == 4
    assert order == [2, 4, 3, 1]


@pytest.mark.asyncio
async def test_duplicate_job_id_is_ignored(store, clock):
    queue = make_queue(store, clock)

    assert await queue.add("job", {}, job_id="repeat:cleanup:1") is not None
    assert await queue.add("job", {}, job_id="repeat:cleanup:1") is None
    assert (await queue.get_stats())["waiting"] == 1


@pytest.mark.asyncio
async def test_completed_history_respects_retention_cap(store, clock):
    queue = make_queue(store, clock, remove_on_complete=1)

    async def ok(job):
        return job.data["n"]

    queue.register_handler("cleanup", ok)
    jobs = [await queue.add("cleanup", {"n": n}) for n in range(3)]
    await drain(queue)

    assert (await queue.get_stats())["completed"] == 1
    assert await store.get_job(QUEUE, jobs[0].id) is None
    assert await store.get_job(QUEUE, jobs[1].id) is None
    assert (await store.get_job(QUEUE, jobs[2].id)).return_value == 2


@pytest.mark.asyncio
async def test_zero_retention_deletes_job(store, clock):
    queue = make_queue(store, clock, remove_on_complete=0)

    async def ok(job):
        return None

    queue.register_handler("job", ok)
    job = await queue.add("job", {})
    await drain(queue)

    assert (await queue.get_stats())["completed"] == 0
    assert await store.get_job(QUEUE, job.id) is None


@pytest.mark.asyncio
async def test_exponential_retry_goes_through_delayed(store, clock):
    queue = make_queue(
        store, clock, attempts=3, backoff=BackoffPolicy(type="exponential", delay_ms=1000)
    )
    attempts = []

    async def flaky(job):
        attempts.append(clock())
        if len(attempts) < 3:
            raise RuntimeError("temporary failure")
        return "done"

    queue.register_handler("process-message", flaky)
    job = await queue.add("process-message", {"text": "oi"})

    assert await queue.process_next() is True
    assert (await queue.get_stats())["delayed"] == 1

    clock.advance(999)
    assert (await queue.run_maintenance())["promoted"] == 0
    assert await queue.process_next() is False

    clock.advance(1)
    assert (await queue.run_maintenance())["promoted"] == 1
    assert await queue.process_next() is True

    clock.advance(2000)
    await queue.run_maintenance()
    assert await queue.process_next() is True

    stats = await queue.get_stats()
    assert (stats["completed"], stats["failed"], stats["delayed"]) == (1, 0, 0)
    stored = await store.get_job(QUEUE, job.id)
    assert stored.attempts_made == 3
    assert stored.return_value == "done"


@pytest.mark.asyncio
async def test_exhausted_job_lands_in_failed_history(store, clock):
    queue = make_queue(store, clock, attempts=2, backoff=BackoffPolicy("fixed", 0), remove_on_fail=5)

    async def broken(job):
        raise ValueError("bad payload")

    queue.register_handler("webhook", broken)
    job = await queue.add("webhook", {})
    await drain(queue)

    assert (await queue.get_stats())["failed"] == 1
    stored = await store.get_job(QUEUE, job.id)
    assert stored.failed_reason == "bad payload"


@pytest.mark.asyncio
async def test_stalled_job_is_requeued(store, clock):
    queue = make_queue(store, clock)
    job = await queue.add("job", {})

    claimed = await store.acquire(QUEUE, clock() + 30_000)
    assert claimed.id == job.id

    clock.advance(29_999)
    assert (await queue.run_maintenance())["stalled"] == 0

    clock.advance(1)
    assert (await queue.run_maintenance())["stalled"] == 1
    stats = await queue.get_stats()
    assert (stats["waiting"], stats["active"]) == (1, 0)


@pytest.mark.asyncio
async def test_extended_lock_survives_stall_sweep(store, clock):
    queue = make_queue(store, clock)
    await queue.add("job", {})
    claimed = await store.acquire(QUEUE, clock() + 30_000)

    clock.advance(20_000)
    assert await store.extend_lock(claimed, clock() + 30_000) is True

    clock.advance(20_000)
    assert (await queue.run_maintenance())["stalled"] == 0
    assert (await queue.get_stats())["active"] == 1


@pytest.mark.asyncio
async def test_lost_lock_is_reported(store, clock):
    queue = make_queue(store, clock)
    await queue.add("job", {})
    claimed = await store.acquire(QUEUE, clock() + 30_000)
    await store.requeue_stalled(QUEUE, clock() + 30_000)

    assert await store.extend_lock(claimed, clock() + 60_000) is False
    assert await store.retry(claimed, 0) is False


@pytest.mark.asyncio
async def test_pause_blocks_acquire_until_resumed(store, clock):
    queue = make_queue(store, clock)

    async def ok(job):
        return None

    queue.register_handler("job", ok)
    await queue.add("job", {})
    await queue.pause()

    assert await queue.process_next() is False
    assert (await queue.get_stats())["paused"] is True

    await queue.resume()
    assert await queue.process_next() is True
    assert (await queue.get_stats())["paused"] is False


@pytest.mark.asyncio
async def test_clear_removes_waiting_and_delayed_jobs(store, clock):
    queue = make_queue(store, clock)
    waiting = await queue.add("job", {})
    delayed = await queue.add("job", {}, delay_ms=5000)

    assert await queue.clear() == 2

    stats = await queue.get_stats()
    assert (stats["waiting"], stats["delayed"]) == (0, 0)
    assert await store.get_job(QUEUE, waiting.id) is None
    assert await store.get_job(QUEUE, delayed.id) is None
