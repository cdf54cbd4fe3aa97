import asyncio

import pytest

from zapninja.models.domain.queue_domain import BackoffPolicy, QueuePolicy, RecurringJob
from zapninja.queues import engine as engine_module
from zapninja.queues.engine import JobExhausted, JobQueue


class StepClock:
    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return StepClock()


def make_queue(store, clock, **policy_fields) -> JobQueue:
    fields = {"name": "test-queue", "concurrency": 1, "attempts": 1}
    fields.update(policy_fields)
    return JobQueue(QueuePolicy(**fields), store, poll_interval=0.01, stall_timeout=30, clock=clock)


async def drain(queue: JobQueue) -> int:
    processed = 0
    while await queue.process_next():
        processed += 1
    return processed


@pytest.mark.asyncio
async def test_lower_priority_number_is_served_first(fake_store, clock):
    queue = make_queue(fake_store, clock)
    seen = []

    async def handler(job):
        seen.append(job.data["label"])

    queue.register_handler("ai-request", handler)
    await queue.add("ai-request", {"label": "low"}, priority=10)
    await queue.add("ai-request", {"label": "high"}, priority=1)
    await queue.add("ai-request", {"label": "medium"}, priority=5)
    await queue.add("ai-request", {"label": "high-2"}, priority=1)

    assert await drain(queue) == 4
    assert seen == ["high", "high-2", "medium", "low"]


@pytest.mark.asyncio
async def test_failed_job_is_retried_with_exponential_backoff(fake_store, clock):
    queue = make_queue(
        fake_store, clock, attempts=3, backoff=BackoffPolicy(type="exponential", delay_ms=1000)
    )
    calls = []

    async def flaky(job):
        calls.append(clock())
        if len(calls) < 3:
            raise RuntimeError("temporary failure")
        return "done"

    queue.register_handler("process-message", flaky)
    job = await queue.add("process-message", {"text": "oi"})

    assert await queue.process_next() is True
    assert (await queue.get_stats())["delayed"] == 1

    clock.advance(999)
    await queue.run_maintenance()
    assert await queue.process_next() is False

    clock.advance(1)
    await queue.run_maintenance()
    assert await queue.process_next() is True

    clock.advance(2000)
    await queue.run_maintenance()
    assert await queue.process_next() is True

    stats = await queue.get_stats()
    assert stats["completed"] == 1
    assert stats["failed"] == 0
    stored = await fake_store.get_job("test-queue", job.id)
    assert stored.attempts_made == 3
    assert stored.return_value == "done"
    assert calls[1] - calls[0] == 1000
    assert calls[2] - calls[1] == 2000


@pytest.mark.asyncio
async def test_exhausted_job_is_marked_failed(fake_store, clock):
    queue = make_queue(fake_store, clock, attempts=2, backoff=BackoffPolicy("fixed", 0))
    failures = []

    async def always_fails(job):
        raise ValueError("bad payload")

    queue.register_handler("webhook", always_fails)
    queue.on("failed", lambda job, error: failures.append(error))
    await queue.add("webhook", {})

    assert await drain(queue) == 2

    assert len(failures) == 1
    assert isinstance(failures[0], JobExhausted)
    assert failures[0].attempts_made == 2
    assert "bad payload" in str(failures[0])
    assert (await queue.get_stats())["failed"] == 1


@pytest.mark.asyncio
async def test_single_attempt_queue_never_retries(fake_store, clock):
    queue = make_queue(fake_store, clock, attempts=1)
    calls = []

    async def command(job):
        calls.append(job.id)
        raise RuntimeError("command failed")

    queue.register_handler("admin-command", command)
    await queue.add("admin-command", {"command": "restart"})

    assert await drain(queue) == 1
    assert len(calls) == 1
    stats = await queue.get_stats()
    assert stats["failed"] == 1
    assert stats["waiting"] == stats["delayed"] == 0


@pytest.mark.asyncio
async def test_job_without_handler_fails(fake_store, clock):
    queue = make_queue(fake_store, clock)
    failures = []
    queue.on("failed", lambda job, error: failures.append(job))

    await queue.add("unregistered", {})
    await drain(queue)

    assert "no handler" in failures[0].failed_reason


@pytest.mark.asyncio
async def test_completed_history_is_trimmed_to_cap(fake_store, clock):
    queue = make_queue(fake_store, clock, remove_on_complete=2)

    async def ok(job):
        return job.data["n"]

    queue.register_handler("job", ok)
    jobs = [await queue.add("job", {"n": n}) for n in range(5)]
    await drain(queue)

    assert (await queue.get_stats())["completed"] == 2
    assert await fake_store.get_job("test-queue", jobs[0].id) is None
    assert (await fake_store.get_job("test-queue", jobs[4].id)).return_value == 4


@pytest.mark.asyncio
async def test_zero_retention_discards_job(fake_store, clock):
    queue = make_queue(fake_store, clock, remove_on_complete=0)

    async def ok(job):
        return None

    queue.register_handler("job", ok)
    job = await queue.add("job", {})
    await drain(queue)

    assert (await queue.get_stats())["completed"] == 0
    assert await fake_store.get_job("test-queue", job.id) is None


@pytest.mark.asyncio
async def test_pause_and_resume(fake_store, clock):
    queue = make_queue(fake_store, clock)

    async def ok(job):
        return None

    queue.register_handler("job", ok)
    await queue.add("job", {})
    await queue.pause()

    assert await queue.process_next() is False
    assert (await queue.get_stats())["paused"] is True

    await queue.resume()
    assert await queue.process_next() is True


@pytest.mark.asyncio
async def test_clear_drops_waiting_and_delayed(fake_store, clock):
    queue = make_queue(fake_store, clock)
    await queue.add("job", {})
    await queue.add("job", {}, delay_ms=5000)

    assert await queue.clear() == 2
    stats = await queue.get_stats()
    assert stats["waiting"] == stats["delayed"] == 0


@pytest.mark.asyncio
async def test_stalled_active_job_returns_to_waiting(fake_store, clock):
    queue = make_queue(fake_store, clock)
    stalled = []
    queue.on("stalled", stalled.append)
    job = await queue.add("job", {})

    # A worker claims the job and dies without finishing it
    await fake_store.acquire("test-queue", clock() + 30_000)

    clock.advance(30_000)
    result = await queue.run_maintenance()

    assert result["stalled"] == 1
    assert stalled == [job.id]
    assert (await queue.get_stats())["waiting"] == 1


@pytest.mark.asyncio
async def test_recurring_job_is_idempotent_and_reschedules(fake_store, clock):
    queue = make_queue(fake_store, clock)
    runs = []

    async def tick(job):
        runs.append(clock())

    recurring = RecurringJob(name="heartbeat", every_seconds=60, handler=tick)

    first = await queue.add_recurring(recurring)
    assert first is not None
    assert await queue.add_recurring(recurring) is None
    assert (await queue.get_stats())["delayed"] == 1

    run_at = first.timestamp + first.delay_ms
    clock.now = run_at
    await queue.run_maintenance()
    assert await queue.process_next() is True

    assert runs == [run_at]
    stats = await queue.get_stats()
    assert stats["completed"] == 1
    assert stats["delayed"] == 1


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_processing(fake_store, clock):
    queue = make_queue(fake_store, clock)

    async def ok(job):
        return None

    def broken_listener(job, result):
        raise RuntimeError("listener exploded")

    queue.register_handler("job", ok)
    queue.on("completed", broken_listener)
    await queue.add("job", {})

    assert await queue.process_next() is True
    assert (await queue.get_stats())["completed"] == 1


@pytest.mark.asyncio
async def test_workers_process_jobs_until_closed(fake_store):
    queue = JobQueue(
        QueuePolicy(name="live-queue", concurrency=3), fake_store, poll_interval=0.01
    )
    done = asyncio.Event()
    processed = []

    async def handler(job):
        processed.append(job.data["n"])
        if len(processed) == 5:
            done.set()

    queue.register_handler("job", handler)
    queue.start()
    for n in range(5):
        await queue.add("job", {"n": n})

    await asyncio.wait_for(done.wait(), timeout=2)
    await queue.close(timeout=1)

    assert sorted(processed) == [0, 1, 2, 3, 4]
    assert queue.running is False


class RecordingLogger:
    def __init__(self):
        self.records: list[tuple[str, str, dict]] = []

    def __getattr__(self, level):
        def record(message, **fields):
            self.records.append((level, message, fields))

        return record


@pytest.mark.asyncio
async def test_retry_after_lost_lock_is_not_reported_as_retrying(fake_store, clock, monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(engine_module, "logger", recorder)
    queue = make_queue(
        fake_store, clock, attempts=3, backoff=BackoffPolicy(type="exponential", delay_ms=1000)
    )

    async def outlived_its_lock(job):
        # The stall sweep already handed the job back to waiting
        await fake_store.requeue_stalled("test-queue", clock() + 60_000)
        raise RuntimeError("too slow")

    queue.register_handler("job", outlived_its_lock)
    await queue.add("job", {})
    await queue.process_next()

    messages = [message for _, message, _ in recorder.records]
    assert "Job lock lost before retry was scheduled" in messages
    assert "Job attempt failed, retrying" not in messages
    stats = await queue.get_stats()
    assert (stats["waiting"], stats["delayed"]) == (1, 0)


@pytest.mark.asyncio
async def test_long_running_job_keeps_its_lock(fake_store):
    queue = JobQueue(
        QueuePolicy(name="slow-queue"), fake_store, poll_interval=0.01, stall_timeout=0.2
    )
    started = asyncio.Event()
    release = asyncio.Event()
    runs = []

    async def slow(job):
        runs.append(job.id)
        started.set()
        await release.wait()

    queue.register_handler("job", slow)
    await queue.add("job", {})

    worker = asyncio.create_task(queue.process_next())
    await asyncio.wait_for(started.wait(), timeout=1)
    await asyncio.sleep(0.35)

    result = await queue.run_maintenance()
    release.set()
    await asyncio.wait_for(worker, timeout=1)

    assert result["stalled"] == 0
    assert len(runs) == 1
    assert (await queue.get_stats())["completed"] == 1
