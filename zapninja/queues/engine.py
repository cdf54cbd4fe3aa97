"""
Job Queue - one named queue with workers, retries and recurring jobs.

Each JobQueue owns:
- A pool of ``policy.concurrency`` worker tasks pulling from the store
- A maintenance task promoting due delayed jobs and requeuing stalled ones
- Handlers keyed by job name
- Event listeners (``completed``, ``failed``, ``stalled``, ``error``)

Failure semantics:
- A handler exception consumes one attempt; the job is retried after the
  policy's backoff until attempts run out, then it is marked failed
- A job with no handler for its name fails like any other error
- Listener exceptions are logged and never reach the worker loop
- A running job's lock is extended every half stall timeout, so the stall
  sweep only requeues jobs whose worker died

Usage:
    queue = JobQueue(QueuePolicy(name="webhook-processing", concurrency=10), store)
    queue.register_handler("webhook", process_webhook)
    queue.start()
    await queue.add("webhook", {"event": "message"})
"""

import asyncio
import contextlib
import inspect
from collections.abc import Callable
from typing import Any

from zapninja.config import settings
from zapninja.infrastructure.observability.logging import get_logger
from zapninja.models.domain.queue_domain import (
    Job,
    JobHandler,
    JobState,
    QueuePolicy,
    RecurringJob,
    now_ms,
)
from zapninja.queues.schedule import next_run_ms, repeat_job_id
from zapninja.queues.store import RedisQueueStore

logger = get_logger(__name__)

QUEUE_EVENTS = ("completed", "failed", "stalled", "error")


class JobExhausted(Exception):
    """A job failed on its final allowed attempt."""

    def __init__(self, message: str, queue: str, job_id: str, attempts_made: int):
        super().__init__(message)
        self.queue = queue
        self.job_id = job_id
        self.attempts_made = attempts_made
        self.recoverable = False


class MissingHandler(LookupError):
    pass


class JobQueue:
    def __init__(
        self,
        policy: QueuePolicy,
        store: RedisQueueStore,
        *,
        poll_interval: float | None = None,
        stall_timeout: float | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.policy = policy
        self.name = policy.name
        self.store = store
        self.poll_interval = poll_interval or settings.QUEUE_POLL_INTERVAL
        self.stall_timeout_ms = int((stall_timeout or settings.QUEUE_STALL_TIMEOUT) * 1000)
        self._clock = clock or now_ms

        self.handlers: dict[str, JobHandler] = {}
        self._listeners: dict[str, list[Callable[..., Any]]] = {event: [] for event in QUEUE_EVENTS}
        self._workers: list[asyncio.Task] = []
        self._maintenance: asyncio.Task | None = None
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def register_handler(self, job_name: str, handler: JobHandler) -> None:
        self.handlers[job_name] = handler

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event '{event}'")
        self._listeners[event].append(listener)

    async def _emit(self, event: str, *args: Any) -> None:
        for listener in self._listeners[event]:
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Queue event listener failed", queue=self.name, queue_event=event, error=str(e)
                )

    # =======================================================================
    # PRODUCERS
    # =======================================================================

    async def add(
        self,
        name: str,
        data: dict | None = None,
        *,
        priority: int = 0,
        delay_ms: int = 0,
        job_id: str | None = None,
        repeat: dict | None = None,
    ) -> Job | None:
        """Enqueue with this queue's policy. Returns None when ``job_id`` already exists."""
        overrides: dict[str, Any] = {
            "priority": priority,
            "delay_ms": delay_ms,
            "repeat": repeat,
            "timestamp": self._clock(),
        }
        if job_id is not None:
            overrides["id"] = job_id

        job = Job.from_policy(self.policy, name, data or {}, **overrides)
        if delay_ms > 0:
            job.state = JobState.DELAYED

        ready_at = self._clock() + delay_ms if delay_ms > 0 else 0
        if not await self.store.add(job, ready_at):
            logger.debug("Job already enqueued", queue=self.name, job_id=job.id)
            return None

        logger.debug("Job enqueued", queue=self.name, job_id=job.id, job_name=name)
        return job

    async def add_bulk(self, entries: list[tuple[str, dict]]) -> list[Job]:
        jobs = []
        for name, data in entries:
            job = await self.add(name, data)
            if job is not None:
                jobs.append(job)
        return jobs

    async def add_recurring(self, recurring: RecurringJob, after_ms: int | None = None) -> Job | None:
        """Schedule the next occurrence; idempotent per repeat key and slot."""
        if recurring.handler is not None:
            self.register_handler(recurring.name, recurring.handler)

        now = self._clock() if after_ms is None else after_ms
        run_at = next_run_ms(recurring, now)
        return await self.add(
            recurring.name,
            dict(recurring.data),
            delay_ms=max(0, run_at - self._clock()),
            job_id=repeat_job_id(recurring.repeat_key, run_at),
            repeat=recurring.to_repeat(),
        )

    async def _schedule_next_occurrence(self, job: Job) -> None:
        run_at = next_run_ms(job.repeat, max(self._clock(), job.timestamp + job.delay_ms))
        await self.add(
            job.name,
            dict(job.data),
            delay_ms=max(0, run_at - self._clock()),
            job_id=repeat_job_id(job.repeat["key"], run_at),
            repeat=job.repeat,
        )

    # =======================================================================
    # ADMIN
    # =======================================================================

    async def pause(self) -> None:
        await self.store.set_paused(self.name, True)
        logger.info("Queue paused", queue=self.name)

    async def resume(self) -> None:
        await self.store.set_paused(self.name, False)
        logger.info("Queue resumed", queue=self.name)

    async def clear(self) -> int:
        removed = await self.store.clear(self.name)
        logger.info("Queue cleared", queue=self.name, removed=removed)
        return removed

    async def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = await self.store.counts(self.name)
        stats["paused"] = await self.store.is_paused(self.name)
        return stats

    # =======================================================================
    # PROCESSING
    # =======================================================================

    async def process_next(self) -> bool:
        """Claim and run one waiting job. Returns False when nothing was available."""
        job = await self.store.acquire(self.name, self._clock() + self.stall_timeout_ms)
        if job is None:
            return False

        job.state = JobState.ACTIVE
        job.processed_on = self._clock()
        job.attempts_made += 1
        await self.store.save(job)

        if job.repeat and job.attempts_made == 1:
            await self._schedule_next_occurrence(job)

        await self._run(job)
        return True

    async def _run(self, job: Job) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(job), name=f"{self.name}-lock-{job.id}")
        try:
            handler = self.handlers.get(job.name)
            if handler is None:
                raise MissingHandler(f"no handler registered for job '{job.name}'")
            result = await handler(job)
        except Exception as e:
            failure: Exception | None = e
        else:
            failure = None
        finally:
            await self._stop_heartbeat(heartbeat)

        if failure is not None:
            await self._handle_failure(job, failure)
            return

        job.state = JobState.COMPLETED
        job.finished_on = self._clock()
        job.return_value = result
        if not await self.store.finish(job, job.remove_on_complete):
            logger.warning("Job lock lost before completion", queue=self.name, job_id=job.id)
            return
        await self._emit("completed", job, result)

    async def _heartbeat(self, job: Job) -> None:
        """Keep the job's lock ahead of the stall sweep while its handler runs."""
        interval = self.stall_timeout_ms / 2000
        while True:
            await asyncio.sleep(interval)
            try:
                extended = await self.store.extend_lock(job, self._clock() + self.stall_timeout_ms)
            except Exception as e:
                logger.error("Job lock extension failed", queue=self.name, job_id=job.id, error=str(e))
                continue
            if not extended:
                logger.warning("Job lock lost while running", queue=self.name, job_id=job.id)
                return

    @staticmethod
    async def _stop_heartbeat(heartbeat: asyncio.Task) -> None:
        if heartbeat.done():
            return
        heartbeat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await heartbeat

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        job.failed_reason = str(error)

        if not job.attempts_exhausted:
            delay = job.backoff.compute_delay_ms(job.attempts_made) if job.backoff else 0
            job.state = JobState.DELAYED if delay > 0 else JobState.WAITING
            ready_at = self._clock() + delay if delay > 0 else 0
            if not await self.store.retry(job, ready_at):
                logger.warning("Job lock lost before retry was scheduled", queue=self.name, job_id=job.id)
                return
            logger.warning(
                "Job attempt failed, retrying",
                queue=self.name,
                job_id=job.id,
                job_name=job.name,
                attempts_made=job.attempts_made,
                max_attempts=job.attempts,
                retry_in_ms=delay,
                error=str(error),
            )
            return

        job.state = JobState.FAILED
        job.finished_on = self._clock()
        exhausted = JobExhausted(
            f"Job {job.id} failed after {job.attempts_made} attempt(s): {error}",
            queue=self.name,
            job_id=job.id,
            attempts_made=job.attempts_made,
        )
        if not await self.store.finish(job, job.remove_on_fail):
            logger.warning("Job lock lost before failure was recorded", queue=self.name, job_id=job.id)
            return
        await self._emit("failed", job, exhausted)

    async def run_maintenance(self) -> dict[str, int]:
        """Promote due delayed jobs and requeue stalled active ones."""
        now = self._clock()
        promoted = await self.store.promote_delayed(self.name, now)
        stalled = await self.store.requeue_stalled(self.name, now)
        for job_id in stalled:
            await self._emit("stalled", job_id)
        return {"promoted": promoted, "stalled": len(stalled)}

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    async def _worker_loop(self, worker_id: int) -> None:
        logger.debug("Queue worker started", queue=self.name, worker_id=worker_id)
        while not self._stop.is_set():
            try:
                processed = await self.process_next()
            except Exception as e:
                logger.error(
                    "Queue worker error", queue=self.name, worker_id=worker_id, error=str(e)
                )
                await self._emit("error", e)
                processed = False

            if not processed:
                await self._idle()

    async def _maintenance_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error("Queue maintenance failed", queue=self.name, error=str(e))
                await self._emit("error", e)
            await self._idle()

    def start(self) -> None:
        if self.running:
            return

        self._stop.clear()
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"{self.name}-worker-{i}")
            for i in range(self.policy.concurrency)
        ]
        self._maintenance = asyncio.create_task(
            self._maintenance_loop(), name=f"{self.name}-maintenance"
        )
        logger.info("Queue workers started", queue=self.name, concurrency=self.policy.concurrency)

    async def close(self, timeout: float | None = None) -> None:
        """Let in-flight jobs finish up to ``timeout``, then cancel the rest."""
        self._stop.set()
        tasks = [task for task in [*self._workers, self._maintenance] if task is not None]
        if not tasks:
            return

        timeout = timeout if timeout is not None else settings.QUEUE_SHUTDOWN_TIMEOUT
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Queue workers cancelled at shutdown", queue=self.name, count=len(pending))
        await asyncio.gather(*tasks, return_exceptions=True)

        self._workers = []
        self._maintenance = None
        logger.info("Queue closed", queue=self.name)
