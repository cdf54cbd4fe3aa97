"""
Job Queue Orchestrator - the five named queues of the message pipeline.

Queues (key -> broker name):
- messages -> message-processing  (5 workers, 3 attempts, exponential)
- ai       -> ai-requests         (3 workers, 2 attempts, fixed, priority)
- commands -> admin-commands      (2 workers, single attempt)
- webhooks -> webhook-processing  (10 workers, 5 attempts, exponential)
- cleanup  -> system-cleanup      (1 worker, recurring maintenance)

Message, AI, command and webhook handlers belong to the embedding app and
are attached with ``register_handler``. Maintenance handlers are built in
and run retention DELETEs through MaintenanceRepository.

Only ``initialize()`` raises (BrokerConnectionFailure); every admin
operation logs and returns a boolean.
"""

from typing import Any, Literal

from zapninja.infrastructure.observability.logging import get_logger
from zapninja.models.domain.queue_domain import (
    BackoffPolicy,
    Job,
    JobHandler,
    QueueName,
    QueuePolicy,
    RecurringJob,
)
from zapninja.queues.engine import JobExhausted, JobQueue
from zapninja.queues.store import RedisQueueStore
from zapninja.repositories.maintenance_repository import MaintenanceRepository
from zapninja.services.infrastructure.redis_client import BrokerClient, broker

logger = get_logger(__name__)

EXPONENTIAL_BACKOFF = BackoffPolicy(type="exponential", delay_ms=1000)
FIXED_BACKOFF = BackoffPolicy(type="fixed", delay_ms=5000)

QUEUE_POLICIES: dict[str, QueuePolicy] = {
    "messages": QueuePolicy(
        name=QueueName.MESSAGES,
        concurrency=5,
        attempts=3,
        backoff=EXPONENTIAL_BACKOFF,
        remove_on_complete=100,
        remove_on_fail=50,
    ),
    "ai": QueuePolicy(
        name=QueueName.AI,
        concurrency=3,
        attempts=2,
        backoff=FIXED_BACKOFF,
        remove_on_complete=50,
        remove_on_fail=25,
    ),
    "commands": QueuePolicy(
        name=QueueName.COMMANDS,
        concurrency=2,
        attempts=1,
        remove_on_complete=200,
        remove_on_fail=100,
    ),
    "webhooks": QueuePolicy(
        name=QueueName.WEBHOOKS,
        concurrency=10,
        attempts=5,
        backoff=EXPONENTIAL_BACKOFF,
        remove_on_complete=50,
        remove_on_fail=25,
    ),
    "cleanup": QueuePolicy(
        name=QueueName.CLEANUP,
        concurrency=1,
        attempts=1,
        remove_on_complete=1,
        remove_on_fail=1,
    ),
}

AI_PRIORITIES = {"high": 1, "medium": 5, "low": 10}
AIPriority = Literal["high", "medium", "low"]

MESSAGE_JOB = "process-message"
AI_JOB = "ai-request"
COMMAND_JOB = "admin-command"
WEBHOOK_JOB = "webhook"


class UnknownQueueError(Exception):
    def __init__(self, message: str, queue_name: str):
        super().__init__(message)
        self.queue_name = queue_name
        self.recoverable = True


def cleanup_schedules(maintenance: MaintenanceRepository) -> list[RecurringJob]:
    async def cleanup_expired_context(job: Job) -> int:
        return await maintenance.cleanup_expired_context()

    async def cleanup_old_messages(job: Job) -> int:
        return await maintenance.cleanup_old_messages(job.data.get("daysToKeep", 30))

    async def cleanup_old_metrics(job: Job) -> int:
        return await maintenance.cleanup_old_metrics(job.data.get("daysToKeep", 30))

    return [
        RecurringJob(
            name="cleanup-expired-context", cron="0 * * * *", handler=cleanup_expired_context
        ),
        RecurringJob(
            name="cleanup-old-messages",
            cron="0 2 * * *",
            data={"daysToKeep": 30},
            handler=cleanup_old_messages,
        ),
        RecurringJob(
            name="cleanup-old-metrics",
            cron="0 3 * * 0",
            data={"daysToKeep": 30},
            handler=cleanup_old_metrics,
        ),
    ]


class JobQueueOrchestrator:
    def __init__(
        self,
        broker_client: BrokerClient | None = None,
        store: RedisQueueStore | None = None,
        maintenance: MaintenanceRepository | None = None,
        *,
        poll_interval: float | None = None,
        stall_timeout: float | None = None,
        shutdown_timeout: float | None = None,
    ):
        self.broker = broker_client or broker
        self.store = store or RedisQueueStore(self.broker)
        self.maintenance = maintenance or MaintenanceRepository()
        self.shutdown_timeout = shutdown_timeout
        self._initialized = False

        self.queues: dict[str, JobQueue] = {
            key: JobQueue(
                policy, self.store, poll_interval=poll_interval, stall_timeout=stall_timeout
            )
            for key, policy in QUEUE_POLICIES.items()
        }
        self.recurring_jobs = cleanup_schedules(self.maintenance)
        for recurring in self.recurring_jobs:
            self.queues["cleanup"].register_handler(recurring.name, recurring.handler)

        for queue in self.queues.values():
            self._attach_event_logging(queue)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _attach_event_logging(self, queue: JobQueue) -> None:
        def on_failed(job: Job, error: JobExhausted) -> None:
            logger.error(
                "Job failed",
                queue=queue.name,
                job_id=job.id,
                job_name=job.name,
                attempts_made=error.attempts_made,
                error=job.failed_reason,
            )

        def on_stalled(job_id: str) -> None:
            logger.warning("Job stalled, moved back to waiting", queue=queue.name, job_id=job_id)

        def on_completed(job: Job, result: Any) -> None:
            logger.info("Job completed", queue=queue.name, job_id=job.id, job_name=job.name)

        queue.on("failed", on_failed)
        queue.on("stalled", on_stalled)
        queue.on("completed", on_completed)

    def get_queue(self, name: str) -> JobQueue:
        """Look up by key (``messages``) or broker name (``message-processing``)."""
        queue = self.queues.get(name)
        if queue is None:
            queue = next((q for q in self.queues.values() if q.name == name), None)
        if queue is None:
            raise UnknownQueueError(f"Unknown queue '{name}'", queue_name=name)
        return queue

    def register_handler(self, queue_name: str, job_name: str, handler: JobHandler) -> None:
        self.get_queue(queue_name).register_handler(job_name, handler)

    # =======================================================================
    # LIFECYCLE
    # =======================================================================

    async def initialize(self, start_workers: bool = True) -> None:
        """Connect the broker, schedule maintenance and start workers."""
        if self._initialized:
            return

        logger.info("Initializing job queue orchestrator")
        await self.broker.initialize()

        await self.schedule_cleanup_jobs()
        if start_workers:
            for queue in self.queues.values():
                queue.start()

        self._initialized = True
        logger.info("Job queue orchestrator initialized", queues=list(self.queues))

    async def shutdown(self) -> None:
        logger.info("Shutting down job queue orchestrator")
        for key, queue in self.queues.items():
            try:
                await queue.close(self.shutdown_timeout)
            except Exception as e:
                logger.error("Error closing queue", queue=key, error=str(e))

        await self.broker.close()
        self._initialized = False
        logger.info("Job queue orchestrator shut down")

    async def schedule_cleanup_jobs(self) -> int:
        """Enqueue the next occurrence of each maintenance job. Returns how many were new."""
        cleanup = self.queues["cleanup"]
        scheduled = 0
        for recurring in self.recurring_jobs:
            if await cleanup.add_recurring(recurring) is not None:
                scheduled += 1
        logger.info("Cleanup jobs scheduled", new=scheduled, total=len(self.recurring_jobs))
        return scheduled

    # =======================================================================
    # PRODUCERS
    # =======================================================================

    async def add_message(self, message: dict, **options: Any) -> Job | None:
        return await self.queues["messages"].add(MESSAGE_JOB, message, **options)

    async def add_ai_request(self, request: dict, priority: AIPriority = "medium") -> Job | None:
        if priority not in AI_PRIORITIES:
            logger.warning("Unknown AI priority, using medium", priority=priority)
            priority = "medium"
        return await self.queues["ai"].add(AI_JOB, request, priority=AI_PRIORITIES[priority])

    async def add_admin_command(self, command: dict) -> Job | None:
        return await self.queues["commands"].add(COMMAND_JOB, command)

    async def add_webhook(self, webhook: dict) -> Job | None:
        return await self.queues["webhooks"].add(WEBHOOK_JOB, webhook)

    async def add_bulk_messages(self, messages: list[dict]) -> list[Job]:
        return await self.queues["messages"].add_bulk([(MESSAGE_JOB, m) for m in messages])

    # =======================================================================
    # ADMIN
    # =======================================================================

    async def get_queue_stats(self) -> dict[str, dict[str, Any]]:
        stats = {}
        for key, queue in self.queues.items():
            try:
                stats[key] = await queue.get_stats()
            except Exception as e:
                logger.error("Failed to read queue stats", queue=key, error=str(e))
                stats[key] = {"error": str(e)}
        return stats

    async def _admin(self, name: str, action: str) -> bool:
        try:
            queue = self.get_queue(name)
        except UnknownQueueError:
            logger.warning("Queue action on unknown queue", queue=name, action=action)
            return False

        try:
            await getattr(queue, action)()
            return True
        except Exception as e:
            logger.error("Queue action failed", queue=name, action=action, error=str(e))
            return False

    async def pause_queue(self, name: str) -> bool:
        return await self._admin(name, "pause")

    async def resume_queue(self, name: str) -> bool:
        return await self._admin(name, "resume")

    async def clear_queue(self, name: str) -> bool:
        return await self._admin(name, "clear")
