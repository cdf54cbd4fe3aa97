"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and runs it outside the HTTP process.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from zapninja.config import settings
from zapninja.db.pool import db_pool
from zapninja.infrastructure.observability.logging import get_logger, setup_logging
from zapninja.queues.orchestrator import JobQueueOrchestrator

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


async def run_queue_workers() -> None:
    """Consume every queue until cancelled."""
    if settings.DATABASE_URL:
        await db_pool.initialize()

    orchestrator = JobQueueOrchestrator()
    await orchestrator.initialize()
    try:
        await asyncio.Event().wait()
    finally:
        await orchestrator.shutdown()
        await db_pool.close()


async def schedule_cleanup() -> None:
    """Register the recurring maintenance jobs without starting workers."""
    orchestrator = JobQueueOrchestrator()
    await orchestrator.initialize(start_workers=False)
    await orchestrator.shutdown()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "queues": run_queue_workers,
    "schedule_cleanup": schedule_cleanup,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "queues").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(settings.LOG_LEVEL, json_logs=not settings.debug)
    asyncio.run(run_worker(_resolve_job_name()))


if __name__ == "__main__":
    main()
