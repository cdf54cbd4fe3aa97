"""
Session orchestrator HTTP entrypoint.
Owns startup/shutdown of the queue broker, database pool, session
processes and the background sweep loops.
"""

import asyncio
import contextlib
import time
from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from zapninja.config import settings
from zapninja.infrastructure.observability.logging import get_logger, setup_logging
from zapninja.jobs.orphan_sweep_job import start_orphan_sweep_scheduler
from zapninja.routes import health, queues, sessions, timing
from zapninja.services.container import ServiceContainer, build_services

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL, json_logs=not settings.debug)
logger = get_logger(__name__)


async def _cancel(task: asyncio.Task) -> None:
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def create_app(services_factory: Callable[[], ServiceContainer] = build_services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting", environment=settings.environment, debug=settings.debug)

        services = services_factory()
        app.state.services = services
        startup_tasks = []

        try:
            if settings.DATABASE_URL and services.database is not None:
                logger.info("Initializing database pool")
                await services.database.initialize()
                startup_tasks.append("database_pool")

            logger.info("Initializing job queues")
            await services.orchestrator.initialize()
            startup_tasks.append("queues")

            logger.info("All services initialized successfully", services=startup_tasks)

        except Exception as e:
            logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

            if "queues" in startup_tasks:
                try:
                    await services.orchestrator.shutdown()
                except Exception as cleanup_error:
                    logger.error("Error cleaning up job queues", error=str(cleanup_error))

            if "database_pool" in startup_tasks:
                try:
                    await services.database.close()
                except Exception as cleanup_error:
                    logger.error("Error cleaning up database pool", error=str(cleanup_error))

            raise

        background = [
            asyncio.create_task(start_orphan_sweep_scheduler(services.orphan_sweep)),
            asyncio.create_task(services.admission.run_purge_loop()),
        ]

        yield

        logger.info("Application shutting down")
        shutdown_errors = []

        for task in background:
            await _cancel(task)

        # Sessions first so their teardown still has working collaborators
        try:
            logger.info("Stopping session processes")
            await services.supervisor.stop_all_sessions()
        except Exception as e:
            logger.error("Error stopping sessions", error=str(e))
            shutdown_errors.append(f"Sessions: {e}")

        try:
            logger.info("Closing job queues")
            await services.orchestrator.shutdown()
        except Exception as e:
            logger.error("Error closing job queues", error=str(e))
            shutdown_errors.append(f"Queues: {e}")

        if "database_pool" in startup_tasks:
            try:
                logger.info("Closing database pool")
                await services.database.close()
            except Exception as e:
                logger.error("Error closing database pool", error=str(e))
                shutdown_errors.append(f"Database: {e}")

        if shutdown_errors:
            logger.warning("Some services had shutdown errors", errors=shutdown_errors)
        else:
            logger.info("All services closed successfully")

    app = FastAPI(
        title="ZapNinja Session Orchestrator",
        description="Process supervision, admission control and job queues for WhatsApp sessions",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health.router)
    app.include_router(sessions.router)
    app.include_router(queues.router)
    app.include_router(timing.router)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log HTTP requests with timing."""
        start_time = time.time()
        response = await call_next(request)
        process_time = (time.time() - start_time) * 1000

        logger.info(
            "HTTP request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(process_time, 2),
        )
        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
