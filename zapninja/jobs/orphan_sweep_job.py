"""
Orphan Sweep Job.
Reconciles supervised session processes with the OS and releases ports
held by sessions that no longer have a live process.
"""

import asyncio

from zapninja.config import settings
from zapninja.infrastructure.observability.logging import get_logger
from zapninja.services.sessions.port_allocator import PortAllocator
from zapninja.services.sessions.process_supervisor import ProcessSupervisor

logger = get_logger(__name__)


class OrphanSweepJob:
    def __init__(self, supervisor: ProcessSupervisor, port_allocator: PortAllocator):
        self.supervisor = supervisor
        self.port_allocator = port_allocator
        self.is_running = False
        self.last_result: dict | None = None

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Orphan sweep already running, skipping")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            orphans = await self.supervisor.cleanup_orphan_processes()
            idle_ports = self.port_allocator.cleanup_idle_ports(
                self.supervisor.get_running_processes(),
                reserved_sessions=self.supervisor.get_launching_sessions(),
            )
            self.last_result = {"orphan_processes": orphans, "idle_ports": idle_ports}

            if orphans or idle_ports:
                logger.info("Orphan sweep reclaimed resources", **self.last_result)
            return self.last_result
        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        return {"is_running": self.is_running, "last_result": self.last_result}


async def start_orphan_sweep_scheduler(job: OrphanSweepJob, interval: float | None = None):
    """Run the sweep forever; errors are logged and the loop keeps going."""
    interval = interval or settings.ORPHAN_SWEEP_INTERVAL
    logger.info("Starting orphan sweep scheduler", interval_seconds=interval)

    while True:
        try:
            await job.run_once()
        except Exception as e:
            logger.error("Error in orphan sweep scheduler", error=str(e), error_type=type(e).__name__)
        await asyncio.sleep(interval)
