"""
Service wiring.

Builds the long-lived collaborators once at startup and hands them to the
HTTP layer through ``app.state.services``. Tests build their own container
with fakes instead of patching module globals.
"""

from dataclasses import dataclass

from zapninja.db.pool import DatabasePoolManager, db_pool
from zapninja.jobs.orphan_sweep_job import OrphanSweepJob
from zapninja.queues.orchestrator import JobQueueOrchestrator
from zapninja.repositories.session_config_repository import SessionConfigRepository
from zapninja.services.sessions.health_client import SessionHealthClient
from zapninja.services.sessions.port_allocator import PortAllocator
from zapninja.services.sessions.process_supervisor import ProcessSupervisor
from zapninja.services.timing.admission_controller import AdmissionController


@dataclass
class ServiceContainer:
    port_allocator: PortAllocator
    supervisor: ProcessSupervisor
    admission: AdmissionController
    session_configs: SessionConfigRepository
    orchestrator: JobQueueOrchestrator
    orphan_sweep: OrphanSweepJob
    database: DatabasePoolManager | None = None


def build_services(database: DatabasePoolManager | None = None) -> ServiceContainer:
    database = database or db_pool
    port_allocator = PortAllocator()
    supervisor = ProcessSupervisor(port_allocator, SessionHealthClient())
    session_configs = SessionConfigRepository(database)
    admission = AdmissionController(session_configs)

    # Pending pacing delays die with their session.
    supervisor.add_teardown_hook(admission.clear_active_delays)

    return ServiceContainer(
        port_allocator=port_allocator,
        supervisor=supervisor,
        admission=admission,
        session_configs=session_configs,
        orchestrator=JobQueueOrchestrator(),
        orphan_sweep=OrphanSweepJob(supervisor, port_allocator),
        database=database,
    )
