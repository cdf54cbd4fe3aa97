import sys
from collections import defaultdict

import pytest
from fastapi.testclient import TestClient

from zapninja.config import settings
from zapninja.jobs.orphan_sweep_job import OrphanSweepJob
from zapninja.main import create_app
from zapninja.models.domain.queue_domain import Job, JobState
from zapninja.models.domain.session_domain import SessionHealth
from zapninja.models.domain.timing_domain import TimingConfig
from zapninja.queues.orchestrator import JobQueueOrchestrator
from zapninja.queues.store import PRIORITY_WEIGHT
from zapninja.services.container import ServiceContainer
from zapninja.services.infrastructure.redis_client import BrokerConnectionFailure
from zapninja.services.sessions.health_client import SessionHealthError
from zapninja.services.sessions.port_allocator import PortAllocator
from zapninja.services.sessions.process_supervisor import ProcessSupervisor
from zapninja.services.timing.admission_controller import AdmissionController


class FakeQueueStore:
    """In-memory stand-in for RedisQueueStore with the same transitions."""

    def __init__(self):
        self.jobs: dict[tuple[str, str], str] = {}
        self.priorities: dict[tuple[str, str], int] = {}
        self.waiting: dict[str, dict[str, float]] = defaultdict(dict)
        self.delayed: dict[str, dict[str, int]] = defaultdict(dict)
        self.active: dict[str, dict[str, int]] = defaultdict(dict)
        self.completed: dict[str, list[str]] = defaultdict(list)
        self.failed: dict[str, list[str]] = defaultdict(list)
        self.paused: set[str] = set()
        self._seq = 0

    def _push_waiting(self, queue: str, job_id: str) -> None:
        self._seq += 1
        priority = self.priorities.get((queue, job_id), 0)
        self.waiting[queue][job_id] = priority * PRIORITY_WEIGHT + self._seq

    async def add(self, job: Job, ready_at_ms: int = 0) -> bool:
        key = (job.queue, job.id)
        if key in self.jobs:
            return False
        self.jobs[key] = job.to_json()
        self.priorities[key] = job.priority
        if ready_at_ms > 0:
            self.delayed[job.queue][job.id] = ready_at_ms
        else:
            self._push_waiting(job.queue, job.id)
        return True

    async def acquire(self, queue: str, lock_deadline_ms: int) -> Job | None:
        if queue in self.paused or not self.waiting[queue]:
            return None
        job_id = min(self.waiting[queue], key=self.waiting[queue].get)
        del self.waiting[queue][job_id]
        raw = self.jobs.get((queue, job_id))
        if raw is None:
            return None
        self.active[queue][job_id] = lock_deadline_ms
        return Job.from_json(raw)

    async def save(self, job: Job) -> None:
        self.jobs[(job.queue, job.id)] = job.to_json()

    async def extend_lock(self, job: Job, lock_deadline_ms: int) -> bool:
        if job.id not in self.active[job.queue]:
            return False
        self.active[job.queue][job.id] = lock_deadline_ms
        return True

    async def finish(self, job: Job, keep: int | None) -> bool:
        if self.active[job.queue].pop(job.id, None) is None:
            return False
        key = (job.queue, job.id)
        if keep == 0:
            self.jobs.pop(key, None)
            return True

        self.jobs[key] = job.to_json()
        history = self.completed if job.state == JobState.COMPLETED else self.failed
        ids = history[job.queue]
        ids.insert(0, job.id)
        if keep is not None:
            for stale in ids[keep:]:
                self.jobs.pop((job.queue, stale), None)
            del ids[keep:]
        return True

    async def retry(self, job: Job, ready_at_ms: int = 0) -> bool:
        if self.active[job.queue].pop(job.id, None) is None:
            return False
        self.jobs[(job.queue, job.id)] = job.to_json()
        if ready_at_ms > 0:
            self.delayed[job.queue][job.id] = ready_at_ms
        else:
            self._push_waiting(job.queue, job.id)
        return True

    async def promote_delayed(self, queue: str, now_ms: int) -> int:
        due = [job_id for job_id, ready in self.delayed[queue].items() if ready <= now_ms]
        for job_id in due:
            del self.delayed[queue][job_id]
            self._push_waiting(queue, job_id)
        return len(due)

    async def requeue_stalled(self, queue: str, now_ms: int) -> list[str]:
        stalled = [job_id for job_id, deadline in self.active[queue].items() if deadline <= now_ms]
        for job_id in stalled:
            del self.active[queue][job_id]
            self._push_waiting(queue, job_id)
        return stalled

    async def get_job(self, queue: str, job_id: str) -> Job | None:
        raw = self.jobs.get((queue, job_id))
        return Job.from_json(raw) if raw else None

    async def counts(self, queue: str) -> dict[str, int]:
        return {
            "waiting": len(self.waiting[queue]),
            "active": len(self.active[queue]),
            "completed": len(self.completed[queue]),
            "failed": len(self.failed[queue]),
            "delayed": len(self.delayed[queue]),
        }

    async def is_paused(self, queue: str) -> bool:
        return queue in self.paused

    async def set_paused(self, queue: str, paused: bool) -> None:
        if paused:
            self.paused.add(queue)
        else:
            self.paused.discard(queue)

    async def clear(self, queue: str) -> int:
        ids = [*self.waiting[queue], *self.delayed[queue]]
        for job_id in ids:
            self.jobs.pop((queue, job_id), None)
        self.waiting[queue].clear()
        self.delayed[queue].clear()
        return len(ids)


class FakeBroker:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.initialized = False
        self.closed = False

    async def initialize(self) -> None:
        if self.fail:
            raise BrokerConnectionFailure("Queue broker connection failed: connection refused")
        self.initialized = True

    async def close(self) -> None:
        self.initialized = False
        self.closed = True

    async def ping(self) -> bool:
        return self.initialized


class FakeSessionConfigRepository:
    def __init__(self, configs: dict[str, TimingConfig] | None = None):
        self.configs = dict(configs or {})
        self.error: Exception | None = None
        self.known_sessions: set[str] = {"vendas", "suporte"}

    async def get_timing_config(self, session_name: str) -> TimingConfig | None:
        if self.error is not None:
            raise self.error
        return self.configs.get(session_name)

    async def update_timing_config(self, session_name: str, config: TimingConfig) -> bool:
        if self.error is not None:
            raise self.error
        if session_name not in self.known_sessions:
            return False
        self.configs[session_name] = config
        return True


class FakeMaintenanceRepository:
    def __init__(self):
        self.calls: list[tuple[str, int | None]] = []

    async def cleanup_expired_context(self) -> int:
        self.calls.append(("expired_context", None))
        return 3

    async def cleanup_old_messages(self, days_to_keep: int = 30) -> int:
        self.calls.append(("old_messages", days_to_keep))
        return 10

    async def cleanup_old_metrics(self, days_to_keep: int = 30) -> int:
        self.calls.append(("old_metrics", days_to_keep))
        return 5


class FakeHealthClient:
    def __init__(self, ready: bool = True):
        self.ready = ready
        self.checked_ports: list[int] = []

    def health_url(self, port: int) -> str:
        return f"http://127.0.0.1:{port}/health"

    async def check_ready(self, port: int) -> SessionHealth | None:
        self.checked_ports.append(port)
        return SessionHealth(ok=True, connected=True) if self.ready else None

    async def fetch(self, port: int) -> SessionHealth:
        if not self.ready:
            raise SessionHealthError("health endpoint unreachable", port=port)
        return SessionHealth(ok=True, connected=True, messages_processed=7)


@pytest.fixture
def fake_store():
    return FakeQueueStore()


@pytest.fixture
def fake_broker():
    return FakeBroker()


@pytest.fixture
def fake_config_repository():
    return FakeSessionConfigRepository()


@pytest.fixture
def fake_maintenance():
    return FakeMaintenanceRepository()


@pytest.fixture
def fake_health_client():
    return FakeHealthClient()


SESSION_SLEEPER = [
    sys.executable,
    "-c",
    "import os, time; print(os.environ['SESSION_NAME'], flush=True); time.sleep(60)",
]


@pytest.fixture
def service_container(
    fake_broker, fake_store, fake_maintenance, fake_config_repository, fake_health_client
):
    port_allocator = PortAllocator(base_port=3000, range_size=10)
    supervisor = ProcessSupervisor(
        port_allocator,
        fake_health_client,
        command=SESSION_SLEEPER,
        health_check_interval=0.05,
        launch_timeout=0.5,
        stop_grace_period=2.0,
        force_kill_wait=2.0,
        restart_settle_delay=0,
    )
    admission = AdmissionController(fake_config_repository)
    supervisor.add_teardown_hook(admission.clear_active_delays)

    return ServiceContainer(
        port_allocator=port_allocator,
        supervisor=supervisor,
        admission=admission,
        session_configs=fake_config_repository,
        orchestrator=JobQueueOrchestrator(
            fake_broker, fake_store, fake_maintenance, poll_interval=0.01, shutdown_timeout=1
        ),
        orphan_sweep=OrphanSweepJob(supervisor, port_allocator),
        database=None,
    )


@pytest.fixture
def client(service_container, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", None)
    app = create_app(lambda: service_container)
    with TestClient(app) as test_client:
        yield test_client
