"""
Queue domain models.

Lightweight dataclasses describing jobs, per-queue retry policies and
recurring maintenance descriptors. They carry no broker-specific
behaviour so the engine, the store and the orchestrator can share them.
"""

import json
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Literal

BackoffType = Literal["fixed", "exponential"]
JobHandler = Callable[..., Awaitable[Any]]


class QueueName(StrEnum):
    MESSAGES = "message-processing"
    AI = "ai-requests"
    COMMANDS = "admin-commands"
    WEBHOOKS = "webhook-processing"
    CLEANUP = "system-cleanup"


class JobState(StrEnum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    type: BackoffType = "fixed"
    delay_ms: int = 0

    def compute_delay_ms(self, attempts_made: int) -> int:
        """Delay before the next attempt, given how many attempts already ran."""
        if self.delay_ms <= 0:
            return 0
        if self.type == "exponential":
            return self.delay_ms * (2 ** max(0, attempts_made - 1))
        return self.delay_ms


@dataclass(slots=True, frozen=True)
class QueuePolicy:
    """Retry, retention and worker settings for one named queue."""

    name: str
    concurrency: int = 1
    attempts: int = 1
    backoff: BackoffPolicy | None = None
    remove_on_complete: int | None = None
    remove_on_fail: int | None = None


@dataclass(slots=True, frozen=True)
class RecurringJob:
    """
    Scheduler-neutral recurring job descriptor.

    Exactly one of ``cron`` or ``every_seconds`` must be set. ``handler``,
    when given, is registered on the queue under ``name``.
    """

    name: str
    cron: str | None = None
    every_seconds: float | None = None
    data: dict = field(default_factory=dict)
    handler: JobHandler | None = field(default=None, compare=False)

    def __post_init__(self):
        if (self.cron is None) == (self.every_seconds is None):
            raise ValueError("RecurringJob needs exactly one of cron or every_seconds")

    @property
    def repeat_key(self) -> str:
        schedule = self.cron if self.cron is not None else f"every:{self.every_seconds}"
        return f"{self.name}:{schedule}"

    def to_repeat(self) -> dict[str, Any]:
        return {"key": self.repeat_key, "cron": self.cron, "every_seconds": self.every_seconds}


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class Job:
    queue: str
    name: str
    data: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 1
    attempts_made: int = 0
    backoff: BackoffPolicy | None = None
    priority: int = 0
    remove_on_complete: int | None = None
    remove_on_fail: int | None = None
    delay_ms: int = 0
    state: JobState = JobState.WAITING
    timestamp: int = field(default_factory=now_ms)
    processed_on: int | None = None
    finished_on: int | None = None
    failed_reason: str | None = None
    return_value: Any = None
    repeat: dict | None = None

    @classmethod
    def from_policy(
        cls, policy: QueuePolicy, name: str, data: dict, **overrides: Any
    ) -> "Job":
        fields = {
            "queue": policy.name,
            "name": name,
            "data": data,
            "attempts": policy.attempts,
            "backoff": policy.backoff,
            "remove_on_complete": policy.remove_on_complete,
            "remove_on_fail": policy.remove_on_fail,
        }
        fields.update(overrides)
        return cls(**fields)

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts_made >= self.attempts

    def to_json(self) -> str:
        payload = asdict(self)
        payload["state"] = self.state.value
        return json.dumps(payload, default=str)

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        payload = json.loads(raw)
        backoff = payload.pop("backoff", None)
        payload["backoff"] = BackoffPolicy(**backoff) if backoff else None
        payload["state"] = JobState(payload.get("state", JobState.WAITING.value))
        return cls(**payload)
