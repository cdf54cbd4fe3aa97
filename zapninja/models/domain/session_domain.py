"""
Session process domain models.

Records owned by the process supervisor and the port allocator. The
asyncio process handle never leaves the supervisor; callers receive
snapshots through ``to_dict``.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class SessionStatus(StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(slots=True)
class SessionProcessRecord:
    """One spawned session process tracked by the supervisor."""

    session_name: str
    port: int
    process: asyncio.subprocess.Process
    pid: int
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: SessionStatus = SessionStatus.STARTING
    exit_code: int | None = None
    expected_exit: bool = False
    log_buffer: deque = field(default_factory=lambda: deque(maxlen=500))
    subscribers: set = field(default_factory=set)
    tasks: list = field(default_factory=list)

    def uptime_seconds(self) -> float:
        return (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_name": self.session_name,
            "port": self.port,
            "pid": self.pid,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "uptime_seconds": round(self.uptime_seconds(), 1),
            "exit_code": self.exit_code,
        }


@dataclass(slots=True)
class PortAssignment:
    """Session -> port mapping held by the port allocator."""

    session_name: str
    port: int
    pid: int | None = None
    registered_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(slots=True)
class SessionHealth:
    """Payload served by a session process on ``GET /health``."""

    ok: bool
    connected: bool = False
    messages_processed: int = 0
    errors: int = 0
    last_activity: str | None = None
    uptime: int | None = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "SessionHealth":
        return cls(
            ok=bool(payload.get("ok", True)),
            connected=bool(payload.get("connected", False)),
            messages_processed=int(payload.get("messagesProcessed") or 0),
            errors=int(payload.get("errors") or 0),
            last_activity=payload.get("lastActivity"),
            uptime=payload.get("uptime"),
            raw=payload,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "connected": self.connected,
            "messagesProcessed": self.messages_processed,
            "errors": self.errors,
            "lastActivity": self.last_activity,
            "uptime": self.uptime,
        }
