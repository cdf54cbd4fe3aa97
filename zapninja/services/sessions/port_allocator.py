"""
Port Allocator - exclusive port assignment for session processes.

Owns a bounded pool ``[base_port, base_port + range_size)`` and the
session -> port mapping. The allocator never binds sockets; each spawned
session binds its own port. State is in-memory and mutated only through
these methods.
"""

from collections.abc import Iterable
from typing import Any

from zapninja.config import settings
from zapninja.infrastructure.observability.logging import get_logger
from zapninja.models.domain.session_domain import PortAssignment

logger = get_logger(__name__)


class PortExhausted(Exception):
    """Raised when every port in the configured range is registered."""

    def __init__(self, message: str, start: int, end: int):
        super().__init__(message)
        self.start = start
        self.end = end
        self.recoverable = True


class PortConflict(Exception):
    """Raised when a port is already assigned to a different session."""

    def __init__(self, message: str, port: int, owner: str):
        super().__init__(message)
        self.port = port
        self.owner = owner
        self.recoverable = True


class PortAllocator:
    def __init__(self, base_port: int | None = None, range_size: int | None = None):
        self.base_port = base_port if base_port is not None else settings.BASE_PORT
        self.range_size = range_size if range_size is not None else settings.PORT_RANGE_SIZE
        self._sessions: dict[str, PortAssignment] = {}

    @property
    def max_port(self) -> int:
        """Last usable port (inclusive)."""
        return self.base_port + self.range_size - 1

    def _port_owner(self, port: int) -> str | None:
        for assignment in self._sessions.values():
            if assignment.port == port:
                return assignment.session_name
        return None

    def is_port_free(self, port: int) -> bool:
        return self._port_owner(port) is None

    def get_available_port(self, preferred_start: int | None = None) -> int:
        """
        Return the first unregistered port, scanning from the base (or a
        preferred start inside the range) to the end of the range.

        Raises:
            PortExhausted: if no port between start and the range end is free
        """
        start = self.base_port
        if preferred_start is not None and self.base_port <= preferred_start <= self.max_port:
            start = preferred_start

        used = {assignment.port for assignment in self._sessions.values()}
        for port in range(start, self.max_port + 1):
            if port not in used:
                logger.debug("Available port found", port=port)
                return port

        raise PortExhausted(
            f"No port available between {start} and {self.max_port}",
            start=start,
            end=self.max_port,
        )

    def register_session(self, session_name: str, port: int, pid: int | None = None) -> None:
        """Record the mapping. Idempotent for the same session/port pair."""
        owner = self._port_owner(port)
        if owner is not None and owner != session_name:
            raise PortConflict(
                f"Port {port} already in use by session '{owner}'", port=port, owner=owner
            )

        existing = self._sessions.get(session_name)
        if existing is not None and existing.port == port:
            if pid is not None:
                existing.pid = pid
            return

        if existing is not None:
            logger.info(
                "Moving session to new port",
                session_name=session_name,
                old_port=existing.port,
                new_port=port,
            )

        self._sessions[session_name] = PortAssignment(session_name=session_name, port=port, pid=pid)
        logger.info("Session registered", session_name=session_name, port=port, pid=pid)

    def release_session(self, session_name: str) -> None:
        assignment = self._sessions.pop(session_name, None)
        if assignment is not None:
            logger.info("Session port released", session_name=session_name, port=assignment.port)

    def get_session_port(self, session_name: str) -> int | None:
        assignment = self._sessions.get(session_name)
        return assignment.port if assignment else None

    def get_used_ports(self) -> list[int]:
        return sorted(assignment.port for assignment in self._sessions.values())

    def get_active_sessions(self) -> list[dict[str, Any]]:
        return [
            {"name": assignment.session_name, "port": assignment.port}
            for assignment in sorted(self._sessions.values(), key=lambda a: a.port)
        ]

    def set_base_port(self, port: int) -> None:
        """Move the pool. Refused while registered sessions would fall outside it."""
        if not 1 <= port <= 65535 - self.range_size + 1:
            raise ValueError(f"Base port {port} leaves no room for {self.range_size} ports")

        new_range = range(port, port + self.range_size)
        stranded = [a.session_name for a in self._sessions.values() if a.port not in new_range]
        if stranded:
            raise ValueError(f"Sessions outside new range: {', '.join(sorted(stranded))}")

        logger.info("Base port changed", old_base_port=self.base_port, new_base_port=port)
        self.base_port = port

    def cleanup_idle_ports(
        self, live_processes: Iterable[Any], reserved_sessions: Iterable[str] = ()
    ) -> int:
        """
        Reconcile the registry against the supervisor's live process list.

        ``live_processes`` are records exposing ``session_name`` and ``pid``.
        Entries whose pid (or, without a pid, whose session) is not live are
        released. Sessions in ``reserved_sessions`` are mid-launch and always
        kept. Returns the number released.
        """
        live = list(live_processes)
        live_pids = {record.pid for record in live}
        live_names = {record.session_name for record in live}
        reserved = set(reserved_sessions)

        idle = [
            assignment.session_name
            for assignment in self._sessions.values()
            if assignment.session_name not in reserved
            and (
                (assignment.pid is not None and assignment.pid not in live_pids)
                or (assignment.pid is None and assignment.session_name not in live_names)
            )
        ]

        for session_name in idle:
            self.release_session(session_name)

        if idle:
            logger.info("Idle ports cleaned up", released=len(idle), sessions=idle)
        return len(idle)

    def get_port_statistics(self) -> dict[str, Any]:
        used = self.get_used_ports()
        return {
            "total_registered": len(used),
            "base_port": self.base_port,
            "range_size": self.range_size,
            "highest_port": used[-1] if used else None,
            "free_ports": self.range_size - len(used),
        }
