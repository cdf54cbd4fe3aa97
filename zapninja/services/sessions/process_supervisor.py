"""
Process Supervisor - one isolated OS process per WhatsApp session.

Lifecycle per session:
    starting -> running -> stopping -> stopped
    starting -> error   (spawn failure, readiness timeout, early exit)
    running  -> error   (abnormal exit)

Readiness is decided only by the session's ``GET /health`` endpoint.
Lifecycle operations never raise for expected failures; they log the
reason, keep it for ``get_last_failure`` and return False.

Usage:
    supervisor = ProcessSupervisor(PortAllocator())
    ok = await supervisor.launch_session("vendas", 3001)
    await supervisor.stop_session("vendas")
"""

import asyncio
import os
import shlex
from collections import deque
from collections.abc import AsyncIterator, Callable, Sequence
from typing import Any

import psutil

from zapninja.config import settings
from zapninja.infrastructure.observability.logging import get_logger
from zapninja.models.domain.session_domain import SessionProcessRecord, SessionStatus
from zapninja.services.sessions.health_client import SessionHealthClient, SessionHealthError
from zapninja.services.sessions.port_allocator import PortAllocator, PortConflict, PortExhausted

logger = get_logger(__name__)

TeardownHook = Callable[[str], None]


class ProcessSpawnFailure(Exception):
    """OS-level failure creating the session process."""

    def __init__(self, message: str, session_name: str):
        super().__init__(message)
        self.session_name = session_name
        self.recoverable = True


class LaunchTimeout(Exception):
    """Health endpoint never reported ready within the launch timeout."""

    def __init__(self, message: str, session_name: str, timeout: float):
        super().__init__(message)
        self.session_name = session_name
        self.timeout = timeout
        self.recoverable = True


class UngracefulExit(Exception):
    """Session process exited with a non-zero code or an unexpected signal."""

    def __init__(self, message: str, session_name: str, exit_code: int | None):
        super().__init__(message)
        self.session_name = session_name
        self.exit_code = exit_code
        self.recoverable = True


class ProcessSupervisor:
    def __init__(
        self,
        port_allocator: PortAllocator,
        health_client: SessionHealthClient | None = None,
        *,
        command: Sequence[str] | str | None = None,
        workdir: str | None = None,
        health_check_interval: float | None = None,
        launch_timeout: float | None = None,
        stop_grace_period: float | None = None,
        force_kill_wait: float | None = None,
        restart_settle_delay: float | None = None,
        log_buffer_lines: int | None = None,
    ):
        self.port_allocator = port_allocator
        self.health_client = health_client or SessionHealthClient()

        command = command if command is not None else settings.SESSION_COMMAND
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.workdir = workdir if workdir is not None else settings.SESSION_WORKDIR

        self.health_check_interval = _or(health_check_interval, settings.HEALTH_CHECK_INTERVAL)
        self.launch_timeout = _or(launch_timeout, settings.LAUNCH_TIMEOUT)
        self.stop_grace_period = _or(stop_grace_period, settings.STOP_GRACE_PERIOD)
        self.force_kill_wait = _or(force_kill_wait, settings.FORCE_KILL_WAIT)
        self.restart_settle_delay = _or(restart_settle_delay, settings.RESTART_SETTLE_DELAY)
        self.log_buffer_lines = _or(log_buffer_lines, settings.LOG_BUFFER_LINES)

        self._processes: dict[str, SessionProcessRecord] = {}
        self._launching: set[str] = set()
        self._last_failure: dict[str, str] = {}
        self._teardown_hooks: list[TeardownHook] = []

    def add_teardown_hook(self, hook: TeardownHook) -> None:
        """Register a callback run with the session name whenever a session ends."""
        self._teardown_hooks.append(hook)

    # =======================================================================
    # LIFECYCLE
    # =======================================================================

    async def launch_session(self, session_name: str, port: int) -> bool:
        if session_name in self._processes or session_name in self._launching:
            return self._refuse(session_name, "already running", port=port)

        owner_port = self.port_allocator.get_session_port(session_name)
        if not self.port_allocator.is_port_free(port) and owner_port != port:
            return self._refuse(session_name, f"port {port} already in use", port=port)

        logger.info("Launching session", session_name=session_name, port=port)
        self._launching.add(session_name)
        try:
            try:
                self.port_allocator.register_session(session_name, port)
            except PortConflict as e:
                return self._refuse(session_name, str(e), port=port)

            try:
                process = await self._spawn(session_name, port)
            except ProcessSpawnFailure as e:
                self.port_allocator.release_session(session_name)
                logger.error("Session spawn failed", session_name=session_name, error=str(e))
                self._last_failure[session_name] = str(e)
                return False

            record = SessionProcessRecord(
                session_name=session_name,
                port=port,
                process=process,
                pid=process.pid,
                log_buffer=deque(maxlen=self.log_buffer_lines),
            )
            try:
                self.port_allocator.register_session(session_name, port, process.pid)
            except PortConflict as e:
                logger.error("Session port taken during spawn", session_name=session_name, error=str(e))
                self._last_failure[session_name] = str(e)
                record.status = SessionStatus.ERROR
                await self._terminate(record)
                return False
            self._processes[session_name] = record
        finally:
            self._launching.discard(session_name)

        self._attach_watchers(record)
        logger.info("Session process spawned", session_name=session_name, pid=record.pid, port=port)

        ready, reason = await self._wait_for_ready(record)

        if ready:
            record.status = SessionStatus.RUNNING
            self.port_allocator.register_session(session_name, port, record.pid)
            self._last_failure.pop(session_name, None)
            logger.info(
                "Session started",
                session_name=session_name,
                port=port,
                pid=record.pid,
                health_url=self.health_client.health_url(port),
            )
            return True

        logger.error("Session failed to start", session_name=session_name, port=port, reason=reason)
        self._last_failure[session_name] = reason
        record.status = SessionStatus.ERROR
        await self._terminate(record)
        self._finalize(record, SessionStatus.ERROR)
        return False

    async def stop_session(self, session_name: str) -> bool:
        record = self._processes.get(session_name)
        if record is None:
            logger.info("Session not running, nothing to stop", session_name=session_name)
            return True

        logger.info("Stopping session", session_name=session_name, pid=record.pid)
        record.status = SessionStatus.STOPPING
        exited = False

        try:
            exited = await self._terminate(record)
        except Exception as e:
            logger.error("Error stopping session", session_name=session_name, error=str(e))
        finally:
            self._finalize(record, SessionStatus.STOPPED if exited else SessionStatus.ERROR)

        if not exited:
            self._last_failure[session_name] = "process did not exit after forced termination"
            logger.error("Session process did not exit", session_name=session_name, pid=record.pid)
            return False

        logger.info("Session stopped", session_name=session_name, exit_code=record.exit_code)
        return True

    async def restart_session(self, session_name: str) -> bool:
        logger.info("Restarting session", session_name=session_name)

        record = self._processes.get(session_name)
        port = record.port if record else self.port_allocator.get_session_port(session_name)
        if port is None:
            try:
                port = self.port_allocator.get_available_port()
            except PortExhausted as e:
                self._last_failure[session_name] = str(e)
                logger.error("No port for restart", session_name=session_name, error=str(e))
                return False

        if not await self.stop_session(session_name):
            logger.error("Failed to stop session for restart", session_name=session_name)
            return False

        await asyncio.sleep(self.restart_settle_delay)
        return await self.launch_session(session_name, port)

    async def stop_all_sessions(self) -> None:
        names = list(self._processes)
        if not names:
            return
        logger.info("Stopping all sessions", sessions=names)
        await asyncio.gather(*(self.stop_session(name) for name in names))

    # =======================================================================
    # OBSERVABILITY
    # =======================================================================

    def get_running_processes(self) -> list[SessionProcessRecord]:
        return list(self._processes.values())

    def get_session_process(self, session_name: str) -> SessionProcessRecord | None:
        return self._processes.get(session_name)

    def get_launching_sessions(self) -> set[str]:
        """Sessions between port reservation and process registration."""
        return set(self._launching)

    def get_last_failure(self, session_name: str) -> str | None:
        return self._last_failure.get(session_name)

    async def show_session_status(self, session_name: str, port: int | None = None) -> dict[str, Any]:
        """Record details merged with the session's health payload and resource usage."""
        record = self._processes.get(session_name)
        if record is None:
            return {"session_name": session_name, "found": False, "message": "session not found"}

        status: dict[str, Any] = {"found": True, **record.to_dict()}

        try:
            health = await self.health_client.fetch(port or record.port)
            status["health"] = health.to_dict()
        except SessionHealthError as e:
            status["health"] = None
            status["health_error"] = str(e)

        status["resources"] = self._process_resources(record.pid)
        return status

    async def follow_logs(self, session_name: str) -> AsyncIterator[str]:
        """
        Yield the buffered output, then new lines as they arrive.

        Ends when the process exits or the caller stops iterating.
        """
        record = self._processes.get(session_name)
        if record is None:
            logger.warning("Cannot follow logs, session not found", session_name=session_name)
            return

        queue: asyncio.Queue[str | None] = asyncio.Queue()
        backlog = list(record.log_buffer)
        record.subscribers.add(queue)
        try:
            for line in backlog:
                yield line
            while True:
                line = await queue.get()
                if line is None:
                    break
                yield line
        finally:
            record.subscribers.discard(queue)

    async def cleanup_orphan_processes(self) -> int:
        """Drop records whose pid vanished without going through stop_session."""
        cleaned = 0
        for session_name, record in list(self._processes.items()):
            if psutil.pid_exists(record.pid):
                continue

            logger.info("Removing orphan session process", session_name=session_name, pid=record.pid)
            record.expected_exit = True
            self._finalize(record, SessionStatus.STOPPED)
            cleaned += 1

        return cleaned

    # =======================================================================
    # PRIVATE METHODS
    # =======================================================================

    def _refuse(self, session_name: str, reason: str, **context: Any) -> bool:
        self._last_failure[session_name] = reason
        logger.warning("Session launch refused", session_name=session_name, reason=reason, **context)
        return False

    async def _spawn(self, session_name: str, port: int) -> asyncio.subprocess.Process:
        env = {
            **os.environ,
            "SESSION_NAME": session_name,
            "PORT": str(port),
            "FORCE_CONNECT": "true",
        }
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=self.workdir,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            raise ProcessSpawnFailure(
                f"Failed to spawn session process: {e}", session_name=session_name
            ) from e

        if process.pid is None:
            raise ProcessSpawnFailure("Spawned process has no pid", session_name=session_name)
        return process

    def _attach_watchers(self, record: SessionProcessRecord) -> None:
        process = record.process
        if process.stdout is not None:
            record.tasks.append(asyncio.create_task(self._pump_stream(record, process.stdout, "[OUT]")))
        if process.stderr is not None:
            record.tasks.append(asyncio.create_task(self._pump_stream(record, process.stderr, "[ERR]")))
        record.tasks.append(asyncio.create_task(self._watch_exit(record)))

    async def _pump_stream(
        self, record: SessionProcessRecord, stream: asyncio.StreamReader, prefix: str
    ) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; readline already discarded it
                continue
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace").rstrip()
            if not text:
                continue
            line = f"{prefix} {text}"
            record.log_buffer.append(line)
            for queue in list(record.subscribers):
                queue.put_nowait(line)

    async def _watch_exit(self, record: SessionProcessRecord) -> None:
        returncode = await record.process.wait()
        record.exit_code = returncode

        if record.expected_exit or self._processes.get(record.session_name) is not record:
            return

        if record.status == SessionStatus.STARTING:
            # The launch loop sees this and tears the session down
            record.status = SessionStatus.ERROR
            logger.error(
                "Session process exited during startup",
                session_name=record.session_name,
                exit_code=returncode,
            )
            return

        if returncode == 0:
            logger.info("Session process exited normally", session_name=record.session_name)
            self._finalize(record, SessionStatus.STOPPED)
            return

        error = UngracefulExit(
            f"Session '{record.session_name}' exited with code {returncode}",
            session_name=record.session_name,
            exit_code=returncode,
        )
        self._last_failure[record.session_name] = str(error)
        logger.error(
            "Session process exited unexpectedly",
            session_name=record.session_name,
            exit_code=returncode,
            error=str(error),
        )
        self._finalize(record, SessionStatus.ERROR)

    async def _wait_for_ready(self, record: SessionProcessRecord) -> tuple[bool, str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.launch_timeout

        while True:
            if record.process.returncode is not None or record.status == SessionStatus.ERROR:
                return False, (
                    f"process exited with code {record.process.returncode} before becoming ready"
                )

            if await self.health_client.check_ready(record.port) is not None:
                return True, "ready"

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.health_check_interval, remaining))

        error = LaunchTimeout(
            f"timeout waiting for readiness after {self.launch_timeout:g}s",
            session_name=record.session_name,
            timeout=self.launch_timeout,
        )
        return False, str(error)

    async def _terminate(self, record: SessionProcessRecord) -> bool:
        """SIGTERM, wait the grace period, then SIGKILL. True once the process exited."""
        process = record.process
        record.expected_exit = True
        if process.returncode is not None:
            return True

        try:
            process.terminate()
        except ProcessLookupError:
            return True

        if await self._wait_for_exit(process, self.stop_grace_period):
            return True

        logger.warning(
            "Session did not stop gracefully, forcing",
            session_name=record.session_name,
            pid=record.pid,
            grace_period=self.stop_grace_period,
        )
        try:
            process.kill()
        except ProcessLookupError:
            return True

        return await self._wait_for_exit(process, self.force_kill_wait)

    @staticmethod
    async def _wait_for_exit(process: asyncio.subprocess.Process, timeout: float) -> bool:
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
            return True
        except TimeoutError:
            return False

    def _finalize(self, record: SessionProcessRecord, status: SessionStatus) -> None:
        record.status = status
        if record.process.returncode is not None:
            record.exit_code = record.process.returncode

        if self._processes.get(record.session_name) is record:
            del self._processes[record.session_name]
            if self.port_allocator.get_session_port(record.session_name) == record.port:
                self.port_allocator.release_session(record.session_name)

        for queue in list(record.subscribers):
            queue.put_nowait(None)

        for hook in self._teardown_hooks:
            try:
                hook(record.session_name)
            except Exception as e:
                logger.error(
                    "Session teardown hook failed", session_name=record.session_name, error=str(e)
                )

    @staticmethod
    def _process_resources(pid: int) -> dict[str, float] | None:
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                return {
                    "cpu_percent": proc.cpu_percent(interval=None),
                    "memory_mb": round(proc.memory_info().rss / (1024 * 1024), 1),
                }
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None


def _or(value, default):
    return default if value is None else value
