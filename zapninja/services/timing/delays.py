"""
Cancelable pacing delays keyed by session.

Every deliberate pause (response delay, typing simulation, inter-message
delay, rest period) goes through ``DelayRegistry.sleep`` so that session
teardown can cut all of them short. A cancelled delay returns False to
its waiter instead of raising.
"""

import asyncio

from zapninja.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class CancelableDelay:
    def __init__(self, session_name: str, kind: str, duration_ms: float):
        self.session_name = session_name
        self.kind = kind
        self.duration_ms = duration_ms
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    async def wait(self) -> bool:
        """True when the full duration elapsed, False when cancelled first."""
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=self.duration_ms / 1000)
        except TimeoutError:
            return True
        return False


class DelayRegistry:
    def __init__(self):
        self._handles: dict[str, set[CancelableDelay]] = {}

    async def sleep(self, session_name: str, duration_ms: float, kind: str = "response") -> bool:
        if duration_ms <= 0:
            return True

        delay = CancelableDelay(session_name, kind, duration_ms)
        handles = self._handles.setdefault(session_name, set())
        handles.add(delay)
        try:
            return await delay.wait()
        finally:
            handles.discard(delay)
            if not handles and self._handles.get(session_name) is handles:
                del self._handles[session_name]

    def cancel(self, session_name: str | None = None) -> int:
        """Cancel pending delays for one session (or all). Returns how many were cut short."""
        if session_name is None:
            targets = [delay for handles in self._handles.values() for delay in handles]
        else:
            targets = list(self._handles.get(session_name, ()))

        for delay in targets:
            delay.cancel()
        return len(targets)

    def active_count(self, kind: str | None = None, session_name: str | None = None) -> int:
        count = 0
        for name, handles in self._handles.items():
            if session_name is not None and name != session_name:
                continue
            count += sum(1 for delay in handles if kind is None or delay.kind == kind)
        return count
