"""
HTTP health check for session processes.

Each session serves ``GET /health`` on its assigned port. A non-200
response, a transport error or a timeout all count as "not ready".
"""

import time

import httpx

from zapninja.config import settings
from zapninja.infrastructure.observability.logging import get_logger
from zapninja.models.domain.session_domain import SessionHealth

logger = get_logger(__name__)


class SessionHealthError(Exception):
    """Raised by ``fetch`` when a session's health endpoint cannot be read."""

    def __init__(self, message: str, port: int, status_code: int | None = None):
        super().__init__(message)
        self.port = port
        self.status_code = status_code


class SessionHealthClient:
    def __init__(
        self,
        host: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = host or settings.HEALTH_CHECK_HOST
        self.timeout = timeout if timeout is not None else settings.HEALTH_CHECK_TIMEOUT
        self.transport = transport

    def health_url(self, port: int) -> str:
        return f"http://{self.host}:{port}/health"

    async def fetch(self, port: int) -> SessionHealth:
        """
        Read the health payload.

        Raises:
            SessionHealthError: on transport errors, non-200 responses or bad JSON
        """
        url = self.health_url(port)
        t0 = time.time()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise SessionHealthError(f"{type(exc).__name__}: {exc}", port=port) from exc

        if response.status_code != 200:
            raise SessionHealthError(
                f"Health endpoint returned {response.status_code}",
                port=port,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise SessionHealthError("Health endpoint returned invalid JSON", port=port) from exc

        logger.debug(
            "Session health fetched",
            port=port,
            latency_ms=round((time.time() - t0) * 1000, 1),
        )
        return SessionHealth.from_payload(payload if isinstance(payload, dict) else {})

    async def check_ready(self, port: int) -> SessionHealth | None:
        """Return the health payload when the session reports ready, else None."""
        try:
            health = await self.fetch(port)
        except SessionHealthError:
            return None
        return health if health.ok else None
