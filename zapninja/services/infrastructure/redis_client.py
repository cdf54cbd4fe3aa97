# zapninja/services/infrastructure/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from zapninja.config import settings
from zapninja.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class BrokerConnectionFailure(Exception):
    """Raised when the queue broker cannot be reached at startup."""

    def __init__(self, message: str, url_preview: str | None = None):
        super().__init__(message)
        self.url_preview = url_preview
        self.recoverable = False


class BrokerClient:
    """Pooled redis.asyncio connection shared by every job queue."""

    def __init__(self, url: str | None = None, max_connections: int | None = None):
        self.url = url
        self.max_connections = max_connections or settings.REDIS_MAX_CONNECTIONS
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Open the pool and ping; raises BrokerConnectionFailure when unreachable."""
        if self._initialized:
            return

        redis_url = self.url or settings.redis_url()
        url_preview = redis_url.split("@")[-1][:40]

        try:
            logger.info("Attempting broker connection", url_preview=url_preview)

            self.pool = ConnectionPool.from_url(
                redis_url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Broker ping successful", result=result)

            self._initialized = True
            logger.info("Broker client initialized", max_connections=self.max_connections)

        except Exception as e:
            logger.error("Failed to connect to queue broker", error=str(e), url_preview=url_preview)
            self._initialized = False
            await self._release()
            raise BrokerConnectionFailure(
                f"Queue broker connection failed: {e}", url_preview=url_preview
            ) from e

    async def _release(self) -> None:
        if self.client:
            await self.client.aclose()
        if self.pool:
            await self.pool.disconnect()
        self.client = None
        self.pool = None

    async def close(self) -> None:
        try:
            await self._release()
            self._initialized = False
            logger.info("Broker client closed")
        except Exception as e:
            logger.error("Error closing broker client", error=str(e))

    def require(self) -> redis.Redis:
        if not self._initialized or self.client is None:
            raise ConnectionError("Queue broker not initialized")
        return self.client

    async def ping(self) -> bool:
        try:
            return bool(await self.require().ping())
        except Exception as e:
            logger.error("Broker ping failed", error=str(e))
            return False


# Global instance
broker = BrokerClient()
