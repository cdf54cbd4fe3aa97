"""
Retention DELETEs run by the recurring maintenance jobs.
"""

from zapninja.db.pool import DatabasePoolManager, db_pool
from zapninja.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DELETE_EXPIRED_CONTEXT = """
DELETE FROM user_context
WHERE expires_at IS NOT NULL AND expires_at < NOW()
"""

DELETE_OLD_MESSAGES = """
DELETE FROM messages
WHERE created_at < NOW() - make_interval(days => %s)
"""

DELETE_OLD_METRICS = """
DELETE FROM system_metrics
WHERE recorded_at < NOW() - make_interval(days => %s)
"""


class MaintenanceRepository:
    def __init__(self, pool: DatabasePoolManager | None = None):
        self.pool = pool or db_pool

    async def _delete(self, query: str, params: tuple = ()) -> int:
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return cur.rowcount

    async def cleanup_expired_context(self) -> int:
        deleted = await self._delete(DELETE_EXPIRED_CONTEXT)
        logger.info("Expired context cleaned up", count=deleted)
        return deleted

    async def cleanup_old_messages(self, days_to_keep: int = 30) -> int:
        deleted = await self._delete(DELETE_OLD_MESSAGES, (days_to_keep,))
        logger.info("Old messages cleaned up", count=deleted, days_to_keep=days_to_keep)
        return deleted

    async def cleanup_old_metrics(self, days_to_keep: int = 30) -> int:
        deleted = await self._delete(DELETE_OLD_METRICS, (days_to_keep,))
        logger.info("Old metrics cleaned up", count=deleted, days_to_keep=days_to_keep)
        return deleted
