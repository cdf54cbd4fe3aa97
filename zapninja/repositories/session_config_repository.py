"""
Session configuration store.

Reads and writes ``whatsapp_sessions.timing_config``. Reads are cached
briefly because the admission controller asks for the same session on
every inbound message.
"""

import json
import time

from zapninja.config import settings
from zapninja.db.pool import DatabasePoolManager, db_pool
from zapninja.infrastructure.observability.logging import get_logger
from zapninja.models.domain.timing_domain import TimingConfig

logger = get_logger(__name__)

SELECT_TIMING_CONFIG = """
SELECT timing_config
FROM whatsapp_sessions
WHERE session_name = %s AND is_active = true
"""

UPDATE_TIMING_CONFIG = """
UPDATE whatsapp_sessions
SET timing_config = %s::jsonb, updated_at = NOW()
WHERE session_name = %s
"""


class SessionConfigRepository:
    def __init__(self, pool: DatabasePoolManager | None = None, cache_seconds: float | None = None):
        self.pool = pool or db_pool
        self.cache_seconds = (
            cache_seconds if cache_seconds is not None else settings.SESSION_CONFIG_CACHE_SECONDS
        )
        self._cache: dict[str, tuple[float, TimingConfig | None]] = {}

    async def get_timing_config(self, session_name: str) -> TimingConfig | None:
        """Timing configuration for an active session, or None when absent."""
        cached = self._cache.get(session_name)
        if cached and time.monotonic() - cached[0] < self.cache_seconds:
            return cached[1]

        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(SELECT_TIMING_CONFIG, (session_name,))
                row = await cur.fetchone()

        config = None
        if row:
            raw = row["timing_config"] if isinstance(row, dict) else row[0]
            if isinstance(raw, str):
                raw = json.loads(raw)
            config = TimingConfig.model_validate(raw or {})

        self._cache[session_name] = (time.monotonic(), config)
        return config

    async def update_timing_config(self, session_name: str, config: TimingConfig) -> bool:
        payload = config.model_dump_json(exclude_none=True)
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(UPDATE_TIMING_CONFIG, (payload, session_name))
                updated = cur.rowcount > 0

        self._cache.pop(session_name, None)
        logger.info("Timing config updated", session_name=session_name, updated=updated)
        return updated
