"""
Queue Store - Redis persistence for named job queues.

Layout per queue (``{prefix}:{queue}``):
- ``:waiting``   ZSET  score = priority * 1e12 + enqueue sequence
- ``:delayed``   ZSET  score = ready-at epoch ms
- ``:active``    ZSET  score = lock deadline epoch ms, extended while the job runs
- ``:completed`` LIST  newest first, trimmed to the retention cap
- ``:failed``    LIST  newest first, trimmed to the retention cap
- ``:job:{id}``  HASH  ``data`` (job JSON) and ``priority``
- ``:paused``    flag
- ``:seq``       enqueue counter (FIFO within a priority)

Every state transition is a single Lua script so two workers can never
claim the same job and retention trimming never races with new pushes.
"""

from zapninja.config import settings
from zapninja.infrastructure.observability.logging import get_logger
from zapninja.models.domain.queue_domain import Job, JobState
from zapninja.services.infrastructure.redis_client import BrokerClient

logger = get_logger(__name__)

PRIORITY_WEIGHT = 1_000_000_000_000


class RedisQueueStore:
    # KEYS: job, waiting, delayed, seq
    # ARGV: job_id, job_json, ready_at_ms (0 = now), priority, priority_weight
    # Returns 1 when added, 0 when a job with this id already exists
    ADD_LUA_SCRIPT = """
    if redis.call('EXISTS', KEYS[1]) == 1 then
        return 0
    end
    redis.call('HSET', KEYS[1], 'data', ARGV[2], 'priority', ARGV[4])
    local ready_at = tonumber(ARGV[3])
    if ready_at > 0 then
        redis.call('ZADD', KEYS[3], ready_at, ARGV[1])
    else
        local seq = redis.call('INCR', KEYS[4])
        redis.call('ZADD', KEYS[2], tonumber(ARGV[4]) * tonumber(ARGV[5]) + seq, ARGV[1])
    end
    return 1
    """

    # KEYS: paused, waiting, active
    # ARGV: lock_deadline_ms, job_key_prefix
    # Returns {job_id, job_json} or nil
    ACQUIRE_LUA_SCRIPT = """
    if redis.call('EXISTS', KEYS[1]) == 1 then
        return nil
    end
    local popped = redis.call('ZPOPMIN', KEYS[2])
    if #popped == 0 then
        return nil
    end
    local job_id = popped[1]
    local data = redis.call('HGET', ARGV[2] .. job_id, 'data')
    if not data then
        return nil
    end
    redis.call('ZADD', KEYS[3], tonumber(ARGV[1]), job_id)
    return {job_id, data}
    """

    # KEYS: active
    # ARGV: job_id, lock_deadline_ms
    # Returns 1 when extended, 0 when the job no longer holds a lock
    EXTEND_LOCK_LUA_SCRIPT = """
    if not redis.call('ZSCORE', KEYS[1], ARGV[1]) then
        return 0
    end
    redis.call('ZADD', KEYS[1], tonumber(ARGV[2]), ARGV[1])
    return 1
    """

    # KEYS: active, finished list
    # ARGV: job_id, job_json, keep (-1 = unbounded), job_key_prefix
    # Returns 1 when recorded, 0 when dropped by keep=0, -1 when the lock was lost
    FINISH_LUA_SCRIPT = """
    local job_key = ARGV[4] .. ARGV[1]
    if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
        return -1
    end
    local keep = tonumber(ARGV[3])
    if keep == 0 then
        redis.call('DEL', job_key)
        return 0
    end
    redis.call('HSET', job_key, 'data', ARGV[2])
    redis.call('LPUSH', KEYS[2], ARGV[1])
    if keep > 0 then
        local stale = redis.call('LRANGE', KEYS[2], keep, -1)
        for _, stale_id in ipairs(stale) do
            redis.call('DEL', ARGV[4] .. stale_id)
        end
        redis.call('LTRIM', KEYS[2], 0, keep - 1)
    end
    return 1
    """

    # KEYS: active, delayed, waiting, seq
    # ARGV: job_id, job_json, ready_at_ms (0 = now), job_key_prefix, priority_weight
    RETRY_LUA_SCRIPT = """
    local job_key = ARGV[4] .. ARGV[1]
    if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
        return -1
    end
    redis.call('HSET', job_key, 'data', ARGV[2])
    local ready_at = tonumber(ARGV[3])
    if ready_at > 0 then
        redis.call('ZADD', KEYS[2], ready_at, ARGV[1])
    else
        local priority = tonumber(redis.call('HGET', job_key, 'priority')) or 0
        local seq = redis.call('INCR', KEYS[4])
        redis.call('ZADD', KEYS[3], priority * tonumber(ARGV[5]) + seq, ARGV[1])
    end
    return 1
    """

    # KEYS: source zset, waiting, seq
    # ARGV: max_score, job_key_prefix, priority_weight
    # Moves every member scored <= max_score into waiting; returns the ids moved
    MOVE_TO_WAITING_LUA_SCRIPT = """
    local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
    for _, job_id in ipairs(ids) do
        redis.call('ZREM', KEYS[1], job_id)
        local priority = tonumber(redis.call('HGET', ARGV[2] .. job_id, 'priority')) or 0
        local seq = redis.call('INCR', KEYS[3])
        redis.call('ZADD', KEYS[2], priority * tonumber(ARGV[3]) + seq, job_id)
    end
    return ids
    """

    # KEYS: waiting, delayed
    # ARGV: job_key_prefix
    CLEAR_LUA_SCRIPT = """
    local removed = 0
    for _, key in ipairs(KEYS) do
        local ids = redis.call('ZRANGE', key, 0, -1)
        for _, job_id in ipairs(ids) do
            redis.call('DEL', ARGV[1] .. job_id)
        end
        removed = removed + #ids
        redis.call('DEL', key)
    end
    return removed
    """

    def __init__(self, broker: BrokerClient, prefix: str | None = None):
        self.broker = broker
        self.prefix = prefix or settings.QUEUE_PREFIX

    def _key(self, queue: str, suffix: str) -> str:
        return f"{self.prefix}:{queue}:{suffix}"

    def _job_prefix(self, queue: str) -> str:
        return self._key(queue, "job:")

    async def add(self, job: Job, ready_at_ms: int = 0) -> bool:
        """Persist a new job; False when a job with the same id already exists."""
        client = self.broker.require()
        added = await client.eval(
            self.ADD_LUA_SCRIPT,
            4,
            self._job_prefix(job.queue) + job.id,
            self._key(job.queue, "waiting"),
            self._key(job.queue, "delayed"),
            self._key(job.queue, "seq"),
            job.id,
            job.to_json(),
            ready_at_ms,
            job.priority,
            PRIORITY_WEIGHT,
        )
        return bool(added)

    async def acquire(self, queue: str, lock_deadline_ms: int) -> Job | None:
        client = self.broker.require()
        result = await client.eval(
            self.ACQUIRE_LUA_SCRIPT,
            3,
            self._key(queue, "paused"),
            self._key(queue, "waiting"),
            self._key(queue, "active"),
            lock_deadline_ms,
            self._job_prefix(queue),
        )
        if not result:
            return None
        return Job.from_json(result[1])

    async def save(self, job: Job) -> None:
        client = self.broker.require()
        await client.hset(self._job_prefix(job.queue) + job.id, "data", job.to_json())

    async def extend_lock(self, job: Job, lock_deadline_ms: int) -> bool:
        """Push an active job's lock deadline forward; False when the lock was lost."""
        client = self.broker.require()
        result = await client.eval(
            self.EXTEND_LOCK_LUA_SCRIPT,
            1,
            self._key(job.queue, "active"),
            job.id,
            lock_deadline_ms,
        )
        return int(result) > 0

    async def finish(self, job: Job, keep: int | None) -> bool:
        """Move an active job to completed/failed history; False when its lock was lost."""
        if job.state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError(f"Cannot finish job in state {job.state}")

        client = self.broker.require()
        result = await client.eval(
            self.FINISH_LUA_SCRIPT,
            2,
            self._key(job.queue, "active"),
            self._key(job.queue, job.state.value),
            job.id,
            job.to_json(),
            -1 if keep is None else keep,
            self._job_prefix(job.queue),
        )
        return int(result) >= 0

    async def retry(self, job: Job, ready_at_ms: int = 0) -> bool:
        client = self.broker.require()
        result = await client.eval(
            self.RETRY_LUA_SCRIPT,
            4,
            self._key(job.queue, "active"),
            self._key(job.queue, "delayed"),
            self._key(job.queue, "waiting"),
            self._key(job.queue, "seq"),
            job.id,
            job.to_json(),
            ready_at_ms,
            self._job_prefix(job.queue),
            PRIORITY_WEIGHT,
        )
        return int(result) > 0

    async def _move_to_waiting(self, queue: str, source: str, max_score: int) -> list[str]:
        client = self.broker.require()
        moved = await client.eval(
            self.MOVE_TO_WAITING_LUA_SCRIPT,
            3,
            self._key(queue, source),
            self._key(queue, "waiting"),
            self._key(queue, "seq"),
            max_score,
            self._job_prefix(queue),
            PRIORITY_WEIGHT,
        )
        return [str(job_id) for job_id in moved or []]

    async def promote_delayed(self, queue: str, now_ms: int) -> int:
        return len(await self._move_to_waiting(queue, "delayed", now_ms))

    async def requeue_stalled(self, queue: str, now_ms: int) -> list[str]:
        """Return active jobs whose lock deadline passed to waiting."""
        return await self._move_to_waiting(queue, "active", now_ms)

    async def get_job(self, queue: str, job_id: str) -> Job | None:
        client = self.broker.require()
        raw = await client.hget(self._job_prefix(queue) + job_id, "data")
        return Job.from_json(raw) if raw else None

    async def counts(self, queue: str) -> dict[str, int]:
        client = self.broker.require()
        async with client.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key(queue, "waiting"))
            pipe.zcard(self._key(queue, "active"))
            pipe.llen(self._key(queue, "completed"))
            pipe.llen(self._key(queue, "failed"))
            pipe.zcard(self._key(queue, "delayed"))
            waiting, active, completed, failed, delayed = await pipe.execute()

        return {
            "waiting": int(waiting),
            "active": int(active),
            "completed": int(completed),
            "failed": int(failed),
            "delayed": int(delayed),
        }

    async def is_paused(self, queue: str) -> bool:
        client = self.broker.require()
        return bool(await client.exists(self._key(queue, "paused")))

    async def set_paused(self, queue: str, paused: bool) -> None:
        client = self.broker.require()
        if paused:
            await client.set(self._key(queue, "paused"), "1")
        else:
            await client.delete(self._key(queue, "paused"))

    async def clear(self, queue: str) -> int:
        """Drop every waiting and delayed job. Active jobs and history are kept."""
        client = self.broker.require()
        removed = await client.eval(
            self.CLEAR_LUA_SCRIPT,
            2,
            self._key(queue, "waiting"),
            self._key(queue, "delayed"),
            self._job_prefix(queue),
        )
        return int(removed)
