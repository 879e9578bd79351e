from __future__ import annotations

import asyncio
import json
import os
import secrets
import socket
import time
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from clinic_queue.utils.log import logger

from .backoff import exponential_backoff_ms
from .errors import NonRetryableJobError, QueueUnavailableError
from .interfaces import JobProcessor, QueueStatus
from .models import (
    DEFAULT_MAX_ATTEMPTS,
    AddJobResult,
    ClaimedJob,
    JobInfo,
    JobOptions,
    JobStatus,
    QueueMetrics,
    RateLimit,
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _consumer_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _lock_token() -> str:
    return f"{_consumer_id()}:{secrets.token_hex(8)}"


@dataclass(frozen=True, slots=True)
class RedisQueueConfig:
    prefix: str = "clinic"
    connect_attempts: int = 3
    connect_backoff_cap_ms: int = 3000
    default_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_delay_ms: int = 2000
    keep_completed_age_s: int = 24 * 3600
    keep_completed_count: int = 100
    keep_failed_age_s: int = 7 * 24 * 3600
    lock_ttl_ms: int = 30_000
    stalled_interval_ms: int = 30_000
    max_stalled_count: int = 1

    @classmethod
    def from_settings(cls, s: Any) -> RedisQueueConfig:
        prefix = str(getattr(s, "redis_queue_prefix", "clinic") or "clinic").strip().strip(":") or "clinic"
        return cls(
            prefix=prefix,
            connect_attempts=max(1, int(s.redis_connect_attempts)),
            connect_backoff_cap_ms=max(0, int(s.redis_connect_backoff_cap_ms)),
            default_attempts=max(1, int(s.job_default_attempts)),
            backoff_delay_ms=max(0, int(s.job_backoff_delay_ms)),
            keep_completed_age_s=max(0, int(s.keep_completed_age_s)),
            keep_completed_count=max(0, int(s.keep_completed_count)),
            keep_failed_age_s=max(0, int(s.keep_failed_age_s)),
            lock_ttl_ms=max(1_000, int(s.redis_lock_ttl_ms)),
            stalled_interval_ms=max(1_000, int(s.redis_stalled_interval_ms)),
            max_stalled_count=max(0, int(s.redis_max_stalled_count)),
        )


# Shared Lua helper: drop finished jobs past their retention (age, then count).
_TRIM_LUA = """
local function trim(set, prefix, now, keep_age, keep_count)
  if keep_age > 0 then
    local old = redis.call('ZRANGEBYSCORE', set, '-inf', now - keep_age)
    for _, j in ipairs(old) do
      redis.call('DEL', prefix .. j)
    end
    redis.call('ZREMRANGEBYSCORE', set, '-inf', now - keep_age)
  end
  if keep_count > 0 then
    local extra = redis.call('ZCARD', set) - keep_count
    if extra > 0 then
      local old = redis.call('ZRANGE', set, 0, extra - 1)
      for _, j in ipairs(old) do
        redis.call('DEL', prefix .. j)
      end
      redis.call('ZREMRANGEBYRANK', set, 0, extra - 1)
    end
  end
end
"""

# KEYS[1]=id counter, KEYS[2]=job key prefix, KEYS[3]=wait list, KEYS[4]=delayed zset
# ARGV[1]=job id ('' = generate), ARGV[2]=name, ARGV[3]=data, ARGV[4]=max attempts,
# ARGV[5]=delay ms, ARGV[6]=now ms
_ADD_LUA = """
local jid = ARGV[1]
if jid == '' then
  -- Skip counter values already taken by an explicit job id.
  repeat
    jid = tostring(redis.call('INCR', KEYS[1]))
  until redis.call('EXISTS', KEYS[2] .. jid) == 0
end
local jkey = KEYS[2] .. jid
if redis.call('EXISTS', jkey) == 1 then
  return {jid, 0}
end
local delay = tonumber(ARGV[5])
local now = tonumber(ARGV[6])
local state = 'waiting'
if delay > 0 then
  state = 'delayed'
end
redis.call('HSET', jkey, 'name', ARGV[2], 'data', ARGV[3], 'attempts_made', 0,
  'max_attempts', ARGV[4], 'timestamp', now, 'state', state, 'stalled_counter', 0)
if delay > 0 then
  redis.call('ZADD', KEYS[4], now + delay, jid)
else
  redis.call('RPUSH', KEYS[3], jid)
end
return {jid, 1}
"""

# KEYS[1]=wait, KEYS[2]=active, KEYS[3]=delayed, KEYS[4]=limiter, KEYS[5]=job key prefix
# ARGV[1]=now ms, ARGV[2]=lock token, ARGV[3]=lock ttl ms, ARGV[4]=rate max (0=off),
# ARGV[5]=rate window ms
# Returns {job id or '', ms to wait before the limiter allows another claim}.
_CLAIM_LUA = """
local now = tonumber(ARGV[1])
local due = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', now, 'LIMIT', 0, 100)
for _, jid in ipairs(due) do
  redis.call('ZREM', KEYS[3], jid)
  redis.call('RPUSH', KEYS[1], jid)
  redis.call('HSET', KEYS[5] .. jid, 'state', 'waiting')
end
local rate_max = tonumber(ARGV[4])
if rate_max > 0 then
  local used = tonumber(redis.call('GET', KEYS[4]) or '0')
  if used >= rate_max then
    local ttl = redis.call('PTTL', KEYS[4])
    if ttl < 0 then
      ttl = 0
    end
    return {'', ttl}
  end
end
local jid = redis.call('LPOP', KEYS[1])
if not jid then
  return {'', 0}
end
redis.call('RPUSH', KEYS[2], jid)
if rate_max > 0 then
  local n = redis.call('INCR', KEYS[4])
  if n == 1 then
    redis.call('PEXPIRE', KEYS[4], ARGV[5])
  end
end
local jkey = KEYS[5] .. jid
redis.call('SET', jkey .. ':lock', ARGV[2], 'PX', ARGV[3])
redis.call('HSET', jkey, 'state', 'active', 'processed_on', now)
return {jid, 0}
"""

# KEYS[1]=active, KEYS[2]=completed zset, KEYS[3]=job key, KEYS[4]=lock key, KEYS[5]=job key prefix
# ARGV[1]=job id, ARGV[2]=token, ARGV[3]=return value, ARGV[4]=now ms,
# ARGV[5]=keep age ms, ARGV[6]=keep count
_COMPLETE_LUA = (
    _TRIM_LUA
    + """
local owner = redis.call('GET', KEYS[4])
if owner and owner ~= ARGV[2] then
  return -1
end
if redis.call('LREM', KEYS[1], 0, ARGV[1]) == 0 then
  return -2
end
redis.call('DEL', KEYS[4])
local now = tonumber(ARGV[4])
redis.call('HSET', KEYS[3], 'state', 'completed', 'returnvalue', ARGV[3], 'finished_on', now)
redis.call('ZADD', KEYS[2], now, ARGV[1])
trim(KEYS[2], KEYS[5], now, tonumber(ARGV[5]), tonumber(ARGV[6]))
return 1
"""
)

# KEYS[1]=active, KEYS[2]=wait, KEYS[3]=delayed, KEYS[4]=failed zset, KEYS[5]=job key,
# KEYS[6]=lock key, KEYS[7]=job key prefix
# ARGV[1]=job id, ARGV[2]=token, ARGV[3]=reason, ARGV[4]=now ms, ARGV[5]=retry (1|0),
# ARGV[6]=retry delay ms, ARGV[7]=keep failed age ms
_FAIL_LUA = (
    _TRIM_LUA
    + """
local owner = redis.call('GET', KEYS[6])
if owner and owner ~= ARGV[2] then
  return {-1, ''}
end
if redis.call('LREM', KEYS[1], 0, ARGV[1]) == 0 then
  return {-2, ''}
end
redis.call('DEL', KEYS[6])
local attempts = redis.call('HINCRBY', KEYS[5], 'attempts_made', 1)
local max_attempts = tonumber(redis.call('HGET', KEYS[5], 'max_attempts') or '1')
local now = tonumber(ARGV[4])
redis.call('HSET', KEYS[5], 'failed_reason', ARGV[3])
if ARGV[5] == '1' and attempts < max_attempts then
  local delay = tonumber(ARGV[6])
  if delay > 0 then
    redis.call('ZADD', KEYS[3], now + delay, ARGV[1])
    redis.call('HSET', KEYS[5], 'state', 'delayed')
    return {attempts, 'delayed'}
  end
  redis.call('RPUSH', KEYS[2], ARGV[1])
  redis.call('HSET', KEYS[5], 'state', 'waiting')
  return {attempts, 'waiting'}
end
redis.call('HSET', KEYS[5], 'state', 'failed', 'finished_on', now)
redis.call('ZADD', KEYS[4], now, ARGV[1])
trim(KEYS[4], KEYS[7], now, tonumber(ARGV[7]), 0)
return {attempts, 'failed'}
"""
)

_EXTEND_LOCK_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("PEXPIRE", KEYS[1], ARGV[2])
else
  return 0
end
"""

# KEYS[1]=stalled-check key, KEYS[2]=active, KEYS[3]=wait, KEYS[4]=failed zset, KEYS[5]=job key prefix
# ARGV[1]=now ms, ARGV[2]=check interval ms, ARGV[3]=max stalled count, ARGV[4]=keep failed age ms
_STALLED_LUA = (
    _TRIM_LUA
    + """
if not redis.call('SET', KEYS[1], ARGV[1], 'NX', 'PX', ARGV[2]) then
  return {0, 0}
end
local now = tonumber(ARGV[1])
local requeued = 0
local failed = 0
local active = redis.call('LRANGE', KEYS[2], 0, -1)
for _, jid in ipairs(active) do
  local jkey = KEYS[5] .. jid
  if redis.call('EXISTS', jkey .. ':lock') == 0 then
    redis.call('LREM', KEYS[2], 0, jid)
    local n = redis.call('HINCRBY', jkey, 'stalled_counter', 1)
    if n > tonumber(ARGV[3]) then
      redis.call('HSET', jkey, 'state', 'failed',
        'failed_reason', 'job stalled more than allowable limit', 'finished_on', now)
      redis.call('ZADD', KEYS[4], now, jid)
      failed = failed + 1
    else
      redis.call('RPUSH', KEYS[3], jid)
      redis.call('HSET', jkey, 'state', 'waiting')
      requeued = requeued + 1
    end
  end
end
if failed > 0 then
  trim(KEYS[4], KEYS[5], now, tonumber(ARGV[4]), 0)
end
return {requeued, failed}
"""
)

# Broker job states reported through the uniform status surface.
_STATE_MAP = {
    "waiting": JobStatus.PENDING.value,
    "delayed": JobStatus.PENDING.value,
    "active": JobStatus.PROCESSING.value,
    "completed": JobStatus.COMPLETED.value,
    "failed": JobStatus.FAILED.value,
}


def _loads(raw: str | None) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _ms_to_dt(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromtimestamp(int(float(raw)) / 1000.0, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


class _Scripts:
    def __init__(self, client) -> None:
        self.add = client.register_script(_ADD_LUA)
        self.claim = client.register_script(_CLAIM_LUA)
        self.complete = client.register_script(_COMPLETE_LUA)
        self.fail = client.register_script(_FAIL_LUA)
        self.extend_lock = client.register_script(_EXTEND_LOCK_LUA)
        self.stalled = client.register_script(_STALLED_LUA)


class BrokerQueue:
    """
    One named queue on the broker.

    Keys (all under `<prefix>:<queue>:`): `id`, `job:<id>` (hash), `job:<id>:lock`,
    `wait` (list), `active` (list), `delayed`/`completed`/`failed` (zsets scored by ms),
    `limiter`, `stalled-check`.
    """

    def __init__(self, client, scripts: _Scripts, name: str, cfg: RedisQueueConfig) -> None:
        self._r = client
        self._scripts = scripts
        self.name = name
        self._cfg = cfg
        self._base = f"{cfg.prefix}:{name}:"

    def _key(self, suffix: str) -> str:
        return self._base + suffix

    def job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def lock_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}:lock")

    async def add(self, job_type: str, payload: Any, opts: JobOptions) -> AddJobResult:
        jid, created = await self._scripts.add(
            keys=[self._key("id"), self._key("job:"), self._key("wait"), self._key("delayed")],
            args=[
                opts.job_id or "",
                job_type,
                json.dumps(payload, default=str),
                int(opts.attempts),
                int(opts.delay_ms),
                _now_ms(),
            ],
        )
        jid = str(jid)
        if not int(created):
            existing = await self._r.hget(self.job_key(jid), "name")
            logger.info("redis_queue_duplicate_job", job_id=jid, queue=self.name)
            return AddJobResult(
                success=True,
                job_id=jid,
                queue_name=self.name,
                job_type=str(existing or job_type),
                duplicate=True,
            )
        logger.info(
            "redis_queue_job_added",
            job_id=jid,
            queue=self.name,
            job_type=job_type,
            max_attempts=int(opts.attempts),
            delay_ms=int(opts.delay_ms),
        )
        return AddJobResult(success=True, job_id=jid, queue_name=self.name, job_type=job_type)

    async def get_job(self, job_id: str) -> JobInfo:
        h = await self._r.hgetall(self.job_key(job_id))
        if not h:
            return JobInfo.missing()
        raw_state = str(h.get("state") or "")
        return JobInfo(
            exists=True,
            id=str(job_id),
            name=h.get("name"),
            data=_loads(h.get("data")),
            state=_STATE_MAP.get(raw_state, raw_state),
            attempts_made=int(h.get("attempts_made") or 0),
            max_attempts=int(h.get("max_attempts") or 0),
            returnvalue=_loads(h.get("returnvalue")),
            failed_reason=h.get("failed_reason") or None,
            timestamp=_ms_to_dt(h.get("timestamp")),
            processed_on=_ms_to_dt(h.get("processed_on")),
        )

    async def metrics(self) -> QueueMetrics:
        async with self._r.pipeline(transaction=False) as pipe:
            pipe.llen(self._key("wait"))
            pipe.llen(self._key("active"))
            pipe.zcard(self._key("completed"))
            pipe.zcard(self._key("failed"))
            pipe.zcard(self._key("delayed"))
            waiting, active, completed, failed, delayed = await pipe.execute()
        return QueueMetrics(
            queue_name=self.name,
            waiting=int(waiting or 0),
            active=int(active or 0),
            completed=int(completed or 0),
            failed=int(failed or 0),
            delayed=int(delayed or 0),
        )

    async def claim(self, token: str, rate_limit: RateLimit | None = None) -> tuple[ClaimedJob | None, int]:
        """
        Move one job wait -> active and lock it. Returns (job, 0), or (None, ms to wait
        when rate limited, else 0).
        """
        rate_max = int(rate_limit.max) if rate_limit else 0
        rate_ms = int(rate_limit.duration_ms) if rate_limit else 0
        jid, wait_ms = await self._scripts.claim(
            keys=[
                self._key("wait"),
                self._key("active"),
                self._key("delayed"),
                self._key("limiter"),
                self._key("job:"),
            ],
            args=[_now_ms(), token, int(self._cfg.lock_ttl_ms), rate_max, rate_ms],
        )
        jid = str(jid or "")
        if not jid:
            return None, int(wait_ms or 0)
        h = await self._r.hgetall(self.job_key(jid))
        job = ClaimedJob(
            id=jid,
            queue_name=self.name,
            name=str(h.get("name") or ""),
            data=_loads(h.get("data")),
            attempts_made=int(h.get("attempts_made") or 0),
            max_attempts=int(h.get("max_attempts") or 1),
        )
        logger.info(
            "redis_queue_claimed",
            job_id=jid,
            queue=self.name,
            job_type=job.name,
            attempt=job.attempts_made + 1,
            max_attempts=job.max_attempts,
        )
        return job, 0

    async def complete(self, job_id: str, token: str, result: Any) -> bool:
        rc = await self._scripts.complete(
            keys=[
                self._key("active"),
                self._key("completed"),
                self.job_key(job_id),
                self.lock_key(job_id),
                self._key("job:"),
            ],
            args=[
                job_id,
                token,
                json.dumps(result, default=str),
                _now_ms(),
                int(self._cfg.keep_completed_age_s) * 1000,
                int(self._cfg.keep_completed_count),
            ],
        )
        if int(rc) != 1:
            logger.warning("redis_queue_complete_rejected", job_id=job_id, queue=self.name, code=int(rc))
            return False
        logger.info("redis_queue_job_completed", job_id=job_id, queue=self.name)
        return True

    async def fail(self, job_id: str, token: str, reason: str, *, retry: bool = True) -> str:
        """Returns the job's new broker state, or '' when the lock was lost."""
        attempts = int(await self._r.hget(self.job_key(job_id), "attempts_made") or 0) + 1
        delay_ms = exponential_backoff_ms(attempts, self._cfg.backoff_delay_ms)
        made, state = await self._scripts.fail(
            keys=[
                self._key("active"),
                self._key("wait"),
                self._key("delayed"),
                self._key("failed"),
                self.job_key(job_id),
                self.lock_key(job_id),
                self._key("job:"),
            ],
            args=[
                job_id,
                token,
                str(reason or "") or "unknown error",
                _now_ms(),
                "1" if retry else "0",
                delay_ms,
                int(self._cfg.keep_failed_age_s) * 1000,
            ],
        )
        state = str(state or "")
        if int(made) < 0:
            logger.warning("redis_queue_fail_rejected", job_id=job_id, queue=self.name, code=int(made))
            return ""
        if state == "failed":
            logger.warning(
                "redis_queue_job_failed",
                job_id=job_id,
                queue=self.name,
                attempts=int(made),
                retryable=bool(retry),
                error=str(reason),
            )
        else:
            logger.warning(
                "redis_queue_job_retry_scheduled",
                job_id=job_id,
                queue=self.name,
                attempts=int(made),
                retry_in_ms=delay_ms if state == "delayed" else 0,
                error=str(reason),
            )
        return state

    async def extend_lock(self, job_id: str, token: str) -> bool:
        rc = await self._scripts.extend_lock(
            keys=[self.lock_key(job_id)], args=[token, int(self._cfg.lock_ttl_ms)]
        )
        return bool(int(rc or 0))

    async def check_stalled(self) -> tuple[int, int]:
        requeued, failed = await self._scripts.stalled(
            keys=[
                self._key("stalled-check"),
                self._key("active"),
                self._key("wait"),
                self._key("failed"),
                self._key("job:"),
            ],
            args=[
                _now_ms(),
                int(self._cfg.stalled_interval_ms),
                int(self._cfg.max_stalled_count),
                int(self._cfg.keep_failed_age_s) * 1000,
            ],
        )
        if int(requeued) or int(failed):
            logger.warning(
                "redis_queue_stalled_jobs",
                queue=self.name,
                requeued=int(requeued),
                failed=int(failed),
            )
        return int(requeued), int(failed)


class RedisWorker:
    """
    Push-model consumer: claims jobs from one broker queue and runs `processor`
    on up to `concurrency` of them at a time.

    A processor that returns completes the job; one that raises fails it (retried
    unless the exception is a NonRetryableJobError).
    """

    def __init__(
        self,
        queue: BrokerQueue,
        processor: JobProcessor,
        *,
        concurrency: int = 1,
        rate_limit: RateLimit | None = None,
        lock_ttl_ms: int = 30_000,
        stalled_interval_ms: int = 30_000,
        idle_poll_s: float = 0.25,
    ) -> None:
        self._queue = queue
        self._processor = processor
        self._concurrency = max(1, int(concurrency))
        self._rate_limit = rate_limit
        self._lock_refresh_s = max(0.5, float(lock_ttl_ms) / 2000.0)
        self._stalled_interval_s = max(1.0, float(stalled_interval_ms) / 1000.0)
        self._idle_poll_s = float(idle_poll_s)
        self._sem = asyncio.Semaphore(self._concurrency)
        self._closing = asyncio.Event()
        self._inflight: set[asyncio.Task] = set()

    @property
    def queue_name(self) -> str:
        return self._queue.name

    async def _sleep(self, seconds: float) -> None:
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._closing.wait(), timeout=max(0.0, seconds))

    async def run(self) -> None:
        logger.info(
            "redis_worker_started",
            queue=self._queue.name,
            concurrency=self._concurrency,
            rate_max=self._rate_limit.max if self._rate_limit else None,
        )
        stalled = asyncio.create_task(self._stalled_loop(), name=f"queue.redis.stalled:{self._queue.name}")
        try:
            while not self._closing.is_set():
                await self._sem.acquire()
                if self._closing.is_set():
                    self._sem.release()
                    break
                token = _lock_token()
                try:
                    job, wait_ms = await self._queue.claim(token, self._rate_limit)
                except asyncio.CancelledError:
                    self._sem.release()
                    raise
                except Exception as ex:
                    self._sem.release()
                    logger.warning("redis_worker_claim_error", queue=self._queue.name, error=str(ex))
                    await self._sleep(1.0)
                    continue
                if job is None:
                    self._sem.release()
                    await self._sleep(wait_ms / 1000.0 if wait_ms else self._idle_poll_s)
                    continue
                task = asyncio.create_task(self._process(job, token), name=f"queue.redis.job:{job.id}")
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
        finally:
            stalled.cancel()
            with suppress(asyncio.CancelledError):
                await stalled
            if self._inflight:
                await asyncio.gather(*list(self._inflight), return_exceptions=True)
            logger.info("redis_worker_stopped", queue=self._queue.name)

    async def close(self) -> None:
        self._closing.set()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _keep_lock(self, job_id: str, token: str) -> None:
        while True:
            await asyncio.sleep(self._lock_refresh_s)
            try:
                if not await self._queue.extend_lock(job_id, token):
                    logger.warning("redis_worker_lock_lost", job_id=job_id, queue=self._queue.name)
                    return
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.warning("redis_worker_lock_refresh_failed", job_id=job_id, error=str(ex))

    async def _process(self, job: ClaimedJob, token: str) -> None:
        refresh = asyncio.create_task(self._keep_lock(job.id, token))
        try:
            try:
                result = await self._processor(job)
            except Exception as ex:
                retry = not isinstance(ex, NonRetryableJobError)
                await self._queue.fail(job.id, token, str(ex) or type(ex).__name__, retry=retry)
            else:
                await self._queue.complete(job.id, token, result)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            # Broker unreachable while reporting; the stalled check requeues the job later.
            logger.error("redis_worker_report_failed", job_id=job.id, queue=self._queue.name, error=str(ex))
        finally:
            refresh.cancel()
            with suppress(asyncio.CancelledError):
                await refresh
            self._sem.release()

    async def _stalled_loop(self) -> None:
        while not self._closing.is_set():
            try:
                await self._queue.check_stalled()
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.warning("redis_worker_stalled_check_failed", queue=self._queue.name, error=str(ex))
            await self._sleep(self._stalled_interval_s)


class RedisQueue:
    """
    Push-model backend on a Redis broker.

    Redis is the source of truth for queue state, per-job locks and the rate
    limiter; every state change is a single Lua script so concurrent workers
    never observe a half-moved job.
    """

    mode = "redis"

    def __init__(
        self,
        *,
        redis_url: str,
        config: RedisQueueConfig | None = None,
        client=None,
    ) -> None:
        self._redis_url = str(redis_url or "").strip()
        self._cfg = config or RedisQueueConfig()
        self._client = client
        self._scripts: _Scripts | None = None
        self._queues: dict[str, BrokerQueue] = {}
        self._workers: list[RedisWorker] = []
        self._healthy = False
        self._last_error = ""

    @property
    def config(self) -> RedisQueueConfig:
        return self._cfg

    @property
    def configured(self) -> bool:
        return bool(self._redis_url) or self._client is not None

    def _redis(self):
        if self._client is not None:
            return self._client
        if not self._redis_url:
            return None
        import redis.asyncio as redis
        from redis.asyncio.retry import Retry
        from redis.backoff import NoBackoff

        # Connection retries are driven by initialize(); the client itself must fail fast.
        self._client = redis.Redis.from_url(
            self._redis_url,
            decode_responses=True,
            socket_connect_timeout=2.0,
            retry=Retry(NoBackoff(), 0),
        )
        return self._client

    def status(self) -> QueueStatus:
        configured = self.configured
        if not configured:
            return QueueStatus(
                mode="none",
                redis_configured=False,
                redis_ok=False,
                detail="REDIS_URL/REDIS_HOST not set",
            )
        if self._healthy:
            return QueueStatus(mode="redis", redis_configured=True, redis_ok=True, detail="redis queue active")
        return QueueStatus(
            mode="none",
            redis_configured=True,
            redis_ok=False,
            detail=self._last_error or "redis unavailable",
            banner="Redis unavailable; using fallback queue",
        )

    async def initialize(self) -> bool:
        if self._healthy:
            return True
        r = self._redis()
        if r is None:
            self._last_error = "redis not configured"
            return False
        attempts = max(1, int(self._cfg.connect_attempts))
        for n in range(1, attempts + 1):
            try:
                await r.ping()
            except Exception as ex:
                # Do not log the URL (may contain credentials).
                self._last_error = str(ex)
                logger.warning("redis_queue_connect_failed", attempt=n, attempts=attempts, error=str(ex))
                if n < attempts:
                    await asyncio.sleep(min(n * 1000, int(self._cfg.connect_backoff_cap_ms)) / 1000.0)
                continue
            self._scripts = _Scripts(r)
            self._healthy = True
            self._last_error = ""
            logger.info("redis_queue_initialized", prefix=self._cfg.prefix, attempt=n)
            return True

        await self._close_client()
        return False

    async def is_available(self) -> bool:
        r = self._redis()
        if r is None:
            return False
        try:
            return bool(await r.ping())
        except Exception:
            return False

    def get_queue(self, queue_name: str) -> BrokerQueue:
        if not self._healthy or self._scripts is None:
            raise QueueUnavailableError("redis queue not initialized")
        q = self._queues.get(queue_name)
        if q is None:
            q = BrokerQueue(self._client, self._scripts, queue_name, self._cfg)
            self._queues[queue_name] = q
            logger.info("redis_queue_created", queue=queue_name)
        return q

    async def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: Any,
        options: JobOptions | Mapping[str, Any] | None = None,
    ) -> AddJobResult:
        opts = JobOptions.coerce(options, default_attempts=self._cfg.default_attempts)
        return await self.get_queue(queue_name).add(job_type, payload, opts)

    async def get_job_status(self, queue_name: str, job_id: str) -> JobInfo:
        return await self.get_queue(queue_name).get_job(str(job_id))

    async def get_queue_metrics(self, queue_name: str) -> QueueMetrics:
        return await self.get_queue(queue_name).metrics()

    def create_worker(
        self,
        queue_name: str,
        processor: JobProcessor,
        *,
        concurrency: int = 1,
        rate_limit: RateLimit | None = None,
    ) -> RedisWorker:
        worker = RedisWorker(
            self.get_queue(queue_name),
            processor,
            concurrency=concurrency,
            rate_limit=rate_limit,
            lock_ttl_ms=self._cfg.lock_ttl_ms,
            stalled_interval_ms=self._cfg.stalled_interval_ms,
        )
        self._workers.append(worker)
        return worker

    async def _close_client(self) -> None:
        if self._client is not None:
            with suppress(Exception):
                await self._client.aclose()
        self._client = None

    async def close(self) -> None:
        for w in list(self._workers):
            await w.close()
        self._workers.clear()
        self._queues.clear()
        self._scripts = None
        self._healthy = False
        await self._close_client()
        logger.info("redis_queue_closed")
