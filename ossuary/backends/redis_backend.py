"""Redis adapter: document-store style queues on Redis hashes.

Features:
- One hash per message, insertion order kept in a sorted set
- Atomic claim via a server-side script (find-and-modify returning the
  pre-update record)
- Handle-checked deletes; stale handles never delete
- Scheduled and repeating messages
- Claim release after a visibility timeout
- Native await_messages() blocking on a per-queue wake-up list
- Connection pooling with automatic reconnection
- Health checks

Key layout (``prefix`` defaults to ``ossuary``)::

    {prefix}:queues                  set of queue names
    {prefix}:queue:{name}:seq        sequence counter
    {prefix}:queue:{name}:ids        sorted set, message id -> sequence
    {prefix}:queue:{name}:msg:{id}   hash holding one message
    {prefix}:queue:{name}:notify     wake-up list for blocked receivers
    {prefix}:queue:{name}:series     hash, series id -> pending occurrence id
"""

import asyncio
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse, urlunparse

from ossuary.backends.base import BaseAdapter
from ossuary.core.capabilities import AwaitHandler
from ossuary.core.claim import claim_messages
from ossuary.core.errors import QueueNotFoundError
from ossuary.core.message import Envelope, StoredMessage
from ossuary.core.params import (
    CLASS_FILTER,
    REPEATING_INTERVAL,
    SCHEDULE,
    ReceiveParameters,
    SendParameters,
)

logger = logging.getLogger("ossuary.redis")

# KEYS[1] message hash. ARGV[1] handle, ARGV[2] claimed_at.
# Claims only an unclaimed record; returns its pre-update fields.
_CLAIM_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'handle')
if current == false or current ~= '' then
    return false
end
local snapshot = redis.call('HGETALL', KEYS[1])
redis.call('HSET', KEYS[1], 'handle', ARGV[1], 'claimed_at', ARGV[2])
return snapshot
"""

# KEYS[1] message hash, KEYS[2] ids sorted set. ARGV[1] handle, ARGV[2] id.
_DELETE_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'handle')
if current == false or current ~= ARGV[1] then
    return 0
end
redis.call('DEL', KEYS[1])
redis.call('ZREM', KEYS[2], ARGV[2])
return 1
"""

# KEYS[1] message hash. ARGV[1] cutoff: claims at or before it are released.
_RELEASE_SCRIPT = """
local claimed_at = redis.call('HGET', KEYS[1], 'claimed_at')
if claimed_at and claimed_at ~= '' and tonumber(claimed_at) <= tonumber(ARGV[1]) then
    redis.call('HSET', KEYS[1], 'handle', '', 'claimed_at', '')
    return 1
end
return 0
"""

# KEYS[1] series hash, KEYS[2] follow-up hash, KEYS[3] ids sorted set,
# KEYS[4] sequence counter, KEYS[5] wake-up list.
# ARGV[1] series id, ARGV[2] claimed occurrence id, ARGV[3] follow-up id,
# ARGV[4..] follow-up hash fields and values.
# Stores the follow-up only while the claimed occurrence is the series head.
_REARM_SCRIPT = """
if redis.call('HGET', KEYS[1], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call('HSET', KEYS[1], ARGV[1], ARGV[3])
redis.call('HSET', KEYS[2], unpack(ARGV, 4))
local sequence = redis.call('INCR', KEYS[4])
redis.call('ZADD', KEYS[3], sequence, ARGV[3])
redis.call('RPUSH', KEYS[5], ARGV[3])
redis.call('LTRIM', KEYS[5], 0, 0)
return 1
"""

# KEYS[1] series hash, KEYS[2] ids sorted set. ARGV[1] series id,
# ARGV[2] message key prefix. Ends the series and removes its pending
# occurrence unless it is claimed.
_CANCEL_SCRIPT = """
local pending = redis.call('HGET', KEYS[1], ARGV[1])
if not pending then
    return 0
end
redis.call('HDEL', KEYS[1], ARGV[1])
local key = ARGV[2] .. pending
local handle = redis.call('HGET', key, 'handle')
if handle == false or handle ~= '' then
    return 0
end
redis.call('DEL', key)
redis.call('ZREM', KEYS[2], pending)
return 1
"""


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except Exception:
        return "<url>"


def _optional(value: Any) -> str:
    return "" if value is None else repr(value)


def encode_message(stored: StoredMessage) -> dict[str, str]:
    """Flatten a StoredMessage into Redis hash fields."""
    return {
        "id": stored.id,
        "series_id": stored.series_id or "",
        "content": json.dumps(stored.content),
        "metadata": json.dumps(stored.metadata),
        "message_class": stored.message_class,
        "handle": stored.handle or "",
        "claimed_at": _optional(stored.claimed_at),
        "created_at": repr(stored.created_at),
        "schedule": _optional(stored.schedule),
        "repeating_interval": _optional(stored.repeating_interval),
        "options": json.dumps(stored.options),
    }


def decode_message(raw: Mapping[str, str]) -> StoredMessage:
    """Decode Redis hash fields into a StoredMessage."""

    def optional(key: str, cast):
        value = raw.get(key, "")
        return cast(value) if value != "" else None

    return StoredMessage(
        id=raw["id"],
        series_id=raw.get("series_id") or None,
        content=json.loads(raw["content"]),
        metadata=json.loads(raw.get("metadata") or "{}"),
        message_class=raw["message_class"],
        handle=raw.get("handle") or None,
        claimed_at=optional("claimed_at", float),
        created_at=float(raw["created_at"]),
        schedule=optional("schedule", float),
        repeating_interval=optional("repeating_interval", int),
        options=json.loads(raw.get("options") or "{}"),
    )


@dataclass
class BackendHealth:
    """Health check result."""

    healthy: bool
    latency_ms: float
    details: dict[str, Any]


@dataclass
class RedisMetrics:
    """Redis adapter metrics."""

    messages_sent: int = 0
    messages_received: int = 0
    messages_deleted: int = 0
    stale_deletes: int = 0
    claims_released: int = 0
    reconnections: int = 0


class RedisAdapter(BaseAdapter):
    """Redis-backed adapter with every optional capability.

    Args:
        options: Adapter options. Recognised keys:
            url: Redis connection URL (``driver_options["url"]`` wins).
            prefix: Key namespace.
            pool_size: Connection pool size.
            visibility_timeout: Seconds before an undeleted claim is released.
            block_timeout: Seconds a native await blocks before polling again.
            scan_batch: Ids fetched per round trip when selecting candidates.
    """

    name = "redis"
    default_options = {
        "driver_options": {},
        "url": "redis://localhost:6379",
        "prefix": "ossuary",
        "pool_size": 10,
        "visibility_timeout": None,
        "block_timeout": 1.0,
        "scan_batch": 100,
    }

    def __init__(self, options: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        super().__init__(options, **kwargs)
        self._url = self._options["driver_options"].get("url") or self._options["url"]
        self._url_safe = _sanitize_url(self._url)
        self.prefix = self._options["prefix"]

        self._redis: Any = None
        self._connected = False
        self._scripts: dict[str, Any] = {}
        self._metrics = RedisMetrics()
        self._conn_lock = asyncio.Lock()

    @property
    def redis_url(self) -> str:
        return self._url

    @property
    def metrics(self) -> RedisMetrics:
        return self._metrics

    @property
    def visibility_timeout(self) -> float | None:
        return self._options.get("visibility_timeout")

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _queues_key(self) -> str:
        return f"{self.prefix}:queues"

    def _queue_key(self, name: str, suffix: str) -> str:
        return f"{self.prefix}:queue:{name}:{suffix}"

    def _message_key(self, name: str, message_id: str) -> str:
        return f"{self.prefix}:queue:{name}:msg:{message_id}"

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _get_client(self) -> Any:
        """Get Redis client with connection pooling.

        Connection state changes happen under _conn_lock so concurrent
        callers never create duplicate pools.
        """
        try:
            from redis.asyncio import ConnectionPool, Redis
        except ImportError as e:
            raise ImportError("Install redis: pip install ossuary[redis]") from e

        if self._redis is not None:
            try:
                await self._redis.ping()
                return self._redis
            except Exception as e:
                logger.warning(f"Redis connection lost: {e}, reconnecting...")

        async with self._conn_lock:
            # Another coroutine may have reconnected while we waited
            if self._redis is not None:
                try:
                    await self._redis.ping()
                    return self._redis
                except Exception:
                    pass

            old_redis = self._redis
            if old_redis is not None:
                try:
                    await old_redis.aclose()
                except Exception as close_err:
                    logger.debug(f"Error closing old connection: {close_err}")

            is_reconnection = self._connected

            pool = ConnectionPool.from_url(
                self._url, max_connections=self._options["pool_size"], decode_responses=True
            )
            new_redis = Redis(connection_pool=pool)

            try:
                await new_redis.ping()
            except Exception:
                try:
                    await new_redis.aclose()
                except Exception as close_err:
                    logger.debug(f"Error closing failed connection: {close_err}")
                raise

            self._redis = new_redis
            self._connected = True
            self._scripts = {
                "claim": new_redis.register_script(_CLAIM_SCRIPT),
                "delete": new_redis.register_script(_DELETE_SCRIPT),
                "release": new_redis.register_script(_RELEASE_SCRIPT),
                "rearm": new_redis.register_script(_REARM_SCRIPT),
                "cancel": new_redis.register_script(_CANCEL_SCRIPT),
            }
            if is_reconnection:
                self._metrics.reconnections += 1
                logger.info(f"Reconnected to Redis at {self._url_safe}")
            else:
                logger.info(f"Connected to Redis at {self._url_safe}")

            return self._redis

    async def connect(self) -> bool:
        await self._get_client()
        return True

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._scripts = {}
            logger.info("Closed Redis connection")

    async def health(self) -> BackendHealth:
        """Check backend health."""
        start = time.monotonic()
        try:
            redis = await self._get_client()
            await redis.ping()
            queues = await redis.scard(self._queues_key())
            return BackendHealth(
                healthy=True,
                latency_ms=(time.monotonic() - start) * 1000,
                details={
                    "queues": queues,
                    "prefix": self.prefix,
                    "metrics": {
                        "sent": self._metrics.messages_sent,
                        "received": self._metrics.messages_received,
                        "deleted": self._metrics.messages_deleted,
                        "released": self._metrics.claims_released,
                    },
                },
            )
        except Exception as e:
            return BackendHealth(
                healthy=False,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"error": str(e)},
            )

    # ------------------------------------------------------------------
    # Queue management
    # ------------------------------------------------------------------

    async def queue_exists(self, name: str) -> bool:
        redis = await self._get_client()
        return bool(await redis.sismember(self._queues_key(), name))

    async def _require_queue(self, name: str) -> Any:
        redis = await self._get_client()
        if not await redis.sismember(self._queues_key(), name):
            raise QueueNotFoundError(name)
        return redis

    async def create_queue(self, name: str) -> bool:
        redis = await self._get_client()
        created = bool(await redis.sadd(self._queues_key(), name))
        if created:
            logger.info(f"Created queue {name}", extra={"queue": name, "adapter": self.name})
        return created

    async def delete_queue(self, name: str) -> bool:
        redis = await self._get_client()
        if not await redis.sismember(self._queues_key(), name):
            return False

        ids = await redis.zrange(self._queue_key(name, "ids"), 0, -1)
        async with redis.pipeline(transaction=True) as pipe:
            for message_id in ids:
                pipe.delete(self._message_key(name, message_id))
            pipe.delete(
                self._queue_key(name, "ids"),
                self._queue_key(name, "seq"),
                self._queue_key(name, "notify"),
                self._queue_key(name, "series"),
            )
            pipe.srem(self._queues_key(), name)
            await pipe.execute()
        return True

    async def list_queues(self) -> list[str]:
        redis = await self._get_client()
        return sorted(await redis.smembers(self._queues_key()))

    async def count_messages(self, queue) -> int:
        """Return the number of unclaimed messages, scheduled ones included."""
        redis = await self._require_queue(queue.name)
        await self._release_expired(queue.name, time.time())

        count = 0
        async for batch in self._scan_fields(redis, queue.name, ("handle",)):
            count += sum(1 for _, (handle,) in batch if handle == "")
        return count

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def available_send_params(self) -> frozenset[str]:
        return frozenset({SCHEDULE, REPEATING_INTERVAL})

    def available_receive_params(self) -> frozenset[str]:
        return frozenset({CLASS_FILTER})

    async def _store(self, redis: Any, queue_name: str, stored: StoredMessage) -> None:
        sequence = await redis.incr(self._queue_key(queue_name, "seq"))
        notify_key = self._queue_key(queue_name, "notify")
        async with redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._message_key(queue_name, stored.id), mapping=encode_message(stored))
            pipe.zadd(self._queue_key(queue_name, "ids"), {stored.id: sequence})
            if stored.series_id is not None:
                pipe.hset(self._queue_key(queue_name, "series"), stored.series_id, stored.id)
            pipe.rpush(notify_key, stored.id)
            pipe.ltrim(notify_key, 0, 0)
            await pipe.execute()

    async def _rearm(self, queue_name: str, stored: StoredMessage, now: float) -> bool:
        follow_up = self.next_occurrence(stored, now)
        if follow_up is None:
            return False
        fields = [part for item in encode_message(follow_up).items() for part in item]
        rearmed = await self._scripts["rearm"](
            keys=[
                self._queue_key(queue_name, "series"),
                self._message_key(queue_name, follow_up.id),
                self._queue_key(queue_name, "ids"),
                self._queue_key(queue_name, "seq"),
                self._queue_key(queue_name, "notify"),
            ],
            args=[stored.series_id, stored.id, follow_up.id, *fields],
        )
        if rearmed:
            logger.debug(
                f"Re-armed repeating message {stored.id} as {follow_up.id}",
                extra={"queue": queue_name, "message_id": follow_up.id},
            )
        return bool(rearmed)

    async def send_message(
        self,
        queue,
        envelope: Envelope,
        params: SendParameters | None = None,
    ) -> Envelope:
        redis = await self._require_queue(queue.name)
        params = SendParameters.coerce(params)

        self.clean_delivery_record(queue, envelope)
        stored = self.build_stored_message(queue, envelope, params, self.new_message_id())
        await self._store(redis, queue.name, stored)
        self._metrics.messages_sent += 1

        self.embed_delivery_record(queue, envelope, self.stored_to_record(queue, stored, queue.name))
        logger.debug(
            f"Stored message {stored.id}",
            extra={"queue": queue.name, "message_id": stored.id},
        )
        return envelope

    async def receive_messages(
        self,
        queue,
        max_messages: int | None = None,
        params: ReceiveParameters | None = None,
    ) -> list[Envelope]:
        max_messages = self.normalize_max_messages(max_messages)
        await self._require_queue(queue.name)
        now = time.time()

        await self._release_expired(queue.name, now)
        claims = await claim_messages(self, queue.name, max_messages, params, now)

        envelopes = []
        for claim in claims:
            await self._rearm(queue.name, claim.message, now)
            envelopes.append(self.claim_to_envelope(queue, claim, queue.name))

        self._metrics.messages_received += len(envelopes)
        return envelopes

    async def delete_message(self, queue, envelope: Envelope) -> bool:
        """Delete a message only if the envelope holds the current claim.

        A record stripped of ``repeating_interval`` also ends its series and
        removes the pending occurrence unless that one is claimed.
        """
        await self._require_queue(queue.name)
        record = self.get_delivery_record(queue, envelope)
        if record is None:
            return False

        deleted = await self._scripts["delete"](
            keys=[
                self._message_key(queue.name, record.message_id),
                self._queue_key(queue.name, "ids"),
            ],
            args=[record.handle or "", record.message_id],
        )
        if self.cancels_series(record):
            deleted += await self._scripts["cancel"](
                keys=[self._queue_key(queue.name, "series"), self._queue_key(queue.name, "ids")],
                args=[record.series_id, self._message_key(queue.name, "")],
            )
        if deleted:
            self._metrics.messages_deleted += deleted
            return True

        self._metrics.stale_deletes += 1
        logger.debug(
            f"Refused delete of {record.message_id}: handle does not match current claim",
            extra={"queue": queue.name, "message_id": record.message_id},
        )
        return False

    async def await_messages(
        self,
        queue,
        handler: AwaitHandler,
        params: ReceiveParameters | None = None,
        max_messages: int | None = None,
    ) -> None:
        """Receive in a loop, blocking on the wake-up list while the queue is empty.

        Batches hold at most ``max_messages``, defaulting to the queue's
        ``await_max_messages``.
        """
        batch_size = max_messages or queue.options.await_max_messages
        notify_key = self._queue_key(queue.name, "notify")
        while True:
            messages = await self.receive_messages(queue, batch_size, params)
            if await handler(messages):
                return
            if not messages:
                redis = await self._get_client()
                await redis.blpop([notify_key], timeout=self._options["block_timeout"])

    # ------------------------------------------------------------------
    # Claim store primitive
    # ------------------------------------------------------------------

    async def _scan_fields(self, redis: Any, queue_name: str, fields: tuple[str, ...]):
        """Yield batches of (id, field values) in natural order."""
        ids_key = self._queue_key(queue_name, "ids")
        batch_size = self._options["scan_batch"]
        start = 0
        while True:
            ids = await redis.zrange(ids_key, start, start + batch_size - 1)
            if not ids:
                return
            async with redis.pipeline(transaction=False) as pipe:
                for message_id in ids:
                    pipe.hmget(self._message_key(queue_name, message_id), list(fields))
                values = await pipe.execute()
            yield list(zip(ids, values))
            start += batch_size

    async def find_candidates(
        self,
        queue_name: str,
        limit: int,
        params: ReceiveParameters,
        now: float,
    ) -> list[str]:
        redis = await self._get_client()
        candidates: list[str] = []
        fields = ("handle", "schedule", "message_class")
        async for batch in self._scan_fields(redis, queue_name, fields):
            for message_id, (handle, schedule, message_class) in batch:
                if handle is None or handle != "":
                    continue
                if schedule and float(schedule) > now:
                    continue
                if params.class_filter and message_class != params.class_filter:
                    continue
                candidates.append(message_id)
                if len(candidates) >= limit:
                    return candidates
        return candidates

    async def find_and_modify(
        self,
        queue_name: str,
        message_id: str,
        handle: str,
        claimed_at: float,
    ) -> StoredMessage | None:
        await self._get_client()
        flat = await self._scripts["claim"](
            keys=[self._message_key(queue_name, message_id)],
            args=[handle, repr(claimed_at)],
        )
        if not flat:
            return None
        return decode_message(dict(zip(flat[::2], flat[1::2])))

    async def _release_expired(self, queue_name: str, now: float) -> int:
        timeout = self.visibility_timeout
        if timeout is None:
            return 0

        redis = await self._get_client()
        cutoff = now - timeout
        released = 0
        async for batch in self._scan_fields(redis, queue_name, ("claimed_at",)):
            for message_id, (claimed_at,) in batch:
                if not claimed_at or float(claimed_at) > cutoff:
                    continue
                released += await self._scripts["release"](
                    keys=[self._message_key(queue_name, message_id)],
                    args=[repr(cutoff)],
                )
        if released:
            self._metrics.claims_released += released
            logger.info(
                f"Released {released} expired claim(s)",
                extra={"queue": queue_name, "adapter": self.name},
            )
        return released
