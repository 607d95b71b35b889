"""
Redis-backed buffer store.

Layout (all keys share an optional prefix):
    chat:<channel>:<user>      list of JSON fragments, append order
    start:<channel>:<user>     window marker, value = window id, PX ttl
    aggregator:deadlines       sorted set, member = <channel>:<user>,
                               score = flush deadline in unix ms
"""

from __future__ import annotations

from typing import Final

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from chatagg.bus.events import ConversationKey, Fragment
from chatagg.utils.helpers import now_ms


DEADLINES_KEY: Final[str] = "aggregator:deadlines"
MAX_WATCH_RETRIES: Final[int] = 5


class StorageError(Exception):
    """The buffer store is unreachable or failed; the caller should retry."""


class BufferStore:
    """
    Durable ordered holding area for fragments, plus the window marker.

    Only atomic primitives are used for shared state:
        - append + deadline registration in one MULTI
        - marker creation via SET NX
        - drain via WATCH / MULTI
    """

    def __init__(
        self,
        redis: Redis,
        window_seconds: float = 20.0,
        key_prefix: str = "",
    ):
        self.redis = redis
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix

    @property
    def deadlines_key(self) -> str:
        return f"{self.key_prefix}{DEADLINES_KEY}"

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(self, key: ConversationKey, fragment: Fragment) -> int:
        """
        Add a fragment to the tail of the conversation's sequence.

        Also registers the shared flush deadline if none exists yet, so a
        window outlives the process that opened it.

        Returns:
            New sequence length.
        """
        deadline = now_ms() + int(self.window_seconds * 1000)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.rpush(key.buffer_key(self.key_prefix), fragment.to_json())
                pipe.zadd(self.deadlines_key, {key.member: deadline}, nx=True)
                length, _ = await pipe.execute()
        except RedisError as e:
            logger.error("Buffer append failed | key={} err={}", key.member, e)
            raise StorageError(f"append failed for {key.member}: {e}") from e

        return int(length)

    async def mark_active(self, key: ConversationKey, window_id: str, ttl: float) -> bool:
        """
        Create the window marker if absent.

        Returns:
            True if this call opened the window.
        """
        try:
            created = await self.redis.set(
                key.marker_key(self.key_prefix),
                window_id,
                nx=True,
                px=max(1, int(ttl * 1000)),
            )
        except RedisError as e:
            logger.error("Marker set failed | key={} err={}", key.member, e)
            raise StorageError(f"mark_active failed for {key.member}: {e}") from e

        return bool(created)

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain(self, key: ConversationKey, window_id: str | None = None) -> list[Fragment]:
        """
        Atomically read and delete the sequence, marker and deadline.

        When ``window_id`` is given and the marker belongs to another live
        window, nothing is drained: the caller is a stale timer.

        Returns:
            Fragments in storage order (empty if nothing was pending).
        """
        buffer_key = key.buffer_key(self.key_prefix)
        marker_key = key.marker_key(self.key_prefix)

        try:
            for _ in range(MAX_WATCH_RETRIES):
                try:
                    raw = await self._drain_once(key, buffer_key, marker_key, window_id)
                except WatchError:
                    logger.debug("Drain raced with a writer, retrying | key={}", key.member)
                    continue
                return self._decode(key, raw)
        except RedisError as e:
            logger.error("Buffer drain failed | key={} err={}", key.member, e)
            raise StorageError(f"drain failed for {key.member}: {e}") from e

        raise StorageError(f"drain for {key.member} kept racing with writers")

    async def _drain_once(
        self,
        key: ConversationKey,
        buffer_key: str,
        marker_key: str,
        window_id: str | None,
    ) -> list[str]:
        async with self.redis.pipeline(transaction=True) as pipe:
            await pipe.watch(marker_key)

            if window_id is not None:
                current = await pipe.get(marker_key)
                if current is not None and current != window_id:
                    logger.debug(
                        "Stale window, skipping drain | key={} window={} current={}",
                        key.member,
                        window_id,
                        current,
                    )
                    await pipe.unwatch()
                    return []

            pipe.multi()
            pipe.lrange(buffer_key, 0, -1)
            pipe.delete(buffer_key, marker_key)
            pipe.zrem(self.deadlines_key, key.member)
            raw, _, _ = await pipe.execute()

        return list(raw or [])

    def _decode(self, key: ConversationKey, raw: list[str]) -> list[Fragment]:
        fragments: list[Fragment] = []
        for item in raw:
            try:
                fragments.append(Fragment.from_json(item))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping undecodable fragment | key={} err={}", key.member, e)
        return fragments

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def length(self, key: ConversationKey) -> int:
        try:
            return int(await self.redis.llen(key.buffer_key(self.key_prefix)))
        except RedisError as e:
            raise StorageError(f"length failed for {key.member}: {e}") from e

    async def window_id(self, key: ConversationKey) -> str | None:
        try:
            return await self.redis.get(key.marker_key(self.key_prefix))
        except RedisError as e:
            raise StorageError(f"window lookup failed for {key.member}: {e}") from e

    async def due_keys(self, before_ms: int) -> list[ConversationKey]:
        """Conversations whose shared deadline is at or before ``before_ms``."""
        keys: list[ConversationKey] = []
        try:
            members = await self.redis.zrangebyscore(self.deadlines_key, "-inf", before_ms)
            for member in members:
                try:
                    keys.append(ConversationKey.parse(member))
                except ValueError:
                    logger.warning("Dropping malformed deadline member | member={}", member)
                    await self.redis.zrem(self.deadlines_key, member)
        except RedisError as e:
            raise StorageError(f"deadline scan failed: {e}") from e
        return keys

    async def pending_count(self) -> int:
        try:
            return int(await self.redis.zcard(self.deadlines_key))
        except RedisError as e:
            raise StorageError(f"pending count failed: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            logger.warning("Redis ping failed | err={}", e)
            return False
