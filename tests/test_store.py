"""Tests for the Redis buffer store."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chatagg.buffer.store import BufferStore, StorageError
from chatagg.bus.events import Channel, ConversationKey, Fragment
from chatagg.utils.helpers import now_ms


@pytest.fixture
def store(redis):
    return BufferStore(redis, window_seconds=20.0)


class TestAppendAndDrain:
    @pytest.mark.asyncio
    async def test_drain_returns_fragments_in_append_order(self, store, key):
        for text in ("a", "b", "c"):
            await store.append(key, Fragment(text))

        drained = await store.drain(key)

        assert [f.text for f in drained] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_append_returns_length(self, store, key):
        assert await store.append(key, Fragment("a")) == 1
        assert await store.append(key, Fragment("b")) == 2
        assert await store.length(key) == 2

    @pytest.mark.asyncio
    async def test_second_drain_is_empty(self, store, key):
        await store.append(key, Fragment("a"))

        assert len(await store.drain(key)) == 1
        assert await store.drain(key) == []

    @pytest.mark.asyncio
    async def test_drain_removes_marker_and_deadline(self, store, redis, key):
        await store.append(key, Fragment("a"))
        await store.mark_active(key, "w1", ttl=25)

        await store.drain(key)

        assert await redis.exists(key.buffer_key(), key.marker_key()) == 0
        assert await store.pending_count() == 0

    @pytest.mark.asyncio
    async def test_conversations_are_isolated(self, store):
        web = ConversationKey(Channel.WEB, "u1")
        wa = ConversationKey(Channel.WHATSAPP, "u1")
        await store.append(web, Fragment("web"))
        await store.append(wa, Fragment("wa"))

        assert [f.text for f in await store.drain(web)] == ["web"]
        assert await store.length(wa) == 1

    @pytest.mark.asyncio
    async def test_undecodable_entries_are_skipped(self, store, redis, key):
        await redis.rpush(key.buffer_key(), "not json")
        await store.append(key, Fragment("ok"))

        assert [f.text for f in await store.drain(key)] == ["ok"]

    @pytest.mark.asyncio
    async def test_key_prefix_applies_to_every_key(self, redis, key):
        store = BufferStore(redis, key_prefix="t:")
        await store.append(key, Fragment("a"))
        await store.mark_active(key, "w1", ttl=25)

        assert await redis.llen("t:chat:web:u1") == 1
        assert await redis.get("t:start:web:u1") == "w1"
        assert await redis.zcard("t:aggregator:deadlines") == 1


class TestMarker:
    @pytest.mark.asyncio
    async def test_mark_active_is_set_if_absent(self, store, redis, key):
        assert await store.mark_active(key, "w1", ttl=25) is True
        assert await store.mark_active(key, "w2", ttl=25) is False
        assert await store.window_id(key) == "w1"

        ttl = await redis.pttl(key.marker_key())
        assert 0 < ttl <= 25_000

    @pytest.mark.asyncio
    async def test_stale_window_does_not_drain(self, store, key):
        await store.append(key, Fragment("new window"))
        await store.mark_active(key, "current", ttl=25)

        assert await store.drain(key, window_id="old") == []
        assert await store.length(key) == 1

    @pytest.mark.asyncio
    async def test_matching_window_drains(self, store, key):
        await store.append(key, Fragment("a"))
        await store.mark_active(key, "w1", ttl=25)

        assert len(await store.drain(key, window_id="w1")) == 1

    @pytest.mark.asyncio
    async def test_expired_marker_still_drains(self, store, key):
        await store.append(key, Fragment("a"))

        assert len(await store.drain(key, window_id="w1")) == 1


class TestDeadlines:
    @pytest.mark.asyncio
    async def test_first_append_sets_deadline(self, store, redis, key):
        before = now_ms()
        await store.append(key, Fragment("a"))
        first = await redis.zscore(store.deadlines_key, key.member)

        await store.append(key, Fragment("b"))
        second = await redis.zscore(store.deadlines_key, key.member)

        assert first == second
        assert before + 20_000 <= first <= now_ms() + 20_000

    @pytest.mark.asyncio
    async def test_due_keys(self, redis, key):
        store = BufferStore(redis, window_seconds=0.0)
        await store.append(key, Fragment("a"))

        assert await store.due_keys(now_ms() + 1) == [key]
        assert await store.due_keys(now_ms() - 60_000) == []

    @pytest.mark.asyncio
    async def test_malformed_members_are_dropped(self, store, redis):
        await redis.zadd(store.deadlines_key, {"garbage": 0})

        assert await store.due_keys(now_ms()) == []
        assert await redis.zcard(store.deadlines_key) == 0


class TestFailures:
    @pytest.fixture
    def broken(self):
        redis = AsyncMock()
        redis.llen.side_effect = RedisConnectionError("down")
        redis.set.side_effect = RedisConnectionError("down")
        redis.ping.side_effect = RedisConnectionError("down")
        redis.zrangebyscore.side_effect = RedisConnectionError("down")
        return BufferStore(redis)

    @pytest.mark.asyncio
    async def test_errors_become_storage_error(self, broken, key):
        with pytest.raises(StorageError):
            await broken.length(key)
        with pytest.raises(StorageError):
            await broken.mark_active(key, "w1", ttl=1)
        with pytest.raises(StorageError):
            await broken.due_keys(0)

    @pytest.mark.asyncio
    async def test_ping_reports_down(self, broken):
        assert await broken.ping() is False

