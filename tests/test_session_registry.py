"""Session registry behaviour over the memory store and a Redis hash."""

import fnmatch
from datetime import timedelta

import pytest

from playground.service.errors import NotFoundError
from playground.service.sessions import RedisSessionRegistry, SessionRegistry
from playground.storage.memory import MemoryStore
from playground.storage.models import utcnow
from playground.storage.redis_cache import RedisCache


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def hset(self, *args):
        self.ops.append(("hset", args))
        return self

    def sadd(self, *args):
        self.ops.append(("sadd", args))
        return self

    def hdel(self, *args):
        self.ops.append(("hdel", args))
        return self

    def srem(self, *args):
        self.ops.append(("srem", args))
        return self

    async def execute(self):
        results = []
        for name, args in self.ops:
            results.append(await getattr(self.client, name)(*args))
        self.ops = []
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for RedisCache."""

    def __init__(self):
        self.hashes = {}
        self.sets = {}
        self.values = {}
        self.calls = []

    def pipeline(self):
        return FakePipeline(self)

    async def hset(self, key, field, value):
        self.calls.append("hset")
        self.hashes.setdefault(key, {})[field] = value
        return 1

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def hexists(self, key, field):
        return field in self.hashes.get(key, {})

    async def hdel(self, key, *fields):
        self.calls.append("hdel")
        bucket = self.hashes.get(key, {})
        return sum(1 for f in fields if bucket.pop(f, None) is not None)

    async def hscan_iter(self, key, match=None):
        for field, value in list(self.hashes.get(key, {}).items()):
            if match is None or fnmatch.fnmatch(field, match):
                yield field, value

    async def sadd(self, key, *members):
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def srem(self, key, *members):
        bucket = self.sets.get(key, set())
        removed = sum(1 for m in members if m in bucket)
        bucket.difference_update(members)
        return removed

    async def set(self, key, value, ex=None):
        self.values[key] = value
        return True

    async def getdel(self, key):
        return self.values.pop(key, None)


@pytest.fixture
def store(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("google@alice", "Alice")
    store.create_user("google@bob", "Bob")
    return store


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_registry(store, fake_redis):
    cache = RedisCache("redis://localhost:6379/15")
    cache.client = fake_redis
    return RedisSessionRegistry(store, cache, ttl_minutes=60)


class TestSessionRegistry:
    async def test_create_and_revoke(self, store):
        registry = SessionRegistry(store, ttl_minutes=60)
        session = await registry.create_session("google@alice")

        assert await registry.is_active(session.id)
        assert await registry.revoke(session.id) is True
        assert not await registry.is_active(session.id)
        # revoking twice is a no-op
        assert await registry.revoke(session.id) is False

    async def test_create_for_unknown_user(self, store):
        registry = SessionRegistry(store)

        with pytest.raises(NotFoundError):
            await registry.create_session("nobody")

    async def test_expired_session_is_inactive(self, store):
        registry = SessionRegistry(store, ttl_minutes=60)
        session = await registry.create_session("google@alice")
        store.get_session(session.id).expires_at = utcnow() - timedelta(seconds=1)

        assert not await registry.is_active(session.id)
        assert await registry.get_session(session.id) is None

    async def test_revoke_user_sessions_leaves_others(self, store):
        registry = SessionRegistry(store)
        a1 = await registry.create_session("google@alice")
        a2 = await registry.create_session("google@alice")
        b1 = await registry.create_session("google@bob")

        assert await registry.revoke_user_sessions("google@alice") == 2
        assert not await registry.is_active(a1.id)
        assert not await registry.is_active(a2.id)
        assert await registry.is_active(b1.id)

    async def test_sweep_expired(self, store):
        registry = SessionRegistry(store)
        old = await registry.create_session("google@alice")
        fresh = await registry.create_session("google@alice")
        store.get_session(old.id).created_at = utcnow() - timedelta(days=20)

        assert await registry.sweep_expired(timedelta(days=14)) == 1
        assert not await registry.is_active(old.id)
        assert await registry.is_active(fresh.id)


class TestRedisSessionRegistry:
    async def test_register_is_single_hash_field(self, redis_registry, fake_redis):
        session = await redis_registry.create_session("google@alice")

        assert session.id in fake_redis.hashes[RedisCache.SESSIONS_KEY]
        assert fake_redis.calls == ["hset"]
        assert await redis_registry.is_active(session.id)

    async def test_revoke_removes_only_that_entry(self, redis_registry, fake_redis):
        first = await redis_registry.create_session("google@alice")
        second = await redis_registry.create_session("google@alice")

        assert await redis_registry.revoke(first.id) is True
        assert await redis_registry.revoke(first.id) is False
        assert not await redis_registry.is_active(first.id)
        assert await redis_registry.is_active(second.id)

    async def test_revoke_drops_user_index_entry(self, redis_registry, fake_redis):
        for _ in range(50):
            session = await redis_registry.create_session("google@alice")
            await redis_registry.revoke(session.id)

        assert fake_redis.hashes[RedisCache.SESSIONS_KEY] == {}
        assert fake_redis.sets[RedisCache._user_sessions_key("google@alice")] == set()

    async def test_unknown_user(self, redis_registry):
        with pytest.raises(NotFoundError):
            await redis_registry.create_session("nobody")

    async def test_revoke_user_sessions(self, redis_registry):
        a1 = await redis_registry.create_session("google@alice")
        b1 = await redis_registry.create_session("google@bob")

        assert await redis_registry.revoke_user_sessions("google@alice") == 1
        assert not await redis_registry.is_active(a1.id)
        assert await redis_registry.is_active(b1.id)

    async def test_sweep_drops_stale_and_corrupt_entries(self, redis_registry, fake_redis):
        fresh = await redis_registry.create_session("google@alice")
        old = await redis_registry.create_session("google@bob")
        entries = fake_redis.hashes[RedisCache.SESSIONS_KEY]
        entries[old.id] = entries[old.id].replace(
            old.created_at.isoformat(), (utcnow() - timedelta(days=30)).isoformat()
        )
        entries["garbage"] = "{not json"

        removed = await redis_registry.sweep_expired(timedelta(days=14))

        assert removed == 2
        assert set(entries) == {fresh.id}

    async def test_oauth_state_is_single_use(self, redis_registry):
        cache = redis_registry.cache
        expires = utcnow() + timedelta(minutes=10)
        await cache.set_oauth_state("s1", "google", expires)

        assert await cache.pop_oauth_state("s1") == ("google", expires)
        assert await cache.pop_oauth_state("s1") is None
