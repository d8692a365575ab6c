from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from playground.storage.models import Session, utcnow


class RedisCache:
    """Thin Redis wrapper holding the session registry and OAuth state.

    The registry is a single hash keyed by session id, so every registration
    and revocation is one HSET/HDEL against it and never a whole-collection
    rewrite.
    """

    SESSIONS_KEY = "auth:sessions"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least one."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _user_sessions_key(user_id: str) -> str:
        return f"auth:user_sessions:{user_id}"

    @staticmethod
    def _encode_session(session: Session) -> str:
        return json.dumps(
            {
                "user_id": session.user_id,
                "created_at": session.created_at.isoformat(),
                "expires_at": session.expires_at.isoformat() if session.expires_at else None,
            }
        )

    @staticmethod
    def _decode_session(session_id: str, raw: str) -> Optional[Session]:
        try:
            data = json.loads(raw)
            return Session(
                id=session_id,
                user_id=data["user_id"],
                created_at=datetime.fromisoformat(data["created_at"]),
                expires_at=(
                    datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None
                ),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def add_session(self, session: Session) -> None:
        pipe = self.client.pipeline()
        pipe.hset(self.SESSIONS_KEY, session.id, self._encode_session(session))
        pipe.sadd(self._user_sessions_key(session.user_id), session.id)
        await pipe.execute()

    async def get_session(self, session_id: str) -> Optional[Session]:
        raw = await self.client.hget(self.SESSIONS_KEY, session_id)
        if raw is None:
            return None
        return self._decode_session(session_id, raw)

    async def has_session(self, session_id: str) -> bool:
        return bool(await self.client.hexists(self.SESSIONS_KEY, session_id))

    async def remove_session(self, session_id: str) -> bool:
        raw = await self.client.hget(self.SESSIONS_KEY, session_id)
        if raw is None:
            return False
        session = self._decode_session(session_id, raw)
        pipe = self.client.pipeline()
        pipe.hdel(self.SESSIONS_KEY, session_id)
        if session is not None:
            pipe.srem(self._user_sessions_key(session.user_id), session_id)
        results = await pipe.execute()
        return bool(results[0])

    async def remove_user_sessions(self, user_id: str) -> int:
        user_key = self._user_sessions_key(user_id)
        session_ids = await self.client.smembers(user_key)
        if not session_ids:
            return 0
        removed = await self.client.hdel(self.SESSIONS_KEY, *session_ids)
        await self.client.srem(user_key, *session_ids)
        return int(removed)

    async def sweep_sessions(self, max_age: timedelta) -> int:
        now = utcnow()
        stale: list[tuple[str, Optional[str]]] = []
        async for session_id, raw in self.client.hscan_iter(self.SESSIONS_KEY):
            session = self._decode_session(session_id, raw)
            if session is None:
                stale.append((session_id, None))
            elif session.is_stale(max_age, now=now):
                stale.append((session_id, session.user_id))
        removed = 0
        for session_id, user_id in stale:
            removed += await self.client.hdel(self.SESSIONS_KEY, session_id)
            if user_id:
                await self.client.srem(self._user_sessions_key(user_id), session_id)
        return removed

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Get and delete an OAuth state in one step so it can be consumed once."""
        cached = await self.client.getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            return data["provider"], datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()
