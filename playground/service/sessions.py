from __future__ import annotations

from datetime import timedelta
from typing import Optional, Protocol

from playground.logging import get_logger
from playground.service.errors import NotFoundError
from playground.storage.errors import ConstraintViolation
from playground.storage.models import Session, User, utcnow
from playground.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session(self, user_id: str, ttl_minutes: Optional[int] = None) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> bool: ...

    def revoke_user_sessions(self, user_id: str) -> int: ...

    def sweep_sessions(self, max_age: timedelta) -> int: ...


class SessionRegistry:
    """Registry of live logins backing bearer-token validation.

    A token is honoured only while its session id is registered here, so
    removing the entry revokes every token minted for it. Each mutation is a
    single element-level insert or delete in the backing store.
    """

    def __init__(self, store: SessionStore, *, ttl_minutes: Optional[int] = None) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes

    @staticmethod
    def _live(session: Optional[Session]) -> bool:
        if session is None:
            return False
        return session.expires_at is None or session.expires_at > utcnow()

    async def create_session(self, user_id: str) -> Session:
        try:
            session = self.store.create_session(user_id, self.ttl_minutes)
        except ConstraintViolation as exc:
            raise NotFoundError("user not found", detail={"user_id": user_id}) from exc
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        session = self.store.get_session(session_id)
        return session if self._live(session) else None

    async def is_active(self, session_id: str) -> bool:
        return self._live(self.store.get_session(session_id))

    async def revoke(self, session_id: str) -> bool:
        """Remove a session; revoking an absent session is a no-op."""
        removed = self.store.revoke_session(session_id)
        logger.info("session_revoked", session_id=session_id, removed=removed)
        return removed

    async def revoke_user_sessions(self, user_id: str) -> int:
        count = self.store.revoke_user_sessions(user_id)
        logger.info("user_sessions_revoked", user_id=user_id, count=count)
        return count

    async def sweep_expired(self, max_age: timedelta) -> int:
        removed = self.store.sweep_sessions(max_age)
        if removed:
            logger.info("sessions_swept", removed=removed)
        return removed


class RedisSessionRegistry(SessionRegistry):
    """Session registry kept in a single Redis hash, shared across workers."""

    def __init__(
        self,
        store: SessionStore,
        cache: RedisCache,
        *,
        ttl_minutes: Optional[int] = None,
    ) -> None:
        super().__init__(store, ttl_minutes=ttl_minutes)
        self.cache = cache

    async def create_session(self, user_id: str) -> Session:
        if self.store.get_user(user_id) is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        session = Session.new(user_id, self.ttl_minutes)
        await self.cache.add_session(session)
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        session = await self.cache.get_session(session_id)
        return session if self._live(session) else None

    async def is_active(self, session_id: str) -> bool:
        return self._live(await self.cache.get_session(session_id))

    async def revoke(self, session_id: str) -> bool:
        removed = await self.cache.remove_session(session_id)
        logger.info("session_revoked", session_id=session_id, removed=removed)
        return removed

    async def revoke_user_sessions(self, user_id: str) -> int:
        count = await self.cache.remove_user_sessions(user_id)
        logger.info("user_sessions_revoked", user_id=user_id, count=count)
        return count

    async def sweep_expired(self, max_age: timedelta) -> int:
        removed = await self.cache.sweep_sessions(max_age)
        if removed:
            logger.info("sessions_swept", removed=removed)
        return removed
