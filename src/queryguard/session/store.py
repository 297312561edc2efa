"""
Session snapshot stores.

The session manager keeps its working state in memory; a store only
mirrors snapshots so that another process can see them. Snapshots are
JSON documents of a SessionContext and expire with the session timeout.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from queryguard.exceptions import PersistenceError
from queryguard.modes.models import SessionContext

logger = logging.getLogger(__name__)

KEY_PREFIX = "queryguard:session:"


class SessionStore(ABC):
    """Snapshot persistence for sessions."""

    @abstractmethod
    async def save(self, context: SessionContext, ttl_seconds: float) -> None:
        ...

    @abstractmethod
    async def load(self, session_id: str) -> SessionContext | None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        ...

    async def close(self) -> None:
        return None


class InMemorySessionStore(SessionStore):
    """Process-local store; ignores TTLs."""

    def __init__(self) -> None:
        self._snapshots: dict[str, str] = {}

    async def save(self, context: SessionContext, ttl_seconds: float) -> None:
        self._snapshots[context.session_id] = context.model_dump_json()

    async def load(self, session_id: str) -> SessionContext | None:
        raw = self._snapshots.get(session_id)
        if raw is None:
            return None
        return SessionContext.model_validate_json(raw)

    async def delete(self, session_id: str) -> None:
        self._snapshots.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._snapshots)


class RedisSessionStore(SessionStore):
    """
    Redis-backed store.

    Keys are ``queryguard:session:<session_id>`` with an expiry equal to
    the TTL passed to save(). Every Redis failure is raised as
    PersistenceError.
    """

    def __init__(self, client: Redis, key_prefix: str = KEY_PREFIX) -> None:
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisSessionStore":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )
        logger.info("Session store using Redis at %s", url)
        return cls(client)

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    async def save(self, context: SessionContext, ttl_seconds: float) -> None:
        try:
            await self.client.set(
                self._key(context.session_id),
                context.model_dump_json(),
                ex=max(1, int(ttl_seconds)),
            )
        except RedisError as e:
            raise PersistenceError(f"Failed to save session {context.session_id}: {e}") from e

    async def load(self, session_id: str) -> SessionContext | None:
        try:
            raw = await self.client.get(self._key(session_id))
        except RedisError as e:
            raise PersistenceError(f"Failed to load session {session_id}: {e}") from e
        if raw is None:
            return None
        try:
            return SessionContext.model_validate_json(raw)
        except ValidationError as e:
            raise PersistenceError(f"Corrupt snapshot for session {session_id}: {e}") from e

    async def delete(self, session_id: str) -> None:
        try:
            await self.client.delete(self._key(session_id))
        except RedisError as e:
            raise PersistenceError(f"Failed to delete session {session_id}: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()
