"""
Session lifecycle management.

Sessions live in memory, indexed by id and by client, with a heap of
expiry times for sweeping. A session expires ``session_timeout_seconds``
after creation; activity never extends it. The three indexes are only
changed together inside synchronous blocks, so no coroutine can observe
them out of step.

Snapshots are mirrored to a SessionStore when one is configured.
Mirroring is best-effort: store failures are logged and the session
operation still succeeds.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
import secrets
import string
from collections import Counter
from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field

from queryguard.config import Config, get_config
from queryguard.exceptions import ModeLockedError, PersistenceError, SessionNotFoundError
from queryguard.modes.base import Clock, utc_now
from queryguard.modes.manager import WorkflowModeManager
from queryguard.modes.models import (
    ModeQueryModification,
    ModeValidation,
    SessionContext,
    WorkflowMode,
)
from queryguard.modes.uploads import UploadMetadataProvider
from queryguard.session.store import RedisSessionStore, SessionStore

logger = logging.getLogger(__name__)

SESSION_NOT_FOUND = "Session not found or expired"
_ID_ALPHABET = string.ascii_lowercase + string.digits


class SessionStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_sessions: int
    active_sessions: int
    sessions_by_mode: dict[str, int] = Field(default_factory=dict)
    oldest_session: datetime | None = None
    average_session_age_seconds: float = 0.0


class SessionQueryValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    session: SessionContext | None = None
    validation: ModeValidation | None = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


class SessionConstraintResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    session: SessionContext | None = None
    modification: ModeQueryModification | None = None
    errors: tuple[str, ...] = ()


def generate_session_id(now: datetime) -> str:
    """``sess_<epoch milliseconds>_<9 random base-36 characters>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"sess_{int(now.timestamp() * 1000)}_{suffix}"


class SessionManager:
    """
    Creates, tracks and expires workflow sessions.

    Example:
        manager = SessionManager(uploads=provider)
        session = await manager.create_session("c1", "audit", "upload_c1_q1")
        result = await manager.apply_session_constraints(session.session_id, sql)
    """

    def __init__(
        self,
        config: Config | None = None,
        mode_manager: WorkflowModeManager | None = None,
        store: SessionStore | None = None,
        uploads: UploadMetadataProvider | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or get_config()
        self.clock = clock or utc_now
        self.mode_manager = mode_manager or WorkflowModeManager(
            config=self.config, uploads=uploads, clock=self.clock
        )
        if store is None and self.config.persistent_storage:
            store = RedisSessionStore.from_url(self.config.redis_url)
        self.store = store

        self._sessions: dict[str, SessionContext] = {}
        self._client_sessions: dict[str, set[str]] = {}
        self._expiry_heap: list[tuple[datetime, str]] = []
        self._cleanup_task: asyncio.Task[None] | None = None

    @property
    def timeout(self) -> timedelta:
        return timedelta(seconds=self.config.session_timeout_seconds)

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def create_session(
        self,
        client_id: str,
        mode: WorkflowMode | str,
        upload_id: str | None = None,
    ) -> SessionContext:
        """
        Create a locked session for ``client_id``.

        When the client already holds ``max_sessions_per_client``
        sessions, the least recently active one is evicted first.

        Raises:
            UnsupportedModeError: If ``mode`` is unknown.
        """
        session_id = generate_session_id(self.clock())
        session = await self.mode_manager.initialize_mode(mode, session_id, client_id, upload_id)

        evicted: list[str] = []
        client_ids = self._client_sessions.get(client_id, set())
        while len(client_ids) >= self.config.max_sessions_per_client:
            oldest = min(
                (self._sessions[sid] for sid in client_ids),
                key=lambda s: s.last_activity,
            )
            self._forget(oldest.session_id)
            evicted.append(oldest.session_id)
            client_ids = self._client_sessions.get(client_id, set())
        self._remember(session)

        for sid in evicted:
            logger.info("Evicted session %s: client %s at session cap", sid, client_id)
            await self._delete_snapshot(sid)
        await self._save_snapshot(session)

        logger.info(
            "Created session %s for client %s in %s mode",
            session_id, client_id, session.mode.value,
        )
        return session

    async def get_session(self, session_id: str) -> SessionContext | None:
        """Live session, or None. Expired sessions are removed on access."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if not self.mode_manager.is_session_valid(session):
            await self.remove_session(session_id)
            return None
        return session

    async def update_session(self, context: SessionContext) -> SessionContext:
        """
        Store ``context`` as the new state of its session and touch it.

        Raises:
            SessionNotFoundError: If the session is unknown.
            ModeLockedError: If ``context`` carries a different mode.
        """
        existing = self._sessions.get(context.session_id)
        if existing is None:
            raise SessionNotFoundError(context.session_id)
        if context.mode != existing.mode:
            raise ModeLockedError(context.session_id, existing.mode.value, context.mode.value)

        updated = self.mode_manager.update_session_activity(
            context.model_copy(
                update={"client_id": existing.client_id, "created_at": existing.created_at}
            )
        )
        self._sessions[updated.session_id] = updated
        await self._save_snapshot(updated)
        return updated

    async def set_session_upload_context(self, session_id: str, upload_id: str) -> SessionContext:
        """
        Raises:
            SessionNotFoundError: If the session is unknown or expired.
            UploadContextError: If the session's mode rejects the upload.
        """
        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        updated = await self.mode_manager.set_upload_context(session, upload_id)
        return await self.update_session(updated)

    async def remove_session(self, session_id: str) -> bool:
        if not self._forget(session_id):
            return False
        await self._delete_snapshot(session_id)
        logger.info("Removed session %s", session_id)
        return True

    async def get_client_sessions(self, client_id: str) -> list[SessionContext]:
        """Live sessions of ``client_id``, most recently active first."""
        sessions = []
        for session_id in list(self._client_sessions.get(client_id, ())):
            session = await self.get_session(session_id)
            if session is not None:
                sessions.append(session)
        return sorted(sessions, key=lambda s: s.last_activity, reverse=True)

    def get_stats(self) -> SessionStats:
        sessions = list(self._sessions.values())
        now = self.clock()
        ages = [(now - s.created_at).total_seconds() for s in sessions]
        return SessionStats(
            total_sessions=len(sessions),
            active_sessions=sum(1 for s in sessions if self.mode_manager.is_session_valid(s)),
            sessions_by_mode=dict(Counter(s.mode.value for s in sessions)),
            oldest_session=min((s.created_at for s in sessions), default=None),
            average_session_age_seconds=sum(ages) / len(ages) if ages else 0.0,
        )

    # ── Expiry ───────────────────────────────────────────────────────────

    def tick(self, now: datetime) -> list[str]:
        """
        Evict every session whose expiry is at or before ``now``.

        Pure bookkeeping: no I/O and no awaits. Returns the evicted ids in
        expiry order.
        """
        evicted: list[str] = []
        while self._expiry_heap and self._expiry_heap[0][0] <= now:
            _, session_id = heapq.heappop(self._expiry_heap)
            if self._forget(session_id):
                evicted.append(session_id)
        return evicted

    async def cleanup_expired_sessions(self) -> int:
        evicted = self.tick(self.clock())
        for session_id in evicted:
            await self._delete_snapshot(session_id)
        if evicted:
            logger.info("Cleaned up %d expired sessions", len(evicted))
        return len(evicted)

    async def emergency_cleanup(self) -> int:
        """Drop every session. Returns how many were dropped."""
        session_ids = list(self._sessions)
        self._sessions.clear()
        self._client_sessions.clear()
        self._expiry_heap.clear()
        for session_id in session_ids:
            await self._delete_snapshot(session_id)
        logger.warning("Emergency cleanup: removed %d sessions", len(session_ids))
        return len(session_ids)

    def start_cleanup(self) -> asyncio.Task[None]:
        """Start the periodic sweep on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        return self._cleanup_task

    async def shutdown(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        if self.store is not None:
            await self.store.close()
        logger.info("Session manager shutdown complete")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            try:
                await self.cleanup_expired_sessions()
            except Exception:
                logger.exception("Error during session cleanup")

    # ── Mode operations ──────────────────────────────────────────────────

    async def validate_session_query(self, session_id: str, query: str) -> SessionQueryValidation:
        session = await self.get_session(session_id)
        if session is None:
            return SessionQueryValidation(is_valid=False, errors=(SESSION_NOT_FOUND,))

        validation = await self.mode_manager.validate_query(query, session)
        return SessionQueryValidation(
            is_valid=validation.is_valid,
            session=session,
            validation=validation,
            errors=validation.errors,
            warnings=validation.warnings,
        )

    async def apply_session_constraints(self, session_id: str, query: str) -> SessionConstraintResult:
        session = await self.get_session(session_id)
        if session is None:
            return SessionConstraintResult(errors=(SESSION_NOT_FOUND,))

        modification = await self.mode_manager.apply_mode_constraints(query, session)
        return SessionConstraintResult(
            session=session,
            modification=modification,
            errors=modification.errors,
        )

    async def get_session_recommendations(self, session_id: str) -> list[str]:
        session = await self.get_session(session_id)
        if session is None:
            return [SESSION_NOT_FOUND]
        return self.mode_manager.get_mode_recommendations(session)

    # ── Internals ────────────────────────────────────────────────────────

    def _remember(self, session: SessionContext) -> None:
        self._sessions[session.session_id] = session
        self._client_sessions.setdefault(session.client_id, set()).add(session.session_id)
        heapq.heappush(self._expiry_heap, (session.created_at + self.timeout, session.session_id))

    def _forget(self, session_id: str) -> bool:
        # Heap entries of forgotten sessions are skipped when popped.
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        client_ids = self._client_sessions.get(session.client_id)
        if client_ids is not None:
            client_ids.discard(session_id)
            if not client_ids:
                del self._client_sessions[session.client_id]
        return True

    async def _save_snapshot(self, session: SessionContext) -> None:
        if self.store is None:
            return
        try:
            await self.store.save(session, self.config.session_timeout_seconds)
        except PersistenceError as e:
            logger.warning("Session snapshot not saved: %s", e)

    async def _delete_snapshot(self, session_id: str) -> None:
        if self.store is None:
            return
        try:
            await self.store.delete(session_id)
        except PersistenceError as e:
            logger.warning("Session snapshot not deleted: %s", e)
