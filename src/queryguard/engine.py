"""
GovernanceService - the single entry point for governing a query.

Ties the session, mode and optimizer layers together:

    session lookup -> mode validation -> mode modification
        -> QueryOptimizer.optimize -> session activity

Delivery mechanisms (CLI, an HTTP route, an agent tool) should call this
service rather than orchestrate the layers themselves.

Usage:
    from queryguard.engine import GovernanceService

    service = GovernanceService(uploads=provider)
    session = await service.sessions.create_session("c1", "audit", "upload_c1_q1")
    result = await service.govern(session.session_id, "SELECT * FROM upload_c1_q1")
    if result.allowed:
        execute(result.sql)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from queryguard.config import Config, get_config
from queryguard.modes.base import Clock
from queryguard.modes.manager import WorkflowModeManager
from queryguard.modes.models import (
    ModeQueryModification,
    ModeValidation,
    SessionContext,
    WorkflowMode,
)
from queryguard.modes.uploads import UploadMetadataProvider
from queryguard.optimizer.governor import QueryOptimizer
from queryguard.optimizer.models import (
    OptimizationOptions,
    OptimizationRequest,
    OptimizationResponse,
    QueryContext,
)
from queryguard.session.manager import SESSION_NOT_FOUND, SessionManager
from queryguard.session.store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GovernanceResult:
    """
    Outcome of governing one query within a session.

    ``response`` is None whenever the query was blocked before the
    optimizer ran (missing session, mode violations).
    """

    session_id: str
    mode: WorkflowMode | None = None
    mode_validation: ModeValidation | None = None
    modification: ModeQueryModification | None = None
    response: OptimizationResponse | None = None
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def allowed(self) -> bool:
        """Whether the governed SQL may be executed."""
        return not self.errors and self.response is not None and self.response.is_valid

    @property
    def sql(self) -> str | None:
        """The SQL to execute, or None when the query was not allowed."""
        return self.response.optimized_sql if self.allowed and self.response else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "mode": self.mode.value if self.mode else None,
            "allowed": self.allowed,
            "mode_validation": (
                self.mode_validation.model_dump(mode="json") if self.mode_validation else None
            ),
            "modification": (
                self.modification.model_dump(mode="json") if self.modification else None
            ),
            "response": self.response.model_dump(mode="json") if self.response else None,
            "errors": list(self.errors),
        }


class GovernanceService:
    """
    Orchestration layer for session-scoped query governance.

    The optimizer runs with the row cap and domain of the session's
    mode. Upload isolation is required in audit mode and, in lending
    mode, whenever the mode scoped the query to the current upload.
    """

    def __init__(
        self,
        config: Config | None = None,
        sessions: SessionManager | None = None,
        optimizer: QueryOptimizer | None = None,
        uploads: UploadMetadataProvider | None = None,
        store: SessionStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or get_config()
        self.sessions = sessions or SessionManager(
            config=self.config, store=store, uploads=uploads, clock=clock
        )
        self.optimizer = optimizer or QueryOptimizer(config=self.config)

    @property
    def modes(self) -> WorkflowModeManager:
        return self.sessions.mode_manager

    async def govern(
        self,
        session_id: str,
        sql: str,
        context: QueryContext | None = None,
        options: OptimizationOptions | None = None,
    ) -> GovernanceResult:
        session = await self.sessions.get_session(session_id)
        if session is None:
            return GovernanceResult(session_id=session_id, errors=(SESSION_NOT_FOUND,))

        validation = await self.modes.validate_query(sql, session)
        if not validation.is_valid:
            logger.info("Query blocked by %s mode validation", session.mode.value)
            return GovernanceResult(
                session_id=session_id,
                mode=session.mode,
                mode_validation=validation,
                errors=validation.errors,
            )

        modification = await self.modes.apply_mode_constraints(sql, session)
        if modification.errors:
            logger.info("Query blocked by %s mode constraints", session.mode.value)
            return GovernanceResult(
                session_id=session_id,
                mode=session.mode,
                mode_validation=validation,
                modification=modification,
                errors=modification.errors,
            )

        request = self._request(session, sql, modification.modified_query, context, options)
        response = self.optimizer.optimize(request)

        await self.sessions.update_session(session)

        return GovernanceResult(
            session_id=session_id,
            mode=session.mode,
            mode_validation=validation,
            modification=modification,
            response=response,
            errors=response.errors,
        )

    def _request(
        self,
        session: SessionContext,
        original_sql: str,
        modified_sql: str,
        context: QueryContext | None,
        options: OptimizationOptions | None,
    ) -> OptimizationRequest:
        strategy = self.modes.strategy_for(session)
        mode_context = session.to_mode_context()
        cap = strategy.get_constraints().max_rows_per_query

        upload_id = None
        if session.current_upload_id and strategy.scopes_upload(original_sql, mode_context):
            upload_id = session.current_upload_id

        options = options or OptimizationOptions(max_row_limit=cap)
        options = options.model_copy(
            update={
                "max_row_limit": min(options.max_row_limit, cap),
                "enforce_upload_id": session.mode == WorkflowMode.AUDIT or upload_id is not None,
            }
        )
        context = (context or QueryContext()).model_copy(update={"domain": session.mode.value})

        return OptimizationRequest(
            sql=modified_sql,
            client_id=session.client_id,
            upload_id=upload_id,
            context=context,
            options=options,
        )
