"""
Mode factory and manager.

The factory owns one strategy instance per mode. The manager builds
sessions and routes every session operation to the strategy of that
session's own mode, so a session can never be served by another mode's
rules.
"""

from __future__ import annotations

import logging
from typing import Any

from queryguard.config import Config, get_config
from queryguard.exceptions import UnsupportedModeError, UploadContextError
from queryguard.modes.audit import AuditModeStrategy
from queryguard.modes.base import Clock, ModeStrategy, utc_now
from queryguard.modes.lending import LendingModeStrategy
from queryguard.modes.models import (
    CompanyContext,
    ModeConstraints,
    ModeQueryModification,
    ModeValidation,
    SessionContext,
    WorkflowMode,
)
from queryguard.modes.uploads import InMemoryUploadMetadataProvider, UploadMetadataProvider

logger = logging.getLogger(__name__)

SESSION_WARNING_FRACTION = 0.8


class WorkflowModeFactory:
    """
    Strategy registry.

    Example:
        factory = WorkflowModeFactory(uploads=provider)
        strategy = factory.create_mode("lending")
    """

    def __init__(
        self,
        uploads: UploadMetadataProvider | None = None,
        clock: Clock | None = None,
    ) -> None:
        uploads = uploads or InMemoryUploadMetadataProvider()
        self._strategies: dict[WorkflowMode, ModeStrategy] = {
            WorkflowMode.AUDIT: AuditModeStrategy(uploads=uploads, clock=clock),
            WorkflowMode.LENDING: LendingModeStrategy(uploads=uploads, clock=clock),
        }

    def create_mode(self, mode: WorkflowMode | str) -> ModeStrategy:
        """
        Strategy for ``mode``.

        Raises:
            UnsupportedModeError: If no strategy is registered for the mode.
        """
        strategy = self._strategies.get(WorkflowMode.parse(mode))
        if strategy is None:
            raise UnsupportedModeError(mode)
        return strategy

    def available_modes(self) -> list[WorkflowMode]:
        return list(self._strategies)

    def validate_mode_config(self, mode: WorkflowMode | str) -> bool:
        try:
            return WorkflowMode.parse(mode) in self._strategies
        except UnsupportedModeError:
            return False


class WorkflowModeManager:
    """
    Creates locked sessions and applies mode rules to them.

    Timeouts come from configuration; time comes from ``clock`` so that
    tests can move it.
    """

    def __init__(
        self,
        config: Config | None = None,
        factory: WorkflowModeFactory | None = None,
        uploads: UploadMetadataProvider | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or get_config()
        self.clock = clock or utc_now
        self.factory = factory or WorkflowModeFactory(uploads=uploads, clock=self.clock)
        self._current: ModeStrategy | None = None
        self._locked = False

    @property
    def session_timeout_seconds(self) -> float:
        return self.config.session_timeout_seconds

    def get_current_mode(self) -> ModeStrategy:
        """Strategy chosen by the last initialize_mode, or the configured default."""
        if self._current is None:
            self._current = self.factory.create_mode(self.config.default_mode)
        return self._current

    def strategy_for(self, session: SessionContext) -> ModeStrategy:
        return self.factory.create_mode(session.mode)

    def can_switch_mode(self) -> bool:
        return not self._locked

    async def initialize_mode(
        self,
        mode: WorkflowMode | str,
        session_id: str,
        client_id: str,
        upload_id: str | None = None,
    ) -> SessionContext:
        """
        Build a locked session for ``mode``.

        Session validation problems are logged; the session is returned
        regardless so the caller can surface recommendations.

        Raises:
            UnsupportedModeError: If ``mode`` is unknown.
        """
        workflow_mode = WorkflowMode.parse(mode)
        strategy = self.factory.create_mode(workflow_mode)
        self._locked = True
        self._current = strategy

        seed = await strategy.initialize_session(client_id, upload_id)
        now = self.clock()
        session = SessionContext(
            session_id=session_id,
            mode=workflow_mode,
            created_at=now,
            last_activity=now,
            locked=True,
            **seed.model_dump(),
        )

        validation = strategy.validate_session(session)
        if not validation.is_valid:
            logger.warning(
                "Session %s failed %s validation: %s",
                session_id, workflow_mode.value, "; ".join(validation.errors),
            )
        for warning in validation.warnings:
            logger.warning("Session %s: %s", session_id, warning)

        logger.info("Initialized %s mode session for client %s", workflow_mode.value, client_id)
        return session

    async def validate_query(self, query: str, session: SessionContext) -> ModeValidation:
        return await self.strategy_for(session).validate_query(query, session.to_mode_context())

    async def apply_mode_constraints(self, query: str, session: SessionContext) -> ModeQueryModification:
        return await self.strategy_for(session).modify_query(query, session.to_mode_context())

    def apply_scoping_to_query(self, query: str, session: SessionContext) -> str:
        return self.strategy_for(session).apply_scoping(query, session.to_mode_context())

    def get_mode_constraints(self, mode: WorkflowMode | str | None = None) -> ModeConstraints:
        strategy = self.factory.create_mode(mode) if mode is not None else self.get_current_mode()
        return strategy.get_constraints()

    def get_mode_recommendations(self, session: SessionContext) -> list[str]:
        strategy = self.strategy_for(session)
        recommendations = [
            f"Available actions for {session.mode.value} mode: "
            f"{', '.join(strategy.get_available_actions())}"
        ]

        if session.mode == WorkflowMode.AUDIT:
            if not session.current_upload_id:
                recommendations.append("Set a specific company context for focused audit analysis")
            recommendations.append("Use audit templates for compliance and risk analysis")
            if len(session.available_upload_ids) > 1:
                recommendations.append("Compare data across different time periods for the same company")

        if session.mode == WorkflowMode.LENDING:
            portfolio = session.portfolio_context
            if portfolio is not None:
                if portfolio.total_companies > 1:
                    recommendations.append("Leverage portfolio analysis for comparative insights")
                    recommendations.append("Use aggregation functions for portfolio-wide metrics")
                if portfolio.total_companies < 5:
                    recommendations.append("Consider expanding portfolio for more robust analysis")
            recommendations.append("Use lending templates for financial ratio and cash flow analysis")
            if session.current_upload_id:
                recommendations.append("Switch to portfolio view for comparative analysis")
            else:
                recommendations.append("Drill down to specific companies for detailed analysis")

        if self._age_seconds(session) > self.session_timeout_seconds * SESSION_WARNING_FRACTION:
            recommendations.append("Session approaching timeout - consider refreshing")

        return recommendations

    def get_session_stats(self, session: SessionContext) -> dict[str, Any]:
        return {
            "mode": session.mode.value,
            "session_age_seconds": self._age_seconds(session),
            "last_activity": session.last_activity.isoformat(),
            "upload_context": {
                "current": session.current_upload_id,
                "available": len(session.available_upload_ids),
            },
            "company_context": (
                session.company_context.model_dump() if session.company_context else None
            ),
            "portfolio_context": (
                session.portfolio_context.model_dump(mode="json") if session.portfolio_context else None
            ),
            "locked": session.locked,
            "recommendations": self.get_mode_recommendations(session),
        }

    def update_session_activity(self, session: SessionContext) -> SessionContext:
        return session.touched(self.clock())

    def is_session_valid(self, session: SessionContext) -> bool:
        """Age and inactivity both under the session timeout, and mode locked."""
        now = self.clock()
        timeout = self.session_timeout_seconds
        age = (now - session.created_at).total_seconds()
        idle = (now - session.last_activity).total_seconds()
        return age < timeout and idle < timeout and session.locked

    async def set_upload_context(self, session: SessionContext, upload_id: str) -> SessionContext:
        """
        Focus ``session`` on another upload.

        Raises:
            UploadContextError: If the session's mode rejects the upload.
        """
        strategy = self.strategy_for(session)
        validation = await strategy.validate_upload_context(
            upload_id, session.to_mode_context(upload_id)
        )
        if not validation.is_valid:
            raise UploadContextError(upload_id, list(validation.errors))

        company = None
        if validation.company_name:
            company = CompanyContext(
                name=validation.company_name,
                upload_id=upload_id,
                period=validation.period or "",
            )
        return session.model_copy(
            update={
                "current_upload_id": upload_id,
                "company_context": company,
                "last_activity": self.clock(),
            }
        )

    def reset(self) -> None:
        self._current = None
        self._locked = False
        logger.info("Mode manager reset")

    def _age_seconds(self, session: SessionContext) -> float:
        return (self.clock() - session.created_at).total_seconds()
