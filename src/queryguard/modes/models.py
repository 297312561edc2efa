"""
Workflow mode and session models.

A SessionContext is frozen: activity updates and upload context changes
produce a copy, and no copy ever carries a different mode.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from queryguard.exceptions import UnsupportedModeError


class WorkflowMode(str, Enum):
    AUDIT = "audit"
    LENDING = "lending"

    @classmethod
    def parse(cls, value: "WorkflowMode | str") -> "WorkflowMode":
        """Coerce a mode name, raising UnsupportedModeError for unknown names."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as e:
            raise UnsupportedModeError(value) from e


class ModeConstraints(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Scoping
    requires_upload_id: bool
    allows_multiple_uploads: bool
    requires_client_id_filter: bool = True
    allows_cross_client_queries: bool = False

    # Data access
    max_rows_per_query: int = Field(..., gt=0)
    allowed_table_patterns: tuple[str, ...]
    restricted_operations: tuple[str, ...]

    # History
    allows_historical_data: bool = True
    max_history_days: int | None = None

    mandatory_filters: tuple[str, ...] = ("client_id",)
    prohibited_columns: tuple[str, ...] = ()


class CompanyContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    upload_id: str
    period: str


class PortfolioContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_companies: int = Field(..., ge=0)
    active_upload_ids: tuple[str, ...] = ()


class SessionSeed(BaseModel):
    """Mode-specific fields produced when a session is initialized."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    current_upload_id: str | None = None
    available_upload_ids: tuple[str, ...] = ()
    company_context: CompanyContext | None = None
    portfolio_context: PortfolioContext | None = None


class SessionContext(BaseModel):
    """
    State of one workflow session.

    Attributes:
        session_id: Opaque identifier (``sess_<ms>_<random>``)
        client_id: Tenant the session belongs to
        mode: Workflow mode, fixed at creation
        current_upload_id: Upload (company dataset) in focus
        available_upload_ids: Uploads the mode exposes to this client
        company_context: Display context for the focused upload
        portfolio_context: Lending portfolio summary
        created_at: Creation time (timezone-aware)
        last_activity: Last time the session was used
        locked: Mode lock flag; sessions are created locked
    """

    model_config = ConfigDict(frozen=True)

    session_id: str
    client_id: str
    mode: WorkflowMode
    current_upload_id: str | None = None
    available_upload_ids: tuple[str, ...] = ()
    company_context: CompanyContext | None = None
    portfolio_context: PortfolioContext | None = None
    created_at: datetime
    last_activity: datetime
    locked: bool = True

    def touched(self, now: datetime) -> "SessionContext":
        return self.model_copy(update={"last_activity": now})

    def to_mode_context(self, upload_id: str | None = None) -> "ModeContext":
        """Mode context for this session, optionally focused on another upload."""
        return ModeContext(
            client_id=self.client_id,
            upload_id=upload_id if upload_id is not None else self.current_upload_id,
            session_id=self.session_id,
            mode=self.mode,
            locked_at=self.created_at,
        )


class ModeContext(BaseModel):
    """What a strategy needs to know about the caller for one query."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    upload_id: str | None = None
    session_id: str = ""
    mode: WorkflowMode
    locked_at: datetime | None = None


class ModeValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    required_context: dict[str, str] | None = None


class ModeQueryModification(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_query: str
    modified_query: str
    applied_constraints: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()


class UploadContextValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    upload_exists: bool = False
    belongs_to_client: bool = False
    is_active: bool = False
    company_name: str | None = None
    period: str | None = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
