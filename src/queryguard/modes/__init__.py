"""Workflow modes (audit, lending) and their session rules."""

from queryguard.modes.audit import AuditModeStrategy
from queryguard.modes.base import ModeStrategy
from queryguard.modes.lending import LendingModeStrategy
from queryguard.modes.manager import WorkflowModeFactory, WorkflowModeManager
from queryguard.modes.models import (
    CompanyContext,
    ModeConstraints,
    ModeContext,
    ModeQueryModification,
    ModeValidation,
    PortfolioContext,
    SessionContext,
    SessionSeed,
    UploadContextValidation,
    WorkflowMode,
)
from queryguard.modes.uploads import (
    InMemoryUploadMetadataProvider,
    UploadMetadataProvider,
    UploadTableInfo,
)

__all__ = [
    "AuditModeStrategy",
    "CompanyContext",
    "InMemoryUploadMetadataProvider",
    "LendingModeStrategy",
    "ModeConstraints",
    "ModeContext",
    "ModeQueryModification",
    "ModeStrategy",
    "ModeValidation",
    "PortfolioContext",
    "SessionContext",
    "SessionSeed",
    "UploadContextValidation",
    "UploadMetadataProvider",
    "UploadTableInfo",
    "WorkflowMode",
    "WorkflowModeFactory",
    "WorkflowModeManager",
]
