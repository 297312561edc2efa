"""QueryGuard - query governance engine for multi-tenant financial SQL."""

__version__ = "0.3.0"
__license__ = "MIT"

# Exception hierarchy (import first so other modules can use it)
from queryguard.exceptions import (
    QueryGuardError,
    ParseError,
    SerializationError,
    RuleError,
    ConfigurationError,
    ModeError,
    UnsupportedModeError,
    ModeLockedError,
    SessionError,
    SessionNotFoundError,
    UploadContextError,
    PersistenceError,
)

from queryguard.config import Config, get_config, reset_config
from queryguard.parser import ParsedQuery, QueryParser, QueryType
from queryguard.optimizer import (
    OptimizationEngine,
    OptimizationOptions,
    OptimizationRequest,
    OptimizationResponse,
    PerformanceAnalyzer,
    QueryContext,
    QueryOptimizer,
    SafetyValidator,
)
from queryguard.modes import (
    AuditModeStrategy,
    LendingModeStrategy,
    ModeStrategy,
    SessionContext,
    WorkflowMode,
    WorkflowModeFactory,
    WorkflowModeManager,
)
from queryguard.session import SessionManager
from queryguard.engine import GovernanceResult, GovernanceService

__all__ = [
    "__version__",
    # Exceptions
    "QueryGuardError",
    "ParseError",
    "SerializationError",
    "RuleError",
    "ConfigurationError",
    "ModeError",
    "UnsupportedModeError",
    "ModeLockedError",
    "SessionError",
    "SessionNotFoundError",
    "UploadContextError",
    "PersistenceError",
    # Configuration
    "Config",
    "get_config",
    "reset_config",
    # Parsing
    "ParsedQuery",
    "QueryParser",
    "QueryType",
    # Optimizer
    "OptimizationEngine",
    "OptimizationOptions",
    "OptimizationRequest",
    "OptimizationResponse",
    "PerformanceAnalyzer",
    "QueryContext",
    "QueryOptimizer",
    "SafetyValidator",
    # Modes and sessions
    "AuditModeStrategy",
    "LendingModeStrategy",
    "ModeStrategy",
    "SessionContext",
    "WorkflowMode",
    "WorkflowModeFactory",
    "WorkflowModeManager",
    "SessionManager",
    # Service
    "GovernanceResult",
    "GovernanceService",
]
