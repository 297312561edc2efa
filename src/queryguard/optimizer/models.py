"""
Request/response models for the governance pipeline.

These models are:
- Immutable (frozen=True): results don't change after creation
- Serializable: model_dump(mode="json") feeds the --json CLI output
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class OptimizationType(str, Enum):
    INDEX_USAGE = "index_usage"
    ROW_LIMIT = "row_limit"
    MULTI_TENANT_FILTER = "multi_tenant_filter"
    TIME_WINDOW = "time_window"
    JOIN_OPTIMIZATION = "join_optimization"
    CTE_ADDITION = "cte_addition"
    PREDICATE_PUSHDOWN = "predicate_pushdown"
    COLUMN_PRUNING = "column_pruning"
    SUBQUERY_OPTIMIZATION = "subquery_optimization"
    DANGEROUS_OPERATION_BLOCKED = "dangerous_operation_blocked"


class Impact(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ScanType(str, Enum):
    """Expected access path, best to worst."""

    INDEX_SEEK = "index_seek"
    INDEX_SCAN = "index_scan"
    CLUSTERED_INDEX_SCAN = "clustered_index_scan"
    TABLE_SCAN = "table_scan"


class ViolationType(str, Enum):
    DANGEROUS_OPERATION = "dangerous_operation"
    SQL_INJECTION = "sql_injection"
    MISSING_UPLOAD_ID = "missing_upload_id"
    MISSING_CLIENT_ID = "missing_client_id"
    MISSING_ROW_LIMIT = "missing_row_limit"
    EXCESSIVE_ROW_LIMIT = "excessive_row_limit"
    MISSING_WHERE_CLAUSE = "missing_where_clause"
    INEFFICIENT_JOIN = "inefficient_join"
    MISSING_INDEX = "missing_index"
    WILDCARD_SELECT = "wildcard_select"
    CARTESIAN_PRODUCT = "cartesian_product"
    MISSING_TIME_WINDOW = "missing_time_window"
    BROAD_TIME_RANGE = "broad_time_range"


class ViolationSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class WarningLevel(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class QueryContext(BaseModel):
    """Request-scoped hints about where the query is going to run."""

    model_config = ConfigDict(frozen=True)

    domain: str = Field(default="audit", description="Workflow domain (audit/lending)")
    max_results: int | None = Field(default=None, gt=0, description="Caller's row cap")
    time_window: str | None = Field(default=None, description="Requested time window")
    required_filters: tuple[str, ...] = Field(default=(), description="Columns that must be filtered")
    environment: str | None = Field(default=None, description="Deployment environment")


class OptimizationOptions(BaseModel):
    """Switches for the rule engine and validator."""

    model_config = ConfigDict(frozen=True)

    enforce_upload_id: bool = True
    enforce_client_id: bool = True
    max_row_limit: int = Field(default=5000, gt=0)
    block_dangerous_ops: bool = True
    optimize_joins: bool = True
    add_ctes: bool = True
    analyze_performance: bool = True


class OptimizationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    sql: str = Field(..., description="Candidate SQL statement")
    client_id: str = Field(..., min_length=1, description="Tenant identifier")
    upload_id: str | None = Field(default=None, description="Upload (company dataset) in scope")
    context: QueryContext | None = None
    options: OptimizationOptions | None = None


class OptimizationResult(BaseModel):
    """One entry in the rule log, in the order rules fired."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    type: OptimizationType
    description: str
    impact: Impact
    applied: bool
    details: str | None = None


class Violation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ViolationType
    severity: ViolationSeverity
    message: str
    location: str | None = None


class ValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    is_safe: bool
    violations: tuple[Violation, ...] = ()

    @property
    def errors(self) -> list[Violation]:
        return [v for v in self.violations if v.severity == ViolationSeverity.ERROR]

    @property
    def warnings(self) -> list[Violation]:
        return [v for v in self.violations if v.severity == ViolationSeverity.WARNING]


class PerformanceAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    estimated_rows: int | None = None
    estimated_cost: int | None = None
    uses_indexes: bool = False
    indexes_used: tuple[str, ...] = ()
    scan_type: ScanType = ScanType.TABLE_SCAN
    warnings: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    score: int = Field(default=0, ge=0, le=100)


class QueryWarning(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: WarningLevel
    code: str
    message: str
    suggestion: str | None = None


class OptimizationResponse(BaseModel):
    """
    Composed outcome of one governance pass.

    A failed pass always returns ``optimized_sql == original_sql`` with
    ``is_valid`` and ``is_safe`` False and at least one error.
    """

    model_config = ConfigDict(frozen=True)

    original_sql: str
    optimized_sql: str
    is_valid: bool
    is_safe: bool
    optimizations: tuple[OptimizationResult, ...] = ()
    performance_analysis: PerformanceAnalysis = Field(default_factory=PerformanceAnalysis)
    warnings: tuple[QueryWarning, ...] = ()
    errors: tuple[str, ...] = ()
    explanation: str = ""

    @property
    def applied_optimizations(self) -> list[OptimizationResult]:
        return [o for o in self.optimizations if o.applied]


class OptimizationStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_queries: int
    optimized_queries: int
    average_performance_score: float
    common_issues: dict[str, int] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
