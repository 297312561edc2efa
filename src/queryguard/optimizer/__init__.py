"""
Query governance pipeline.

Module responsibilities:
- models.py: Request/response models (pydantic, frozen)
- mutations.py: Tree-level rewrites shared with the mode layer
- rules/: Prioritized optimization rules
- engine.py: Rule engine (ordering, modification dispatch)
- safety.py: Safety validator (blocking errors, advisory warnings)
- statistics.py: Table statistics provider
- performance.py: Heuristic performance analyzer
- governor.py: QueryOptimizer orchestrator
"""

from queryguard.optimizer.engine import EngineOutcome, OptimizationEngine
from queryguard.optimizer.governor import QueryOptimizer
from queryguard.optimizer.models import (
    Impact,
    OptimizationOptions,
    OptimizationRequest,
    OptimizationResponse,
    OptimizationResult,
    OptimizationStats,
    OptimizationType,
    PerformanceAnalysis,
    QueryContext,
    QueryWarning,
    ScanType,
    ValidationResult,
    Violation,
    ViolationSeverity,
    ViolationType,
    WarningLevel,
)
from queryguard.optimizer.performance import PerformanceAnalyzer
from queryguard.optimizer.safety import SafetyValidator
from queryguard.optimizer.statistics import (
    IndexInfo,
    StaticTableStatistics,
    TableStatistics,
    TableStatisticsProvider,
)

__all__ = [
    "EngineOutcome",
    "Impact",
    "IndexInfo",
    "OptimizationEngine",
    "OptimizationOptions",
    "OptimizationRequest",
    "OptimizationResponse",
    "OptimizationResult",
    "OptimizationStats",
    "OptimizationType",
    "PerformanceAnalysis",
    "PerformanceAnalyzer",
    "QueryContext",
    "QueryOptimizer",
    "QueryWarning",
    "SafetyValidator",
    "ScanType",
    "StaticTableStatistics",
    "TableStatistics",
    "TableStatisticsProvider",
    "ValidationResult",
    "Violation",
    "ViolationSeverity",
    "ViolationType",
    "WarningLevel",
]
