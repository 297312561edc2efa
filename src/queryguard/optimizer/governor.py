"""
Governance orchestrator.

One pass over a candidate statement:

    parse -> validate -> apply rules -> render -> reparse -> re-validate
          -> isolation post-conditions -> analyze -> explain

Every failure along the way is turned into a well-formed
OptimizationResponse that hands back the original SQL untouched.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from queryguard.config import Config, get_config
from queryguard.exceptions import ParseError, RuleError, SerializationError
from queryguard.optimizer import mutations
from queryguard.optimizer.engine import OptimizationEngine
from queryguard.optimizer.models import (
    OptimizationOptions,
    OptimizationRequest,
    OptimizationResponse,
    OptimizationResult,
    OptimizationStats,
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
from queryguard.optimizer.rules.isolation import CLIENT_COLUMNS, UPLOAD_COLUMNS, is_upload_scoped
from queryguard.optimizer.safety import VIOLATION_SUGGESTIONS, SafetyValidator
from queryguard.optimizer.statistics import StaticTableStatistics, TableStatisticsProvider
from queryguard.parser import ParsedQuery, QueryParser

logger = logging.getLogger(__name__)

MAX_EXPLAINED_RECOMMENDATIONS = 3


class QueryOptimizer:
    """
    Composes parser, validator, rule engine and analyzer.

    Example:
        optimizer = QueryOptimizer()
        response = optimizer.optimize(OptimizationRequest(
            sql="SELECT * FROM transactions WHERE amount > 1000",
            client_id="c1",
            upload_id="u1",
        ))
        response.optimized_sql
    """

    def __init__(
        self,
        config: Config | None = None,
        statistics: TableStatisticsProvider | None = None,
        parser: QueryParser | None = None,
        engine: OptimizationEngine | None = None,
        validator: SafetyValidator | None = None,
        analyzer: PerformanceAnalyzer | None = None,
    ) -> None:
        self.config = config or get_config()
        self.statistics = statistics or self._load_statistics(self.config)
        self.parser = parser or QueryParser()
        self.engine = engine or OptimizationEngine(statistics=self.statistics, config=self.config)
        self.validator = validator or SafetyValidator(max_row_limit=self.config.max_row_limit)
        self.analyzer = analyzer or PerformanceAnalyzer(self.statistics)

    @staticmethod
    def _load_statistics(config: Config) -> TableStatisticsProvider:
        if config.table_statistics_file:
            return StaticTableStatistics.from_file(Path(config.table_statistics_file))
        return StaticTableStatistics()

    # ── Main pipeline ───────────────────────────────────────────────────

    def optimize(self, request: OptimizationRequest) -> OptimizationResponse:
        sql = request.sql
        options = request.options or OptimizationOptions(max_row_limit=self.config.max_row_limit)
        context = request.context
        warnings: list[QueryWarning] = []
        errors: list[str] = []

        try:
            parsed = self.parser.parse(sql)
        except ParseError as e:
            logger.debug("Parse failed: %s", e.message)
            return self._failed(sql, f"Failed to parse SQL: {e.message}")

        validation = self.validator.validate(parsed, context, options)
        for violation in validation.violations:
            if violation.severity == ViolationSeverity.ERROR:
                errors.append(violation.message)
            else:
                warnings.append(self._validation_warning(violation))

        if not validation.is_safe:
            logger.debug("Original query unsafe: %s", errors)
            return self._failed(sql, "Query failed safety validation", errors=errors, warnings=warnings)

        try:
            outcome = self.engine.apply_optimizations(
                parsed,
                request.client_id,
                request.upload_id,
                context,
                options,
            )
        except RuleError as e:
            logger.warning("Optimization rule failed: %s", e.message)
            return self._failed(sql, e.message, warnings=warnings)

        if outcome.applied:
            try:
                optimized_sql = self.parser.to_sql(outcome.tree)
            except SerializationError as e:
                return self._failed(sql, f"Failed to generate optimized SQL: {e.message}", warnings=warnings)

            try:
                optimized = self.parser.parse(optimized_sql)
            except ParseError as e:
                return self._failed(sql, f"Failed to generate optimized SQL: {e.message}", warnings=warnings)
        else:
            # untouched tree: hand back the caller's text
            optimized_sql, optimized = sql, parsed

        revalidation = self.validator.validate(optimized, context, options)
        if not revalidation.is_safe:
            errors.append("Optimized query failed safety validation")
            errors.extend(v.message for v in revalidation.errors)
            logger.warning("Rewritten query failed safety validation")
            return self._failed(
                sql, "Optimization resulted in unsafe query", errors=errors, warnings=warnings
            )

        if optimized.is_select:
            errors.extend(self._isolation_errors(optimized, request, context, options))

        analysis = PerformanceAnalysis()
        if options.analyze_performance:
            analysis = self.analyzer.analyze(optimized, context)
            warnings.extend(
                QueryWarning(level=WarningLevel.WARNING, code="PERFORMANCE", message=w)
                for w in analysis.warnings
            )
            warnings.extend(
                QueryWarning(level=WarningLevel.INFO, code="RECOMMENDATION", message=r)
                for r in analysis.recommendations
            )

        explanation = self._explain(parsed, optimized, outcome.optimizations, analysis, validation)
        logger.debug(
            "Optimized query with %d applied optimization(s)",
            sum(1 for o in outcome.optimizations if o.applied),
        )

        return OptimizationResponse(
            original_sql=sql,
            optimized_sql=optimized_sql,
            is_valid=validation.is_valid and not errors,
            is_safe=revalidation.is_safe,
            optimizations=outcome.optimizations,
            performance_analysis=analysis,
            warnings=tuple(warnings),
            errors=tuple(errors),
            explanation=explanation,
        )

    def _isolation_errors(
        self,
        optimized: ParsedQuery,
        request: OptimizationRequest,
        context: QueryContext | None,
        options: OptimizationOptions,
    ) -> list[str]:
        errors: list[str] = []
        max_rows = options.max_row_limit
        if context is not None and context.max_results:
            max_rows = min(max_rows, context.max_results)

        if not mutations.has_equality(optimized.tree, CLIENT_COLUMNS, request.client_id):
            errors.append(f"Optimized query is not scoped to client_id '{request.client_id}'")

        if optimized.limit is None or optimized.limit > max_rows:
            errors.append(f"Optimized query must be limited to at most {max_rows} rows")

        domain = context.domain if context else "audit"
        if options.enforce_upload_id and (request.upload_id or domain == "audit"):
            if request.upload_id is None:
                scoped = mutations.has_equality(optimized.tree, UPLOAD_COLUMNS)
            else:
                scoped = is_upload_scoped(optimized, request.upload_id)
            if not scoped:
                errors.append("Optimized query is not scoped to an upload (uploadId)")

        return errors

    # ── Responses ───────────────────────────────────────────────────────

    @staticmethod
    def _validation_warning(violation: Violation) -> QueryWarning:
        return QueryWarning(
            level=WarningLevel.WARNING,
            code=f"VALIDATION_{violation.type.value.upper()}",
            message=violation.message,
            suggestion=VIOLATION_SUGGESTIONS.get(violation.type),
        )

    @staticmethod
    def _failed(
        sql: str,
        message: str,
        errors: list[str] | None = None,
        warnings: list[QueryWarning] | None = None,
    ) -> OptimizationResponse:
        return OptimizationResponse(
            original_sql=sql,
            optimized_sql=sql,
            is_valid=False,
            is_safe=False,
            optimizations=(),
            performance_analysis=PerformanceAnalysis(score=0, scan_type=ScanType.TABLE_SCAN),
            warnings=tuple(warnings or ()),
            errors=tuple(errors) if errors else (message,),
            explanation=f"Optimization failed: {message}",
        )

    @staticmethod
    def _explain(
        original: ParsedQuery,
        optimized: ParsedQuery,
        optimizations: Iterable[OptimizationResult],
        analysis: PerformanceAnalysis,
        validation: ValidationResult,
    ) -> str:
        lines: list[str] = []
        applied = [o for o in optimizations if o.applied]

        if applied:
            lines.append(
                f"Applied {len(applied)} optimization(s) to improve query performance and safety."
            )
            lines.append("")
            lines.append("Optimizations applied:")
            for optimization in applied:
                line = f"• {optimization.description}"
                if optimization.details:
                    line += f" - {optimization.details}"
                lines.append(line)
        else:
            lines.append("Query is already optimized or no optimizations could be applied.")

        lines.append("")
        lines.append("Performance characteristics:")
        lines.append(f"• Scan type: {analysis.scan_type.value}")
        if analysis.estimated_rows is not None:
            lines.append(f"• Estimated rows: {analysis.estimated_rows:,}")
        else:
            lines.append("• Estimated rows: Unknown")
        lines.append(f"• Performance score: {analysis.score}/100")
        if analysis.indexes_used:
            lines.append(f"• Indexes used: {', '.join(analysis.indexes_used)}")
        else:
            lines.append("• Warning: No indexes identified for use")

        if original.limit is None and optimized.limit is not None:
            lines.append("")
            lines.append(f"Added row limit of {optimized.limit} to prevent excessive data retrieval.")
        if not original.conditions_on(*UPLOAD_COLUMNS) and optimized.conditions_on(*UPLOAD_COLUMNS):
            lines.append("Added uploadId filter to utilize clustered index for better performance.")
        if not original.conditions_on(*CLIENT_COLUMNS) and optimized.conditions_on(*CLIENT_COLUMNS):
            lines.append("Added client_id filter for multi-tenant data isolation.")

        if validation.errors:
            lines.append("")
            lines.append("Security/safety issues addressed:")
            lines.extend(f"• {v.message}" for v in validation.errors)

        if analysis.recommendations:
            lines.append("")
            lines.append("Additional recommendations:")
            lines.extend(
                f"• {r}" for r in analysis.recommendations[:MAX_EXPLAINED_RECOMMENDATIONS]
            )

        return "\n".join(lines)

    # ── Standalone entry points ─────────────────────────────────────────

    def validate(self, sql: str, client_id: str, upload_id: str | None = None) -> ValidationResult:
        """Validate without rewriting; parse failures come back as an error violation."""
        try:
            parsed = self.parser.parse(sql)
        except ParseError as e:
            return ValidationResult(
                is_valid=False,
                is_safe=False,
                violations=(
                    Violation(
                        type=ViolationType.SQL_INJECTION,
                        severity=ViolationSeverity.ERROR,
                        message=f"Failed to validate query: {e.message}",
                    ),
                ),
            )
        options = OptimizationOptions(
            max_row_limit=self.config.max_row_limit,
            enforce_upload_id=upload_id is not None,
        )
        return self.validator.validate(parsed, None, options)

    def analyze(self, sql: str) -> PerformanceAnalysis | None:
        try:
            return self.analyzer.analyze(self.parser.parse(sql))
        except ParseError as e:
            logger.debug("Cannot analyze unparseable SQL: %s", e.message)
            return None

    def uses_proper_indexes(self, sql: str) -> bool:
        """True when the statement is expected to seek or scan an index."""
        analysis = self.analyze(sql)
        if analysis is None:
            return False
        return analysis.uses_indexes and analysis.scan_type in (ScanType.INDEX_SEEK, ScanType.INDEX_SCAN)

    def get_optimization_stats(self, requests: Iterable[OptimizationRequest]) -> OptimizationStats:
        """Run every request and aggregate scores and warning codes."""
        total = 0
        optimized = 0
        score_sum = 0
        issues: dict[str, int] = {}

        for request in requests:
            total += 1
            response = self.optimize(request)
            if response.applied_optimizations:
                optimized += 1
            score_sum += response.performance_analysis.score
            for warning in response.warnings:
                issues[warning.code] = issues.get(warning.code, 0) + 1

        return OptimizationStats(
            total_queries=total,
            optimized_queries=optimized,
            average_performance_score=score_sum / total if total else 0.0,
            common_issues=issues,
        )
