"""
Heuristic performance model for governed SELECTs.

No EXPLAIN, no catalog round trip: the analyzer combines the parsed
description with row counts and index definitions from a
TableStatisticsProvider.

Technical approach:
1. Match WHERE predicates and join columns against each table's indexes
2. Pick the expected access path (seek > scan > clustered scan > table scan)
3. Estimate rows from the largest table times per-predicate selectivity
4. Add up a unit-less cost and a 0-100 score from the same signals
"""

from __future__ import annotations

import logging
import math

from queryguard.optimizer.models import PerformanceAnalysis, QueryContext, ScanType
from queryguard.optimizer.rules.advisory import has_leading_wildcard
from queryguard.optimizer.statistics import (
    IndexInfo,
    StaticTableStatistics,
    TableStatisticsProvider,
)
from queryguard.parser.models import JoinKind, ParsedQuery

logger = logging.getLogger(__name__)

INDEX_FRIENDLY_OPERATORS = frozenset({"=", "<", ">", "<=", ">=", "IN", "BETWEEN"})

SELECTIVITY: dict[str, float] = {
    "=": 0.01,
    "IN": 0.05,
    "BETWEEN": 0.1,
    "<": 0.3,
    ">": 0.3,
    "<=": 0.3,
    ">=": 0.3,
    "LIKE": 0.2,
}
DEFAULT_SELECTIVITY = 0.5

JOIN_FACTORS: dict[JoinKind, float] = {
    JoinKind.INNER: 0.8,
    JoinKind.LEFT: 1.2,
    JoinKind.RIGHT: 1.2,
}

BASE_COST: dict[ScanType, int] = {
    ScanType.INDEX_SEEK: 1,
    ScanType.INDEX_SCAN: 10,
    ScanType.CLUSTERED_INDEX_SCAN: 50,
    ScanType.TABLE_SCAN: 100,
}

SCAN_PENALTY: dict[ScanType, int] = {
    ScanType.INDEX_SEEK: 0,
    ScanType.INDEX_SCAN: 10,
    ScanType.CLUSTERED_INDEX_SCAN: 20,
    ScanType.TABLE_SCAN: 40,
}

TIME_MULTIPLIER: dict[ScanType, float] = {
    ScanType.INDEX_SEEK: 0.5,
    ScanType.INDEX_SCAN: 1,
    ScanType.CLUSTERED_INDEX_SCAN: 2,
    ScanType.TABLE_SCAN: 5,
}

LARGE_TABLE_ROWS = 1_000_000


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class PerformanceAnalyzer:
    """
    Scores a parsed SELECT against the table statistics model.

    Example:
        analyzer = PerformanceAnalyzer()
        analysis = analyzer.analyze(parser.parse(
            "SELECT TOP 100 id FROM transactions WHERE uploadId = 'u1'"
        ))
        analysis.scan_type   # ScanType.INDEX_SEEK
    """

    def __init__(self, statistics: TableStatisticsProvider | None = None) -> None:
        self.statistics = statistics or StaticTableStatistics()

    def analyze(self, query: ParsedQuery, context: QueryContext | None = None) -> PerformanceAnalysis:
        indexes_used = self._used_indexes(query)
        scan_type = self._scan_type(query, indexes_used)
        rows = self._estimate_rows(query)
        cost = self._estimate_cost(query, rows, scan_type)

        analysis = PerformanceAnalysis(
            estimated_rows=rows,
            estimated_cost=cost,
            uses_indexes=bool(indexes_used),
            indexes_used=tuple(indexes_used),
            scan_type=scan_type,
            warnings=tuple(self._warnings(query, scan_type, indexes_used)),
            recommendations=tuple(self._recommendations(query, scan_type, indexes_used)),
            score=self._score(query, scan_type, indexes_used, rows),
        )
        logger.debug(
            "Performance: scan=%s rows=%d cost=%d score=%d",
            scan_type.value, rows, cost, analysis.score,
        )
        return analysis

    # ── Index matching ──────────────────────────────────────────────────

    def _used_indexes(self, query: ParsedQuery) -> list[str]:
        used: list[str] = []
        for table in query.tables:
            stats = self.statistics.get(table.name)
            if stats is None:
                continue
            for index in stats.indexes:
                if self._can_use_index(query, table.name, index):
                    used.append(f"{table.name}.{index.name}")
        return used

    @staticmethod
    def _can_use_index(query: ParsedQuery, table_name: str, index: IndexInfo) -> bool:
        columns = {c.lower() for c in index.columns}

        for condition in query.where_conditions:
            if condition.column.lower() in columns and condition.operator.upper() in INDEX_FRIENDLY_OPERATORS:
                return True

        for join in query.joins:
            if join.table.name.lower() != table_name.lower():
                continue
            if any(c.lower() in columns for c in join.columns):
                return True

        return False

    @staticmethod
    def _scan_type(query: ParsedQuery, indexes_used: list[str]) -> ScanType:
        has_upload_equality = any(
            c.column.lower() == "uploadid" and c.operator == "=" for c in query.where_conditions
        )
        if has_upload_equality and any("uploadId" in name for name in indexes_used):
            return ScanType.INDEX_SEEK

        if indexes_used:
            equality_on_index = any(
                c.operator == "=" and c.column
                and any(c.column.lower() in name.lower() for name in indexes_used)
                for c in query.where_conditions
            )
            return ScanType.INDEX_SEEK if equality_on_index else ScanType.INDEX_SCAN

        if any("id" in c.column.lower() and c.operator == "=" for c in query.where_conditions):
            return ScanType.CLUSTERED_INDEX_SCAN

        return ScanType.TABLE_SCAN

    # ── Estimates ───────────────────────────────────────────────────────

    def _estimate_rows(self, query: ParsedQuery) -> int:
        rows = 0
        for table in query.tables:
            stats = self.statistics.get(table.name)
            if stats is not None:
                rows = max(rows, stats.row_count)

        selectivity = 1.0
        for condition in query.where_conditions:
            selectivity *= SELECTIVITY.get(condition.operator.upper(), DEFAULT_SELECTIVITY)

        for join in query.joins:
            if join.kind == JoinKind.CROSS:
                stats = self.statistics.get(join.table.name)
                if stats is not None:
                    rows *= stats.row_count
            else:
                selectivity *= JOIN_FACTORS.get(join.kind, 1.0)

        estimated = math.floor(rows * selectivity)
        if query.limit:
            estimated = min(estimated, query.limit)
        return max(1, estimated)

    @staticmethod
    def _estimate_cost(query: ParsedQuery, rows: int, scan_type: ScanType) -> int:
        cost = float(BASE_COST[scan_type])
        cost += rows * 0.001
        cost += len(query.joins) * 20
        if query.order_by:
            cost += math.log10(rows) * 10
        if query.group_by:
            cost += math.log10(rows) * 15
        cost += len(query.subquery_conditions) * 50
        return _round_half_up(cost)

    # ── Findings ────────────────────────────────────────────────────────

    @staticmethod
    def _warnings(query: ParsedQuery, scan_type: ScanType, indexes_used: list[str]) -> list[str]:
        warnings: list[str] = []

        if scan_type == ScanType.TABLE_SCAN:
            warnings.append(
                "Query will perform a full table scan - consider adding WHERE conditions on indexed columns"
            )
        if not any(c.column.lower() == "uploadid" for c in query.where_conditions):
            warnings.append("Query does not filter by uploadId - this may impact performance")
        if "*" in query.columns:
            warnings.append("SELECT * can impact performance - specify only required columns")
        if len(query.joins) > 3:
            warnings.append(
                f"Query has {len(query.joins)} JOINs - consider breaking into smaller queries or using CTEs"
            )
        if has_leading_wildcard(query):
            warnings.append("LIKE pattern with leading % prevents index usage")
        if not indexes_used and query.tables:
            warnings.append("No indexes identified for use - query may be slow")
        if not query.limit:
            warnings.append("Query has no LIMIT/TOP clause - may return excessive rows")

        return warnings

    def _recommendations(
        self,
        query: ParsedQuery,
        scan_type: ScanType,
        indexes_used: list[str],
    ) -> list[str]:
        recommendations: list[str] = []

        if scan_type == ScanType.TABLE_SCAN:
            recommendations.append("Add WHERE condition on uploadId to use clustered index")
            filtered = [c.column for c in query.where_conditions if c.column]
            if filtered:
                recommendations.append(f"Consider creating index on columns: {', '.join(filtered)}")

        if query.columns and "*" not in query.columns and len(query.columns) <= 5:
            recommendations.append(
                f"Consider creating covering index with columns: {', '.join(query.columns)}"
            )

        if query.subquery_conditions and not query.ctes:
            recommendations.append("Consider using CTEs instead of subqueries for better performance")

        large = [
            t for t in query.tables
            if (stats := self.statistics.get(t.name)) is not None and stats.row_count > LARGE_TABLE_ROWS
        ]
        if large:
            recommendations.append("Consider table partitioning for large tables")

        if not indexes_used:
            recommendations.append("Ensure table statistics are up to date")
        if len(query.joins) > 5:
            recommendations.append("Consider breaking this query into multiple smaller queries")
        if len(query.joins) > 2 and query.group_by:
            recommendations.append("Consider creating an indexed view for this query pattern")

        return recommendations

    @staticmethod
    def _score(query: ParsedQuery, scan_type: ScanType, indexes_used: list[str], rows: int) -> int:
        score = 100 - SCAN_PENALTY[scan_type]

        columns = {c.column.lower() for c in query.where_conditions}
        if "uploadid" not in columns:
            score -= 20
        if "client_id" not in columns:
            score -= 15
        if "*" in query.columns:
            score -= 10
        if len(query.joins) > 3:
            score -= min(30, len(query.joins) * 5)
        if not query.limit and rows > 1000:
            score -= 15
        score -= min(20, len(query.subquery_conditions) * 5)
        if not indexes_used and query.tables:
            score -= 25

        return max(0, min(100, score))

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def will_use_clustered_index(query: ParsedQuery) -> bool:
        return any(
            c.column.lower() in ("uploadid", "upload_id") and c.operator == "="
            for c in query.where_conditions
        )

    @staticmethod
    def estimated_execution_time(analysis: PerformanceAnalysis) -> int:
        """Rough wall-clock estimate in milliseconds."""
        cost = analysis.estimated_cost or 0
        return _round_half_up(10 + cost * TIME_MULTIPLIER[analysis.scan_type])
