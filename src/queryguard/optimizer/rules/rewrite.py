"""Performance rewrites: time window, join index hints and CTE conversion."""

from __future__ import annotations

from queryguard.optimizer import mutations
from queryguard.optimizer.models import Impact, OptimizationType
from queryguard.optimizer.rules.base import (
    Action,
    ModificationKind,
    ModifyAction,
    OptimizationRule,
    QueryModification,
    RuleContext,
    WarnAction,
)
from queryguard.parser.models import ParsedQuery, TableReference

PORTFOLIO_MARKERS = ("portfolio", "investment", "position")
DEFAULT_DATE_COLUMN = "transaction_date"
WINDOW_MONTHS = 3

# Substrings that make a join column look indexable
INDEXABLE_MARKERS = ("id", "key")


def is_portfolio_table(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in PORTFOLIO_MARKERS)


def has_date_predicate(query: ParsedQuery) -> bool:
    return any(
        "date" in c.column.lower() or "period" in c.column.lower()
        for c in query.where_conditions
    )


class OptimizeTimeWindow(OptimizationRule):
    """
    Bound portfolio queries to the trailing three months.

    The date column is the first indexed date-like column of the portfolio
    table, falling back to ``transaction_date``.
    """

    rule_id = "optimize_time_window"
    name = "Optimize Time Window"
    description = "Limit portfolio queries to 3-month window"
    priority = 80
    optimization_type = OptimizationType.TIME_WINDOW

    def condition(self, query: ParsedQuery, ctx: RuleContext) -> bool:
        return (
            query.is_select
            and any(is_portfolio_table(t.name) for t in query.tables)
            and not has_date_predicate(query)
        )

    def apply(self, query: ParsedQuery, ctx: RuleContext) -> Action:
        column = self._date_column(query, ctx)
        qualifier = None
        if query.joins:
            portfolio = next(t for t in query.tables if is_portfolio_table(t.name))
            qualifier = portfolio.alias or portfolio.name
        return ModifyAction(
            modifications=(
                QueryModification(
                    kind=ModificationKind.ADD_FILTER,
                    target="where",
                    value=mutations.date_window(column, WINDOW_MONTHS, table=qualifier),
                    description="Add 3-month time window for portfolio queries",
                ),
            ),
            impact=Impact.MEDIUM,
            message=f"Filtered {column} to the last {WINDOW_MONTHS} months",
        )

    @staticmethod
    def _date_column(query: ParsedQuery, ctx: RuleContext) -> str:
        for table in query.tables:
            if not is_portfolio_table(table.name):
                continue
            stats = ctx.statistics.get(table.name)
            if stats is not None:
                columns = stats.date_columns()
                if columns:
                    return columns[0]
        return DEFAULT_DATE_COLUMN


class OptimizeJoins(OptimizationRule):
    """
    Check that joins use indexable columns.

    Warns when a join's columns carry no id/key marker. Otherwise asks for
    an index hint on the first joined table whose statistics name an index
    over the join columns.
    """

    rule_id = "optimize_joins"
    name = "Optimize JOINs"
    description = "Ensure JOINs use indexed columns"
    priority = 70
    optimization_type = OptimizationType.JOIN_OPTIMIZATION
    option_flag = "optimize_joins"

    def condition(self, query: ParsedQuery, ctx: RuleContext) -> bool:
        return len(query.joins) > 0

    def apply(self, query: ParsedQuery, ctx: RuleContext) -> Action:
        unindexed = [
            join for join in query.joins
            if not any(marker in c.lower() for c in join.columns for marker in INDEXABLE_MARKERS)
        ]
        if unindexed:
            return WarnAction(
                message=f"{len(unindexed)} JOIN(s) may not be using indexed columns",
                impact=Impact.MEDIUM,
            )

        hints: list[QueryModification] = []
        for join in query.joins:
            candidate = self._hint_for(join.table, join.columns, ctx)
            if candidate is not None:
                hints.append(
                    QueryModification(
                        kind=ModificationKind.ADD_INDEX_HINT,
                        target="join",
                        value=candidate,
                        description=f"Add index hint {candidate[1]} on {candidate[0]}",
                    )
                )

        return ModifyAction(
            modifications=tuple(hints),
            impact=Impact.MEDIUM,
            message=None if hints else "No matching index found for JOIN columns",
        )

    @staticmethod
    def _hint_for(
        table: TableReference,
        columns: tuple[str, ...],
        ctx: RuleContext,
    ) -> tuple[str, str] | None:
        stats = ctx.statistics.get(table.name)
        if stats is None:
            return None
        index = stats.index_covering(columns)
        if index is None:
            return None
        return table.name, index.name


class AddCTEs(OptimizationRule):
    """
    Convert subquery predicates to CTEs.

    The conversion itself is not implemented: the modification is logged
    but leaves the tree unchanged.
    """

    rule_id = "add_ctes"
    name = "Add CTEs for Performance"
    description = "Convert complex subqueries to CTEs"
    priority = 60
    optimization_type = OptimizationType.CTE_ADDITION
    option_flag = "add_ctes"

    def condition(self, query: ParsedQuery, ctx: RuleContext) -> bool:
        return query.is_select and bool(query.subquery_conditions) and not query.ctes

    def apply(self, query: ParsedQuery, ctx: RuleContext) -> Action:
        return ModifyAction(
            modifications=(
                QueryModification(
                    kind=ModificationKind.ADD_CTE,
                    target="with",
                    value="optimize_subquery",
                    description="Convert subquery to CTE for better performance",
                ),
            ),
            impact=Impact.MEDIUM,
            message="Subquery to CTE conversion is not performed automatically",
        )
