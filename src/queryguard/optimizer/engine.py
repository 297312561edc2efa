"""
Optimization rule engine.

Runs the rule table against one parsed query:

    for rule in rules sorted by priority (desc, stable):
        if rule.condition(query, ctx):
            action = rule.apply(query, ctx)
            ModifyAction -> mutate a copy of the tree
            WarnAction   -> advisory only
            record one OptimizationResult

Rules always see the description of the query as it was submitted; the
tree they ask to modify is a private copy, so the caller's ParsedQuery
stays untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlglot import exp

from queryguard.config import Config, get_config
from queryguard.exceptions import RuleError
from queryguard.optimizer import mutations
from queryguard.optimizer.models import (
    OptimizationOptions,
    OptimizationResult,
    QueryContext,
)
from queryguard.optimizer.rules import (
    ModificationKind,
    ModifyAction,
    OptimizationRule,
    QueryModification,
    RuleContext,
    default_rules,
)
from queryguard.optimizer.statistics import StaticTableStatistics, TableStatisticsProvider
from queryguard.parser.models import ParsedQuery

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineOutcome:
    """Rewritten tree plus the log of fired rules, in firing order."""

    tree: exp.Expression
    optimizations: tuple[OptimizationResult, ...]

    @property
    def applied(self) -> list[OptimizationResult]:
        return [o for o in self.optimizations if o.applied]


class OptimizationEngine:
    """
    Applies the prioritized rule table to parsed queries.

    Example:
        engine = OptimizationEngine()
        outcome = engine.apply_optimizations(parsed, client_id="c1", upload_id="u1")
        sql = QueryParser().to_sql(outcome.tree)
    """

    def __init__(
        self,
        rules: Iterable[OptimizationRule] | None = None,
        statistics: TableStatisticsProvider | None = None,
        config: Config | None = None,
    ) -> None:
        self.config = config or get_config()
        self.statistics = statistics or StaticTableStatistics()
        candidates = list(rules) if rules is not None else default_rules()
        enabled = [r for r in candidates if self.config.is_rule_enabled(r.rule_id)]
        # sorted() is stable, so ties keep declaration order
        self._rules: tuple[OptimizationRule, ...] = tuple(
            sorted(enabled, key=lambda r: r.priority, reverse=True)
        )

    @property
    def rules(self) -> tuple[OptimizationRule, ...]:
        """Rules in execution order."""
        return self._rules

    def default_options(self) -> OptimizationOptions:
        return OptimizationOptions(max_row_limit=self.config.max_row_limit)

    def apply_optimizations(
        self,
        query: ParsedQuery,
        client_id: str,
        upload_id: str | None = None,
        context: QueryContext | None = None,
        options: OptimizationOptions | None = None,
    ) -> EngineOutcome:
        """
        Run every enabled rule whose condition holds.

        Raises:
            RuleError: If a rule's condition or apply step raises.
        """
        ctx = RuleContext(
            client_id=client_id,
            upload_id=upload_id,
            query_context=context,
            options=options or self.default_options(),
            statistics=self.statistics,
        )
        tree = query.tree.copy()
        optimizations: list[OptimizationResult] = []

        for rule in self._rules:
            if not rule.enabled_for(ctx.options):
                continue
            try:
                if not rule.condition(query, ctx):
                    continue
                action = rule.apply(query, ctx)
            except Exception as e:
                raise RuleError(rule.rule_id, e) from e

            if isinstance(action, ModifyAction):
                applied = False
                for modification in action.modifications:
                    applied = self._apply_modification(tree, modification) or applied
                details = action.message
                if not applied and details is None:
                    details = "Query already satisfies this rule"
                impact = action.impact
            else:
                applied = False
                details = action.message
                impact = action.impact

            logger.debug("Rule %s fired (applied=%s)", rule.rule_id, applied)
            optimizations.append(
                OptimizationResult(
                    rule_id=rule.rule_id,
                    type=rule.optimization_type,
                    description=rule.description,
                    impact=impact,
                    applied=applied,
                    details=details,
                )
            )

        return EngineOutcome(tree=tree, optimizations=tuple(optimizations))

    @staticmethod
    def _apply_modification(tree: exp.Expression, modification: QueryModification) -> bool:
        if modification.value is None:
            return False
        kind = modification.kind
        if kind == ModificationKind.ADD_FILTER:
            return mutations.add_filter(tree, modification.value)
        if kind == ModificationKind.ADD_LIMIT:
            return mutations.set_limit(tree, int(modification.value))
        if kind == ModificationKind.ADD_CTE:
            return mutations.add_cte_placeholder(tree)
        if kind == ModificationKind.ADD_INDEX_HINT:
            table_name, index_name = modification.value
            return mutations.add_index_hint(tree, table_name, index_name)
        return False
