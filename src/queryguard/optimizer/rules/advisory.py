"""Advisory rules. None of these change the tree."""

from __future__ import annotations

from queryguard.optimizer.models import Impact, OptimizationType
from queryguard.optimizer.rules.base import Action, OptimizationRule, RuleContext, WarnAction
from queryguard.parser.models import JoinKind, ParsedQuery


def has_leading_wildcard(query: ParsedQuery) -> bool:
    return any(
        c.operator.upper() == "LIKE" and isinstance(c.value, str) and c.value.startswith("%")
        for c in query.where_conditions
    )


class CheckMissingWhere(OptimizationRule):
    rule_id = "check_missing_where"
    name = "Check Missing WHERE"
    description = "Warn about queries without WHERE clause"
    priority = 85
    optimization_type = OptimizationType.PREDICATE_PUSHDOWN

    def condition(self, query: ParsedQuery, ctx: RuleContext) -> bool:
        return query.is_select and not query.where_conditions and query.limit is None

    def apply(self, query: ParsedQuery, ctx: RuleContext) -> Action:
        return WarnAction(
            message="Query has no WHERE clause and no LIMIT - this could return excessive data",
            impact=Impact.HIGH,
        )


class CheckCartesianProduct(OptimizationRule):
    rule_id = "check_cartesian_product"
    name = "Check Cartesian Product"
    description = "Detect potential Cartesian products"
    priority = 75
    optimization_type = OptimizationType.JOIN_OPTIMIZATION

    def condition(self, query: ParsedQuery, ctx: RuleContext) -> bool:
        return any(j.kind == JoinKind.CROSS or not j.condition_text for j in query.joins)

    def apply(self, query: ParsedQuery, ctx: RuleContext) -> Action:
        return WarnAction(
            message="Query contains potential Cartesian product - this could result in excessive rows",
            impact=Impact.HIGH,
        )


class AvoidSelectStar(OptimizationRule):
    rule_id = "avoid_select_star"
    name = "Avoid SELECT *"
    description = "Discourage use of SELECT * for performance"
    priority = 50
    optimization_type = OptimizationType.COLUMN_PRUNING

    def condition(self, query: ParsedQuery, ctx: RuleContext) -> bool:
        return query.is_select and "*" in query.columns

    def apply(self, query: ParsedQuery, ctx: RuleContext) -> Action:
        return WarnAction(
            message="SELECT * should be avoided. Specify required columns explicitly",
            impact=Impact.LOW,
        )


class OptimizeLikePatterns(OptimizationRule):
    rule_id = "optimize_like_patterns"
    name = "Optimize LIKE Patterns"
    description = "Warn about non-sargable LIKE patterns"
    priority = 40
    optimization_type = OptimizationType.INDEX_USAGE

    def condition(self, query: ParsedQuery, ctx: RuleContext) -> bool:
        return has_leading_wildcard(query)

    def apply(self, query: ParsedQuery, ctx: RuleContext) -> Action:
        return WarnAction(
            message="LIKE pattern starting with % prevents index usage",
            impact=Impact.MEDIUM,
        )
