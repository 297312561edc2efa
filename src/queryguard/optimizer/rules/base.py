"""
Base class for optimization rules.

All rules inherit from OptimizationRule and implement condition() and
apply(). A rule never touches the tree itself: apply() returns an action
that the engine executes.

    ModifyAction  – one or more QueryModification entries for the engine
                    to apply through the tree mutation routines
    WarnAction    – advisory only, the tree is left alone

Rules are stateless. The engine instantiates each rule once and reuses
it for every request; everything request-specific arrives in RuleContext.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from queryguard.optimizer.models import Impact, OptimizationOptions, OptimizationType, QueryContext
from queryguard.optimizer.statistics import StaticTableStatistics, TableStatisticsProvider
from queryguard.parser.models import ParsedQuery


class ModificationKind(str, Enum):
    ADD_FILTER = "add_filter"
    ADD_LIMIT = "add_limit"
    ADD_CTE = "add_cte"
    ADD_INDEX_HINT = "add_index_hint"


@dataclass(frozen=True)
class QueryModification:
    """
    A single tree edit requested by a rule.

    ``value`` depends on ``kind``: a sqlglot condition for ADD_FILTER, an
    int for ADD_LIMIT, a (table, index) pair for ADD_INDEX_HINT. A None
    value means the rule had nothing concrete to add.
    """

    kind: ModificationKind
    target: str
    value: Any
    description: str


@dataclass(frozen=True)
class ModifyAction:
    modifications: tuple[QueryModification, ...]
    impact: Impact
    message: str | None = None


@dataclass(frozen=True)
class WarnAction:
    message: str
    impact: Impact


Action = Union[ModifyAction, WarnAction]


@dataclass(frozen=True)
class RuleContext:
    """
    Request-scoped inputs shared by all rules.

    Attributes:
        client_id: Tenant the query must be scoped to
        upload_id: Upload (company dataset) in scope, if any
        query_context: Caller hints (domain, max_results, ...)
        options: Engine switches and the configured row ceiling
        statistics: Table statistics for index-aware rules
    """

    client_id: str
    upload_id: str | None = None
    query_context: QueryContext | None = None
    options: OptimizationOptions = field(default_factory=OptimizationOptions)
    statistics: TableStatisticsProvider = field(default_factory=StaticTableStatistics)

    @property
    def max_rows(self) -> int:
        """Effective row ceiling: the smaller of the caller's cap and the configured maximum."""
        requested = self.query_context.max_results if self.query_context else None
        if requested is None:
            return self.options.max_row_limit
        return min(requested, self.options.max_row_limit)


class OptimizationRule(ABC):
    """
    Abstract base class for optimization rules.

    Attributes:
        rule_id: Unique identifier, lower_snake_case (e.g., "enforce_row_limit")
        name: Short display name
        description: One-line description, used in explanations
        priority: Higher runs first; ties keep declaration order
        optimization_type: Category recorded in the optimization log
        option_flag: OptimizationOptions field that disables the rule when False
    """

    rule_id: str
    name: str
    description: str = ""
    priority: int = 0
    optimization_type: OptimizationType
    option_flag: str | None = None

    def enabled_for(self, options: OptimizationOptions) -> bool:
        if self.option_flag is None:
            return True
        return bool(getattr(options, self.option_flag, True))

    @abstractmethod
    def condition(self, query: ParsedQuery, ctx: RuleContext) -> bool:
        """Return True if the rule should fire for this query."""
        ...

    @abstractmethod
    def apply(self, query: ParsedQuery, ctx: RuleContext) -> Action:
        """Produce the action for a query that satisfied condition()."""
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.rule_id} priority={self.priority}>"
