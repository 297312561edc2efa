"""
Structural description of a parsed SQL statement.

A ParsedQuery is derived from a sqlglot expression tree and is never
mutated. Rewrites happen on the tree; the description is re-derived by
parsing the rendered SQL again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlglot import exp


class QueryType(str, Enum):
    """Leading statement kind."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    DROP = "drop"
    ALTER = "alter"
    CREATE = "create"
    TRUNCATE = "truncate"
    OTHER = "other"


class ConditionKind(str, Enum):
    """Shape of a WHERE predicate."""

    SIMPLE = "simple"        # column <op> value
    COMPLEX = "complex"      # expression on the left-hand side
    SUBQUERY = "subquery"    # value is a subquery (IN / EXISTS / comparison)


class JoinKind(str, Enum):
    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"
    FULL = "full"
    CROSS = "cross"


@dataclass(frozen=True)
class TableReference:
    """A table named in FROM/JOIN (or the target of a DML/DDL statement)."""

    name: str
    alias: str | None = None
    database: str | None = None
    schema: str | None = None


@dataclass(frozen=True)
class WhereCondition:
    """
    One flattened WHERE predicate.

    Attributes:
        column: Column name on the left-hand side ("" for EXISTS)
        operator: Upper-case SQL operator (=, <>, LIKE, NOT IN, BETWEEN, ...)
        value: Summarized right-hand side: a literal, "column:<name>",
            "function:<name>", "subquery", or a list of those for IN/BETWEEN
        kind: simple, complex or subquery
    """

    column: str
    operator: str
    value: Any
    kind: ConditionKind = ConditionKind.SIMPLE


@dataclass(frozen=True)
class JoinInfo:
    kind: JoinKind
    table: TableReference
    condition_text: str = ""
    columns: tuple[str, ...] = ()


@dataclass(frozen=True)
class OrderByClause:
    column: str
    direction: str = "ASC"


@dataclass(frozen=True)
class CTEInfo:
    name: str
    columns: tuple[str, ...] = ()
    query: str = ""
    recursive: bool = False


@dataclass(frozen=True)
class ParsedQuery:
    """
    Normalized description of one SQL statement.

    Attributes:
        tree: The sqlglot expression the description was derived from
        sql: Source text the tree was parsed from
        type: Leading statement kind
        operation: Leading statement keyword as written (SELECT, DROP, EXEC, ...)
        statement_count: Number of statements found in ``sql``
        tables: Tables referenced by the statement
        columns: Projected column names ("*" kept literally)
        where_conditions: Flattened WHERE predicates (AND and OR merged)
        joins: Joins of the primary SELECT
        limit: Row limit from LIMIT, TOP or OFFSET ... FETCH
        order_by: ORDER BY items
        group_by: GROUP BY expressions
        ctes: WITH clause entries
        having: True when a HAVING clause is present
    """

    tree: exp.Expression
    sql: str
    type: QueryType
    operation: str
    statement_count: int = 1
    tables: tuple[TableReference, ...] = ()
    columns: tuple[str, ...] = ()
    where_conditions: tuple[WhereCondition, ...] = ()
    joins: tuple[JoinInfo, ...] = ()
    limit: int | None = None
    order_by: tuple[OrderByClause, ...] = ()
    group_by: tuple[str, ...] = ()
    ctes: tuple[CTEInfo, ...] = ()
    having: bool = False

    @property
    def is_select(self) -> bool:
        return self.type == QueryType.SELECT

    @property
    def table_names(self) -> list[str]:
        return [t.name for t in self.tables]

    def conditions_on(self, *columns: str) -> list[WhereCondition]:
        """Predicates whose column matches any of ``columns`` (case-insensitive)."""
        wanted = {c.lower() for c in columns}
        return [c for c in self.where_conditions if c.column.lower() in wanted]

    @property
    def subquery_conditions(self) -> list[WhereCondition]:
        return [c for c in self.where_conditions if c.kind == ConditionKind.SUBQUERY]
