"""
SQL structural parser built on sqlglot (T-SQL dialect).

Design principle: "Use the source of truth"
The tree is produced and rendered by sqlglot; this module only describes
it. The description is intentionally shallow: DML/DDL statements get a
type and their table list, SELECTs additionally get columns, flattened
predicates, joins, limit, ordering, grouping and CTEs.

Usage:
    from queryguard.parser import QueryParser

    parser = QueryParser()
    parsed = parser.parse("SELECT TOP 10 * FROM transactions WHERE amount > 1000")
    parsed.limit              # 10
    parsed.where_conditions   # (WhereCondition(column='amount', operator='>', ...),)
    parser.to_sql(parsed.tree)
"""

from __future__ import annotations

import logging
from typing import Any

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from queryguard.exceptions import ParseError, SerializationError
from queryguard.parser.models import (
    CTEInfo,
    ConditionKind,
    JoinInfo,
    JoinKind,
    OrderByClause,
    ParsedQuery,
    QueryType,
    TableReference,
    WhereCondition,
)

logger = logging.getLogger(__name__)

DIALECT = "tsql"

SELECT_INTO = "SELECT INTO"

# Statement classes keyed by name so that renamed classes across sqlglot
# releases (AlterTable -> Alter) resolve the same way.
_STATEMENT_TYPES: dict[str, QueryType] = {
    "Select": QueryType.SELECT,
    "Union": QueryType.SELECT,
    "Intersect": QueryType.SELECT,
    "Except": QueryType.SELECT,
    "Insert": QueryType.INSERT,
    "Update": QueryType.UPDATE,
    "Delete": QueryType.DELETE,
    "Drop": QueryType.DROP,
    "Alter": QueryType.ALTER,
    "AlterTable": QueryType.ALTER,
    "Create": QueryType.CREATE,
    "TruncateTable": QueryType.TRUNCATE,
}

# Keywords sqlglot leaves as opaque commands
_COMMAND_TYPES: dict[str, QueryType] = {
    "DROP": QueryType.DROP,
    "ALTER": QueryType.ALTER,
    "CREATE": QueryType.CREATE,
    "TRUNCATE": QueryType.TRUNCATE,
    "INSERT": QueryType.INSERT,
    "UPDATE": QueryType.UPDATE,
    "DELETE": QueryType.DELETE,
}

_OPERATION_NAMES: dict[QueryType, str] = {
    QueryType.SELECT: "SELECT",
    QueryType.INSERT: "INSERT",
    QueryType.UPDATE: "UPDATE",
    QueryType.DELETE: "DELETE",
    QueryType.DROP: "DROP",
    QueryType.ALTER: "ALTER",
    QueryType.CREATE: "CREATE",
    QueryType.TRUNCATE: "TRUNCATE",
}

_COMPARISONS: dict[type[exp.Expression], str] = {
    exp.EQ: "=",
    exp.NEQ: "<>",
    exp.GT: ">",
    exp.GTE: ">=",
    exp.LT: "<",
    exp.LTE: "<=",
    exp.Like: "LIKE",
    exp.ILike: "ILIKE",
    exp.Is: "IS",
}

# Operator to use when the column sits on the right-hand side
_MIRRORED = {">": "<", "<": ">", ">=": "<=", "<=": ">="}

_NEGATED = {
    exp.In: "NOT IN",
    exp.Between: "NOT BETWEEN",
    exp.Exists: "NOT EXISTS",
    exp.Like: "NOT LIKE",
    exp.ILike: "NOT ILIKE",
    exp.Is: "IS NOT",
}


def primary_select(tree: exp.Expression) -> exp.Select | None:
    """
    The SELECT a description is built from.

    For set operations this is the left-most SELECT.
    """
    node = tree
    while node is not None and not isinstance(node, exp.Select):
        if isinstance(node, (exp.Union, exp.Intersect, exp.Except)):
            node = node.this
        elif isinstance(node, exp.Subquery):
            node = node.this
        else:
            return None
    return node


def summarize_value(node: exp.Expression | None) -> Any:
    """
    Reduce a predicate operand to a flat summary.

    Literals become Python values, columns "column:<name>", function
    calls "function:<name>" and subqueries "subquery".
    """
    if node is None:
        return None
    if isinstance(node, exp.Paren) and not isinstance(node.this, (exp.Select, exp.Union)):
        return summarize_value(node.this)
    if isinstance(node, exp.Neg) and isinstance(node.this, exp.Literal):
        inner = summarize_value(node.this)
        return -inner if isinstance(inner, (int, float)) else f"-{inner}"
    if isinstance(node, exp.Literal):
        if node.is_string:
            return node.this
        return _number(node.this)
    if isinstance(node, exp.Boolean):
        return bool(node.this)
    if isinstance(node, exp.Null):
        return None
    if isinstance(node, exp.Column):
        return f"column:{node.name}"
    if isinstance(node, (exp.Subquery, exp.Select, exp.Union)) or (
        isinstance(node, exp.Paren) and isinstance(node.this, (exp.Select, exp.Union))
    ):
        return "subquery"
    if isinstance(node, exp.Anonymous):
        return f"function:{node.name.upper()}"
    if isinstance(node, exp.Func):
        return f"function:{node.sql_name()}"
    return node.sql(dialect=DIALECT)


def _number(text: str) -> int | float | str:
    try:
        return int(text)
    except ValueError:
        try:
            return float(text)
        except ValueError:
            return text


def _is_subquery(node: exp.Expression | None) -> bool:
    if node is None:
        return False
    if isinstance(node, exp.Paren):
        return _is_subquery(node.this)
    return isinstance(node, (exp.Subquery, exp.Select, exp.Union))


def _column_name(node: exp.Expression | None) -> str | None:
    if isinstance(node, exp.Paren):
        return _column_name(node.this)
    if isinstance(node, exp.Column) and not node.is_star:
        return node.name
    return None


class QueryParser:
    """
    Parses SQL text into a ParsedQuery and renders trees back to SQL.

    The parser is stateless and safe to share.
    """

    dialect = DIALECT

    def parse(self, sql: str) -> ParsedQuery:
        """
        Parse SQL text into a structural description.

        The first statement is described; ``statement_count`` records how
        many statements the text contained.

        Raises:
            ParseError: If the text is empty or sqlglot cannot parse it.
        """
        if not sql or not sql.strip():
            raise ParseError("Empty SQL statement", sql)

        try:
            statements = [s for s in sqlglot.parse(sql, read=self.dialect) if s is not None]
        except SqlglotError as e:
            raise ParseError(f"Failed to parse SQL: {e}", sql) from e

        if not statements:
            raise ParseError("No SQL statement found", sql)

        tree = statements[0]
        query_type, operation = self._classify(tree)

        if query_type != QueryType.SELECT:
            return ParsedQuery(
                tree=tree,
                sql=sql,
                type=query_type,
                operation=operation,
                statement_count=len(statements),
                tables=self._statement_tables(tree),
            )

        select = primary_select(tree)
        if select is None:
            raise ParseError(f"Unsupported SELECT shape: {type(tree).__name__}", sql)

        return ParsedQuery(
            tree=tree,
            sql=sql,
            type=query_type,
            operation=operation,
            statement_count=len(statements),
            tables=self._select_tables(select),
            columns=self._columns(select),
            where_conditions=self._where_conditions(select),
            joins=self._joins(select),
            limit=self.extract_limit(select),
            order_by=self._order_by(select),
            group_by=self._group_by(select),
            ctes=self._ctes(tree),
            having=select.args.get("having") is not None,
        )

    def to_sql(self, tree: exp.Expression) -> str:
        """
        Render a tree as T-SQL.

        Raises:
            SerializationError: If sqlglot cannot render the tree.
        """
        try:
            return tree.sql(dialect=self.dialect)
        except SqlglotError as e:
            raise SerializationError(f"Failed to generate SQL: {e}") from e

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def has_filter(query: ParsedQuery, column: str) -> bool:
        """True if any flattened predicate references ``column``."""
        return bool(query.conditions_on(column))

    @staticmethod
    def has_limit(query: ParsedQuery) -> bool:
        return query.limit is not None

    @staticmethod
    def get_all_columns(query: ParsedQuery) -> list[str]:
        """Every column the statement touches, in first-seen order."""
        seen: dict[str, None] = {}
        for name in query.columns:
            seen.setdefault(name, None)
        for condition in query.where_conditions:
            if condition.column:
                seen.setdefault(condition.column, None)
        for join in query.joins:
            for name in join.columns:
                seen.setdefault(name, None)
        for item in query.order_by:
            seen.setdefault(item.column, None)
        for name in query.group_by:
            seen.setdefault(name, None)
        return list(seen)

    @staticmethod
    def extract_limit(select: exp.Expression) -> int | None:
        """Row limit from LIMIT/TOP (exp.Limit) or OFFSET ... FETCH (exp.Fetch)."""
        node = select.args.get("limit")
        if isinstance(node, exp.Limit):
            value = node.expression
        elif isinstance(node, exp.Fetch):
            value = node.args.get("count")
        else:
            return None

        while isinstance(value, exp.Paren):
            value = value.this
        if isinstance(value, exp.Literal) and not value.is_string:
            number = _number(value.this)
            if isinstance(number, (int, float)):
                return int(number)
        return None

    # ── Classification ──────────────────────────────────────────────────

    def _classify(self, tree: exp.Expression) -> tuple[QueryType, str]:
        name = type(tree).__name__
        if name in _STATEMENT_TYPES:
            query_type = _STATEMENT_TYPES[name]
            if query_type == QueryType.SELECT and tree.find(exp.Into) is not None:
                # SELECT ... INTO <table> creates the target table
                return QueryType.CREATE, SELECT_INTO
            return query_type, _OPERATION_NAMES[query_type]

        if isinstance(tree, exp.Command):
            keyword = str(tree.this or "").strip().upper()
            return _COMMAND_TYPES.get(keyword, QueryType.OTHER), keyword or "COMMAND"

        return QueryType.OTHER, name.upper()

    # ── Tables ──────────────────────────────────────────────────────────

    @staticmethod
    def _table_reference(table: exp.Table) -> TableReference:
        return TableReference(
            name=table.name,
            alias=table.alias or None,
            database=table.catalog or None,
            schema=table.db or None,
        )

    def _statement_tables(self, tree: exp.Expression) -> tuple[TableReference, ...]:
        seen: dict[str, TableReference] = {}
        for table in tree.find_all(exp.Table):
            if table.name:
                seen.setdefault(table.name.lower(), self._table_reference(table))
        return tuple(seen.values())

    def _select_tables(self, select: exp.Select) -> tuple[TableReference, ...]:
        tables: list[TableReference] = []
        from_clause = select.args.get("from")
        if from_clause is not None and isinstance(from_clause.this, exp.Table):
            tables.append(self._table_reference(from_clause.this))
        for join in select.args.get("joins") or []:
            if isinstance(join.this, exp.Table):
                tables.append(self._table_reference(join.this))
        return tuple(tables)

    # ── Projection ──────────────────────────────────────────────────────

    @staticmethod
    def _columns(select: exp.Select) -> tuple[str, ...]:
        columns: list[str] = []
        for projection in select.expressions:
            if projection.is_star:
                columns.append("*")
            elif isinstance(projection, exp.Alias):
                columns.append(projection.alias)
            elif isinstance(projection, exp.Column):
                columns.append(projection.name)
        return tuple(columns)

    # ── WHERE ───────────────────────────────────────────────────────────

    def _where_conditions(self, select: exp.Select) -> tuple[WhereCondition, ...]:
        where = select.args.get("where")
        if where is None:
            return ()
        conditions: list[WhereCondition] = []
        self._flatten(where.this, conditions)
        return tuple(conditions)

    def _flatten(self, node: exp.Expression, out: list[WhereCondition]) -> None:
        # AND and OR both contribute to the same list
        if isinstance(node, exp.Connector):
            self._flatten(node.left, out)
            self._flatten(node.right, out)
            return

        if isinstance(node, exp.Paren):
            self._flatten(node.this, out)
            return

        if isinstance(node, exp.Not):
            inner = node.this
            while isinstance(inner, exp.Paren):
                inner = inner.this
            negated = _NEGATED.get(type(inner))
            if negated is None:
                self._flatten(inner, out)
            else:
                condition = self._condition(inner)
                if condition is not None:
                    out.append(
                        WhereCondition(
                            column=condition.column,
                            operator=negated,
                            value=condition.value,
                            kind=condition.kind,
                        )
                    )
            return

        condition = self._condition(node)
        if condition is not None:
            out.append(condition)

    def _condition(self, node: exp.Expression) -> WhereCondition | None:
        if isinstance(node, exp.In):
            query = node.args.get("query")
            if query is not None:
                value: Any = "subquery"
                kind = ConditionKind.SUBQUERY
            else:
                value = [summarize_value(v) for v in node.expressions]
                kind = ConditionKind.SIMPLE
            return self._shaped(node.this, "IN", value, kind)

        if isinstance(node, exp.Between):
            value = [summarize_value(node.args.get("low")), summarize_value(node.args.get("high"))]
            return self._shaped(node.this, "BETWEEN", value, ConditionKind.SIMPLE)

        if isinstance(node, exp.Exists):
            return WhereCondition(
                column="", operator="EXISTS", value="subquery", kind=ConditionKind.SUBQUERY
            )

        operator = _COMPARISONS.get(type(node))
        if operator is not None:
            left, right = node.this, node.expression
            if _column_name(left) is None and _column_name(right) is not None:
                left, right = right, left
                operator = _MIRRORED.get(operator, operator)
            kind = ConditionKind.SUBQUERY if _is_subquery(right) else ConditionKind.SIMPLE
            return self._shaped(left, operator, summarize_value(right), kind)

        return None

    @staticmethod
    def _shaped(
        left: exp.Expression | None,
        operator: str,
        value: Any,
        kind: ConditionKind,
    ) -> WhereCondition:
        column = _column_name(left)
        if column is None:
            column = left.sql(dialect=DIALECT) if left is not None else ""
            if kind == ConditionKind.SIMPLE:
                kind = ConditionKind.COMPLEX
        return WhereCondition(column=column, operator=operator, value=value, kind=kind)

    # ── Joins ───────────────────────────────────────────────────────────

    def _joins(self, select: exp.Select) -> tuple[JoinInfo, ...]:
        joins: list[JoinInfo] = []
        for join in select.args.get("joins") or []:
            target = join.this
            if isinstance(target, exp.Table):
                table = self._table_reference(target)
            else:
                table = TableReference(name=target.alias_or_name or "subquery")

            on = join.args.get("on")
            using = join.args.get("using")
            columns: dict[str, None] = {}
            condition_text = ""
            if on is not None:
                condition_text = on.sql(dialect=DIALECT)
                for column in on.find_all(exp.Column):
                    columns.setdefault(column.name, None)
            elif using:
                names = [u.name for u in using]
                condition_text = f"USING ({', '.join(names)})"
                for name in names:
                    columns.setdefault(name, None)

            joins.append(
                JoinInfo(
                    kind=self._join_kind(join, has_condition=bool(condition_text)),
                    table=table,
                    condition_text=condition_text,
                    columns=tuple(columns),
                )
            )
        return tuple(joins)

    @staticmethod
    def _join_kind(join: exp.Join, has_condition: bool) -> JoinKind:
        kind = (join.kind or "").upper()
        side = (join.side or "").upper()
        if kind == "CROSS":
            return JoinKind.CROSS
        if side == "LEFT":
            return JoinKind.LEFT
        if side == "RIGHT":
            return JoinKind.RIGHT
        if side == "FULL":
            return JoinKind.FULL
        if not has_condition:
            # comma join
            return JoinKind.CROSS
        return JoinKind.INNER

    # ── Ordering / grouping / CTEs ──────────────────────────────────────

    @staticmethod
    def _order_by(select: exp.Select) -> tuple[OrderByClause, ...]:
        order = select.args.get("order")
        if order is None:
            return ()
        items: list[OrderByClause] = []
        for ordered in order.expressions:
            target = ordered.this if isinstance(ordered, exp.Ordered) else ordered
            name = _column_name(target) or target.sql(dialect=DIALECT)
            desc = bool(ordered.args.get("desc")) if isinstance(ordered, exp.Ordered) else False
            items.append(OrderByClause(column=name, direction="DESC" if desc else "ASC"))
        return tuple(items)

    @staticmethod
    def _group_by(select: exp.Select) -> tuple[str, ...]:
        group = select.args.get("group")
        if group is None:
            return ()
        return tuple(_column_name(e) or e.sql(dialect=DIALECT) for e in group.expressions)

    @staticmethod
    def _ctes(tree: exp.Expression) -> tuple[CTEInfo, ...]:
        with_clause = tree.args.get("with")
        if with_clause is None:
            return ()
        recursive = bool(with_clause.args.get("recursive"))
        ctes: list[CTEInfo] = []
        for cte in with_clause.expressions:
            alias = cte.args.get("alias")
            columns = tuple(c.name for c in alias.columns) if alias is not None else ()
            ctes.append(
                CTEInfo(
                    name=cte.alias,
                    columns=columns,
                    query=cte.this.sql(dialect=DIALECT),
                    recursive=recursive,
                )
            )
        return tuple(ctes)
