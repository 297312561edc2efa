"""
Tree-level rewrites shared by the rule engine and the mode strategies.

Every routine mutates the sqlglot tree in place and returns True only if
the tree actually changed. Filters are only ever ANDed onto the primary
SELECT's WHERE clause, after a structural check that the same predicate
is not already a top-level conjunct.
"""

from __future__ import annotations

from typing import Iterator

import sqlglot
from sqlglot import exp

from queryguard.parser.parser import DIALECT, QueryParser, primary_select

PORTFOLIO_HINT = "Portfolio query optimization"


def conjuncts(node: exp.Expression | None) -> Iterator[exp.Expression]:
    """Top-level AND operands of a predicate (parentheses unwrapped)."""
    while isinstance(node, exp.Paren):
        node = node.this
    if node is None:
        return
    if isinstance(node, exp.And):
        yield from conjuncts(node.left)
        yield from conjuncts(node.right)
    else:
        yield node


def where_conjuncts(tree: exp.Expression) -> list[exp.Expression]:
    select = primary_select(tree)
    if select is None:
        return []
    where = select.args.get("where")
    return list(conjuncts(where.this)) if where is not None else []


def has_equality(tree: exp.Expression, columns: tuple[str, ...], value: str | None = None) -> bool:
    """
    True if a top-level conjunct is ``<column> = <value>``.

    ``columns`` are matched case-insensitively; when ``value`` is None any
    right-hand side counts.
    """
    wanted = {c.lower() for c in columns}
    for node in where_conjuncts(tree):
        if not isinstance(node, exp.EQ):
            continue
        left, right = node.this, node.expression
        if not isinstance(left, exp.Column) and isinstance(right, exp.Column):
            left, right = right, left
        if not isinstance(left, exp.Column) or left.name.lower() not in wanted:
            continue
        if value is None:
            return True
        if isinstance(right, exp.Literal) and right.this == value:
            return True
    return False


def filter_qualifier(tree: exp.Expression) -> str | None:
    """
    Alias (or name) of the primary FROM table when the SELECT has joins.

    Added filters are qualified with it so a column present in several
    joined tables is not ambiguous; single-table queries stay unqualified.
    """
    select = primary_select(tree)
    if select is None or not select.args.get("joins"):
        return None
    from_clause = select.args.get("from")
    if from_clause is None or not isinstance(from_clause.this, exp.Table):
        return None
    return from_clause.this.alias_or_name or None


def equality(column: str, value: str, table: str | None = None) -> exp.EQ:
    """``[table.]column = 'value'`` with the value as a string literal."""
    return exp.column(column, table=table).eq(exp.Literal.string(value))


def date_window(column: str, months: int = 3, table: str | None = None) -> exp.Expression:
    """``[table.]column >= DATEADD(month, -months, GETDATE())``."""
    window = sqlglot.parse_one(f"DATEADD(month, -{int(months)}, GETDATE())", read=DIALECT)
    return exp.GTE(this=exp.column(column, table=table), expression=window)


def add_filter(tree: exp.Expression, condition: exp.Expression) -> bool:
    """AND ``condition`` onto the primary SELECT unless it is already present."""
    select = primary_select(tree)
    if select is None:
        return False
    rendered = condition.sql(dialect=DIALECT)
    if any(node.sql(dialect=DIALECT) == rendered for node in where_conjuncts(tree)):
        return False
    select.where(condition, copy=False)
    return True


def set_limit(tree: exp.Expression, limit: int) -> bool:
    """Set the primary SELECT's row limit (rendered as TOP in T-SQL)."""
    select = primary_select(tree)
    if select is None:
        return False
    if QueryParser.extract_limit(select) == limit:
        return False
    current = select.args.get("limit")
    if isinstance(current, exp.Fetch):
        current.set("count", exp.Literal.number(limit))
    else:
        select.set("limit", exp.Limit(expression=exp.Literal.number(limit)))
    return True


def add_cte_placeholder(tree: exp.Expression) -> bool:
    """
    Reserve a CTE conversion for subquery predicates.

    Subquery-to-CTE rewriting is not implemented; the tree is left
    untouched and the caller records the optimization as not applied.
    """
    return False


def add_index_hint(tree: exp.Expression, table_name: str, index_name: str) -> bool:
    """Attach ``WITH (INDEX(index_name))`` to every reference of ``table_name``."""
    select = primary_select(tree)
    if select is None:
        return False

    targets: list[exp.Expression] = []
    from_clause = select.args.get("from")
    if from_clause is not None:
        targets.append(from_clause.this)
    targets.extend(join.this for join in select.args.get("joins") or [])

    changed = False
    for table in targets:
        if not isinstance(table, exp.Table) or table.name.lower() != table_name.lower():
            continue
        if table.args.get("hints"):
            continue
        hint = exp.WithTableHint(
            expressions=[exp.Anonymous(this="INDEX", expressions=[exp.to_identifier(index_name)])]
        )
        table.set("hints", [hint])
        changed = True
    return changed


def add_comment(tree: exp.Expression, text: str) -> bool:
    if text in (c.strip() for c in tree.comments or []):
        return False
    tree.add_comments([text])
    return True
