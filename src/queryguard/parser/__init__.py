"""SQL structural parser (sqlglot, T-SQL dialect)."""

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
from queryguard.parser.parser import DIALECT, SELECT_INTO, QueryParser, primary_select, summarize_value

__all__ = [
    "CTEInfo",
    "ConditionKind",
    "DIALECT",
    "JoinInfo",
    "JoinKind",
    "OrderByClause",
    "ParseError",
    "ParsedQuery",
    "QueryParser",
    "QueryType",
    "SELECT_INTO",
    "SerializationError",
    "TableReference",
    "WhereCondition",
    "primary_select",
    "summarize_value",
]
