"""
Safety validation for governed SQL.

Two layers:
- Blocking checks (severity=error) that make a statement unsafe:
  dangerous operations, injection signatures, multiple statements,
  system procedures. These ignore caller leniency options.
- Advisory checks (severity=warning) on SELECTs: missing isolation
  filters, missing or excessive row limits, join shape, SELECT *, time
  windows on portfolio tables.

Injection signatures run on the raw text after sqlparse has separated
comments and string literals from code, so a literal such as
'semi;colon -- text' never trips a check.

Example:
    validator = SafetyValidator()
    result = validator.validate(QueryParser().parse("DROP TABLE transactions"))
    assert not result.is_safe
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Pattern

import sqlparse
from sqlparse import tokens as T

from queryguard.optimizer.models import (
    OptimizationOptions,
    QueryContext,
    ValidationResult,
    Violation,
    ViolationSeverity,
    ViolationType,
)
from queryguard.optimizer.mutations import PORTFOLIO_HINT
from queryguard.optimizer.rules.rewrite import has_date_predicate, is_portfolio_table
from queryguard.parser.models import JoinKind, ParsedQuery, QueryType
from queryguard.parser.parser import QueryParser

logger = logging.getLogger(__name__)

DANGEROUS_OPERATIONS = frozenset({
    "DROP", "DELETE", "UPDATE", "INSERT", "CREATE", "ALTER", "TRUNCATE",
    "MERGE", "EXEC", "EXECUTE", "GRANT", "REVOKE",
})

DANGEROUS_FUNCTIONS = (
    "xp_cmdshell",
    "sp_configure",
    "sp_addlogin",
    "sp_droplogin",
    "xp_regread",
    "xp_regwrite",
)

MAX_JOIN_COUNT = 5
INDEXABLE_JOIN_MARKERS = ("id", "key", "code")

# Run against code with string literals replaced by stable placeholders
# ('abc' and 'abc' map to the same placeholder) and comments removed.
TAUTOLOGY_PATTERNS: list[tuple[Pattern[str], str]] = [
    (re.compile(r"\bOR\s+(\d+)\s*=\s*\1\b", re.IGNORECASE), "numeric tautology"),
    (re.compile(r"\bOR\s+('[^']*')\s*=\s*\1", re.IGNORECASE), "string tautology"),
]

# Run against code with string literal contents blanked and comments removed.
INJECTION_PATTERNS: list[tuple[Pattern[str], str]] = [
    (re.compile(r"\bUNION\s+(ALL\s+)?SELECT\b.*\bFROM\b", re.IGNORECASE | re.DOTALL), "UNION-based extraction"),
    (re.compile(r";\s*(DROP|DELETE|UPDATE|INSERT|EXEC)\b", re.IGNORECASE), "stacked statement"),
    (re.compile(r"\bWAITFOR\s+DELAY\b", re.IGNORECASE), "time-based delay"),
    (re.compile(r"\bSLEEP\s*\(", re.IGNORECASE), "time-based delay"),
    (re.compile(r"\bBENCHMARK\s*\(", re.IGNORECASE), "time-based delay"),
]

VIOLATION_SUGGESTIONS: dict[ViolationType, str] = {
    ViolationType.MISSING_UPLOAD_ID: "Add WHERE uploadId = ? to use clustered index",
    ViolationType.MISSING_CLIENT_ID: "Add WHERE client_id = ? for multi-tenant isolation",
    ViolationType.MISSING_ROW_LIMIT: "Add TOP 5000 or LIMIT 5000 to limit results",
    ViolationType.EXCESSIVE_ROW_LIMIT: "Reduce row limit to 5000 or less",
    ViolationType.WILDCARD_SELECT: "Replace SELECT * with specific column names",
    ViolationType.MISSING_WHERE_CLAUSE: "Add WHERE conditions to filter results",
    ViolationType.CARTESIAN_PRODUCT: "Add proper JOIN conditions or use INNER JOIN",
    ViolationType.INEFFICIENT_JOIN: "Ensure JOINs use indexed columns",
    ViolationType.MISSING_INDEX: "Ensure JOINs use indexed columns",
    ViolationType.MISSING_TIME_WINDOW: "Add date range filter (e.g., last 3 months)",
    ViolationType.BROAD_TIME_RANGE: "Narrow time range to 3 months or less",
}


@dataclass(frozen=True)
class ScannedText:
    """Raw SQL split by sqlparse into comparable code and its comments."""

    code: str
    blanked: str
    comments: tuple[str, ...]


def scan_sql(sql: str) -> ScannedText:
    """
    Separate comments and string literals from code.

    ``code`` keeps one placeholder per distinct literal, ``blanked``
    replaces every literal with ''.
    """
    code_parts: list[str] = []
    blanked_parts: list[str] = []
    comments: list[str] = []
    literals: dict[str, str] = {}

    for statement in sqlparse.parse(sql):
        for token in statement.flatten():
            if token.ttype in T.Comment:
                comments.append(token.value)
                code_parts.append(" ")
                blanked_parts.append(" ")
            elif token.ttype in T.Literal.String.Single:
                placeholder = literals.setdefault(token.value, f"'s{len(literals)}'")
                code_parts.append(placeholder)
                blanked_parts.append("''")
            else:
                code_parts.append(token.value)
                blanked_parts.append(token.value)

    return ScannedText(
        code="".join(code_parts),
        blanked="".join(blanked_parts),
        comments=tuple(comments),
    )


def _is_allowed_comment(comment: str) -> bool:
    body = comment.strip()
    if body.startswith("/*") and body.endswith("*/"):
        body = body[2:-2]
    return body.strip() == PORTFOLIO_HINT


class SafetyValidator:
    """
    Validates parsed queries for safety and tenant isolation.

    Stateless; safe to share between requests.
    """

    def __init__(self, max_row_limit: int = 5000, max_join_count: int = MAX_JOIN_COUNT) -> None:
        self.max_row_limit = max_row_limit
        self.max_join_count = max_join_count

    def validate(
        self,
        query: ParsedQuery,
        context: QueryContext | None = None,
        options: OptimizationOptions | None = None,
    ) -> ValidationResult:
        """
        Validate a parsed query.

        ``options.block_dangerous_ops`` does not relax the dangerous
        operation check; DML and DDL are never executable.
        """
        opts = options or OptimizationOptions(max_row_limit=self.max_row_limit)
        violations: list[Violation] = []

        self._check_dangerous_operation(query, violations)
        self._check_statement_count(query, violations)

        scanned = scan_sql(query.sql)
        self._check_comments(scanned, violations)
        self._check_injection_patterns(scanned, violations)
        self._check_dangerous_functions(scanned, violations)

        if query.type == QueryType.SELECT:
            self._check_required_filters(query, violations, context, opts)
            self._check_row_limit(query, violations, context, opts)
            self._check_where_clause(query, violations)
            self._check_joins(query, violations)
            self._check_select_columns(query, violations)
            self._check_cartesian_product(query, violations)
            self._check_time_window(query, violations)

        has_errors = any(v.severity == ViolationSeverity.ERROR for v in violations)
        if has_errors:
            logger.debug(
                "Query blocked: %s",
                "; ".join(v.message for v in violations if v.severity == ViolationSeverity.ERROR),
            )
        return ValidationResult(
            is_valid=not has_errors,
            is_safe=not has_errors,
            violations=tuple(violations),
        )

    # ── Blocking checks ─────────────────────────────────────────────────

    @staticmethod
    def _check_dangerous_operation(query: ParsedQuery, violations: list[Violation]) -> None:
        operation = query.operation.upper()
        if query.type in (QueryType.SELECT, QueryType.OTHER) and operation not in DANGEROUS_OPERATIONS:
            return
        violations.append(
            Violation(
                type=ViolationType.DANGEROUS_OPERATION,
                severity=ViolationSeverity.ERROR,
                message=f"Query contains dangerous operation: {operation}",
                location="statement",
            )
        )

    @staticmethod
    def _check_statement_count(query: ParsedQuery, violations: list[Violation]) -> None:
        if query.statement_count > 1:
            violations.append(
                Violation(
                    type=ViolationType.SQL_INJECTION,
                    severity=ViolationSeverity.ERROR,
                    message=f"Query contains {query.statement_count} statements; only one is allowed",
                    location="statement",
                )
            )

    @staticmethod
    def _check_comments(scanned: ScannedText, violations: list[Violation]) -> None:
        if any(not _is_allowed_comment(c) for c in scanned.comments):
            violations.append(
                Violation(
                    type=ViolationType.SQL_INJECTION,
                    severity=ViolationSeverity.ERROR,
                    message="Query contains potential SQL injection pattern (comment)",
                    location="comment",
                )
            )

    @staticmethod
    def _check_injection_patterns(scanned: ScannedText, violations: list[Violation]) -> None:
        found: list[str] = []
        for pattern, label in TAUTOLOGY_PATTERNS:
            if pattern.search(scanned.code) and label not in found:
                found.append(label)
        for pattern, label in INJECTION_PATTERNS:
            if pattern.search(scanned.blanked) and label not in found:
                found.append(label)
        for label in found:
            violations.append(
                Violation(
                    type=ViolationType.SQL_INJECTION,
                    severity=ViolationSeverity.ERROR,
                    message=f"Query contains potential SQL injection pattern ({label})",
                    location="query text",
                )
            )

    @staticmethod
    def _check_dangerous_functions(scanned: ScannedText, violations: list[Violation]) -> None:
        lowered = scanned.blanked.lower()
        for func in DANGEROUS_FUNCTIONS:
            if re.search(rf"\b{func}\b", lowered):
                violations.append(
                    Violation(
                        type=ViolationType.DANGEROUS_OPERATION,
                        severity=ViolationSeverity.ERROR,
                        message=f"Query contains dangerous function: {func}",
                        location="function call",
                    )
                )

    # ── Advisory checks ─────────────────────────────────────────────────

    @staticmethod
    def _check_required_filters(
        query: ParsedQuery,
        violations: list[Violation],
        context: QueryContext | None,
        options: OptimizationOptions,
    ) -> None:
        if options.enforce_upload_id and not SafetyValidator.is_column_filtered(query, "uploadId", "upload_id"):
            violations.append(
                Violation(
                    type=ViolationType.MISSING_UPLOAD_ID,
                    severity=ViolationSeverity.WARNING,
                    message="Query must include uploadId filter for clustered index usage",
                    location="WHERE clause",
                )
            )
        if options.enforce_client_id and not SafetyValidator.is_column_filtered(query, "client_id", "clientId"):
            violations.append(
                Violation(
                    type=ViolationType.MISSING_CLIENT_ID,
                    severity=ViolationSeverity.WARNING,
                    message="Query must include client_id filter for multi-tenant isolation",
                    location="WHERE clause",
                )
            )
        if context is not None:
            for column in context.required_filters:
                if not SafetyValidator.is_column_filtered(query, column):
                    violations.append(
                        Violation(
                            type=ViolationType.MISSING_WHERE_CLAUSE,
                            severity=ViolationSeverity.WARNING,
                            message=f"Query must filter on required column {column}",
                            location="WHERE clause",
                        )
                    )

    @staticmethod
    def _check_row_limit(
        query: ParsedQuery,
        violations: list[Violation],
        context: QueryContext | None,
        options: OptimizationOptions,
    ) -> None:
        max_limit = options.max_row_limit
        if context is not None and context.max_results:
            max_limit = min(max_limit, context.max_results)

        if not QueryParser.has_limit(query):
            violations.append(
                Violation(
                    type=ViolationType.MISSING_ROW_LIMIT,
                    severity=ViolationSeverity.WARNING,
                    message=f"Query must include TOP/LIMIT clause (max {max_limit} rows)",
                    location="LIMIT clause",
                )
            )
        elif query.limit > max_limit:
            violations.append(
                Violation(
                    type=ViolationType.EXCESSIVE_ROW_LIMIT,
                    severity=ViolationSeverity.WARNING,
                    message=f"Row limit {query.limit} exceeds maximum allowed {max_limit}",
                    location="LIMIT clause",
                )
            )

    @staticmethod
    def _check_where_clause(query: ParsedQuery, violations: list[Violation]) -> None:
        if not query.where_conditions and not QueryParser.has_limit(query):
            violations.append(
                Violation(
                    type=ViolationType.MISSING_WHERE_CLAUSE,
                    severity=ViolationSeverity.WARNING,
                    message="Query has no WHERE clause - this could return excessive data",
                    location="WHERE clause",
                )
            )

    def _check_joins(self, query: ParsedQuery, violations: list[Violation]) -> None:
        if len(query.joins) > self.max_join_count:
            violations.append(
                Violation(
                    type=ViolationType.INEFFICIENT_JOIN,
                    severity=ViolationSeverity.WARNING,
                    message=(
                        f"Query has {len(query.joins)} JOINs "
                        f"(max recommended: {self.max_join_count})"
                    ),
                    location="JOIN clause",
                )
            )

        for index, join in enumerate(query.joins, start=1):
            if not join.condition_text:
                if join.kind != JoinKind.CROSS:
                    violations.append(
                        Violation(
                            type=ViolationType.INEFFICIENT_JOIN,
                            severity=ViolationSeverity.WARNING,
                            message=f"JOIN #{index} is missing ON condition",
                            location=f"JOIN {join.table.name}",
                        )
                    )
                continue
            if not any(m in c.lower() for c in join.columns for m in INDEXABLE_JOIN_MARKERS):
                violations.append(
                    Violation(
                        type=ViolationType.MISSING_INDEX,
                        severity=ViolationSeverity.WARNING,
                        message=f"JOIN on {join.table.name} may not be using indexed columns",
                        location=f"JOIN {join.table.name}",
                    )
                )

    @staticmethod
    def _check_select_columns(query: ParsedQuery, violations: list[Violation]) -> None:
        if "*" in query.columns:
            violations.append(
                Violation(
                    type=ViolationType.WILDCARD_SELECT,
                    severity=ViolationSeverity.WARNING,
                    message="SELECT * should be avoided - specify required columns explicitly",
                    location="SELECT clause",
                )
            )

    @staticmethod
    def _check_cartesian_product(query: ParsedQuery, violations: list[Violation]) -> None:
        if any(j.kind == JoinKind.CROSS for j in query.joins):
            violations.append(
                Violation(
                    type=ViolationType.CARTESIAN_PRODUCT,
                    severity=ViolationSeverity.WARNING,
                    message="Query contains CROSS JOIN or unjoined tables which can produce Cartesian product",
                    location="FROM clause",
                )
            )

    @staticmethod
    def _check_time_window(query: ParsedQuery, violations: list[Violation]) -> None:
        if not any(is_portfolio_table(t.name) for t in query.tables):
            return

        if not has_date_predicate(query):
            violations.append(
                Violation(
                    type=ViolationType.MISSING_TIME_WINDOW,
                    severity=ViolationSeverity.WARNING,
                    message="Portfolio queries should include a time window (recommended: 3 months)",
                    location="WHERE clause",
                )
            )
            return

        def _is_relative(value: object) -> bool:
            text = str(value).upper().replace("_", "")
            return "DATEADD" in text

        broad = any(
            "date" in c.column.lower() and c.operator == ">=" and not _is_relative(c.value)
            for c in query.where_conditions
        )
        if broad:
            violations.append(
                Violation(
                    type=ViolationType.BROAD_TIME_RANGE,
                    severity=ViolationSeverity.WARNING,
                    message="Portfolio query time range may be too broad (recommended: limit to 3 months)",
                    location="WHERE clause date filter",
                )
            )

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def is_column_filtered(query: ParsedQuery, *columns: str) -> bool:
        """True if any WHERE predicate references one of ``columns``."""
        return any(QueryParser.has_filter(query, column) for column in columns)

    @staticmethod
    def get_security_score(result: ValidationResult) -> int:
        """100 minus 30 per error and 10 per warning; 0 when unsafe."""
        if not result.is_safe:
            return 0
        score = 100 - 30 * len(result.errors) - 10 * len(result.warnings)
        return max(0, score)
