"""
Base class for workflow mode strategies.

A strategy decides what a session in its mode may run and how queries
are scoped before they reach the governance pipeline.

Two kinds of checks:
- Text checks on the SQL with string literals and comments removed:
  restricted operations (whole words), prohibited columns (identifier
  segments), portfolio shape, cross-client predicates.
- Tree changes through queryguard.optimizer.mutations: client filter,
  upload scoping, row limit, portfolio hint comment. When nothing
  changes the original text is returned as-is.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from queryguard.exceptions import ParseError, SerializationError
from queryguard.modes.models import (
    ModeConstraints,
    ModeContext,
    ModeQueryModification,
    ModeValidation,
    SessionContext,
    SessionSeed,
    UploadContextValidation,
    WorkflowMode,
)
from queryguard.modes.uploads import InMemoryUploadMetadataProvider, UploadMetadataProvider, UploadTableInfo
from queryguard.optimizer import mutations
from queryguard.optimizer.rules.isolation import CLIENT_COLUMNS, is_upload_scoped
from queryguard.optimizer.safety import scan_sql
from queryguard.parser import DIALECT, SELECT_INTO, ParsedQuery, QueryParser

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_FROM_OR_JOIN = re.compile(r"\b(?:FROM|JOIN)\s+([\w.\[\]]+)", re.IGNORECASE)

_PORTFOLIO_SHAPES = [
    re.compile(r"portfolio", re.IGNORECASE),
    re.compile(r"aggregate", re.IGNORECASE),
    re.compile(r"\bSUM\s*\(", re.IGNORECASE),
    re.compile(r"\bAVG\s*\(", re.IGNORECASE),
    re.compile(r"\bGROUP\s+BY\b", re.IGNORECASE),
    re.compile(r"\bUNION\b", re.IGNORECASE),
    re.compile(r"multiple", re.IGNORECASE),
]
_AGGREGATION = re.compile(r"\b(SUM|AVG|COUNT|MAX|MIN)\s*\(", re.IGNORECASE)
_GROUP_BY = re.compile(r"\bGROUP\s+BY\b", re.IGNORECASE)
_HINTS = re.compile(r"index|hint|/\*\+", re.IGNORECASE)

_CROSS_CLIENT = [
    re.compile(r"\bclient_?id\s*(!=|<>)", re.IGNORECASE),
    re.compile(r"\bNOT\s+\(?\s*client_?id\b", re.IGNORECASE),
    re.compile(r"\bclient_?id\s+(NOT\s+)?IN\s*\(", re.IGNORECASE),
]
_CLIENT_EQUALITY = re.compile(r"\bclient_?id\s*=\s*'([^']*)'", re.IGNORECASE)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Text checks ─────────────────────────────────────────────────────────


def code_text(sql: str) -> str:
    """SQL with string literals blanked and comments removed."""
    return scan_sql(sql).blanked


def find_restricted_operations(sql: str, operations: tuple[str, ...]) -> list[str]:
    code = code_text(sql)
    return [op for op in operations if re.search(rf"\b{op}\b", code, re.IGNORECASE)]


def find_prohibited_columns(sql: str, columns: tuple[str, ...]) -> list[str]:
    """
    Prohibited names used as an identifier or an underscore-separated part of one.

    ``api_key`` matches ``key``; ``monkey`` and ``keyboard`` do not.
    """
    identifiers = {m.group(0).lower() for m in _IDENTIFIER.finditer(code_text(sql))}
    found: list[str] = []
    for column in columns:
        wanted = column.lower()
        for identifier in identifiers:
            padded = f"_{identifier}_"
            if identifier == wanted or f"_{wanted}_" in padded:
                found.append(column)
                break
    return found


def referenced_tables(sql: str) -> list[str]:
    """
    Table names a statement reads or writes, CTE names excluded.

    Falls back to FROM/JOIN scanning when sqlglot cannot parse the text.
    """
    try:
        statements = [s for s in sqlglot.parse(sql, read=DIALECT) if s is not None]
    except SqlglotError:
        names = [m.group(1).split(".")[-1].strip("[]") for m in _FROM_OR_JOIN.finditer(code_text(sql))]
        return list(dict.fromkeys(n for n in names if n))

    seen: dict[str, None] = {}
    for statement in statements:
        cte_names = {cte.alias.lower() for cte in statement.find_all(exp.CTE)}
        for table in statement.find_all(exp.Table):
            if table.name and table.name.lower() not in cte_names:
                seen.setdefault(table.name, None)
    return list(seen)


def is_table_allowed(table: str, patterns: tuple[str, ...]) -> bool:
    lowered = table.lower()
    return any(fnmatch.fnmatchcase(lowered, pattern.lower()) for pattern in patterns)


def is_portfolio_query(sql: str) -> bool:
    code = code_text(sql)
    return any(pattern.search(code) for pattern in _PORTFOLIO_SHAPES)


def has_aggregation(sql: str) -> bool:
    return bool(_AGGREGATION.search(code_text(sql)))


def has_group_by(sql: str) -> bool:
    return bool(_GROUP_BY.search(code_text(sql)))


def has_optimization_hints(sql: str) -> bool:
    return bool(_HINTS.search(sql))


def has_cross_client_access(sql: str, client_id: str) -> bool:
    """Negated or multi-valued client predicates, or equality with another client."""
    code = code_text(sql)
    if any(pattern.search(code) for pattern in _CROSS_CLIENT):
        return True
    return any(m.group(1) != client_id for m in _CLIENT_EQUALITY.finditer(sql))


def has_join_without_constraints(sql: str) -> bool:
    code = code_text(sql).lower()
    return bool(re.search(r"\bjoin\b", code)) and not re.search(r"\bon\b", code) and "where" not in code


# ── Strategy ────────────────────────────────────────────────────────────


class ModeStrategy(ABC):
    """
    Abstract workflow mode strategy.

    Attributes:
        mode: The workflow mode this strategy implements
        constraints: Static constraint table for the mode
        session_warning_age_seconds: Session age after which validate_session warns
    """

    mode: WorkflowMode
    constraints: ModeConstraints
    session_warning_age_seconds: float

    def __init__(
        self,
        uploads: UploadMetadataProvider | None = None,
        clock: Clock | None = None,
        parser: QueryParser | None = None,
    ) -> None:
        self.uploads = uploads or InMemoryUploadMetadataProvider()
        self.clock = clock or utc_now
        self.parser = parser or QueryParser()

    def get_constraints(self) -> ModeConstraints:
        return self.constraints

    @abstractmethod
    async def validate_query(self, query: str, context: ModeContext) -> ModeValidation:
        """Check a query against the mode's rules without changing it."""
        ...

    @abstractmethod
    async def modify_query(self, query: str, context: ModeContext) -> ModeQueryModification:
        """Scope a query to the mode, then validate the result."""
        ...

    @abstractmethod
    async def initialize_session(self, client_id: str, upload_id: str | None = None) -> SessionSeed:
        ...

    @abstractmethod
    def validate_session(self, context: SessionContext) -> ModeValidation:
        ...

    @abstractmethod
    def get_available_actions(self) -> list[str]:
        """Template names offered to sessions in this mode."""
        ...

    @abstractmethod
    def scopes_upload(self, query: str, context: ModeContext) -> bool:
        """True if the query should be narrowed to ``context.upload_id``."""
        ...

    @abstractmethod
    async def validate_upload_context(
        self, upload_id: str | None, context: ModeContext
    ) -> UploadContextValidation:
        ...

    def apply_scoping(self, query: str, context: ModeContext) -> str:
        """Client and upload scoping only; no limit, no hints."""
        parsed = self._try_parse(query)
        if parsed is None or not parsed.is_select:
            return query
        tree = parsed.tree.copy()
        changed = self._add_client_filter(tree, context)
        if context.upload_id and self.scopes_upload(query, context):
            changed = self._add_upload_scope(parsed, tree, context.upload_id) or changed
        return self.parser.to_sql(tree) if changed else query

    # ── Shared building blocks ──────────────────────────────────────────

    def _try_parse(self, query: str) -> ParsedQuery | None:
        try:
            return self.parser.parse(query)
        except ParseError:
            return None

    @staticmethod
    def is_client_scoped(parsed: ParsedQuery | None, client_id: str) -> bool:
        return parsed is not None and mutations.has_equality(parsed.tree, CLIENT_COLUMNS, client_id)

    @staticmethod
    def is_upload_scoped(parsed: ParsedQuery | None, upload_id: str) -> bool:
        return parsed is not None and is_upload_scoped(parsed, upload_id)

    @staticmethod
    def _add_client_filter(tree: exp.Expression, context: ModeContext) -> bool:
        if mutations.has_equality(tree, CLIENT_COLUMNS, context.client_id):
            return False
        return mutations.add_filter(
            tree, mutations.equality("client_id", context.client_id, table=mutations.filter_qualifier(tree))
        )

    def _add_upload_scope(self, parsed: ParsedQuery, tree: exp.Expression, upload_id: str) -> bool:
        if self.is_upload_scoped(parsed, upload_id):
            return False
        return mutations.add_filter(
            tree, mutations.equality("uploadId", upload_id, table=mutations.filter_qualifier(tree))
        )

    def _common_query_checks(
        self,
        query: str,
        context: ModeContext,
        errors: list[str],
        warnings: list[str],
    ) -> None:
        """Restricted operations, client scoping, table allow-list."""
        for operation in find_restricted_operations(query, self.constraints.restricted_operations):
            errors.append(f"Operation '{operation}' is not allowed in {self.mode.value} mode")

        parsed = self._try_parse(query)
        if (
            parsed is not None
            and parsed.operation == SELECT_INTO
            and "CREATE" in self.constraints.restricted_operations
        ):
            errors.append(f"Operation '{SELECT_INTO}' is not allowed in {self.mode.value} mode")

        if not self.is_client_scoped(parsed, context.client_id):
            warnings.append("Query will be automatically scoped to your client_id")

        for table in referenced_tables(query):
            if not is_table_allowed(table, self.constraints.allowed_table_patterns):
                errors.append(f"Table '{table}' is not accessible in {self.mode.value} mode")

    async def _modify(
        self,
        query: str,
        context: ModeContext,
        scope_upload: bool,
        add_hint: bool,
        upload_message: str,
    ) -> tuple[str, list[str], list[str], list[str]]:
        """
        Apply the mode's scoping to ``query``.

        Returns (modified_query, applied_constraints, warnings, errors).
        """
        applied: list[str] = []
        warnings: list[str] = []
        errors: list[str] = []

        try:
            parsed = self.parser.parse(query)
        except ParseError as e:
            errors.append(f"Query modification error: {e.message}")
            return query, applied, warnings, errors

        if not parsed.is_select:
            return query, applied, warnings, errors

        tree = parsed.tree.copy()
        max_rows = self.constraints.max_rows_per_query

        if self._add_client_filter(tree, context):
            applied.append("Added client_id filter")

        if scope_upload and context.upload_id and self._add_upload_scope(parsed, tree, context.upload_id):
            applied.append(upload_message)

        if parsed.limit is None:
            mutations.set_limit(tree, max_rows)
            applied.append(f"Added LIMIT {max_rows}")
            if self.mode == WorkflowMode.LENDING:
                warnings.append("Large result sets may impact performance")
        elif parsed.limit > max_rows:
            mutations.set_limit(tree, max_rows)
            applied.append(f"Reduced row limit to {max_rows}")

        if add_hint and mutations.add_comment(tree, mutations.PORTFOLIO_HINT):
            applied.append("Added portfolio query optimization hints")

        if not applied:
            return query, applied, warnings, errors

        try:
            return self.parser.to_sql(tree), applied, warnings, errors
        except SerializationError as e:
            errors.append(f"Query modification error: {e.message}")
            return query, applied, warnings, errors

    async def _find_upload(self, upload_id: str) -> UploadTableInfo | None:
        for upload in await self.uploads.get_upload_table_info():
            if upload.table_name == upload_id:
                return upload
        return None

    async def _client_uploads(self, client_id: str, active_only: bool) -> list[UploadTableInfo]:
        uploads = await self.uploads.get_upload_table_info()
        return [
            u for u in uploads
            if u.client_id == client_id and (u.is_active or not active_only)
        ]

    def _session_age_seconds(self, context: SessionContext) -> float:
        return (self.clock() - context.created_at).total_seconds()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} mode={self.mode.value}>"
