"""
Table statistics used by the performance analyzer and the join-hint rule.

The analyzer never talks to a live catalog. It asks a
TableStatisticsProvider, and the default StaticTableStatistics serves a
hand-maintained model of the core tables, optionally extended from a
YAML/JSON file:

    tables:
      vendors:
        row_count: 20000
        indexes:
          - name: PK_vendors
            columns: [vendor_id]
            clustered: true
            primary: true
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, Protocol, runtime_checkable

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from queryguard.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class IndexInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    columns: tuple[str, ...]
    unique: bool = False
    clustered: bool = False
    primary: bool = False


class TableStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    table_name: str
    row_count: int = Field(..., ge=0)
    size_mb: float | None = None
    indexes: tuple[IndexInfo, ...] = ()

    def index_covering(self, columns: Iterable[str]) -> IndexInfo | None:
        """First non-clustered index whose columns intersect ``columns``."""
        wanted = {c.lower() for c in columns}
        for index in self.indexes:
            if index.clustered:
                continue
            if wanted & {c.lower() for c in index.columns}:
                return index
        return None

    def date_columns(self) -> list[str]:
        """Indexed columns that look like dates, in index order."""
        found: list[str] = []
        for index in self.indexes:
            for column in index.columns:
                if "date" in column.lower() and column not in found:
                    found.append(column)
        return found


@runtime_checkable
class TableStatisticsProvider(Protocol):
    """Source of row counts and index definitions."""

    def get(self, table_name: str) -> TableStatistics | None:
        """Statistics for ``table_name`` (case-insensitive), or None if unknown."""
        ...


DEFAULT_TABLES: tuple[TableStatistics, ...] = (
    TableStatistics(
        table_name="transactions",
        row_count=1_000_000,
        size_mb=500,
        indexes=(
            IndexInfo(name="PK_transactions", columns=("id",), unique=True, clustered=True, primary=True),
            IndexInfo(name="IX_uploadId_client_id", columns=("uploadId", "client_id")),
            IndexInfo(name="IX_transaction_date", columns=("transaction_date",)),
        ),
    ),
    TableStatistics(
        table_name="accounts",
        row_count=50_000,
        size_mb=25,
        indexes=(
            IndexInfo(name="PK_accounts", columns=("account_id",), unique=True, clustered=True, primary=True),
            IndexInfo(name="IX_client_id", columns=("client_id",)),
        ),
    ),
    TableStatistics(
        table_name="journal_entries",
        row_count=500_000,
        size_mb=250,
        indexes=(
            IndexInfo(name="PK_journal_entries", columns=("entry_id",), unique=True, clustered=True, primary=True),
            IndexInfo(name="IX_uploadId", columns=("uploadId",)),
        ),
    ),
    TableStatistics(
        table_name="portfolio_positions",
        row_count=200_000,
        size_mb=100,
        indexes=(
            IndexInfo(name="PK_positions", columns=("position_id",), unique=True, clustered=True, primary=True),
            IndexInfo(name="IX_uploadId_date", columns=("uploadId", "position_date")),
        ),
    ),
)


class StaticTableStatistics:
    """In-memory statistics keyed by lower-cased table name."""

    def __init__(self, tables: Iterable[TableStatistics] | None = None) -> None:
        self._tables: dict[str, TableStatistics] = {}
        for table in DEFAULT_TABLES if tables is None else tables:
            self.add(table)

    def add(self, table: TableStatistics) -> None:
        self._tables[table.table_name.lower()] = table

    def get(self, table_name: str) -> TableStatistics | None:
        return self._tables.get(table_name.lower())

    def __len__(self) -> int:
        return len(self._tables)

    def __contains__(self, table_name: object) -> bool:
        return isinstance(table_name, str) and table_name.lower() in self._tables

    @classmethod
    def from_file(cls, path: Path, include_defaults: bool = True) -> "StaticTableStatistics":
        """
        Load table statistics from a YAML or JSON file.

        Raises:
            ConfigurationError: If the file is missing or malformed.
        """
        try:
            with open(path) as f:
                if path.suffix in (".yaml", ".yml"):
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Failed to read table statistics from {path}: {e}", "table_statistics_file"
            ) from e

        tables = (data or {}).get("tables", {}) if isinstance(data, dict) else None
        if not isinstance(tables, dict):
            raise ConfigurationError(
                f"Table statistics file {path} must contain a 'tables' mapping",
                "table_statistics_file",
            )

        provider = cls() if include_defaults else cls(tables=())
        for name, entry in tables.items():
            entry = entry or {}
            try:
                provider.add(
                    TableStatistics(
                        table_name=name,
                        row_count=entry.get("row_count", 0),
                        size_mb=entry.get("size_mb"),
                        indexes=tuple(IndexInfo(**index) for index in entry.get("indexes", [])),
                    )
                )
            except (ValidationError, TypeError) as e:
                raise ConfigurationError(
                    f"Invalid statistics for table '{name}': {e}", "table_statistics_file"
                ) from e

        logger.debug("Loaded statistics for %d tables from %s", len(tables), path)
        return provider
