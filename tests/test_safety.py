"""
Tests for the safety validator.

Blocking checks (dangerous operations, injection signatures, multiple
statements, system procedures) produce errors. Everything else is a
warning and leaves the query safe.
"""

from __future__ import annotations

import pytest

from queryguard.optimizer import OptimizationOptions, QueryContext, SafetyValidator
from queryguard.optimizer.models import ViolationSeverity, ViolationType
from queryguard.optimizer.safety import scan_sql
from queryguard.parser import QueryParser

parser = QueryParser()
validator = SafetyValidator()


def check(sql: str, **kwargs):
    return validator.validate(parser.parse(sql), **kwargs)


def types(result) -> set[ViolationType]:
    return {v.type for v in result.violations}


SCOPED = "SELECT TOP 100 id FROM transactions WHERE uploadId = 'u1' AND client_id = 'c1'"


# =============================================================================
# Blocking checks
# =============================================================================

class TestBlockingChecks:

    @pytest.mark.parametrize(
        "sql",
        [
            "DROP TABLE transactions",
            "DELETE FROM transactions WHERE id = 1",
            "UPDATE accounts SET balance = 0 WHERE id = 1",
            "INSERT INTO accounts (id) VALUES (1)",
            "TRUNCATE TABLE accounts",
        ],
    )
    def test_dml_and_ddl_are_blocked(self, sql: str) -> None:
        result = check(sql)

        assert not result.is_safe
        assert not result.is_valid
        assert ViolationType.DANGEROUS_OPERATION in {v.type for v in result.errors}

    def test_select_into_is_blocked(self) -> None:
        result = check("SELECT id, amount INTO backup_tx FROM transactions WHERE client_id = 'c1'")

        assert not result.is_safe
        assert [v.message for v in result.errors] == [
            "Query contains dangerous operation: SELECT INTO"
        ]

    def test_leniency_option_does_not_unblock(self) -> None:
        result = check(
            "DROP TABLE transactions",
            options=OptimizationOptions(block_dangerous_ops=False),
        )

        assert not result.is_safe

    def test_multiple_statements(self) -> None:
        result = check("SELECT id FROM accounts; SELECT id FROM transactions")

        assert not result.is_safe
        assert any("2 statements" in v.message for v in result.errors)

    def test_system_procedure_call(self) -> None:
        result = check("SELECT xp_cmdshell('dir')")

        assert not result.is_safe
        assert any("xp_cmdshell" in v.message for v in result.errors)

    @pytest.mark.parametrize(
        "sql, label",
        [
            ("SELECT id FROM accounts WHERE name = 'x' OR 1=1", "numeric tautology"),
            ("SELECT id FROM accounts WHERE name = 'x' OR 'a'='a'", "string tautology"),
            ("SELECT id FROM accounts WHERE id = SLEEP(5)", "time-based delay"),
            ("SELECT id FROM accounts UNION SELECT id FROM transactions", "UNION-based extraction"),
        ],
    )
    def test_injection_signatures(self, sql: str, label: str) -> None:
        result = check(sql)

        assert not result.is_safe
        assert any(label in v.message for v in result.errors)
        assert all(v.type != ViolationType.DANGEROUS_OPERATION for v in result.errors)

    def test_line_comment_is_blocked(self) -> None:
        result = check("SELECT id FROM accounts -- comment")

        assert not result.is_safe
        assert any("comment" in v.message for v in result.errors)

    def test_portfolio_hint_comment_is_allowed(self) -> None:
        result = check(
            "/* Portfolio query optimization */ SELECT TOP 10 id FROM accounts "
            "WHERE uploadId = 'u1' AND client_id = 'c1'"
        )

        assert result.is_safe


# =============================================================================
# Literals and comments stay out of the signature checks
# =============================================================================

class TestLiteralHandling:

    def test_keywords_inside_literal_are_ignored(self) -> None:
        result = check(
            "SELECT TOP 10 id FROM transactions "
            "WHERE memo = 'DROP TABLE x; --' AND uploadId = 'u1' AND client_id = 'c1'"
        )

        assert result.is_safe
        assert result.errors == []

    def test_equal_literals_share_placeholder(self) -> None:
        scanned = scan_sql("SELECT 'a', 'a', 'b'")

        assert scanned.code.count("'s0'") == 2
        assert "'s1'" in scanned.code
        assert scanned.blanked == "SELECT '', '', ''"

    def test_comments_are_collected(self) -> None:
        scanned = scan_sql("SELECT 1 /* note */")

        assert scanned.comments == ("/* note */",)
        assert "note" not in scanned.code


# =============================================================================
# Advisory checks
# =============================================================================

class TestAdvisoryChecks:

    def test_scoped_query_is_clean(self) -> None:
        result = check(SCOPED)

        assert result.is_safe
        assert result.violations == ()

    def test_missing_isolation_filters_warn(self) -> None:
        result = check("SELECT TOP 10 id FROM transactions WHERE amount > 5")

        assert result.is_safe
        assert {ViolationType.MISSING_UPLOAD_ID, ViolationType.MISSING_CLIENT_ID} <= types(result)

    def test_disabled_upload_check(self) -> None:
        result = check(
            "SELECT TOP 10 id FROM transactions WHERE client_id = 'c1'",
            options=OptimizationOptions(enforce_upload_id=False),
        )

        assert ViolationType.MISSING_UPLOAD_ID not in types(result)

    def test_missing_and_excessive_limit(self) -> None:
        missing = check("SELECT id FROM transactions WHERE uploadId = 'u1' AND client_id = 'c1'")
        excessive = check(
            "SELECT TOP 10000 id FROM transactions WHERE uploadId = 'u1' AND client_id = 'c1'"
        )

        assert ViolationType.MISSING_ROW_LIMIT in types(missing)
        assert ViolationType.EXCESSIVE_ROW_LIMIT in types(excessive)
        assert excessive.is_safe

    def test_context_cap_lowers_the_ceiling(self) -> None:
        result = check(SCOPED, context=QueryContext(max_results=50))

        excessive = [v for v in result.violations if v.type == ViolationType.EXCESSIVE_ROW_LIMIT]
        assert excessive[0].message == "Row limit 100 exceeds maximum allowed 50"

    def test_required_filters_from_context(self) -> None:
        result = check(SCOPED, context=QueryContext(required_filters=("account_id",)))

        assert any("account_id" in v.message for v in result.warnings)

    def test_is_column_filtered_accepts_alternatives(self) -> None:
        query = parser.parse(SCOPED)

        assert SafetyValidator.is_column_filtered(query, "upload_id", "uploadId")
        assert not SafetyValidator.is_column_filtered(query, "account_id", "posted_at")

    def test_cross_join_and_star(self) -> None:
        result = check(
            "SELECT TOP 10 * FROM transactions CROSS JOIN accounts "
            "WHERE uploadId = 'u1' AND client_id = 'c1'"
        )

        assert result.is_safe
        assert {ViolationType.CARTESIAN_PRODUCT, ViolationType.WILDCARD_SELECT} <= types(result)

    def test_join_without_key_columns(self) -> None:
        result = check(
            "SELECT TOP 10 t.amount FROM transactions t JOIN accounts a ON t.memo = a.label "
            "WHERE t.uploadId = 'u1' AND t.client_id = 'c1'"
        )

        assert ViolationType.MISSING_INDEX in types(result)

    def test_portfolio_time_window(self) -> None:
        missing = check(
            "SELECT TOP 10 id FROM portfolio_positions WHERE uploadId = 'u1' AND client_id = 'c1'"
        )
        broad = check(
            "SELECT TOP 10 id FROM portfolio_positions "
            "WHERE uploadId = 'u1' AND client_id = 'c1' AND position_date >= '2020-01-01'"
        )

        assert ViolationType.MISSING_TIME_WINDOW in types(missing)
        assert ViolationType.BROAD_TIME_RANGE in types(broad)
        assert all(v.severity == ViolationSeverity.WARNING for v in broad.violations)


# =============================================================================
# Security score
# =============================================================================

class TestSecurityScore:

    def test_unsafe_scores_zero(self) -> None:
        assert SafetyValidator.get_security_score(check("DROP TABLE accounts")) == 0

    def test_warnings_cost_ten_each(self) -> None:
        result = check("SELECT TOP 10 id FROM transactions WHERE amount > 5")

        assert SafetyValidator.get_security_score(result) == 100 - 10 * len(result.warnings)
