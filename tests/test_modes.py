"""
Tests for workflow mode strategies (audit, lending) and the mode manager.

Upload fixtures come from conftest: c1 owns upload_c1_q1 (active, 5000
rows), upload_c1_q2 (active, 50 rows, 120 days old) and upload_c1_old
(archived, 400 days old); c2 owns upload_c2_q1.
"""

from __future__ import annotations

import pytest

from queryguard.config import Config
from queryguard.exceptions import UnsupportedModeError, UploadContextError
from queryguard.modes import (
    AuditModeStrategy,
    InMemoryUploadMetadataProvider,
    LendingModeStrategy,
    ModeContext,
    PortfolioContext,
    SessionContext,
    UploadTableInfo,
    WorkflowMode,
    WorkflowModeFactory,
    WorkflowModeManager,
)
from queryguard.modes.base import (
    find_prohibited_columns,
    find_restricted_operations,
    has_cross_client_access,
    is_portfolio_query,
    is_table_allowed,
    referenced_tables,
)

from conftest import NOW


@pytest.fixture
def audit(uploads, clock) -> AuditModeStrategy:
    return AuditModeStrategy(uploads=uploads, clock=clock)


@pytest.fixture
def lending(uploads, clock) -> LendingModeStrategy:
    return LendingModeStrategy(uploads=uploads, clock=clock)


def audit_context(upload_id: str | None = "upload_c1_q1", client_id: str = "c1") -> ModeContext:
    return ModeContext(client_id=client_id, upload_id=upload_id, mode=WorkflowMode.AUDIT)


def lending_context(upload_id: str | None = None, client_id: str = "c1") -> ModeContext:
    return ModeContext(client_id=client_id, upload_id=upload_id, mode=WorkflowMode.LENDING)


# =============================================================================
# Text checks
# =============================================================================

class TestTextChecks:

    def test_restricted_operations_match_whole_words(self) -> None:
        assert find_restricted_operations("DROP TABLE x", ("DROP",)) == ["DROP"]
        assert find_restricted_operations("SELECT dropped_at FROM x", ("DROP",)) == []
        assert find_restricted_operations("SELECT 'DROP' FROM x", ("DROP",)) == []

    def test_prohibited_columns_match_identifier_segments(self) -> None:
        columns = ("key", "ssn")

        assert find_prohibited_columns("SELECT api_key FROM t", columns) == ["key"]
        assert find_prohibited_columns("SELECT monkey, keyboard FROM t", columns) == []
        assert find_prohibited_columns("SELECT SSN FROM t", columns) == ["ssn"]
        assert find_prohibited_columns("SELECT id FROM t WHERE note = 'ssn'", columns) == []

    def test_table_patterns(self) -> None:
        assert is_table_allowed("upload_c1_q1", ("upload_*",))
        assert is_table_allowed("Client_Ledger", ("client_*",))
        assert not is_table_allowed("transactions", ("upload_*", "client_*"))
        assert not is_table_allowed("my_upload_x", ("upload_*",))

    def test_referenced_tables_skip_ctes(self) -> None:
        sql = (
            "WITH recent AS (SELECT id FROM upload_a) "
            "SELECT r.id FROM recent r JOIN client_b b ON r.id = b.id"
        )

        assert sorted(referenced_tables(sql)) == ["client_b", "upload_a"]

    def test_portfolio_shape(self) -> None:
        assert is_portfolio_query("SELECT SUM(amount) FROM lending_loans")
        assert is_portfolio_query("SELECT id FROM portfolio_positions")
        assert not is_portfolio_query("SELECT id FROM lending_loans WHERE id = 1")

    def test_cross_client_access(self) -> None:
        assert has_cross_client_access("SELECT id FROM t WHERE client_id <> 'c1'", "c1")
        assert has_cross_client_access("SELECT id FROM t WHERE client_id IN ('c1', 'c2')", "c1")
        assert has_cross_client_access("SELECT id FROM t WHERE client_id = 'c2'", "c1")
        assert not has_cross_client_access("SELECT id FROM t WHERE client_id = 'c1'", "c1")


# =============================================================================
# Audit mode
# =============================================================================

class TestAuditValidation:

    async def test_requires_company_context(self, audit: AuditModeStrategy) -> None:
        result = await audit.validate_query("SELECT id FROM upload_c1_q1", audit_context(None))

        assert not result.is_valid
        assert "requires a specific company context" in result.errors[0]
        assert result.required_context == {"upload_id": "required"}

    async def test_scoped_query_is_valid(self, audit: AuditModeStrategy) -> None:
        result = await audit.validate_query(
            "SELECT TOP 10 id FROM client_ledger "
            "WHERE client_id = 'c1' AND uploadId = 'upload_c1_q1'",
            audit_context(),
        )

        assert result.is_valid
        assert result.errors == ()
        assert result.warnings == ()

    async def test_unscoped_query_warns(self, audit: AuditModeStrategy) -> None:
        result = await audit.validate_query("SELECT id FROM client_ledger", audit_context())

        assert result.is_valid
        assert "Query will be automatically scoped to your client_id" in result.warnings
        assert "Query will be automatically scoped to the current company context" in result.warnings

    async def test_upload_table_counts_as_scoped(self, audit: AuditModeStrategy) -> None:
        result = await audit.validate_query(
            "SELECT id FROM upload_c1_q1 WHERE client_id = 'c1'", audit_context()
        )

        assert result.warnings == ()

    async def test_restricted_operation(self, audit: AuditModeStrategy) -> None:
        result = await audit.validate_query("DROP TABLE client_ledger", audit_context())

        assert not result.is_valid
        assert "Operation 'DROP' is not allowed in audit mode" in result.errors

    async def test_table_outside_allow_list(self, audit: AuditModeStrategy) -> None:
        result = await audit.validate_query(
            "SELECT id FROM transactions WHERE client_id = 'c1'", audit_context()
        )

        assert "Table 'transactions' is not accessible in audit mode" in result.errors

    @pytest.mark.parametrize(
        "upload_id, message",
        [
            ("upload_c2_q1", "Upload 'upload_c2_q1' does not belong to client 'c1'"),
            ("upload_c1_old", "Upload 'upload_c1_old' is not active (status: archived)"),
            ("nope", "Upload 'nope' not found"),
        ],
    )
    async def test_bad_upload_context(
        self, audit: AuditModeStrategy, upload_id: str, message: str
    ) -> None:
        result = await audit.validate_query("SELECT id FROM client_ledger", audit_context(upload_id))

        assert not result.is_valid
        assert message in result.errors

    async def test_sensitive_column_warns(self, audit: AuditModeStrategy) -> None:
        result = await audit.validate_query(
            "SELECT password FROM client_users WHERE client_id = 'c1' AND uploadId = 'upload_c1_q1'",
            audit_context(),
        )

        assert result.is_valid
        assert "Column 'password' may contain sensitive data and should be avoided" in result.warnings

    async def test_old_small_upload_warns(self, audit: AuditModeStrategy) -> None:
        result = await audit.validate_upload_context("upload_c1_q2", audit_context("upload_c1_q2"))

        assert result.is_valid
        assert result.company_name == "Client-c1"
        assert result.warnings == (
            "This upload has relatively few records, results may be limited",
            "This upload is more than 90 days old",
        )


class TestAuditModification:

    async def test_adds_client_upload_and_limit(self, audit: AuditModeStrategy) -> None:
        result = await audit.modify_query(
            "SELECT * FROM client_ledger WHERE amount > 1000", audit_context()
        )

        assert result.applied_constraints == (
            "Added client_id filter",
            "Added upload_id scoping",
            "Added LIMIT 5000",
        )
        assert "client_id = 'c1'" in result.modified_query
        assert "uploadId = 'upload_c1_q1'" in result.modified_query
        assert "TOP 5000" in result.modified_query
        assert result.errors == ()

    async def test_unchanged_query_is_returned_verbatim(self, audit: AuditModeStrategy) -> None:
        query = (
            "select top 10 id from client_ledger "
            "where client_id = 'c1' and uploadId = 'upload_c1_q1'"
        )

        result = await audit.modify_query(query, audit_context())

        assert result.modified_query == query
        assert result.applied_constraints == ()

    async def test_over_cap_limit_is_reduced(self, audit: AuditModeStrategy) -> None:
        result = await audit.modify_query(
            "SELECT TOP 9000 id FROM client_ledger "
            "WHERE client_id = 'c1' AND uploadId = 'upload_c1_q1'",
            audit_context(),
        )

        assert result.applied_constraints == ("Reduced row limit to 5000",)
        assert "TOP 5000" in result.modified_query

    async def test_modification_is_idempotent(self, audit: AuditModeStrategy) -> None:
        first = await audit.modify_query("SELECT id FROM client_ledger", audit_context())
        second = await audit.modify_query(first.modified_query, audit_context())

        assert second.modified_query == first.modified_query
        assert second.applied_constraints == ()

    async def test_modification_reports_validation_errors(self, audit: AuditModeStrategy) -> None:
        result = await audit.modify_query("DROP TABLE client_ledger", audit_context())

        assert result.modified_query == "DROP TABLE client_ledger"
        assert "Operation 'DROP' is not allowed in audit mode" in result.errors

    def test_apply_scoping_has_no_limit(self, audit: AuditModeStrategy) -> None:
        scoped = audit.apply_scoping("SELECT id FROM client_ledger", audit_context())

        assert "client_id = 'c1'" in scoped
        assert "uploadId = 'upload_c1_q1'" in scoped
        assert "TOP" not in scoped


class TestAuditSession:

    async def test_initialize_session(self, audit: AuditModeStrategy) -> None:
        seed = await audit.initialize_session("c1", "upload_c1_q1")

        assert seed.available_upload_ids == ("upload_c1_q1", "upload_c1_q2", "upload_c1_old")
        assert seed.company_context.name == "Client-c1"
        assert seed.company_context.period == "2026-01-05"
        assert seed.portfolio_context is None

    def test_validate_session(self, audit: AuditModeStrategy, clock) -> None:
        session = SessionContext(
            session_id="s1",
            client_id="c1",
            mode=WorkflowMode.AUDIT,
            current_upload_id="upload_c1_q1",
            available_upload_ids=("upload_c1_q1",),
            created_at=NOW,
            last_activity=NOW,
        )

        assert audit.validate_session(session).is_valid
        clock.advance(9 * 60 * 60)
        assert audit.validate_session(session).warnings == (
            "Session is getting old, consider refreshing company context",
        )
        missing = session.model_copy(update={"current_upload_id": None})
        assert not audit.validate_session(missing).is_valid


# =============================================================================
# Lending mode
# =============================================================================

class TestLendingValidation:

    async def test_sensitive_column_is_rejected(self, lending: LendingModeStrategy) -> None:
        result = await lending.validate_query(
            "SELECT ssn FROM lending_borrowers WHERE client_id = 'c1'", lending_context()
        )

        assert not result.is_valid
        assert "Column 'ssn' contains sensitive data and is prohibited" in result.errors

    @pytest.mark.parametrize(
        "predicate",
        ["client_id <> 'c1'", "client_id = 'c2'", "client_id != 'c1'"],
    )
    async def test_cross_client_is_rejected(self, lending: LendingModeStrategy, predicate: str) -> None:
        result = await lending.validate_query(
            f"SELECT id FROM lending_loans WHERE {predicate}", lending_context()
        )

        assert "Cross-client access is not allowed even in lending mode" in result.errors

    async def test_portfolio_query_advice(self, lending: LendingModeStrategy) -> None:
        result = await lending.validate_query(
            "SELECT id FROM portfolio_positions WHERE client_id = 'c1'", lending_context()
        )

        assert result.is_valid
        assert "Portfolio queries typically benefit from aggregation functions" in result.warnings
        assert (
            "Consider grouping portfolio data by company, time period, or other dimensions"
            in result.warnings
        )

    async def test_upload_context_warnings(self, lending: LendingModeStrategy) -> None:
        archived = await lending.validate_upload_context("upload_c1_old", lending_context())
        small = await lending.validate_upload_context("upload_c1_q2", lending_context())
        portfolio_wide = await lending.validate_upload_context(None, lending_context())

        assert archived.is_valid
        assert not archived.is_active
        assert len(archived.warnings) == 2
        assert small.warnings == ("This upload has relatively few records, analysis may be limited",)
        assert portfolio_wide.is_valid
        assert "portfolio-wide analysis available" in portfolio_wide.warnings[0]

    async def test_foreign_upload_is_rejected(self, lending: LendingModeStrategy) -> None:
        result = await lending.validate_query(
            "SELECT id FROM lending_loans", lending_context("upload_c2_q1")
        )

        assert "Upload 'upload_c2_q1' does not belong to client 'c1'" in result.errors


class TestLendingModification:

    async def test_portfolio_query_gets_hint_and_wide_limit(self, lending: LendingModeStrategy) -> None:
        result = await lending.modify_query(
            "SELECT * FROM portfolio_positions", lending_context("upload_c1_q1")
        )

        assert result.applied_constraints == (
            "Added client_id filter",
            "Added LIMIT 50000",
            "Added portfolio query optimization hints",
        )
        assert "Portfolio query optimization" in result.modified_query
        assert "TOP 50000" in result.modified_query
        assert "uploadId" not in result.modified_query
        assert "Large result sets may impact performance" in result.warnings
        assert result.errors == ()

    async def test_focused_query_is_scoped_to_upload(self, lending: LendingModeStrategy) -> None:
        result = await lending.modify_query(
            "SELECT id FROM lending_loans WHERE amount > 5", lending_context("upload_c1_q1")
        )

        assert "Added upload_id scoping for focused analysis" in result.applied_constraints
        assert "uploadId = 'upload_c1_q1'" in result.modified_query

    async def test_portfolio_session(self, lending: LendingModeStrategy) -> None:
        seed = await lending.initialize_session("c1")
        session = SessionContext(
            session_id="s1",
            mode=WorkflowMode.LENDING,
            created_at=NOW,
            last_activity=NOW,
            **seed.model_dump(),
        )

        assert seed.available_upload_ids == ("upload_c1_q1", "upload_c1_q2")
        assert seed.portfolio_context == PortfolioContext(
            total_companies=2, active_upload_ids=("upload_c1_q1", "upload_c1_q2")
        )
        validation = lending.validate_session(session)
        assert validation.is_valid
        assert validation.warnings == (
            "Small portfolio size may limit the effectiveness of comparative analysis",
        )

    async def test_empty_portfolio_is_invalid(self, lending: LendingModeStrategy) -> None:
        seed = await lending.initialize_session("c3")
        session = SessionContext(
            session_id="s1",
            mode=WorkflowMode.LENDING,
            created_at=NOW,
            last_activity=NOW,
            **seed.model_dump(),
        )

        assert not lending.validate_session(session).is_valid


# =============================================================================
# Factory and manager
# =============================================================================

class TestFactory:

    def test_create_mode(self) -> None:
        factory = WorkflowModeFactory()

        assert isinstance(factory.create_mode("audit"), AuditModeStrategy)
        assert isinstance(factory.create_mode("LENDING"), LendingModeStrategy)
        assert factory.available_modes() == [WorkflowMode.AUDIT, WorkflowMode.LENDING]

    def test_unknown_mode(self) -> None:
        factory = WorkflowModeFactory()

        with pytest.raises(UnsupportedModeError):
            factory.create_mode("trading")
        assert not factory.validate_mode_config("trading")
        assert factory.validate_mode_config(WorkflowMode.AUDIT)

    def test_constraint_tables(self) -> None:
        factory = WorkflowModeFactory()

        assert factory.create_mode("audit").get_constraints().max_rows_per_query == 5000
        assert factory.create_mode("lending").get_constraints().max_rows_per_query == 50_000


class TestModeManager:

    @pytest.fixture
    def manager(self, uploads, clock) -> WorkflowModeManager:
        return WorkflowModeManager(config=Config(), uploads=uploads, clock=clock)

    async def test_initialize_mode_locks(self, manager: WorkflowModeManager) -> None:
        assert manager.can_switch_mode()

        session = await manager.initialize_mode("audit", "s1", "c1", "upload_c1_q1")

        assert session.locked
        assert session.mode == WorkflowMode.AUDIT
        assert session.created_at == NOW
        assert session.company_context.upload_id == "upload_c1_q1"
        assert not manager.can_switch_mode()
        assert isinstance(manager.get_current_mode(), AuditModeStrategy)

        manager.reset()
        assert manager.can_switch_mode()

    async def test_routes_to_session_mode(self, manager: WorkflowModeManager) -> None:
        lending_session = await manager.initialize_mode("lending", "s1", "c1")
        await manager.initialize_mode("audit", "s2", "c1", "upload_c1_q1")

        result = await manager.validate_query(
            "SELECT id FROM lending_loans WHERE client_id = 'c1'", lending_session
        )

        assert result.is_valid

    async def test_unknown_mode(self, manager: WorkflowModeManager) -> None:
        with pytest.raises(UnsupportedModeError):
            await manager.initialize_mode("trading", "s1", "c1")

    async def test_default_constraints(self, manager: WorkflowModeManager) -> None:
        assert manager.get_mode_constraints().requires_upload_id
        assert not manager.get_mode_constraints("lending").requires_upload_id

    async def test_session_validity(self, manager: WorkflowModeManager, clock) -> None:
        session = await manager.initialize_mode("audit", "s1", "c1", "upload_c1_q1")

        clock.advance(6 * 60 * 60)
        session = manager.update_session_activity(session)
        assert manager.is_session_valid(session)

        clock.advance(6 * 60 * 60)
        assert not manager.is_session_valid(session)

    async def test_recommendations(self, manager: WorkflowModeManager, clock) -> None:
        audit_session = await manager.initialize_mode("audit", "s1", "c1")
        lending_session = await manager.initialize_mode("lending", "s2", "c1")

        audit_recs = manager.get_mode_recommendations(audit_session)
        lending_recs = manager.get_mode_recommendations(lending_session)

        assert audit_recs[0].startswith("Available actions for audit mode: journal_entries")
        assert "Set a specific company context for focused audit analysis" in audit_recs
        assert "Compare data across different time periods for the same company" in audit_recs
        assert "Leverage portfolio analysis for comparative insights" in lending_recs
        assert "Drill down to specific companies for detailed analysis" in lending_recs

        clock.advance(11 * 60 * 60)
        assert (
            manager.get_mode_recommendations(audit_session)[-1]
            == "Session approaching timeout - consider refreshing"
        )

    async def test_session_stats(self, manager: WorkflowModeManager) -> None:
        session = await manager.initialize_mode("lending", "s1", "c1")

        stats = manager.get_session_stats(session)

        assert stats["mode"] == "lending"
        assert stats["upload_context"] == {"current": None, "available": 2}
        assert stats["portfolio_context"]["total_companies"] == 2
        assert stats["locked"] is True

    async def test_set_upload_context(self, manager: WorkflowModeManager) -> None:
        session = await manager.initialize_mode("audit", "s1", "c1", "upload_c1_q1")

        moved = await manager.set_upload_context(session, "upload_c1_q2")

        assert moved.current_upload_id == "upload_c1_q2"
        assert moved.company_context.upload_id == "upload_c1_q2"
        assert moved.mode == session.mode

        with pytest.raises(UploadContextError) as exc_info:
            await manager.set_upload_context(session, "upload_c2_q1")
        assert exc_info.value.upload_id == "upload_c2_q1"

    async def test_apply_mode_constraints(self, manager: WorkflowModeManager) -> None:
        session = await manager.initialize_mode("audit", "s1", "c1", "upload_c1_q1")

        result = await manager.apply_mode_constraints("SELECT id FROM client_ledger", session)
        scoped = manager.apply_scoping_to_query("SELECT id FROM client_ledger", session)

        assert "TOP 5000" in result.modified_query
        assert "uploadId = 'upload_c1_q1'" in scoped


class TestUploadProvider:

    async def test_add_replaces_by_table_name(self) -> None:
        provider = InMemoryUploadMetadataProvider()
        provider.add(UploadTableInfo(table_name="u", client_id="c1", upload_date=NOW))
        provider.add(UploadTableInfo(table_name="u", client_id="c1", upload_date=NOW, status="archived"))

        uploads = await provider.get_upload_table_info()
        assert len(uploads) == 1
        assert not uploads[0].is_active
