"""
Lending mode: portfolio-wide analysis with drill-down.

Queries may span every active upload of the session's client. Client
isolation still holds: predicates that reach for other clients are
rejected outright.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from queryguard.modes.base import (
    ModeStrategy,
    find_prohibited_columns,
    has_aggregation,
    has_cross_client_access,
    has_group_by,
    has_join_without_constraints,
    has_optimization_hints,
    is_portfolio_query,
)
from queryguard.modes.models import (
    CompanyContext,
    ModeConstraints,
    ModeContext,
    ModeQueryModification,
    ModeValidation,
    PortfolioContext,
    SessionContext,
    SessionSeed,
    UploadContextValidation,
    WorkflowMode,
)

logger = logging.getLogger(__name__)

LENDING_CONSTRAINTS = ModeConstraints(
    requires_upload_id=False,
    allows_multiple_uploads=True,
    requires_client_id_filter=True,
    allows_cross_client_queries=False,
    max_rows_per_query=50_000,
    allowed_table_patterns=("upload_*", "client_*", "lending_*", "portfolio_*", "aggregated_*"),
    restricted_operations=("DROP", "DELETE", "UPDATE", "INSERT", "CREATE", "ALTER", "TRUNCATE"),
    allows_historical_data=True,
    max_history_days=1095,
    mandatory_filters=("client_id",),
    prohibited_columns=("password", "token", "secret", "key", "ssn", "personal_info"),
)

SMALL_PORTFOLIO = 3
SMALL_UPLOAD_RECORDS = 100
STALE_UPLOAD_AGE = timedelta(days=180)


class LendingModeStrategy(ModeStrategy):
    mode = WorkflowMode.LENDING
    constraints = LENDING_CONSTRAINTS
    session_warning_age_seconds = 12 * 60 * 60

    async def validate_query(self, query: str, context: ModeContext) -> ModeValidation:
        errors: list[str] = []
        warnings: list[str] = []

        if context.upload_id:
            upload = await self.validate_upload_context(context.upload_id, context)
            if not upload.is_valid:
                errors.extend(upload.errors)
            warnings.extend(upload.warnings)

        self._common_query_checks(query, context, errors, warnings)

        if has_cross_client_access(query, context.client_id):
            errors.append("Cross-client access is not allowed even in lending mode")

        for column in find_prohibited_columns(query, self.constraints.prohibited_columns):
            errors.append(f"Column '{column}' contains sensitive data and is prohibited")

        if is_portfolio_query(query):
            if not has_aggregation(query):
                warnings.append("Portfolio queries typically benefit from aggregation functions")
            if not has_group_by(query):
                warnings.append(
                    "Consider grouping portfolio data by company, time period, or other dimensions"
                )

        if has_join_without_constraints(query):
            warnings.append("Joins without proper constraints may be slow on large datasets")

        return ModeValidation(is_valid=not errors, errors=tuple(errors), warnings=tuple(warnings))

    def scopes_upload(self, query: str, context: ModeContext) -> bool:
        return not is_portfolio_query(query)

    async def modify_query(self, query: str, context: ModeContext) -> ModeQueryModification:
        portfolio = is_portfolio_query(query)
        modified, applied, warnings, errors = await self._modify(
            query,
            context,
            scope_upload=not portfolio,
            add_hint=portfolio and not has_optimization_hints(query),
            upload_message="Added upload_id scoping for focused analysis",
        )

        validation = await self.validate_query(modified, context)
        errors.extend(validation.errors)
        warnings.extend(validation.warnings)

        return ModeQueryModification(
            original_query=query,
            modified_query=modified,
            applied_constraints=tuple(applied),
            warnings=tuple(warnings),
            errors=tuple(errors),
        )

    async def initialize_session(self, client_id: str, upload_id: str | None = None) -> SessionSeed:
        uploads = await self._client_uploads(client_id, active_only=True)
        active_ids = tuple(u.table_name for u in uploads)

        company = None
        if upload_id:
            current = next((u for u in uploads if u.table_name == upload_id), None)
            if current is not None:
                company = CompanyContext(
                    name=f"Client-{client_id}-Company",
                    upload_id=upload_id,
                    period=current.upload_date.date().isoformat(),
                )

        return SessionSeed(
            client_id=client_id,
            current_upload_id=upload_id,
            available_upload_ids=active_ids,
            company_context=company,
            portfolio_context=PortfolioContext(
                total_companies=len(uploads),
                active_upload_ids=active_ids,
            ),
        )

    def validate_session(self, context: SessionContext) -> ModeValidation:
        errors: list[str] = []
        warnings: list[str] = []
        portfolio = context.portfolio_context

        if not context.available_upload_ids:
            errors.append("No active uploads available for lending analysis")
        if portfolio is None or portfolio.total_companies == 0:
            errors.append("Portfolio context is required for lending mode")
        if portfolio is not None and portfolio.total_companies < SMALL_PORTFOLIO:
            warnings.append("Small portfolio size may limit the effectiveness of comparative analysis")
        if self._session_age_seconds(context) > self.session_warning_age_seconds:
            warnings.append("Session is getting old, consider refreshing portfolio context")

        return ModeValidation(is_valid=not errors, errors=tuple(errors), warnings=tuple(warnings))

    def get_available_actions(self) -> list[str]:
        return [
            "financial_ratios",
            "liquidity_analysis",
            "debt_capacity",
            "revenue_trends",
            "working_capital",
            "portfolio_cash",
            "risk_scoring",
            "covenant_compliance",
        ]

    async def validate_upload_context(
        self, upload_id: str | None, context: ModeContext
    ) -> UploadContextValidation:
        if not upload_id:
            return UploadContextValidation(
                is_valid=True,
                warnings=("No specific upload context - portfolio-wide analysis available",),
            )

        try:
            upload = await self._find_upload(upload_id)
        except Exception as e:
            logger.warning("Upload metadata lookup failed: %s", e)
            return UploadContextValidation(
                is_valid=False, errors=(f"Error validating upload context: {e}",)
            )

        if upload is None:
            return UploadContextValidation(
                is_valid=False, errors=(f"Upload '{upload_id}' not found",)
            )

        if upload.client_id != context.client_id:
            return UploadContextValidation(
                is_valid=False,
                upload_exists=True,
                errors=(f"Upload '{upload_id}' does not belong to client '{context.client_id}'",),
            )

        warnings: list[str] = []
        if not upload.is_active:
            warnings.append(
                f"Upload '{upload_id}' is not active (status: {upload.status}) but can still be analyzed"
            )
        if upload.record_count < SMALL_UPLOAD_RECORDS:
            warnings.append("This upload has relatively few records, analysis may be limited")
        if self.clock() - upload.upload_date > STALE_UPLOAD_AGE:
            warnings.append(
                "This upload is more than 6 months old - consider data freshness for lending decisions"
            )

        return UploadContextValidation(
            is_valid=True,
            upload_exists=True,
            belongs_to_client=True,
            is_active=upload.is_active,
            company_name=f"Client-{upload.client_id}-Company",
            period=upload.upload_date.date().isoformat(),
            warnings=tuple(warnings),
        )
