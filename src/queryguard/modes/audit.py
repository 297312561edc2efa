"""
Audit mode: one company context at a time.

Every query runs against a single, active upload owned by the session's
client, with a 5,000-row cap.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from queryguard.modes.base import ModeStrategy, find_prohibited_columns
from queryguard.modes.models import (
    CompanyContext,
    ModeConstraints,
    ModeContext,
    ModeQueryModification,
    ModeValidation,
    SessionContext,
    SessionSeed,
    UploadContextValidation,
    WorkflowMode,
)

logger = logging.getLogger(__name__)

RESTRICTED_OPERATIONS = ("DROP", "DELETE", "UPDATE", "INSERT", "CREATE", "ALTER", "TRUNCATE")

AUDIT_CONSTRAINTS = ModeConstraints(
    requires_upload_id=True,
    allows_multiple_uploads=False,
    requires_client_id_filter=True,
    allows_cross_client_queries=False,
    max_rows_per_query=5000,
    allowed_table_patterns=("upload_*", "client_*", "audit_*"),
    restricted_operations=RESTRICTED_OPERATIONS,
    allows_historical_data=True,
    max_history_days=365,
    mandatory_filters=("client_id",),
    prohibited_columns=("password", "token", "secret", "key"),
)

SMALL_UPLOAD_RECORDS = 100
STALE_UPLOAD_AGE = timedelta(days=90)


class AuditModeStrategy(ModeStrategy):
    mode = WorkflowMode.AUDIT
    constraints = AUDIT_CONSTRAINTS
    session_warning_age_seconds = 8 * 60 * 60

    async def validate_query(self, query: str, context: ModeContext) -> ModeValidation:
        errors: list[str] = []
        warnings: list[str] = []

        if not context.upload_id:
            return ModeValidation(
                is_valid=False,
                errors=("Audit mode requires a specific company context (upload_id)",),
                required_context={"upload_id": "required"},
            )

        upload = await self.validate_upload_context(context.upload_id, context)
        if not upload.is_valid:
            errors.extend(upload.errors)
        warnings.extend(upload.warnings)

        self._common_query_checks(query, context, errors, warnings)

        if not self.is_upload_scoped(self._try_parse(query), context.upload_id):
            warnings.append("Query will be automatically scoped to the current company context")

        for column in find_prohibited_columns(query, self.constraints.prohibited_columns):
            warnings.append(f"Column '{column}' may contain sensitive data and should be avoided")

        return ModeValidation(is_valid=not errors, errors=tuple(errors), warnings=tuple(warnings))

    def scopes_upload(self, query: str, context: ModeContext) -> bool:
        return True

    async def modify_query(self, query: str, context: ModeContext) -> ModeQueryModification:
        modified, applied, warnings, errors = await self._modify(
            query,
            context,
            scope_upload=True,
            add_hint=False,
            upload_message="Added upload_id scoping",
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
        uploads = await self._client_uploads(client_id, active_only=False)

        company = None
        if upload_id:
            current = next((u for u in uploads if u.table_name == upload_id), None)
            if current is not None:
                company = CompanyContext(
                    name=f"Client-{client_id}",
                    upload_id=upload_id,
                    period=current.upload_date.date().isoformat(),
                )

        return SessionSeed(
            client_id=client_id,
            current_upload_id=upload_id,
            available_upload_ids=tuple(u.table_name for u in uploads),
            company_context=company,
        )

    def validate_session(self, context: SessionContext) -> ModeValidation:
        errors: list[str] = []
        warnings: list[str] = []

        if not context.current_upload_id:
            errors.append("Audit mode requires a specific company context to be selected")
        elif context.current_upload_id not in context.available_upload_ids:
            errors.append("Selected company context is no longer available")

        if self._session_age_seconds(context) > self.session_warning_age_seconds:
            warnings.append("Session is getting old, consider refreshing company context")

        return ModeValidation(is_valid=not errors, errors=tuple(errors), warnings=tuple(warnings))

    def get_available_actions(self) -> list[str]:
        return [
            "journal_entries",
            "vendor_payments",
            "expense_analysis",
            "unusual_patterns",
            "weekend_transactions",
            "account_balance",
            "customer_receipts",
            "user_activity",
            "compliance",
            "month_end_adjustments",
        ]

    async def validate_upload_context(
        self, upload_id: str | None, context: ModeContext
    ) -> UploadContextValidation:
        if not upload_id:
            return UploadContextValidation(
                is_valid=False, errors=("Upload ID is required for audit mode",)
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

        if not upload.is_active:
            return UploadContextValidation(
                is_valid=False,
                upload_exists=True,
                belongs_to_client=True,
                errors=(f"Upload '{upload_id}' is not active (status: {upload.status})",),
            )

        warnings: list[str] = []
        if upload.record_count < SMALL_UPLOAD_RECORDS:
            warnings.append("This upload has relatively few records, results may be limited")
        if self.clock() - upload.upload_date > STALE_UPLOAD_AGE:
            warnings.append("This upload is more than 90 days old")

        return UploadContextValidation(
            is_valid=True,
            upload_exists=True,
            belongs_to_client=True,
            is_active=True,
            company_name=f"Client-{upload.client_id}",
            period=upload.upload_date.date().isoformat(),
            warnings=tuple(warnings),
        )
