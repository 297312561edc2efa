"""
Isolation rules: upload scoping, tenant filter and row limit.

These three rules are what make a rewritten SELECT safe to hand to the
executor. They check top-level AND conjuncts of the tree rather than the
flattened predicate list, so ``... OR client_id = 'x'`` does not count as
scoping.
"""

from __future__ import annotations

from queryguard.optimizer import mutations
from queryguard.optimizer.models import Impact, OptimizationType
from queryguard.optimizer.rules.base import (
    Action,
    ModificationKind,
    ModifyAction,
    OptimizationRule,
    QueryModification,
    RuleContext,
)
from queryguard.parser.models import ParsedQuery

UPLOAD_COLUMNS = ("uploadId", "upload_id")
CLIENT_COLUMNS = ("client_id", "clientId")


def is_upload_scoped(query: ParsedQuery, upload_id: str) -> bool:
    """
    True if the query reads the upload's own table or pins an upload
    column to ``upload_id`` in a top-level conjunct.
    """
    if any(name.lower() == upload_id.lower() for name in query.table_names):
        return True
    return mutations.has_equality(query.tree, UPLOAD_COLUMNS, upload_id)


class EnforceUploadId(OptimizationRule):
    """
    Scope the query to the request's upload.

    Fires when no top-level predicate pins an upload column to the
    request's upload id. Without an upload id there is nothing to add and
    the rule is logged as not applied.
    """

    rule_id = "enforce_upload_id"
    name = "Enforce Upload ID"
    description = "Ensure query uses uploadId for clustered index"
    priority = 100
    optimization_type = OptimizationType.INDEX_USAGE
    option_flag = "enforce_upload_id"

    def condition(self, query: ParsedQuery, ctx: RuleContext) -> bool:
        if not query.is_select:
            return False
        if ctx.upload_id is None:
            return not query.conditions_on(*UPLOAD_COLUMNS)
        return not is_upload_scoped(query, ctx.upload_id)

    def apply(self, query: ParsedQuery, ctx: RuleContext) -> Action:
        if ctx.upload_id is None:
            return ModifyAction(
                modifications=(),
                impact=Impact.HIGH,
                message="No uploadId available for this request",
            )
        return ModifyAction(
            modifications=(
                QueryModification(
                    kind=ModificationKind.ADD_FILTER,
                    target="where",
                    value=mutations.equality(
                        "uploadId", ctx.upload_id, table=mutations.filter_qualifier(query.tree)
                    ),
                    description="Add uploadId filter for clustered index usage",
                ),
            ),
            impact=Impact.HIGH,
        )


class EnforceClientId(OptimizationRule):
    """Add the tenant filter unless ``client_id = <this client>`` is already ANDed in."""

    rule_id = "enforce_client_id"
    name = "Enforce Multi-tenant Filter"
    description = "Add client_id filter for multi-tenancy"
    priority = 95
    optimization_type = OptimizationType.MULTI_TENANT_FILTER
    option_flag = "enforce_client_id"

    def condition(self, query: ParsedQuery, ctx: RuleContext) -> bool:
        return query.is_select and not mutations.has_equality(
            query.tree, CLIENT_COLUMNS, ctx.client_id
        )

    def apply(self, query: ParsedQuery, ctx: RuleContext) -> Action:
        return ModifyAction(
            modifications=(
                QueryModification(
                    kind=ModificationKind.ADD_FILTER,
                    target="where",
                    value=mutations.equality(
                        "client_id", ctx.client_id, table=mutations.filter_qualifier(query.tree)
                    ),
                    description="Add client_id filter for multi-tenant isolation",
                ),
            ),
            impact=Impact.HIGH,
        )


class EnforceRowLimit(OptimizationRule):
    """
    Add a row limit, or clamp one that exceeds the ceiling.

    A limit at or below the ceiling is left untouched.
    """

    rule_id = "enforce_row_limit"
    name = "Enforce Row Limit"
    description = "Add TOP/LIMIT clause if missing"
    priority = 90
    optimization_type = OptimizationType.ROW_LIMIT

    def condition(self, query: ParsedQuery, ctx: RuleContext) -> bool:
        if not query.is_select:
            return False
        return query.limit is None or query.limit > ctx.max_rows

    def apply(self, query: ParsedQuery, ctx: RuleContext) -> Action:
        limit = ctx.max_rows
        if query.limit is None:
            description = "Add row limit to prevent excessive data retrieval"
            message = None
        else:
            description = f"Reduce row limit from {query.limit} to {limit}"
            message = f"Row limit {query.limit} exceeds maximum allowed {limit}"
        return ModifyAction(
            modifications=(
                QueryModification(
                    kind=ModificationKind.ADD_LIMIT,
                    target="limit",
                    value=limit,
                    description=description,
                ),
            ),
            impact=Impact.HIGH,
            message=message,
        )
