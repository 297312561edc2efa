"""Optimization rules - one class per rewrite or advisory."""

from queryguard.optimizer.rules.advisory import (
    AvoidSelectStar,
    CheckCartesianProduct,
    CheckMissingWhere,
    OptimizeLikePatterns,
)
from queryguard.optimizer.rules.base import (
    Action,
    ModificationKind,
    ModifyAction,
    OptimizationRule,
    QueryModification,
    RuleContext,
    WarnAction,
)
from queryguard.optimizer.rules.isolation import EnforceClientId, EnforceRowLimit, EnforceUploadId
from queryguard.optimizer.rules.rewrite import AddCTEs, OptimizeJoins, OptimizeTimeWindow


def default_rules() -> list[OptimizationRule]:
    """The built-in rule set in declaration order (ties keep this order)."""
    return [
        EnforceUploadId(),
        EnforceRowLimit(),
        EnforceClientId(),
        OptimizeTimeWindow(),
        OptimizeJoins(),
        AddCTEs(),
        AvoidSelectStar(),
        CheckMissingWhere(),
        OptimizeLikePatterns(),
        CheckCartesianProduct(),
    ]


__all__ = [
    "Action",
    "AddCTEs",
    "AvoidSelectStar",
    "CheckCartesianProduct",
    "CheckMissingWhere",
    "EnforceClientId",
    "EnforceRowLimit",
    "EnforceUploadId",
    "ModificationKind",
    "ModifyAction",
    "OptimizationRule",
    "OptimizeJoins",
    "OptimizeLikePatterns",
    "OptimizeTimeWindow",
    "QueryModification",
    "RuleContext",
    "WarnAction",
    "default_rules",
]
