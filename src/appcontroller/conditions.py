"""Condition constructors shared by the reconciler and its helpers."""

from __future__ import annotations

from .models import Condition, ConditionStatus

# Condition types
TYPE_PARSED = "Parsed"
TYPE_REVISION = "Revision"
TYPE_POLICY = "Policy"
TYPE_RENDER = "Render"
TYPE_WORKFLOW = "Workflow"
TYPE_READY = "Ready"
TYPE_STATE_KEEP = "StateKeep"
TYPE_SYNCED = "Synced"

# Reasons
REASON_AVAILABLE = "Available"
REASON_RECONCILE_ERROR = "ReconcileError"
REASON_RECONCILE_SUCCESS = "ReconcileSuccess"
REASON_DELETING = "Deleting"


def ready_condition(condition_type: str) -> Condition:
    return Condition(type=condition_type, status=ConditionStatus.TRUE, reason=REASON_AVAILABLE)


def error_condition(condition_type: str, err: BaseException | str) -> Condition:
    return Condition(
        type=condition_type,
        status=ConditionStatus.FALSE,
        reason=REASON_RECONCILE_ERROR,
        message=str(err),
    )


def reconcile_error(err: BaseException | str) -> Condition:
    """Negative Synced condition for object-level failures."""
    return error_condition(TYPE_SYNCED, err)


def reconcile_success() -> Condition:
    return Condition(
        type=TYPE_READY, status=ConditionStatus.TRUE, reason=REASON_RECONCILE_SUCCESS
    )


def deleting_condition(message: str = "") -> Condition:
    return Condition(
        type=TYPE_READY,
        status=ConditionStatus.FALSE,
        reason=REASON_DELETING,
        message=message,
    )
