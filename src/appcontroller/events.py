"""Controller events, recorded as structured log records."""

from __future__ import annotations

import logging

from .models import Application

logger = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

# Reasons
REASON_PARSED = "Parsed"
REASON_FAILED_PARSE = "FailedParse"
REASON_REVISIONED = "Revisioned"
REASON_FAILED_REVISION = "FailedRevision"
REASON_POLICY_GENERATED = "PolicyGenerated"
REASON_FAILED_APPLY = "FailedApply"
REASON_FAILED_RENDER = "FailedRender"
REASON_RENDERED = "Rendered"
REASON_FAILED_WORKFLOW = "FailedWorkflow"
REASON_APPLIED = "Applied"
REASON_FAILED_STATE_KEEP = "FailedStateKeep"
REASON_FAILED_GC = "FailedGC"
REASON_DEPLOYED = "Deployed"

# Messages
MESSAGE_PARSED = "Parsed successfully"
MESSAGE_REVISIONED = "Revisioned successfully"
MESSAGE_POLICY_GENERATED = "Policy generated successfully"
MESSAGE_RENDERED = "Rendered successfully"
MESSAGE_WORKFLOW_FINISHED = "Workflow finished"
MESSAGE_DEPLOYED = "Deployed successfully"


class LoggingEventRecorder:
    """Records Normal and Warning events against an application."""

    def __init__(self, component: str = "Application") -> None:
        self._component = component

    def normal(self, app: Application, reason: str, message: str) -> None:
        self._record(app, EVENT_NORMAL, reason, message)

    def warning(self, app: Application, reason: str, err: BaseException | str) -> None:
        self._record(app, EVENT_WARNING, reason, str(err))

    def _record(self, app: Application, event_type: str, reason: str, message: str) -> None:
        level = logging.WARNING if event_type == EVENT_WARNING else logging.INFO
        logger.log(
            level,
            message,
            extra={
                "event_type": event_type,
                "reason": reason,
                "component": self._component,
                "app": app.key,
            },
        )
