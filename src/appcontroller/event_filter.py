"""Watch notification filtering.

Most status writes made by the controller come back as update notifications.
Re-queuing on them would make every pass trigger the next one, so updates
are compared after normalizing the fields only the controller (or the API
server's bookkeeping) changes.
"""

from __future__ import annotations

import logging

from .config import ControllerConfig
from .models import (
    LABEL_APP_NAME,
    LABEL_APP_NAMESPACE,
    Application,
    Request,
    ResourceTracker,
)

logger = logging.getLogger(__name__)


class EventFilter:
    """Decides which notifications warrant a reconcile pass."""

    def __init__(self, config: ControllerConfig) -> None:
        self._config = config

    def application_create(self, app: Application) -> bool:
        return True

    def application_delete(self, app: Application) -> bool:
        return True

    def application_update(self, old: Application, new: Application) -> bool:
        """Return True if the update should enqueue the application.

        Suppressed:
        - identical objects (periodic relists)
        - managed field and resource version churn
        - workflow progress, applied resources and services, all of which
          the controller writes itself
        A generation change always passes.
        """
        if old == new:
            return False

        old = old.model_copy(deep=True)
        new = new.model_copy(deep=True)

        new.metadata.managed_fields = old.metadata.managed_fields
        new.metadata.resource_version = old.metadata.resource_version

        if old.metadata.generation != new.metadata.generation:
            return True

        if old.status.workflow is not None and new.status.workflow is not None:
            new.status.workflow.steps = old.status.workflow.steps
            new.status.workflow.context_backend = old.status.workflow.context_backend
            new.status.workflow.message = old.status.workflow.message
            new.status.applied_resources = old.status.applied_resources
            new.status.services = old.status.services

        changed = old != new
        if not changed:
            logger.debug("Suppressed self-inflicted application update", extra={"app": new.key})
        return changed

    def resource_tracker_update(self, old: ResourceTracker, new: ResourceTracker) -> bool:
        """Return False if the trackers differ only in field ownership or version."""
        new = new.model_copy(deep=True)
        new.metadata.managed_fields = old.metadata.managed_fields
        new.metadata.resource_version = old.metadata.resource_version
        return new != old

    def resource_tracker_request(
        self, tracker: ResourceTracker, old: ResourceTracker | None = None
    ) -> Request | None:
        """Map a tracker notification to the owning application's request."""
        if self._config.enable_resource_tracker_delete_only_trigger:
            if tracker.metadata.deletion_timestamp is None:
                return None
        elif old is not None and not self.resource_tracker_update(old, tracker):
            return None

        labels = tracker.metadata.labels
        name = labels.get(LABEL_APP_NAME, "")
        namespace = labels.get(LABEL_APP_NAMESPACE, "")
        if not name or not namespace:
            return None
        return Request(namespace=namespace, name=name)
