"""Tests for watch notification filtering."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from cluster_mock import make_application

from appcontroller.config import ControllerConfig
from appcontroller.event_filter import EventFilter
from appcontroller.models import (
    LABEL_APP_NAME,
    LABEL_APP_NAMESPACE,
    Application,
    ApplicationPhase,
    ManagedResource,
    ObjectMeta,
    Request,
    ResourceReference,
    ResourceTracker,
    WorkflowStatus,
    WorkflowStepStatus,
)


def _with_workflow(app: Application) -> Application:
    app = app.model_copy(deep=True)
    app.status.workflow = WorkflowStatus(app_revision="web-v1")
    return app


def _tracker(**metadata: object) -> ResourceTracker:
    return ResourceTracker(
        metadata=ObjectMeta(
            name="web-v1-default",
            labels={LABEL_APP_NAME: "web", LABEL_APP_NAMESPACE: "default"},
            **metadata,
        ),
        type="versioned",
    )


@pytest.fixture
def event_filter() -> EventFilter:
    return EventFilter(ControllerConfig(controller_version="v1.0.0"))


class TestApplicationUpdates:
    """Tests for application update filtering."""

    def test_create_and_delete_always_pass(self, event_filter: EventFilter) -> None:
        """Test create and delete notifications are never suppressed."""
        app = make_application("web")

        assert event_filter.application_create(app) is True
        assert event_filter.application_delete(app) is True

    def test_identical_objects_are_suppressed(self, event_filter: EventFilter) -> None:
        """Test a relist delivering the same object does not enqueue."""
        app = make_application("web")

        assert event_filter.application_update(app, app.model_copy(deep=True)) is False

    def test_bookkeeping_churn_is_suppressed(self, event_filter: EventFilter) -> None:
        """Test resource version and managed field changes do not enqueue."""
        old = make_application("web", resourceVersion="1")
        new = old.model_copy(deep=True)
        new.metadata.resource_version = "2"
        new.metadata.managed_fields = [{"manager": "app-controller"}]

        assert event_filter.application_update(old, new) is False

    def test_generation_change_passes(self, event_filter: EventFilter) -> None:
        """Test a spec edit always enqueues."""
        old = make_application("web", generation=1)
        new = old.model_copy(deep=True)
        new.metadata.generation = 2

        assert event_filter.application_update(old, new) is True

    def test_workflow_progress_is_suppressed(self, event_filter: EventFilter) -> None:
        """Test controller-written workflow progress does not enqueue."""
        old = _with_workflow(make_application("web"))
        new = old.model_copy(deep=True)
        new.status.workflow.steps = [WorkflowStepStatus(name="web", phase="succeeded")]
        new.status.workflow.message = "step web done"
        new.status.applied_resources = [
            ResourceReference(api_version="v1", kind="ConfigMap", name="web-config")
        ]

        assert event_filter.application_update(old, new) is False

    def test_workflow_noise_passes_without_workflow_status(
        self, event_filter: EventFilter
    ) -> None:
        """Test applied resources are only ignored once a workflow exists."""
        old = make_application("web")
        new = old.model_copy(deep=True)
        new.status.applied_resources = [
            ResourceReference(api_version="v1", kind="ConfigMap", name="web-config")
        ]

        assert event_filter.application_update(old, new) is True

    def test_other_changes_pass(self, event_filter: EventFilter) -> None:
        """Test label and phase changes enqueue."""
        old = _with_workflow(make_application("web"))
        relabelled = old.model_copy(deep=True)
        relabelled.metadata.labels["team"] = "payments"
        rephased = old.model_copy(deep=True)
        rephased.status.phase = ApplicationPhase.RUNNING

        assert event_filter.application_update(old, relabelled) is True
        assert event_filter.application_update(old, rephased) is True

    def test_deletion_timestamp_passes(self, event_filter: EventFilter) -> None:
        """Test the start of deletion enqueues."""
        old = make_application("web")
        new = old.model_copy(deep=True)
        new.metadata.deletion_timestamp = datetime.now(UTC)

        assert event_filter.application_update(old, new) is True


class TestResourceTrackerRequests:
    """Tests for mapping tracker notifications to applications."""

    def test_delete_only_ignores_live_trackers(self, event_filter: EventFilter) -> None:
        """Test a tracker without deletion timestamp does not enqueue."""
        assert event_filter.resource_tracker_request(_tracker()) is None

    def test_delete_only_maps_marked_tracker(self, event_filter: EventFilter) -> None:
        """Test a marked tracker enqueues its owning application."""
        tracker = _tracker(deletion_timestamp=datetime.now(UTC))

        assert event_filter.resource_tracker_request(tracker) == Request(
            namespace="default", name="web"
        )

    def test_missing_owner_labels(self, event_filter: EventFilter) -> None:
        """Test a tracker without owner labels is ignored."""
        tracker = _tracker(deletion_timestamp=datetime.now(UTC))
        tracker.metadata.labels = {}

        assert event_filter.resource_tracker_request(tracker) is None

    def test_any_change_mode(self) -> None:
        """Test that without delete-only trigger content changes enqueue."""
        event_filter = EventFilter(
            ControllerConfig(
                controller_version="v1.0.0",
                enable_resource_tracker_delete_only_trigger=False,
            )
        )
        old = _tracker(resource_version="1")
        churn = old.model_copy(deep=True)
        churn.metadata.resource_version = "2"
        churn.metadata.managed_fields = [{"manager": "kube-apiserver"}]
        changed = old.model_copy(deep=True)
        changed.managed_resources.append(
            ManagedResource(api_version="v1", kind="ConfigMap", name="c", namespace="default")
        )

        assert event_filter.resource_tracker_request(churn, old) is None
        assert event_filter.resource_tracker_request(changed, old) == Request(
            namespace="default", name="web"
        )
        assert event_filter.resource_tracker_request(changed) is not None
