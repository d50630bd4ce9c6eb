"""Tests for pydantic models."""

from datetime import UTC, datetime

from appcontroller.models import (
    Application,
    ApplicationPhase,
    ApplicationStatus,
    Condition,
    ConditionStatus,
    ManagedResource,
    Request,
    ResourceReference,
    ResourceTracker,
)


class TestApplication:
    """Tests for Application parsing and serialization."""

    def test_parses_wire_names(self) -> None:
        """Test camelCase fields from the API server are accepted."""
        app = Application.model_validate(
            {
                "apiVersion": "core.oam.dev/v1beta1",
                "kind": "Application",
                "metadata": {
                    "name": "web",
                    "namespace": "default",
                    "resourceVersion": "42",
                    "generation": 3,
                    "deletionTimestamp": "2026-01-01T00:00:00Z",
                    "managedFields": [{"manager": "kubectl"}],
                },
                "spec": {"components": [{"name": "web", "type": "webservice"}]},
                "status": {"phase": "running", "observedGeneration": 3},
            }
        )

        assert app.key == "default/web"
        assert app.metadata.resource_version == "42"
        assert app.metadata.is_deleting is True
        assert app.status.phase == ApplicationPhase.RUNNING
        assert app.spec.components[0].type == "webservice"

    def test_ignores_unknown_fields(self) -> None:
        """Test that fields the controller does not model are dropped."""
        app = Application.model_validate(
            {"metadata": {"name": "web", "selfLink": "/x"}, "spec": {"unknown": True}}
        )

        assert app.metadata.name == "web"

    def test_manifest_uses_aliases(self) -> None:
        """Test serialization uses wire names and drops unset optionals."""
        app = Application.model_validate({"metadata": {"name": "web", "namespace": "default"}})

        manifest = app.to_manifest()

        assert manifest["apiVersion"] == "core.oam.dev/v1beta1"
        assert "resourceVersion" in manifest["metadata"]
        assert "deletionTimestamp" not in manifest["metadata"]
        assert "latestRevision" not in manifest["status"]


class TestConditions:
    """Tests for condition bookkeeping on status."""

    def test_set_condition_appends_new_type(self) -> None:
        """Test a new condition type is appended."""
        status = ApplicationStatus()
        status.set_conditions(
            Condition(type="Parsed", status=ConditionStatus.TRUE, reason="Available")
        )

        assert status.get_condition("Parsed") is not None
        assert status.get_condition("Revision") is None

    def test_unchanged_condition_keeps_transition_time(self) -> None:
        """Test re-setting an equal condition keeps the original timestamp."""
        earlier = datetime(2026, 1, 1, tzinfo=UTC)
        status = ApplicationStatus()
        status.set_conditions(
            Condition(
                type="Ready",
                status=ConditionStatus.TRUE,
                reason="Available",
                last_transition_time=earlier,
            )
        )

        status.set_conditions(
            Condition(type="Ready", status=ConditionStatus.TRUE, reason="Available")
        )

        assert len(status.conditions) == 1
        assert status.conditions[0].last_transition_time == earlier

    def test_changed_condition_replaces_entry(self) -> None:
        """Test a changed condition replaces the existing entry of its type."""
        status = ApplicationStatus()
        status.set_conditions(
            Condition(type="Ready", status=ConditionStatus.TRUE, reason="Available")
        )
        status.set_conditions(
            Condition(type="Ready", status=ConditionStatus.FALSE, reason="Deleting")
        )

        assert len(status.conditions) == 1
        assert status.conditions[0].reason == "Deleting"


class TestResourceReference:
    """Tests for resource identity."""

    def test_identity_ignores_api_version(self) -> None:
        """Test references differing only in version are the same object."""
        v1 = ResourceReference(api_version="apps/v1", kind="Deployment", name="web")
        v1beta1 = ResourceReference(api_version="apps/v1beta1", kind="Deployment", name="web")

        assert v1.same_object(v1beta1)

    def test_identity_distinguishes_namespace(self) -> None:
        """Test references in different namespaces are different objects."""
        a = ResourceReference(api_version="v1", kind="ConfigMap", name="c", namespace="a")
        b = ResourceReference(api_version="v1", kind="ConfigMap", name="c", namespace="b")

        assert not a.same_object(b)

    def test_from_manifest(self) -> None:
        """Test a reference is derived from manifest metadata."""
        ref = ResourceReference.from_manifest(
            {"apiVersion": "v1", "kind": "Secret", "metadata": {"name": "s", "namespace": "n"}}
        )

        assert ref.display_name() == "Secret n/s"


class TestResourceTracker:
    """Tests for ResourceTracker helpers."""

    def test_find_and_marked(self) -> None:
        """Test lookup by identity and the marked flag."""
        tracker = ResourceTracker.model_validate(
            {
                "metadata": {"name": "web-v1-default"},
                "type": "versioned",
                "managedResources": [
                    {"apiVersion": "v1", "kind": "ConfigMap", "name": "c", "namespace": "default"}
                ],
            }
        )

        found = tracker.find(
            ResourceReference(api_version="v1", kind="ConfigMap", name="c", namespace="default")
        )

        assert isinstance(found, ManagedResource)
        assert tracker.is_marked is False


class TestRequest:
    """Tests for work queue requests."""

    def test_key_round_trip(self) -> None:
        """Test a request key parses back into the same request."""
        request = Request(namespace="default", name="web")

        assert Request.from_key(request.key) == request
        assert request.key == "default/web"
