"""Tests for the Kubernetes-backed store and watcher."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from cluster_mock import make_application
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError

from appcontroller.controller import EVENT_ADDED, EVENT_DELETED, EVENT_MODIFIED, WatchEvent
from appcontroller.kube_store import (
    API_VERSION,
    PLURAL_APPLICATIONS,
    PLURAL_REVISIONS,
    PLURAL_TRACKERS,
    KubernetesObjectStore,
    KubernetesWatcher,
    _body,
    create_api_client,
)
from appcontroller.models import API_GROUP, ObjectMeta, ResourceTracker
from appcontroller.store import ConflictError, NotFoundError, StoreError


class ImmediateLoop:
    """Stands in for an event loop; runs threadsafe callbacks inline."""

    def call_soon_threadsafe(self, callback: Any, *args: Any) -> None:
        callback(*args)


def _store() -> tuple[KubernetesObjectStore, MagicMock]:
    with patch("appcontroller.kube_store.client.CustomObjectsApi") as api_cls:
        store = KubernetesObjectStore(MagicMock())
    return store, api_cls.return_value


def _obj(name: str, rv: str) -> dict[str, Any]:
    return {"metadata": {"name": name, "namespace": "default", "resourceVersion": rv}}


class TestCreateApiClient:
    """Tests for credential loading."""

    def test_in_cluster(self) -> None:
        """Test in-cluster credentials are used by default."""
        with patch("appcontroller.kube_store.config") as config:
            create_api_client()

        config.load_incluster_config.assert_called_once_with()
        config.load_kube_config.assert_not_called()

    def test_kubeconfig_context(self) -> None:
        """Test a kubeconfig context is passed through."""
        with patch("appcontroller.kube_store.config") as config:
            create_api_client(in_cluster=False, context="kind-dev")

        config.load_kube_config.assert_called_once_with(context="kind-dev")


class TestBody:
    """Tests for write body serialization."""

    def test_strips_server_owned_metadata(self) -> None:
        """Test empty identity fields and managed fields are dropped."""
        tracker = ResourceTracker(
            metadata=ObjectMeta(
                name="web-v1-default",
                managed_fields=[{"manager": "kube-apiserver"}],
            ),
            type="versioned",
        )

        metadata = _body(tracker)["metadata"]

        assert metadata["name"] == "web-v1-default"
        for key in ("namespace", "uid", "resourceVersion", "generation", "managedFields"):
            assert key not in metadata

    def test_keeps_resource_version(self) -> None:
        """Test a set resource version is sent for optimistic concurrency."""
        app = make_application("web", resourceVersion="42", generation=3)

        metadata = _body(app)["metadata"]

        assert metadata["resourceVersion"] == "42"
        assert metadata["generation"] == 3
        assert metadata["namespace"] == "default"


class TestKubernetesObjectStore:
    """Tests for KubernetesObjectStore calls and error mapping."""

    @pytest.mark.asyncio
    async def test_get_application(self) -> None:
        """Test an application is read from its namespace."""
        store, api = _store()
        api.get_namespaced_custom_object.return_value = make_application("web").to_manifest()

        app = await store.get_application("default", "web")

        assert app.metadata.name == "web"
        api.get_namespaced_custom_object.assert_called_once_with(
            API_GROUP, API_VERSION, "default", PLURAL_APPLICATIONS, "web"
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "error"),
        [(404, NotFoundError), (409, ConflictError), (500, StoreError)],
    )
    async def test_error_mapping(self, status: int, error: type[StoreError]) -> None:
        """Test API status codes map to store errors."""
        store, api = _store()
        api.get_namespaced_custom_object.side_effect = ApiException(status=status, reason="x")

        with pytest.raises(error) as excinfo:
            await store.get_application("default", "web")

        assert type(excinfo.value) is error
        assert isinstance(excinfo.value.__cause__, ApiException)

    @pytest.mark.asyncio
    async def test_transport_failure_is_store_error(self) -> None:
        """Test an unreachable API server surfaces as a store error."""
        store, api = _store()
        api.patch_namespaced_custom_object_status.side_effect = MaxRetryError(None, "/apis")

        with pytest.raises(StoreError) as excinfo:
            await store.patch_application_status(make_application("web"))

        assert type(excinfo.value) is StoreError
        assert isinstance(excinfo.value.__cause__, MaxRetryError)

    @pytest.mark.asyncio
    async def test_status_patch_sends_only_status(self) -> None:
        """Test a status patch carries the status subresource alone."""
        store, api = _store()
        app = make_application("web")
        api.patch_namespaced_custom_object_status.return_value = app.to_manifest()

        await store.patch_application_status(app)

        body = api.patch_namespaced_custom_object_status.call_args.args[-1]
        assert list(body) == ["status"]

    @pytest.mark.asyncio
    async def test_lists_select_by_owner_labels(self) -> None:
        """Test revisions and trackers are listed by owner labels."""
        store, api = _store()
        api.list_namespaced_custom_object.return_value = {"items": []}
        api.list_cluster_custom_object.return_value = {"items": []}

        assert await store.list_revisions("default", "web") == []
        assert await store.list_resource_trackers("default", "web") == []

        selector = "app.oam.dev/name=web,app.oam.dev/namespace=default"
        api.list_namespaced_custom_object.assert_called_once_with(
            API_GROUP, API_VERSION, "default", PLURAL_REVISIONS, label_selector=selector
        )
        api.list_cluster_custom_object.assert_called_once_with(
            API_GROUP, API_VERSION, PLURAL_TRACKERS, label_selector=selector
        )


class TestKubernetesWatcher:
    """Tests for watch event dispatch."""

    def _watcher(self, plural: str = PLURAL_APPLICATIONS, namespace: str | None = None):
        events: list[WatchEvent] = []
        with patch("appcontroller.kube_store.client.CustomObjectsApi"):
            watcher = KubernetesWatcher(MagicMock(), plural, events.append, namespace=namespace)
        return watcher, events

    def test_modified_carries_previous_object(self) -> None:
        """Test MODIFIED events carry the last seen version."""
        watcher, events = self._watcher()
        loop = ImmediateLoop()

        watcher._dispatch(loop, EVENT_ADDED, _obj("web", "1"))  # type: ignore[arg-type]
        watcher._dispatch(loop, EVENT_MODIFIED, _obj("web", "2"))  # type: ignore[arg-type]

        assert [e.type for e in events] == [EVENT_ADDED, EVENT_MODIFIED]
        assert events[0].old is None
        assert events[1].old == _obj("web", "1")

    def test_deleted_evicts_cache(self) -> None:
        """Test a DELETED event forgets the object."""
        watcher, events = self._watcher()
        loop = ImmediateLoop()
        watcher._dispatch(loop, EVENT_ADDED, _obj("web", "1"))  # type: ignore[arg-type]

        watcher._dispatch(loop, EVENT_DELETED, _obj("web", "2"))  # type: ignore[arg-type]
        watcher._dispatch(loop, EVENT_ADDED, _obj("web", "3"))  # type: ignore[arg-type]

        assert events[1].old == _obj("web", "1")
        assert events[2].old is None

    def test_trackers_are_watched_cluster_wide(self) -> None:
        """Test a namespace restriction does not apply to trackers."""
        apps, _ = self._watcher(namespace="team-a")
        trackers, _ = self._watcher(PLURAL_TRACKERS, namespace="team-a")

        _, apps_args = apps._list_fn()
        _, trackers_args = trackers._list_fn()

        assert apps_args == (API_GROUP, API_VERSION, "team-a", PLURAL_APPLICATIONS)
        assert trackers_args == (API_GROUP, API_VERSION, PLURAL_TRACKERS)
