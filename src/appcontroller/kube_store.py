"""Kubernetes-backed store, cluster client and watcher.

The kubernetes client is synchronous. Every call is pushed to the default
executor so the event loop stays responsive; watch streams run on their own
threads and hand events back to the loop with call_soon_threadsafe.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import NotFoundError as DynamicNotFoundError
from pydantic import BaseModel
from urllib3.exceptions import HTTPError

from .controller import EVENT_DELETED, WatchEvent
from .models import (
    API_GROUP,
    LABEL_APP_NAME,
    LABEL_APP_NAMESPACE,
    Application,
    ApplicationRevision,
    ResourceReference,
    ResourceTracker,
)
from .store import ConflictError, NotFoundError, ObjectStore, StoreError

logger = logging.getLogger(__name__)

API_VERSION = "v1beta1"
PLURAL_APPLICATIONS = "applications"
PLURAL_REVISIONS = "applicationrevisions"
PLURAL_TRACKERS = "resourcetrackers"

FIELD_MANAGER = "app-controller"

MAX_WATCH_BACKOFF_SECONDS = 30


def create_api_client(in_cluster: bool = True, context: str | None = None) -> client.ApiClient:
    """Load cluster credentials and return an API client."""
    if in_cluster:
        config.load_incluster_config()
    elif context:
        config.load_kube_config(context=context)
    else:
        config.load_kube_config()
    return client.ApiClient()


def _translate(e: ApiException, what: str) -> StoreError:
    message = f"{what}: {e.status} {e.reason}"
    if e.status == 404:
        return NotFoundError(message)
    if e.status == 409:
        return ConflictError(message)
    return StoreError(message)


def _body(model: BaseModel) -> dict[str, Any]:
    """Serialize a model for a write, dropping server-owned metadata."""
    body = model.model_dump(by_alias=True, exclude_none=True, mode="json")
    metadata = body.get("metadata", {})
    metadata.pop("managedFields", None)
    for key in ("namespace", "uid", "resourceVersion"):
        if not metadata.get(key):
            metadata.pop(key, None)
    if not metadata.get("generation"):
        metadata.pop("generation", None)
    return body


def _owner_selector(namespace: str, app_name: str) -> str:
    return f"{LABEL_APP_NAME}={app_name},{LABEL_APP_NAMESPACE}={namespace}"


class KubernetesObjectStore(ObjectStore):
    """ObjectStore over the core.oam.dev custom resources."""

    def __init__(self, api_client: client.ApiClient) -> None:
        self._api = client.CustomObjectsApi(api_client)

    async def _call(self, what: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
        except ApiException as e:
            raise _translate(e, what) from e
        except (HTTPError, OSError) as e:
            raise StoreError(f"{what}: {e}") from e

    # Applications

    async def get_application(self, namespace: str, name: str) -> Application:
        obj = await self._call(
            f"get application {namespace}/{name}",
            self._api.get_namespaced_custom_object,
            API_GROUP, API_VERSION, namespace, PLURAL_APPLICATIONS, name,
        )
        return Application.model_validate(obj)

    async def update_application(self, app: Application) -> Application:
        obj = await self._call(
            f"update application {app.key}",
            self._api.replace_namespaced_custom_object,
            API_GROUP, API_VERSION, app.metadata.namespace, PLURAL_APPLICATIONS,
            app.metadata.name, _body(app),
        )
        return Application.model_validate(obj)

    async def patch_application_status(self, app: Application) -> Application:
        patch = {"status": app.status.model_dump(by_alias=True, exclude_none=True, mode="json")}
        obj = await self._call(
            f"patch application status {app.key}",
            self._api.patch_namespaced_custom_object_status,
            API_GROUP, API_VERSION, app.metadata.namespace, PLURAL_APPLICATIONS,
            app.metadata.name, patch,
        )
        return Application.model_validate(obj)

    async def update_application_status(self, app: Application) -> Application:
        obj = await self._call(
            f"update application status {app.key}",
            self._api.replace_namespaced_custom_object_status,
            API_GROUP, API_VERSION, app.metadata.namespace, PLURAL_APPLICATIONS,
            app.metadata.name, _body(app),
        )
        return Application.model_validate(obj)

    # Revisions

    async def list_revisions(self, namespace: str, app_name: str) -> list[ApplicationRevision]:
        result = await self._call(
            f"list revisions of {namespace}/{app_name}",
            self._api.list_namespaced_custom_object,
            API_GROUP, API_VERSION, namespace, PLURAL_REVISIONS,
            label_selector=_owner_selector(namespace, app_name),
        )
        return [ApplicationRevision.model_validate(item) for item in result.get("items", [])]

    async def create_revision(self, revision: ApplicationRevision) -> ApplicationRevision:
        obj = await self._call(
            f"create revision {revision.metadata.name}",
            self._api.create_namespaced_custom_object,
            API_GROUP, API_VERSION, revision.metadata.namespace, PLURAL_REVISIONS,
            _body(revision),
        )
        return ApplicationRevision.model_validate(obj)

    async def delete_revision(self, namespace: str, name: str) -> None:
        await self._call(
            f"delete revision {namespace}/{name}",
            self._api.delete_namespaced_custom_object,
            API_GROUP, API_VERSION, namespace, PLURAL_REVISIONS, name,
        )

    # Resource trackers

    async def list_resource_trackers(
        self, namespace: str, app_name: str
    ) -> list[ResourceTracker]:
        result = await self._call(
            f"list resource trackers of {namespace}/{app_name}",
            self._api.list_cluster_custom_object,
            API_GROUP, API_VERSION, PLURAL_TRACKERS,
            label_selector=_owner_selector(namespace, app_name),
        )
        return [ResourceTracker.model_validate(item) for item in result.get("items", [])]

    async def create_resource_tracker(self, tracker: ResourceTracker) -> ResourceTracker:
        obj = await self._call(
            f"create resource tracker {tracker.metadata.name}",
            self._api.create_cluster_custom_object,
            API_GROUP, API_VERSION, PLURAL_TRACKERS, _body(tracker),
        )
        return ResourceTracker.model_validate(obj)

    async def update_resource_tracker(self, tracker: ResourceTracker) -> ResourceTracker:
        obj = await self._call(
            f"update resource tracker {tracker.metadata.name}",
            self._api.replace_cluster_custom_object,
            API_GROUP, API_VERSION, PLURAL_TRACKERS, tracker.metadata.name, _body(tracker),
        )
        return ResourceTracker.model_validate(obj)

    async def delete_resource_tracker(self, name: str) -> None:
        await self._call(
            f"delete resource tracker {name}",
            self._api.delete_cluster_custom_object,
            API_GROUP, API_VERSION, PLURAL_TRACKERS, name,
        )


class KubernetesClusterClient:
    """ClusterClient over the dynamic client with server-side apply."""

    def __init__(self, api_client: client.ApiClient, field_manager: str = FIELD_MANAGER) -> None:
        self._dynamic = DynamicClient(api_client)
        self._field_manager = field_manager

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    def _resource(self, api_version: str, kind: str) -> Any:
        return self._dynamic.resources.get(api_version=api_version, kind=kind)

    async def get(self, ref: ResourceReference) -> dict[str, Any] | None:
        def read() -> dict[str, Any] | None:
            resource = self._resource(ref.api_version, ref.kind)
            try:
                obj = resource.get(name=ref.name, namespace=ref.namespace or None)
            except DynamicNotFoundError:
                return None
            return obj.to_dict()

        return await self._run(read)

    async def apply(self, manifest: dict[str, Any]) -> dict[str, Any]:
        def server_side_apply() -> dict[str, Any]:
            metadata = manifest.get("metadata", {})
            resource = self._resource(manifest["apiVersion"], manifest["kind"])
            obj = resource.server_side_apply(
                body=manifest,
                name=metadata.get("name"),
                namespace=metadata.get("namespace") if resource.namespaced else None,
                field_manager=self._field_manager,
                force_conflicts=True,
            )
            return obj.to_dict()

        return await self._run(server_side_apply)

    async def delete(self, ref: ResourceReference) -> None:
        def remove() -> None:
            resource = self._resource(ref.api_version, ref.kind)
            try:
                resource.delete(
                    name=ref.name,
                    namespace=ref.namespace if resource.namespaced else None,
                    propagation_policy="Background",
                )
            except DynamicNotFoundError:
                return

        await self._run(remove)


class KubernetesWatcher:
    """Streams watch events for one custom resource into an event handler.

    List-then-watch on a background thread. Objects seen so far are cached
    so MODIFIED events carry the previous version. A 410 Gone response
    restarts the stream from a fresh list.
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        plural: str,
        handler: Callable[[WatchEvent], Any],
        namespace: str | None = None,
    ) -> None:
        self._api = client.CustomObjectsApi(api_client)
        self._plural = plural
        self._handler = handler
        self._namespace = namespace
        self._cache: dict[str, dict[str, Any]] = {}
        self._stop = threading.Event()
        self._watch: watch.Watch | None = None
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self._thread = threading.Thread(
            target=self._run_forever,
            args=(loop,),
            name=f"watch-{self._plural}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            if self._watch is not None:
                self._watch.stop()

    def _list_fn(self) -> tuple[Callable[..., Any], tuple[Any, ...]]:
        if self._namespace and self._plural != PLURAL_TRACKERS:
            return self._api.list_namespaced_custom_object, (
                API_GROUP, API_VERSION, self._namespace, self._plural,
            )
        return self._api.list_cluster_custom_object, (API_GROUP, API_VERSION, self._plural)

    @staticmethod
    def _key(obj: dict[str, Any]) -> str:
        metadata = obj.get("metadata") or {}
        return f"{metadata.get('namespace', '')}/{metadata.get('name', '')}"

    def _run_forever(self, loop: asyncio.AbstractEventLoop) -> None:
        list_fn, args = self._list_fn()
        resource_version: str | None = None
        backoff_seconds = 1

        while not self._stop.is_set():
            w = watch.Watch()
            with self._lock:
                self._watch = w
            try:
                for event in w.stream(list_fn, *args, resource_version=resource_version):
                    if self._stop.is_set():
                        break
                    obj = event.get("object")
                    if not isinstance(obj, dict):
                        continue
                    resource_version = (obj.get("metadata") or {}).get(
                        "resourceVersion", resource_version
                    )
                    self._dispatch(loop, str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as e:
                if e.status == 410:
                    logger.warning(
                        "Watch resource version expired, re-listing",
                        extra={"plural": self._plural},
                    )
                    resource_version = None
                    continue
                logger.exception("Kubernetes API watch error", extra={"plural": self._plural})
                self._stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)
            except Exception:
                logger.exception("Unexpected watch error", extra={"plural": self._plural})
                self._stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)
            finally:
                w.stop()
                with self._lock:
                    if self._watch is w:
                        self._watch = None

    def _dispatch(self, loop: asyncio.AbstractEventLoop, event_type: str, obj: dict[str, Any]) -> None:
        key = self._key(obj)
        if event_type == EVENT_DELETED:
            old = self._cache.pop(key, None)
        else:
            old = self._cache.get(key)
            self._cache[key] = obj
        loop.call_soon_threadsafe(self._handler, WatchEvent(type=event_type, obj=obj, old=old))
