"""Resource keeper: applies rendered resources and keeps them tracked.

Every resource is recorded in a tracker before it is applied, so a crash
between the two leaves a tracked-but-absent resource (harmless for GC) and
never an applied-but-untracked one.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Protocol

from .gc import GarbageCollector, GCOptions, GCResult
from .models import (
    Application,
    ManagedResource,
    ResourceReference,
    ResourceTracker,
    ResourceTrackerType,
)
from .resource_tracker import (
    TrackerSet,
    list_application_resource_trackers,
    new_resource_tracker,
    versioned_tracker_name,
)
from .store import ClusterClient, ConflictError, ObjectStore

logger = logging.getLogger(__name__)

LABEL_COMPONENT = "app.oam.dev/component"

__all__ = [
    "GCOptions",
    "GCResult",
    "ResourceKeeper",
    "ResourceKeeperError",
    "TrackedResourceKeeper",
]


class ResourceKeeperError(Exception):
    """Raised when a resource cannot be dispatched or kept."""

    pass


class ResourceKeeper(Protocol):
    """Applies, drift-corrects and collects an application's resources."""

    async def dispatch(
        self, revision_label: str, creator: str, *manifests: dict[str, Any]
    ) -> list[ResourceReference]: ...

    async def state_keep(self) -> None: ...

    async def garbage_collect(self, options: GCOptions) -> GCResult: ...


def is_subset(desired: Any, live: Any) -> bool:
    """Return True if every field of desired is present and equal in live."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(key in live and is_subset(value, live[key]) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, lv) for d, lv in zip(desired, live, strict=True))
    return desired == live


class TrackedResourceKeeper:
    """ResourceKeeper backed by resource trackers and a cluster client.

    Resources dispatched with an empty revision label are recorded in the
    root tracker, all others in the versioned tracker of that revision.
    """

    def __init__(self, store: ObjectStore, cluster: ClusterClient, app: Application) -> None:
        self._store = store
        self._cluster = cluster
        self._app = app
        self._collector = GarbageCollector(store, cluster)

    async def dispatch(
        self, revision_label: str, creator: str, *manifests: dict[str, Any]
    ) -> list[ResourceReference]:
        if not manifests:
            return []

        prepared = [self._prepare_manifest(m) for m in manifests]
        tracker = await self._get_or_create_tracker(revision_label)

        for manifest in prepared:
            ref = ResourceReference.from_manifest(manifest)
            if not ref.kind or not ref.name:
                raise ResourceKeeperError(f"manifest has no kind or name: {manifest}")
            component = (manifest["metadata"].get("labels") or {}).get(LABEL_COMPONENT, "")
            existing = tracker.find(ref)
            if existing is not None:
                existing.manifest = manifest
                existing.deleted = False
                existing.creator = creator
                existing.component = component
            else:
                tracker.managed_resources.append(
                    ManagedResource(
                        **ref.model_dump(),
                        creator=creator,
                        component=component,
                        manifest=manifest,
                    )
                )
        await self._store.update_resource_tracker(tracker)

        refs: list[ResourceReference] = []
        for manifest in prepared:
            await self._cluster.apply(manifest)
            ref = ResourceReference.from_manifest(manifest)
            refs.append(ref)
            logger.debug(
                "Applied resource",
                extra={"app": self._app.key, "resource": ref.display_name(), "creator": creator},
            )
        return refs

    async def state_keep(self) -> None:
        """Re-apply tracked resources that were removed or edited out of band."""
        trackers = await list_application_resource_trackers(self._store, self._app)
        for tracker in (trackers.root, trackers.current):
            if tracker is None or tracker.is_marked:
                continue
            for resource in tracker.managed_resources:
                if resource.deleted or not resource.manifest:
                    continue
                live = await self._cluster.get(resource)
                if live is not None and is_subset(resource.manifest, live):
                    continue
                logger.info(
                    "Correcting drifted resource",
                    extra={"app": self._app.key, "resource": resource.display_name()},
                )
                try:
                    await self._cluster.apply(resource.manifest)
                except Exception as e:
                    raise ResourceKeeperError(
                        f"failed to re-apply {resource.display_name()}: {e}"
                    ) from e

    async def garbage_collect(self, options: GCOptions) -> GCResult:
        return await self._collector.collect(self._app, options)

    def _prepare_manifest(self, manifest: dict[str, Any]) -> dict[str, Any]:
        manifest = copy.deepcopy(manifest)
        metadata = manifest.setdefault("metadata", {})
        metadata.setdefault("namespace", self._app.metadata.namespace)
        return manifest

    async def _get_or_create_tracker(self, revision_label: str) -> ResourceTracker:
        trackers: TrackerSet = await list_application_resource_trackers(self._store, self._app)
        if revision_label:
            name = versioned_tracker_name(revision_label, self._app.metadata.namespace)
            for tracker in [trackers.current, *trackers.history]:
                if tracker is not None and tracker.metadata.name == name:
                    return self._check_live(tracker)
            tracker = new_resource_tracker(
                self._app, ResourceTrackerType.VERSIONED, revision=revision_label
            )
        else:
            if trackers.root is not None:
                return self._check_live(trackers.root)
            tracker = new_resource_tracker(self._app, ResourceTrackerType.ROOT)

        try:
            return await self._store.create_resource_tracker(tracker)
        except ConflictError as e:
            raise ResourceKeeperError(
                f"resource tracker {tracker.metadata.name} was created concurrently"
            ) from e

    @staticmethod
    def _check_live(tracker: ResourceTracker) -> ResourceTracker:
        if tracker.is_marked:
            raise ResourceKeeperError(
                f"resource tracker {tracker.metadata.name} is being deleted"
            )
        return tracker
