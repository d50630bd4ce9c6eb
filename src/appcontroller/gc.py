"""Multi-stage garbage collection of tracked resources.

Stages, in order:
1. Mark: flag trackers whose resources are no longer wanted. While the
   application is deleting every tracker is marked, otherwise only the
   historical versioned trackers.
2. Legacy: mark trackers written without a type.
3. Sweep: delete the resources of marked trackers, newest first, then remove
   the trackers themselves once nothing is left waiting.
4. Component revisions: drop component-revision entries whose component is
   no longer referenced by a live tracker.

A resource referenced by any live tracker is never deleted from the cluster.
Deletions are asynchronous on the cluster side, so a sweep reports what is
still waiting and the caller requeues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .finalizers import add_finalizer, remove_finalizer
from .models import Application, ManagedResource, ResourceReference, ResourceTracker
from .resource_tracker import TRACKER_FINALIZER, TrackerSet, list_application_resource_trackers
from .store import ClusterClient, NotFoundError, ObjectStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GCOptions:
    """Stage switches for one collection run."""

    disable_mark_stage: bool = False
    disable_component_revision_gc: bool = False
    disable_legacy_gc: bool = False

    @classmethod
    def lightweight(cls) -> GCOptions:
        """Options for the per-branch collection: sweep only."""
        return cls(
            disable_mark_stage=True,
            disable_component_revision_gc=True,
            disable_legacy_gc=True,
        )


@dataclass
class GCResult:
    finished: bool
    waiting: list[ResourceReference] = field(default_factory=list)
    collected: list[ResourceReference] = field(default_factory=list)


class GarbageCollector:
    """Collects resources of an application that no live tracker wants."""

    def __init__(self, store: ObjectStore, cluster: ClusterClient) -> None:
        self._store = store
        self._cluster = cluster

    async def collect(self, app: Application, options: GCOptions) -> GCResult:
        trackers = await list_application_resource_trackers(self._store, app)

        marked_any = False
        if not options.disable_mark_stage:
            marked_any |= await self._mark(app, trackers)
        if not options.disable_legacy_gc:
            marked_any |= await self._mark_all(trackers.legacy)
        if marked_any:
            trackers = await list_application_resource_trackers(self._store, app)

        result = await self._sweep(trackers)

        if not options.disable_component_revision_gc and trackers.component_revision:
            if not trackers.component_revision.is_marked:
                await self._collect_component_revisions(trackers)

        if result.waiting:
            logger.info(
                "Garbage collection waiting for deletions",
                extra={"app": app.key, "waiting": len(result.waiting)},
            )
        return result

    # -------------------------------------------------------------------------
    # Mark
    # -------------------------------------------------------------------------

    async def _mark(self, app: Application, trackers: TrackerSet) -> bool:
        if app.metadata.is_deleting:
            return await self._mark_all(trackers.all())
        return await self._mark_all(trackers.history)

    async def _mark_all(self, trackers: list[ResourceTracker]) -> bool:
        marked = False
        for tracker in trackers:
            if tracker.is_marked:
                continue
            try:
                if TRACKER_FINALIZER not in tracker.metadata.finalizers:
                    # Hold the tracker until its resources are swept
                    add_finalizer(tracker.metadata, TRACKER_FINALIZER)
                    await self._store.update_resource_tracker(tracker)
                await self._store.delete_resource_tracker(tracker.metadata.name)
            except NotFoundError:
                continue
            logger.debug("Marked resource tracker", extra={"tracker": tracker.metadata.name})
            marked = True
        return marked

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------

    async def _sweep(self, trackers: TrackerSet) -> GCResult:
        live = [t for t in trackers.all() if not t.is_marked]
        referenced = {
            resource.identity()
            for tracker in live
            for resource in tracker.managed_resources
            if not resource.deleted
        }

        result = GCResult(finished=False)
        for tracker in trackers.all():
            if tracker.is_marked:
                await self._sweep_marked(tracker, referenced, result)
        if trackers.current is not None and not trackers.current.is_marked:
            await self._sweep_deleted_entries(trackers.current, referenced, result)
        result.finished = not result.waiting
        return result

    async def _sweep_marked(
        self, tracker: ResourceTracker, referenced: set[tuple[str, ...]], result: GCResult
    ) -> None:
        kept = await self._delete_in_reverse(tracker.managed_resources, referenced, result)

        if not kept:
            tracker.managed_resources = []
            remove_finalizer(tracker.metadata, TRACKER_FINALIZER)
            try:
                await self._store.update_resource_tracker(tracker)
            except NotFoundError:
                pass
            logger.info("Deleted resource tracker", extra={"tracker": tracker.metadata.name})
            return

        if len(kept) != len(tracker.managed_resources):
            tracker.managed_resources = kept
            await self._store.update_resource_tracker(tracker)

    async def _sweep_deleted_entries(
        self, tracker: ResourceTracker, referenced: set[tuple[str, ...]], result: GCResult
    ) -> None:
        flagged = [r for r in tracker.managed_resources if r.deleted]
        if not flagged:
            return
        kept_flagged = await self._delete_in_reverse(flagged, referenced, result)
        keep_ids = {id(r) for r in kept_flagged}
        tracker.managed_resources = [
            r for r in tracker.managed_resources if not r.deleted or id(r) in keep_ids
        ]
        await self._store.update_resource_tracker(tracker)

    async def _delete_in_reverse(
        self, resources: list[ManagedResource], referenced: set[tuple[str, ...]], result: GCResult
    ) -> list[ManagedResource]:
        """Delete resources newest first.

        Resources found gone are added to result.collected, the ones still
        present to result.waiting.

        Returns:
            The resources still present, in apply order.
        """
        kept: list[ManagedResource] = []
        blocked = False

        for resource in reversed(resources):
            if resource.identity() in referenced:
                continue
            if await self._cluster.get(resource) is None:
                result.collected.append(resource.reference())
                continue
            if not blocked:
                await self._cluster.delete(resource)
                logger.info(
                    "Deleted tracked resource",
                    extra={"resource": resource.display_name()},
                )
                if await self._cluster.get(resource) is None:
                    result.collected.append(resource.reference())
                    continue
                blocked = True
            kept.append(resource)

        kept.reverse()
        result.waiting.extend(resource.reference() for resource in kept)
        return kept

    # -------------------------------------------------------------------------
    # Component revisions
    # -------------------------------------------------------------------------

    async def _collect_component_revisions(self, trackers: TrackerSet) -> None:
        tracker = trackers.component_revision
        if tracker is None:
            return
        components = {
            resource.component
            for live in trackers.all()
            if live is not tracker and not live.is_marked
            for resource in live.managed_resources
            if resource.component
        }

        kept: list[ManagedResource] = []
        for resource in tracker.managed_resources:
            if resource.component in components:
                kept.append(resource)
                continue
            await self._cluster.delete(resource)
            if await self._cluster.get(resource) is not None:
                kept.append(resource)

        if len(kept) != len(tracker.managed_resources):
            tracker.managed_resources = kept
            await self._store.update_resource_tracker(tracker)
