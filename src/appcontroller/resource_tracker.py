"""Naming, construction and listing of an application's resource trackers."""

from __future__ import annotations

from dataclasses import dataclass, field

from .models import (
    LABEL_APP_NAME,
    LABEL_APP_NAMESPACE,
    LABEL_APP_REVISION,
    Application,
    ObjectMeta,
    ResourceTracker,
    ResourceTrackerType,
)
from .store import ObjectStore

# Blocks tracker removal until its resources are swept
TRACKER_FINALIZER = "app.oam.dev/resource-tracker-gc"


def root_tracker_name(app: Application) -> str:
    return f"{app.metadata.name}-{app.metadata.namespace}"


def versioned_tracker_name(revision: str, namespace: str) -> str:
    return f"{revision}-{namespace}"


def component_revision_tracker_name(app: Application) -> str:
    return f"{app.metadata.name}-comp-rev-{app.metadata.namespace}"


def new_resource_tracker(
    app: Application,
    tracker_type: ResourceTrackerType,
    revision: str | None = None,
) -> ResourceTracker:
    """Build an unsaved tracker owned by app."""
    labels = {
        LABEL_APP_NAME: app.metadata.name,
        LABEL_APP_NAMESPACE: app.metadata.namespace,
    }
    match tracker_type:
        case ResourceTrackerType.ROOT:
            name = root_tracker_name(app)
        case ResourceTrackerType.COMPONENT_REVISION:
            name = component_revision_tracker_name(app)
        case ResourceTrackerType.VERSIONED:
            if not revision:
                raise ValueError("versioned tracker requires a revision name")
            name = versioned_tracker_name(revision, app.metadata.namespace)
            labels[LABEL_APP_REVISION] = revision

    return ResourceTracker(
        metadata=ObjectMeta(name=name, labels=labels, finalizers=[TRACKER_FINALIZER]),
        type=tracker_type,
        application_generation=app.metadata.generation,
    )


@dataclass
class TrackerSet:
    """An application's trackers, partitioned by role."""

    root: ResourceTracker | None = None
    current: ResourceTracker | None = None
    history: list[ResourceTracker] = field(default_factory=list)
    component_revision: ResourceTracker | None = None
    legacy: list[ResourceTracker] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return (
            self.root is None
            and self.current is None
            and not self.history
            and self.component_revision is None
            and not self.legacy
        )

    def all(self) -> list[ResourceTracker]:
        trackers = [t for t in (self.root, self.current, self.component_revision) if t]
        return trackers + self.history + self.legacy


async def list_application_resource_trackers(
    store: ObjectStore, app: Application
) -> TrackerSet:
    """List the trackers owned by app.

    The current tracker is the versioned tracker labelled with the revision
    recorded in status. Every other versioned tracker is historical.
    """
    trackers = await store.list_resource_trackers(app.metadata.namespace, app.metadata.name)
    current_revision = (
        app.status.latest_revision.name if app.status.latest_revision is not None else None
    )

    result = TrackerSet()
    for tracker in trackers:
        match tracker.type:
            case ResourceTrackerType.ROOT:
                result.root = tracker
            case ResourceTrackerType.COMPONENT_REVISION:
                result.component_revision = tracker
            case ResourceTrackerType.VERSIONED:
                label = tracker.metadata.labels.get(LABEL_APP_REVISION)
                if current_revision is not None and label == current_revision:
                    result.current = tracker
                else:
                    result.history.append(tracker)
            case _:
                result.legacy.append(tracker)

    result.history.sort(key=lambda t: t.metadata.name)
    return result
