"""Persistence and cluster-access interfaces consumed by the control loop.

The reconciler talks to two collaborators:
- ObjectStore: the API server view of Applications, ApplicationRevisions and
  ResourceTrackers, with optimistic concurrency on resource version.
- ClusterClient: the generic apply/get/delete surface used for the workloads
  an application renders.

Both are async. Implementations backed by the kubernetes client live in
kube_store.py; in-memory doubles live with the tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Protocol

from .models import Application, ApplicationRevision, ResourceReference, ResourceTracker


class StoreError(Exception):
    """Raised when a store operation fails."""

    pass


class NotFoundError(StoreError):
    """Raised when the addressed object does not exist."""

    pass


class ConflictError(StoreError):
    """Raised on a stale resource version or an already existing object.

    Conflicts are retryable: the next pass re-reads the object.
    """

    pass


class ObjectStore(ABC):
    """Async access to the controller's own resource types."""

    # Applications

    @abstractmethod
    async def get_application(self, namespace: str, name: str) -> Application:
        """Fetch an application, raising NotFoundError if absent."""

    @abstractmethod
    async def update_application(self, app: Application) -> Application:
        """Update metadata and spec (finalizers, annotations)."""

    @abstractmethod
    async def patch_application_status(self, app: Application) -> Application:
        """Merge-patch the status subresource."""

    @abstractmethod
    async def update_application_status(self, app: Application) -> Application:
        """Replace the status subresource, honoring resource version."""

    # Revisions

    @abstractmethod
    async def list_revisions(self, namespace: str, app_name: str) -> list[ApplicationRevision]:
        """List revisions labelled as owned by the application."""

    @abstractmethod
    async def create_revision(self, revision: ApplicationRevision) -> ApplicationRevision:
        """Create a revision, raising ConflictError if the name is taken."""

    @abstractmethod
    async def delete_revision(self, namespace: str, name: str) -> None:
        """Delete a revision. Deleting a missing revision raises NotFoundError."""

    # Resource trackers

    @abstractmethod
    async def list_resource_trackers(
        self, namespace: str, app_name: str
    ) -> list[ResourceTracker]:
        """List trackers labelled as owned by the application."""

    @abstractmethod
    async def create_resource_tracker(self, tracker: ResourceTracker) -> ResourceTracker:
        """Create a tracker, raising ConflictError if the name is taken."""

    @abstractmethod
    async def update_resource_tracker(self, tracker: ResourceTracker) -> ResourceTracker:
        """Replace a tracker, honoring resource version."""

    @abstractmethod
    async def delete_resource_tracker(self, name: str) -> None:
        """Delete a tracker by name."""


class ClusterClient(Protocol):
    """Generic access to arbitrary cluster objects."""

    async def get(self, ref: ResourceReference) -> dict[str, Any] | None:
        """Return the live object, or None when it does not exist."""
        ...

    async def apply(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Create or update the object described by manifest."""
        ...

    async def delete(self, ref: ResourceReference) -> None:
        """Request deletion. Deleting a missing object is not an error."""
        ...
