"""Per-pass state holder for one application reconcile."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .appfile import AppFile
from .models import (
    Application,
    ApplicationComponentStatus,
    ApplicationPhase,
    ApplicationRevision,
    ResourceReference,
    Revision,
)
from .resourcekeeper import ResourceKeeper
from .revision import PreparedRevision, RevisionManager

logger = logging.getLogger(__name__)

PatchStatus = Callable[[Application, ApplicationPhase], Awaitable[None]]


class AppHandler:
    """Carries the current revision and the status deltas of one pass.

    Services and applied resources reported during workflow execution are
    accumulated here and merged into status after the workflow returns.
    """

    def __init__(
        self,
        app: Application,
        resource_keeper: ResourceKeeper,
        revisions: RevisionManager,
    ) -> None:
        self.app = app
        self.resource_keeper = resource_keeper
        self._revisions = revisions
        self._prepared: PreparedRevision | None = None

        self.services: list[ApplicationComponentStatus] = []
        self.applied_resources: list[ResourceReference] = []

    @property
    def current_revision(self) -> ApplicationRevision | None:
        return self._prepared.revision if self._prepared else None

    @property
    def current_revision_hash(self) -> str:
        return self._prepared.revision_hash if self._prepared else ""

    @property
    def is_new_revision(self) -> bool:
        return self._prepared.is_new if self._prepared else False

    async def prepare_current_app_revision(self, app_file: AppFile) -> None:
        self._prepared = await self._revisions.prepare(self.app, app_file.plan)

    async def finalize_and_apply_app_revision(self) -> None:
        if self._prepared is None:
            raise RuntimeError("current revision has not been prepared")
        await self._revisions.apply(self._prepared)

    async def update_app_latest_revision_status(self, patch_status: PatchStatus) -> None:
        """Record the current revision in status when it changed."""
        if self._prepared is None:
            return
        latest = self.app.status.latest_revision
        if not self.is_new_revision and latest is not None and latest.name == self._prepared.name:
            return
        self.app.status.latest_revision = Revision(
            name=self._prepared.name,
            revision=self._prepared.revision.revision,
            revision_hash=self._prepared.revision_hash,
        )
        await patch_status(self.app, ApplicationPhase.RENDERING)

    async def dispatch(
        self, revision_label: str, creator: str, *manifests: dict[str, Any]
    ) -> list[ResourceReference]:
        refs = await self.resource_keeper.dispatch(revision_label, creator, *manifests)
        self.add_applied_resource(*refs)
        return refs

    def add_service_status(self, cover: bool, *services: ApplicationComponentStatus) -> None:
        """Add service records; cover replaces an existing record for the same service."""
        for svc in services:
            for i, existing in enumerate(self.services):
                if existing.same_service(svc):
                    if cover:
                        self.services[i] = svc
                    break
            else:
                self.services.append(svc)

    def add_applied_resource(self, *refs: ResourceReference) -> None:
        for ref in refs:
            if not any(current.same_object(ref) for current in self.applied_resources):
                self.applied_resources.append(ref.reference())

    def delete_applied_resource(self, ref: ResourceReference) -> None:
        """Forget a resource that was collected from the cluster.

        The record is dropped from the pass deltas and from status, since the
        deletion path collects without merging the deltas.
        """
        self.applied_resources = [r for r in self.applied_resources if not r.same_object(ref)]
        self.app.status.applied_resources = [
            r for r in self.app.status.applied_resources if not r.same_object(ref)
        ]
