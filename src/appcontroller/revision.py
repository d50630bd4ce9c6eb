"""Application revision lifecycle.

A revision is an immutable snapshot of the normalized desired state. The
content hash decides whether the current spec already has a snapshot:

- Same hash as an existing revision: reuse it, nothing is written.
- New hash: create `<app>-v<N+1>`.

Retention keeps a bounded number of historical revisions. The revision in
status, the rollback target and any revision whose tracker still exists are
never deleted.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any

import yaml

from .models import (
    ANNOTATION_ROLLBACK_REVISION,
    LABEL_APP_NAME,
    LABEL_APP_NAMESPACE,
    LABEL_APP_REVISION,
    Application,
    ApplicationRevision,
    ObjectMeta,
    ResourceTrackerType,
)
from .store import ConflictError, NotFoundError, ObjectStore

logger = logging.getLogger(__name__)

REVISION_HASH_LENGTH = 16


class RevisionError(Exception):
    """Raised when a document cannot be turned into a revision."""

    pass


def normalize_document(value: Any) -> Any:
    """Drop None values and empty mappings, recursively.

    Lists keep their order; only their elements are normalized.
    """
    if isinstance(value, dict):
        result = {}
        for key in sorted(value):
            item = normalize_document(value[key])
            if item is None:
                continue
            if isinstance(item, dict) and not item:
                continue
            result[str(key)] = item
        return result
    if isinstance(value, (list, tuple)):
        return [normalize_document(item) for item in value]
    return value


def compute_revision_hash(document: dict[str, Any] | str) -> str:
    """Compute the content hash of a desired-state document.

    Args:
        document: Mapping, or YAML/JSON text.

    Returns:
        First 16 hex characters of the SHA-256 of the canonical JSON form.

    Raises:
        RevisionError: If text input does not parse to a mapping.
    """
    if isinstance(document, str):
        try:
            document = yaml.safe_load(document)
        except yaml.YAMLError as e:
            raise RevisionError(f"Invalid document: {e}") from e
        if document is None:
            document = {}
        if not isinstance(document, dict):
            raise RevisionError("Document must be a mapping")

    canonical = json.dumps(
        normalize_document(document),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:REVISION_HASH_LENGTH]


def revision_name(app_name: str, number: int) -> str:
    return f"{app_name}-v{number}"


@dataclass
class PreparedRevision:
    """Outcome of resolving the revision for the current spec."""

    revision: ApplicationRevision
    is_new: bool

    @property
    def name(self) -> str:
        return self.revision.metadata.name

    @property
    def revision_hash(self) -> str:
        return self.revision.revision_hash


class RevisionManager:
    """Resolves, creates and trims application revisions."""

    def __init__(self, store: ObjectStore, revision_limit: int) -> None:
        self._store = store
        self._revision_limit = revision_limit

    async def prepare(self, app: Application, plan: dict[str, Any]) -> PreparedRevision:
        """Find a revision matching plan, or build the next one in memory."""
        revision_hash = compute_revision_hash(plan)
        revisions = await self._store.list_revisions(app.metadata.namespace, app.metadata.name)

        matching = [r for r in revisions if r.revision_hash == revision_hash]
        if matching:
            newest = max(matching, key=lambda r: r.revision)
            return PreparedRevision(revision=newest, is_new=False)

        latest_number = max((r.revision for r in revisions), default=0)
        if app.status.latest_revision is not None:
            latest_number = max(latest_number, app.status.latest_revision.revision)
        number = latest_number + 1

        revision = ApplicationRevision(
            metadata=ObjectMeta(
                name=revision_name(app.metadata.name, number),
                namespace=app.metadata.namespace,
                labels={
                    LABEL_APP_NAME: app.metadata.name,
                    LABEL_APP_NAMESPACE: app.metadata.namespace,
                },
            ),
            revision=number,
            revision_hash=revision_hash,
            plan=normalize_document(plan),
        )
        return PreparedRevision(revision=revision, is_new=True)

    async def apply(self, prepared: PreparedRevision) -> ApplicationRevision:
        """Persist a new revision. Existing revisions are returned unchanged."""
        if not prepared.is_new:
            return prepared.revision
        try:
            created = await self._store.create_revision(prepared.revision)
        except ConflictError:
            logger.info(
                "Revision already exists",
                extra={"revision": prepared.name, "hash": prepared.revision_hash},
            )
            return prepared.revision
        logger.info(
            "Created application revision",
            extra={"revision": prepared.name, "hash": prepared.revision_hash},
        )
        prepared.revision = created
        return created

    async def cleanup(self, app: Application) -> list[str]:
        """Delete the oldest historical revisions beyond the retention limit.

        Returns:
            Names of deleted revisions.
        """
        namespace = app.metadata.namespace
        revisions = await self._store.list_revisions(namespace, app.metadata.name)

        protected: set[str] = set()
        if app.status.latest_revision is not None:
            protected.add(app.status.latest_revision.name)
        rollback = app.metadata.annotations.get(ANNOTATION_ROLLBACK_REVISION)
        if rollback:
            protected.add(rollback)

        trackers = await self._store.list_resource_trackers(namespace, app.metadata.name)
        for tracker in trackers:
            if tracker.type == ResourceTrackerType.VERSIONED:
                label = tracker.metadata.labels.get(LABEL_APP_REVISION)
                if label:
                    protected.add(label)

        current = app.status.latest_revision.name if app.status.latest_revision else None
        historical = sorted(
            (r for r in revisions if r.metadata.name != current),
            key=lambda r: r.revision,
        )
        excess = len(historical) - self._revision_limit
        deleted: list[str] = []
        for revision in historical:
            if excess <= 0:
                break
            name = revision.metadata.name
            if name in protected:
                continue
            try:
                await self._store.delete_revision(namespace, name)
            except NotFoundError:
                pass
            deleted.append(name)
            excess -= 1

        if deleted:
            logger.info(
                "Cleaned up application revisions",
                extra={"app": app.key, "deleted": deleted},
            )
        return deleted
