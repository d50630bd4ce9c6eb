"""Pydantic models for the Application resource and its bookkeeping objects.

These models provide:
1. Type-safe parsing of objects read from the cluster
2. camelCase wire names via aliases, snake_case in Python
3. Only the fields the control loop inspects or writes
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# =============================================================================
# Well-known keys
# =============================================================================

API_GROUP = "core.oam.dev"
API_VERSION = "core.oam.dev/v1beta1"

RESOURCE_TRACKER_FINALIZER = "app.oam.dev/resource-tracker-finalizer"

ANNOTATION_CONTROLLER_REQUIREMENT = "app.oam.dev/controller-version-require"
ANNOTATION_CONTROLLER_VERSION = "app.oam.dev/controller-version"
ANNOTATION_ROLLBACK_REVISION = "app.oam.dev/rollback-revision"

LABEL_APP_NAME = "app.oam.dev/name"
LABEL_APP_NAMESPACE = "app.oam.dev/namespace"
LABEL_APP_REVISION = "app.oam.dev/app-revision"

_MODEL_CONFIG = {"extra": "ignore", "populate_by_name": True}


class ApplicationPhase(str, Enum):
    """Lifecycle phase recorded in Application status."""

    STARTING = "starting"
    RENDERING = "rendering"
    POLICY_GENERATING = "policyGenerating"
    RUNNING_WORKFLOW = "runningWorkflow"
    WORKFLOW_SUSPENDING = "workflowSuspending"
    WORKFLOW_TERMINATED = "workflowTerminated"
    WORKFLOW_FINISHED = "workflowFinished"
    RUNNING = "running"
    UNHEALTHY = "unhealthy"
    DELETING = "deleting"


class WorkflowState(str, Enum):
    """State reported by the workflow driver after one execution round."""

    INITIALIZING = "initializing"
    EXECUTING = "executing"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"
    SUCCEEDED = "succeeded"
    FINISHED = "finished"
    SKIPPING = "skipping"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


# =============================================================================
# Metadata
# =============================================================================


class ObjectMeta(BaseModel):
    """Subset of object metadata the controller reads or writes."""

    model_config = _MODEL_CONFIG

    name: str
    namespace: str = ""
    uid: str = ""
    generation: int = 0
    resource_version: str = Field("", alias="resourceVersion")
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    finalizers: list[str] = Field(default_factory=list)
    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    managed_fields: list[dict[str, Any]] = Field(default_factory=list, alias="managedFields")

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None


class Condition(BaseModel):
    """A named, timestamped observation about the object."""

    model_config = _MODEL_CONFIG

    type: str
    status: ConditionStatus
    reason: str
    message: str = ""
    last_transition_time: datetime = Field(
        default_factory=lambda: datetime.now(UTC), alias="lastTransitionTime"
    )

    def same_as(self, other: Condition) -> bool:
        """Equal in everything but the transition time."""
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )


# =============================================================================
# Spec
# =============================================================================


class ApplicationTrait(BaseModel):
    model_config = _MODEL_CONFIG

    type: str
    properties: dict[str, Any] = Field(default_factory=dict)


class ApplicationComponent(BaseModel):
    model_config = _MODEL_CONFIG

    name: str
    type: str
    properties: dict[str, Any] = Field(default_factory=dict)
    traits: list[ApplicationTrait] = Field(default_factory=list)


class AppPolicy(BaseModel):
    model_config = _MODEL_CONFIG

    name: str
    type: str
    properties: dict[str, Any] = Field(default_factory=dict)


class WorkflowStepSpec(BaseModel):
    model_config = _MODEL_CONFIG

    name: str
    type: str
    properties: dict[str, Any] = Field(default_factory=dict)


class ApplicationSpec(BaseModel):
    model_config = _MODEL_CONFIG

    components: list[ApplicationComponent] = Field(default_factory=list)
    policies: list[AppPolicy] = Field(default_factory=list)
    workflow: list[WorkflowStepSpec] = Field(default_factory=list)


# =============================================================================
# Status
# =============================================================================


class ResourceReference(BaseModel):
    """Reference to a cluster object applied on behalf of an application."""

    model_config = _MODEL_CONFIG

    api_version: str = Field(alias="apiVersion")
    kind: str
    name: str
    namespace: str = ""
    cluster: str = ""

    def identity(self) -> tuple[str, str, str, str, str]:
        group = self.api_version.split("/")[0] if "/" in self.api_version else ""
        return (self.cluster, group, self.kind, self.namespace, self.name)

    def same_object(self, other: ResourceReference) -> bool:
        return self.identity() == other.identity()

    def display_name(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"

    def reference(self) -> ResourceReference:
        return ResourceReference(
            api_version=self.api_version,
            kind=self.kind,
            name=self.name,
            namespace=self.namespace,
            cluster=self.cluster,
        )

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> ResourceReference:
        metadata = manifest.get("metadata") or {}
        return cls(
            api_version=manifest.get("apiVersion", ""),
            kind=manifest.get("kind", ""),
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
        )


class ApplicationTraitStatus(BaseModel):
    model_config = _MODEL_CONFIG

    type: str
    healthy: bool = False
    message: str = ""


class ApplicationComponentStatus(BaseModel):
    model_config = _MODEL_CONFIG

    name: str
    namespace: str = ""
    cluster: str = ""
    healthy: bool = False
    message: str = ""
    traits: list[ApplicationTraitStatus] = Field(default_factory=list)

    def same_service(self, other: ApplicationComponentStatus) -> bool:
        return (
            self.name == other.name
            and self.namespace == other.namespace
            and self.cluster == other.cluster
        )


class WorkflowStepStatus(BaseModel):
    model_config = _MODEL_CONFIG

    name: str
    type: str = ""
    phase: str = ""
    message: str = ""


class WorkflowStatus(BaseModel):
    model_config = _MODEL_CONFIG

    app_revision: str = Field("", alias="appRevision")
    mode: str = "StepByStep"
    message: str = ""
    suspend: bool = False
    terminated: bool = False
    finished: bool = False
    context_backend: ResourceReference | None = Field(None, alias="contextBackend")
    steps: list[WorkflowStepStatus] = Field(default_factory=list)


class Revision(BaseModel):
    model_config = _MODEL_CONFIG

    name: str
    revision: int
    revision_hash: str = Field("", alias="revisionHash")


class ApplicationStatus(BaseModel):
    model_config = _MODEL_CONFIG

    phase: ApplicationPhase | None = None
    observed_generation: int = Field(0, alias="observedGeneration")
    conditions: list[Condition] = Field(default_factory=list)
    applied_resources: list[ResourceReference] = Field(
        default_factory=list, alias="appliedResources"
    )
    services: list[ApplicationComponentStatus] = Field(default_factory=list)
    workflow: WorkflowStatus | None = None
    latest_revision: Revision | None = Field(None, alias="latestRevision")

    def set_conditions(self, *conditions: Condition) -> None:
        """Set conditions, one entry per type.

        An incoming condition equal to the existing one (ignoring time) keeps
        the existing transition time.
        """
        for new in conditions:
            for i, existing in enumerate(self.conditions):
                if existing.type != new.type:
                    continue
                if not existing.same_as(new):
                    self.conditions[i] = new
                break
            else:
                self.conditions.append(new)

    def get_condition(self, condition_type: str) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


# =============================================================================
# Top-level objects
# =============================================================================


class Application(BaseModel):
    """The desired-state object reconciled by this controller."""

    model_config = _MODEL_CONFIG

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = "Application"
    metadata: ObjectMeta
    spec: ApplicationSpec = Field(default_factory=ApplicationSpec)
    status: ApplicationStatus = Field(default_factory=ApplicationStatus)

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    def to_manifest(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ApplicationRevision(BaseModel):
    """Immutable snapshot of a normalized desired-state document."""

    model_config = _MODEL_CONFIG

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = "ApplicationRevision"
    metadata: ObjectMeta
    revision: int
    revision_hash: str = Field(alias="revisionHash")
    plan: dict[str, Any] = Field(default_factory=dict)

    def to_manifest(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ResourceTrackerType(str, Enum):
    ROOT = "root"
    VERSIONED = "versioned"
    COMPONENT_REVISION = "component-revision"


class ManagedResource(ResourceReference):
    """A tracked resource plus the bookkeeping needed to collect it."""

    creator: str = ""
    component: str = ""
    deleted: bool = False
    manifest: dict[str, Any] | None = None


class ResourceTracker(BaseModel):
    """Cluster-scoped record of resources an application caused to exist.

    A tracker without a type was written by an older controller and is
    collected through the legacy path.
    """

    model_config = _MODEL_CONFIG

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = "ResourceTracker"
    metadata: ObjectMeta
    type: ResourceTrackerType | None = None
    application_generation: int = Field(0, alias="applicationGeneration")
    managed_resources: list[ManagedResource] = Field(
        default_factory=list, alias="managedResources"
    )

    @property
    def is_marked(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def find(self, ref: ResourceReference) -> ManagedResource | None:
        for resource in self.managed_resources:
            if resource.same_object(ref):
                return resource
        return None

    def to_manifest(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# =============================================================================
# Loop plumbing
# =============================================================================


@dataclass(frozen=True)
class Request:
    """Work item naming one application."""

    namespace: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_key(cls, key: str) -> Request:
        namespace, _, name = key.partition("/")
        return cls(namespace=namespace, name=name)
