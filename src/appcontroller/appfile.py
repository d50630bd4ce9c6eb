"""AppFile: the normalized execution plan of an application.

The default parser does no template evaluation. Components carry ready
manifests under `properties.objects`; traits and non-builtin policies may do
the same. Manifests are labelled with their owning application and component
so the resource keeper can attribute them.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from .models import (
    LABEL_APP_NAME,
    LABEL_APP_NAMESPACE,
    AppPolicy,
    Application,
    ApplicationComponent,
    ApplicationRevision,
    WorkflowStepSpec,
)
from .resourcekeeper import LABEL_COMPONENT

logger = logging.getLogger(__name__)

# Policies interpreted by the controller itself, never dispatched as resources
BUILTIN_POLICY_TYPES = frozenset(
    {"health", "override", "topology", "apply-once", "garbage-collect", "shared-resource"}
)
HEALTH_POLICY_TYPE = "health"

STEP_APPLY_COMPONENT = "apply-component"
STEP_SUSPEND = "suspend"

DEFAULT_WORKFLOW_MODE = "StepByStep"


class AppFileError(Exception):
    """Raised when an application cannot be turned into a plan."""

    pass


@dataclass
class PolicyWorkload:
    name: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)
    manage_health_check: bool = False


@dataclass
class WorkflowStep:
    """A generated step with the manifests it dispatches."""

    name: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)
    manifests: list[dict[str, Any]] = field(default_factory=list)
    component: str = ""


@dataclass
class AppFile:
    name: str
    namespace: str
    plan: dict[str, Any]
    components: list[ApplicationComponent] = field(default_factory=list)
    policies: list[AppPolicy] = field(default_factory=list)
    workflow_steps: list[WorkflowStepSpec] = field(default_factory=list)
    policy_workloads: list[PolicyWorkload] = field(default_factory=list)
    workflow_mode: str = DEFAULT_WORKFLOW_MODE

    def prepare_workflow_and_policy(self) -> list[dict[str, Any]]:
        """Resolve policies and return the manifests of external ones."""
        self.policy_workloads = []
        manifests: list[dict[str, Any]] = []
        for policy in self.policies:
            self.policy_workloads.append(
                PolicyWorkload(
                    name=policy.name,
                    type=policy.type,
                    properties=policy.properties,
                    manage_health_check=policy.type == HEALTH_POLICY_TYPE,
                )
            )
            if policy.type in BUILTIN_POLICY_TYPES:
                continue
            objects = policy.properties.get("objects")
            if not isinstance(objects, list) or not objects:
                raise AppFileError(
                    f"policy {policy.name!r} of type {policy.type!r} declares no objects"
                )
            manifests.extend(self.label_manifest(obj, None) for obj in objects)
        return manifests

    def component(self, name: str) -> ApplicationComponent | None:
        for comp in self.components:
            if comp.name == name:
                return comp
        return None

    def component_manifests(self, component: ApplicationComponent) -> list[dict[str, Any]]:
        objects: list[Any] = list(component.properties.get("objects") or [])
        for trait in component.traits:
            objects.extend(trait.properties.get("objects") or [])
        return [self.label_manifest(obj, component.name) for obj in objects]

    def label_manifest(self, obj: Any, component: str | None) -> dict[str, Any]:
        if not isinstance(obj, dict):
            raise AppFileError(f"object must be a mapping, got {type(obj).__name__}")
        manifest = copy.deepcopy(obj)
        labels = manifest.setdefault("metadata", {}).setdefault("labels", {})
        labels[LABEL_APP_NAME] = self.name
        labels[LABEL_APP_NAMESPACE] = self.namespace
        if component:
            labels[LABEL_COMPONENT] = component
        return manifest


def has_health_check_policy(policies: list[PolicyWorkload]) -> bool:
    return any(p.manage_health_check for p in policies)


class AppParser(Protocol):
    def generate_app_file(self, app: Application) -> AppFile: ...

    def generate_application_steps(
        self, app: Application, app_file: AppFile, revision: ApplicationRevision
    ) -> list[WorkflowStep]: ...


class DefaultAppParser:
    """Passes component objects through as manifests."""

    def generate_app_file(self, app: Application) -> AppFile:
        seen: set[str] = set()
        for comp in app.spec.components:
            if not comp.type:
                raise AppFileError(f"component {comp.name!r} has no type")
            if comp.name in seen:
                raise AppFileError(f"duplicate component name {comp.name!r}")
            seen.add(comp.name)

        plan = app.spec.model_dump(by_alias=True, exclude_none=True, mode="json")
        return AppFile(
            name=app.metadata.name,
            namespace=app.metadata.namespace,
            plan=plan,
            components=list(app.spec.components),
            policies=list(app.spec.policies),
            workflow_steps=list(app.spec.workflow),
        )

    def generate_application_steps(
        self, app: Application, app_file: AppFile, revision: ApplicationRevision
    ) -> list[WorkflowStep]:
        if not app_file.workflow_steps:
            return [
                WorkflowStep(
                    name=comp.name,
                    type=STEP_APPLY_COMPONENT,
                    properties={"component": comp.name},
                    manifests=app_file.component_manifests(comp),
                    component=comp.name,
                )
                for comp in app_file.components
            ]

        steps: list[WorkflowStep] = []
        for spec in app_file.workflow_steps:
            step = WorkflowStep(name=spec.name, type=spec.type, properties=spec.properties)
            if spec.type == STEP_APPLY_COMPONENT:
                name = spec.properties.get("component")
                comp = app_file.component(name) if isinstance(name, str) else None
                if comp is None:
                    raise AppFileError(
                        f"workflow step {spec.name!r} references unknown component {name!r}"
                    )
                step.manifests = app_file.component_manifests(comp)
                step.component = comp.name
            elif spec.type != STEP_SUSPEND:
                objects = spec.properties.get("objects") or []
                step.manifests = [app_file.label_manifest(obj, None) for obj in objects]
            steps.append(step)

        logger.debug(
            "Generated workflow steps",
            extra={"app": app.key, "revision": revision.metadata.name, "steps": len(steps)},
        )
        return steps
