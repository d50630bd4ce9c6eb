"""Workflow driver interface and a sequential reference implementation.

The reconciler only sees the Workflow protocol: one execution round per pass,
reported as a WorkflowState. Progress lives in `status.workflow.steps`, so a
round resumes after the last succeeded step.

Two side tables are keyed by application identity and injected into both the
reconciler and the workflow:
- StepStatusCache: the step count of the last status this process wrote. A
  status read with fewer steps is stale, and the round is skipped.
- WorkflowContextStore: per-application execution context (failure counts).
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Protocol

from .appfile import DEFAULT_WORKFLOW_MODE, STEP_SUSPEND, WorkflowStep
from .handler import AppHandler
from .models import (
    Application,
    ApplicationComponentStatus,
    ApplicationRevision,
    ApplicationTraitStatus,
    ResourceReference,
    WorkflowState,
    WorkflowStatus,
    WorkflowStepStatus,
)

logger = logging.getLogger(__name__)

CREATOR_WORKFLOW = "workflow"

STEP_PHASE_SUCCEEDED = "succeeded"
STEP_PHASE_FAILED = "failed"
STEP_PHASE_RUNNING = "running"

BASE_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0


def identity_key(name: str, namespace: str) -> str:
    return f"{name}-{namespace}"


def app_identity(app: Application) -> str:
    return identity_key(app.metadata.name, app.metadata.namespace)


class Workflow(Protocol):
    async def execute_steps(
        self, revision: ApplicationRevision, steps: list[WorkflowStep]
    ) -> WorkflowState: ...

    def get_backoff_wait_time(self) -> float: ...

    def trace(self) -> None: ...


class StepStatusCache:
    """Step counts of the last written workflow status, per application."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, int] = {}

    def get(self, key: str) -> int | None:
        with self._lock:
            return self._entries.get(key)

    def store(self, key: str, steps: int) -> None:
        with self._lock:
            self._entries[key] = steps

    def invalidate(self, key: str) -> None:
        """Force the next round to re-run instead of trusting stale progress."""
        self.store(key, -1)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries


class WorkflowContextStore:
    """In-memory workflow execution contexts, per application."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._contexts: dict[str, dict[str, Any]] = {}

    def get_or_create(self, key: str) -> dict[str, Any]:
        with self._lock:
            return self._contexts.setdefault(key, {})

    def delete(self, key: str) -> None:
        with self._lock:
            self._contexts.pop(key, None)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._contexts


class ApplyComponentsWorkflow:
    """Runs steps in order, dispatching each step's manifests.

    A failed step ends the round with Executing and an exponential backoff.
    A suspend step holds the workflow until `status.workflow.suspend` is
    cleared.
    """

    def __init__(
        self,
        app: Application,
        handler: AppHandler,
        step_cache: StepStatusCache,
        context_store: WorkflowContextStore,
        mode: str = DEFAULT_WORKFLOW_MODE,
    ) -> None:
        self._app = app
        self._handler = handler
        self._step_cache = step_cache
        self._context_store = context_store
        self._mode = mode
        self._key = app_identity(app)

    async def execute_steps(
        self, revision: ApplicationRevision, steps: list[WorkflowStep]
    ) -> WorkflowState:
        status = self._app.status.workflow
        if status is None or status.app_revision != revision.metadata.name:
            self._app.status.workflow = WorkflowStatus(
                app_revision=revision.metadata.name,
                mode=self._mode,
                context_backend=self._context_backend(),
            )
            context = self._context_store.get_or_create(self._key)
            context.clear()
            self._step_cache.delete(self._key)
            return WorkflowState.INITIALIZING

        cached = self._step_cache.get(self._key)
        if cached is not None and cached >= 0 and len(status.steps) < cached:
            return WorkflowState.SKIPPING

        if status.terminated:
            return WorkflowState.TERMINATED
        if status.finished:
            return WorkflowState.FINISHED
        if status.suspend:
            return WorkflowState.SUSPENDED

        context = self._context_store.get_or_create(self._key)
        state = await self._run(status, steps, context)
        self._step_cache.store(self._key, len(status.steps))
        return state

    async def _run(
        self, status: WorkflowStatus, steps: list[WorkflowStep], context: dict[str, Any]
    ) -> WorkflowState:
        for step in steps:
            step_status = self._step_status(status, step)
            if step_status.phase == STEP_PHASE_SUCCEEDED:
                continue

            if step.type == STEP_SUSPEND:
                if step_status.phase != STEP_PHASE_RUNNING:
                    step_status.phase = STEP_PHASE_RUNNING
                    status.suspend = True
                if status.suspend:
                    return WorkflowState.SUSPENDED
                step_status.phase = STEP_PHASE_SUCCEEDED
                continue

            try:
                refs = await self._handler.dispatch(
                    self._revision_label(), CREATOR_WORKFLOW, *step.manifests
                )
            except Exception as e:
                step_status.phase = STEP_PHASE_FAILED
                step_status.message = str(e)
                context["failures"] = context.get("failures", 0) + 1
                status.message = f"step {step.name} failed"
                logger.warning(
                    "Workflow step failed",
                    extra={"app": self._app.key, "step": step.name, "error": str(e)},
                )
                return WorkflowState.EXECUTING

            step_status.phase = STEP_PHASE_SUCCEEDED
            step_status.message = ""
            if step.component:
                self._handler.add_service_status(True, self._service_status(step, refs))

        context["failures"] = 0
        status.message = ""
        return WorkflowState.SUCCEEDED

    def get_backoff_wait_time(self) -> float:
        failures = self._context_store.get_or_create(self._key).get("failures", 0)
        if failures <= 0:
            return BASE_BACKOFF_SECONDS
        return min(BASE_BACKOFF_SECONDS * 2 ** (failures - 1), MAX_BACKOFF_SECONDS)

    def trace(self) -> None:
        status = self._app.status.workflow
        if status is None:
            return
        logger.info(
            "Workflow finished",
            extra={
                "app": self._app.key,
                "revision": status.app_revision,
                "steps": {s.name: s.phase for s in status.steps},
                "terminated": status.terminated,
            },
        )

    def _revision_label(self) -> str:
        status = self._app.status.workflow
        return status.app_revision if status else ""

    def _context_backend(self) -> ResourceReference:
        return ResourceReference(
            api_version="v1",
            kind="ConfigMap",
            name=f"workflow-{self._app.metadata.name}-context",
            namespace=self._app.metadata.namespace,
        )

    def _step_status(self, status: WorkflowStatus, step: WorkflowStep) -> WorkflowStepStatus:
        for existing in status.steps:
            if existing.name == step.name:
                return existing
        created = WorkflowStepStatus(name=step.name, type=step.type)
        status.steps.append(created)
        return created

    def _service_status(
        self, step: WorkflowStep, refs: list[ResourceReference]
    ) -> ApplicationComponentStatus:
        comp = next((c for c in self._app.spec.components if c.name == step.component), None)
        traits = [
            ApplicationTraitStatus(type=t.type, healthy=True) for t in (comp.traits if comp else [])
        ]
        return ApplicationComponentStatus(
            name=step.component,
            namespace=self._app.metadata.namespace,
            healthy=True,
            message=f"{len(refs)} resources applied",
            traits=traits,
        )
