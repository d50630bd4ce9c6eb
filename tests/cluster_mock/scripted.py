"""Scripted collaborators for driving the reconciler through exact states."""

from __future__ import annotations

from typing import Any

from appcontroller.appfile import WorkflowStep
from appcontroller.gc import GCOptions, GCResult
from appcontroller.models import ApplicationRevision, ResourceReference, WorkflowState


class ScriptedWorkflow:
    """Returns workflow states from a script, repeating the last one."""

    def __init__(self, *states: WorkflowState, backoff: float = 5.0) -> None:
        self.states = list(states) or [WorkflowState.SUCCEEDED]
        self.backoff = backoff
        self.executions = 0
        self.traced = 0
        self.trace_error: Exception | None = None

    async def execute_steps(
        self, revision: ApplicationRevision, steps: list[WorkflowStep]
    ) -> WorkflowState:
        state = self.states[min(self.executions, len(self.states) - 1)]
        self.executions += 1
        return state

    def get_backoff_wait_time(self) -> float:
        return self.backoff

    def trace(self) -> None:
        self.traced += 1
        if self.trace_error is not None:
            raise self.trace_error


class ScriptedKeeper:
    """ResourceKeeper returning scripted GC results and recording calls."""

    def __init__(self, *gc_results: GCResult) -> None:
        self.gc_results = list(gc_results) or [GCResult(finished=True)]
        self.gc_calls: list[GCOptions] = []
        self.dispatched: list[tuple[str, str, dict[str, Any]]] = []
        self.state_keeps = 0
        self.gc_error: Exception | None = None
        self.state_keep_error: Exception | None = None

    async def dispatch(
        self, revision_label: str, creator: str, *manifests: dict[str, Any]
    ) -> list[ResourceReference]:
        refs = []
        for manifest in manifests:
            self.dispatched.append((revision_label, creator, manifest))
            refs.append(ResourceReference.from_manifest(manifest))
        return refs

    async def state_keep(self) -> None:
        self.state_keeps += 1
        if self.state_keep_error is not None:
            raise self.state_keep_error

    async def garbage_collect(self, options: GCOptions) -> GCResult:
        if self.gc_error is not None:
            raise self.gc_error
        result = self.gc_results[min(len(self.gc_calls), len(self.gc_results) - 1)]
        self.gc_calls.append(options)
        return result
