"""Application reconcile loop.

One pass drives a single Application through its phases:
1. Fetch, and skip objects that require a different controller version
2. Finalizer protocol (register, or collect everything on deletion)
3. Parse the desired state into an AppFile
4. Resolve and persist the revision
5. Dispatch external policies
6. Generate and execute workflow steps
7. Interpret the workflow state, garbage-collect, persist status

Every phase failure is recorded as a condition with a single status write and
returned as an error, so the queue retries with backoff. The pass as a whole
runs under a deadline; expiry is reported as a retryable error.

Result rule for a pass:
- an explicit requeue delay wins, carrying any error along
- otherwise an error is returned for rate-limited retry
- otherwise the object is requeued at the resync period
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from .appfile import AppFile, AppParser, has_health_check_policy
from .conditions import (
    TYPE_PARSED,
    TYPE_POLICY,
    TYPE_RENDER,
    TYPE_REVISION,
    TYPE_STATE_KEEP,
    TYPE_WORKFLOW,
    deleting_condition,
    error_condition,
    ready_condition,
    reconcile_error,
    reconcile_success,
)
from .config import ControllerConfig
from .events import (
    MESSAGE_DEPLOYED,
    MESSAGE_PARSED,
    MESSAGE_POLICY_GENERATED,
    MESSAGE_RENDERED,
    MESSAGE_REVISIONED,
    MESSAGE_WORKFLOW_FINISHED,
    REASON_APPLIED,
    REASON_DEPLOYED,
    REASON_FAILED_APPLY,
    REASON_FAILED_GC,
    REASON_FAILED_PARSE,
    REASON_FAILED_RENDER,
    REASON_FAILED_REVISION,
    REASON_FAILED_STATE_KEEP,
    REASON_FAILED_WORKFLOW,
    REASON_PARSED,
    REASON_POLICY_GENERATED,
    REASON_RENDERED,
    REASON_REVISIONED,
    LoggingEventRecorder,
)
from .finalizers import add_finalizer, finalizer_exists, remove_finalizer
from .gc import GCOptions
from .handler import AppHandler
from .models import (
    ANNOTATION_CONTROLLER_REQUIREMENT,
    ANNOTATION_CONTROLLER_VERSION,
    RESOURCE_TRACKER_FINALIZER,
    Application,
    ApplicationComponentStatus,
    ApplicationPhase,
    Condition,
    Request,
    WorkflowState,
)
from .resource_tracker import list_application_resource_trackers
from .resourcekeeper import ResourceKeeper
from .revision import RevisionManager
from .store import NotFoundError, ObjectStore, StoreError
from .workflow import (
    ApplyComponentsWorkflow,
    StepStatusCache,
    Workflow,
    WorkflowContextStore,
    app_identity,
    identity_key,
)

logger = logging.getLogger(__name__)

CREATOR_POLICY = "policy"

WorkflowFactory = Callable[[Application, AppHandler, AppFile], Workflow]
KeeperFactory = Callable[[Application], ResourceKeeper]


class ReconcileError(Exception):
    """Raised (or returned) when a reconcile pass fails."""

    pass


class ReconcileTimeoutError(ReconcileError):
    """The pass exceeded its deadline."""

    pass


class EventRecorder(Protocol):
    def normal(self, app: Application, reason: str, message: str) -> None: ...

    def warning(self, app: Application, reason: str, err: BaseException | str) -> None: ...


@dataclass
class ReconcileResult:
    """Outcome of a pass, interpreted by the work queue."""

    requeue_after: float | None = None
    error: BaseException | None = None

    @property
    def success(self) -> bool:
        return self.error is None


def is_healthy(services: list[ApplicationComponentStatus]) -> bool:
    for service in services:
        if not service.healthy:
            return False
        for trait in service.traits:
            if not trait.healthy:
                return False
    return True


class Reconciler:
    """Reconciles Application objects.

    Collaborators are injected, so two reconcilers with different
    configuration can run side by side in one process.
    """

    def __init__(
        self,
        config: ControllerConfig,
        store: ObjectStore,
        parser: AppParser,
        keeper_factory: KeeperFactory,
        workflow_factory: WorkflowFactory | None = None,
        recorder: EventRecorder | None = None,
        step_cache: StepStatusCache | None = None,
        context_store: WorkflowContextStore | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._parser = parser
        self._keeper_factory = keeper_factory
        self._recorder = recorder or LoggingEventRecorder()
        self.step_cache = step_cache or StepStatusCache()
        self.context_store = context_store or WorkflowContextStore()
        self._workflow_factory = workflow_factory or self._default_workflow
        self._revisions = RevisionManager(store, config.app_revision_limit)

    def _default_workflow(self, app: Application, handler: AppHandler, app_file: AppFile) -> Workflow:
        return ApplyComponentsWorkflow(
            app, handler, self.step_cache, self.context_store, mode=app_file.workflow_mode
        )

    async def reconcile(self, request: Request) -> ReconcileResult:
        """Run one pass for request under the configured deadline."""
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._reconcile(request),
                timeout=self._config.reconcile_timeout_seconds,
            )
        except TimeoutError:
            self._forget_progress(request)
            result = ReconcileResult(
                error=ReconcileTimeoutError(
                    f"reconcile of {request.key} exceeded "
                    f"{self._config.reconcile_timeout_seconds}s"
                )
            )
        except Exception:
            self._forget_progress(request)
            raise
        self._log_result(request, result, time.monotonic() - started)
        return result

    def _forget_progress(self, request: Request) -> None:
        # An interrupted pass may have advanced the step cache past the written status
        key = identity_key(request.name, request.namespace)
        if key in self.step_cache:
            self.step_cache.invalidate(key)

    # -------------------------------------------------------------------------
    # Pass
    # -------------------------------------------------------------------------

    async def _reconcile(self, request: Request) -> ReconcileResult:
        try:
            app = await self._store.get_application(request.namespace, request.name)
        except NotFoundError:
            logger.debug("Application not found", extra={"app": request.key})
            return ReconcileResult()
        except StoreError as e:
            logger.error("Failed to get application", extra={"app": request.key, "error": str(e)})
            return self._result(error=e)

        if not self.match_controller_requirement(app):
            logger.info(
                "Skipping application: controller requirement not matched",
                extra={"app": app.key, "controller_version": self._config.controller_version},
            )
            return ReconcileResult()

        if not app.metadata.annotations.get(ANNOTATION_CONTROLLER_VERSION):
            app.metadata.annotations[ANNOTATION_CONTROLLER_VERSION] = (
                self._config.controller_version
            )

        handler = AppHandler(app, self._keeper_factory(app), self._revisions)

        end, result = await self._handle_finalizers(app, handler)
        if result.error is not None:
            if not app.metadata.is_deleting:
                return await self._end_with_negative_condition(
                    app, reconcile_error(result.error), ApplicationPhase.STARTING
                )
            return result
        if end:
            return result

        try:
            app_file = self._parser.generate_app_file(app)
        except Exception as e:
            self._recorder.warning(app, REASON_FAILED_PARSE, e)
            return await self._end_with_negative_condition(
                app, error_condition(TYPE_PARSED, e), ApplicationPhase.RENDERING
            )
        app.status.set_conditions(ready_condition(TYPE_PARSED))
        self._recorder.normal(app, REASON_PARSED, MESSAGE_PARSED)

        try:
            await handler.prepare_current_app_revision(app_file)
            await handler.finalize_and_apply_app_revision()
        except Exception as e:
            logger.error("Failed to apply app revision", extra={"app": app.key, "error": str(e)})
            self._recorder.warning(app, REASON_FAILED_REVISION, e)
            return await self._end_with_negative_condition(
                app, error_condition(TYPE_REVISION, e), ApplicationPhase.RENDERING
            )
        logger.info(
            "Prepared current app revision",
            extra={
                "app": app.key,
                "revision": handler.current_revision.metadata.name,
                "hash": handler.current_revision_hash,
                "new_revision": handler.is_new_revision,
            },
        )
        app.status.set_conditions(ready_condition(TYPE_REVISION))
        self._recorder.normal(app, REASON_REVISIONED, MESSAGE_REVISIONED)

        try:
            await handler.update_app_latest_revision_status(self._patch_status)
        except StoreError as e:
            logger.error("Failed to update application status", extra={"app": app.key})
            return await self._end_with_negative_condition(
                app, reconcile_error(e), ApplicationPhase.RENDERING
            )

        try:
            external_policies = app_file.prepare_workflow_and_policy()
        except Exception as e:
            self._recorder.warning(app, REASON_FAILED_RENDER, e)
            return await self._end_with_negative_condition(
                app,
                error_condition(TYPE_POLICY, f"PrepareWorkflowAndPolicy: {e}"),
                ApplicationPhase.POLICY_GENERATING,
            )
        if external_policies:
            try:
                await handler.dispatch("", CREATOR_POLICY, *external_policies)
            except Exception as e:
                self._recorder.warning(app, REASON_FAILED_APPLY, e)
                return await self._end_with_negative_condition(
                    app,
                    error_condition(TYPE_POLICY, f"ApplyPolicies: {e}"),
                    ApplicationPhase.POLICY_GENERATING,
                )
            logger.info("Applied application policies", extra={"app": app.key})
        app.status.set_conditions(ready_condition(TYPE_POLICY))
        self._recorder.normal(app, REASON_POLICY_GENERATED, MESSAGE_POLICY_GENERATED)

        try:
            steps = self._parser.generate_application_steps(
                app, app_file, handler.current_revision
            )
        except Exception as e:
            self._recorder.warning(app, REASON_FAILED_WORKFLOW, e)
            return await self._end_with_negative_condition(
                app, error_condition(TYPE_WORKFLOW, e), ApplicationPhase.RENDERING
            )
        app.status.set_conditions(ready_condition(TYPE_RENDER))
        self._recorder.normal(app, REASON_RENDERED, MESSAGE_RENDERED)

        workflow = self._workflow_factory(app, handler, app_file)
        try:
            state = await workflow.execute_steps(handler.current_revision, steps)
        except Exception as e:
            self._recorder.warning(app, REASON_FAILED_WORKFLOW, e)
            return await self._end_with_negative_condition(
                app, error_condition(TYPE_WORKFLOW, e), ApplicationPhase.RUNNING_WORKFLOW
            )

        handler.add_service_status(False, *app.status.services)
        handler.add_applied_resource(*app.status.applied_resources)
        app.status.applied_resources = handler.applied_resources
        app.status.services = handler.services

        logger.info("Workflow returned", extra={"app": app.key, "state": state.value})
        match state:
            case WorkflowState.INITIALIZING:
                return await self._gc_resource_trackers(handler, ApplicationPhase.RENDERING)
            case WorkflowState.SUSPENDED:
                return await self._gc_resource_trackers(
                    handler, ApplicationPhase.WORKFLOW_SUSPENDING
                )
            case WorkflowState.TERMINATED:
                if (failed := await self._workflow_finish(app, workflow)) is not None:
                    return failed
                return await self._gc_resource_trackers(
                    handler, ApplicationPhase.WORKFLOW_TERMINATED
                )
            case WorkflowState.EXECUTING:
                gc_result = await self._gc_resource_trackers(
                    handler, ApplicationPhase.RUNNING_WORKFLOW
                )
                return self._result(
                    error=gc_result.error, requeue_after=workflow.get_backoff_wait_time()
                )
            case WorkflowState.SUCCEEDED:
                if (failed := await self._workflow_finish(app, workflow)) is not None:
                    return failed
                app.status.set_conditions(ready_condition(TYPE_WORKFLOW))
                self._recorder.normal(app, REASON_APPLIED, MESSAGE_WORKFLOW_FINISHED)
                if not self._config.enable_reconcile_loop_reduction:
                    return await self._gc_resource_trackers(
                        handler, ApplicationPhase.WORKFLOW_FINISHED
                    )
            case WorkflowState.FINISHED:
                if app.status.workflow is not None and app.status.workflow.terminated:
                    return self._result()
            case WorkflowState.SKIPPING:
                logger.info("Skipping reconcile: stale workflow status", extra={"app": app.key})
                return ReconcileResult()

        phase = ApplicationPhase.RUNNING
        if not has_health_check_policy(app_file.policy_workloads):
            app.status.services = handler.services
            if not is_healthy(handler.services):
                phase = ApplicationPhase.UNHEALTHY

        try:
            await handler.resource_keeper.state_keep()
        except Exception as e:
            logger.error("Failed to keep resource state", extra={"app": app.key, "error": str(e)})
            self._recorder.warning(app, REASON_FAILED_STATE_KEEP, e)
            app.status.set_conditions(error_condition(TYPE_STATE_KEEP, e))

        try:
            await self._revisions.cleanup(app)
        except Exception as e:
            logger.error("Failed to clean up revisions", extra={"app": app.key, "error": str(e)})
            self._recorder.warning(app, REASON_FAILED_GC, e)
            return await self._end_with_negative_condition(app, reconcile_error(e), phase)

        app.status.set_conditions(reconcile_success())
        self._recorder.normal(app, REASON_DEPLOYED, MESSAGE_DEPLOYED)
        return await self._gc_resource_trackers(handler, phase, gc_outdated=True)

    # -------------------------------------------------------------------------
    # Finalizers and garbage collection
    # -------------------------------------------------------------------------

    async def _handle_finalizers(
        self, app: Application, handler: AppHandler
    ) -> tuple[bool, ReconcileResult]:
        """Apply the finalizer protocol.

        Returns:
            (end_reconcile, result). A result error always ends the pass.
        """
        if not app.metadata.is_deleting:
            if finalizer_exists(app.metadata, RESOURCE_TRACKER_FINALIZER):
                return False, ReconcileResult()
            add_finalizer(app.metadata, RESOURCE_TRACKER_FINALIZER)
            logger.info(
                "Registered finalizer",
                extra={"app": app.key, "finalizer": RESOURCE_TRACKER_FINALIZER},
            )
            try:
                updated = await self._store.update_application(app)
            except StoreError as e:
                return True, self._result(
                    error=self._wrap(e, "cannot update application finalizer")
                )
            app.metadata.resource_version = updated.metadata.resource_version
            end = not self._config.enable_reconcile_loop_reduction
            return end, self._result()

        if not finalizer_exists(app.metadata, RESOURCE_TRACKER_FINALIZER):
            return False, ReconcileResult()

        try:
            trackers = await list_application_resource_trackers(self._store, app)
        except StoreError as e:
            return True, self._result(error=e)

        result = await self._gc_resource_trackers(
            handler, ApplicationPhase.DELETING, gc_outdated=True
        )
        if result.error is not None:
            return True, result

        if trackers.empty:
            remove_finalizer(app.metadata, RESOURCE_TRACKER_FINALIZER)
            try:
                await self._store.update_application(app)
            except StoreError as e:
                return True, self._result(
                    error=self._wrap(e, "cannot update application finalizer")
                )
            key = app_identity(app)
            self.context_store.delete(key)
            self.step_cache.delete(key)
            logger.info("Removed finalizer", extra={"app": app.key})
            return True, self._result()

        return True, result

    async def _gc_resource_trackers(
        self,
        handler: AppHandler,
        phase: ApplicationPhase,
        gc_outdated: bool = False,
    ) -> ReconcileResult:
        app = handler.app
        options = GCOptions() if gc_outdated else GCOptions.lightweight()
        try:
            gc_result = await handler.resource_keeper.garbage_collect(options)
        except Exception as e:
            logger.error("Failed to gc resource trackers", extra={"app": app.key, "error": str(e)})
            self._recorder.warning(app, REASON_FAILED_GC, e)
            return await self._end_with_negative_condition(app, reconcile_error(e), phase)

        for ref in gc_result.collected:
            handler.delete_applied_resource(ref)

        if not gc_result.finished:
            condition = deleting_condition()
            if gc_result.waiting:
                condition.message = (
                    f"Waiting for {gc_result.waiting[0].display_name()} to delete. "
                    f"(At least {len(gc_result.waiting)} resources are deleting.)"
                )
            app.status.set_conditions(condition)
            return self._result(
                error=await self._try_status_write(self._patch_status(app, phase)),
                requeue_after=self._config.gc_backoff_seconds,
            )

        if phase == ApplicationPhase.RENDERING:
            return self._result(
                error=await self._try_status_write(
                    self._update_status(app, ApplicationPhase.RUNNING_WORKFLOW)
                )
            )
        return self._result(error=await self._try_status_write(self._patch_status(app, phase)))

    async def _workflow_finish(
        self, app: Application, workflow: Workflow
    ) -> ReconcileResult | None:
        try:
            workflow.trace()
        except Exception as e:
            return await self._end_with_negative_condition(
                app,
                error_condition(TYPE_WORKFLOW, f"DoWorkflowFinish: record workflow state: {e}"),
                ApplicationPhase.RUNNING_WORKFLOW,
            )
        if app.status.workflow is not None:
            app.status.workflow.finished = True
        return None

    # -------------------------------------------------------------------------
    # Status writes
    # -------------------------------------------------------------------------

    async def _end_with_negative_condition(
        self, app: Application, condition: Condition, phase: ApplicationPhase
    ) -> ReconcileResult:
        app.status.set_conditions(condition)
        try:
            await self._patch_status(app, phase)
        except StoreError as e:
            return self._result(error=self._wrap(e, "cannot update application status"))
        return self._result(
            error=ReconcileError(
                f'object level reconcile error, type: "{condition.type}", '
                f'msg: "{condition.message}"'
            )
        )

    async def _patch_status(self, app: Application, phase: ApplicationPhase) -> None:
        self._prepare_status(app, phase)
        try:
            updated = await self._store.patch_application_status(app)
        except StoreError:
            # Progress in the written status is lost; force the workflow to re-run
            self.step_cache.invalidate(app_identity(app))
            raise
        app.metadata.resource_version = updated.metadata.resource_version

    async def _update_status(self, app: Application, phase: ApplicationPhase) -> None:
        self._prepare_status(app, phase)
        try:
            updated = await self._store.update_application_status(app)
        except StoreError:
            self.step_cache.invalidate(app_identity(app))
            raise
        app.metadata.resource_version = updated.metadata.resource_version

    @staticmethod
    def _prepare_status(app: Application, phase: ApplicationPhase) -> None:
        app.status.phase = phase
        if app.status.observed_generation != app.metadata.generation:
            app.status.observed_generation = app.metadata.generation

    @staticmethod
    async def _try_status_write(write: Awaitable[None]) -> StoreError | None:
        try:
            await write
        except StoreError as e:
            return e
        return None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def match_controller_requirement(self, app: Application) -> bool:
        """Return True if this controller should handle app."""
        required = app.metadata.annotations.get(ANNOTATION_CONTROLLER_REQUIREMENT)
        if required is not None:
            return required == self._config.controller_version
        return not self._config.ignore_app_without_controller_requirement

    def _result(
        self, error: BaseException | None = None, requeue_after: float | None = None
    ) -> ReconcileResult:
        if requeue_after:
            return ReconcileResult(requeue_after=requeue_after, error=error)
        if error is not None:
            return ReconcileResult(error=error)
        return ReconcileResult(requeue_after=self._config.resync_period_seconds)

    @staticmethod
    def _wrap(err: BaseException, message: str) -> ReconcileError:
        wrapped = ReconcileError(f"{message}: {err}")
        wrapped.__cause__ = err
        return wrapped

    def _log_result(self, request: Request, result: ReconcileResult, duration: float) -> None:
        extra = {
            "app": request.key,
            "duration_seconds": round(duration, 3),
            "requeue_after": result.requeue_after,
        }
        if result.error is not None:
            logger.warning("Reconcile failed", extra={**extra, "error": str(result.error)})
        else:
            logger.info("Reconcile finished", extra=extra)
