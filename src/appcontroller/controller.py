"""Application controller: watch events in, reconcile passes out.

Watch notifications are screened by the EventFilter and turned into
Requests on the WorkQueue. A pool of workers pulls Requests and runs the
Reconciler, then feeds the result back into the queue:
- error: rate-limited requeue
- requeue_after without error: forget the failure history, re-add after
  the delay
- neither: forget
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .config import ControllerConfig
from .event_filter import EventFilter
from .models import Application, Request, ResourceTracker
from .reconciler import ReconcileResult, Reconciler
from .workqueue import QueueShutdown, WorkQueue

logger = logging.getLogger(__name__)

EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"


@dataclass
class WatchEvent:
    """A watch notification with the previously seen object, if any."""

    type: str
    obj: dict[str, Any]
    old: dict[str, Any] | None = None


class ApplicationController:
    """Runs reconcile workers over a shared work queue."""

    def __init__(
        self,
        config: ControllerConfig,
        reconciler: Reconciler,
        event_filter: EventFilter | None = None,
        queue: WorkQueue | None = None,
    ) -> None:
        self._config = config
        self._reconciler = reconciler
        self._filter = event_filter or EventFilter(config)
        self.queue = queue or WorkQueue(
            base_delay=config.rate_limit_base_delay_seconds,
            max_delay=config.rate_limit_max_delay_seconds,
        )
        self._shutdown_event = asyncio.Event()
        self._workers: list[asyncio.Task[None]] = []

    # -------------------------------------------------------------------------
    # Event handlers
    # -------------------------------------------------------------------------

    def handle_application_event(self, event: WatchEvent) -> bool:
        """Enqueue the application if the notification warrants a pass.

        Returns:
            True if a request was enqueued.
        """
        try:
            app = Application.model_validate(event.obj)
            old = Application.model_validate(event.old) if event.old is not None else None
        except ValidationError as e:
            logger.warning("Ignoring malformed application", extra={"error": str(e)})
            return False

        if event.type == EVENT_ADDED:
            accepted = self._filter.application_create(app)
        elif event.type == EVENT_MODIFIED:
            accepted = old is None or self._filter.application_update(old, app)
        elif event.type == EVENT_DELETED:
            accepted = self._filter.application_delete(app)
        else:
            return False

        if accepted:
            self.queue.add(Request(namespace=app.metadata.namespace, name=app.metadata.name))
        return accepted

    def handle_resource_tracker_event(self, event: WatchEvent) -> bool:
        """Enqueue the owning application of a tracker, when it qualifies."""
        if event.type not in (EVENT_ADDED, EVENT_MODIFIED, EVENT_DELETED):
            return False
        try:
            tracker = ResourceTracker.model_validate(event.obj)
            old = ResourceTracker.model_validate(event.old) if event.old is not None else None
        except ValidationError as e:
            logger.warning("Ignoring malformed resource tracker", extra={"error": str(e)})
            return False

        request = self._filter.resource_tracker_request(tracker, old)
        if request is None:
            return False
        self.queue.add(request)
        return True

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Run workers until shutdown() is called."""
        logger.info(
            "Starting application controller",
            extra={
                "workers": self._config.concurrent_reconciles,
                "controller_version": self._config.controller_version,
            },
        )
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}")
            for i in range(self._config.concurrent_reconciles)
        ]

        await self._shutdown_event.wait()
        self.queue.shutdown()
        await asyncio.gather(*self._workers)
        logger.info("Application controller stopped")

    def shutdown(self) -> None:
        """Signal the controller to stop after in-flight passes finish."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _worker(self, index: int) -> None:
        while True:
            try:
                request = await self.queue.get()
            except QueueShutdown:
                return
            try:
                result = await self._reconciler.reconcile(request)
            except Exception as e:
                logger.exception(
                    "Unhandled exception in reconcile",
                    extra={"app": request.key, "worker": index},
                )
                result = ReconcileResult(error=e)
            try:
                self._apply_result(request, result)
            finally:
                self.queue.done(request)

    def _apply_result(self, request: Request, result: ReconcileResult) -> None:
        if result.error is not None:
            delay = self.queue.add_rate_limited(request)
            logger.debug(
                "Requeued after error",
                extra={"app": request.key, "delay_seconds": delay},
            )
        elif result.requeue_after:
            self.queue.forget(request)
            self.queue.add_after(request, result.requeue_after)
        else:
            self.queue.forget(request)
