"""Main entry point for the application controller.

Wires the Kubernetes backend into the reconciler and runs the controller
until SIGTERM or SIGINT:
- Applications and ResourceTrackers are watched on background threads
- Watch events are filtered and queued by the ApplicationController
- Workers reconcile queued applications concurrently
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .appfile import DefaultAppParser
from .config import ConfigurationError, ControllerConfig
from .controller import ApplicationController
from .kube_store import (
    PLURAL_APPLICATIONS,
    PLURAL_TRACKERS,
    KubernetesClusterClient,
    KubernetesObjectStore,
    KubernetesWatcher,
    create_api_client,
)
from .models import Application
from .reconciler import Reconciler
from .resourcekeeper import TrackedResourceKeeper

_RESERVED_RECORD_FIELDS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Extra fields passed via extra={}
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Kubernetes client
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def run_controller(config: ControllerConfig, logger: logging.Logger) -> int:
    """Build the controller against the configured cluster and run it."""
    try:
        api_client = create_api_client(in_cluster=config.in_cluster, context=config.kube_context)
    except Exception as e:
        logger.error(
            "Failed to load cluster credentials",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    store = KubernetesObjectStore(api_client)
    cluster = KubernetesClusterClient(api_client)

    def keeper_factory(app: Application) -> TrackedResourceKeeper:
        return TrackedResourceKeeper(store, cluster, app)

    reconciler = Reconciler(config, store, DefaultAppParser(), keeper_factory)
    controller = ApplicationController(config, reconciler)

    watchers = [
        KubernetesWatcher(
            api_client,
            PLURAL_APPLICATIONS,
            controller.handle_application_event,
            namespace=config.watch_namespace,
        ),
        KubernetesWatcher(
            api_client,
            PLURAL_TRACKERS,
            controller.handle_resource_tracker_event,
        ),
    ]

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        controller.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    for watcher in watchers:
        watcher.start(loop)

    try:
        await controller.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        for watcher in watchers:
            watcher.stop()

    logger.info("Controller stopped")
    return 0


async def main() -> int:
    """Run the controller.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = ControllerConfig.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting application controller",
        extra={
            "controller_version": config.controller_version,
            "concurrent_reconciles": config.concurrent_reconciles,
            "watch_namespace": config.watch_namespace or "*",
        },
    )
    return await run_controller(config, logger)


def run() -> None:
    """Entry point for the controller process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
