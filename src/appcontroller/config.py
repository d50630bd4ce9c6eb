"""Controller configuration with validation.

All tuning knobs of the reconcile loop live on one frozen structure that is
handed to the reconciler at construction time, so two controllers with
different settings can coexist in the same process.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Version of this controller, compared against the requirement annotation
CONTROLLER_VERSION = os.environ.get("CONTROLLER_VERSION", "v1.3.0")

# Configuration constants with documented bounds
DEFAULT_CONCURRENT_RECONCILES = 4
MAX_CONCURRENT_RECONCILES = 64

DEFAULT_APP_REVISION_LIMIT = 10
MAX_APP_REVISION_LIMIT = 1000

DEFAULT_RECONCILE_TIMEOUT_SECONDS = 180.0  # 3 minutes per pass
DEFAULT_RESYNC_PERIOD_SECONDS = 300.0
MIN_RESYNC_PERIOD_SECONDS = 5.0
DEFAULT_GC_BACKOFF_SECONDS = 3.0

# Per-key error backoff used by the work queue
DEFAULT_RATE_LIMIT_BASE_DELAY_SECONDS = 0.005
DEFAULT_RATE_LIMIT_MAX_DELAY_SECONDS = 1000.0

VALID_VERSION_PATTERN = r"^v?[0-9]+(\.[0-9]+){0,2}([-+][0-9A-Za-z.-]+)?$"


@dataclass(frozen=True)
class ControllerConfig:
    """Application controller configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-reconcile.
    """

    controller_version: str = CONTROLLER_VERSION

    # Concurrency and retention
    concurrent_reconciles: int = DEFAULT_CONCURRENT_RECONCILES
    app_revision_limit: int = DEFAULT_APP_REVISION_LIMIT

    # Timing
    reconcile_timeout_seconds: float = DEFAULT_RECONCILE_TIMEOUT_SECONDS
    resync_period_seconds: float = DEFAULT_RESYNC_PERIOD_SECONDS
    gc_backoff_seconds: float = DEFAULT_GC_BACKOFF_SECONDS
    rate_limit_base_delay_seconds: float = DEFAULT_RATE_LIMIT_BASE_DELAY_SECONDS
    rate_limit_max_delay_seconds: float = DEFAULT_RATE_LIMIT_MAX_DELAY_SECONDS

    # Fuse the finalizer-add pass and the post-workflow phase transition
    # into a single pass. Off by default: two passes is the safe behavior.
    enable_reconcile_loop_reduction: bool = False

    # Only deletion-bearing ResourceTracker notifications enqueue the owner
    enable_resource_tracker_delete_only_trigger: bool = True

    # Skip applications that carry no controller requirement annotation
    ignore_app_without_controller_requirement: bool = False

    # Cluster access
    watch_namespace: str | None = None
    in_cluster: bool = True
    kube_context: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if not self.controller_version:
            errors.append("CONTROLLER_VERSION is required")
        elif not re.match(VALID_VERSION_PATTERN, self.controller_version):
            errors.append(
                f"CONTROLLER_VERSION must look like a version: {self.controller_version}"
            )

        if not (1 <= self.concurrent_reconciles <= MAX_CONCURRENT_RECONCILES):
            errors.append(
                f"CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES}"
            )

        if not (0 <= self.app_revision_limit <= MAX_APP_REVISION_LIMIT):
            errors.append(
                f"APP_REVISION_LIMIT must be between 0 and {MAX_APP_REVISION_LIMIT}"
            )

        if self.reconcile_timeout_seconds <= 0:
            errors.append("RECONCILE_TIMEOUT must be positive")

        if self.resync_period_seconds < MIN_RESYNC_PERIOD_SECONDS:
            errors.append(f"RESYNC_PERIOD must be at least {MIN_RESYNC_PERIOD_SECONDS} seconds")

        if self.gc_backoff_seconds <= 0:
            errors.append("GC_BACKOFF must be positive")

        if self.rate_limit_base_delay_seconds <= 0:
            errors.append("rate limit base delay must be positive")
        elif self.rate_limit_max_delay_seconds < self.rate_limit_base_delay_seconds:
            errors.append("rate limit max delay must not be below the base delay")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> ControllerConfig:
        """Load configuration from environment variables.

        Environment Variables:
            CONTROLLER_VERSION: Version matched against app requirements
            CONCURRENT_RECONCILES: Max applications reconciled at once (default: 4)
            APP_REVISION_LIMIT: Historical revisions kept per app (default: 10)
            RECONCILE_TIMEOUT: Deadline for one pass in seconds (default: 180)
            RESYNC_PERIOD: Steady-state requeue interval in seconds (default: 300)
            GC_BACKOFF: Requeue delay while deletions are in flight (default: 3)
            ENABLE_RECONCILE_LOOP_REDUCTION: Fuse phase transitions (default: false)
            ENABLE_RESOURCE_TRACKER_DELETE_ONLY_TRIGGER: (default: true)
            IGNORE_APP_WITHOUT_CONTROLLER_REQUIREMENT: (default: false)
            WATCH_NAMESPACE: Restrict watches to one namespace (default: all)
            IN_CLUSTER: Use in-cluster service account config (default: true)
            KUBE_CONTEXT: kubeconfig context when not in cluster
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            controller_version=os.environ.get("CONTROLLER_VERSION", CONTROLLER_VERSION),
            concurrent_reconciles=get_int("CONCURRENT_RECONCILES", DEFAULT_CONCURRENT_RECONCILES),
            app_revision_limit=get_int("APP_REVISION_LIMIT", DEFAULT_APP_REVISION_LIMIT),
            reconcile_timeout_seconds=get_float(
                "RECONCILE_TIMEOUT", DEFAULT_RECONCILE_TIMEOUT_SECONDS
            ),
            resync_period_seconds=get_float("RESYNC_PERIOD", DEFAULT_RESYNC_PERIOD_SECONDS),
            gc_backoff_seconds=get_float("GC_BACKOFF", DEFAULT_GC_BACKOFF_SECONDS),
            enable_reconcile_loop_reduction=get_bool("ENABLE_RECONCILE_LOOP_REDUCTION", False),
            enable_resource_tracker_delete_only_trigger=get_bool(
                "ENABLE_RESOURCE_TRACKER_DELETE_ONLY_TRIGGER", True
            ),
            ignore_app_without_controller_requirement=get_bool(
                "IGNORE_APP_WITHOUT_CONTROLLER_REQUIREMENT", False
            ),
            watch_namespace=os.environ.get("WATCH_NAMESPACE") or None,
            in_cluster=get_bool("IN_CLUSTER", True),
            kube_context=os.environ.get("KUBE_CONTEXT") or None,
        )
