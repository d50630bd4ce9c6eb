"""Cluster mocks for reconcile-loop testing.

Provides in-memory stand-ins for the API server and the workload cluster so
the full reconcile loop can run without a cluster.

Key Features:
- API-server semantics: resource versions, generations, finalizer-gated
  deletion
- Held deletions to exercise garbage-collection waits
- Error injection for status writes, finalizer updates and applies
- Scripted workflow and resource keeper for exact state sequences

Usage:
    from cluster_mock import FakeCluster, InMemoryObjectStore, make_application

    store = InMemoryObjectStore()
    cluster = FakeCluster()
    store.add_application(make_application("web"))
"""

from typing import Any

from appcontroller.models import Application

from .cluster import FakeCluster
from .scripted import ScriptedKeeper, ScriptedWorkflow
from .store import InMemoryObjectStore


def config_map(name: str, namespace: str = "default", **data: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace},
        "data": dict(data) or {"key": "value"},
    }


def make_application(
    name: str = "web",
    namespace: str = "default",
    components: list[dict[str, Any]] | None = None,
    **metadata: Any,
) -> Application:
    """Build an application whose components carry ready ConfigMap objects."""
    if components is None:
        components = [
            {
                "name": name,
                "type": "webservice",
                "properties": {"objects": [config_map(f"{name}-config", namespace)]},
            }
        ]
    return Application.model_validate(
        {
            "metadata": {"name": name, "namespace": namespace, **metadata},
            "spec": {"components": components},
        }
    )


__all__ = [
    "FakeCluster",
    "InMemoryObjectStore",
    "ScriptedKeeper",
    "ScriptedWorkflow",
    "config_map",
    "make_application",
]
