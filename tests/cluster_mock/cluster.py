"""Fake cluster for workloads dispatched on behalf of applications.

Deletion is immediate unless a resource is held, in which case it stays
present (terminating) until released. Apply failures can be injected by
object name.
"""

from __future__ import annotations

import copy
from collections import Counter
from typing import Any

from appcontroller.models import ResourceReference

Identity = tuple[str, str, str, str, str]


class FakeCluster:
    """ClusterClient keeping objects in a dictionary keyed by identity."""

    def __init__(self) -> None:
        self.objects: dict[Identity, dict[str, Any]] = {}
        self.apply_counts: Counter[Identity] = Counter()
        self.delete_calls: list[Identity] = []
        self.held: set[Identity] = set()
        self.terminating: set[Identity] = set()
        self.fail_apply: set[str] = set()

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def add(self, manifest: dict[str, Any]) -> Identity:
        identity = ResourceReference.from_manifest(manifest).identity()
        self.objects[identity] = copy.deepcopy(manifest)
        return identity

    def has(self, ref: ResourceReference) -> bool:
        return ref.identity() in self.objects

    def hold(self, ref: ResourceReference) -> None:
        """Keep ref present after deletion until release() is called."""
        self.held.add(ref.identity())

    def release(self, ref: ResourceReference) -> None:
        identity = ref.identity()
        self.held.discard(identity)
        if identity in self.terminating:
            self.terminating.discard(identity)
            self.objects.pop(identity, None)

    def edit(self, ref: ResourceReference, **fields: Any) -> None:
        """Simulate an out-of-band change to a live object."""
        self.objects[ref.identity()].update(fields)

    # -------------------------------------------------------------------------
    # ClusterClient
    # -------------------------------------------------------------------------

    async def get(self, ref: ResourceReference) -> dict[str, Any] | None:
        obj = self.objects.get(ref.identity())
        return copy.deepcopy(obj) if obj is not None else None

    async def apply(self, manifest: dict[str, Any]) -> dict[str, Any]:
        ref = ResourceReference.from_manifest(manifest)
        if ref.name in self.fail_apply:
            raise RuntimeError(f"admission webhook denied {ref.display_name()}")
        identity = ref.identity()
        self.objects[identity] = copy.deepcopy(manifest)
        self.apply_counts[identity] += 1
        return copy.deepcopy(manifest)

    async def delete(self, ref: ResourceReference) -> None:
        identity = ref.identity()
        self.delete_calls.append(identity)
        if identity not in self.objects:
            return
        if identity in self.held:
            self.terminating.add(identity)
            return
        del self.objects[identity]
