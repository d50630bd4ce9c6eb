"""Finalizer helpers for objects carrying ObjectMeta."""

from __future__ import annotations

from .models import RESOURCE_TRACKER_FINALIZER, ObjectMeta

__all__ = [
    "RESOURCE_TRACKER_FINALIZER",
    "add_finalizer",
    "finalizer_exists",
    "remove_finalizer",
]


def finalizer_exists(metadata: ObjectMeta, finalizer: str) -> bool:
    return finalizer in metadata.finalizers


def add_finalizer(metadata: ObjectMeta, finalizer: str) -> None:
    if finalizer not in metadata.finalizers:
        metadata.finalizers.append(finalizer)


def remove_finalizer(metadata: ObjectMeta, finalizer: str) -> None:
    metadata.finalizers = [f for f in metadata.finalizers if f != finalizer]
