"""Storage item operations on a component's storage trait.

A storage trait groups mounted volumes by type, each a list of entries:

    storage:
      configMap:
        - name: web-etc-nginx-nginx.conf
          mountPath: /etc/nginx
          data:
            nginx.conf: "..."

The functions here read and edit single keyed items inside one mount path
entry. They mutate the component in place; persisting it is the caller's
job.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from .models import ApplicationComponent, ApplicationTrait

TRAIT_STORAGE = "storage"
TYPE_CONFIG_MAP = "configMap"
TYPE_SECRET = "secret"
KEY_MOUNT_PATH = "mountPath"
KEY_DATA = "data"

_MODEL_CONFIG = {"populate_by_name": True}


# =============================================================================
# Errors
# =============================================================================


class StorageItemError(Exception):
    """Base class for storage item errors. Carries an API error code."""

    code = 12000
    status = 400
    message = "storage item error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class StorageTraitNotFoundError(StorageItemError):
    code = 12000
    message = "storage trait does not exist"


class StorageDataNotFoundError(StorageItemError):
    code = 12001
    message = "storage trait data does not exist"


class StorageMountPathNotFoundError(StorageItemError):
    code = 12002
    message = "storage trait mount path does not exist"


class StorageTypeNotFoundError(StorageItemError):
    code = 12003
    message = "storage trait type does not exist"


class StorageTypeNotSupportedError(StorageItemError):
    code = 12004
    message = "storage trait type not supported"


class StorageKeyExistsError(StorageItemError):
    code = 12005
    message = "storage trait data already exists"


class StorageTypeAssertionError(StorageItemError):
    code = 12006
    message = "unexpected storage trait property shape"


# =============================================================================
# Request / response models
# =============================================================================


class StorageItemOptions(BaseModel):
    model_config = _MODEL_CONFIG

    type: str = TYPE_CONFIG_MAP
    name: str = ""
    mount_path: str = Field(alias="mountPath")
    data_key: str = Field(alias="dataKey")


class StorageItemRequest(BaseModel):
    model_config = _MODEL_CONFIG

    type: str = TYPE_CONFIG_MAP
    name: str = ""
    mount_path: str = Field(alias="mountPath")
    data_key: str = Field(alias="dataKey")
    data_value: str = Field(default="", alias="dataValue")


class StorageItemResponse(BaseModel):
    model_config = _MODEL_CONFIG

    app_primary_key: str = Field(alias="appPrimaryKey")
    component_name: str = Field(alias="componentName")
    mount_path: str = Field(alias="mountPath")
    key: str
    type: str
    value: str = ""


def default_item_name(component: str, mount_path: str, data_key: str) -> str:
    """Resource name used when a request leaves the name empty."""
    return component + mount_path.replace("/", "-") + data_key


# =============================================================================
# Helpers
# =============================================================================


def _storage_trait(component: ApplicationComponent) -> ApplicationTrait | None:
    for trait in component.traits:
        if trait.type == TRAIT_STORAGE:
            return trait
    return None


def _entries(properties: dict[str, Any], storage_type: str) -> list[dict[str, Any]]:
    entries = properties.get(storage_type)
    if entries is None:
        raise StorageTypeNotFoundError()
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise StorageTypeAssertionError()
    return entries


def _entry_data(entry: dict[str, Any]) -> dict[str, Any]:
    data = entry.get(KEY_DATA)
    if data is None:
        raise StorageDataNotFoundError()
    if not isinstance(data, dict):
        raise StorageTypeAssertionError()
    return data


def _find_entry(entries: list[dict[str, Any]], mount_path: str) -> dict[str, Any] | None:
    for entry in entries:
        if KEY_MOUNT_PATH not in entry:
            raise StorageMountPathNotFoundError()
        if entry[KEY_MOUNT_PATH] == mount_path:
            return entry
    return None


def _new_entry(request: StorageItemRequest) -> dict[str, Any]:
    return {
        "name": request.name,
        KEY_MOUNT_PATH: request.mount_path,
        KEY_DATA: {request.data_key: request.data_value},
    }


# =============================================================================
# Operations
# =============================================================================


def detail_storage_item(
    app_primary_key: str,
    component: ApplicationComponent,
    options: StorageItemOptions,
) -> StorageItemResponse:
    """Return the value stored under one key of a mount path."""
    trait = _storage_trait(component)
    if trait is None:
        raise StorageTraitNotFoundError()

    entries = _entries(trait.properties, options.type)
    entry = _find_entry(entries, options.mount_path)
    if entry is None:
        raise StorageDataNotFoundError()
    data = _entry_data(entry)
    if options.data_key not in data:
        raise StorageDataNotFoundError()
    value = data[options.data_key]
    if not isinstance(value, str):
        raise StorageTypeAssertionError()

    return StorageItemResponse(
        app_primary_key=app_primary_key,
        component_name=component.name,
        mount_path=options.mount_path,
        key=options.data_key,
        type=options.type,
        value=value,
    )


def create_storage_item(
    component: ApplicationComponent, request: StorageItemRequest
) -> ApplicationTrait:
    """Add a keyed item, creating the trait or mount path entry as needed.

    Raises:
        StorageKeyExistsError: The key is already present under the mount path.
        StorageTypeNotSupportedError: A new entry of a type other than configMap.
    """
    if not request.name:
        request = request.model_copy(
            update={
                "name": default_item_name(component.name, request.mount_path, request.data_key)
            }
        )

    trait = _storage_trait(component)
    if trait is None:
        if request.type != TYPE_CONFIG_MAP:
            raise StorageTypeNotSupportedError()
        trait = ApplicationTrait(
            type=TRAIT_STORAGE, properties={request.type: [_new_entry(request)]}
        )
        component.traits.append(trait)
        return trait

    if request.type not in trait.properties:
        if request.type != TYPE_CONFIG_MAP:
            raise StorageTypeNotSupportedError()
        trait.properties[request.type] = [_new_entry(request)]
        return trait

    entries = _entries(trait.properties, request.type)
    entry = _find_entry(entries, request.mount_path)
    if entry is None:
        entries.append(_new_entry(request))
        return trait

    data = entry.setdefault(KEY_DATA, {})
    if not isinstance(data, dict):
        raise StorageTypeAssertionError()
    if request.data_key in data:
        raise StorageKeyExistsError()
    data[request.data_key] = request.data_value
    return trait


def update_storage_item(
    component: ApplicationComponent, request: StorageItemRequest
) -> ApplicationTrait:
    """Replace the value of an existing key. Never creates anything."""
    trait = _storage_trait(component)
    if trait is None:
        raise StorageTraitNotFoundError()

    entries = _entries(trait.properties, request.type)
    entry = _find_entry(entries, request.mount_path)
    if entry is None:
        raise StorageMountPathNotFoundError()
    data = _entry_data(entry)
    if request.data_key not in data:
        raise StorageDataNotFoundError()
    data[request.data_key] = request.data_value
    return trait


def delete_storage_item(component: ApplicationComponent, options: StorageItemOptions) -> None:
    trait = _storage_trait(component)
    if trait is None:
        raise StorageTraitNotFoundError()

    entries = _entries(trait.properties, options.type)
    entry = _find_entry(entries, options.mount_path)
    if entry is None:
        raise StorageDataNotFoundError()
    data = _entry_data(entry)
    if options.data_key not in data:
        raise StorageDataNotFoundError()
    del data[options.data_key]


# =============================================================================
# Mount tree
# =============================================================================


@dataclass
class MountNode:
    path: str
    name: str
    children: list[MountNode] = field(default_factory=list)


def build_mount_tree(pairs: Iterable[tuple[str, MountNode]]) -> list[MountNode]:
    """Assemble nodes into a forest from (parent_path, node) pairs.

    A node whose parent path is empty or unknown becomes a root. Children keep
    their input order.
    """
    pairs = list(pairs)
    known = {node.path for _, node in pairs}
    children: dict[str, list[MountNode]] = defaultdict(list)
    roots: list[MountNode] = []

    for parent, node in pairs:
        if parent and parent in known and parent != node.path:
            children[parent].append(node)
        else:
            roots.append(node)

    # Iterative attach; a parent cycle leaves its members unreachable from roots
    stack = list(roots)
    seen: set[int] = set()
    while stack:
        node = stack.pop()
        if id(node) in seen:
            continue
        seen.add(id(node))
        node.children = list(children.get(node.path, []))
        stack.extend(node.children)
    return roots
