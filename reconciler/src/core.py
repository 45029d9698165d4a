from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

ROOT_SCOPE = ":root"
ROOT_SYNC_NAMESPACE = "converge-system"
SYNC_GROUP = "converge.dev"
ROOT_SYNC_KIND = "RootSync"
REPO_SYNC_KIND = "RepoSync"


@dataclass(frozen=True, order=True)
class GroupVersionKind:
    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> GroupVersionKind:
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


@dataclass(frozen=True, order=True)
class ObjectIdentity:
    """The universal key for a cluster object: ``(group, kind, namespace, name)``.

    The API version is deliberately excluded so that the same object served
    under two versions is still one identity.
    """

    group: str
    kind: str
    namespace: str
    name: str

    def object_id(self) -> str:
        """Return the ``namespace_name_group_kind`` form stored in the inventory."""
        return f"{self.namespace}_{self.name}_{self.group}_{self.kind}"

    @classmethod
    def parse_object_id(cls, value: str) -> ObjectIdentity:
        parts = value.split("_")
        if len(parts) != 4:
            raise ValueError(f"malformed object id: {value!r}")
        namespace, name, group, kind = parts
        return cls(group=group, kind=kind, namespace=namespace, name=name)

    def __str__(self) -> str:
        group_kind = f"{self.group}/{self.kind}" if self.group else self.kind
        if self.namespace:
            return f"{group_kind}, {self.namespace}/{self.name}"
        return f"{group_kind}, /{self.name}"


@dataclass(frozen=True)
class Deleted:
    """Tombstone for an object that existed and was then removed from the cluster.

    Queued by watchers in place of the object on ``DELETED`` events and kept in
    the ignore set for mutation-ignored objects, so consumers can tell
    "existed, then removed" apart from "never existed".
    """

    object: dict[str, Any]

    @property
    def identity(self) -> ObjectIdentity:
        return identity_of(self.object)


def gvk_of(obj: dict[str, Any]) -> GroupVersionKind:
    return GroupVersionKind.from_api_version(
        str(obj.get("apiVersion", "")), str(obj.get("kind", ""))
    )


def identity_of(obj: dict[str, Any] | Deleted) -> ObjectIdentity:
    if isinstance(obj, Deleted):
        return obj.identity
    meta = obj.get("metadata") or {}
    return ObjectIdentity(
        group=gvk_of(obj).group,
        kind=str(obj.get("kind", "")),
        namespace=str(meta.get("namespace") or ""),
        name=str(meta.get("name") or ""),
    )


def scope_namespace(scope: str) -> str:
    """Return the namespace holding the sync object for *scope*."""
    if scope == ROOT_SCOPE:
        return ROOT_SYNC_NAMESPACE
    return scope


def resource_manager(scope: str, sync_name: str) -> str:
    """Return the manager annotation value identifying one reconciler.

    Root reconcilers are ``:root_<name>``; namespace reconcilers are
    ``<namespace>_<name>``.
    """
    return f"{scope}_{sync_name}"


def inventory_id(scope: str, sync_name: str) -> str:
    return f"{scope_namespace(scope)}_{sync_name}"


def deep_copy(obj: dict[str, Any]) -> dict[str, Any]:
    return copy.deepcopy(obj)


def get_annotation(obj: dict[str, Any], key: str) -> str | None:
    annotations = (obj.get("metadata") or {}).get("annotations") or {}
    value = annotations.get(key)
    return None if value is None else str(value)


def get_label(obj: dict[str, Any], key: str) -> str | None:
    labels = (obj.get("metadata") or {}).get("labels") or {}
    value = labels.get(key)
    return None if value is None else str(value)


def set_annotation(obj: dict[str, Any], key: str, value: str) -> None:
    meta = obj.setdefault("metadata", {})
    annotations = meta.get("annotations") or {}
    annotations[key] = value
    meta["annotations"] = annotations


def set_label(obj: dict[str, Any], key: str, value: str) -> None:
    meta = obj.setdefault("metadata", {})
    labels = meta.get("labels") or {}
    labels[key] = value
    meta["labels"] = labels


def sync_identity(scope: str, sync_name: str) -> ObjectIdentity:
    """Return the identity of the sync object that owns a reconciler's inventory."""
    kind = ROOT_SYNC_KIND if scope == ROOT_SCOPE else REPO_SYNC_KIND
    return ObjectIdentity(
        group=SYNC_GROUP, kind=kind, namespace=scope_namespace(scope), name=sync_name
    )
