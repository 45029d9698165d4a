from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from reconciler.src.core import (
    Deleted,
    GroupVersionKind,
    ObjectIdentity,
    deep_copy,
    get_annotation,
    gvk_of,
    identity_of,
)
from reconciler.src.errors import DeleteAllNamespacesError
from reconciler.src.metadata import (
    SOURCE_PATH_KEY,
    ManagementMode,
    ignores_mutation,
    management_mode,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeclaredObject:
    """One desired object as declared by the source of truth for the current pass."""

    identity: ObjectIdentity
    gvk: GroupVersionKind
    manifest: Mapping[str, Any]
    source_path: str = ""
    management: ManagementMode = ManagementMode.ENABLED
    ignore_mutation: bool = False

    @classmethod
    def from_manifest(cls, obj: dict[str, Any]) -> DeclaredObject:
        manifest = deep_copy(obj)
        return cls(
            identity=identity_of(manifest),
            gvk=gvk_of(manifest),
            manifest=manifest,
            source_path=get_annotation(manifest, SOURCE_PATH_KEY) or "",
            management=management_mode(manifest),
            ignore_mutation=ignores_mutation(manifest),
        )

    def body(self) -> dict[str, Any]:
        """Return a private, mutable copy of the declared manifest."""
        return deep_copy(dict(self.manifest))


@dataclass(frozen=True)
class DeclaredDiff:
    added: frozenset[ObjectIdentity] = frozenset()
    removed: frozenset[ObjectIdentity] = frozenset()
    changed: frozenset[ObjectIdentity] = frozenset()
    gvks_added: frozenset[GroupVersionKind] = frozenset()
    gvks_removed: frozenset[GroupVersionKind] = frozenset()

    def empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


@dataclass(frozen=True)
class _Snapshot:
    objects: Mapping[ObjectIdentity, DeclaredObject] = field(
        default_factory=lambda: MappingProxyType({})
    )
    commit: str = ""


_NAMESPACE_GROUP_KIND = ("", "Namespace")


def _namespace_names(objects: Mapping[ObjectIdentity, DeclaredObject]) -> set[str]:
    return {
        identity.name
        for identity in objects
        if (identity.group, identity.kind) == _NAMESPACE_GROUP_KIND
    }


def deletes_all_namespaces(previous: set[str], current: set[str]) -> DeleteAllNamespacesError | None:
    """Return an error if *current* drops every Namespace from *previous*.

    A single previously declared Namespace may be removed; two or more may not
    all disappear at once, which almost always means the source was truncated
    or mis-rendered.
    """
    if len(previous) <= 1:
        return None
    if previous & current:
        return None
    return DeleteAllNamespacesError(sorted(previous))


class DeclaredResources:
    """Copy-on-write store of the declared snapshot plus the mutation-ignore set.

    Readers grab ``self._snapshot`` once and use it; writers build a complete
    new snapshot and swap the reference under ``_write_lock``.  The ignore set
    is a per-object cache that both the Supervisor and the Remediator update,
    so it is guarded by its own lock.
    """

    def __init__(self) -> None:
        self._snapshot = _Snapshot()
        self._write_lock = threading.Lock()
        self._ignored: dict[ObjectIdentity, dict[str, Any] | Deleted] = {}
        self._ignored_lock = threading.Lock()

    def update_declared(self, objects: Iterable[dict[str, Any]], commit: str = "") -> DeclaredDiff:
        """Replace the declared snapshot and return what changed.

        Raises :class:`DeleteAllNamespacesError` (leaving the current snapshot
        in place) if the update would prune every previously declared Namespace.
        Duplicate identities keep the last declaration.
        """
        new_objects: dict[ObjectIdentity, DeclaredObject] = {}
        for obj in objects:
            declared = DeclaredObject.from_manifest(obj)
            if declared.identity in new_objects:
                LOGGER.warning("Duplicate declaration of %s; keeping the last one", declared.identity)
            new_objects[declared.identity] = declared

        with self._write_lock:
            previous = self._snapshot
            error = deletes_all_namespaces(
                _namespace_names(previous.objects), _namespace_names(new_objects)
            )
            if error is not None:
                raise error

            previous_ids = set(previous.objects)
            current_ids = set(new_objects)
            changed = frozenset(
                identity
                for identity in previous_ids & current_ids
                if dict(previous.objects[identity].manifest) != dict(new_objects[identity].manifest)
            )
            previous_gvks = {obj.gvk for obj in previous.objects.values()}
            current_gvks = {obj.gvk for obj in new_objects.values()}

            self._snapshot = _Snapshot(objects=MappingProxyType(new_objects), commit=commit)

        return DeclaredDiff(
            added=frozenset(current_ids - previous_ids),
            removed=frozenset(previous_ids - current_ids),
            changed=changed,
            gvks_added=frozenset(current_gvks - previous_gvks),
            gvks_removed=frozenset(previous_gvks - current_gvks),
        )

    @property
    def commit(self) -> str:
        return self._snapshot.commit

    def declared_objects(self) -> list[DeclaredObject]:
        return list(self._snapshot.objects.values())

    def get(self, identity: ObjectIdentity) -> DeclaredObject | None:
        return self._snapshot.objects.get(identity)

    def declared_gvks(self) -> set[GroupVersionKind]:
        return {obj.gvk for obj in self._snapshot.objects.values()}

    def update_ignored(self, *objects: dict[str, Any] | Deleted) -> None:
        """Cache the given live objects (or tombstones) as mutation-ignored."""
        with self._ignored_lock:
            for obj in objects:
                cached = obj if isinstance(obj, Deleted) else deep_copy(obj)
                self._ignored[identity_of(obj)] = cached

    def delete_ignored(self, identity: ObjectIdentity) -> bool:
        with self._ignored_lock:
            return self._ignored.pop(identity, None) is not None

    def get_ignored(self, identity: ObjectIdentity) -> dict[str, Any] | Deleted | None:
        with self._ignored_lock:
            cached = self._ignored.get(identity)
        if cached is None or isinstance(cached, Deleted):
            return cached
        return deep_copy(cached)

    def ignored_objects(self) -> list[dict[str, Any] | Deleted]:
        with self._ignored_lock:
            items = sorted(self._ignored.items())
        return [obj if isinstance(obj, Deleted) else deep_copy(obj) for _, obj in items]
