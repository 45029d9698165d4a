from __future__ import annotations

from enum import Enum
from typing import Any

from reconciler.src.core import (
    ObjectIdentity,
    deep_copy,
    get_annotation,
    identity_of,
    set_annotation,
    set_label,
)

RESOURCE_MANAGER_KEY = "converge.dev/resource-manager"
RESOURCE_ID_KEY = "converge.dev/resource-id"
MANAGEMENT_MODE_KEY = "converge.dev/management"
OWNING_INVENTORY_KEY = "converge.dev/owning-inventory"
SYNC_TOKEN_KEY = "converge.dev/token"
SOURCE_PATH_KEY = "converge.dev/source-path"
DELETION_PROPAGATION_POLICY_KEY = "converge.dev/deletion-propagation-policy"

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "converge"
DECLARED_VERSION_LABEL = "converge.dev/declared-version"

# Shared client-side annotations understood by other apply tooling.
LIFECYCLE_MUTATION_KEY = "client.lifecycle.config.k8s.io/mutation"
IGNORE_MUTATION = "ignore"
LIFECYCLE_DELETE_KEY = "client.lifecycle.config.k8s.io/deletion"
PREVENT_DELETION = "detach"
DEPENDS_ON_KEY = "config.kubernetes.io/depends-on"

RECONCILER_FINALIZER = "converge.dev/reconciler"

MANAGEMENT_ANNOTATIONS: tuple[str, ...] = (
    RESOURCE_MANAGER_KEY,
    RESOURCE_ID_KEY,
    MANAGEMENT_MODE_KEY,
    OWNING_INVENTORY_KEY,
    SYNC_TOKEN_KEY,
    SOURCE_PATH_KEY,
)
MANAGEMENT_LABELS: tuple[str, ...] = (MANAGED_BY_LABEL, DECLARED_VERSION_LABEL)

_SERVER_METADATA_FIELDS = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
)


class ManagementMode(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class DeletionPropagationPolicy(str, Enum):
    FOREGROUND = "Foreground"
    ORPHAN = "Orphan"


def management_mode(obj: dict[str, Any]) -> ManagementMode:
    if get_annotation(obj, MANAGEMENT_MODE_KEY) == ManagementMode.DISABLED.value:
        return ManagementMode.DISABLED
    return ManagementMode.ENABLED


def ignores_mutation(obj: dict[str, Any]) -> bool:
    return get_annotation(obj, LIFECYCLE_MUTATION_KEY) == IGNORE_MUTATION


def prevents_deletion(obj: dict[str, Any]) -> bool:
    return get_annotation(obj, LIFECYCLE_DELETE_KEY) == PREVENT_DELETION


def resource_id(identity: ObjectIdentity) -> str:
    """Return the resource-id annotation value.

    ``group_kind_namespace_name`` for namespaced objects and
    ``group_kind_name`` for cluster-scoped ones, with group and kind lowercased.
    """
    prefix = f"{identity.group.lower()}_{identity.kind.lower()}"
    if identity.namespace:
        return f"{prefix}_{identity.namespace}_{identity.name}"
    return f"{prefix}_{identity.name}"


def prepare_for_apply(
    manifest: dict[str, Any],
    manager: str,
    inventory: str,
    token: str = "",
) -> dict[str, Any]:
    """Return a copy of *manifest* carrying every management annotation and label."""
    prepared = deep_copy(manifest)
    set_annotation(prepared, MANAGEMENT_MODE_KEY, ManagementMode.ENABLED.value)
    set_annotation(prepared, RESOURCE_MANAGER_KEY, manager)
    set_annotation(prepared, RESOURCE_ID_KEY, resource_id(identity_of(prepared)))
    set_annotation(prepared, OWNING_INVENTORY_KEY, inventory)
    if token:
        set_annotation(prepared, SYNC_TOKEN_KEY, token)
    set_label(prepared, MANAGED_BY_LABEL, MANAGED_BY_VALUE)
    api_version = str(prepared.get("apiVersion", ""))
    set_label(prepared, DECLARED_VERSION_LABEL, api_version.rpartition("/")[2])
    return prepared


def has_management_metadata(obj: dict[str, Any]) -> bool:
    meta = obj.get("metadata") or {}
    annotations = meta.get("annotations") or {}
    labels = meta.get("labels") or {}
    return any(key in annotations for key in MANAGEMENT_ANNOTATIONS) or any(
        labels.get(key) is not None for key in MANAGEMENT_LABELS
    )


def management_removal_patch(obj: dict[str, Any]) -> dict[str, Any] | None:
    """Build a JSON merge patch that strips management metadata from *obj*.

    Only keys actually present are nulled, so the patch for an object that
    was already stripped is ``None`` and abandoning twice is a no-op.  The
    lifecycle annotations and all user-authored keys are left alone.
    """
    meta = obj.get("metadata") or {}
    annotations = meta.get("annotations") or {}
    labels = meta.get("labels") or {}

    annotation_patch = {key: None for key in MANAGEMENT_ANNOTATIONS if key in annotations}
    label_patch = {key: None for key in MANAGEMENT_LABELS if key in labels}
    if not annotation_patch and not label_patch:
        return None

    patch_meta: dict[str, Any] = {}
    if annotation_patch:
        patch_meta["annotations"] = annotation_patch
    if label_patch:
        patch_meta["labels"] = label_patch
    return {"metadata": patch_meta}


def overlay_declared_metadata(
    live: dict[str, Any], declared: dict[str, Any]
) -> dict[str, Any]:
    """Return the live object with the declared labels and annotations merged on top.

    Used for mutation-ignored objects: the body sent to the cluster keeps every
    live field so nothing a third party changed is reverted, while the
    management metadata still converges.
    """
    merged = sanitize(live)
    merged_meta = merged.setdefault("metadata", {})
    declared_meta = declared.get("metadata") or {}
    for field_name in ("labels", "annotations"):
        values = dict(merged_meta.get(field_name) or {})
        values.update(declared_meta.get(field_name) or {})
        if values:
            merged_meta[field_name] = values
    merged["apiVersion"] = declared.get("apiVersion", merged.get("apiVersion"))
    return merged


def sanitize(obj: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *obj* without ``status`` and server-populated metadata."""
    clean = deep_copy(obj)
    clean.pop("status", None)
    meta = clean.get("metadata") or {}
    for field_name in _SERVER_METADATA_FIELDS:
        meta.pop(field_name, None)
    return clean


def is_subset(declared: Any, live: Any) -> bool:
    """Return True when every field set in *declared* has the same value in *live*.

    Fields the API server defaults or populates are ignored because only the
    declared side is walked.
    """
    if isinstance(declared, dict):
        if not isinstance(live, dict):
            return False
        return all(
            key in live and is_subset(value, live[key]) for key, value in declared.items()
        )
    if isinstance(declared, list):
        if not isinstance(live, list) or len(declared) != len(live):
            return False
        return all(is_subset(d, v) for d, v in zip(declared, live, strict=True))
    return declared == live


def depends_on(obj: dict[str, Any]) -> list[ObjectIdentity]:
    """Parse the ``config.kubernetes.io/depends-on`` annotation.

    Each reference is ``<group>/namespaces/<namespace>/<kind>/<name>`` for a
    namespaced object or ``<group>/<kind>/<name>`` for a cluster-scoped one.
    Malformed references raise ``ValueError``.
    """
    raw = get_annotation(obj, DEPENDS_ON_KEY)
    if not raw:
        return []
    dependencies: list[ObjectIdentity] = []
    for reference in raw.split(","):
        reference = reference.strip()
        if not reference:
            continue
        parts = reference.split("/")
        if len(parts) == 5 and parts[1] == "namespaces":
            group, _, namespace, kind, name = parts
        elif len(parts) == 3:
            group, kind, name = parts
            namespace = ""
        else:
            raise ValueError(f"invalid {DEPENDS_ON_KEY} reference: {reference!r}")
        dependencies.append(
            ObjectIdentity(group=group, kind=kind, namespace=namespace, name=name)
        )
    return dependencies
