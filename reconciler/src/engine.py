from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException

from reconciler.src.conflict import ConflictHandler, manager_of
from reconciler.src.core import (
    GroupVersionKind,
    ObjectIdentity,
    get_annotation,
    gvk_of,
    identity_of,
)
from reconciler.src.events import (
    AnnotationPreventedDeletion,
    ApplyEvent,
    ApplyEventStatus,
    ApplyRunCause,
    CauseStrategy,
    DependencyPreventedActuation,
    EngineOptions,
    ErrorEvent,
    Event,
    InventoryInfo,
    NamespaceInUse,
    Phase,
    PolicyPreventedActuation,
    PruneEvent,
    PruneEventStatus,
    Relationship,
    UnknownTypeCause,
    WaitEvent,
    WaitEventStatus,
)
from reconciler.src.kube import TypeNotServedError
from reconciler.src.metadata import (
    LIFECYCLE_DELETE_KEY,
    OWNING_INVENTORY_KEY,
    PREVENT_DELETION,
    depends_on,
    prevents_deletion,
)

LOGGER = logging.getLogger(__name__)

INVENTORY_SUFFIX = "-inventory"
INVENTORY_ID_LABEL = "converge.dev/inventory-id"
CONFIG_MAP_GVK = GroupVersionKind(group="", version="v1", kind="ConfigMap")

_CRD_GROUP_KIND = ("apiextensions.k8s.io", "CustomResourceDefinition")
_NAMESPACE_GROUP_KIND = ("", "Namespace")

# Objects the control plane creates in every namespace or derives from others.
_NAMESPACE_DEFAULTS = frozenset(
    {("", "ServiceAccount", "default"), ("", "ConfigMap", "kube-root-ca.crt")}
)
_GENERATED_GROUP_KINDS = frozenset(
    {
        ("", "Event"),
        ("events.k8s.io", "Event"),
        ("", "Endpoints"),
        ("discovery.k8s.io", "EndpointSlice"),
        ("metrics.k8s.io", "PodMetrics"),
    }
)

_SUCCEEDED = "Succeeded"
_FAILED = "Failed"
_SKIPPED = "Skipped"
_PENDING = "Pending"
_TIMEOUT = "Timeout"


def _group_kind(identity: ObjectIdentity) -> tuple[str, str]:
    return identity.group, identity.kind


def _rank(identity: ObjectIdentity) -> int:
    """CRDs first, then Namespaces, then everything else."""
    if _group_kind(identity) == _CRD_GROUP_KIND:
        return 0
    if _group_kind(identity) == _NAMESPACE_GROUP_KIND:
        return 1
    return 2


def _conditions(status: dict[str, Any]) -> dict[str, dict[str, Any]]:
    return {
        str(condition.get("type")): condition
        for condition in status.get("conditions") or []
        if isinstance(condition, dict)
    }


def _condition_true(conditions: dict[str, dict[str, Any]], name: str) -> bool:
    return str((conditions.get(name) or {}).get("status")) == "True"


def compute_reconcile_status(obj: dict[str, Any]) -> WaitEventStatus:
    """Classify a live object as reconciled, still progressing or failed.

    A small subset of the well-known kstatus rules: a pending deletion or an
    unobserved generation is in progress; workload kinds compare ready
    replicas with the desired count; CRDs need ``Established``; anything with
    a ``Ready`` condition follows it; everything else is current as soon as it
    exists.
    """
    meta = obj.get("metadata") or {}
    status = obj.get("status") or {}
    spec = obj.get("spec") or {}
    if meta.get("deletionTimestamp"):
        return WaitEventStatus.RECONCILE_PENDING

    generation = meta.get("generation")
    observed = status.get("observedGeneration")
    if generation is not None and observed is not None and observed < generation:
        return WaitEventStatus.RECONCILE_PENDING

    conditions = _conditions(status)
    if _condition_true(conditions, "Stalled") or _condition_true(conditions, "Failed"):
        return WaitEventStatus.RECONCILE_FAILED

    group_kind = (gvk_of(obj).group, str(obj.get("kind", "")))
    if group_kind == ("apps", "Deployment"):
        progressing = conditions.get("Progressing") or {}
        if progressing.get("reason") == "ProgressDeadlineExceeded":
            return WaitEventStatus.RECONCILE_FAILED
        desired = int(spec.get("replicas", 1))
        if int(status.get("updatedReplicas") or 0) < desired:
            return WaitEventStatus.RECONCILE_PENDING
        if int(status.get("availableReplicas") or 0) < desired:
            return WaitEventStatus.RECONCILE_PENDING
        return WaitEventStatus.RECONCILE_SUCCESSFUL
    if group_kind == ("apps", "StatefulSet"):
        desired = int(spec.get("replicas", 1))
        if int(status.get("readyReplicas") or 0) < desired:
            return WaitEventStatus.RECONCILE_PENDING
        return WaitEventStatus.RECONCILE_SUCCESSFUL
    if group_kind == ("apps", "DaemonSet"):
        desired = int(status.get("desiredNumberScheduled") or 0)
        if int(status.get("numberAvailable") or 0) < desired:
            return WaitEventStatus.RECONCILE_PENDING
        return WaitEventStatus.RECONCILE_SUCCESSFUL
    if group_kind == ("batch", "Job"):
        if _condition_true(conditions, "Complete"):
            return WaitEventStatus.RECONCILE_SUCCESSFUL
        return WaitEventStatus.RECONCILE_PENDING
    if group_kind == ("", "Pod"):
        phase = status.get("phase")
        if phase == "Failed":
            return WaitEventStatus.RECONCILE_FAILED
        if phase == "Succeeded" or (phase == "Running" and _condition_true(conditions, "Ready")):
            return WaitEventStatus.RECONCILE_SUCCESSFUL
        return WaitEventStatus.RECONCILE_PENDING
    if group_kind == _CRD_GROUP_KIND:
        if _condition_true(conditions, "Established"):
            return WaitEventStatus.RECONCILE_SUCCESSFUL
        return WaitEventStatus.RECONCILE_PENDING
    if group_kind == _NAMESPACE_GROUP_KIND:
        if status.get("phase", "Active") == "Active":
            return WaitEventStatus.RECONCILE_SUCCESSFUL
        return WaitEventStatus.RECONCILE_PENDING

    if "Ready" in conditions:
        if _condition_true(conditions, "Ready"):
            return WaitEventStatus.RECONCILE_SUCCESSFUL
        return WaitEventStatus.RECONCILE_PENDING
    return WaitEventStatus.RECONCILE_SUCCESSFUL


def order_for_apply(objects: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Order objects so that CRDs, Namespaces and depends-on targets come first.

    Stable otherwise.  Objects caught in a dependency cycle keep their
    relative order at the end.
    """
    ranked = sorted(objects, key=lambda obj: _rank(identity_of(obj)))
    by_id = {identity_of(obj): obj for obj in ranked}
    emitted: set[ObjectIdentity] = set()
    ordered: list[dict[str, Any]] = []

    remaining = list(ranked)
    while remaining:
        progressed = False
        deferred: list[dict[str, Any]] = []
        for obj in remaining:
            try:
                deps = [dep for dep in depends_on(obj) if dep in by_id]
            except ValueError:
                deps = []
            if all(dep in emitted for dep in deps):
                ordered.append(obj)
                emitted.add(identity_of(obj))
                progressed = True
            else:
                deferred.append(obj)
        if not progressed:
            ordered.extend(deferred)
            break
        remaining = deferred
    return ordered


@dataclass
class _RunState:
    actuation: dict[ObjectIdentity, str] = field(default_factory=dict)
    reconcile: dict[ObjectIdentity, str] = field(default_factory=dict)
    retained: dict[ObjectIdentity, str] = field(default_factory=dict)
    pruning: dict[ObjectIdentity, str] = field(default_factory=dict)


class KubeApplyEngine:
    """Apply-prune-wait engine backed by the live cluster.

    One :meth:`run` drives a whole pass:

    1. Read the inventory ConfigMap (``<name>-inventory``) listing the objects
       this sync owns, and record the union of old and new objects before
       touching anything so a crash mid-pass never forgets an object.
    2. Apply the desired objects in dependency order with server-side apply.
       An object whose live copy belongs to another reconciler is skipped with
       :class:`PolicyPreventedActuation`; an object whose ``depends-on``
       target did not apply or reconcile is skipped with
       :class:`DependencyPreventedActuation`.
    3. Wait for applied objects to reconcile (bounded by
       ``reconcile_timeout_seconds``), emitting one wait event per object.
    4. Prune inventory objects no longer desired, dependents before their
       dependencies and Namespaces last, honouring the prevent-deletion
       lifecycle annotation and refusing to delete a Namespace still in use.
    5. Rewrite the inventory with what is still owned, or delete it at the end
       of a destroy pass that removed everything.

    Cancellation is cooperative: ``cancel`` is checked between objects and
    while waiting, and the run simply stops yielding.
    """

    def __init__(
        self,
        client: Any,
        conflict_handler: ConflictHandler,
        poll_interval_seconds: float = 2.0,
        monotonic: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.conflict_handler = conflict_handler
        self.poll_interval_seconds = poll_interval_seconds
        self.monotonic = monotonic
        self.logger = logger or LOGGER

    # -- inventory --------------------------------------------------------

    def _inventory_name(self, inventory: InventoryInfo) -> str:
        return f"{inventory.name}{INVENTORY_SUFFIX}"

    def read_inventory(self, inventory: InventoryInfo) -> dict[ObjectIdentity, str]:
        """Return the owned objects mapped to the API version they were applied with."""
        live = self.client.get(CONFIG_MAP_GVK, inventory.namespace, self._inventory_name(inventory))
        if live is None:
            return {}
        owned: dict[ObjectIdentity, str] = {}
        for key, api_version in (live.get("data") or {}).items():
            try:
                owned[ObjectIdentity.parse_object_id(key)] = str(api_version)
            except ValueError:
                self.logger.warning("Ignoring malformed inventory entry %r", key)
        return owned

    def _write_inventory(
        self, inventory: InventoryInfo, owned: dict[ObjectIdentity, str]
    ) -> Iterator[Event]:
        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": self._inventory_name(inventory),
                "namespace": inventory.namespace,
                "labels": {INVENTORY_ID_LABEL: inventory.id},
            },
            "data": {identity.object_id(): api_version for identity, api_version in sorted(owned.items())},
        }
        try:
            self.client.apply(body)
        except ApiException as exc:
            self.logger.error(
                "Failed to write inventory %s/%s (status=%s)",
                inventory.namespace,
                self._inventory_name(inventory),
                exc.status,
            )
            yield ErrorEvent(error=exc)

    def _delete_inventory(self, inventory: InventoryInfo) -> Iterator[Event]:
        try:
            self.client.delete(CONFIG_MAP_GVK, inventory.namespace, self._inventory_name(inventory))
        except ApiException as exc:
            yield ErrorEvent(error=exc)

    # -- run --------------------------------------------------------------

    def run(
        self,
        cancel: threading.Event,
        inventory: InventoryInfo,
        objects: list[dict[str, Any]],
        options: EngineOptions,
    ) -> Iterator[Event]:
        try:
            previous = self.read_inventory(inventory)
        except ApiException as exc:
            yield ErrorEvent(error=exc)
            return

        to_apply = [] if options.destroy else order_for_apply(objects)
        desired = {identity_of(obj): obj for obj in to_apply}
        state = _RunState()

        union = dict(previous)
        union.update({identity: str(obj.get("apiVersion", "")) for identity, obj in desired.items()})
        inventory_errors = list(self._write_inventory(inventory, union))
        if inventory_errors:
            yield from inventory_errors
            return

        yield from self._apply_all(cancel, to_apply, desired, state, options)
        if cancel.is_set():
            return

        for identity in options.retain:
            if identity in previous:
                state.retained[identity] = previous[identity]
        candidates = {
            identity: api_version
            for identity, api_version in previous.items()
            if identity not in desired and identity not in options.retain
        }
        yield from self._prune_all(cancel, inventory, candidates, desired, state, options)
        if cancel.is_set():
            return

        owned = {
            identity: str(obj.get("apiVersion", ""))
            for identity, obj in desired.items()
            if state.actuation.get(identity) != _SKIPPED or identity in state.retained
        }
        owned.update(state.retained)
        if options.destroy and not owned:
            yield from self._delete_inventory(inventory)
        else:
            yield from self._write_inventory(inventory, owned)

    # -- apply ------------------------------------------------------------

    def _apply_all(
        self,
        cancel: threading.Event,
        to_apply: list[dict[str, Any]],
        desired: dict[ObjectIdentity, dict[str, Any]],
        state: _RunState,
        options: EngineOptions,
    ) -> Iterator[Event]:
        waiting = options.reconcile_timeout_seconds > 0
        dependency_targets: set[ObjectIdentity] = set()
        for obj in to_apply:
            try:
                dependency_targets.update(depends_on(obj))
            except ValueError:
                continue

        api_versions = {identity: str(obj.get("apiVersion", "")) for identity, obj in desired.items()}
        applied: list[ObjectIdentity] = []
        for obj in to_apply:
            if cancel.is_set():
                return
            identity = identity_of(obj)
            yield from self._apply_one(obj, identity, desired, state, waiting)
            if state.actuation.get(identity) != _SUCCEEDED:
                continue
            # Things others depend on must be ready before their dependents go.
            if waiting and (identity in dependency_targets or _rank(identity) < 2):
                yield from self._wait(
                    cancel,
                    [identity],
                    state,
                    options.reconcile_timeout_seconds,
                    api_versions=api_versions,
                )
            else:
                applied.append(identity)

        if waiting and applied:
            yield from self._wait(
                cancel, applied, state, options.reconcile_timeout_seconds, api_versions=api_versions
            )

    def _apply_one(
        self,
        obj: dict[str, Any],
        identity: ObjectIdentity,
        desired: dict[ObjectIdentity, dict[str, Any]],
        state: _RunState,
        waiting: bool,
    ) -> Iterator[Event]:
        gvk = gvk_of(obj)
        try:
            live = self.client.get(gvk, identity.namespace, identity.name)
        except TypeNotServedError as exc:
            state.actuation[identity] = _FAILED
            yield ApplyEvent(ApplyEventStatus.FAILED, identity, obj, UnknownTypeCause(str(exc)))
            return
        except ApiException as exc:
            state.actuation[identity] = _FAILED
            yield ApplyEvent(ApplyEventStatus.FAILED, identity, obj, ApplyRunCause(str(exc)))
            return

        if live is not None and not self.conflict_handler.can_manage(live):
            state.actuation[identity] = _SKIPPED
            yield ApplyEvent(
                ApplyEventStatus.SKIPPED,
                identity,
                obj,
                PolicyPreventedActuation(
                    strategy=CauseStrategy.APPLY,
                    current_manager=manager_of(live),
                    current_inventory=get_annotation(live, OWNING_INVENTORY_KEY) or "",
                ),
            )
            return

        try:
            dependencies = depends_on(obj)
        except ValueError as exc:
            state.actuation[identity] = _FAILED
            yield ApplyEvent(ApplyEventStatus.FAILED, identity, obj, ApplyRunCause(str(exc)))
            return

        for dependency in dependencies:
            if dependency not in desired:
                continue
            actuation = state.actuation.get(dependency, _PENDING)
            reconcile = state.reconcile.get(dependency, _PENDING)
            phase: Phase | None = None
            if actuation != _SUCCEEDED:
                phase = Phase.ACTUATION
            elif waiting and reconcile != _SUCCEEDED:
                phase = Phase.RECONCILE
            if phase is None:
                continue
            state.actuation[identity] = _SKIPPED
            # Dependency skips still belong to this sync.
            state.retained[identity] = str(obj.get("apiVersion", ""))
            yield ApplyEvent(
                ApplyEventStatus.SKIPPED,
                identity,
                obj,
                DependencyPreventedActuation(
                    object=identity,
                    strategy=CauseStrategy.APPLY,
                    relationship=Relationship.DEPENDENCY,
                    relation=dependency,
                    relation_phase=phase,
                    relation_actuation_status=actuation,
                    relation_reconcile_status=reconcile,
                ),
            )
            return

        try:
            applied = self.client.apply(obj)
        except TypeNotServedError as exc:
            state.actuation[identity] = _FAILED
            yield ApplyEvent(ApplyEventStatus.FAILED, identity, obj, UnknownTypeCause(str(exc)))
            return
        except ApiException as exc:
            state.actuation[identity] = _FAILED
            reason = exc.reason or exc.body or exc
            yield ApplyEvent(ApplyEventStatus.FAILED, identity, obj, ApplyRunCause(str(reason)))
            return

        state.actuation[identity] = _SUCCEEDED
        yield ApplyEvent(ApplyEventStatus.SUCCESSFUL, identity, applied)

    # -- wait -------------------------------------------------------------

    def _wait(
        self,
        cancel: threading.Event,
        identities: list[ObjectIdentity],
        state: _RunState,
        timeout_seconds: float,
        *,
        api_versions: dict[ObjectIdentity, str],
        for_deletion: bool = False,
    ) -> Iterator[Event]:
        deadline = self.monotonic() + timeout_seconds
        pending = list(identities)
        while pending:
            still_pending: list[ObjectIdentity] = []
            for identity in pending:
                status = self._observe(identity, api_versions.get(identity, "v1"), for_deletion)
                if status == WaitEventStatus.RECONCILE_PENDING:
                    still_pending.append(identity)
                    continue
                state.reconcile[identity] = (
                    _SUCCEEDED if status == WaitEventStatus.RECONCILE_SUCCESSFUL else _FAILED
                )
                yield WaitEvent(status, identity)
            pending = still_pending
            if not pending:
                return
            if cancel.is_set():
                return
            if self.monotonic() >= deadline:
                for identity in pending:
                    state.reconcile[identity] = _TIMEOUT
                    yield WaitEvent(WaitEventStatus.RECONCILE_TIMEOUT, identity)
                return
            cancel.wait(timeout=self.poll_interval_seconds)

    def _observe(
        self,
        identity: ObjectIdentity,
        api_version: str,
        for_deletion: bool,
    ) -> WaitEventStatus:
        gvk = GroupVersionKind.from_api_version(api_version, identity.kind)
        try:
            live = self.client.get(gvk, identity.namespace, identity.name)
        except TypeNotServedError:
            live = None
        except ApiException as exc:
            self.logger.warning("Failed to read %s while waiting: %s", identity, exc.reason)
            return WaitEventStatus.RECONCILE_PENDING
        if for_deletion:
            if live is None:
                return WaitEventStatus.RECONCILE_SUCCESSFUL
            return WaitEventStatus.RECONCILE_PENDING
        if live is None:
            return WaitEventStatus.RECONCILE_PENDING
        return compute_reconcile_status(live)

    # -- prune ------------------------------------------------------------

    def _prune_all(
        self,
        cancel: threading.Event,
        inventory: InventoryInfo,
        candidates: dict[ObjectIdentity, str],
        desired: dict[ObjectIdentity, dict[str, Any]],
        state: _RunState,
        options: EngineOptions,
    ) -> Iterator[Event]:
        state.pruning = dict(candidates)
        live_objects: dict[ObjectIdentity, dict[str, Any] | None] = {}
        for identity, api_version in candidates.items():
            gvk = GroupVersionKind.from_api_version(api_version, identity.kind)
            try:
                live_objects[identity] = self.client.get(gvk, identity.namespace, identity.name)
            except TypeNotServedError:
                live_objects[identity] = None
            except ApiException as exc:
                state.actuation[identity] = _FAILED
                state.retained[identity] = api_version
                yield PruneEvent(PruneEventStatus.FAILED, identity, None, ApplyRunCause(str(exc)))

        # Dependents are deleted before what they depend on, so reverse the
        # apply order: Namespaces and CRDs go last.
        present = [obj for obj in live_objects.values() if obj is not None]
        order = [identity_of(obj) for obj in reversed(order_for_apply(present))]
        order = [identity for identity in live_objects if live_objects[identity] is None] + order

        dependents: dict[ObjectIdentity, list[ObjectIdentity]] = {}
        for obj in present:
            try:
                for dependency in depends_on(obj):
                    dependents.setdefault(dependency, []).append(identity_of(obj))
            except ValueError:
                continue

        deleted: list[ObjectIdentity] = []
        for identity in order:
            if cancel.is_set():
                return
            live = live_objects[identity]
            api_version = candidates[identity]
            if live is None:
                state.actuation[identity] = _SUCCEEDED
                yield PruneEvent(PruneEventStatus.SUCCESSFUL, identity, None)
                continue
            yield from self._prune_one(
                identity, live, api_version, inventory, desired, dependents, state, options
            )
            if state.actuation.get(identity) == _SUCCEEDED:
                deleted.append(identity)

        if deleted and options.prune_timeout_seconds > 0:
            yield from self._wait(
                cancel,
                deleted,
                state,
                options.prune_timeout_seconds,
                for_deletion=True,
                api_versions=candidates,
            )

    def _prune_one(
        self,
        identity: ObjectIdentity,
        live: dict[str, Any],
        api_version: str,
        inventory: InventoryInfo,
        desired: dict[ObjectIdentity, dict[str, Any]],
        dependents: dict[ObjectIdentity, list[ObjectIdentity]],
        state: _RunState,
        options: EngineOptions,
    ) -> Iterator[Event]:
        owner = get_annotation(live, OWNING_INVENTORY_KEY) or ""
        if owner != inventory.id or not self.conflict_handler.can_manage(live):
            # Not ours any more: drop it from the inventory without deleting.
            state.actuation[identity] = _SKIPPED
            yield PruneEvent(
                PruneEventStatus.SKIPPED,
                identity,
                live,
                PolicyPreventedActuation(
                    strategy=CauseStrategy.DELETE,
                    current_manager=manager_of(live),
                    current_inventory=owner,
                ),
            )
            return

        if prevents_deletion(live):
            state.actuation[identity] = _SKIPPED
            yield PruneEvent(
                PruneEventStatus.SKIPPED,
                identity,
                live,
                AnnotationPreventedDeletion(annotation=LIFECYCLE_DELETE_KEY, value=PREVENT_DELETION),
            )
            return

        for dependent in dependents.get(identity, []):
            actuation = state.actuation.get(dependent, _PENDING)
            if actuation == _SUCCEEDED:
                continue
            state.actuation[identity] = _SKIPPED
            state.retained[identity] = api_version
            yield PruneEvent(
                PruneEventStatus.SKIPPED,
                identity,
                live,
                DependencyPreventedActuation(
                    object=identity,
                    strategy=CauseStrategy.DELETE,
                    relationship=Relationship.DEPENDENT,
                    relation=dependent,
                    relation_phase=Phase.ACTUATION,
                    relation_actuation_status=actuation,
                    relation_reconcile_status=state.reconcile.get(dependent, _PENDING),
                ),
            )
            return

        if _group_kind(identity) == _NAMESPACE_GROUP_KIND and self._namespace_in_use(
            identity.name, desired, state
        ):
            state.actuation[identity] = _SKIPPED
            state.retained[identity] = api_version
            yield PruneEvent(
                PruneEventStatus.SKIPPED, identity, live, NamespaceInUse(namespace=identity.name)
            )
            return

        gvk = GroupVersionKind.from_api_version(api_version, identity.kind)
        try:
            self.client.delete(
                gvk, identity.namespace, identity.name, propagation_policy=options.propagation_policy
            )
        except (ApiException, TypeNotServedError) as exc:
            state.actuation[identity] = _FAILED
            state.retained[identity] = api_version
            yield PruneEvent(PruneEventStatus.FAILED, identity, live, ApplyRunCause(str(exc)))
            return

        state.actuation[identity] = _SUCCEEDED
        yield PruneEvent(PruneEventStatus.SUCCESSFUL, identity, live)

    def _namespace_in_use(
        self, namespace: str, desired: dict[ObjectIdentity, dict[str, Any]], state: _RunState
    ) -> bool:
        """A Namespace is in use while any object other than those pruned here lives in it.

        Desired and still-retained objects count, and so does anything found
        live in the Namespace, managed or not.  When the contents cannot be
        listed the Namespace is treated as in use.
        """
        if any(identity.namespace == namespace for identity in desired):
            return True
        if any(identity.namespace == namespace for identity in state.retained):
            return True

        types = {
            GroupVersionKind.from_api_version(api_version, identity.kind)
            for identity, api_version in state.pruning.items()
            if identity.namespace
        }
        try:
            types |= self.client.namespaced_types()
        except ApiException as exc:
            self.logger.warning(
                "Cannot discover namespaced types to check namespace %s (status=%s)",
                namespace,
                exc.status,
            )
            return True

        for gvk in sorted(types):
            try:
                items, _ = self.client.list(gvk, namespace=namespace)
            except TypeNotServedError:
                continue
            except ApiException as exc:
                if exc.status in {404, 405}:
                    continue
                self.logger.warning(
                    "Cannot list %s in namespace %s (status=%s)", gvk, namespace, exc.status
                )
                return True
            for item in items:
                if self._blocks_namespace_deletion(item, state):
                    self.logger.info(
                        "Namespace %s still contains %s", namespace, identity_of(item)
                    )
                    return True
        return False

    @staticmethod
    def _blocks_namespace_deletion(obj: dict[str, Any], state: _RunState) -> bool:
        meta = obj.get("metadata") or {}
        if meta.get("deletionTimestamp") or meta.get("ownerReferences"):
            return False
        identity = identity_of(obj)
        if state.actuation.get(identity) == _SUCCEEDED and identity in state.pruning:
            return False
        if (identity.group, identity.kind, identity.name) in _NAMESPACE_DEFAULTS:
            return False
        if (identity.group, identity.kind) in _GENERATED_GROUP_KINDS:
            return False
        return obj.get("type") != "kubernetes.io/service-account-token"
