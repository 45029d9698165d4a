from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from kubernetes.client import ApiException

from reconciler.src.conflict import ConflictHandler, manager_of
from reconciler.src.core import (
    Deleted,
    ObjectIdentity,
    gvk_of,
    identity_of,
    inventory_id,
    resource_manager,
    scope_namespace,
    sync_identity,
)
from reconciler.src.declared import DeclaredObject, DeclaredResources
from reconciler.src.errors import (
    ApplyError,
    EngineError,
    InventoryTooLargeError,
    ManagementConflictError,
    MultiError,
    PassCancelledError,
    PruneError,
    ReconcilerError,
    SkipError,
    UnknownTypeError,
)
from reconciler.src.events import (
    AnnotationPreventedDeletion,
    ApplyEngine,
    ApplyEvent,
    ApplyEventStatus,
    EngineOptions,
    ErrorEvent,
    Event,
    InventoryInfo,
    PolicyPreventedActuation,
    PruneEvent,
    PruneEventStatus,
    UnknownTypeCause,
    WaitEvent,
    WaitEventStatus,
)
from reconciler.src.kube import TypeNotServedError, is_request_too_large
from reconciler.src.metadata import (
    ManagementMode,
    management_removal_patch,
    overlay_declared_metadata,
    prepare_for_apply,
)
from reconciler.src.metrics import METRICS
from reconciler.src.status import (
    ActuationStatus,
    ActuationStrategy,
    ObjectStatusMap,
    ReconcileStatus,
    SyncStats,
)

_WAIT_TO_RECONCILE = {
    WaitEventStatus.RECONCILE_PENDING: ReconcileStatus.PENDING,
    WaitEventStatus.RECONCILE_SUCCESSFUL: ReconcileStatus.SUCCEEDED,
    WaitEventStatus.RECONCILE_FAILED: ReconcileStatus.FAILED,
    WaitEventStatus.RECONCILE_TIMEOUT: ReconcileStatus.TIMEOUT,
}

_APPLY_TO_ACTUATION = {
    ApplyEventStatus.PENDING: ActuationStatus.PENDING,
    ApplyEventStatus.SUCCESSFUL: ActuationStatus.SUCCEEDED,
    ApplyEventStatus.FAILED: ActuationStatus.FAILED,
    ApplyEventStatus.SKIPPED: ActuationStatus.SKIPPED,
}

_PRUNE_TO_ACTUATION = {
    PruneEventStatus.PENDING: ActuationStatus.PENDING,
    PruneEventStatus.SUCCESSFUL: ActuationStatus.SUCCEEDED,
    PruneEventStatus.FAILED: ActuationStatus.FAILED,
    PruneEventStatus.SKIPPED: ActuationStatus.SKIPPED,
}


@dataclass(frozen=True)
class ErrorReported:
    """Delivered to the pass event handler once per terminal error, as it happens."""

    error: ReconcilerError


EventHandler = Callable[[ErrorReported], None]


class Pausable(Protocol):
    def pause(self) -> None: ...

    def resume(self) -> None: ...


@dataclass
class PassResult:
    """Outcome of one apply or destroy pass.

    ``status`` reflects every object the engine reported on, even when the
    pass failed part way; ``error`` is the combined error set or ``None``.
    """

    status: ObjectStatusMap = field(default_factory=ObjectStatusMap)
    stats: SyncStats = field(default_factory=SyncStats)
    error: MultiError | None = None


@dataclass
class _Pass:
    destroy: bool
    resources: DeclaredResources | None
    declared: dict[ObjectIdentity, DeclaredObject]
    handler: EventHandler | None
    result: PassResult = field(default_factory=PassResult)
    errors: MultiError = field(default_factory=MultiError)
    abandoned: set[ObjectIdentity] = field(default_factory=set)
    retained: set[ObjectIdentity] = field(default_factory=set)


class Supervisor:
    """Runs apply and destroy passes through an apply engine for one sync.

    Each pass hands the prepared declared objects to the engine, drains its
    event stream in arrival order, and folds every event into per-object
    status, event counters and a combined error set.  Individual object
    failures never stop a pass; only cancellation and a broken event stream
    end it early.  One pass runs at a time per instance.
    """

    def __init__(
        self,
        client: Any,
        engine: ApplyEngine,
        scope: str,
        sync_name: str,
        conflict_handler: ConflictHandler,
        reconcile_timeout_seconds: float = 300.0,
        propagation_policy: str = "Background",
        remediator: Pausable | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.engine = engine
        self.scope = scope
        self.sync_name = sync_name
        self.conflict_handler = conflict_handler
        self.reconcile_timeout_seconds = reconcile_timeout_seconds
        self.propagation_policy = propagation_policy
        self.remediator = remediator
        self.logger = logger or logging.getLogger(__name__)

        self.manager = resource_manager(scope, sync_name)
        self.inventory = InventoryInfo(
            name=sync_name,
            namespace=scope_namespace(scope),
            id=inventory_id(scope, sync_name),
        )
        self._pass_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._unknown_type_resources: set[ObjectIdentity] = set()
        self._last_result: PassResult | None = None

    # -- read-only views ----------------------------------------------------

    def unknown_type_resources(self) -> set[ObjectIdentity]:
        """Identities whose last apply failed because the cluster does not serve the type."""
        with self._state_lock:
            return set(self._unknown_type_resources)

    def last_result(self) -> PassResult | None:
        with self._state_lock:
            return self._last_result

    # -- passes -------------------------------------------------------------

    def apply(
        self,
        cancel: threading.Event,
        event_handler: EventHandler | None,
        resources: DeclaredResources,
    ) -> PassResult:
        """Apply the declared snapshot and prune what is no longer declared."""
        with self._pass_lock:
            if self.remediator is not None:
                self.remediator.pause()
            try:
                return self._run_pass(cancel, event_handler, resources, destroy=False)
            finally:
                if self.remediator is not None:
                    self.remediator.resume()

    def destroy(self, cancel: threading.Event, event_handler: EventHandler | None) -> PassResult:
        """Delete every object in the inventory.

        The caller is expected to have paused the remediator and stopped its
        watches; it is not resumed afterwards.
        """
        with self._pass_lock:
            if self.remediator is not None:
                self.remediator.pause()
            return self._run_pass(cancel, event_handler, None, destroy=True)

    def _run_pass(
        self,
        cancel: threading.Event,
        handler: EventHandler | None,
        resources: DeclaredResources | None,
        destroy: bool,
    ) -> PassResult:
        operation = "destroy" if destroy else "apply"
        declared = (
            {obj.identity: obj for obj in resources.declared_objects()} if resources is not None else {}
        )
        state = _Pass(destroy=destroy, resources=resources, declared=declared, handler=handler)
        started = time.monotonic()
        self.logger.info("Starting %s pass for %s", operation, self.manager)
        objects = [] if resources is None else self._prepare_objects(state, resources)
        options = EngineOptions(
            reconcile_timeout_seconds=self.reconcile_timeout_seconds,
            prune_timeout_seconds=self.reconcile_timeout_seconds if destroy else 0.0,
            destroy=destroy,
            propagation_policy=self.propagation_policy,
            field_manager=self.manager,
            retain=frozenset(state.retained),
        )

        try:
            stream = self.engine.run(cancel, self.inventory, objects, options)
            for event in stream:
                self._handle_event(state, event)
                if cancel.is_set():
                    break
        except Exception as exc:
            self.logger.exception("Apply engine event stream failed during %s pass", operation)
            self._report(
                state,
                EngineError(
                    f"{operation} pass aborted: engine event stream failed: {exc}",
                    sync_identity(self.scope, self.sync_name),
                ),
            )

        if cancel.is_set():
            self._report(state, PassCancelledError(operation))

        elapsed = time.monotonic() - started
        METRICS.pass_duration_seconds.labels(operation=operation).observe(elapsed)
        state.result.error = state.errors or None
        self.logger.info(
            "Finished %s pass for %s in %.2fs: %s objects, %s errors (%s)",
            operation,
            self.manager,
            elapsed,
            len(state.result.status),
            len(state.errors),
            str(state.result.stats) or "no events",
        )
        with self._state_lock:
            self._last_result = state.result
        return state.result

    # -- preparation --------------------------------------------------------

    def _prepare_objects(
        self, state: _Pass, resources: DeclaredResources
    ) -> list[dict[str, Any]]:
        """Return the bodies to hand to the engine.

        Management-disabled objects are left out and abandoned when the live
        copy is still ours.  Mutation-ignored objects are sent as their live
        state with the declared metadata on top.
        """
        token = resources.commit
        objects: list[dict[str, Any]] = []
        for declared in sorted(state.declared.values(), key=lambda obj: obj.identity):
            if declared.management == ManagementMode.DISABLED:
                try:
                    if self._abandon_if_managed(declared):
                        state.abandoned.add(declared.identity)
                except (ApiException, TypeNotServedError) as exc:
                    # Still carries our metadata; keep it off the prune list.
                    state.retained.add(declared.identity)
                    self._report(
                        state,
                        ApplyError(
                            declared.identity,
                            f"failed to abandon management-disabled object: {exc}",
                            source_path=declared.source_path,
                            gvk=declared.gvk,
                        ),
                    )
                continue
            body = prepare_for_apply(declared.body(), self.manager, self.inventory.id, token)
            if declared.ignore_mutation:
                body = self._ignore_mutation_body(resources, declared, body)
            objects.append(body)
        return objects

    def _ignore_mutation_body(
        self, resources: DeclaredResources, declared: DeclaredObject, body: dict[str, Any]
    ) -> dict[str, Any]:
        cached = resources.get_ignored(declared.identity)
        if cached is None:
            try:
                cached = self.client.get(
                    declared.gvk, declared.identity.namespace, declared.identity.name
                )
            except (ApiException, TypeNotServedError) as exc:
                self.logger.warning(
                    "Could not read %s to preserve its live state; applying declared body: %s",
                    declared.identity,
                    exc,
                )
                return body
            if cached is not None:
                resources.update_ignored(cached)
        if cached is None or isinstance(cached, Deleted):
            return body
        return overlay_declared_metadata(cached, body)

    def _abandon_if_managed(self, declared: DeclaredObject) -> bool:
        live = self.client.get(declared.gvk, declared.identity.namespace, declared.identity.name)
        if live is None or not self.conflict_handler.is_managed_by(live):
            return False
        self.abandon(live)
        return True

    def abandon(self, live: dict[str, Any]) -> bool:
        """Strip management metadata from *live*, keeping the object.

        Returns False when nothing was left to strip.  Safe to repeat.
        """
        patch = management_removal_patch(live)
        if patch is None:
            return False
        identity = identity_of(live)
        self.client.merge_patch(gvk_of(live), identity.namespace, identity.name, patch)
        self.logger.info("Abandoned %s: removed management metadata", identity)
        return True

    # -- event dispatch -----------------------------------------------------

    def _report(self, state: _Pass, error: ReconcilerError) -> None:
        state.errors.append(error)
        METRICS.pass_errors_total.labels(kind=error.kind).inc()
        if state.handler is not None:
            state.handler(ErrorReported(error))

    def _handle_event(self, state: _Pass, event: Event) -> None:
        if isinstance(event, ApplyEvent):
            state.result.stats.with_apply_events(event.status, 1)
            METRICS.apply_events_total.labels(status=event.status.value).inc()
            self._handle_apply(state, event)
        elif isinstance(event, PruneEvent):
            state.result.stats.with_prune_events(event.status, 1)
            METRICS.prune_events_total.labels(status=event.status.value).inc()
            self._handle_prune(state, event)
        elif isinstance(event, WaitEvent):
            state.result.stats.with_wait_events(event.status, 1)
            METRICS.wait_events_total.labels(status=event.status.value).inc()
            self._handle_wait(state, event)
        elif isinstance(event, ErrorEvent):
            state.result.stats.with_error_events(1)
            self._handle_error(state, event)
        else:
            self.logger.warning("Ignoring unrecognised engine event %r", event)

    def _source_path(self, state: _Pass, identity: ObjectIdentity) -> str:
        declared = state.declared.get(identity)
        return declared.source_path if declared is not None else ""

    def _handle_apply(self, state: _Pass, event: ApplyEvent) -> None:
        identity = event.identifier
        entry = state.result.status.status_for(identity, ActuationStrategy.APPLY)
        conflicted = entry.actuation == ActuationStatus.SKIPPED and self.conflict_handler.has_conflict(
            identity
        )
        entry.set_actuation(_APPLY_TO_ACTUATION[event.status])

        if event.status == ApplyEventStatus.SUCCESSFUL:
            self.conflict_handler.clear_conflict(identity)
            with self._state_lock:
                self._unknown_type_resources.discard(identity)
            declared = state.declared.get(identity)
            if (
                declared is not None
                and declared.ignore_mutation
                and state.resources is not None
                and event.resource is not None
            ):
                state.resources.update_ignored(event.resource)
            return

        if event.status == ApplyEventStatus.FAILED:
            if state.resources is not None and state.resources.delete_ignored(identity):
                self.logger.info("Evicted %s from the mutation-ignore set after a failed apply", identity)
            source_path = self._source_path(state, identity)
            gvk = gvk_of(event.resource) if event.resource else None
            cause: BaseException | str = event.error if event.error is not None else "unknown error"
            if isinstance(event.error, UnknownTypeCause):
                with self._state_lock:
                    self._unknown_type_resources.add(identity)
                self._report(state, UnknownTypeError(identity, cause, source_path=source_path, gvk=gvk))
            else:
                self._report(state, ApplyError(identity, cause, source_path=source_path, gvk=gvk))
            return

        if event.status == ApplyEventStatus.SKIPPED:
            source_path = self._source_path(state, identity)
            if isinstance(event.error, PolicyPreventedActuation):
                current = event.error.current_manager
                if not current and event.resource is not None:
                    current = manager_of(event.resource)
                self.conflict_handler.record_conflict(identity, current)
                self._report(
                    state,
                    ManagementConflictError(
                        identity, self.manager, current, source_path=source_path
                    ),
                )
            elif conflicted:
                # A management conflict outranks any later skip reason.
                self.logger.debug("Not reporting %s skip for conflicted %s", event.error, identity)
            elif event.error is not None:
                self._report(
                    state,
                    SkipError(identity, ActuationStrategy.APPLY.value, event.error, source_path=source_path),
                )

    def _handle_prune(self, state: _Pass, event: PruneEvent) -> None:
        identity = event.identifier
        entry = state.result.status.status_for(identity, ActuationStrategy.DELETE)
        entry.set_actuation(_PRUNE_TO_ACTUATION[event.status])

        if event.status == PruneEventStatus.SUCCESSFUL:
            self.conflict_handler.clear_conflict(identity)
            if state.resources is not None:
                state.resources.delete_ignored(identity)
            return

        if event.status not in (PruneEventStatus.FAILED, PruneEventStatus.SKIPPED):
            return

        source_path = self._source_path(state, identity)
        if event.status == PruneEventStatus.FAILED:
            cause: BaseException | str = event.error if event.error is not None else "unknown error"
            self._report(state, PruneError(identity, cause, source_path=source_path))
            return

        if isinstance(event.error, AnnotationPreventedDeletion):
            if event.object is None:
                return
            try:
                self.abandon(event.object)
            except (ApiException, TypeNotServedError) as exc:
                self._report(
                    state,
                    PruneError(identity, f"failed to abandon object: {exc}", source_path=source_path),
                )
            return

        if isinstance(event.error, PolicyPreventedActuation):
            if identity in state.abandoned:
                return
            current = event.error.current_manager
            if not current and event.object is not None:
                current = manager_of(event.object)
            self.conflict_handler.record_conflict(identity, current)
            self._report(
                state, ManagementConflictError(identity, self.manager, current, source_path=source_path)
            )
            return

        if event.error is not None:
            self._report(
                state,
                SkipError(identity, ActuationStrategy.DELETE.value, event.error, source_path=source_path),
            )

    def _handle_wait(self, state: _Pass, event: WaitEvent) -> None:
        identity = event.identifier
        entry = state.result.status.get(identity)
        if entry is None:
            self.logger.debug("Wait event for untracked %s", identity)
            return
        entry.set_reconcile(_WAIT_TO_RECONCILE[event.status])
        if not state.destroy:
            return
        if event.status == WaitEventStatus.RECONCILE_FAILED:
            self._report(
                state,
                SkipError(identity, entry.strategy.value, "object failed to reconcile during teardown"),
            )
        elif event.status == WaitEventStatus.RECONCILE_TIMEOUT:
            self._report(
                state,
                SkipError(identity, entry.strategy.value, "object reconcile timed out during teardown"),
            )

    def _handle_error(self, state: _Pass, event: ErrorEvent) -> None:
        inventory = sync_identity(self.scope, self.sync_name)
        if is_request_too_large(event.error):
            self._report(state, InventoryTooLargeError(inventory, event.error))
            return
        self._report(state, EngineError(f"apply engine error: {event.error}", inventory))
