from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable
from enum import Enum
from typing import Any

from kubernetes.client import ApiException

from reconciler.src.conflict import ConflictHandler, manager_of
from reconciler.src.core import (
    Deleted,
    GroupVersionKind,
    gvk_of,
    identity_of,
    inventory_id,
    resource_manager,
)
from reconciler.src.declared import DeclaredObject, DeclaredResources
from reconciler.src.kube import TypeNotServedError
from reconciler.src.metadata import (
    ManagementMode,
    is_subset,
    management_removal_patch,
    overlay_declared_metadata,
    prepare_for_apply,
    prevents_deletion,
)
from reconciler.src.metrics import METRICS
from reconciler.src.queue import ObjectQueue, QueueItem
from reconciler.src.watch import WatchManager, WatchState


class Correction(str, Enum):
    NOOP = "noop"
    APPLY = "apply"
    DELETE = "delete"
    ABANDON = "abandon"
    CONFLICT = "conflict"
    IGNORE = "ignore"


class Remediator:
    """Keeps the cluster converged with the declared snapshot between passes.

    Watches (one per declared GVK) feed a shared :class:`ObjectQueue`; a fixed
    pool of worker threads drains it.  Each correction re-reads the live
    object, so stale or duplicated watch events are harmless.

    :meth:`pause` stops workers from starting new corrections and waits,
    bounded by ``drain_timeout_seconds``, for in-flight ones to finish.
    Events keep accumulating in the queue while paused.
    """

    def __init__(
        self,
        client: Any,
        resources: DeclaredResources,
        conflict_handler: ConflictHandler,
        scope: str,
        sync_name: str,
        workers: int = 4,
        label_selector: str | None = None,
        drain_timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 0.5,
        queue: ObjectQueue | None = None,
        watches: WatchManager | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.resources = resources
        self.conflict_handler = conflict_handler
        self.scope = scope
        self.sync_name = sync_name
        self.workers = workers
        self.drain_timeout_seconds = drain_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.manager = resource_manager(scope, sync_name)
        self.inventory_id = inventory_id(scope, sync_name)
        self.queue = queue or ObjectQueue()
        self.watches = watches or WatchManager(
            client=client,
            scope=scope,
            queue=self.queue,
            resources=resources,
            conflict_handler=conflict_handler,
            label_selector=label_selector,
            logger=self.logger,
        )

        self._cond = threading.Condition()
        self._paused = False
        self._in_flight = 0
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # -- lifecycle ----------------------------------------------------------

    def start(self, stop_event: threading.Event | None = None) -> None:
        """Start the worker pool.  *stop_event*, when set, stops everything."""
        if stop_event is not None:
            self._stop = stop_event
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._run_worker,
                name=f"remediator-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        self.logger.info("Started remediator for %s with %d workers", self.manager, self.workers)

    def stop(self, join_timeout: float = 5.0) -> None:
        """Stop watches and workers.  In-flight corrections finish best-effort."""
        self._stop.set()
        self.queue.shutdown()
        self.watches.stop_all(join_timeout=join_timeout)
        with self._cond:
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout=join_timeout)
        self._threads.clear()
        self.logger.info("Stopped remediator for %s", self.manager)

    def pause(self) -> bool:
        """Block new corrections and wait for in-flight ones to drain.

        Returns False if the drain timed out; corrections still running then
        finish on their own.
        """
        deadline = time.monotonic() + self.drain_timeout_seconds
        with self._cond:
            self._paused = True
            while self._in_flight > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self.logger.warning(
                        "Remediator pause timed out with %d correction(s) in flight",
                        self._in_flight,
                    )
                    return False
                self._cond.wait(timeout=remaining)
        self.logger.debug("Remediator paused")
        return True

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._cond.notify_all()
        self.logger.debug("Remediator resumed")

    @property
    def paused(self) -> bool:
        with self._cond:
            return self._paused

    def update_watches(
        self, gvks: Iterable[GroupVersionKind] | None = None
    ) -> tuple[set[GroupVersionKind], set[GroupVersionKind]]:
        """Watch exactly the GVKs currently declared (or *gvks*)."""
        wanted = self.resources.declared_gvks() if gvks is None else set(gvks)
        return self.watches.update_watches(wanted, self._stop)

    def watching(self) -> dict[GroupVersionKind, WatchState]:
        return self.watches.watching()

    # -- workers ------------------------------------------------------------

    def _run_worker(self) -> None:
        while not self._stop.is_set():
            item = self.queue.get(timeout=self.poll_interval_seconds)
            if item is None:
                if self.queue.is_shutdown:
                    return
                continue
            with self._cond:
                while self._paused and not self._stop.is_set():
                    self._cond.wait(timeout=self.poll_interval_seconds)
                if self._stop.is_set():
                    self.queue.done(item)
                    return
                self._in_flight += 1
            try:
                self.process(item)
            finally:
                with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()
                self.queue.done(item)

    def process(self, item: QueueItem) -> Correction | None:
        """Run one correction, retrying it later on API errors."""
        identity = identity_of(item)
        try:
            correction = self.remediate(item)
        except (ApiException, TypeNotServedError) as exc:
            delay = self.queue.retry(item)
            METRICS.remediations_total.labels(operation="unknown", result="error").inc()
            self.logger.warning(
                "Failed to remediate %s (%s); retrying in %.1fs", identity, exc, delay
            )
            return None
        except Exception:
            delay = self.queue.retry(item)
            METRICS.remediations_total.labels(operation="unknown", result="error").inc()
            self.logger.exception("Unexpected error remediating %s; retrying in %.1fs", identity, delay)
            return None
        self.queue.forget(identity)
        METRICS.remediations_total.labels(operation=correction.value, result="success").inc()
        if correction not in {Correction.NOOP, Correction.IGNORE}:
            self.logger.info("Remediated %s: %s", identity, correction.value)
        return correction

    # -- corrections --------------------------------------------------------

    def remediate(self, item: QueueItem) -> Correction:
        """Bring one object back in line with the declared snapshot.

        Safe to call any number of times for the same object.
        """
        identity = identity_of(item)
        declared = self.resources.get(identity)
        if declared is not None:
            gvk = declared.gvk
        else:
            gvk = gvk_of(item.object if isinstance(item, Deleted) else item)
        live = self.client.get(gvk, identity.namespace, identity.name)

        if declared is None:
            return self._remove_undeclared(live)
        if declared.management == ManagementMode.DISABLED:
            return Correction.NOOP

        if live is not None and not self.conflict_handler.can_manage(live):
            self.conflict_handler.record_conflict(identity, manager_of(live))
            return Correction.CONFLICT

        desired = prepare_for_apply(
            declared.body(), self.manager, self.inventory_id, self.resources.commit
        )
        if declared.ignore_mutation:
            return self._remediate_ignored(declared, desired, live, item)

        if live is not None and is_subset(desired, live):
            self.conflict_handler.clear_conflict(identity)
            return Correction.NOOP
        self.client.apply(desired)
        self.conflict_handler.clear_conflict(identity)
        return Correction.APPLY

    def _remediate_ignored(
        self,
        declared: DeclaredObject,
        desired: dict[str, Any],
        live: dict[str, Any] | None,
        item: QueueItem,
    ) -> Correction:
        identity = declared.identity
        if live is None:
            if isinstance(item, Deleted) or self.resources.get_ignored(identity) is not None:
                # Deleted by someone else while ignored: remember, do not re-create.
                self.resources.update_ignored(Deleted(desired))
                return Correction.IGNORE
            self.client.apply(desired)
            return Correction.APPLY

        self.resources.update_ignored(live)
        self.conflict_handler.clear_conflict(identity)
        desired_meta = {
            "metadata": {
                key: value
                for key, value in (desired.get("metadata") or {}).items()
                if key in {"labels", "annotations"}
            }
        }
        if is_subset(desired_meta, live):
            return Correction.IGNORE
        self.client.apply(overlay_declared_metadata(live, desired))
        return Correction.APPLY

    def _remove_undeclared(self, live: dict[str, Any] | None) -> Correction:
        if live is None or not self.conflict_handler.is_managed_by(live):
            return Correction.NOOP
        identity = identity_of(live)
        if prevents_deletion(live):
            patch = management_removal_patch(live)
            if patch is None:
                return Correction.NOOP
            self.client.merge_patch(gvk_of(live), identity.namespace, identity.name, patch)
            return Correction.ABANDON
        if (identity.group, identity.kind) == ("", "Namespace"):
            # Namespaces are only pruned by a full pass, which checks they are empty.
            return Correction.NOOP
        self.client.delete(gvk_of(live), identity.namespace, identity.name)
        return Correction.DELETE
