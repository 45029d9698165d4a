from __future__ import annotations

import logging
import random
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from reconciler.src.conflict import ConflictHandler
from reconciler.src.core import ROOT_SCOPE, Deleted, GroupVersionKind, ObjectIdentity, identity_of
from reconciler.src.declared import DeclaredResources
from reconciler.src.kube import TypeNotServedError
from reconciler.src.metrics import METRICS
from reconciler.src.queue import ObjectQueue


class WatchState(str, Enum):
    STARTING = "Starting"
    WATCHING = "Watching"
    ERROR = "Error"
    RESTARTING = "Restarting"
    STOPPED = "Stopped"


class Watcher:
    """List-then-watch loop for one GVK, feeding the remediator queue.

    Every object that is declared, or is still managed by this reconciler, is
    enqueued; deletions are enqueued as :class:`Deleted` tombstones.  After a
    (re)list, a declared object missing from the cluster is enqueued as a
    tombstone if it was seen live before, since its ``DELETED`` event may
    have been lost while disconnected; one that never existed is enqueued
    as its declared manifest so it gets created.  Redelivery is expected:
    queue consumers re-read live state and never act on deltas.

    ``410 Gone`` re-lists immediately; other errors restart with exponential
    backoff and jitter capped at 30 s; ``401``/``403`` stop the watch.
    """

    def __init__(
        self,
        client: Any,
        gvk: GroupVersionKind,
        queue: ObjectQueue,
        resources: DeclaredResources,
        conflict_handler: ConflictHandler,
        namespace: str | None = None,
        label_selector: str | None = None,
        timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.gvk = gvk
        self.queue = queue
        self.resources = resources
        self.conflict_handler = conflict_handler
        self.namespace = namespace
        self.label_selector = label_selector
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.state = WatchState.STARTING
        self.ready = threading.Event()
        self._stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._seen_live: set[ObjectIdentity] = set()
        self._watcher_lock = threading.Lock()

    @property
    def kind(self) -> str:
        return self.gvk.kind

    def request_stop(self) -> None:
        """Stop the loop and interrupt any open watch stream."""
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._stop.is_set()

    def _set_state(self, state: WatchState) -> None:
        if self.state != state:
            self.logger.debug("Watch %s: %s -> %s", self.gvk, self.state.value, state.value)
        self.state = state

    def _relevant(self, obj: dict[str, Any]) -> bool:
        identity = identity_of(obj)
        if self.resources.get(identity) is not None:
            return True
        return self.conflict_handler.is_managed_by(obj)

    def handle_event(self, event_type: str, obj: dict[str, Any]) -> None:
        """Enqueue one watch event.  Idempotent under redelivery."""
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return
        obj.setdefault("apiVersion", self.gvk.api_version)
        obj.setdefault("kind", self.gvk.kind)
        if not self._relevant(obj):
            return
        if event_type == "DELETED":
            self.queue.add(Deleted(obj))
        else:
            self._seen_live.add(identity_of(obj))
            self.queue.add(obj)

    def _was_live(self, identity: ObjectIdentity) -> bool:
        return identity in self._seen_live or self.resources.get_ignored(identity) is not None

    def _list(self) -> str | None:
        items, resource_version = self.client.list(
            self.gvk, namespace=self.namespace, label_selector=self.label_selector
        )
        seen = set()
        for item in items:
            seen.add(identity_of(item))
            self.handle_event("ADDED", item)
        for declared in self.resources.declared_objects():
            if declared.gvk.kind != self.gvk.kind or declared.gvk.group != self.gvk.group:
                continue
            if self.namespace and declared.identity.namespace != self.namespace:
                continue
            if declared.identity in seen:
                continue
            if self._was_live(declared.identity):
                self.queue.add(Deleted(declared.body()))
            else:
                self.queue.add(declared.body())
        return resource_version

    def _access_denied(self, exc: ApiException, during: str) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check reconciler RBAC and service account permissions.",
            during,
            self.gvk,
            exc.status,
        )
        METRICS.watch_errors_total.labels(kind=self.kind).inc()
        self.ready.clear()
        self._set_state(WatchState.STOPPED)

    def _backoff(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        """Run list-then-watch until *stop_event* or :meth:`request_stop`."""
        stop = stop_event or threading.Event()
        self._set_state(WatchState.STARTING)

        resource_version: str | None = None
        needs_list = True
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            if needs_list:
                try:
                    resource_version = self._list()
                    needs_list = False
                    backoff_seconds = 1
                    self.ready.set()
                    self.logger.info(
                        "Watching %s from resourceVersion %s", self.gvk, resource_version
                    )
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self._access_denied(exc, "list")
                        return
                    self.logger.exception("Initial list of %s failed", self.gvk)
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self._set_state(WatchState.ERROR)
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue
                except TypeNotServedError:
                    self.logger.warning("%s is not served by the cluster; retrying", self.gvk)
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self._set_state(WatchState.ERROR)
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                self._set_state(WatchState.WATCHING)
                for event_type, obj in self.client.watch(
                    self.gvk,
                    watcher,
                    namespace=self.namespace,
                    label_selector=self.label_selector,
                    resource_version=resource_version,
                    timeout_seconds=self.timeout_seconds,
                ):
                    if self._should_stop(stop):
                        break
                    if event_type == "ERROR":
                        code = int((obj or {}).get("code") or 0)
                        raise ApiException(status=code, reason=(obj or {}).get("reason"))
                    version = (obj.get("metadata") or {}).get("resourceVersion")
                    if version:
                        resource_version = version
                    self.handle_event(event_type, obj)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resource version was compacted away.
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", self.gvk)
                    self._set_state(WatchState.RESTARTING)
                    needs_list = True
                    continue
                if exc.status in {401, 403}:
                    self._access_denied(exc, "watch")
                    return
                self.logger.exception("Kubernetes API watch error for %s", self.gvk)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                self._set_state(WatchState.ERROR)
                backoff_seconds = self._backoff(stop, backoff_seconds)
                self._set_state(WatchState.RESTARTING)
                needs_list = True
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.gvk)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                self._set_state(WatchState.ERROR)
                backoff_seconds = self._backoff(stop, backoff_seconds)
                self._set_state(WatchState.RESTARTING)
                needs_list = True
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
        self._set_state(WatchState.STOPPED)


@dataclass
class WatchRegistration:
    """A running watch for one GVK in one scope."""

    gvk: GroupVersionKind
    namespace: str | None
    label_selector: str | None
    watcher: Watcher
    thread: threading.Thread
    stop: threading.Event = field(default_factory=threading.Event)


class WatchManager:
    """Keeps exactly one running :class:`Watcher` per declared GVK.

    A root reconciler watches every namespace; a namespace reconciler only
    its own.
    """

    def __init__(
        self,
        client: Any,
        scope: str,
        queue: ObjectQueue,
        resources: DeclaredResources,
        conflict_handler: ConflictHandler,
        label_selector: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.scope = scope
        self.queue = queue
        self.resources = resources
        self.conflict_handler = conflict_handler
        self.label_selector = label_selector
        self.logger = logger or logging.getLogger(__name__)
        self._registrations: dict[GroupVersionKind, WatchRegistration] = {}
        self._lock = threading.Lock()

    def _namespace(self) -> str | None:
        return None if self.scope == ROOT_SCOPE else self.scope

    def _start(self, gvk: GroupVersionKind, parent_stop: threading.Event | None) -> WatchRegistration:
        watcher = Watcher(
            client=self.client,
            gvk=gvk,
            queue=self.queue,
            resources=self.resources,
            conflict_handler=self.conflict_handler,
            namespace=self._namespace(),
            label_selector=self.label_selector,
            logger=self.logger,
        )
        stop = threading.Event()
        thread = threading.Thread(
            target=watcher.run_forever,
            args=(stop,),
            name=f"watch-{gvk.kind.lower()}",
            daemon=True,
        )
        registration = WatchRegistration(
            gvk=gvk,
            namespace=self._namespace(),
            label_selector=self.label_selector,
            watcher=watcher,
            thread=thread,
            stop=stop,
        )
        if parent_stop is not None and parent_stop.is_set():
            stop.set()
        thread.start()
        return registration

    def update_watches(
        self, gvks: Iterable[GroupVersionKind], stop: threading.Event | None = None
    ) -> tuple[set[GroupVersionKind], set[GroupVersionKind]]:
        """Start watches for new GVKs and stop those no longer declared.

        Returns ``(started, stopped)``.
        """
        wanted = set(gvks)
        with self._lock:
            current = set(self._registrations)
            started = wanted - current
            stopped = current - wanted
            for gvk in sorted(stopped):
                registration = self._registrations.pop(gvk)
                registration.stop.set()
                registration.watcher.request_stop()
            for gvk in sorted(started):
                self._registrations[gvk] = self._start(gvk, stop)
            METRICS.active_watches.set(len(self._registrations))
        if started or stopped:
            self.logger.info(
                "Updated watches: started=%s stopped=%s",
                sorted(str(gvk) for gvk in started),
                sorted(str(gvk) for gvk in stopped),
            )
        return started, stopped

    def watching(self) -> dict[GroupVersionKind, WatchState]:
        with self._lock:
            return {gvk: reg.watcher.state for gvk, reg in self._registrations.items()}

    def stop_all(self, join_timeout: float = 5.0) -> None:
        with self._lock:
            registrations = list(self._registrations.values())
            self._registrations.clear()
            METRICS.active_watches.set(0)
        for registration in registrations:
            registration.stop.set()
            registration.watcher.request_stop()
        for registration in registrations:
            registration.thread.join(timeout=join_timeout)
