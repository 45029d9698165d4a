from __future__ import annotations

import threading
from unittest.mock import patch

from kubernetes.client import ApiException

from reconciler.src.conflict import ConflictHandler
from reconciler.src.core import Deleted, GroupVersionKind, identity_of
from reconciler.src.declared import DeclaredResources
from reconciler.src.metadata import RESOURCE_MANAGER_KEY
from reconciler.src.queue import ObjectQueue
from reconciler.src.watch import Watcher, WatchManager, WatchState
from reconciler.tests.fakes import FakeCluster, make_obj

MANAGER = "bookstore_repo-sync"
CONFIG_MAP = GroupVersionKind("", "v1", "ConfigMap")
DEPLOYMENT = GroupVersionKind("apps", "v1", "Deployment")


def _drain(queue: ObjectQueue) -> list:
    items = []
    while (item := queue.get(timeout=0)) is not None:
        items.append(item)
        queue.done(item)
    return items


class TestHandleEvent:
    def setup_method(self) -> None:
        self.queue = ObjectQueue()
        self.resources = DeclaredResources()
        self.resources.update_declared([make_obj(name="declared", namespace="bookstore")])
        self.watcher = Watcher(
            FakeCluster(), CONFIG_MAP, self.queue, self.resources, ConflictHandler(MANAGER)
        )

    def test_declared_object_is_queued(self) -> None:
        self.watcher.handle_event("MODIFIED", make_obj(name="declared", namespace="bookstore"))
        assert [identity_of(item).name for item in _drain(self.queue)] == ["declared"]

    def test_managed_but_undeclared_object_is_queued(self) -> None:
        stray = make_obj(name="stray", namespace="bookstore", annotations={RESOURCE_MANAGER_KEY: MANAGER})
        self.watcher.handle_event("ADDED", stray)
        assert len(self.queue) == 1

    def test_unrelated_object_is_ignored(self) -> None:
        self.watcher.handle_event("ADDED", make_obj(name="other", namespace="bookstore"))
        self.watcher.handle_event(
            "ADDED",
            make_obj(name="theirs", namespace="bookstore", annotations={RESOURCE_MANAGER_KEY: "x_y"}),
        )
        assert len(self.queue) == 0

    def test_deletion_is_queued_as_tombstone(self) -> None:
        self.watcher.handle_event("DELETED", make_obj(name="declared", namespace="bookstore"))
        items = _drain(self.queue)
        assert len(items) == 1 and isinstance(items[0], Deleted)

    def test_bookmarks_are_ignored(self) -> None:
        self.watcher.handle_event("BOOKMARK", make_obj(name="declared", namespace="bookstore"))
        assert len(self.queue) == 0

    def test_missing_type_fields_are_filled_in(self) -> None:
        obj = {"metadata": {"name": "declared", "namespace": "bookstore"}}
        self.watcher.handle_event("ADDED", obj)
        assert _drain(self.queue)[0]["kind"] == "ConfigMap"


class TestRunForever:
    def setup_method(self) -> None:
        self.queue = ObjectQueue()
        self.resources = DeclaredResources()
        self.cluster = FakeCluster()
        self.stop = threading.Event()

    def _watcher(self, namespace: str | None = "bookstore") -> Watcher:
        return Watcher(
            self.cluster,
            CONFIG_MAP,
            self.queue,
            self.resources,
            ConflictHandler(MANAGER),
            namespace=namespace,
        )

    def test_list_queues_existing_and_never_created_declared_objects(self) -> None:
        self.resources.update_declared(
            [make_obj(name="present", namespace="bookstore"), make_obj(name="missing", namespace="bookstore")]
        )
        self.cluster.put(make_obj(name="present", namespace="bookstore"))
        self.cluster.watch_scripts["ConfigMap"] = [ApiException(status=403, reason="Forbidden")]
        watcher = self._watcher()

        watcher.run_forever(self.stop)

        items = _drain(self.queue)
        assert [(type(item).__name__, identity_of(item).name) for item in items] == [
            ("dict", "present"),
            ("dict", "missing"),
        ]
        assert watcher.state == WatchState.STOPPED
        assert not watcher.ready.is_set()

    def test_relist_tombstones_objects_seen_live_before(self) -> None:
        self.resources.update_declared([make_obj(name="a", namespace="bookstore")])
        self.cluster.list_results["ConfigMap"] = [[make_obj(name="a", namespace="bookstore")], []]
        self.cluster.watch_scripts["ConfigMap"] = [
            ApiException(status=410, reason="Gone"),
            ApiException(status=401, reason="Unauthorized"),
        ]

        self._watcher().run_forever(self.stop)

        items = _drain(self.queue)
        assert len(items) == 1
        assert isinstance(items[0], Deleted)
        assert identity_of(items[0]).name == "a"

    def test_missing_object_known_to_the_ignore_cache_is_tombstoned(self) -> None:
        self.resources.update_declared([make_obj(name="a", namespace="bookstore")])
        self.resources.update_ignored(make_obj(name="a", namespace="bookstore"))
        self.cluster.watch_scripts["ConfigMap"] = [ApiException(status=403, reason="Forbidden")]

        self._watcher().run_forever(self.stop)

        items = _drain(self.queue)
        assert len(items) == 1 and isinstance(items[0], Deleted)

    def test_gone_relists_and_keeps_watching(self) -> None:
        self.resources.update_declared([make_obj(name="a", namespace="bookstore")])
        self.cluster.list_results["ConfigMap"] = [[], [make_obj(name="a", namespace="bookstore", data={"v": "2"})]]
        self.cluster.watch_scripts["ConfigMap"] = [
            [("MODIFIED", make_obj(name="a", namespace="bookstore", data={"v": "1"}))],
            ApiException(status=410, reason="Gone"),
            ApiException(status=401, reason="Unauthorized"),
        ]
        watcher = self._watcher()

        watcher.run_forever(self.stop)

        items = _drain(self.queue)
        assert len(items) == 1
        assert items[0]["data"] == {"v": "2"}
        assert watcher.state == WatchState.STOPPED

    def test_error_event_in_stream_is_raised_as_api_error(self) -> None:
        self.resources.update_declared([make_obj(name="a", namespace="bookstore")])
        self.cluster.put(make_obj(name="a", namespace="bookstore"))
        self.cluster.watch_scripts["ConfigMap"] = [
            [("ERROR", {"code": 410, "reason": "Expired"})],
            [("ERROR", {"code": 403, "reason": "Forbidden"})],
        ]

        self._watcher().run_forever(self.stop)

        assert self.cluster.watch_scripts["ConfigMap"] == []

    def test_forbidden_list_stops_without_watching(self) -> None:
        self.cluster.list_results["ConfigMap"] = [ApiException(status=403, reason="Forbidden")]
        self.cluster.watch_scripts["ConfigMap"] = [[("ADDED", make_obj())]]
        watcher = self._watcher()

        watcher.run_forever(self.stop)

        assert watcher.state == WatchState.STOPPED
        assert len(self.cluster.watch_scripts["ConfigMap"]) == 1

    def test_other_errors_back_off_and_relist(self) -> None:
        self.cluster.list_results["ConfigMap"] = [
            ApiException(status=500, reason="boom"),
            [],
            [],
        ]
        self.cluster.watch_scripts["ConfigMap"] = [
            RuntimeError("connection reset"),
            ApiException(status=403, reason="Forbidden"),
        ]
        watcher = self._watcher()

        with patch.object(Watcher, "_backoff", return_value=1) as backoff:
            watcher.run_forever(self.stop)

        assert backoff.call_count == 2
        assert self.cluster.list_results["ConfigMap"] == []

    def test_backoff_doubles_up_to_thirty_seconds(self) -> None:
        watcher = self._watcher()
        self.stop.set()

        with patch("reconciler.src.watch.random.random", return_value=0.5):
            assert watcher._backoff(self.stop, 4) == 8
            assert watcher._backoff(self.stop, 16) == 30

    def test_stop_event_ends_the_loop(self) -> None:
        self.stop.set()
        watcher = self._watcher()

        watcher.run_forever(self.stop)

        assert watcher.state == WatchState.STOPPED
        assert len(self.queue) == 0


class TestWatchManager:
    def _manager(self, scope: str) -> tuple[WatchManager, FakeCluster]:
        cluster = FakeCluster()
        for kind in ("ConfigMap", "Deployment"):
            cluster.list_results[kind] = [ApiException(status=403, reason="Forbidden")]
        manager = WatchManager(
            cluster, scope, ObjectQueue(), DeclaredResources(), ConflictHandler(MANAGER)
        )
        return manager, cluster

    def test_update_watches_starts_and_stops(self) -> None:
        manager, _ = self._manager("bookstore")

        started, stopped = manager.update_watches([CONFIG_MAP, DEPLOYMENT])
        assert started == {CONFIG_MAP, DEPLOYMENT}
        assert stopped == set()
        assert set(manager.watching()) == {CONFIG_MAP, DEPLOYMENT}

        started, stopped = manager.update_watches([CONFIG_MAP])
        assert started == set()
        assert stopped == {DEPLOYMENT}
        assert set(manager.watching()) == {CONFIG_MAP}

        manager.stop_all()
        assert manager.watching() == {}

    def test_namespace_scope_watches_only_its_namespace(self) -> None:
        manager, _ = self._manager("bookstore")
        manager.update_watches([CONFIG_MAP])
        registration = manager._registrations[CONFIG_MAP]
        manager.stop_all()

        assert registration.namespace == "bookstore"
        assert registration.thread.name == "watch-configmap"

    def test_root_scope_watches_all_namespaces(self) -> None:
        manager, _ = self._manager(":root")
        manager.update_watches([CONFIG_MAP])
        registration = manager._registrations[CONFIG_MAP]
        manager.stop_all()

        assert registration.namespace is None
