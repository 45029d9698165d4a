from __future__ import annotations

import time
from unittest.mock import MagicMock

from kubernetes.client import ApiException

from reconciler.src.conflict import ConflictHandler
from reconciler.src.core import Deleted, GroupVersionKind, identity_of
from reconciler.src.declared import DeclaredResources
from reconciler.src.metadata import (
    LIFECYCLE_DELETE_KEY,
    LIFECYCLE_MUTATION_KEY,
    MANAGEMENT_MODE_KEY,
    PREVENT_DELETION,
    RESOURCE_MANAGER_KEY,
    has_management_metadata,
    prepare_for_apply,
)
from reconciler.src.remediator import Correction, Remediator
from reconciler.tests.fakes import FakeCluster, make_obj

SCOPE = "bookstore"
SYNC = "repo-sync"
MANAGER = "bookstore_repo-sync"
INVENTORY_ID = "bookstore_repo-sync"
COMMIT = "c1"


def _cm(name: str = "cm", **kwargs) -> dict:
    return make_obj(name=name, namespace="bookstore", **kwargs)


def _ours(obj: dict) -> dict:
    return prepare_for_apply(obj, MANAGER, INVENTORY_ID, COMMIT)


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestRemediate:
    def setup_method(self) -> None:
        self.cluster = FakeCluster()
        self.resources = DeclaredResources()
        self.conflicts = ConflictHandler(MANAGER)
        self.remediator = Remediator(
            self.cluster,
            self.resources,
            self.conflicts,
            SCOPE,
            SYNC,
            watches=MagicMock(),
        )

    def _declare(self, *objects: dict) -> None:
        self.resources.update_declared(list(objects), commit=COMMIT)

    def test_drifted_object_is_reapplied(self) -> None:
        declared = _cm(data={"k": "declared"})
        self._declare(declared)
        self.cluster.put(_ours(_cm(data={"k": "edited"})))

        assert self.remediator.remediate(self.cluster.live(declared)) == Correction.APPLY

        live = self.cluster.live(declared)
        assert live["data"] == {"k": "declared"}
        assert live["metadata"]["annotations"][RESOURCE_MANAGER_KEY] == MANAGER

    def test_converged_object_is_left_alone(self) -> None:
        declared = _cm(data={"k": "v"})
        self._declare(declared)
        self.cluster.put(_ours(declared))

        assert self.remediator.remediate(declared) == Correction.NOOP
        assert ("apply", identity_of(declared)) not in self.cluster.calls

    def test_deleted_declared_object_is_recreated(self) -> None:
        declared = _cm(data={"k": "v"})
        self._declare(declared)

        assert self.remediator.remediate(Deleted(declared)) == Correction.APPLY
        assert self.cluster.live(declared)["data"] == {"k": "v"}

    def test_undeclared_managed_object_is_deleted(self) -> None:
        stray = _ours(_cm("stray"))
        self.cluster.put(stray)

        assert self.remediator.remediate(stray) == Correction.DELETE
        assert self.cluster.live(stray) is None

    def test_undeclared_unmanaged_object_is_ignored(self) -> None:
        other = _cm("other")
        self.cluster.put(other)

        assert self.remediator.remediate(other) == Correction.NOOP
        assert self.cluster.live(other) is not None

    def test_undeclared_detached_object_is_abandoned(self) -> None:
        keep = _ours(_cm("keep", annotations={LIFECYCLE_DELETE_KEY: PREVENT_DELETION}))
        self.cluster.put(keep)

        assert self.remediator.remediate(keep) == Correction.ABANDON
        live = self.cluster.live(keep)
        assert not has_management_metadata(live)
        assert self.remediator.remediate(live) == Correction.NOOP

    def test_undeclared_namespace_is_left_for_the_full_pass(self) -> None:
        ns = _ours(make_obj(kind="Namespace", name="bookstore", namespace=""))
        self.cluster.put(ns)

        assert self.remediator.remediate(ns) == Correction.NOOP
        assert self.cluster.live(ns) is not None

    def test_object_managed_elsewhere_is_a_conflict(self) -> None:
        declared = _cm(data={"k": "ours"})
        self._declare(declared)
        theirs = _cm(data={"k": "theirs"}, annotations={RESOURCE_MANAGER_KEY: ":root_root-sync"})
        self.cluster.put(theirs)

        assert self.remediator.remediate(theirs) == Correction.CONFLICT
        assert self.conflicts.conflicts() == {identity_of(declared): ":root_root-sync"}
        assert self.cluster.live(theirs)["data"] == {"k": "theirs"}

    def test_resolved_conflict_is_cleared(self) -> None:
        declared = _cm(data={"k": "v"})
        self._declare(declared)
        self.conflicts.record_conflict(identity_of(declared), ":root_root-sync")

        self.remediator.remediate(Deleted(declared))

        assert not self.conflicts.has_conflict(identity_of(declared))

    def test_management_disabled_object_is_not_touched(self) -> None:
        declared = _cm(annotations={MANAGEMENT_MODE_KEY: "disabled"}, data={"k": "v"})
        self._declare(declared)
        self.cluster.put(_cm(data={"k": "edited"}))

        assert self.remediator.remediate(declared) == Correction.NOOP
        assert self.cluster.live(declared)["data"] == {"k": "edited"}


class TestIgnoreMutation:
    def setup_method(self) -> None:
        self.cluster = FakeCluster()
        self.resources = DeclaredResources()
        self.declared = _cm(annotations={LIFECYCLE_MUTATION_KEY: "ignore"}, data={"k": "declared"})
        self.resources.update_declared([self.declared], commit=COMMIT)
        self.remediator = Remediator(
            self.cluster,
            self.resources,
            ConflictHandler(MANAGER),
            SCOPE,
            SYNC,
            watches=MagicMock(),
        )

    def test_content_changes_are_kept(self) -> None:
        edited = _ours(_cm(annotations={LIFECYCLE_MUTATION_KEY: "ignore"}, data={"k": "edited"}))
        self.cluster.put(edited)

        assert self.remediator.remediate(edited) == Correction.IGNORE
        assert self.cluster.live(edited)["data"] == {"k": "edited"}
        assert self.resources.get_ignored(identity_of(edited))["data"] == {"k": "edited"}

    def test_metadata_still_converges(self) -> None:
        self.cluster.put(_cm(data={"k": "edited"}))

        assert self.remediator.remediate(self.declared) == Correction.APPLY

        live = self.cluster.live(self.declared)
        assert live["data"] == {"k": "edited"}
        assert live["metadata"]["annotations"][RESOURCE_MANAGER_KEY] == MANAGER

    def test_deletion_is_remembered_not_reverted(self) -> None:
        assert self.remediator.remediate(Deleted(self.declared)) == Correction.IGNORE

        assert self.cluster.live(self.declared) is None
        assert isinstance(self.resources.get_ignored(identity_of(self.declared)), Deleted)

    def test_never_created_object_is_created(self) -> None:
        assert self.remediator.remediate(self.declared) == Correction.APPLY
        assert self.cluster.live(self.declared)["data"] == {"k": "declared"}


class TestProcess:
    def setup_method(self) -> None:
        self.cluster = FakeCluster()
        self.resources = DeclaredResources()
        self.remediator = Remediator(
            self.cluster,
            self.resources,
            ConflictHandler(MANAGER),
            SCOPE,
            SYNC,
            watches=MagicMock(),
        )
        self.declared = _cm(data={"k": "v"})
        self.resources.update_declared([self.declared], commit=COMMIT)

    def test_api_error_schedules_a_retry(self) -> None:
        self.cluster.failures[("apply", identity_of(self.declared))] = ApiException(status=500)

        assert self.remediator.process(self.declared) is None
        assert self.remediator.queue.failures(identity_of(self.declared)) == 1

    def test_success_resets_backoff(self) -> None:
        self.remediator.queue.retry(self.declared)

        assert self.remediator.process(self.declared) == Correction.APPLY
        assert self.remediator.queue.failures(identity_of(self.declared)) == 0

    def test_update_watches_uses_declared_types(self) -> None:
        self.remediator.update_watches()

        gvks, stop = self.remediator.watches.update_watches.call_args.args
        assert gvks == {GroupVersionKind("", "v1", "ConfigMap")}
        assert stop is self.remediator._stop


class TestWorkers:
    def setup_method(self) -> None:
        self.cluster = FakeCluster()
        self.resources = DeclaredResources()
        self.declared = _cm(data={"k": "declared"})
        self.resources.update_declared([self.declared], commit=COMMIT)
        self.remediator = Remediator(
            self.cluster,
            self.resources,
            ConflictHandler(MANAGER),
            SCOPE,
            SYNC,
            workers=2,
            poll_interval_seconds=0.01,
            watches=MagicMock(),
        )

    def teardown_method(self) -> None:
        self.remediator.stop(join_timeout=1.0)

    def _converged(self) -> bool:
        live = self.cluster.live(self.declared)
        return live is not None and live["data"] == {"k": "declared"}

    def test_workers_drain_the_queue(self) -> None:
        self.remediator.start()
        self.remediator.queue.add(Deleted(self.declared))

        assert _wait_for(self._converged)

    def test_paused_workers_hold_corrections_until_resumed(self) -> None:
        assert self.remediator.pause()
        assert self.remediator.paused
        self.remediator.start()
        self.remediator.queue.add(Deleted(self.declared))

        time.sleep(0.1)
        assert self.cluster.live(self.declared) is None

        self.remediator.resume()

        assert _wait_for(self._converged)
        assert not self.remediator.paused
