from __future__ import annotations

import threading
from unittest.mock import MagicMock

from reconciler.src.applier import Supervisor
from reconciler.src.conflict import ConflictHandler
from reconciler.src.core import GroupVersionKind, ObjectIdentity, identity_of
from reconciler.src.declared import DeclaredResources
from reconciler.src.errors import DeleteAllNamespacesError
from reconciler.src.events import ApplyEvent, ApplyEventStatus, UnknownTypeCause
from reconciler.src.updater import Updater, utc_now_rfc3339
from reconciler.src.watch import WatchState
from reconciler.tests.fakes import FakeCluster, FakeEngine, make_obj

MANAGER = ":root_root-sync"


def _ns(name: str) -> dict:
    return make_obj(kind="Namespace", name=name, namespace="")


class TestUpdater:
    def setup_method(self) -> None:
        self.engine = FakeEngine()
        self.conflicts = ConflictHandler(MANAGER)
        self.resources = DeclaredResources()
        self.remediator = MagicMock()
        self.remediator.watching.return_value = {
            GroupVersionKind("", "v1", "ConfigMap"): WatchState.WATCHING
        }
        self.supervisor = Supervisor(
            FakeCluster(),
            self.engine,
            ":root",
            "root-sync",
            self.conflicts,
            remediator=self.remediator,
        )
        self.updater = Updater(self.resources, self.supervisor, self.remediator)

    def test_update_applies_snapshot_and_refreshes_watches(self) -> None:
        obj = make_obj(name="a")
        self.engine.events = [ApplyEvent(ApplyEventStatus.SUCCESSFUL, identity_of(obj))]

        result = self.updater.update(threading.Event(), [obj], commit="abc")

        assert result.error is None
        assert self.resources.commit == "abc"
        assert len(self.engine.runs) == 1
        self.remediator.update_watches.assert_called_once_with()
        assert self.updater.ready.is_set()

    def test_namespace_safeguard_blocks_the_pass(self) -> None:
        self.updater.update(threading.Event(), [_ns("a"), _ns("b")], commit="good")

        result = self.updater.update(threading.Event(), [make_obj()], commit="bad")

        assert result.error is not None
        assert isinstance(result.error.errors[0], DeleteAllNamespacesError)
        assert len(self.engine.runs) == 1
        assert self.resources.commit == "good"
        assert self.updater.status()["errors"] == [str(result.error)]

    def test_remediator_paused_before_the_snapshot_is_swapped(self) -> None:
        self.updater.update(threading.Event(), [make_obj(name="a")], commit="old")
        commits_at_pause: list[str] = []
        self.remediator.reset_mock()
        self.remediator.pause.side_effect = lambda: commits_at_pause.append(self.resources.commit)

        self.updater.update(threading.Event(), [make_obj(name="b")], commit="new")

        assert commits_at_pause[0] == "old"
        assert [call[0] for call in self.remediator.method_calls][-1] == "resume"

    def test_remediator_resumed_when_the_snapshot_is_refused(self) -> None:
        self.updater.update(threading.Event(), [_ns("a"), _ns("b")], commit="good")
        self.remediator.reset_mock()

        self.updater.update(threading.Event(), [make_obj()], commit="bad")

        assert [call[0] for call in self.remediator.method_calls] == ["pause", "resume"]

    def test_cancelled_pass_does_not_mark_ready(self) -> None:
        cancel = threading.Event()
        cancel.set()

        self.updater.update(cancel, [make_obj()])

        self.remediator.update_watches.assert_not_called()
        assert not self.updater.ready.is_set()

    def test_status_summarises_the_last_pass(self) -> None:
        obj = make_obj(name="a")
        self.engine.events = [
            ApplyEvent(ApplyEventStatus.FAILED, identity_of(obj), error=UnknownTypeCause("no kind"))
        ]
        self.conflicts.record_conflict(ObjectIdentity("", "ConfigMap", "default", "b"), ":root_other")

        self.updater.update(threading.Event(), [obj], commit="abc")
        status = self.updater.status()

        assert status["manager"] == MANAGER
        assert status["commit"] == "abc"
        assert status["declaredObjects"] == 1
        assert status["conflicts"] == {"ConfigMap, default/b": ":root_other"}
        assert status["unknownTypes"] == ["ConfigMap, default/a"]
        assert status["watches"] == {"v1, Kind=ConfigMap": "Watching"}
        assert status["objects"] == {"Apply": {"Failed": 1}}
        assert status["stats"]["apply"] == {"Failed": 1}
        assert len(status["errors"]) == 1
        assert status["lastSyncTime"].endswith("Z")

    def test_status_before_first_pass(self) -> None:
        status = self.updater.status()
        assert status["lastSyncTime"] is None
        assert "objects" not in status


def test_utc_now_rfc3339_format() -> None:
    value = utc_now_rfc3339()
    assert value.endswith("Z")
    assert "." not in value
