from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import Any

from reconciler.src.applier import ErrorReported, PassResult, Supervisor
from reconciler.src.declared import DeclaredResources
from reconciler.src.errors import DeleteAllNamespacesError, MultiError
from reconciler.src.metrics import METRICS
from reconciler.src.remediator import Remediator


def utc_now_rfc3339() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class Updater:
    """Runs one sync pass end to end.

    1. Pause the Remediator, then swap in the new declared snapshot (refusing
       one that would prune every declared Namespace).
    2. Run the Supervisor's apply pass; the Remediator resumes once it ends.
    3. Point the Remediator's watches at the GVKs now declared.

    The last pass outcome is kept for ``/statusz``.
    """

    def __init__(
        self,
        resources: DeclaredResources,
        supervisor: Supervisor,
        remediator: Remediator,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resources = resources
        self.supervisor = supervisor
        self.remediator = remediator
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()
        self._lock = threading.Lock()
        self._last_result: PassResult | None = None
        self._last_sync_time: str | None = None

    def _log_error(self, event: ErrorReported) -> None:
        self.logger.error("Sync error [%s]: %s", event.error.kind, event.error)

    def update(
        self, cancel: threading.Event, objects: list[dict[str, Any]], commit: str = ""
    ) -> PassResult:
        # Corrections against the old snapshot must stop before it is replaced.
        self.remediator.pause()
        try:
            return self._update(cancel, objects, commit)
        finally:
            self.remediator.resume()

    def _update(
        self, cancel: threading.Event, objects: list[dict[str, Any]], commit: str
    ) -> PassResult:
        try:
            diff = self.resources.update_declared(objects, commit)
        except DeleteAllNamespacesError as exc:
            METRICS.pass_errors_total.labels(kind=exc.kind).inc()
            self._log_error(ErrorReported(exc))
            result = PassResult(error=MultiError([exc]))
            self._record(result)
            return result

        if not diff.empty():
            self.logger.info(
                "Declared snapshot %s: %d added, %d removed, %d changed",
                commit or "(no commit)",
                len(diff.added),
                len(diff.removed),
                len(diff.changed),
            )

        result = self.supervisor.apply(cancel, self._log_error, self.resources)
        if not cancel.is_set():
            self.remediator.update_watches()
            self.ready.set()
        self._record(result)
        return result

    def _record(self, result: PassResult) -> None:
        with self._lock:
            self._last_result = result
            self._last_sync_time = utc_now_rfc3339()

    def status(self) -> dict[str, Any]:
        """JSON-ready summary of the last pass, served on ``/statusz``."""
        with self._lock:
            result = self._last_result
            synced_at = self._last_sync_time
        conflicts = self.supervisor.conflict_handler.conflicts()
        summary: dict[str, Any] = {
            "manager": self.supervisor.manager,
            "commit": self.resources.commit,
            "lastSyncTime": synced_at,
            "declaredObjects": len(self.resources.declared_objects()),
            "conflicts": {str(identity): manager for identity, manager in sorted(conflicts.items())},
            "unknownTypes": sorted(str(identity) for identity in self.supervisor.unknown_type_resources()),
            "watches": {
                str(gvk): state.value for gvk, state in sorted(self.remediator.watching().items())
            },
        }
        if result is not None:
            summary["objects"] = result.status.summary()
            summary["stats"] = result.stats.as_dict()
            summary["errors"] = [str(error) for error in (result.error or [])]
        return summary
