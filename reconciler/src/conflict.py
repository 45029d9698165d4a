from __future__ import annotations

import logging
import threading
from typing import Any

from reconciler.src.core import ROOT_SCOPE, ObjectIdentity, get_annotation
from reconciler.src.metadata import RESOURCE_MANAGER_KEY, ManagementMode, management_mode
from reconciler.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

UNKNOWN_MANAGER = "unknown"


def manager_of(obj: dict[str, Any]) -> str:
    """Return the live object's manager annotation, or ``""`` when unmanaged."""
    return get_annotation(obj, RESOURCE_MANAGER_KEY) or ""


def is_root_manager(manager: str) -> bool:
    return manager.startswith(f"{ROOT_SCOPE}_")


class ConflictHandler:
    """Decides whether this reconciler may write an object and tracks conflicts.

    The conflict table is advisory: it never blocks actuation, it only feeds
    status reporting and the ``management_conflicts`` gauge.  One handler is
    shared by the Supervisor and the Remediator of the same sync.
    """

    def __init__(self, manager: str) -> None:
        self.manager = manager
        self._conflicts: dict[ObjectIdentity, str] = {}
        self._lock = threading.Lock()

    def is_managed_by(self, obj: dict[str, Any], manager: str | None = None) -> bool:
        """Return True if *obj*'s manager annotation equals *manager* (default: ours)."""
        current = manager_of(obj)
        if not current:
            return False
        return current == (manager or self.manager)

    def can_manage(self, obj: dict[str, Any]) -> bool:
        """Return True if this reconciler may write *obj*.

        Unmanaged and management-disabled objects are fair game, as are ours.
        A root reconciler may take over objects managed by a namespace
        reconciler; the reverse is a conflict, as is any other manager.
        """
        current = manager_of(obj)
        if not current or current == self.manager:
            return True
        if management_mode(obj) == ManagementMode.DISABLED:
            return True
        return is_root_manager(self.manager) and not is_root_manager(current)

    def record_conflict(self, identity: ObjectIdentity, actual_manager: str) -> None:
        with self._lock:
            previous = self._conflicts.get(identity)
            self._conflicts[identity] = actual_manager or UNKNOWN_MANAGER
            METRICS.management_conflicts.labels(manager=self.manager).set(len(self._conflicts))
        if previous is None:
            LOGGER.warning(
                "Management conflict on %s: managed by %r, declared by %r",
                identity,
                actual_manager or UNKNOWN_MANAGER,
                self.manager,
            )

    def clear_conflict(self, identity: ObjectIdentity) -> None:
        with self._lock:
            if self._conflicts.pop(identity, None) is not None:
                LOGGER.info("Management conflict on %s resolved", identity)
            METRICS.management_conflicts.labels(manager=self.manager).set(len(self._conflicts))

    def has_conflict(self, identity: ObjectIdentity) -> bool:
        with self._lock:
            return identity in self._conflicts

    def conflicts(self) -> dict[ObjectIdentity, str]:
        with self._lock:
            return dict(self._conflicts)
