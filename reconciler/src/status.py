from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum

from reconciler.src.core import ObjectIdentity
from reconciler.src.events import ApplyEventStatus, PruneEventStatus, WaitEventStatus

LOGGER = logging.getLogger(__name__)


class ActuationStrategy(str, Enum):
    APPLY = "Apply"
    DELETE = "Delete"


class ActuationStatus(str, Enum):
    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class ReconcileStatus(str, Enum):
    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMEOUT = "Timeout"


_TERMINAL_ACTUATION = frozenset({ActuationStatus.FAILED, ActuationStatus.SKIPPED})


@dataclass
class ObjectStatus:
    """Outcome of one object within a single apply or destroy pass.

    ``actuation`` is monotonic: once Failed or Skipped it is never overwritten
    by a later event for the same object.  ``reconcile`` stays ``None`` until
    the engine reports on live readiness, and only moves once actuation has
    Succeeded.
    """

    strategy: ActuationStrategy
    actuation: ActuationStatus = ActuationStatus.PENDING
    reconcile: ReconcileStatus | None = None

    def set_actuation(self, value: ActuationStatus) -> bool:
        """Update actuation unless it already reached a terminal failure state."""
        if self.actuation in _TERMINAL_ACTUATION:
            return False
        self.actuation = value
        return True

    def set_reconcile(self, value: ReconcileStatus) -> bool:
        if self.actuation != ActuationStatus.SUCCEEDED:
            return False
        self.reconcile = value
        return True


class ObjectStatusMap(dict[ObjectIdentity, ObjectStatus]):
    """Per-object status for one pass, keyed by identity."""

    def status_for(self, identity: ObjectIdentity, strategy: ActuationStrategy) -> ObjectStatus:
        """Return the entry for *identity*, creating it with *strategy* if absent.

        An object is never both applied and deleted in one pass; a conflicting
        strategy on an existing entry is logged and the original one kept.
        """
        current = self.get(identity)
        if current is None:
            current = ObjectStatus(strategy=strategy)
            self[identity] = current
        elif current.strategy != strategy:
            LOGGER.warning(
                "Ignoring %s strategy for %s already tracked with %s strategy",
                strategy.value,
                identity,
                current.strategy.value,
            )
        return current

    def filter(
        self,
        strategy: ActuationStrategy | None = None,
        actuation: ActuationStatus | None = None,
        reconcile: ReconcileStatus | None = None,
    ) -> list[ObjectIdentity]:
        """Return the sorted identities whose status matches every given field."""
        return sorted(
            identity
            for identity, status in self.items()
            if (strategy is None or status.strategy == strategy)
            and (actuation is None or status.actuation == actuation)
            and (reconcile is None or status.reconcile == reconcile)
        )

    def summary(self) -> dict[str, dict[str, int]]:
        """Count entries by ``strategy`` then ``actuation``, for logs and ``/statusz``."""
        counts: dict[str, dict[str, int]] = {}
        for status in self.values():
            by_actuation = counts.setdefault(status.strategy.value, {})
            by_actuation[status.actuation.value] = by_actuation.get(status.actuation.value, 0) + 1
        return counts


@dataclass
class SyncStats:
    """Append-only event counters for one pass.  Observability only."""

    apply_events: Counter[ApplyEventStatus] = field(default_factory=Counter)
    prune_events: Counter[PruneEventStatus] = field(default_factory=Counter)
    wait_events: Counter[WaitEventStatus] = field(default_factory=Counter)
    error_events: int = 0

    def with_apply_events(self, status: ApplyEventStatus, count: int) -> SyncStats:
        self.apply_events[status] += count
        return self

    def with_prune_events(self, status: PruneEventStatus, count: int) -> SyncStats:
        self.prune_events[status] += count
        return self

    def with_wait_events(self, status: WaitEventStatus, count: int) -> SyncStats:
        self.wait_events[status] += count
        return self

    def with_error_events(self, count: int) -> SyncStats:
        self.error_events += count
        return self

    def empty(self) -> bool:
        return not (
            sum(self.apply_events.values())
            or sum(self.prune_events.values())
            or sum(self.wait_events.values())
            or self.error_events
        )

    def as_dict(self) -> dict[str, dict[str, int] | int]:
        return {
            "apply": {status.value: count for status, count in self.apply_events.items() if count},
            "prune": {status.value: count for status, count in self.prune_events.items() if count},
            "wait": {status.value: count for status, count in self.wait_events.items() if count},
            "errors": self.error_events,
        }

    def __str__(self) -> str:
        parts: list[str] = []
        for label, counter in (
            ("ApplyEvents", self.apply_events),
            ("PruneEvents", self.prune_events),
            ("WaitEvents", self.wait_events),
        ):
            entries = ", ".join(
                f"{status.value}: {count}"
                for status, count in sorted(counter.items(), key=lambda item: item[0].value)
                if count
            )
            if entries:
                parts.append(f"{label}: ({entries})")
        if self.error_events:
            parts.append(f"ErrorEvents: {self.error_events}")
        return ", ".join(parts)
