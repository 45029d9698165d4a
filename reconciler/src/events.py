"""Event protocol between the Supervisor and an apply-prune-wait engine.

An engine run yields one ordered stream of events.  Each event class is tagged
with its phase (:class:`EventType`) and carries a nested status enum, so the
Supervisor dispatches on ``(event.type, event.status)`` and on the closed set
of cause classes below instead of inspecting arbitrary exceptions.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Protocol

from reconciler.src.core import ObjectIdentity


class EventType(str, Enum):
    APPLY = "Apply"
    PRUNE = "Prune"
    WAIT = "Wait"
    ERROR = "Error"


class ApplyEventStatus(str, Enum):
    PENDING = "Pending"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class PruneEventStatus(str, Enum):
    PENDING = "Pending"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class WaitEventStatus(str, Enum):
    RECONCILE_PENDING = "ReconcilePending"
    RECONCILE_SUCCESSFUL = "ReconcileSuccessful"
    RECONCILE_FAILED = "ReconcileFailed"
    RECONCILE_TIMEOUT = "ReconcileTimeout"


class Phase(str, Enum):
    ACTUATION = "actuation"
    RECONCILE = "reconcile"


class Relationship(str, Enum):
    DEPENDENCY = "dependency"
    DEPENDENT = "dependent"


class CauseStrategy(str, Enum):
    APPLY = "apply"
    DELETE = "delete"


# Causes attached to events.  The set is closed: the Supervisor only knows
# how to classify these.


class UnknownTypeCause(Exception):
    """The object's type is not served by the cluster (e.g. CRD not established)."""


class ApplyRunCause(Exception):
    """The engine attempted the write and the API server rejected it."""


@dataclass(eq=False)
class PolicyPreventedActuation(Exception):
    """Inventory single-writer policy refused to touch an object owned elsewhere."""

    strategy: CauseStrategy
    current_manager: str = ""
    current_inventory: str = ""

    def __str__(self) -> str:
        owner = self.current_manager or self.current_inventory or "unknown"
        return f"{self.strategy.value} prevented by inventory policy: object is owned by {owner!r}"


@dataclass(eq=False)
class DependencyPreventedActuation(Exception):
    """Actuation was skipped because a dependency (or dependent) is not ready."""

    object: ObjectIdentity
    strategy: CauseStrategy
    relationship: Relationship
    relation: ObjectIdentity
    relation_phase: Phase
    relation_actuation_status: str
    relation_reconcile_status: str

    def __str__(self) -> str:
        status = (
            self.relation_actuation_status
            if self.relation_phase == Phase.ACTUATION
            else self.relation_reconcile_status
        )
        return (
            f"{self.relationship.value} {self.strategy.value} {self.relation_phase.value} "
            f"{status.lower()}: {self.relation.object_id()}"
        )


@dataclass(eq=False)
class NamespaceInUse(Exception):
    namespace: str

    def __str__(self) -> str:
        return f"namespace still in use: {self.namespace}"


@dataclass(eq=False)
class AnnotationPreventedDeletion(Exception):
    annotation: str
    value: str

    def __str__(self) -> str:
        return f"annotation prevents deletion ({self.annotation!r}: {self.value!r})"


@dataclass(frozen=True)
class ApplyEvent:
    type: ClassVar[EventType] = EventType.APPLY

    status: ApplyEventStatus
    identifier: ObjectIdentity
    resource: dict[str, Any] | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class PruneEvent:
    type: ClassVar[EventType] = EventType.PRUNE

    status: PruneEventStatus
    identifier: ObjectIdentity
    object: dict[str, Any] | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class WaitEvent:
    type: ClassVar[EventType] = EventType.WAIT

    status: WaitEventStatus
    identifier: ObjectIdentity


@dataclass(frozen=True)
class ErrorEvent:
    """Engine-level failure not attributable to one managed object."""

    type: ClassVar[EventType] = EventType.ERROR

    error: Exception


Event = ApplyEvent | PruneEvent | WaitEvent | ErrorEvent


@dataclass(frozen=True)
class InventoryInfo:
    """Where the engine keeps the record of which objects a sync owns."""

    name: str
    namespace: str
    id: str


@dataclass(frozen=True)
class EngineOptions:
    """Per-run engine settings.

    ``retain`` names inventory objects that are neither applied nor pruned
    this run; they stay in the inventory untouched.
    """

    reconcile_timeout_seconds: float = 300.0
    prune_timeout_seconds: float = 0.0
    destroy: bool = False
    propagation_policy: str = "Background"
    field_manager: str = "converge"
    retain: frozenset[ObjectIdentity] = frozenset()


class ApplyEngine(Protocol):
    """A declarative apply-prune-wait engine.

    ``run`` yields events in the order actuation happens.  Objects recorded in
    the inventory but missing from *objects* are pruned.  With
    ``options.destroy`` every inventory object is pruned.
    """

    def run(
        self,
        cancel: threading.Event,
        inventory: InventoryInfo,
        objects: list[dict[str, Any]],
        options: EngineOptions,
    ) -> Iterator[Event]: ...
