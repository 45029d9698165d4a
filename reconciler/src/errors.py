from __future__ import annotations

from collections.abc import Iterable, Iterator

from reconciler.src.core import GroupVersionKind, ObjectIdentity


class ReconcilerError(Exception):
    """Base of the closed error taxonomy surfaced from apply, prune and remediation.

    Every subclass names the objects it concerns in ``identities`` so callers
    can attach the error to per-object status.
    """

    kind = "Reconciler"

    def __init__(self, message: str, identities: Iterable[ObjectIdentity] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.identities: tuple[ObjectIdentity, ...] = tuple(identities)

    def __str__(self) -> str:
        return self.message

    def __eq__(self, other: object) -> bool:
        return (
            type(self) is type(other)
            and isinstance(other, ReconcilerError)
            and self.message == other.message
            and self.identities == other.identities
        )

    def __hash__(self) -> int:
        return hash((type(self), self.message, self.identities))


def _with_source(message: str, source_path: str) -> str:
    if not source_path:
        return message
    return f"{message}\n\n\tsource: {source_path}"


class ApplyError(ReconcilerError):
    """Failed to create or update one object."""

    kind = "Apply"

    def __init__(
        self,
        identity: ObjectIdentity,
        cause: BaseException | str,
        *,
        source_path: str = "",
        gvk: GroupVersionKind | None = None,
    ) -> None:
        self.identity = identity
        self.cause = cause
        self.source_path = source_path
        self.gvk = gvk
        kind = str(gvk) if gvk is not None else identity.kind
        super().__init__(
            _with_source(f"failed to apply {kind} {identity}: {cause}", source_path),
            (identity,),
        )


class UnknownTypeError(ApplyError):
    """The target type is not served by the cluster; possibly transient."""

    kind = "UnknownType"


class PruneError(ReconcilerError):
    """Failed to delete one object."""

    kind = "Prune"

    def __init__(
        self, identity: ObjectIdentity, cause: BaseException | str, *, source_path: str = ""
    ) -> None:
        self.identity = identity
        self.cause = cause
        self.source_path = source_path
        super().__init__(_with_source(f"failed to prune {identity}: {cause}", source_path), (identity,))


class SkipError(ReconcilerError):
    """The engine declined to actuate an object."""

    kind = "Skip"

    def __init__(
        self,
        identity: ObjectIdentity,
        strategy: str,
        cause: BaseException | str,
        *,
        source_path: str = "",
    ) -> None:
        self.identity = identity
        self.strategy = strategy
        self.cause = cause
        super().__init__(
            _with_source(f"skipped {strategy.lower()} of {identity}: {cause}", source_path),
            (identity,),
        )


class ManagementConflictError(ReconcilerError):
    """The object is managed by a different reconciler."""

    kind = "ManagementConflict"

    def __init__(
        self,
        identity: ObjectIdentity,
        desired_manager: str,
        current_manager: str,
        *,
        source_path: str = "",
    ) -> None:
        self.identity = identity
        self.desired_manager = desired_manager
        self.current_manager = current_manager or "unknown"
        super().__init__(
            _with_source(
                f"The {desired_manager!r} reconciler detected a management conflict with "
                f"the {self.current_manager!r} reconciler for {identity}. Remove the object "
                "from one of the sources of truth so that the object is only managed by "
                "one reconciler.",
                source_path,
            ),
            (identity,),
        )


class EngineError(ReconcilerError):
    """Bookkeeping or transport failure not attributable to one managed object."""

    kind = "Engine"

    def __init__(self, message: str, inventory: ObjectIdentity | None = None) -> None:
        self.inventory = inventory
        super().__init__(message, (inventory,) if inventory is not None else ())


class InventoryTooLargeError(EngineError):
    """The inventory object itself no longer fits in the API server's request limit."""

    def __init__(self, inventory: ObjectIdentity, cause: BaseException | str) -> None:
        self.cause = cause
        super().__init__(
            f"the inventory object {inventory} is too large to be stored: {cause}. "
            "Split the source of truth into several syncs to reduce the number of "
            "managed objects.",
            inventory,
        )


class PassCancelledError(ReconcilerError):
    kind = "Cancelled"

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} pass cancelled before completion")


class DeleteAllNamespacesError(ReconcilerError):
    """Refusal to prune every previously declared Namespace in a single pass."""

    kind = "Safeguard"

    def __init__(self, namespaces: Iterable[str]) -> None:
        self.namespaces = tuple(namespaces)
        super().__init__(
            "refusing to delete all previously declared Namespaces "
            f"({', '.join(sorted(self.namespaces))}) in one sync; declare at least one "
            "of them or remove them over several commits.",
        )


class MultiError(ReconcilerError):
    """An ordered, flattened collection of reconciler errors from one pass."""

    kind = "Multi"

    def __init__(self, errors: Iterable[ReconcilerError] = ()) -> None:
        self.errors: list[ReconcilerError] = []
        super().__init__("")
        for error in errors:
            self.append(error)

    def append(self, error: ReconcilerError) -> MultiError:
        if isinstance(error, MultiError):
            self.errors.extend(error.errors)
        else:
            self.errors.append(error)
        self.message = self._render()
        self.identities = tuple(
            identity for err in self.errors for identity in err.identities
        )
        return self

    def _render(self) -> str:
        if len(self.errors) == 1:
            return str(self.errors[0])
        lines = [f"{len(self.errors)} error(s):"]
        lines.extend(f"[{index}] {error}" for index, error in enumerate(self.errors, start=1))
        return "\n\n".join(lines)

    def __iter__(self) -> Iterator[ReconcilerError]:
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    def __bool__(self) -> bool:
        return bool(self.errors)

    def of_kind(self, error_type: type[ReconcilerError]) -> list[ReconcilerError]:
        return [error for error in self.errors if isinstance(error, error_type)]


def combine(*errors: ReconcilerError | None) -> MultiError | None:
    """Combine errors into one ``MultiError``, or ``None`` if there are none."""
    combined = MultiError(error for error in errors if error is not None)
    return combined or None
