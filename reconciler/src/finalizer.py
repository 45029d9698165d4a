from __future__ import annotations

import logging
import threading
from typing import Any

from reconciler.src.applier import ErrorReported, PassResult, Supervisor
from reconciler.src.core import GroupVersionKind, get_annotation, gvk_of, identity_of
from reconciler.src.metadata import (
    DELETION_PROPAGATION_POLICY_KEY,
    RECONCILER_FINALIZER,
    DeletionPropagationPolicy,
)
from reconciler.src.remediator import Remediator


def has_finalizer(obj: dict[str, Any], finalizer: str = RECONCILER_FINALIZER) -> bool:
    return finalizer in ((obj.get("metadata") or {}).get("finalizers") or [])


def add_finalizer(obj: dict[str, Any], finalizer: str = RECONCILER_FINALIZER) -> bool:
    """Add *finalizer* to ``obj`` in place.  Returns True if it was missing."""
    meta = obj.setdefault("metadata", {})
    finalizers = list(meta.get("finalizers") or [])
    if finalizer in finalizers:
        return False
    finalizers.append(finalizer)
    meta["finalizers"] = finalizers
    return True


def remove_finalizer(obj: dict[str, Any], finalizer: str = RECONCILER_FINALIZER) -> bool:
    """Remove every occurrence of *finalizer* from ``obj``.  Returns True if any was removed."""
    meta = obj.setdefault("metadata", {})
    finalizers = list(meta.get("finalizers") or [])
    remaining = [value for value in finalizers if value != finalizer]
    if len(remaining) == len(finalizers):
        return False
    meta["finalizers"] = remaining
    return True


def propagation_policy(
    sync_obj: dict[str, Any], default: DeletionPropagationPolicy
) -> DeletionPropagationPolicy:
    """Return the policy requested on the sync object, falling back to *default*."""
    raw = get_annotation(sync_obj, DELETION_PROPAGATION_POLICY_KEY)
    if raw is None:
        return default
    try:
        return DeletionPropagationPolicy(raw)
    except ValueError:
        logging.getLogger(__name__).warning(
            "Ignoring invalid %s=%r on %s", DELETION_PROPAGATION_POLICY_KEY, raw, identity_of(sync_obj)
        )
        return default


class Finalizer:
    """Cleans up managed objects when the sync object is deleted.

    With the ``Foreground`` policy the sync object carries a finalizer; once
    it is marked for deletion the remediator is paused and its watches
    stopped, then a destroy pass deletes everything in the inventory.  The
    finalizer is only removed after a destroy pass without errors, so a
    failed teardown is retried on the next sync.  With ``Orphan`` managed
    objects are left in place and no finalizer is kept.
    """

    def __init__(
        self,
        client: Any,
        supervisor: Supervisor,
        remediator: Remediator,
        default_policy: DeletionPropagationPolicy = DeletionPropagationPolicy.FOREGROUND,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.supervisor = supervisor
        self.remediator = remediator
        self.default_policy = default_policy
        self.logger = logger or logging.getLogger(__name__)

    def _patch_finalizers(self, sync_obj: dict[str, Any]) -> None:
        identity = identity_of(sync_obj)
        gvk: GroupVersionKind = gvk_of(sync_obj)
        finalizers = (sync_obj.get("metadata") or {}).get("finalizers") or []
        self.client.merge_patch(
            gvk, identity.namespace, identity.name, {"metadata": {"finalizers": finalizers}}
        )

    def finalize(self, cancel: threading.Event) -> PassResult:
        """Stop remediation and delete every managed object."""
        self.remediator.pause()
        self.remediator.watches.stop_all()

        def _log_error(event: ErrorReported) -> None:
            self.logger.error("Finalizer error [%s]: %s", event.error.kind, event.error)

        return self.supervisor.destroy(cancel, _log_error)

    def reconcile(self, cancel: threading.Event, sync_obj: dict[str, Any]) -> bool:
        """Keep the finalizer in step with the policy and run it on deletion.

        Returns True while the sync object is being deleted, in which case
        the caller must not run apply passes.
        """
        policy = propagation_policy(sync_obj, self.default_policy)
        deleting = bool((sync_obj.get("metadata") or {}).get("deletionTimestamp"))

        if not deleting:
            if policy == DeletionPropagationPolicy.FOREGROUND:
                changed = add_finalizer(sync_obj)
            else:
                changed = remove_finalizer(sync_obj)
            if changed:
                self._patch_finalizers(sync_obj)
                self.logger.info(
                    "Updated finalizers on %s for %s deletion policy",
                    identity_of(sync_obj),
                    policy.value,
                )
            return False

        if not has_finalizer(sync_obj):
            self.logger.info("%s is being deleted; orphaning managed objects", identity_of(sync_obj))
            return True

        result = self.finalize(cancel)
        if result.error:
            self.logger.warning(
                "Destroy pass for %s finished with %d error(s); keeping finalizer",
                identity_of(sync_obj),
                len(result.error),
            )
            return True

        remove_finalizer(sync_obj)
        self._patch_finalizers(sync_obj)
        self.logger.info("Finalized %s: managed objects deleted", identity_of(sync_obj))
        return True
