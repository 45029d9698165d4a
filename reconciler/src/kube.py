from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from reconciler.src.core import GroupVersionKind, gvk_of

LOGGER = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"


class TypeNotServedError(Exception):
    """The API server does not serve the requested group/version/kind."""


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_dynamic_client() -> DynamicClient:
    """Return a discovery-backed dynamic client using the active kube configuration."""
    return DynamicClient(client.ApiClient())


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_request_too_large(exc: BaseException) -> bool:
    """Return True for API errors caused by an oversized request body."""
    if isinstance(exc, ApiException) and exc.status == 413:
        return True
    return "request is too large" in str(exc).lower()


class ClusterClient:
    """Generic get/apply/delete/patch/list/watch over any GVK.

    A thin layer over :class:`kubernetes.dynamic.DynamicClient` that speaks
    plain ``dict`` manifests, maps 404 on reads to ``None`` and maps missing
    API resources to :class:`TypeNotServedError`.
    """

    def __init__(self, dynamic: DynamicClient, field_manager: str) -> None:
        self.dynamic = dynamic
        self.field_manager = field_manager

    def _resource(self, gvk: GroupVersionKind) -> Any:
        try:
            return self.dynamic.resources.get(api_version=gvk.api_version, kind=gvk.kind)
        except ResourceNotFoundError as exc:
            raise TypeNotServedError(f"no API resource serves {gvk}") from exc

    def is_namespaced(self, gvk: GroupVersionKind) -> bool:
        return bool(self._resource(gvk).namespaced)

    def namespaced_types(self) -> set[GroupVersionKind]:
        """Return every listable namespaced type the server serves, one version per kind."""
        preferred: dict[tuple[str, str], tuple[bool, GroupVersionKind]] = {}
        for resource in self.dynamic.resources.search(namespaced=True):
            kind = getattr(resource, "kind", "") or ""
            name = getattr(resource, "name", "") or ""
            if not kind or kind.endswith("List") or "/" in name:
                continue
            if "list" not in (getattr(resource, "verbs", None) or []):
                continue
            group = getattr(resource, "group", "") or ""
            gvk = GroupVersionKind(group=group, version=resource.api_version, kind=kind)
            is_preferred = bool(getattr(resource, "preferred", False))
            current = preferred.get((group, kind))
            if current is None or (is_preferred and not current[0]):
                preferred[(group, kind)] = (is_preferred, gvk)
        return {gvk for _, gvk in preferred.values()}

    def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> dict[str, Any] | None:
        resource = self._resource(gvk)
        try:
            live = self.dynamic.get(resource, name=name, namespace=namespace or None)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise
        return live.to_dict()

    def apply(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Server-side apply *obj* as this client's field manager, forcing ownership."""
        resource = self._resource(gvk_of(obj))
        meta = obj.get("metadata") or {}
        applied = self.dynamic.server_side_apply(
            resource,
            body=obj,
            name=meta.get("name"),
            namespace=meta.get("namespace") or None,
            field_manager=self.field_manager,
            force_conflicts=True,
        )
        return applied.to_dict()

    def delete(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        propagation_policy: str = "Background",
    ) -> bool:
        """Delete an object.  Returns False if it was already gone."""
        resource = self._resource(gvk)
        try:
            self.dynamic.delete(
                resource,
                name=name,
                namespace=namespace or None,
                body={"propagationPolicy": propagation_policy},
            )
        except ApiException as exc:
            if is_not_found(exc):
                return False
            raise
        return True

    def merge_patch(
        self, gvk: GroupVersionKind, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        resource = self._resource(gvk)
        patched = self.dynamic.patch(
            resource,
            body=patch,
            name=name,
            namespace=namespace or None,
            content_type=MERGE_PATCH,
        )
        return patched.to_dict()

    def list(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """List objects and return ``(items, resourceVersion)`` for a follow-up watch."""
        resource = self._resource(gvk)
        listing = self.dynamic.get(
            resource, namespace=namespace or None, label_selector=label_selector
        ).to_dict()
        items = listing.get("items") or []
        for item in items:
            # List items omit apiVersion/kind.
            item.setdefault("apiVersion", gvk.api_version)
            item.setdefault("kind", gvk.kind)
        resource_version = (listing.get("metadata") or {}).get("resourceVersion")
        return items, resource_version

    def watch(
        self,
        gvk: GroupVersionKind,
        watcher: watch.Watch,
        namespace: str | None = None,
        label_selector: str | None = None,
        resource_version: str | None = None,
        timeout_seconds: int = 30,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        """Yield ``(event_type, raw_object)`` pairs until the server closes the stream.

        A ``410 Gone`` (resource version compacted away) surfaces as
        :class:`ApiException` with ``status == 410``.
        """
        resource = self._resource(gvk)
        for event in self.dynamic.watch(
            resource,
            namespace=namespace or None,
            label_selector=label_selector,
            resource_version=resource_version,
            timeout=timeout_seconds,
            watcher=watcher,
        ):
            yield str(event.get("type", "")), event.get("raw_object") or {}
