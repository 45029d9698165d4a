from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from reconciler.src.core import GroupVersionKind
from reconciler.src.kube import (
    MERGE_PATCH,
    ClusterClient,
    TypeNotServedError,
    is_request_too_large,
    load_kube_configuration,
)
from reconciler.tests.fakes import make_obj

CONFIG_MAP = GroupVersionKind("", "v1", "ConfigMap")


def _result(payload: dict) -> SimpleNamespace:
    return SimpleNamespace(to_dict=lambda: payload)


def _client() -> tuple[ClusterClient, MagicMock]:
    dynamic = MagicMock()
    return ClusterClient(dynamic, field_manager=":root_root-sync"), dynamic


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("reconciler.src.kube.config.load_incluster_config") as mock_incluster,
        patch("reconciler.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "reconciler.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("reconciler.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


class TestClusterClient:
    def test_get_returns_plain_dict(self) -> None:
        client, dynamic = _client()
        dynamic.get.return_value = _result(make_obj())

        assert client.get(CONFIG_MAP, "default", "cm") == make_obj()
        dynamic.resources.get.assert_called_once_with(api_version="v1", kind="ConfigMap")

    def test_get_missing_object_is_none(self) -> None:
        client, dynamic = _client()
        dynamic.get.side_effect = ApiException(status=404)

        assert client.get(CONFIG_MAP, "default", "cm") is None

    def test_get_propagates_other_errors(self) -> None:
        client, dynamic = _client()
        dynamic.get.side_effect = ApiException(status=500)

        with pytest.raises(ApiException):
            client.get(CONFIG_MAP, "default", "cm")

    def test_unserved_type(self) -> None:
        client, dynamic = _client()
        dynamic.resources.get.side_effect = ResourceNotFoundError("no Widget")

        with pytest.raises(TypeNotServedError, match="Kind=Widget"):
            client.get(GroupVersionKind("example.com", "v1", "Widget"), "default", "w")

    def test_apply_uses_server_side_apply_with_field_manager(self) -> None:
        client, dynamic = _client()
        namespace = make_obj(kind="Namespace", name="prod", namespace="")
        dynamic.server_side_apply.return_value = _result(namespace)

        assert client.apply(namespace) == namespace

        kwargs = dynamic.server_side_apply.call_args.kwargs
        assert kwargs["field_manager"] == ":root_root-sync"
        assert kwargs["force_conflicts"] is True
        assert kwargs["namespace"] is None
        assert kwargs["name"] == "prod"

    def test_delete_sends_propagation_policy(self) -> None:
        client, dynamic = _client()

        assert client.delete(CONFIG_MAP, "default", "cm", propagation_policy="Foreground")

        kwargs = dynamic.delete.call_args.kwargs
        assert kwargs["body"] == {"propagationPolicy": "Foreground"}

    def test_delete_missing_object_is_false(self) -> None:
        client, dynamic = _client()
        dynamic.delete.side_effect = ApiException(status=404)

        assert not client.delete(CONFIG_MAP, "default", "cm")

    def test_merge_patch_content_type(self) -> None:
        client, dynamic = _client()
        dynamic.patch.return_value = _result(make_obj())

        client.merge_patch(CONFIG_MAP, "default", "cm", {"metadata": {"labels": {"a": None}}})

        assert dynamic.patch.call_args.kwargs["content_type"] == MERGE_PATCH

    def test_list_fills_in_type_fields(self) -> None:
        client, dynamic = _client()
        dynamic.get.return_value = _result(
            {"metadata": {"resourceVersion": "42"}, "items": [{"metadata": {"name": "cm"}}]}
        )

        items, resource_version = client.list(CONFIG_MAP, namespace="default")

        assert resource_version == "42"
        assert items == [{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "cm"}}]

    def test_namespaced_types_keeps_listable_kinds_at_preferred_version(self) -> None:
        client, dynamic = _client()

        def resource(kind: str, name: str, version: str = "v1", group: str = "", **kwargs):
            fields = {"verbs": ["get", "list", "watch"], "preferred": True, **kwargs}
            return SimpleNamespace(kind=kind, name=name, group=group, api_version=version, **fields)

        dynamic.resources.search.return_value = [
            resource("ConfigMap", "configmaps"),
            resource("ConfigMapList", "configmaps"),
            resource("Pod", "pods/log", verbs=["get"]),
            resource("TokenReview", "tokenreviews", verbs=["create"]),
            resource("HorizontalPodAutoscaler", "horizontalpodautoscalers", "v1", "autoscaling", preferred=False),
            resource("HorizontalPodAutoscaler", "horizontalpodautoscalers", "v2", "autoscaling"),
        ]

        assert client.namespaced_types() == {
            GroupVersionKind("", "v1", "ConfigMap"),
            GroupVersionKind("autoscaling", "v2", "HorizontalPodAutoscaler"),
        }
        dynamic.resources.search.assert_called_once_with(namespaced=True)

    def test_watch_yields_event_type_and_raw_object(self) -> None:
        client, dynamic = _client()
        dynamic.watch.return_value = iter([{"type": "ADDED", "raw_object": make_obj()}])
        watcher = MagicMock()

        events = list(client.watch(CONFIG_MAP, watcher, resource_version="7"))

        assert events == [("ADDED", make_obj())]
        kwargs = dynamic.watch.call_args.kwargs
        assert kwargs["watcher"] is watcher
        assert kwargs["resource_version"] == "7"


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ApiException(status=413), True),
        (Exception("etcdserver: request is too large"), True),
        (ApiException(status=500, reason="Internal"), False),
    ],
)
def test_is_request_too_large(error: BaseException, expected: bool) -> None:
    assert is_request_too_large(error) is expected
