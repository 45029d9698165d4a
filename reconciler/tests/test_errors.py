from __future__ import annotations

from reconciler.src.core import GroupVersionKind, ObjectIdentity
from reconciler.src.errors import (
    ApplyError,
    DeleteAllNamespacesError,
    EngineError,
    InventoryTooLargeError,
    ManagementConflictError,
    MultiError,
    PruneError,
    SkipError,
    UnknownTypeError,
    combine,
)

DEPLOY = ObjectIdentity("apps", "Deployment", "prod", "web")
CM = ObjectIdentity("", "ConfigMap", "prod", "settings")


def test_apply_error_names_object_source_and_cause() -> None:
    error = ApplyError(
        DEPLOY,
        "admission denied",
        source_path="prod/web.yaml",
        gvk=GroupVersionKind("apps", "v1", "Deployment"),
    )

    assert "failed to apply apps/v1, Kind=Deployment apps/Deployment, prod/web" in str(error)
    assert "admission denied" in str(error)
    assert "source: prod/web.yaml" in str(error)
    assert error.identities == (DEPLOY,)


def test_unknown_type_error_is_an_apply_error() -> None:
    error = UnknownTypeError(DEPLOY, "no matches for kind")
    assert isinstance(error, ApplyError)
    assert error.kind == "UnknownType"


def test_management_conflict_names_both_managers() -> None:
    error = ManagementConflictError(CM, "prod_repo-sync", ":root_root-sync")

    assert "'prod_repo-sync'" in str(error)
    assert "':root_root-sync'" in str(error)
    assert error.kind == "ManagementConflict"


def test_prune_error_names_source() -> None:
    error = PruneError(CM, "forbidden", source_path="prod/settings.yaml")

    assert str(error) == "failed to prune ConfigMap, prod/settings: forbidden\n\n\tsource: prod/settings.yaml"
    assert error.source_path == "prod/settings.yaml"


def test_skip_error_includes_cause() -> None:
    error = SkipError(CM, "Delete", "namespace still in use: prod")
    assert str(error) == "skipped delete of ConfigMap, prod/settings: namespace still in use: prod"


def test_inventory_too_large_is_an_engine_error_on_the_sync() -> None:
    sync = ObjectIdentity("converge.dev", "RootSync", "converge-system", "root-sync")
    error = InventoryTooLargeError(sync, "etcdserver: request is too large")

    assert isinstance(error, EngineError)
    assert error.identities == (sync,)
    assert "too large" in str(error)


def test_errors_compare_by_value() -> None:
    assert PruneError(CM, "boom") == PruneError(CM, "boom")
    assert PruneError(CM, "boom") != PruneError(DEPLOY, "boom")
    assert len({PruneError(CM, "boom"), PruneError(CM, "boom")}) == 1


class TestMultiError:
    def test_flattens_nested_errors(self) -> None:
        inner = MultiError([PruneError(CM, "a")])
        outer = MultiError([inner, PruneError(DEPLOY, "b")])

        assert len(outer) == 2
        assert outer.identities == (CM, DEPLOY)

    def test_message_lists_every_error(self) -> None:
        errors = MultiError([PruneError(CM, "a"), PruneError(DEPLOY, "b")])
        assert str(errors).startswith("2 error(s):")
        assert "[2] failed to prune apps/Deployment, prod/web: b" in str(errors)

    def test_single_error_renders_plainly(self) -> None:
        assert str(MultiError([PruneError(CM, "a")])) == "failed to prune ConfigMap, prod/settings: a"

    def test_of_kind(self) -> None:
        errors = MultiError([PruneError(CM, "a"), SkipError(DEPLOY, "Apply", "x")])
        assert errors.of_kind(SkipError) == [SkipError(DEPLOY, "Apply", "x")]

    def test_combine_skips_none(self) -> None:
        assert combine(None, None) is None
        combined = combine(None, DeleteAllNamespacesError(["a", "b"]))
        assert combined is not None and len(combined) == 1
