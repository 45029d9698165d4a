from __future__ import annotations

from pathlib import Path

import pytest

from reconciler.src.metadata import SOURCE_PATH_KEY
from reconciler.src.source import SourceError, read_manifests

CONFIG_MAP = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: {name}
  namespace: default
data:
  key: value
"""


def _write(root: Path, relative: str, content: str) -> None:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_reads_documents_in_path_order_with_source_path(tmp_path: Path) -> None:
    _write(tmp_path, "b.yaml", CONFIG_MAP.format(name="b"))
    _write(tmp_path, "a/one.yml", CONFIG_MAP.format(name="one") + "---\n" + CONFIG_MAP.format(name="two"))
    _write(tmp_path, "notes.txt", "not a manifest")

    objects = read_manifests(tmp_path)

    assert [obj["metadata"]["name"] for obj in objects] == ["one", "two", "b"]
    assert objects[0]["metadata"]["annotations"][SOURCE_PATH_KEY] == "a/one.yml"
    assert objects[2]["metadata"]["annotations"][SOURCE_PATH_KEY] == "b.yaml"


def test_list_documents_are_flattened_and_empty_documents_skipped(tmp_path: Path) -> None:
    _write(
        tmp_path,
        "list.yaml",
        "---\n---\napiVersion: v1\nkind: List\nitems:\n"
        "- apiVersion: v1\n  kind: ConfigMap\n  metadata:\n    name: x\n",
    )

    objects = read_manifests(tmp_path)

    assert [obj["metadata"]["name"] for obj in objects] == ["x"]


def test_document_without_name_is_rejected(tmp_path: Path) -> None:
    _write(tmp_path, "bad.yaml", "apiVersion: v1\nkind: ConfigMap\nmetadata: {}\n")

    with pytest.raises(SourceError, match="bad.yaml"):
        read_manifests(tmp_path)


def test_invalid_yaml_is_rejected(tmp_path: Path) -> None:
    _write(tmp_path, "broken.yaml", "apiVersion: [unclosed\n")

    with pytest.raises(SourceError, match="failed to read broken.yaml"):
        read_manifests(tmp_path)


def test_missing_directory(tmp_path: Path) -> None:
    with pytest.raises(SourceError, match="does not exist"):
        read_manifests(tmp_path / "missing")
