from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from reconciler.src.core import set_annotation
from reconciler.src.metadata import SOURCE_PATH_KEY

LOGGER = logging.getLogger(__name__)

_SUFFIXES = {".yaml", ".yml"}


class SourceError(RuntimeError):
    """The source directory could not be read or contains invalid manifests."""


def _valid(document: Any) -> bool:
    if not isinstance(document, dict):
        return False
    meta = document.get("metadata")
    return bool(
        document.get("apiVersion")
        and document.get("kind")
        and isinstance(meta, dict)
        and meta.get("name")
    )


def read_manifests(source_dir: str | Path) -> list[dict[str, Any]]:
    """Read every rendered manifest under *source_dir*.

    Files are read in sorted order; each document gets the
    ``converge.dev/source-path`` annotation holding its path relative to
    *source_dir*.  ``List`` documents are flattened.  Empty documents are
    skipped; anything else without apiVersion, kind and name is an error.
    """
    root = Path(source_dir)
    if not root.is_dir():
        raise SourceError(f"source directory {root} does not exist")

    objects: list[dict[str, Any]] = []
    for path in sorted(p for p in root.rglob("*") if p.suffix in _SUFFIXES and p.is_file()):
        relative = path.relative_to(root).as_posix()
        try:
            with path.open(encoding="utf-8") as handle:
                documents = list(yaml.safe_load_all(handle))
        except (OSError, yaml.YAMLError) as exc:
            raise SourceError(f"failed to read {relative}: {exc}") from exc

        for document in documents:
            if document is None:
                continue
            if isinstance(document, dict) and document.get("kind") == "List":
                items = document.get("items") or []
            else:
                items = [document]
            for item in items:
                if not _valid(item):
                    raise SourceError(
                        f"{relative}: every document needs apiVersion, kind and metadata.name"
                    )
                set_annotation(item, SOURCE_PATH_KEY, relative)
                objects.append(item)

    LOGGER.info("Read %d object(s) from %s", len(objects), root)
    return objects
