"""Rendered manifests and their decoding into untyped objects."""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import yaml

from meshplane.controlplane.errors import ObjectError
from meshplane.kube.unstructured import is_list

MANIFEST_SUFFIX = ".yaml"

# Document separator at the start of a line, optionally followed by a comment.
_SEPARATOR = re.compile(r"(?:^|\n)---[ \t]*(?:#[^\n]*)?(?=\n|$)")


@dataclass(frozen=True)
class Manifest:
    """One rendered template: its source path and rendered YAML text."""

    name: str
    content: str

    @property
    def is_yaml(self) -> bool:
        return self.name.endswith(MANIFEST_SUFFIX)


def split_manifests(content: str) -> list[str]:
    """Split a multi-document YAML string into its non-empty documents."""
    documents = []
    for document in _SEPARATOR.split(content):
        if _is_blank(document):
            continue
        documents.append(document.strip("\n"))
    return documents


def _is_blank(document: str) -> bool:
    for line in document.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            return False
    return True


def parse_object(raw: str) -> dict[str, Any] | None:
    """Decode one YAML document into an untyped object.

    Returns None for documents that decode to nothing (e.g. a template whose
    body was conditionally disabled).  Raises :class:`ObjectError` when the
    document is not valid YAML or is not an object with apiVersion and kind.
    """
    try:
        obj = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ObjectError(f"unable to decode YAML document: {exc}") from exc
    if obj is None:
        return None
    if not isinstance(obj, dict):
        raise ObjectError(f"document is not an object: {type(obj).__name__}")
    if not obj.get("apiVersion") or not obj.get("kind"):
        raise ObjectError("Object 'Kind' or 'apiVersion' is missing in document")
    return obj


def flatten(obj: dict[str, Any]) -> Iterator[dict[str, Any]]:
    """Yield *obj*, or every item of a List object, recursively."""
    if not is_list(obj):
        yield obj
        return
    for item in obj.get("items") or []:
        if isinstance(item, dict):
            yield from flatten(item)
