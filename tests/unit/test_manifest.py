"""Tests for manifest splitting, decoding and List flattening."""

from __future__ import annotations

import pytest

from meshplane.controlplane.errors import ObjectError
from meshplane.controlplane.manifest import Manifest, flatten, parse_object, split_manifests

TWO_DOCS = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: one
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: two
"""


class TestManifest:
    def test_yaml_suffix(self) -> None:
        assert Manifest("istio/templates/configmap.yaml", "").is_yaml is True

    def test_non_yaml_suffix(self) -> None:
        assert Manifest("istio/templates/NOTES.txt", "").is_yaml is False
        assert Manifest("istio/templates/_helpers.tpl", "").is_yaml is False


class TestSplitManifests:
    def test_two_documents(self) -> None:
        documents = split_manifests(TWO_DOCS)
        assert len(documents) == 2
        assert "name: one" in documents[0]
        assert "name: two" in documents[1]

    def test_leading_separator_and_blank_documents(self) -> None:
        content = "---\n\n---\n# Source: istio/templates/empty.yaml\n---\n" + TWO_DOCS
        assert len(split_manifests(content)) == 2

    def test_separator_with_trailing_comment(self) -> None:
        content = "a: 1\n--- # next\nb: 2\n"
        assert split_manifests(content) == ["a: 1", "b: 2"]

    def test_dashes_inside_value_do_not_split(self) -> None:
        content = "data:\n  text: |\n    a---b\n"
        assert len(split_manifests(content)) == 1

    def test_empty_content(self) -> None:
        assert split_manifests("") == []
        assert split_manifests("\n# only a comment\n") == []


class TestParseObject:
    def test_parses_object(self) -> None:
        obj = parse_object(split_manifests(TWO_DOCS)[0])
        assert obj is not None
        assert obj["metadata"]["name"] == "one"

    def test_empty_document_is_none(self) -> None:
        assert parse_object("") is None
        assert parse_object("# comment only") is None

    def test_invalid_yaml_raises(self) -> None:
        with pytest.raises(ObjectError, match="decode"):
            parse_object("kind: [unclosed")

    def test_scalar_document_raises(self) -> None:
        with pytest.raises(ObjectError, match="not an object"):
            parse_object("just a string")

    def test_missing_kind_raises(self) -> None:
        with pytest.raises(ObjectError, match="missing"):
            parse_object("apiVersion: v1\nmetadata:\n  name: x\n")


class TestFlatten:
    def test_plain_object_yields_itself(self) -> None:
        obj = {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "a"}}
        assert list(flatten(obj)) == [obj]

    def test_nested_lists_are_flattened(self) -> None:
        inner = {"apiVersion": "v1", "kind": "List", "items": [{"kind": "Secret", "metadata": {"name": "b"}}]}
        outer = {
            "apiVersion": "v1",
            "kind": "List",
            "items": [{"kind": "ConfigMap", "metadata": {"name": "a"}}, inner, "garbage"],
        }
        names = [item["metadata"]["name"] for item in flatten(outer)]
        assert names == ["a", "b"]
