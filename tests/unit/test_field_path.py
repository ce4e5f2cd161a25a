"""Tests for field path extraction."""

import pytest

from kubeprov.core.exceptions import InvalidPathError
from kubeprov.utils.field_path import extract, extract_string, parse_path, render, to_expression

CONFIG_MAP = {
    "apiVersion": "v1",
    "kind": "ConfigMap",
    "metadata": {
        "name": "kube-root-ca.crt",
        "namespace": "default",
        "uid": "5f3c2a1e-0000-4000-8000-000000000001",
        "labels": {"app.kubernetes.io/name": "demo"},
        "annotations": None,
    },
    "data": {"ca.crt": "-----BEGIN CERTIFICATE-----"},
    "items": [{"port": 443, "ready": True}],
}


@pytest.mark.parametrize(
    "path,expected",
    [
        ("$.metadata.uid", "metadata.uid"),
        (".metadata.uid", "metadata.uid"),
        ("metadata.uid", "metadata.uid"),
        ("{.metadata.uid}", "metadata.uid"),
        ("$.items[0].port", "items[0].port"),
        (".metadata.labels['app.kubernetes.io/name']", 'metadata.labels."app.kubernetes.io/name"'),
        ('$.data["ca.crt"]', 'data."ca.crt"'),
        ("$", "@"),
    ],
)
def test_to_expression(path, expected):
    """Test JSONPath forms translate to jmespath expressions."""
    assert to_expression(path) == expected


@pytest.mark.parametrize(
    "path",
    ["$..uid", "$.metadata[", "$.items[x]", "$.a]", "$.items[*].port", "length(items)"],
)
def test_parse_path_rejects_malformed(path):
    """Test malformed or multi-value paths raise InvalidPathError."""
    with pytest.raises(InvalidPathError):
        parse_path(path)


def test_parse_path_rejects_non_string():
    """Test non-string path raises InvalidPathError."""
    with pytest.raises(InvalidPathError):
        parse_path(None)  # type: ignore[arg-type]


class TestExtract:
    """Tests for extract and extract_string."""

    def test_uid(self):
        """Test reading metadata.uid."""
        assert extract_string(CONFIG_MAP, "$.metadata.uid") == "5f3c2a1e-0000-4000-8000-000000000001"

    def test_bracket_key(self):
        """Test keys with dots via bracket notation."""
        assert extract(CONFIG_MAP, "$.data['ca.crt']").startswith("-----BEGIN")

    def test_list_index(self):
        """Test list indexing and scalar rendering."""
        assert extract_string(CONFIG_MAP, "$.items[0].port") == "443"
        assert extract_string(CONFIG_MAP, "$.items[0].ready") == "true"
        assert extract_string(CONFIG_MAP, "$.items[-1].port") == "443"

    def test_bracket_key_with_dots(self):
        """Test label keys containing dots and slashes."""
        assert extract(CONFIG_MAP, ".metadata.labels['app.kubernetes.io/name']") == "demo"

    def test_whole_document(self):
        """Test the root path renders the object as JSON."""
        assert extract_string({"a": 1}, "$") == '{"a":1}'

    @pytest.mark.parametrize(
        "path",
        ["$.metadata.nope", "$.metadata.annotations", "$.metadata[0]", "$.items[3]"],
    )
    def test_unresolved_path(self, path):
        """Test missing, null and mistyped lookups raise InvalidPathError."""
        with pytest.raises(InvalidPathError, match="does not resolve"):
            extract(CONFIG_MAP, path)


def test_render_structures_as_compact_json():
    """Test mappings render as compact sorted JSON."""
    assert render({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
    assert render(False) == "false"
    assert render(1.5) == "1.5"
