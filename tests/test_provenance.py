"""Tests for build provenance parsing."""

import json

import pytest

from cicd_control_tower.artifacts.provenance import (
    compact_json,
    load_materials,
    parse_material_info,
    source_revisions,
)
from cicd_control_tower.errors import ValidationError

MATERIALS = [
    {
        "material": {
            "plugin-id": "",
            "git-configuration": {"url": "https://github.com/acme/payments.git"},
            "type": "git",
        },
        "changed": True,
        "modifications": [
            {"revision": "9f1c2e", "modified-time": "2026-03-01T10:00:00Z", "author": "dev", "message": "fix"}
        ],
    },
    {
        "material": {"scm-configuration": {"url": " https://scm.local/acme/shared "}, "type": "scm"},
        "changed": False,
        "modifications": [{"revision": "77aa01"}],
    },
]


class TestParseMaterialInfo:
    def test_maps_repository_to_revision(self):
        revisions = parse_material_info(json.dumps(MATERIALS), "CI-RUNNER")

        assert revisions == {
            "https://github.com/acme/payments.git": "9f1c2e",
            "https://scm.local/acme/shared": "77aa01",
        }

    @pytest.mark.parametrize("data_source", ["CI-RUNNER", "GOCD", "EXTERNAL"])
    def test_supported_data_sources(self, data_source):
        assert parse_material_info(json.dumps(MATERIALS[:1]), data_source)

    def test_unsupported_data_source_raises(self):
        with pytest.raises(ValidationError, match="not supported"):
            parse_material_info(json.dumps(MATERIALS), "JENKINS")

    def test_unknown_material_type_raises(self):
        materials = [{"material": {"type": "svn"}, "modifications": []}]
        with pytest.raises(ValidationError, match="unknown material type"):
            parse_material_info(json.dumps(materials), "GOCD")

    def test_material_without_modifications_has_empty_revision(self):
        materials = [{"material": {"type": "git", "git-configuration": {"url": "repo"}}}]
        assert parse_material_info(json.dumps(materials), "GOCD") == {"repo": ""}

    def test_empty_blob(self):
        assert parse_material_info(None, "CI-RUNNER") == {}
        assert load_materials("", "CI-RUNNER") == []

    def test_not_an_array_raises(self):
        with pytest.raises(ValidationError):
            load_materials('{"material": {}}', "CI-RUNNER")


class TestCompactJson:
    def test_strips_insignificant_whitespace(self):
        assert compact_json('[ {"a" : 1 ,  "b": [1, 2]} ]') == '[{"a":1,"b":[1,2]}]'

    def test_encodes_decoded_values(self):
        assert compact_json([{"a": 1}]) == '[{"a":1}]'

    def test_none_and_blank(self):
        assert compact_json(None) is None
        assert compact_json("   ") is None

    def test_invalid_json_raises(self):
        with pytest.raises(ValidationError):
            compact_json("[{")


class TestSourceRevisions:
    def test_collects_revisions_in_order(self):
        assert source_revisions(json.dumps(MATERIALS)) == ["9f1c2e", "77aa01"]

    @pytest.mark.parametrize("blob", [None, "", "not json", '{"a": 1}', '[1, "x", null]'])
    def test_unreadable_blob_yields_nothing(self, blob):
        assert source_revisions(blob) == []
