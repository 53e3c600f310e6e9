"""Tests for chart versioning, values merging and kind compatibility."""

import pytest

from cicd_control_tower.charts.compatibility import (
    ChartKind,
    WorkloadFamily,
    get_compatibility,
    resolve_chart_kind,
)
from cicd_control_tower.charts.merge import merge_patch
from cicd_control_tower.charts.versioning import (
    next_chart_version,
    parent_chart_version,
    parse_chart_version,
    version_bucket,
)
from cicd_control_tower.errors import ValidationError


class TestVersioning:
    def test_next_patch(self):
        assert next_chart_version("1.2.0", ["1.2.1", "1.2.3", "1.2.2"]) == "1.2.4"

    def test_empty_bucket_starts_at_one(self):
        assert next_chart_version("3.9.0", []) == "3.9.1"

    def test_other_buckets_are_ignored(self):
        assert next_chart_version("1.2.0", ["1.3.9", "2.2.7", "1.2.1"]) == "1.2.2"

    def test_unparseable_versions_are_ignored(self):
        assert next_chart_version("1.2.0", ["1.2", "latest", "1.2.x"]) == "1.2.1"

    def test_patch_numbers_compare_numerically(self):
        assert next_chart_version("1.2.0", ["1.2.9", "1.2.10"]) == "1.2.11"

    def test_parent_version(self):
        assert parent_chart_version("4.18.7") == "4.18.0"

    def test_bucket(self):
        assert version_bucket("4.18.7") == "4.18"

    @pytest.mark.parametrize("version", ["", "1.2", "1.2.3.4", "a.b.c", None])
    def test_invalid_versions(self, version):
        with pytest.raises(ValidationError):
            parse_chart_version(version)


class TestMergePatch:
    def test_nested_merge(self):
        target = {"a": {"b": 1, "c": 2}, "d": 3}
        assert merge_patch(target, {"a": {"b": 10}}) == {"a": {"b": 10, "c": 2}, "d": 3}

    def test_null_removes_key(self):
        assert merge_patch({"a": 1, "b": 2}, {"a": None}) == {"b": 2}

    def test_arrays_replace(self):
        assert merge_patch({"ports": [80, 443]}, {"ports": [8080]}) == {"ports": [8080]}

    def test_non_object_patch_replaces_target(self):
        assert merge_patch({"a": 1}, ["x"]) == ["x"]

    def test_object_patch_over_scalar(self):
        assert merge_patch({"a": "flat"}, {"a": {"nested": True}}) == {"a": {"nested": True}}

    def test_inputs_are_not_modified(self):
        target = {"a": {"b": 1}}
        patch = {"a": {"c": 2}}
        merge_patch(target, patch)
        assert target == {"a": {"b": 1}}
        assert patch == {"a": {"c": 2}}


class TestCompatibility:
    @pytest.mark.parametrize("kind", list(ChartKind))
    def test_every_kind_is_self_compatible(self, kind):
        assert get_compatibility(kind.value, kind.value) is True

    @pytest.mark.parametrize("old", list(ChartKind))
    @pytest.mark.parametrize("new", list(ChartKind))
    def test_symmetric(self, old, new):
        assert get_compatibility(old, new) == get_compatibility(new, old)

    def test_deployment_and_rollout(self):
        assert get_compatibility("Deployment", "Rollout Deployment") is True

    def test_different_workloads(self):
        assert get_compatibility("Deployment", "StatefulSet") is False
        assert get_compatibility("StatefulSet", "Job & CronJob") is False

    def test_empty_name_is_rollout(self):
        assert resolve_chart_kind("") is ChartKind.ROLLOUT_DEPLOYMENT
        assert get_compatibility(None, "Deployment") is True

    def test_unknown_kind_is_incompatible_with_everything(self):
        assert resolve_chart_kind("Knative") is None
        assert get_compatibility("Knative", "Knative") is False
        assert get_compatibility("Knative", "Deployment") is False

    def test_families(self):
        assert ChartKind.JOB_AND_CRONJOB.family is WorkloadFamily.BATCH
        assert ChartKind.STATEFUL_SET.family is WorkloadFamily.STATEFUL
