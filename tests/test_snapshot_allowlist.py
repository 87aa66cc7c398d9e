"""Tests for the snapshot cache and the allowlist policy."""

import json

import pytest

from outline_sync.config import ConfigError
from outline_sync.directory_client import Unit
from outline_sync.sync import AllowlistPolicy, SnapshotCache, SnapshotKind


class TestSnapshotCache:
    def test_listing_is_fetched_once(self, outline):
        cache = SnapshotCache(outline)

        cache.get(SnapshotKind.GROUPS)
        cache.get("groups")

        assert outline.list_calls == 1

    def test_invalidate_refetches(self, outline):
        cache = SnapshotCache(outline)
        assert cache.get(SnapshotKind.GROUPS) == []

        outline.add_group("unit-a")
        assert cache.get(SnapshotKind.GROUPS) == []
        cache.invalidate(SnapshotKind.GROUPS)

        assert [g.name for g in cache.get(SnapshotKind.GROUPS)] == ["unit-a"]

    def test_users_exclude_suspended(self, outline):
        outline.add_user("alice@epfl.ch")
        outline.add_user("gone@epfl.ch", suspended=True)

        emails = {u.email for u in SnapshotCache(outline).get(SnapshotKind.USERS)}

        assert "gone@epfl.ch" not in emails
        assert "alice@epfl.ch" in emails

    def test_members_are_memoized_per_group(self, outline):
        alice = outline.add_user("alice@epfl.ch")
        group = outline.add_group("unit-a", members=[alice])
        cache = SnapshotCache(outline)

        assert [u.id for u in cache.members(group.id)] == [alice.id]
        outline.memberships[group.id].clear()
        assert [u.id for u in cache.members(group.id)] == [alice.id]

        cache.invalidate_members(group.id)
        assert cache.members(group.id) == []

    def test_invalidate_all(self, outline):
        cache = SnapshotCache(outline)
        cache.get(SnapshotKind.GROUPS)
        cache.invalidate_all()
        cache.get(SnapshotKind.GROUPS)

        assert outline.list_calls == 2


class TestAllowlistPolicy:
    def test_no_file_allows_everything(self):
        policy = AllowlistPolicy.from_file(None)

        assert not policy.restricted
        assert policy.is_allowed("anything")
        assert policy.describe() == "all allowed"

    def test_matching_is_case_insensitive(self):
        policy = AllowlistPolicy(["Unit-A"])

        assert policy.is_allowed("unit-a")
        assert policy.is_allowed("UNIT-A")
        assert not policy.is_allowed("unit-b")

    def test_filter_keeps_allowed_units(self):
        policy = AllowlistPolicy(["unit-a"])
        units = [Unit(name="unit-a"), Unit(name="unit-b")]

        assert [u.name for u in policy.filter(units)] == ["unit-a"]

    def test_empty_list_allows_nothing(self, tmp_path):
        path = tmp_path / "units.yaml"
        path.write_text("[]\n")

        policy = AllowlistPolicy.from_file(path)

        assert policy.restricted
        assert not policy.is_allowed("unit-a")

    def test_reads_yaml_list(self, tmp_path):
        path = tmp_path / "units.yaml"
        path.write_text("- unit-a\n- Unit-B\n")

        policy = AllowlistPolicy.from_file(path)

        assert policy.describe() == "2 units allowed"
        assert policy.is_allowed("unit-b")

    def test_reads_json_list(self, tmp_path):
        path = tmp_path / "units.json"
        path.write_text(json.dumps(["unit-a"]))

        assert AllowlistPolicy.from_file(path).is_allowed("unit-a")

    def test_missing_file_is_a_config_error(self, tmp_path):
        with pytest.raises(ConfigError, match="does not exist"):
            AllowlistPolicy.from_file(tmp_path / "missing.yaml")

    @pytest.mark.parametrize("content", ["unit-a: true\n", "- 1\n- 2\n", "[unbalanced\n"])
    def test_malformed_file_is_a_config_error(self, tmp_path, content):
        path = tmp_path / "units.yaml"
        path.write_text(content)

        with pytest.raises(ConfigError):
            AllowlistPolicy.from_file(path)
