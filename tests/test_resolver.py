"""
Tests for group resolution.
"""

import pytest

from clustercfg.common.config import LOG_FILE_SIZE_LIMIT
from clustercfg.services.locator.resolver import GroupResolver, parse_groups


@pytest.fixture
def resolver() -> GroupResolver:
    return GroupResolver()


class TestParseGroups:

    def test_comma_separated(self):
        assert parse_groups("group1,group2") == {"group1", "group2"}

    def test_whitespace_and_blanks_are_dropped(self):
        assert parse_groups(" group1 , ,group2,") == {"group1", "group2"}

    def test_none_and_empty_mean_no_groups(self):
        assert parse_groups(None) == set()
        assert parse_groups("") == set()

    def test_names_are_case_sensitive(self):
        assert parse_groups("Group1,group1") == {"Group1", "group1"}


class TestResolve:

    def test_no_groups_gets_only_cluster(self, resolver, seeded_store):
        resolved = resolver.resolve(seeded_store, set())
        assert resolved.record_names == ["cluster"]

    def test_cluster_first_then_sorted_groups(self, resolver, seeded_store):
        resolved = resolver.resolve(seeded_store, {"group2", "group1"})
        assert resolved.record_names == ["cluster", "group1", "group2"]

    def test_resolution_is_deterministic(self, resolver, seeded_store):
        first = resolver.resolve(seeded_store, ["group2", "group1"])
        second = resolver.resolve(seeded_store, ["group1", "group2", "group1"])
        assert first.record_names == second.record_names
        assert first.member_groups == second.member_groups == ["group1", "group2"]

    def test_unknown_group_is_tolerated(self, resolver, seeded_store):
        resolved = resolver.resolve(seeded_store, {"group1", "nosuchgroup"})
        assert resolved.record_names == ["cluster", "group1"]

    def test_declaring_cluster_does_not_duplicate_it(self, resolver, seeded_store):
        resolved = resolver.resolve(seeded_store, {"cluster", "group1"})
        assert resolved.record_names == ["cluster", "group1"]

    def test_later_groups_override_properties(self, resolver, seeded_store):
        resolved = resolver.resolve(seeded_store, {"group1", "group2"})
        assert resolved.effective_properties()[LOG_FILE_SIZE_LIMIT] == "7000"

        resolved = resolver.resolve(seeded_store, {"group1"})
        assert resolved.effective_properties()[LOG_FILE_SIZE_LIMIT] == "6000"

    def test_regions_are_unioned(self, resolver, seeded_store):
        resolved = resolver.resolve(seeded_store, {"group1", "group2"})
        assert {r.name for r in resolved.regions()} == {
            "regionForCluster", "regionForGroup1", "regionForGroup2",
        }

    def test_applies_to(self, resolver, seeded_store):
        resolved = resolver.resolve(seeded_store, {"group2"})
        assert resolved.applies_to("cluster")
        assert resolved.applies_to("group2")
        assert not resolved.applies_to("group1")
