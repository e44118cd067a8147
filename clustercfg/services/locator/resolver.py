"""
Group Resolver

Maps a member's declared groups to the ordered configuration records it
receives: the cluster record first, then each known group record sorted
by name.
"""

from typing import Iterable

from clustercfg.common.config import CLUSTER_CONFIG, parse_group_list
from clustercfg.common.logging_setup import get_service_logger
from clustercfg.storage.config_store import ConfigStore
from clustercfg.storage.records import ResolvedConfiguration

logger = get_service_logger("locator.resolver")


def parse_groups(value: str | Iterable[str] | None) -> set[str]:
    """Comma-separated group list to a set (case-sensitive, blanks dropped)"""
    return set(parse_group_list(value))


class GroupResolver:
    """Deterministic record selection for a member"""

    def resolve(self, store: ConfigStore, member_groups: Iterable[str]) -> ResolvedConfiguration:
        """
        Resolve the records that apply to a member.

        Unknown group names are tolerated: the member simply gets no record
        for them.

        Args:
            store: Configuration store to read
            member_groups: Declared group names

        Returns:
            ResolvedConfiguration ordered [cluster, *sorted(groups)]
        """
        groups = sorted(set(member_groups) - {CLUSTER_CONFIG})

        records = []
        cluster = store.get(CLUSTER_CONFIG)
        if cluster is not None:
            records.append(cluster)

        missing = []
        for group in groups:
            record = store.get(group)
            if record is None:
                missing.append(group)
                continue
            records.append(record)

        if missing:
            logger.debug(
                f"No configuration for groups {missing}",
                extra={"groups": missing},
            )

        return ResolvedConfiguration(member_groups=groups, records=records)
