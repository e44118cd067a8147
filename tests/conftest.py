"""
Pytest configuration and shared fixtures for clustercfg tests.

The seeded tree mirrors an exported cluster configuration:

    cluster_config/cluster/{cluster.xml, cluster.properties, cluster.jar}
    cluster_config/group1/{group1.xml, group1.properties, group1.jar}
    cluster_config/group2/{group2.xml, group2.properties, group2.jar}
"""

from pathlib import Path

import pytest

from clustercfg.common.config import CLUSTER_CONFIG_DIR_NAME, LOG_FILE_SIZE_LIMIT
from clustercfg.services.locator.channels import LocalMemberChannel
from clustercfg.services.locator.coordinator import ConfigCoordinator
from clustercfg.services.member.agent import MemberAgent
from clustercfg.storage.config_store import ConfigStore
from clustercfg.storage.records import ApplyReport

CONFIG_NAMES = ["cluster", "group1", "group2"]

LOG_SIZES = {"cluster": "5000", "group1": "6000", "group2": "7000"}

REGIONS = {
    "cluster": "regionForCluster",
    "group1": "regionForGroup1",
    "group2": "regionForGroup2",
}


def jar_bytes(name: str) -> bytes:
    """Stand-in artifact content, distinct per record"""
    return f"PK\x03\x04 classes for {name}".encode("utf-8")


def write_record_dir(root: Path, name: str, versioned: bool = False) -> Path:
    record_dir = root / name
    record_dir.mkdir(parents=True)
    (record_dir / f"{name}.xml").write_text(
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<cache>\n  <region name="{REGIONS[name]}" refid="REPLICATE"/>\n</cache>\n'
    )
    (record_dir / f"{name}.properties").write_text(f"{LOG_FILE_SIZE_LIMIT}={LOG_SIZES[name]}\n")
    jar_name = f"{name}.jar#1" if versioned else f"{name}.jar"
    (record_dir / jar_name).write_bytes(jar_bytes(name))
    return record_dir


@pytest.fixture
def locator_dir(tmp_path: Path) -> Path:
    """Working directory of a locator"""
    path = tmp_path / "locator-0"
    path.mkdir()
    return path


@pytest.fixture
def config_root(locator_dir: Path) -> Path:
    return locator_dir / CLUSTER_CONFIG_DIR_NAME


@pytest.fixture
def seeded_root(config_root: Path) -> Path:
    """Record tree with cluster, group1 and group2"""
    for name in CONFIG_NAMES:
        write_record_dir(config_root, name)
    return config_root


@pytest.fixture
def seeded_store(seeded_root: Path) -> ConfigStore:
    return ConfigStore.load(seeded_root)


@pytest.fixture
def empty_store(config_root: Path) -> ConfigStore:
    return ConfigStore.open(config_root)


@pytest.fixture
def seeded_coordinator(seeded_store: ConfigStore) -> ConfigCoordinator:
    return ConfigCoordinator(seeded_store, push_timeout=5.0)


@pytest.fixture
def empty_coordinator(empty_store: ConfigStore) -> ConfigCoordinator:
    return ConfigCoordinator(empty_store, push_timeout=5.0)


async def join_member(
    coordinator: ConfigCoordinator,
    work_dir: Path,
    member_id: str,
    groups: str | None = None,
) -> tuple[MemberAgent, ApplyReport]:
    """Join a member through an in-process channel, apply and acknowledge"""
    agent = MemberAgent(member_id, work_dir / member_id)
    bundle = await coordinator.on_member_join(member_id, groups, LocalMemberChannel(agent))
    report = agent.apply_resolved_configuration(bundle)
    coordinator.acknowledge(member_id, report)
    return agent, report
