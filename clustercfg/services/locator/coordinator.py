"""
Config Coordinator

Runs on the locator. Owns the configuration store and the member sessions:
- Resolves and hands out configuration to joining members
- Records deployed artifacts and fans them out to connected members
- Imports and exports the whole record tree as an archive

Member session states:
    JOINING -> CONFIG_SENT -> ACKED
    JOINING -> CONFIG_SENT -> FAILED
"""

import asyncio
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from clustercfg.common.config import CLUSTER_CONFIG, LocatorSettings
from clustercfg.common.exceptions import (
    ClusterConfigError,
    ConflictError,
    CorruptArchiveError,
    NoMembersAvailableError,
    PermissionDeniedError,
    ServiceDisabledError,
)
from clustercfg.common.logging_setup import get_service_logger, log_member_event
from clustercfg.storage import archive
from clustercfg.storage.artifacts import ArtifactRegistry
from clustercfg.storage.config_store import ConfigStore
from clustercfg.storage.records import (
    ApplyReport,
    ArtifactPayload,
    ArtifactRecord,
    ConfigurationBundle,
    ConfigurationRecord,
    RegionDefinition,
    ResolvedConfiguration,
)

from .channels import MemberChannel
from .resolver import GroupResolver, parse_groups

logger = get_service_logger("locator.coordinator")

# Permissions checked through the optional authorizer
CLUSTER_MANAGE = "CLUSTER:MANAGE"
CLUSTER_READ = "CLUSTER:READ"


class MemberState(str, Enum):
    """Per-connection configuration state"""
    JOINING = "joining"
    CONFIG_SENT = "config_sent"
    ACKED = "acked"
    FAILED = "failed"


@dataclass
class MemberSession:
    """A member connected to this locator"""
    member_id: str
    groups: list[str]
    channel: MemberChannel | None = None
    state: MemberState = MemberState.JOINING
    joined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_report: ApplyReport | None = None

    @property
    def is_live(self) -> bool:
        return self.state != MemberState.FAILED

    def receives(self, record_name: str) -> bool:
        return record_name == CLUSTER_CONFIG or record_name in self.groups

    def to_dict(self) -> dict[str, Any]:
        return {
            "member_id": self.member_id,
            "groups": list(self.groups),
            "state": self.state.value,
            "joined_at": self.joined_at.isoformat(),
        }


@dataclass
class MemberFailure:
    """One member that did not apply an operation"""
    member_id: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"member_id": self.member_id, "state": MemberState.FAILED.value, "reason": self.reason}


@dataclass
class DeployResult:
    """Aggregate outcome of a deploy or undeploy fan-out"""
    artifact: ArtifactRecord
    affected_member_count: int = 0
    failures: list[MemberFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact": self.artifact.to_dict(),
            "affected_member_count": self.affected_member_count,
            "failures": [f.to_dict() for f in self.failures],
        }


@dataclass
class ImportResult:
    """Outcome of a configuration import"""
    records: list[str]
    backup_path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "records": list(self.records),
            "backup_path": str(self.backup_path) if self.backup_path else None,
        }


class ConfigCoordinator:
    """
    Locator-side orchestration of configuration distribution.

    The store write is authoritative; member application is best effort and
    repaired when a member rejoins.
    """

    def __init__(
        self,
        store: ConfigStore,
        registry: ArtifactRegistry | None = None,
        resolver: GroupResolver | None = None,
        push_timeout: float = 30.0,
        authorizer: Callable[[str], bool] | None = None,
    ):
        self.store = store
        self.registry = registry or ArtifactRegistry(store)
        self.resolver = resolver or GroupResolver()
        self.push_timeout = push_timeout
        self.authorizer = authorizer
        self._sessions: dict[str, MemberSession] = {}

    @classmethod
    def from_settings(
        cls,
        settings: LocatorSettings,
        authorizer: Callable[[str], bool] | None = None,
    ) -> "ConfigCoordinator":
        """
        Build a coordinator from locator settings.

        With load_cluster_configuration_from_dir the existing tree must be
        present and is loaded before any join is accepted; otherwise an empty
        store is created when absent.
        """
        if not settings.enable_cluster_configuration:
            raise ServiceDisabledError("locator")

        if settings.load_cluster_configuration_from_dir:
            store = ConfigStore.load(settings.store_path)
        else:
            store = ConfigStore.open(settings.store_path)

        return cls(store, push_timeout=settings.push_timeout, authorizer=authorizer)

    def _authorize(self, permission: str) -> None:
        if self.authorizer is not None and not self.authorizer(permission):
            raise PermissionDeniedError(permission)

    # =========================================================================
    # Sessions
    # =========================================================================

    def get_session(self, member_id: str) -> MemberSession | None:
        return self._sessions.get(member_id)

    def sessions(self) -> list[MemberSession]:
        return list(self._sessions.values())

    def connected_members(self) -> list[MemberSession]:
        return [s for s in self._sessions.values() if s.is_live]

    async def on_member_join(
        self,
        member_id: str,
        declared_groups: str | list[str] | set[str] | None,
        channel: MemberChannel | None = None,
    ) -> ConfigurationBundle:
        """
        Resolve and return the configuration bundle for a joining member.

        A rejoin under the same member_id replaces the previous session.
        """
        groups = sorted(parse_groups(declared_groups))

        previous = self._sessions.get(member_id)
        if previous is not None and previous.channel is not None and previous.channel is not channel:
            await previous.channel.close()

        session = MemberSession(member_id=member_id, groups=groups, channel=channel)
        self._sessions[member_id] = session
        log_member_event(logger, member_id, session.state.value, groups)

        try:
            bundle = self._build_bundle(groups)
        except ClusterConfigError:
            session.state = MemberState.FAILED
            log_member_event(logger, member_id, session.state.value, groups)
            raise

        session.state = MemberState.CONFIG_SENT
        logger.bind(member_id=member_id).info(
            f"Sending {len(bundle.records)} records and {len(bundle.artifacts)} artifacts "
            f"to {member_id}",
            extra={"records": bundle.resolved.record_names},
        )
        return bundle

    def _build_bundle(self, groups: list[str]) -> ConfigurationBundle:
        resolved = self.resolver.resolve(self.store, groups)

        # Re-read each record with its artifact bytes under that record's lock
        records: list[ConfigurationRecord] = []
        payloads: list[ArtifactPayload] = []
        for record in resolved.records:
            snapshot, record_payloads = self.registry.snapshot(record.name)
            if snapshot is None:
                continue
            records.append(snapshot)
            payloads.extend(record_payloads)

        consistent = ResolvedConfiguration(member_groups=resolved.member_groups, records=records)
        return ConfigurationBundle(resolved=consistent, artifacts=payloads)

    def acknowledge(self, member_id: str, report: ApplyReport) -> MemberSession:
        """Record a member's report on its initial configuration"""
        session = self._sessions.get(member_id)
        if session is None or session.state != MemberState.CONFIG_SENT:
            raise ConflictError(f"member {member_id} has no configuration awaiting acknowledgment")

        session.last_report = report
        session.state = MemberState.ACKED if report.ok else MemberState.FAILED
        if not report.ok:
            logger.warning(
                f"Member {member_id} failed to apply configuration",
                extra={"member_id": member_id, "failures": report.failures},
            )
        log_member_event(logger, member_id, session.state.value, session.groups)
        return session

    async def on_member_leave(self, member_id: str) -> bool:
        session = self._sessions.pop(member_id, None)
        if session is None:
            return False
        if session.channel is not None:
            await session.channel.close()
        log_member_event(logger, member_id, "left", session.groups)
        return True

    # =========================================================================
    # Artifacts
    # =========================================================================

    async def on_deploy(self, group: str | None, content: bytes, base_name: str) -> DeployResult:
        """
        Record an artifact and push it to every connected member of its record.

        Raises:
            NoMembersAvailableError: nothing is connected; the artifact is
                still recorded for members joining later
        """
        self._authorize(CLUSTER_MANAGE)
        record_name = group or CLUSTER_CONFIG

        artifact = self.registry.deploy(record_name, content, base_name)

        if not self.connected_members():
            logger.warning(
                f"Deployed {artifact.stored_file_name} with no connected members",
                extra={"record": record_name, "artifact": artifact.stored_file_name},
            )
            raise NoMembersAvailableError(artifact)

        payload = ArtifactPayload(artifact=artifact, content=content)
        return await self._fan_out(
            artifact,
            lambda channel: channel.push_artifact(payload),
        )

    async def on_undeploy(self, group: str | None, base_name: str) -> DeployResult:
        """Remove an artifact from a record and from connected members"""
        self._authorize(CLUSTER_MANAGE)
        record_name = group or CLUSTER_CONFIG

        artifact = self.registry.undeploy(record_name, base_name)
        if artifact is None:
            raise ClusterConfigError(f"{base_name} is not deployed to {record_name}")

        return await self._fan_out(
            artifact,
            lambda channel: channel.remove_artifact(record_name, base_name),
        )

    async def _fan_out(
        self,
        artifact: ArtifactRecord,
        call: Callable[[MemberChannel], Awaitable[ApplyReport]],
    ) -> DeployResult:
        targets = [
            s for s in self.connected_members()
            if s.receives(artifact.record_name) and s.channel is not None
        ]
        outcomes = await asyncio.gather(*(self._push(s, call) for s in targets))

        result = DeployResult(artifact=artifact)
        for failure in outcomes:
            if failure is None:
                result.affected_member_count += 1
            else:
                result.failures.append(failure)

        logger.info(
            f"{artifact.stored_file_name}: {result.affected_member_count}/{len(targets)} members applied",
            extra={
                "record": artifact.record_name,
                "artifact": artifact.stored_file_name,
                "failed_members": [f.member_id for f in result.failures],
            },
        )
        return result

    async def _push(
        self,
        session: MemberSession,
        call: Callable[[MemberChannel], Awaitable[ApplyReport]],
    ) -> MemberFailure | None:
        try:
            report = await asyncio.wait_for(call(session.channel), timeout=self.push_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Member {session.member_id} timed out after {self.push_timeout}s")
            return MemberFailure(session.member_id, f"timed out after {self.push_timeout}s")
        except Exception as e:
            logger.error(f"Push to member {session.member_id} failed: {e}", exc_info=True)
            return MemberFailure(session.member_id, str(e))

        if not report.ok:
            reasons = "; ".join(f.get("message", "") for f in report.failures)
            return MemberFailure(session.member_id, reasons)
        return None

    # =========================================================================
    # Regions and properties
    # =========================================================================

    def on_declare_region(
        self,
        group: str | None,
        region_name: str,
        region_type: str = "REPLICATE",
    ) -> ConfigurationRecord:
        """Persist a region declaration; live members pick it up on rejoin"""
        self._authorize(CLUSTER_MANAGE)
        return self.store.declare_region(group or CLUSTER_CONFIG, RegionDefinition(region_name, region_type))

    def on_set_properties(self, group: str | None, properties: dict[str, str]) -> ConfigurationRecord:
        """Persist property overrides; live members pick them up on rejoin"""
        self._authorize(CLUSTER_MANAGE)
        return self.store.set_properties(group or CLUSTER_CONFIG, properties)

    # =========================================================================
    # Import / export
    # =========================================================================

    async def on_import(self, archive_bytes: bytes) -> ImportResult:
        """
        Replace the store with the archive contents.

        The previous tree is kept as a timestamped sibling directory.

        Raises:
            ConflictError: members are connected; the store is untouched
            CorruptArchiveError: the archive is invalid; the store is untouched
        """
        self._authorize(CLUSTER_MANAGE)

        live = [s.member_id for s in self.connected_members()]
        if live:
            raise ConflictError(
                "cannot import cluster configuration while members are running",
                member_ids=live,
            )

        root = self.store.root_path
        staging = root.with_name(f".import-{uuid.uuid4().hex[:8]}")
        archive.unpack(archive_bytes, staging)

        backup = None
        if root.exists():
            backup = self._backup_path(root)
            root.rename(backup)
        staging.rename(root)

        try:
            self.store.reload()
        except ClusterConfigError as e:
            shutil.rmtree(root, ignore_errors=True)
            if backup is not None:
                backup.rename(root)
            else:
                root.mkdir(parents=True)
            self.store.reload()
            raise CorruptArchiveError(f"imported configuration is unusable: {e.message}") from e

        logger.info(
            f"Imported cluster configuration ({len(self.store.list_names())} records)",
            extra={"records": self.store.list_names(), "backup": str(backup) if backup else None},
        )
        return ImportResult(records=self.store.list_names(), backup_path=backup)

    @staticmethod
    def _backup_path(root: Path) -> Path:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        candidate = root.with_name(f"{root.name}{stamp}")
        counter = 1
        while candidate.exists():
            candidate = root.with_name(f"{root.name}{stamp}-{counter}")
            counter += 1
        return candidate

    async def on_export(self) -> bytes:
        """Snapshot the record tree as archive bytes"""
        self._authorize(CLUSTER_READ)
        return archive.pack(self.store.root_path)

    async def close(self) -> None:
        for member_id in list(self._sessions):
            await self.on_member_leave(member_id)
