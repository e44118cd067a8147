"""
Member Agent

Applies configuration received from the locator on a member:
- Declares regions (idempotent)
- Merges properties into the member's runtime configuration
- Installs artifacts into the working directory and registers them in the
  member's loaded-unit table

A failure on one region or artifact is reported, never raised out of a
bundle apply, so the member stays operational.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from clustercfg.common.config import DEFAULT_ARTIFACT_PREFIX
from clustercfg.common.exceptions import ApplyFailure
from clustercfg.common.logging_setup import get_service_logger, log_artifact_event
from clustercfg.storage.artifacts import find_by_base_name
from clustercfg.storage.config_store import atomic_write, sha256_digest
from clustercfg.storage.records import (
    ApplyReport,
    ArtifactPayload,
    ArtifactRecord,
    ConfigurationBundle,
    RegionDefinition,
)

logger = get_service_logger("member.agent")


@dataclass
class LoadedUnit:
    """Handle for an installed artifact"""
    artifact: ArtifactRecord
    path: Path
    digest: str = ""
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> tuple[str, str]:
        return self.artifact.record_name, self.artifact.stored_file_name


class MemberAgent:
    """Member-local configuration state"""

    def __init__(
        self,
        member_id: str,
        work_dir: str | Path,
        artifact_prefix: str = DEFAULT_ARTIFACT_PREFIX,
        local_properties: dict[str, str] | None = None,
        region_factory: Callable[[RegionDefinition], Any] | None = None,
    ):
        self.member_id = member_id
        self.work_dir = Path(work_dir)
        self.artifact_prefix = artifact_prefix
        self.region_factory = region_factory
        self.properties: dict[str, str] = dict(local_properties or {})
        self.regions: dict[str, RegionDefinition] = {}
        self._units: dict[tuple[str, str], LoadedUnit] = {}
        self._lock = threading.RLock()

        self.work_dir.mkdir(parents=True, exist_ok=True)

    # =========================================================================
    # Bundle
    # =========================================================================

    def apply_resolved_configuration(self, bundle: ConfigurationBundle) -> ApplyReport:
        """
        Apply a full resolved configuration.

        Records are applied in bundle order, so later records win property
        conflicts. Locator-managed artifacts not in the bundle are removed.
        """
        report = ApplyReport(member_id=self.member_id)

        with self._lock:
            for record in bundle.records:
                for region in record.regions.values():
                    try:
                        self.declare_region(region)
                        report.applied.append(f"region:{region.name}")
                    except ApplyFailure as e:
                        report.failures.append(e.to_dict())
                self.properties.update(record.properties)

            keep: set[tuple[str, str]] = set()
            for payload in bundle.artifacts:
                try:
                    unit = self.apply_artifact(payload)
                    keep.add(unit.key)
                    report.applied.append(unit.artifact.stored_file_name)
                except ApplyFailure as e:
                    report.failures.append(e.to_dict())
                    # Keep whatever version of this artifact was already usable
                    current = self._find_unit(payload.artifact.record_name, payload.artifact.base_name)
                    if current is not None:
                        keep.add(current.key)

            self._remove_stale(keep)

        logger.info(
            f"Applied configuration: {len(report.applied)} items, {len(report.failures)} failures",
            extra={
                "member_id": self.member_id,
                "records": bundle.resolved.record_names,
                "failures": report.failures,
            },
        )
        return report

    # =========================================================================
    # Regions
    # =========================================================================

    def declare_region(self, region: RegionDefinition) -> bool:
        """
        Create the region if absent.

        Returns:
            True if created, False if it already existed with the same type

        Raises:
            ApplyFailure: region exists with a different type, or the region
                factory rejected it
        """
        with self._lock:
            existing = self.regions.get(region.name)
            if existing is not None:
                if existing.region_type != region.region_type:
                    raise ApplyFailure(
                        f"region {region.name} exists as {existing.region_type}, "
                        f"cannot redeclare as {region.region_type}",
                        subject=f"region:{region.name}",
                        member_id=self.member_id,
                    )
                return False

            if self.region_factory is not None:
                try:
                    self.region_factory(region)
                except Exception as e:
                    raise ApplyFailure(
                        f"failed to create region {region.name}: {e}",
                        subject=f"region:{region.name}",
                        member_id=self.member_id,
                    ) from e

            self.regions[region.name] = region
            logger.debug(f"Created region {region.name}", extra={"region": region.name})
            return True

    # =========================================================================
    # Artifacts
    # =========================================================================

    def installed_path(self, artifact: ArtifactRecord) -> Path:
        return self.work_dir / f"{self.artifact_prefix}{artifact.stored_file_name}"

    def apply_artifact(self, payload: ArtifactPayload) -> LoadedUnit:
        """
        Install one artifact.

        The unit is registered only after its file is durable, and it replaces
        an older version of the same base name from the same record.

        Two records deploying the same "{base}#{version}" map to one installed
        file. Identical content shares that file; different content is refused
        and the unit that got there first (bundle order: cluster, then groups
        by name) stays loaded.

        Raises:
            ApplyFailure: content does not match its digest, collides with
                another record's artifact, or cannot be written
        """
        artifact = payload.artifact
        subject = f"artifact:{artifact.stored_file_name}"

        if "/" in artifact.base_name or "\\" in artifact.base_name or artifact.base_name.startswith("."):
            raise ApplyFailure(f"invalid artifact name {artifact.base_name!r}", subject, self.member_id)
        digest = sha256_digest(payload.content)
        if artifact.digest and digest != artifact.digest:
            log_artifact_event(logger, "Install", artifact.record_name, artifact.stored_file_name, success=False)
            raise ApplyFailure(
                f"artifact {artifact.stored_file_name} is corrupt (digest mismatch)",
                subject,
                self.member_id,
            )

        key = (artifact.record_name, artifact.stored_file_name)
        path = self.installed_path(artifact)

        with self._lock:
            current = self._units.get(key)
            if (current is not None and current.artifact == artifact
                    and current.path.exists()):
                return current

            owner = self._path_owner(path, exclude=key)
            if owner is not None and owner.digest != digest:
                log_artifact_event(logger, "Install", artifact.record_name, artifact.stored_file_name, success=False)
                raise ApplyFailure(
                    f"{path.name} is already installed for record {owner.artifact.record_name} "
                    f"with different content",
                    subject,
                    self.member_id,
                )

            if owner is None:
                try:
                    atomic_write(path, payload.content)
                except OSError as e:
                    raise ApplyFailure(
                        f"cannot install {artifact.stored_file_name}: {e}", subject, self.member_id
                    ) from e

            superseded = [
                u for k, u in self._units.items()
                if u.artifact.record_name == artifact.record_name
                and u.artifact.base_name == artifact.base_name
                and k != key
            ]
            unit = LoadedUnit(artifact=artifact, path=path, digest=digest)
            self._units[key] = unit
            for old in superseded:
                self._unload(old)

        log_artifact_event(logger, "Install", artifact.record_name, artifact.stored_file_name)
        return unit

    def remove_artifact(self, record_name: str, base_name: str) -> ArtifactRecord | None:
        """Unload an artifact deployed to record_name; None if not loaded"""
        with self._lock:
            unit = self._find_unit(record_name, base_name)
            if unit is None:
                return None
            self._unload(unit)
        log_artifact_event(logger, "Remove", record_name, unit.artifact.stored_file_name)
        return unit.artifact

    def _find_unit(self, record_name: str, base_name: str) -> LoadedUnit | None:
        for unit in self._units.values():
            if unit.artifact.record_name == record_name and unit.artifact.base_name == base_name:
                return unit
        return None

    def _path_owner(self, path: Path, exclude: tuple[str, str]) -> LoadedUnit | None:
        for key, unit in self._units.items():
            if key != exclude and unit.path == path:
                return unit
        return None

    def _unload(self, unit: LoadedUnit) -> None:
        self._units.pop(unit.key, None)
        # The file may still back the same artifact for another record
        if any(u.path == unit.path for u in self._units.values()):
            return
        try:
            unit.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove {unit.path}: {e}")

    def _remove_stale(self, keep: set[tuple[str, str]]) -> None:
        for key, unit in list(self._units.items()):
            if key not in keep:
                self._unload(unit)

        in_use = {unit.path.name for unit in self._units.values()}
        for path in self.work_dir.iterdir():
            if not path.is_file() or not path.name.startswith(self.artifact_prefix):
                continue
            if path.name not in in_use:
                logger.info(f"Removing stale artifact {path.name}")
                path.unlink(missing_ok=True)

    # =========================================================================
    # Lookup
    # =========================================================================

    def loaded_artifacts(self) -> list[ArtifactRecord]:
        with self._lock:
            return [u.artifact for u in self._units.values()]

    def find_loaded(self, base_name: str) -> ArtifactRecord | None:
        return find_by_base_name(self.loaded_artifacts(), base_name)

    def get_unit(self, record_name: str, stored_file_name: str) -> LoadedUnit | None:
        with self._lock:
            return self._units.get((record_name, stored_file_name))

    def installed_files(self) -> list[str]:
        return sorted(
            p.name for p in self.work_dir.iterdir()
            if p.is_file() and p.name.startswith(self.artifact_prefix)
        )
