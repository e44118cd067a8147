"""
Artifact Registry

Tracks deployed code artifacts per configuration record. Each deploy of a
base name within a record writes a new "{base}#{version}" file; versions
start at 1 and strictly increase, even for byte-identical content.
"""

from typing import Iterable

from clustercfg.common.config import CLUSTER_CONFIG
from clustercfg.common.exceptions import StoreIOError
from clustercfg.common.logging_setup import get_service_logger, log_artifact_event

from .config_store import ConfigStore, atomic_write, sha256_digest, validate_record_name
from .records import (
    ArtifactPayload,
    ArtifactRecord,
    ConfigurationRecord,
    ResolvedConfiguration,
)

logger = get_service_logger("artifacts")


def find_by_base_name(
    loaded_artifacts: Iterable[ArtifactRecord],
    base_name: str,
) -> ArtifactRecord | None:
    """Latest loaded artifact with the given logical name, or None"""
    found = None
    for artifact in loaded_artifacts:
        if artifact.base_name == base_name:
            if found is None or artifact.version >= found.version:
                found = artifact
    return found


class ArtifactRegistry:
    """Deploy, undeploy and enumerate artifacts held in a ConfigStore"""

    def __init__(self, store: ConfigStore):
        self.store = store

    def deploy(self, record_name: str | None, content: bytes, base_name: str) -> ArtifactRecord:
        """
        Store a new version of base_name under the record.

        A group record that does not exist yet is created (auto-vivification
        of group configuration on first write).

        Args:
            record_name: Target record; None means the cluster record
            content: Artifact bytes
            base_name: Logical artifact name, e.g. "cluster.jar"

        Returns:
            The new ArtifactRecord

        Raises:
            ValueError: the artifact or record name is unusable
            StoreIOError: the artifact or record files could not be written
        """
        record_name = record_name or CLUSTER_CONFIG
        if not base_name or "/" in base_name or "\\" in base_name or base_name.startswith("."):
            raise ValueError(f"Invalid artifact name: {base_name!r}")
        validate_record_name(record_name)

        with self.store.lock(record_name):
            record = self.store.ensure_record(record_name)
            previous = record.latest_artifact(base_name)
            version = previous.version + 1 if previous else 1

            artifact = ArtifactRecord(
                record_name=record_name,
                base_name=base_name,
                version=version,
                digest=sha256_digest(content),
            )
            path = self.store.record_dir(record_name) / artifact.stored_file_name
            try:
                atomic_write(path, content)
            except OSError as e:
                log_artifact_event(logger, "Deploy", record_name, artifact.stored_file_name, success=False)
                raise StoreIOError(str(e), str(path)) from e

            record.artifacts = [a for a in record.artifacts if a.base_name != base_name]
            record.artifacts.append(artifact)
            try:
                self.store.put(record)
            except StoreIOError:
                path.unlink(missing_ok=True)
                raise

            if previous is not None:
                self._remove_file(previous)

        log_artifact_event(logger, "Deploy", record_name, artifact.stored_file_name)
        return artifact

    def undeploy(self, record_name: str | None, base_name: str) -> ArtifactRecord | None:
        """
        Remove base_name from the record.

        Returns:
            The removed ArtifactRecord, or None if it was not deployed
        """
        record_name = record_name or CLUSTER_CONFIG
        with self.store.lock(record_name):
            record = self.store.get(record_name)
            if record is None:
                return None
            removed = record.latest_artifact(base_name)
            if removed is None:
                return None

            record.artifacts = [a for a in record.artifacts if a.base_name != base_name]
            self.store.put(record)
            self._remove_file(removed)

        log_artifact_event(logger, "Undeploy", record_name, removed.stored_file_name)
        return removed

    def _remove_file(self, artifact: ArtifactRecord) -> None:
        path = self.store.record_dir(artifact.record_name) / artifact.stored_file_name
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove superseded artifact {path}: {e}")

    def list_artifacts(self, record_name: str | None = None) -> list[ArtifactRecord]:
        """Artifacts of one record, or of every record in name order"""
        names = [record_name] if record_name else self.store.list_names()
        result = []
        for name in names:
            record = self.store.get(name)
            if record is not None:
                result.extend(record.artifacts)
        return result

    def resolve_for_member(self, resolved: ResolvedConfiguration) -> list[ArtifactRecord]:
        """
        Union of artifacts across the resolved records in precedence order.

        Duplicate base names in different records are all returned.
        """
        result = []
        for record in resolved.records:
            result.extend(record.artifacts)
        return result

    def read_content(self, artifact: ArtifactRecord) -> bytes:
        path = self.store.record_dir(artifact.record_name) / artifact.stored_file_name
        try:
            return path.read_bytes()
        except OSError as e:
            raise StoreIOError(str(e), str(path)) from e

    def payloads_for(self, artifacts: Iterable[ArtifactRecord]) -> list[ArtifactPayload]:
        return [ArtifactPayload(artifact=a, content=self.read_content(a)) for a in artifacts]

    def snapshot(self, record_name: str) -> tuple[ConfigurationRecord | None, list[ArtifactPayload]]:
        """Record copy and artifact contents read under one record lock"""
        with self.store.lock(record_name):
            record = self.store.get(record_name)
            if record is None:
                return None, []
            return record, self.payloads_for(record.artifacts)
