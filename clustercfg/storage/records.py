"""
Configuration Records

Data model shared by the locator store, the coordinator and member agents.
"""

import base64
import copy
import re
from dataclasses import dataclass, field
from typing import Any

from clustercfg.common.config import CLUSTER_CONFIG

# "{base}#{version}" naming of stored artifacts
VERSIONED_NAME_RE = re.compile(r"^(?P<base>.+)#(?P<version>\d+)$")

DEFAULT_REGION_TYPE = "REPLICATE"


def stored_name(base_name: str, version: int) -> str:
    """Deterministic on-disk name for an artifact version"""
    return f"{base_name}#{version}"


def parse_stored_name(file_name: str) -> tuple[str, int] | None:
    """Split "{base}#{version}" into (base, version), or None if unversioned"""
    match = VERSIONED_NAME_RE.match(file_name)
    if not match:
        return None
    return match.group("base"), int(match.group("version"))


@dataclass(frozen=True)
class RegionDefinition:
    """Declared region: name plus the region shortcut it is created with"""
    name: str
    region_type: str = DEFAULT_REGION_TYPE

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "region_type": self.region_type}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RegionDefinition":
        return cls(name=data["name"], region_type=data.get("region_type", DEFAULT_REGION_TYPE))


@dataclass(frozen=True)
class ArtifactRecord:
    """Immutable reference to one deployed artifact version"""
    record_name: str
    base_name: str
    version: int
    digest: str = ""

    @property
    def stored_file_name(self) -> str:
        return stored_name(self.base_name, self.version)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_name": self.record_name,
            "base_name": self.base_name,
            "version": self.version,
            "stored_file_name": self.stored_file_name,
            "digest": self.digest,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArtifactRecord":
        return cls(
            record_name=data["record_name"],
            base_name=data["base_name"],
            version=int(data["version"]),
            digest=data.get("digest", ""),
        )


@dataclass
class ArtifactPayload:
    """Artifact record plus its bytes, as pushed to members"""
    artifact: ArtifactRecord
    content: bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.artifact.to_dict(),
            "content": base64.b64encode(self.content).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArtifactPayload":
        return cls(
            artifact=ArtifactRecord.from_dict(data),
            content=base64.b64decode(data.get("content", "")),
        )


@dataclass
class ConfigurationRecord:
    """
    Per-group (or cluster-wide) configuration.

    The record named "cluster" applies to every member; any other name is a
    group and applies only to members declaring that group.
    """
    name: str
    properties: dict[str, str] = field(default_factory=dict)
    regions: dict[str, RegionDefinition] = field(default_factory=dict)
    artifacts: list[ArtifactRecord] = field(default_factory=list)

    @property
    def is_cluster(self) -> bool:
        return self.name == CLUSTER_CONFIG

    @property
    def region_names(self) -> set[str]:
        return set(self.regions)

    def copy(self) -> "ConfigurationRecord":
        return copy.deepcopy(self)

    def latest_artifact(self, base_name: str) -> ArtifactRecord | None:
        for artifact in reversed(self.artifacts):
            if artifact.base_name == base_name:
                return artifact
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "properties": dict(self.properties),
            "regions": [r.to_dict() for r in self.regions.values()],
            "artifacts": [a.to_dict() for a in self.artifacts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConfigurationRecord":
        regions = [RegionDefinition.from_dict(r) for r in data.get("regions", [])]
        return cls(
            name=data["name"],
            properties={str(k): str(v) for k, v in (data.get("properties") or {}).items()},
            regions={r.name: r for r in regions},
            artifacts=[ArtifactRecord.from_dict(a) for a in data.get("artifacts", [])],
        )


@dataclass
class ResolvedConfiguration:
    """
    Member-specific ordered view of the records that apply to it.

    Records are ordered cluster first, then groups sorted by name. Later
    records override earlier ones for identical property keys.
    """
    member_groups: list[str]
    records: list[ConfigurationRecord]

    @property
    def record_names(self) -> list[str]:
        return [r.name for r in self.records]

    def effective_properties(self) -> dict[str, str]:
        merged: dict[str, str] = {}
        for record in self.records:
            merged.update(record.properties)
        return merged

    def regions(self) -> list[RegionDefinition]:
        result = []
        for record in self.records:
            result.extend(record.regions.values())
        return result

    def applies_to(self, record_name: str) -> bool:
        return record_name in self.record_names


@dataclass
class ApplyReport:
    """Outcome of applying configuration on one member"""
    member_id: str = ""
    applied: list[str] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "member_id": self.member_id,
            "ok": self.ok,
            "applied": list(self.applied),
            "failures": list(self.failures),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApplyReport":
        return cls(
            member_id=data.get("member_id", ""),
            applied=list(data.get("applied", [])),
            failures=list(data.get("failures", [])),
        )


@dataclass
class ConfigurationBundle:
    """Resolved configuration plus the artifacts a member must install"""
    resolved: ResolvedConfiguration
    artifacts: list[ArtifactPayload] = field(default_factory=list)

    @property
    def records(self) -> list[ConfigurationRecord]:
        return self.resolved.records

    def to_dict(self) -> dict[str, Any]:
        return {
            "member_groups": list(self.resolved.member_groups),
            "records": [r.to_dict() for r in self.resolved.records],
            "artifacts": [p.to_dict() for p in self.artifacts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConfigurationBundle":
        resolved = ResolvedConfiguration(
            member_groups=list(data.get("member_groups", [])),
            records=[ConfigurationRecord.from_dict(r) for r in data.get("records", [])],
        )
        return cls(
            resolved=resolved,
            artifacts=[ArtifactPayload.from_dict(p) for p in data.get("artifacts", [])],
        )
