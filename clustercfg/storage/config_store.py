"""
Configuration Store

Durable per-group configuration records backed by a directory tree:

    <root>/<record>/<record>.xml          region descriptor
    <root>/<record>/<record>.properties   property overrides
    <root>/<record>/<base>#<version>      deployed artifacts

Every mutation is written temp-then-rename before it is acknowledged, so a
failed write leaves the last good files in place.
"""

import hashlib
import os
import tempfile
import threading
import xml.etree.ElementTree as ET
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from clustercfg.common.config import CLUSTER_CONFIG
from clustercfg.common.exceptions import StoreIOError, StoreInvariantError
from clustercfg.common.logging_setup import get_service_logger

from .records import (
    ArtifactRecord,
    ConfigurationRecord,
    RegionDefinition,
    DEFAULT_REGION_TYPE,
    parse_stored_name,
    stored_name,
)

logger = get_service_logger("store")

TEMP_PREFIX = ".tmp-"


def atomic_write(path: Path, data: bytes) -> None:
    """
    Write bytes to path via a synced temp file and rename.

    The temp file is removed on every error path.
    """
    path = Path(path)
    fd, temp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise


def sha256_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def descriptor_file(record_dir: Path, name: str) -> Path:
    return record_dir / f"{name}.xml"


def properties_file(record_dir: Path, name: str) -> Path:
    return record_dir / f"{name}.properties"


# =============================================================================
# Descriptor / properties codecs
# =============================================================================

def render_descriptor(
    regions: list[RegionDefinition],
    artifacts: list[ArtifactRecord] | None = None,
) -> bytes:
    """
    Render region declarations as a cache descriptor.

    Deployed artifacts are listed after the regions in deployment order, so
    the order survives an archive round trip.
    """
    root = ET.Element("cache")
    for region in sorted(regions, key=lambda r: r.name):
        ET.SubElement(root, "region", {"name": region.name, "refid": region.region_type})
    for artifact in artifacts or []:
        ET.SubElement(root, "artifact", {"name": artifact.base_name, "version": str(artifact.version)})
    ET.indent(root)
    body = ET.tostring(root, encoding="unicode")
    return f'<?xml version="1.0" encoding="UTF-8"?>\n{body}\n'.encode("utf-8")


def parse_descriptor(data: bytes) -> dict[str, RegionDefinition]:
    """Parse a cache descriptor into region definitions"""
    if not data.strip():
        return {}
    root = ET.fromstring(data)
    regions = {}
    for element in root.iter("region"):
        name = element.get("name")
        if not name:
            continue
        regions[name] = RegionDefinition(name, element.get("refid", DEFAULT_REGION_TYPE))
    return regions


def parse_artifact_order(data: bytes) -> list[str]:
    """Base names listed in a cache descriptor, in deployment order"""
    if not data.strip():
        return []
    root = ET.fromstring(data)
    return [e.get("name") for e in root.iter("artifact") if e.get("name")]


def validate_record_name(name: str) -> None:
    """
    Reject record names that are unsafe as a directory name.

    Raises:
        ValueError: name is empty, contains a path separator, starts with a
            dot, or is a differently-cased spelling of the cluster record
    """
    if not name or "/" in name or "\\" in name or name.startswith("."):
        raise ValueError(f"Invalid configuration record name: {name!r}")
    if name.lower() == CLUSTER_CONFIG and name != CLUSTER_CONFIG:
        raise ValueError(f"{name!r} conflicts with the {CLUSTER_CONFIG!r} record")


def render_properties(properties: dict[str, str]) -> bytes:
    lines = [f"{_escape(k)}={_escape(v)}" for k, v in sorted(properties.items())]
    return ("\n".join(lines) + ("\n" if lines else "")).encode("utf-8")


def parse_properties(data: bytes) -> dict[str, str]:
    """Parse java-properties style key=value lines"""
    properties = {}
    for raw in data.decode("utf-8").splitlines():
        line = raw.strip()
        if not line or line[0] in "#!":
            continue
        for i, ch in enumerate(line):
            if ch in "=:" and (i == 0 or line[i - 1] != "\\"):
                key, value = line[:i], line[i + 1:]
                break
        else:
            key, value = line, ""
        properties[_unescape(key.strip())] = _unescape(value.strip())
    return properties


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("=", "\\=").replace(":", "\\:").replace("\n", "\\n")


def _unescape(text: str) -> str:
    out = []
    chars = iter(text)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            out.append("\n" if nxt == "n" else nxt)
        else:
            out.append(ch)
    return "".join(out)


# =============================================================================
# Store
# =============================================================================

class ConfigStore:
    """
    Owned, injected configuration store with one lock per record name.

    Mutations to the same record are serialized; different records proceed
    in parallel. Readers receive copies taken under the record lock.
    """

    def __init__(self, root_path: str | Path):
        self.root_path = Path(root_path)
        self._records: dict[str, ConfigurationRecord] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def load(cls, root_path: str | Path) -> "ConfigStore":
        """
        Reconstruct all records from an existing directory tree.

        Raises:
            StoreIOError: root is missing or a record cannot be read
            StoreInvariantError: the tree holds more than one cluster record
        """
        store = cls(root_path)
        if not store.root_path.is_dir():
            raise StoreIOError("configuration directory does not exist", str(store.root_path))
        store._load_tree()
        return store

    @classmethod
    def open(cls, root_path: str | Path) -> "ConfigStore":
        """Load the tree at root_path, creating an empty store if absent"""
        root = Path(root_path)
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreIOError(str(e), str(root)) from e
        return cls.load(root)

    def _load_tree(self) -> None:
        records: dict[str, ConfigurationRecord] = {}
        try:
            entries = sorted(p for p in self.root_path.iterdir() if p.is_dir())
        except OSError as e:
            raise StoreIOError(str(e), str(self.root_path)) from e

        impostors = [p.name for p in entries
                     if p.name.lower() == CLUSTER_CONFIG and p.name != CLUSTER_CONFIG]
        if impostors:
            raise StoreInvariantError(
                f"multiple directories claim the cluster record: {[CLUSTER_CONFIG] + impostors}"
            )

        for record_dir in entries:
            if record_dir.name.startswith("."):
                continue
            records[record_dir.name] = self._load_record(record_dir)

        if CLUSTER_CONFIG not in records:
            cluster = ConfigurationRecord(CLUSTER_CONFIG)
            self._write_record_files(cluster)
            records[CLUSTER_CONFIG] = cluster

        # Swap the whole table at once; per-record locks are kept
        with self._locks_guard:
            self._records = records

        logger.info(
            f"Loaded {len(records)} configuration records from {self.root_path}",
            extra={"records": sorted(records)},
        )

    def _load_record(self, record_dir: Path) -> ConfigurationRecord:
        name = record_dir.name
        xml_path = descriptor_file(record_dir, name)
        props_path = properties_file(record_dir, name)

        try:
            descriptor = xml_path.read_bytes() if xml_path.exists() else b""
            regions = parse_descriptor(descriptor)
            order = parse_artifact_order(descriptor)
            properties = parse_properties(props_path.read_bytes()) if props_path.exists() else {}
        except ET.ParseError as e:
            raise StoreIOError(f"malformed descriptor: {e}", str(xml_path)) from e
        except (OSError, UnicodeDecodeError) as e:
            raise StoreIOError(str(e), str(record_dir)) from e

        record = ConfigurationRecord(name=name, properties=properties, regions=regions)
        record.artifacts = self._load_artifacts(record_dir, name, order)

        listed = [a for a in order if any(r.base_name == a for r in record.artifacts)]
        if (not xml_path.exists() or not props_path.exists()
                or listed != [a.base_name for a in record.artifacts]):
            self._write_record_files(record)

        return record

    def _load_artifacts(self, record_dir: Path, name: str, order: list[str]) -> list[ArtifactRecord]:
        reserved = {descriptor_file(record_dir, name).name, properties_file(record_dir, name).name}
        files = [p for p in record_dir.iterdir()
                 if p.is_file() and p.name not in reserved and not p.name.startswith(TEMP_PREFIX)]
        files.sort(key=lambda p: (p.stat().st_mtime_ns, p.name))

        latest: dict[str, tuple[int, Path]] = {}
        for path in files:
            parsed = parse_stored_name(path.name)
            if parsed is None:
                # Unversioned file from an older export: adopt as version 1
                base, version = path.name, 1
                target = record_dir / stored_name(base, version)
                if target.exists():
                    logger.warning(f"Ignoring {path.name}: {target.name} already present")
                    continue
                path = path.rename(target)
            else:
                base, version = parsed

            previous = latest.get(base)
            if previous is None or version > previous[0]:
                if previous is not None:
                    previous[1].unlink()
                latest[base] = (version, path)
            else:
                path.unlink()

        # Descriptor order first; files it does not list follow by (mtime, name)
        position = {base: i for i, base in enumerate(order)}
        ordered = sorted(
            latest.items(),
            key=lambda item: (
                position.get(item[0], len(position)),
                item[1][1].stat().st_mtime_ns,
                item[0],
            ),
        )
        artifacts = []
        for base, (version, path) in ordered:
            artifacts.append(ArtifactRecord(
                record_name=name,
                base_name=base,
                version=version,
                digest=sha256_digest(path.read_bytes()),
            ))
        return artifacts

    def reload(self) -> None:
        """
        Re-read the tree and replace the in-memory records.

        The lock table survives, so a writer holding a record lock keeps
        excluding others for that record across the reload.
        """
        self._load_tree()

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        """Mutual exclusion scope for a single record name"""
        with self._locks_guard:
            record_lock = self._locks.setdefault(name, threading.RLock())
        with record_lock:
            yield

    def record_dir(self, name: str) -> Path:
        return self.root_path / name

    def get(self, name: str) -> ConfigurationRecord | None:
        """Consistent copy of a record, or None"""
        with self.lock(name):
            record = self._records.get(name)
            return record.copy() if record is not None else None

    def list_names(self) -> list[str]:
        return sorted(self._records)

    def is_empty(self) -> bool:
        """True when the store holds nothing but a blank cluster record"""
        if list(self._records) != [CLUSTER_CONFIG]:
            return False
        cluster = self._records[CLUSTER_CONFIG]
        return not (cluster.artifacts or cluster.regions or cluster.properties)

    def put(self, record: ConfigurationRecord) -> None:
        """
        Persist descriptor and properties, then publish the record.

        Raises:
            ValueError: the record name is not usable as a directory
            StoreIOError: the files could not be written; the previous record
                stays reachable
        """
        validate_record_name(record.name)
        with self.lock(record.name):
            self._write_record_files(record)
            self._records[record.name] = record.copy()

    def _write_record_files(self, record: ConfigurationRecord) -> None:
        record_dir = self.record_dir(record.name)
        try:
            record_dir.mkdir(parents=True, exist_ok=True)
            atomic_write(descriptor_file(record_dir, record.name),
                         render_descriptor(list(record.regions.values()), record.artifacts))
            atomic_write(properties_file(record_dir, record.name),
                         render_properties(record.properties))
        except OSError as e:
            logger.error(f"Failed to persist record {record.name}: {e}", exc_info=True)
            raise StoreIOError(str(e), str(record_dir)) from e

    def ensure_record(self, name: str) -> ConfigurationRecord:
        """
        Return the named record, creating it on first write.

        Group records are auto-vivified: the first deploy, region declaration
        or property change naming a group creates that group's record.

        Raises:
            ValueError: name is not a usable record name
        """
        validate_record_name(name)
        with self.lock(name):
            record = self._records.get(name)
            if record is None:
                record = ConfigurationRecord(name)
                self.put(record)
                logger.info(f"Created configuration record {name}", extra={"record": name})
            return record.copy()

    def declare_region(self, name: str, region: RegionDefinition) -> ConfigurationRecord:
        with self.lock(name):
            record = self.ensure_record(name)
            record.regions[region.name] = region
            self.put(record)
            return record

    def set_properties(self, name: str, properties: dict[str, str]) -> ConfigurationRecord:
        with self.lock(name):
            record = self.ensure_record(name)
            record.properties.update({str(k): str(v) for k, v in properties.items()})
            self.put(record)
            return record
