"""
Configuration Archive

Packs the record tree into a single zip and restores it. Unpacking is
validated in full and extracted into a temporary sibling first, so the
target directory only ever appears complete.
"""

import io
import shutil
import tempfile
import zipfile
import zlib
from pathlib import Path, PurePosixPath

from clustercfg.common.exceptions import CorruptArchiveError
from clustercfg.common.logging_setup import get_service_logger

from .config_store import TEMP_PREFIX, descriptor_file, properties_file

logger = get_service_logger("archive")


def pack(directory: str | Path) -> bytes:
    """
    Zip every file under directory, paths relative to it.

    Args:
        directory: Root of the record tree

    Returns:
        Archive bytes
    """
    root = Path(directory)
    buffer = io.BytesIO()
    count = 0

    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(root.rglob("*")):
            if not path.is_file() or path.name.startswith(TEMP_PREFIX):
                continue
            zf.write(path, path.relative_to(root).as_posix())
            count += 1

    logger.info(f"Packed {count} files from {root}", extra={"file_count": count})
    return buffer.getvalue()


def _validate(zf: zipfile.ZipFile) -> dict[str, set[str]]:
    """Return {record: file names}; raise CorruptArchiveError on bad layout"""
    records: dict[str, set[str]] = {}

    for info in zf.infolist():
        entry = PurePosixPath(info.filename)
        if entry.is_absolute() or ".." in entry.parts or "\\" in info.filename:
            raise CorruptArchiveError("entry escapes archive root", info.filename)
        if info.is_dir():
            records.setdefault(entry.parts[0], set())
            continue
        if len(entry.parts) != 2:
            raise CorruptArchiveError("entry is not inside a record directory", info.filename)
        record, file_name = entry.parts
        records.setdefault(record, set()).add(file_name)

    if not records:
        raise CorruptArchiveError("archive contains no configuration records")

    for record, files in records.items():
        for required in (descriptor_file(Path(record), record).name,
                         properties_file(Path(record), record).name):
            if required not in files:
                raise CorruptArchiveError(
                    f"record {record} is missing {required}", f"{record}/{required}"
                )

    return records


def unpack(data: bytes, target_directory: str | Path) -> list[str]:
    """
    Restore an archive into target_directory.

    The target must not exist yet; it is created by renaming a fully
    extracted temporary sibling into place.

    Returns:
        Sorted record names found in the archive

    Raises:
        CorruptArchiveError: data is not a valid configuration archive
    """
    target = Path(target_directory)
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise CorruptArchiveError(str(e)) from e

    with zf:
        records = _validate(zf)
        try:
            bad_entry = zf.testzip()
        except (zipfile.BadZipFile, zlib.error, OSError) as e:
            raise CorruptArchiveError(str(e)) from e
        if bad_entry is not None:
            raise CorruptArchiveError("checksum mismatch", bad_entry)

        target.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=TEMP_PREFIX, dir=target.parent))
        try:
            zf.extractall(staging)
            staging.rename(target)
        except (zipfile.BadZipFile, OSError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise CorruptArchiveError(str(e)) from e

    logger.info(f"Unpacked {len(records)} records into {target}", extra={"records": sorted(records)})
    return sorted(records)
