"""
Backup / Restore
================

One portable ZIP archive holding everything:

    data.json           {"version": 1, "date": <ISO-8601>, "matters": [...], "templates": [...]}
    files/<blobId>      one entry per referenced blob (no extension)

Export is best-effort: referenced blobs that are missing are skipped. It never
writes to the metadata store.

Import is destructive: blobs are restored first (concurrently), and only when
every blob write has succeeded are both collections replaced wholesale. A
failure before that point may leave extra blobs behind but never a partially
replaced metadata store.

A second, download-only archive bundles the files attached to one matter as
<matter>/<stage>/<task>/<file name>.
"""

import asyncio
import io
import json
import logging
import posixpath
import re
import zipfile
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from pydantic import ValidationError as SchemaError

from .editing import collect_file_ids, ensure_unique_ids, reject_temporary_matters, validate_structure
from .errors import BackupError, BackupFormatError, OrbitError, ZipSecurityError
from .schemas import BACKUP_FORMAT_VERSION, BackupDocument, ExportResult, ImportSummary, Material, Matter
from .storage import is_valid_key

logger = logging.getLogger(__name__)

DATA_ENTRY = "data.json"
FILES_DIR = "files/"


# =============================================================================
# ZIP BOMB PROTECTION
# =============================================================================

@dataclass
class ZipLimits:
    max_files: int = 5000
    max_file_bytes: int = 100 * 1024 * 1024
    max_total_uncompressed_bytes: int = 2 * 1024 * 1024 * 1024
    max_compression_ratio: int = 200

    @classmethod
    def from_settings(cls, settings=None) -> "ZipLimits":
        from .config import get_settings
        settings = settings or get_settings()
        return cls(
            max_files=settings.max_archive_files,
            max_file_bytes=settings.max_file_bytes,
            max_total_uncompressed_bytes=settings.max_total_uncompressed_bytes,
            max_compression_ratio=settings.max_compression_ratio,
        )


def validate_zip_safe(zf: zipfile.ZipFile, limits: Optional[ZipLimits] = None) -> List[str]:
    """
    Validate an archive before reading any entry.

    Checks for:
    - Path traversal (../, absolute paths, drive letters)
    - ZIP bombs (too many files, high compression ratio, excessive size)
    - Symlinks

    Returns:
        Entry names to consider (directories and hidden files skipped)

    Raises:
        ZipSecurityError: If the archive fails a check
    """
    limits = limits or ZipLimits()
    names = []
    total_uncompressed = 0

    for info in zf.infolist():
        if info.is_dir():
            continue

        filename = info.filename
        basename = filename.split('/')[-1]
        if basename.startswith('.') or filename.startswith('__MACOSX'):
            continue

        normalized = filename.replace('\\', '/')
        if '..' in normalized.split('/'):
            raise ZipSecurityError(f"Path traversal detected: {filename}")
        if normalized.startswith('/'):
            raise ZipSecurityError(f"Absolute path detected: {filename}")
        if len(filename) >= 2 and filename[1] == ':':
            raise ZipSecurityError(f"Windows absolute path detected: {filename}")

        if len(names) >= limits.max_files:
            raise ZipSecurityError(f"Archive contains too many files (max {limits.max_files})")

        if info.file_size > limits.max_file_bytes:
            raise ZipSecurityError(
                f"Entry too large: {filename} ({info.file_size / (1024*1024):.1f}MB, "
                f"max {limits.max_file_bytes / (1024*1024):.0f}MB)"
            )

        # Stored entries cannot inflate; only compressed ones are ratio-checked
        if info.compress_type != zipfile.ZIP_STORED and info.compress_size > 0:
            ratio = info.file_size / info.compress_size
            if ratio > limits.max_compression_ratio:
                raise ZipSecurityError(
                    f"Suspicious compression ratio: {filename} (ratio {ratio:.0f}x, "
                    f"max {limits.max_compression_ratio}x)"
                )

        total_uncompressed += info.file_size
        if total_uncompressed > limits.max_total_uncompressed_bytes:
            raise ZipSecurityError(
                f"Total uncompressed size exceeds limit "
                f"({limits.max_total_uncompressed_bytes / (1024*1024):.0f}MB)"
            )

        # Symlinks carry mode 0xA000 in the high word of external_attr
        mode = (info.external_attr >> 16) & 0xFFFF
        if mode != 0 and (mode & 0xF000) == 0xA000:
            raise ZipSecurityError(f"Symlink detected: {filename}")

        names.append(filename)

    return names


# =============================================================================
# ARCHIVE BUILD / PARSE (synchronous, run in an executor)
# =============================================================================

def backup_filename(when: Optional[datetime] = None) -> str:
    when = when or datetime.now()
    return f"orbit_backup_{when.strftime('%Y-%m-%d')}.zip"


def build_archive(document: BackupDocument, blobs: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(DATA_ENTRY, json.dumps(document.to_wire(), ensure_ascii=False, indent=2))
        for blob_id in sorted(blobs):
            zf.writestr(f"{FILES_DIR}{blob_id}", blobs[blob_id], compress_type=zipfile.ZIP_STORED)
    return buffer.getvalue()


def parse_archive(data: bytes, limits: Optional[ZipLimits] = None) -> Tuple[BackupDocument, Dict[str, bytes]]:
    """
    Read and validate an archive.

    Raises:
        BackupFormatError: not a zip, no data document, unsupported version,
            or a document that does not match the schema
        ZipSecurityError: archive fails safety checks
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise BackupFormatError(f"Not a zip archive: {e}", user_message="Invalid backup file: not a zip archive") from e

    with zf:
        names = validate_zip_safe(zf, limits)
        if DATA_ENTRY not in names:
            raise BackupFormatError(
                f"Archive has no {DATA_ENTRY}",
                user_message="Invalid backup file: data document missing",
            )

        try:
            raw = json.loads(_read_entry(zf, DATA_ENTRY).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BackupFormatError(f"{DATA_ENTRY} is not valid JSON: {e}") from e

        document = _parse_document(raw)

        files: Dict[str, bytes] = {}
        for name in names:
            if not name.startswith(FILES_DIR):
                continue
            blob_id = name[len(FILES_DIR):]
            if not is_valid_key(blob_id):
                logger.warning(f"Skipping archive entry with invalid blob id: {name}")
                continue
            files[blob_id] = _read_entry(zf, name)

    return document, files


def _read_entry(zf: zipfile.ZipFile, name: str) -> bytes:
    try:
        return zf.read(name)
    except (zipfile.BadZipFile, zlib.error, EOFError) as e:
        raise BackupFormatError(
            f"Corrupt archive entry {name}: {e}",
            user_message="Invalid backup file: the archive is damaged",
        ) from e


def _parse_document(raw) -> BackupDocument:
    if not isinstance(raw, dict):
        raise BackupFormatError(f"{DATA_ENTRY} is not an object")
    version = raw.get("version")
    if not isinstance(version, int) or isinstance(version, bool):
        raise BackupFormatError(f"{DATA_ENTRY} has no format version")
    if version > BACKUP_FORMAT_VERSION:
        raise BackupFormatError(
            f"Unsupported backup version {version}",
            user_message=f"Backup was made by a newer version (format {version})",
        )
    try:
        document = BackupDocument.model_validate(raw)
    except SchemaError as e:
        raise BackupFormatError(f"{DATA_ENTRY} does not match the schema: {e}") from e
    try:
        ensure_unique_ids(document.matters, "matter")
        reject_temporary_matters(document.matters)
        ensure_unique_ids(document.templates, "template")
        for item in list(document.matters) + list(document.templates):
            validate_structure(item)
    except OrbitError as e:
        raise BackupFormatError(f"{DATA_ENTRY} has inconsistent ids: {e}") from e
    return document


# =============================================================================
# EXPORT / IMPORT
# =============================================================================

async def export_archive(store, blobs, when: Optional[datetime] = None) -> ExportResult:
    """
    Serialize both collections plus every referenced blob.

    Blob ids are deduplicated before fetching; missing blobs are skipped.

    Raises:
        BackupError: the collections could not be read or the archive built
    """
    loop = asyncio.get_running_loop()
    when = when or datetime.now(timezone.utc)

    try:
        matters, templates = await loop.run_in_executor(None, store.read_collections)
    except OrbitError as e:
        logger.error(f"Export failed reading metadata: {e}")
        raise BackupError(str(e), user_message="Export failed: could not read local data") from e

    file_ids = sorted(collect_file_ids(matters, templates))
    contents = await asyncio.gather(*(blobs.get(blob_id) for blob_id in file_ids))

    found: Dict[str, bytes] = {}
    missing: List[str] = []
    for blob_id, content in zip(file_ids, contents):
        if content is None:
            missing.append(blob_id)
        else:
            found[blob_id] = content
    if missing:
        logger.warning(f"Export skipped {len(missing)} missing blobs: {missing}")

    document = BackupDocument(
        version=BACKUP_FORMAT_VERSION,
        date=when.isoformat(),
        matters=matters,
        templates=templates,
    )
    try:
        data = await loop.run_in_executor(None, build_archive, document, found)
    except (OSError, ValueError, zipfile.LargeZipFile) as e:
        logger.error(f"Export failed building archive: {e}")
        raise BackupError(str(e), user_message="Export failed: could not build the archive") from e

    logger.info(
        f"Exported {len(matters)} matters, {len(templates)} templates, "
        f"{len(found)} files ({len(data)} bytes)"
    )
    return ExportResult(
        filename=backup_filename(when),
        data=data,
        matters=len(matters),
        templates=len(templates),
        files=len(found),
        missing_file_ids=missing,
    )


async def import_archive(data: bytes, store, blobs, limits: Optional[ZipLimits] = None) -> ImportSummary:
    """
    Restore an archive, overwriting both collections.

    Order: parse and validate -> write all blobs concurrently -> join ->
    replace the metadata store in one transaction.

    Raises:
        BackupFormatError: malformed archive (nothing written)
        BackupError: a blob or metadata write failed (metadata untouched)
    """
    loop = asyncio.get_running_loop()
    document, files = await loop.run_in_executor(None, parse_archive, data, limits)

    results = await asyncio.gather(
        *(blobs.put(blob_id, content) for blob_id, content in files.items()),
        return_exceptions=True,
    )
    failures = [r for r in results if isinstance(r, BaseException)]
    if failures:
        logger.error(f"Import failed: {len(failures)} of {len(files)} blob writes failed: {failures[0]}")
        raise BackupError(
            str(failures[0]),
            user_message="Import failed: could not restore attached files",
        ) from failures[0]

    try:
        await loop.run_in_executor(None, store.replace_all, document.matters, document.templates)
    except OrbitError as e:
        logger.error(f"Import failed committing metadata: {e}")
        raise BackupError(str(e), user_message="Import failed: could not save restored data") from e

    summary = ImportSummary(
        matters=len(document.matters),
        templates=len(document.templates),
        files=len(files),
    )
    logger.info(f"Imported {summary.matters} matters, {summary.templates} templates, {summary.files} files")
    return summary


async def write_backup_file(path: str, store, blobs) -> Path:
    """Export to `path`; a directory gets the dated default filename"""
    result = await export_archive(store, blobs)
    path = Path(path)
    if path.is_dir():
        path = path / result.filename
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(result.data)
    except OSError as e:
        raise BackupError(str(e), user_message="Export failed: could not write the backup file") from e
    return path


async def read_backup_file(path: str, store, blobs, limits: Optional[ZipLimits] = None) -> ImportSummary:
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise BackupError(str(e), user_message="Import failed: could not read the backup file") from e
    return await import_archive(data, store, blobs, limits)


# =============================================================================
# PER-MATTER MATERIALS EXPORT
# =============================================================================

ILLEGAL_NAME_CHARS = re.compile(r'[\\/:*?"<>|]')


def safe_name(name: Optional[str], fallback: str) -> str:
    """Folder or file name with path-illegal characters replaced by '_'"""
    cleaned = ILLEGAL_NAME_CHARS.sub("_", name or "").strip()
    if not cleaned.strip("."):
        return fallback
    return cleaned


def _material_files(material: Material) -> List[Tuple[str, str]]:
    files = []
    if material.file_id:
        files.append((material.file_id, material.file_name or material.file_id))
    files.extend((f.id, f.name) for f in material.files)
    return files


def _unique_path(path: str, used: Set[str]) -> str:
    stem, ext = posixpath.splitext(path)
    candidate = path
    n = 2
    while candidate in used:
        candidate = f"{stem} ({n}){ext}"
        n += 1
    used.add(candidate)
    return candidate


def material_entries(matter: Matter) -> List[Tuple[str, str]]:
    """
    (archive path, blob id) for every file attached in a matter, laid out as
    <matter>/<stage>/<task>/<file name>. Clashing names get a " (n)" suffix.
    """
    root = safe_name(matter.title, "matter")
    used: Set[str] = set()
    entries = []
    for stage in matter.stages:
        stage_dir = safe_name(stage.title, stage.id)
        for task in stage.tasks:
            folder = f"{root}/{stage_dir}/{safe_name(task.title, task.id)}"
            for material in task.materials:
                for blob_id, name in _material_files(material):
                    entries.append((_unique_path(f"{folder}/{safe_name(name, blob_id)}", used), blob_id))
    return entries


def _build_materials_zip(files: List[Tuple[str, bytes]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, content in files:
            zf.writestr(path, content)
    return buffer.getvalue()


async def export_matter_materials(matter: Matter, blobs) -> ExportResult:
    """
    Zip every file attached to one matter for download.

    Missing blobs are skipped and listed in `missing_file_ids`.

    Raises:
        BackupError: the archive could not be built
    """
    loop = asyncio.get_running_loop()
    entries = material_entries(matter)
    blob_ids = sorted({blob_id for _, blob_id in entries})
    contents = dict(zip(blob_ids, await asyncio.gather(*(blobs.get(b) for b in blob_ids))))

    missing = [b for b in blob_ids if contents[b] is None]
    if missing:
        logger.warning(f"Materials export for {matter.id} skipped {len(missing)} missing blobs: {missing}")
    files = [(path, contents[blob_id]) for path, blob_id in entries if contents[blob_id] is not None]

    try:
        data = await loop.run_in_executor(None, _build_materials_zip, files)
    except (OSError, ValueError, zipfile.LargeZipFile) as e:
        logger.error(f"Materials export for {matter.id} failed: {e}")
        raise BackupError(str(e), user_message="Export failed: could not build the archive") from e

    logger.info(f"Exported {len(files)} material files for matter {matter.id}")
    return ExportResult(
        filename=f"{safe_name(matter.title, 'matter')}_materials.zip",
        data=data,
        matters=1,
        files=len(files),
        missing_file_ids=missing,
    )
