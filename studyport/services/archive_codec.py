"""
Archive codec for the portable study package.

Layout of a study archive (ZIP):

    <dir_name>.jas          properties document (UTF-8 JSON)
    <dir_name>/...          mirrored asset tree, empty sub-directories included

A standalone component is the bare properties document with suffix ``.jac``.

Properties document:

    {"version": 1, "data": {...study or component fields...}}

Rules:
  - Every file under the asset tree round-trips byte for byte.
  - Member paths that are absolute or climb out with ``..`` are rejected
    before anything is written to disk.
  - Structural problems raise CorruptArchiveError; a document from a newer
    format version raises BadRequestError; disk failures raise OSError.
"""

from __future__ import annotations

import json
import logging
import os
import re
import zipfile
from pathlib import Path, PurePosixPath

from studyport.core.exceptions import BadRequestError, CorruptArchiveError

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = 1
ARCHIVE_SUFFIX = ".zip"
STUDY_DOCUMENT_SUFFIX = ".jas"
COMPONENT_DOCUMENT_SUFFIX = ".jac"


def safe_base_name(name: str, fallback: str = "study") -> str:
    """Return ``name`` reduced to characters safe for a file name."""
    sanitized = re.sub(r"[^A-Za-z0-9_.-]", "_", (name or "").strip()).strip("._")
    return sanitized or fallback


def archive_file_name(dir_name: str) -> str:
    return f"{safe_base_name(dir_name)}{ARCHIVE_SUFFIX}"


# ── Properties document ──────────────────────────────────────────────────────


def dump_document(data: dict) -> bytes:
    """Serialise a properties document body with the current format version."""
    envelope = {"version": DOCUMENT_VERSION, "data": data}
    return json.dumps(envelope, indent=2, ensure_ascii=False).encode("utf-8")


def load_document(raw: bytes, source: str = "properties document") -> dict:
    """Parse a properties document and return its ``data`` body.

    Raises:
        CorruptArchiveError: not UTF-8 JSON, or not an object with a ``data`` object.
        BadRequestError: ``version`` missing, not a positive integer, or newer
            than supported.
    """
    try:
        envelope = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CorruptArchiveError(f"{source} is not valid JSON", details={"reason": str(exc)}) from exc

    if not isinstance(envelope, dict) or not isinstance(envelope.get("data"), dict):
        raise CorruptArchiveError(f"{source} has no data section")

    version = envelope.get("version")
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise BadRequestError(f"{source} has no valid version", details={"version": version})
    if version > DOCUMENT_VERSION:
        raise BadRequestError(
            f"{source} version {version} is newer than supported version {DOCUMENT_VERSION}",
            details={"version": version},
        )
    return envelope["data"]


def read_document(path: Path) -> dict:
    """Read a standalone properties document (e.g. a ``.jac`` component file)."""
    path = Path(path)
    return load_document(path.read_bytes(), source=path.name)


def write_document(data: dict, path: Path) -> Path:
    path = Path(path)
    path.write_bytes(dump_document(data))
    return path


# ── Archive ──────────────────────────────────────────────────────────────────


def pack(document: dict, asset_dir: Path | None, dir_name: str, target_dir: Path) -> Path:
    """Write ``document`` plus the tree under ``asset_dir`` into a new archive.

    Args:
        document:   Properties document body (the ``data`` section).
        asset_dir:  Live or staged asset directory; None packs an empty tree.
        dir_name:   Directory name used for both root entries.
        target_dir: Directory the archive is created in.

    Returns:
        Path of the archive, ``<target_dir>/<sanitized dir_name>.zip``.
    """
    base = safe_base_name(dir_name)
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    archive_path = target_dir / archive_file_name(dir_name)

    with zipfile.ZipFile(archive_path, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(f"{base}{STUDY_DOCUMENT_SUFFIX}", dump_document(document))
        archive.writestr(f"{base}/", b"")
        if asset_dir is not None and Path(asset_dir).is_dir():
            root = Path(asset_dir)
            for current, dirs, files in os.walk(root):
                dirs.sort()
                rel = Path(current).relative_to(root)
                for name in dirs:
                    archive.writestr(_arcname(base, rel / name) + "/", b"")
                for name in sorted(files):
                    archive.write(Path(current) / name, arcname=_arcname(base, rel / name))

    logger.debug("Packed archive %s", archive_path.name)
    return archive_path


def _arcname(base: str, rel: Path) -> str:
    return str(PurePosixPath(base, *rel.parts))


def _check_member(name: str) -> None:
    path = PurePosixPath(name)
    if name.startswith(("/", "\\")) or ".." in path.parts or ":" in (path.parts[0] if path.parts else ""):
        raise CorruptArchiveError("Archive contains an unsafe path", details={"entry": name})


def unpack(archive_path: Path, dest_dir: Path) -> tuple[dict, Path]:
    """Extract a study archive into ``dest_dir``.

    Returns:
        (document data, path of the extracted asset directory). When the
        archive carries no asset directory an empty one is created so callers
        can always treat the result as a tree.

    Raises:
        CorruptArchiveError: not a ZIP, unsafe member paths, missing or
            ambiguous properties entry, unparsable document.
        OSError: extraction failed on disk.
    """
    archive_path = Path(archive_path)
    dest_dir = Path(dest_dir)
    if not zipfile.is_zipfile(archive_path):
        raise CorruptArchiveError("Uploaded file is not a ZIP archive")

    try:
        with zipfile.ZipFile(archive_path) as archive:
            names = archive.namelist()
            for name in names:
                _check_member(name)
            documents = [
                n for n in names
                if "/" not in n and n.endswith(STUDY_DOCUMENT_SUFFIX)
            ]
            if not documents:
                raise CorruptArchiveError("Archive has no study properties document")
            if len(documents) > 1:
                raise CorruptArchiveError(
                    "Archive has more than one study properties document",
                    details={"entries": documents},
                )
            archive.extractall(dest_dir)
    except zipfile.BadZipFile as exc:
        raise CorruptArchiveError("Archive is damaged", details={"reason": str(exc)}) from exc

    document_path = dest_dir / documents[0]
    data = load_document(document_path.read_bytes(), source=documents[0])

    asset_dir = find_asset_dir(dest_dir, data, Path(documents[0]).stem)
    return data, asset_dir


def find_asset_dir(dest_dir: Path, data: dict, stem: str) -> Path:
    declared = data.get("dirName")
    for candidate in (declared, stem):
        if not isinstance(candidate, str) or candidate in ("", ".", "..") or "/" in candidate or "\\" in candidate:
            continue
        if (dest_dir / candidate).is_dir():
            return dest_dir / candidate
    subdirs = [p for p in dest_dir.iterdir() if p.is_dir()]
    if len(subdirs) == 1:
        return subdirs[0]
    empty = dest_dir / safe_base_name(stem)
    empty.mkdir(exist_ok=True)
    return empty
