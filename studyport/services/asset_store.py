"""
Filesystem access to live study asset directories.

Every path handed out is a direct child of ASSETS_ROOT named by a validated
directory name, so callers cannot reach outside the root.

Replacing a live directory never deletes before the new tree is complete:

    1. copy the new tree to   .<name>.incoming-<hex>
    2. rename the live tree to .<name>.retired-<hex>
    3. rename incoming to      <name>

The retired tree is kept until the caller has committed its records, so a
failed commit can put it back (``restore``). Hidden sibling names can never
clash with study directories because valid names start with a letter or digit.

Readers (export) and writers (import) of the same directory serialise on
``lock(dir_name)``.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path

from flask import current_app

from studyport.core.exceptions import BadRequestError

logger = logging.getLogger(__name__)

_DIR_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,199}$")

# One re-entrant lock per absolute directory path, shared by all stores.
_dir_locks: dict[str, threading.RLock] = {}
_dir_locks_guard = threading.Lock()


def is_valid_dir_name(name) -> bool:
    return isinstance(name, str) and bool(_DIR_NAME_RE.match(name))


def validate_dir_name(name) -> str:
    """Return ``name`` unchanged or raise BadRequestError."""
    if not is_valid_dir_name(name):
        raise BadRequestError(
            "Invalid asset directory name",
            details={"dirName": name},
        )
    return name


def discard_tree(path: Path) -> None:
    """Remove a temporary tree; failures are logged, not raised."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove temporary tree %s: %s", path, exc)


class AssetStore:
    """Directory-level operations beneath one assets root."""

    def __init__(self, root):
        self.root = Path(root).resolve()

    @classmethod
    def from_app(cls, app):
        root = Path(app.config["ASSETS_ROOT"])
        root.mkdir(parents=True, exist_ok=True)
        return cls(root)

    # ── Lookup ───────────────────────────────────────────────────────────

    def path(self, dir_name: str) -> Path:
        return self.root / validate_dir_name(dir_name)

    def exists(self, dir_name: str) -> bool:
        return is_valid_dir_name(dir_name) and (self.root / dir_name).is_dir()

    def list_entries(self, dir_name: str) -> list[str]:
        """Sorted POSIX paths of every file and directory below ``dir_name``."""
        base = self.path(dir_name)
        if not base.is_dir():
            return []
        return sorted(p.relative_to(base).as_posix() for p in base.rglob("*"))

    @contextmanager
    def lock(self, dir_name: str):
        key = str(self.path(dir_name))
        with _dir_locks_guard:
            dir_lock = _dir_locks.setdefault(key, threading.RLock())
        with dir_lock:
            yield

    # ── Mutation ─────────────────────────────────────────────────────────

    def _sibling(self, dir_name: str, purpose: str) -> Path:
        return self.root / f".{dir_name}.{purpose}-{uuid.uuid4().hex[:12]}"

    def _copy_to_incoming(self, src: Path, dir_name: str) -> Path:
        incoming = self._sibling(dir_name, "incoming")
        try:
            shutil.copytree(src, incoming)
        except OSError:
            discard_tree(incoming)
            raise
        return incoming

    def create_from(self, src: Path, dir_name: str) -> Path:
        """Promote the tree at ``src`` to a new live directory ``dir_name``.

        Raises:
            FileExistsError: the directory already exists.
            OSError: copy or rename failed; nothing is left behind.
        """
        target = self.path(dir_name)
        if target.exists():
            raise FileExistsError(f"Asset directory {dir_name} already exists")
        incoming = self._copy_to_incoming(Path(src), dir_name)
        try:
            os.rename(incoming, target)
        except OSError:
            discard_tree(incoming)
            raise
        logger.info("Created asset directory %s", dir_name)
        return target

    def replace_from(self, src: Path, dir_name: str) -> Path | None:
        """Swap the tree at ``src`` in as the full content of ``dir_name``.

        Returns:
            Path of the retired previous tree, or None if there was none.
            The caller must pass it to ``drop_retired`` or ``restore``.

        Raises:
            OSError: copy or swap failed; the previous tree is back in place.
        """
        target = self.path(dir_name)
        incoming = self._copy_to_incoming(Path(src), dir_name)
        retired = None
        try:
            if target.exists():
                retired = self._sibling(dir_name, "retired")
                os.rename(target, retired)
            os.rename(incoming, target)
        except OSError:
            if retired is not None and not target.exists():
                os.rename(retired, target)
            discard_tree(incoming)
            raise
        logger.info("Replaced asset directory %s", dir_name)
        return retired

    def retire(self, dir_name: str) -> Path | None:
        """Move a live directory aside without deleting it.

        Returns the retired path (None if there was no directory), to be
        passed on to ``drop_retired`` or ``restore`` like ``replace_from``'s.
        """
        target = self.path(dir_name)
        if not target.exists():
            return None
        retired = self._sibling(dir_name, "retired")
        os.rename(target, retired)
        logger.info("Retired asset directory %s", dir_name)
        return retired

    def restore(self, dir_name: str, retired: Path | None) -> None:
        """Undo ``replace_from``: put the retired tree back as ``dir_name``."""
        target = self.path(dir_name)
        if target.exists():
            shutil.rmtree(target)
        if retired is not None:
            os.rename(retired, target)
        logger.warning("Restored previous asset directory %s", dir_name)

    def drop_retired(self, retired: Path | None) -> None:
        if retired is not None:
            discard_tree(retired)

    def remove(self, dir_name: str) -> None:
        """Delete a live directory; missing directories are ignored."""
        target = self.path(dir_name)
        if target.exists():
            shutil.rmtree(target)
            logger.info("Removed asset directory %s", dir_name)

    def rename(self, old_name: str, new_name: str) -> Path:
        """Rename a live directory.

        Raises:
            FileExistsError: ``new_name`` is taken.
            FileNotFoundError: ``old_name`` does not exist.
        """
        source = self.path(old_name)
        target = self.path(new_name)
        if target.exists():
            raise FileExistsError(f"Asset directory {new_name} already exists")
        if not source.exists():
            raise FileNotFoundError(f"Asset directory {old_name} does not exist")
        os.rename(source, target)
        logger.info("Renamed asset directory %s -> %s", old_name, new_name)
        return target


def get_asset_store() -> AssetStore:
    """Return the AssetStore bound to the current Flask app."""
    return current_app.extensions["asset_store"]
