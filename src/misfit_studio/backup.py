from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePath

from .errors import BackupError
from .utils import ensure_dir, sanitize_component, timestamp_id

LOGGER = logging.getLogger(__name__)

BACKUPS_DIRNAME = "MisfitBackups"
BACKUP_PREFIX = "backup_"
INDEX_FILENAME = "restore_map.jsonl"
LEGACY_INDEX_FILENAME = "restore_map.json"


def backup_namespace(app_name: str) -> str:
    trimmed = app_name.strip()
    if not trimmed:
        return "default"
    return sanitize_component(trimmed)


def shared_backup_root(documents_dir: Path) -> Path:
    return documents_dir / BACKUPS_DIRNAME


def app_backup_root(documents_dir: Path, app_name: str) -> Path:
    return shared_backup_root(documents_dir) / backup_namespace(app_name)


def backup_rel_path(path: Path) -> PurePath:
    """Mirror an absolute path under ``abs/`` with the drive made filesystem-safe."""
    absolute = Path(path).absolute()
    parts = ["abs"]
    if absolute.drive:
        parts.append(sanitize_component(absolute.drive))
    for part in absolute.parts[1:] if absolute.anchor else absolute.parts:
        if part in ("", ".", ".."):
            continue
        parts.append(part)
    if len(parts) == 1:
        raise BackupError(f"Failed to build backup path for {path}")
    return PurePath(*parts)


def _copy_if_absent(src: str, dst: str) -> str:
    if os.path.exists(dst):
        return dst
    return shutil.copy2(src, dst)


@dataclass(frozen=True)
class BackupEntry:
    original: Path
    archived: str
    kind: str

    def to_raw(self) -> dict[str, str]:
        return {"original": str(self.original), "archived": self.archived, "kind": self.kind}


@dataclass
class BackupRecord:
    app_name: str
    timestamp_id: str
    directory: Path
    entries: list[BackupEntry] = field(default_factory=list)


class BackupManager:
    def __init__(
        self,
        app_name: str,
        root: Path,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.app_name = app_name
        self.root = root
        self._clock = clock
        self._seen: set[Path] = set()
        self._record: BackupRecord | None = None

    @classmethod
    def for_app(cls, documents_dir: Path, app_name: str) -> "BackupManager":
        return cls(app_name, app_backup_root(documents_dir, app_name))

    @property
    def record(self) -> BackupRecord | None:
        return self._record

    def snapshot(self, path: Path) -> BackupEntry | None:
        """Capture ``path`` as it was before this run touched it.

        Returns the new entry, or None when nothing was copied (already seen,
        covered by a captured parent directory, or absent).
        """
        key = Path(path).absolute()
        if key in self._seen or any(parent in self._seen for parent in key.parents):
            return None
        self._seen.add(key)

        if not key.exists():
            LOGGER.debug("Nothing to back up at %s", key)
            return None

        record = self._ensure_record()
        archived = backup_rel_path(key)
        dest = record.directory / archived
        try:
            ensure_dir(dest.parent)
            if key.is_dir():
                # Children captured earlier in the run keep their pre-run copy.
                shutil.copytree(key, dest, dirs_exist_ok=True, copy_function=_copy_if_absent)
                kind = "dir"
            else:
                shutil.copy2(key, dest)
                kind = "file"
        except OSError as exc:
            raise BackupError(f"Failed to back up {key}: {exc}") from exc

        entry = BackupEntry(original=key, archived=archived.as_posix(), kind=kind)
        record.entries.append(entry)
        try:
            with (record.directory / INDEX_FILENAME).open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_raw(), ensure_ascii=False) + "\n")
        except OSError as exc:
            raise BackupError(f"Failed to record backup of {key}: {exc}") from exc

        LOGGER.info("Backed up %s -> %s", key, dest)
        return entry

    def _ensure_record(self) -> BackupRecord:
        if self._record is not None:
            return self._record

        stamp = timestamp_id(self._clock())
        directory = self.root / f"{BACKUP_PREFIX}{stamp}"
        suffix = 0
        while directory.exists():
            suffix += 1
            directory = self.root / f"{BACKUP_PREFIX}{stamp}_{suffix}"
        try:
            directory.mkdir(parents=True)
        except OSError as exc:
            raise BackupError(f"Failed to create backup directory {directory}: {exc}") from exc

        self._record = BackupRecord(
            app_name=self.app_name,
            timestamp_id=directory.name[len(BACKUP_PREFIX):],
            directory=directory,
        )
        LOGGER.info("Backup created at %s", directory)
        return self._record
