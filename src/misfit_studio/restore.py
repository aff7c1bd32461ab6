from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from .backup import (
    BACKUP_PREFIX,
    INDEX_FILENAME,
    LEGACY_INDEX_FILENAME,
    BackupEntry,
    app_backup_root,
    shared_backup_root,
)
from .errors import NoBackupFound, RestoreError
from .progress import ProgressLog
from .utils import ensure_dir

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestoreResult:
    backup_dir: Path
    restored: list[Path]
    used_legacy_root: bool


def _sort_key(path: Path) -> tuple[str, int]:
    stamp = path.name[len(BACKUP_PREFIX):]
    head, sep, tail = stamp.rpartition("_")
    # backup_<date>_<time>_<n> for runs sharing a second
    if sep and head.count("_") == 1 and tail.isdigit():
        return head, int(tail)
    return stamp, 0


def list_backups(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    dirs = [p for p in root.iterdir() if p.is_dir() and p.name.startswith(BACKUP_PREFIX)]
    return sorted(dirs, key=_sort_key)


def latest_backup(root: Path) -> Path | None:
    backups = list_backups(root)
    return backups[-1] if backups else None


def read_restore_map(backup_dir: Path) -> list[BackupEntry]:
    index = backup_dir / INDEX_FILENAME
    legacy = backup_dir / LEGACY_INDEX_FILENAME
    entries: list[BackupEntry] = []
    try:
        if index.is_file():
            for line in index.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                raw = json.loads(line)
                entries.append(
                    BackupEntry(
                        original=Path(raw["original"]),
                        archived=str(raw["archived"]),
                        kind=str(raw.get("kind") or "file"),
                    )
                )
        elif legacy.is_file():
            LOGGER.info("Reading legacy restore map %s", legacy)
            raw_map = json.loads(legacy.read_text(encoding="utf-8"))
            if not isinstance(raw_map, dict):
                raise RestoreError(f"Restore map is not an object: {legacy}")
            for archived, original in raw_map.items():
                kind = "dir" if (backup_dir / archived).is_dir() else "file"
                entries.append(BackupEntry(original=Path(original), archived=archived, kind=kind))
        else:
            raise RestoreError(f"Restore map not found in {backup_dir}")
    except (OSError, ValueError, KeyError) as exc:
        raise RestoreError(f"Cannot read restore map in {backup_dir}: {exc}") from exc
    return entries


def restore_from(backup_dir: Path, progress: ProgressLog | None = None) -> list[Path]:
    entries = read_restore_map(backup_dir)

    missing = [e.archived for e in entries if not (backup_dir / e.archived).exists()]
    if missing:
        raise RestoreError(
            f"Backup {backup_dir} is incomplete; missing archived entries: {', '.join(missing)}"
        )

    dirs = [e.original for e in entries if e.kind == "dir"]
    restored: list[Path] = []
    for entry in entries:
        if any(d in entry.original.parents for d in dirs):
            # The archived parent directory already holds this entry.
            LOGGER.debug("Restoring %s with its parent directory", entry.original)
            continue
        src = backup_dir / entry.archived
        dest = entry.original
        try:
            if src.is_dir():
                if dest.is_dir():
                    shutil.rmtree(dest)
                elif dest.exists():
                    dest.unlink()
                shutil.copytree(src, dest)
            else:
                if dest.is_dir():
                    shutil.rmtree(dest)
                ensure_dir(dest.parent)
                shutil.copy2(src, dest)
        except OSError as exc:
            raise RestoreError(f"Failed restoring {dest}: {exc}") from exc
        restored.append(dest)
        if progress is not None:
            progress.info(f"Restored {dest}")
    return restored


def restore(
    app_name: str | None,
    documents_dir: Path,
    progress: ProgressLog | None = None,
) -> RestoreResult:
    progress = progress or ProgressLog()
    shared_root = shared_backup_root(documents_dir)
    scoped_root = app_backup_root(documents_dir, app_name) if app_name is not None else shared_root
    progress.info(f"Attempting restore from {scoped_root}")

    candidate = latest_backup(scoped_root)
    used_legacy = scoped_root == shared_root
    if candidate is None and scoped_root != shared_root:
        progress.info(f"No app-specific backups found, falling back to {shared_root}")
        candidate = latest_backup(shared_root)
        used_legacy = True

    if candidate is None:
        raise NoBackupFound(f"No backups found for {app_name or 'any application'}")

    restored = restore_from(candidate, progress)
    progress.info(f"Restored successfully from {candidate}")
    return RestoreResult(backup_dir=candidate, restored=restored, used_legacy_root=used_legacy)
