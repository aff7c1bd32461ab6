from __future__ import annotations

import json
from datetime import datetime

import pytest

from misfit_studio.backup import (
    BackupManager,
    app_backup_root,
    backup_namespace,
    backup_rel_path,
    shared_backup_root,
)
from misfit_studio.errors import NoBackupFound, RestoreError
from misfit_studio.progress import ProgressLog
from misfit_studio.restore import list_backups, read_restore_map, restore, restore_from

FIXED = datetime(2024, 5, 1, 12, 30, 0)


def _manager(documents, app_name: str = "Theme Pack") -> BackupManager:
    return BackupManager(app_name, app_backup_root(documents, app_name), clock=lambda: FIXED)


def test_backup_namespace_sanitises_app_name() -> None:
    assert backup_namespace("  My App: v2 ") == "My_App__v2"
    assert backup_namespace("   ") == "default"


def test_backup_rel_path_mirrors_absolute_path(tmp_path) -> None:
    rel = backup_rel_path(tmp_path / "a" / "b.txt")
    assert rel.parts[0] == "abs"
    assert rel.parts[-2:] == ("a", "b.txt")


def test_backup_is_lazy_and_deduplicated(tmp_path) -> None:
    documents = tmp_path / "Documents"
    manager = _manager(documents)

    assert manager.snapshot(tmp_path / "missing.txt") is None
    assert manager.record is None
    assert not documents.exists()

    target = tmp_path / "settings.json"
    target.write_text("{}", encoding="utf-8")
    first = manager.snapshot(target)
    assert first is not None
    assert manager.snapshot(target) is None

    record = manager.record
    assert record is not None
    assert record.directory.name == "backup_20240501_123000"
    lines = (record.directory / "restore_map.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["original"] == str(target.absolute())


def test_paths_under_a_captured_directory_are_not_copied_again(tmp_path) -> None:
    folder = tmp_path / "ext"
    folder.mkdir()
    (folder / "a.txt").write_text("a", encoding="utf-8")

    manager = _manager(tmp_path / "Documents")
    assert manager.snapshot(folder) is not None
    assert manager.snapshot(folder / "a.txt") is None


def test_directory_captured_after_a_child_keeps_the_child_pre_run_copy(tmp_path) -> None:
    folder = tmp_path / "out"
    folder.mkdir()
    child = folder / "settings.json"
    child.write_text("before", encoding="utf-8")
    (folder / "other.txt").write_text("other", encoding="utf-8")

    manager = _manager(tmp_path / "Documents")
    manager.snapshot(child)
    child.write_text("after", encoding="utf-8")
    entry = manager.snapshot(folder)

    assert entry is not None
    assert entry.kind == "dir"
    archived = manager.record.directory / entry.archived
    assert (archived / "settings.json").read_text(encoding="utf-8") == "before"
    assert (archived / "other.txt").read_text(encoding="utf-8") == "other"


def test_runs_in_the_same_second_get_unique_directories(tmp_path) -> None:
    documents = tmp_path / "Documents"
    target = tmp_path / "f.txt"
    target.write_text("x", encoding="utf-8")

    dirs = []
    for _ in range(3):
        manager = _manager(documents)
        manager.snapshot(target)
        dirs.append(manager.record.directory.name)

    assert dirs == ["backup_20240501_123000", "backup_20240501_123000_1", "backup_20240501_123000_2"]
    ordered = [p.name for p in list_backups(app_backup_root(documents, "Theme Pack"))]
    assert ordered == dirs


def test_restore_picks_latest_backup(tmp_path) -> None:
    documents = tmp_path / "Documents"
    target = tmp_path / "f.txt"

    target.write_bytes(b"v1")
    _manager(documents).snapshot(target)
    target.write_bytes(b"v2")
    _manager(documents).snapshot(target)
    target.write_bytes(b"v3")

    progress = ProgressLog()
    result = restore("Theme Pack", documents, progress)
    assert target.read_bytes() == b"v2"
    assert result.backup_dir.name == "backup_20240501_123000_1"
    assert not result.used_legacy_root
    assert any(m.startswith("Restored successfully") for m in progress.messages())


def test_restore_replaces_directories_wholesale(tmp_path) -> None:
    folder = tmp_path / "ext"
    folder.mkdir()
    (folder / "keep.txt").write_text("keep", encoding="utf-8")
    documents = tmp_path / "Documents"
    _manager(documents).snapshot(folder)

    (folder / "keep.txt").write_text("changed", encoding="utf-8")
    (folder / "new.txt").write_text("new", encoding="utf-8")

    restore("Theme Pack", documents)
    assert (folder / "keep.txt").read_text(encoding="utf-8") == "keep"
    assert not (folder / "new.txt").exists()


def test_restore_falls_back_to_legacy_root(tmp_path) -> None:
    documents = tmp_path / "Documents"
    legacy = shared_backup_root(documents) / "backup_20230101_000000"
    (legacy / "files").mkdir(parents=True)
    (legacy / "files" / "cfg.txt").write_bytes(b"legacy")
    original = tmp_path / "cfg.txt"
    original.write_bytes(b"current")
    (legacy / "restore_map.json").write_text(
        json.dumps({"files/cfg.txt": str(original)}), encoding="utf-8"
    )

    progress = ProgressLog()
    result = restore("Theme Pack", documents, progress)
    assert result.used_legacy_root
    assert original.read_bytes() == b"legacy"
    assert any("falling back" in m for m in progress.messages())


def test_restore_without_backups_raises(tmp_path) -> None:
    with pytest.raises(NoBackupFound):
        restore("Theme Pack", tmp_path / "Documents")


def test_incomplete_backup_is_not_partially_restored(tmp_path) -> None:
    documents = tmp_path / "Documents"
    a = tmp_path / "a.txt"
    b = tmp_path / "b.txt"
    a.write_bytes(b"a1")
    b.write_bytes(b"b1")
    manager = _manager(documents)
    manager.snapshot(a)
    manager.snapshot(b)
    a.write_bytes(b"a2")

    archived_b = manager.record.directory / read_restore_map(manager.record.directory)[1].archived
    archived_b.unlink()

    with pytest.raises(RestoreError, match="incomplete"):
        restore_from(manager.record.directory)
    assert a.read_bytes() == b"a2"
