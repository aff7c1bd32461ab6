from __future__ import annotations

import json
from pathlib import Path

import pytest

from misfit_studio.drafts import DraftBase64Embed, DraftCopy, DraftPatchBlock, StudioProject
from misfit_studio.errors import BuildError, Cancelled, PayloadCollision, ValidationError
from misfit_studio.planner import (
    SENTINEL_NAME,
    build_project,
    inspect_build_target,
    locate_payload_source,
    plan_build,
    required_confirmations,
    resolve_dist_base,
    scan_extension_folders,
    write_bundle,
)


class _FakeFetcher:
    def __init__(self) -> None:
        self.urls: list[str] = []

    def download(self, url: str, dest: Path) -> Path:
        self.urls.append(url)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(b"remote")
        return dest


def _sources(tmp_path: Path) -> Path:
    src = tmp_path / "src"
    (src / "theme").mkdir(parents=True)
    (src / "theme" / "a.css").write_text("a {}", encoding="utf-8")
    (src / "other").mkdir()
    (src / "other" / "a.css").write_text("other {}", encoding="utf-8")
    (src / "block.css").write_text("b {}", encoding="utf-8")
    return src


def test_plan_build_stages_payloads(tmp_path) -> None:
    src = _sources(tmp_path)
    project = StudioProject(
        app_name="Theme Pack",
        steps=[
            DraftCopy(payload_source=str(src / "theme" / "a.css"), dest="out/a.css"),
            DraftPatchBlock(
                file="app.css",
                start_marker="/* S */",
                end_marker="/* E */",
                content_source=str(src / "block.css"),
                content_rel="blocks/block.css",
            ),
            DraftCopy(payload_source=str(src / "theme" / "a.css"), dest="copy2/a.css"),
        ],
    )

    plan = plan_build(project)
    staged = {p.staged.as_posix(): p.source for p in plan.payload_files}
    assert staged == {
        "a.css": str(src / "theme" / "a.css"),
        "blocks/block.css": str(src / "block.css"),
    }
    assert len(plan.manifest.steps) == 3


def test_plan_build_rejects_payload_collision(tmp_path) -> None:
    src = _sources(tmp_path)
    project = StudioProject(
        steps=[
            DraftCopy(payload_source=str(src / "theme" / "a.css"), dest="x/a.css"),
            DraftCopy(payload_source=str(src / "other" / "a.css"), dest="y/a.css"),
        ]
    )
    with pytest.raises(PayloadCollision):
        plan_build(project)


def test_plan_build_collects_every_problem(tmp_path) -> None:
    project = StudioProject(
        steps=[
            DraftCopy(payload_source="", dest="x"),
            DraftBase64Embed(file="index.html", placeholder="@@X@@", input_source=""),
            DraftCopy(payload_source="a.css", payload_rel="../escape.css", dest="y"),
        ]
    )
    with pytest.raises(ValidationError) as excinfo:
        plan_build(project)
    problems = excinfo.value.problems
    assert any(p.startswith("steps[0]") for p in problems)
    assert any(p.startswith("steps[1]") for p in problems)
    assert any(p.startswith("steps[2]") for p in problems)


def test_inspect_and_confirmations(tmp_path) -> None:
    dist = tmp_path / "dist"
    fresh = inspect_build_target("MyBuild", False, dist)
    assert fresh.to_raw()["exists"] is False
    assert required_confirmations(fresh) == []

    (dist / "MyBuild").mkdir(parents=True)
    existing = inspect_build_target("MyBuild", False, dist)
    assert len(required_confirmations(existing)) == 1

    absolute = tmp_path / "custom"
    absolute.mkdir()
    unmarked = inspect_build_target(str(absolute), True, dist)
    assert unmarked.is_absolute and not unmarked.has_marker
    assert len(required_confirmations(unmarked)) == 2

    (absolute / SENTINEL_NAME).write_text("x", encoding="utf-8")
    marked = inspect_build_target(str(absolute), True, dist)
    assert len(required_confirmations(marked)) == 1


@pytest.mark.parametrize("name", ["", "..", "a/b", "a\\b"])
def test_project_name_must_be_single_folder(tmp_path, name: str) -> None:
    with pytest.raises(ValidationError):
        inspect_build_target(name, False, tmp_path)


def test_absolute_project_name_requires_advanced_mode(tmp_path) -> None:
    with pytest.raises(ValidationError):
        inspect_build_target(str(tmp_path / "out"), False, tmp_path)


def test_write_bundle_layout(tmp_path) -> None:
    src = _sources(tmp_path)
    fetcher = _FakeFetcher()
    project = StudioProject(
        app_name="Theme Pack",
        steps=[
            DraftCopy(payload_source=str(src / "theme"), payload_rel="theme", dest="themes/misfit"),
            DraftCopy(payload_source="https://example.invalid/logo.png", dest="img/logo.png"),
        ],
    )
    plan = plan_build(project)
    info = inspect_build_target("Bundle", False, tmp_path / "dist")

    out = write_bundle(plan, info, fetcher=fetcher)

    assert (out / SENTINEL_NAME).read_text(encoding="utf-8") == "Misfit Studio output"
    manifest = json.loads((out / "manifests" / "install.manifest.json").read_text(encoding="utf-8"))
    assert manifest["appName"] == "Theme Pack"
    assert [s["src"] for s in manifest["installSteps"]] == ["theme", "logo.png"]
    assert (out / "payloads" / "theme" / "a.css").read_text(encoding="utf-8") == "a {}"
    assert (out / "payloads" / "logo.png").read_bytes() == b"remote"
    assert fetcher.urls == ["https://example.invalid/logo.png"]


def test_write_bundle_refuses_existing_output_without_force(tmp_path) -> None:
    plan = plan_build(StudioProject())
    out = tmp_path / "dist" / "Bundle"
    out.mkdir(parents=True)
    (out / "keep.txt").write_text("keep", encoding="utf-8")
    info = inspect_build_target("Bundle", False, tmp_path / "dist")

    with pytest.raises(BuildError):
        write_bundle(plan, info)
    assert (out / "keep.txt").exists()

    write_bundle(plan, info, force_overwrite=True)
    assert not (out / "keep.txt").exists()
    assert (out / SENTINEL_NAME).exists()


def test_write_bundle_reports_missing_source(tmp_path) -> None:
    project = StudioProject(steps=[DraftCopy(payload_source=str(tmp_path / "nope.css"), dest="x")])
    info = inspect_build_target("Bundle", False, tmp_path / "dist")
    with pytest.raises(BuildError, match="not found"):
        write_bundle(plan_build(project), info)


def test_build_project_declined_overwrite_leaves_output(tmp_path) -> None:
    out = tmp_path / "dist" / "Bundle"
    out.mkdir(parents=True)
    (out / "keep.txt").write_text("keep", encoding="utf-8")
    asked = []

    def decline(prompt) -> bool:
        asked.append(prompt.title)
        return False

    with pytest.raises(Cancelled):
        build_project(StudioProject(), "Bundle", tmp_path / "dist", decline)
    assert asked == ["Overwrite existing build?"]
    assert (out / "keep.txt").exists()


def test_build_project_archives_output(tmp_path) -> None:
    src = _sources(tmp_path)
    project = StudioProject(steps=[DraftCopy(payload_source="theme/a.css", dest="a.css")])

    out = build_project(
        project,
        "Bundle",
        tmp_path / "dist",
        lambda prompt: True,
        search_from=src / "theme",
        archive=True,
    )
    assert (out / "payloads" / "a.css").exists()
    assert (tmp_path / "dist" / "Bundle.zip").is_file()


def test_locate_payload_source_searches_parents(tmp_path) -> None:
    src = _sources(tmp_path)
    deep = src / "x" / "y"
    deep.mkdir(parents=True)
    assert locate_payload_source("block.css", deep) == src / "block.css"
    assert locate_payload_source("missing.css", deep) == Path("missing.css")


def test_resolve_dist_base_falls_back(tmp_path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    fallback = tmp_path / "Documents" / "MisfitStudio" / "dist"

    assert resolve_dist_base(blocker / "dist", fallback) == fallback
    assert fallback.is_dir()


def test_scan_extension_folders(tmp_path) -> None:
    root = tmp_path / "exts"
    for name in ("beta", "Alpha", "gamma"):
        (root / name).mkdir(parents=True)
    (root / "readme.txt").write_text("x", encoding="utf-8")

    drafts = scan_extension_folders(root)
    assert [d.dest for d in drafts] == ["extensions/Alpha", "extensions/beta", "extensions/gamma"]
    assert drafts[0].payload_rel == "extensions/Alpha"

    with pytest.raises(ValidationError):
        scan_extension_folders(tmp_path / "missing")
