from __future__ import annotations

import json

from misfit_studio.__main__ import main
from misfit_studio.drafts import DraftCopy, DraftSetJsonValue, StudioProject, load_project, save_project
from misfit_studio.manifest import ValueKind


def _write_project(tmp_path) -> tuple:
    src = tmp_path / "src"
    (src / "theme").mkdir(parents=True)
    (src / "theme" / "a.css").write_text("a {}", encoding="utf-8")
    project = StudioProject(
        app_name="Theme Pack",
        steps=[
            DraftCopy(payload_source=str(src / "theme" / "a.css"), payload_rel="theme/a.css", dest="out/a.css"),
            DraftSetJsonValue(file="conf.json", key_path="theme", value_type=ValueKind.STRING, value_raw="dark"),
        ],
    )
    path = tmp_path / "project.json"
    save_project(path, project)
    return path, src


def test_build_install_restore_flow(tmp_path, monkeypatch) -> None:
    project_path, _ = _write_project(tmp_path)
    dist = tmp_path / "dist"
    documents = tmp_path / "Documents"
    target = tmp_path / "target"
    target.mkdir()
    (target / "conf.json").write_text('{"theme": "light"}', encoding="utf-8")
    monkeypatch.setenv("MISFIT_DOCUMENTS_DIR", str(documents))
    monkeypatch.setenv("MISFIT_COMMAND_CWD", str(tmp_path))

    code = main(["build", str(project_path), "--name", "Bundle", "--dist-dir", str(dist), "--yes"])
    assert code == 0
    bundle = dist / "Bundle"
    assert (bundle / "payloads" / "theme" / "a.css").is_file()

    code = main(
        [
            "install",
            "--manifest",
            str(bundle / "manifests" / "install.manifest.json"),
            "--install-root",
            str(target),
            "--yes",
        ]
    )
    assert code == 0
    assert (target / "out" / "a.css").read_text(encoding="utf-8") == "a {}"
    assert json.loads((target / "conf.json").read_text(encoding="utf-8")) == {"theme": "dark"}

    code = main(["restore", "--app", "Theme Pack", "--yes"])
    assert code == 0
    assert json.loads((target / "conf.json").read_text(encoding="utf-8")) == {"theme": "light"}


def test_install_invalid_manifest_exits_2(tmp_path, monkeypatch) -> None:
    manifest = tmp_path / "install.manifest.json"
    manifest.write_text(json.dumps({"appName": "", "payloadDir": "p", "installSteps": []}), encoding="utf-8")
    monkeypatch.setenv("MISFIT_COMMAND_CWD", str(tmp_path))

    assert main(["install", "--manifest", str(manifest), "--yes"]) == 2


def test_restore_without_backups_exits_1(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MISFIT_DOCUMENTS_DIR", str(tmp_path / "Documents"))
    assert main(["restore", "--app", "Nothing", "--yes"]) == 1


def test_declined_restore_exits_3(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MISFIT_DOCUMENTS_DIR", str(tmp_path / "Documents"))
    monkeypatch.setattr("builtins.input", lambda prompt: "n")
    assert main(["restore", "--app", "Nothing"]) == 3


def test_inspect_prints_target_info(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "dist" / "Bundle").mkdir(parents=True)

    assert main(["inspect", "Bundle", "--dist-dir", str(tmp_path / "dist")]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["exists"] is True
    assert payload["hasMarker"] is False
    assert payload["confirmations"] == ["Overwrite existing build?"]


def test_scan_adds_copy_steps(tmp_path) -> None:
    project_path, _ = _write_project(tmp_path)
    exts = tmp_path / "exts"
    (exts / "one").mkdir(parents=True)
    (exts / "two").mkdir()

    assert main(["scan", str(exts), str(project_path)]) == 0
    steps = load_project(project_path).steps
    assert [s.dest for s in steps[-2:]] == ["extensions/one", "extensions/two"]


def test_mode_command(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("MISFIT_MODE", raising=False)
    monkeypatch.delenv("MISFIT_STUDIO", raising=False)

    assert main(["mode"]) == 0
    assert capsys.readouterr().out.strip() == "studio"
    assert main(["mode", "--installer"]) == 0
    assert capsys.readouterr().out.strip() == "installer"


def test_import_resolves_sources_from_the_bundle(tmp_path, monkeypatch) -> None:
    project_path, _ = _write_project(tmp_path)
    dist = tmp_path / "dist"
    monkeypatch.chdir(tmp_path)
    assert main(["build", str(project_path), "--name", "Bundle", "--dist-dir", str(dist), "--yes"]) == 0

    bundle = dist / "Bundle"
    imported = tmp_path / "imported.json"
    assert main(["import", str(bundle / "manifests" / "install.manifest.json"), str(imported)]) == 0

    steps = load_project(imported).steps
    assert steps[0].payload_source == str(bundle.resolve() / "payloads" / "theme" / "a.css")
    assert steps[0].payload_rel == "theme/a.css"


def test_install_with_non_utf8_payload_exits_1(tmp_path, monkeypatch) -> None:
    bundle = tmp_path / "bundle"
    (bundle / "payloads").mkdir(parents=True)
    (bundle / "payloads" / "block.css").write_bytes(b"caf\xe9 {}")
    (bundle / "app.css").write_text("body {}\n", encoding="utf-8")
    manifest = bundle / "install.manifest.json"
    manifest.write_text(
        json.dumps(
            {
                "appName": "Latin",
                "version": "1",
                "publisher": "p",
                "description": "d",
                "payloadDir": "payloads",
                "installSteps": [
                    {
                        "type": "patchBlock",
                        "file": "app.css",
                        "startMarker": "/* S */",
                        "endMarker": "/* E */",
                        "contentFile": "block.css",
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("MISFIT_DOCUMENTS_DIR", str(tmp_path / "Documents"))
    monkeypatch.setenv("MISFIT_COMMAND_CWD", str(tmp_path))

    assert main(["install", "--manifest", str(manifest), "--yes"]) == 1
    assert (bundle / "app.css").read_text(encoding="utf-8") == "body {}\n"
