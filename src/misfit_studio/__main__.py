from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from .backup import BackupManager
from .config import AppMode, Settings, detect_mode
from .drafts import default_search_bases, import_manifest, load_project, save_project
from .errors import Cancelled, MisfitError, ValidationError
from .executor import ExecutorConfig, install
from .fetch import PayloadFetcher
from .manifest import find_manifest, load_manifest
from .planner import (
    ConfirmationPrompt,
    build_project,
    inspect_build_target,
    required_confirmations,
    resolve_dist_base,
    scan_extension_folders,
)
from .progress import ProgressLog
from .restore import restore
from .utils import normalize_rel_path

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_CANCELLED = 3


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--documents-dir",
        default=None,
        help="Documents folder holding MisfitBackups. Defaults to MISFIT_DOCUMENTS_DIR or ~/Documents.",
    )
    parser.add_argument("--yes", action="store_true", help="Answer yes to every confirmation.")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="misfit_studio",
        description="Build and run manifest-driven installers with automatic backups.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_install = sub.add_parser("install", help="Run the steps of an install manifest.")
    p_install.add_argument(
        "--manifest",
        default=None,
        help="Manifest path. Defaults to manifests/install.manifest.json or install.manifest.json.",
    )
    p_install.add_argument(
        "--install-root",
        default=None,
        help="Root for relative targets. Defaults to MISFIT_INSTALL_ROOT or the bundle folder.",
    )
    p_install.add_argument(
        "--command-cwd",
        default=None,
        help="Working directory for runCommand steps. Defaults to MISFIT_COMMAND_CWD or the cwd.",
    )
    _add_common(p_install)

    p_restore = sub.add_parser("restore", help="Restore the most recent backup.")
    p_restore.add_argument(
        "--app",
        default=None,
        help="App name whose backups to restore. Defaults to the bundled manifest's appName.",
    )
    _add_common(p_restore)

    p_inspect = sub.add_parser("inspect", help="Show the build target for a project name.")
    p_inspect.add_argument("name", help="Project folder name (absolute path with --advanced).")
    p_inspect.add_argument("--advanced", action="store_true", help="Allow an absolute output path.")
    p_inspect.add_argument("--dist-dir", default=None, help="Dist base. Defaults to MISFIT_DIST_DIR or ./dist.")
    _add_common(p_inspect)

    p_build = sub.add_parser("build", help="Build an installer bundle from a studio project file.")
    p_build.add_argument("project", help="Studio project JSON file.")
    p_build.add_argument("--name", default=None, help="Output folder name. Defaults to the app name.")
    p_build.add_argument("--dist-dir", default=None, help="Dist base. Defaults to MISFIT_DIST_DIR or ./dist.")
    p_build.add_argument("--archive", action="store_true", help="Also write <output>.zip.")
    _add_common(p_build)

    p_scan = sub.add_parser("scan", help="Add one copy step per subfolder of a folder to a project.")
    p_scan.add_argument("folder", help="Folder whose subfolders are extensions.")
    p_scan.add_argument("project", help="Studio project JSON file to update.")
    p_scan.add_argument(
        "--dest",
        default="extensions/{name}",
        help="Destination template; {name} is the subfolder name.",
    )

    p_import = sub.add_parser("import", help="Create a studio project file from an install manifest.")
    p_import.add_argument("manifest", help="Install manifest to import.")
    p_import.add_argument("project", help="Studio project JSON file to write.")

    p_mode = sub.add_parser("mode", help="Print the mode the application would start in.")
    forced = p_mode.add_mutually_exclusive_group()
    forced.add_argument("--studio", action="store_const", const=AppMode.STUDIO.value, dest="forced")
    forced.add_argument("--installer", action="store_const", const=AppMode.INSTALLER.value, dest="forced")
    return parser


def _ask(question: str, assume_yes: bool) -> bool:
    if assume_yes:
        LOGGER.info("Auto-confirmed: %s", question.splitlines()[0])
        return True
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _bundle_root(manifest_path: Path) -> Path:
    parent = manifest_path.parent
    return parent.parent if parent.name == "manifests" else parent


def _settings(args: argparse.Namespace) -> Settings:
    return Settings.from_sources(
        cli_documents_dir=getattr(args, "documents_dir", None),
        cli_install_root=getattr(args, "install_root", None),
        cli_command_cwd=getattr(args, "command_cwd", None),
        cli_dist_dir=getattr(args, "dist_dir", None),
        assume_yes=getattr(args, "yes", False),
    )


def _cmd_install(args: argparse.Namespace) -> int:
    settings = _settings(args)
    manifest_path = Path(args.manifest).resolve() if args.manifest else find_manifest(Path.cwd())
    if manifest_path is None:
        raise ValidationError("No install.manifest.json found; pass --manifest")

    manifest = load_manifest(manifest_path)
    bundle = _bundle_root(manifest_path)
    payload_root = bundle / normalize_rel_path(manifest.payload_dir, allow_current=True)
    LOGGER.info("Loaded manifest for %s %s", manifest.app_name, manifest.version)

    config = ExecutorConfig(
        install_root=settings.install_root or bundle,
        payload_root=payload_root,
        command_cwd=settings.command_cwd,
        backup_manager=BackupManager.for_app(settings.documents_dir, manifest.app_name),
        progress=ProgressLog(),
        confirm=lambda prompt: _ask(prompt, settings.assume_yes),
    )
    report = install(manifest, config)
    LOGGER.info(
        "Applied %s step(s), skipped %s; backup: %s",
        report.steps_run,
        report.skipped,
        report.backup_dir or "none",
    )
    return EXIT_OK


def _cmd_restore(args: argparse.Namespace) -> int:
    settings = _settings(args)
    app_name = args.app
    if app_name is None:
        manifest_path = find_manifest(Path.cwd())
        if manifest_path is not None:
            app_name = load_manifest(manifest_path).app_name

    if not _ask(f"Restore the latest backup for {app_name or 'any application'}?", settings.assume_yes):
        raise Cancelled("Restore cancelled by user")

    result = restore(app_name, settings.documents_dir, ProgressLog())
    LOGGER.info("Restored %s path(s) from %s", len(result.restored), result.backup_dir)
    return EXIT_OK


def _cmd_inspect(args: argparse.Namespace) -> int:
    settings = _settings(args)
    dist_base = resolve_dist_base(settings.dist_dir, settings.dist_fallback)
    info = inspect_build_target(args.name, args.advanced, dist_base)
    payload = info.to_raw()
    payload["confirmations"] = [p.title for p in required_confirmations(info)]
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return EXIT_OK


def _cmd_build(args: argparse.Namespace) -> int:
    settings = _settings(args)
    project_path = Path(args.project).resolve()
    project = load_project(project_path)
    dist_base = resolve_dist_base(settings.dist_dir, settings.dist_fallback)

    def confirm(prompt: ConfirmationPrompt) -> bool:
        return _ask(f"{prompt.title}\n{prompt.message}", settings.assume_yes)

    output = build_project(
        project,
        args.name or project.app_name,
        dist_base,
        confirm,
        fetcher=PayloadFetcher.from_settings(settings),
        search_from=project_path.parent,
        progress=ProgressLog(),
        archive=args.archive,
    )
    LOGGER.info("Bundle ready at %s", output)
    return EXIT_OK


def _cmd_scan(args: argparse.Namespace) -> int:
    project_path = Path(args.project).resolve()
    project = load_project(project_path)
    drafts = scan_extension_folders(Path(args.folder).resolve(), args.dest)
    project.steps.extend(drafts)
    save_project(project_path, project)
    LOGGER.info("Added %s copy step(s) to %s", len(drafts), project_path)
    return EXIT_OK


def _cmd_import(args: argparse.Namespace) -> int:
    manifest_path = Path(args.manifest).resolve()
    manifest = load_manifest(manifest_path)
    bases = [_bundle_root(manifest_path), *default_search_bases()]
    project = import_manifest(manifest, bases)
    project_path = Path(args.project).resolve()
    save_project(project_path, project)
    LOGGER.info("Imported %s step(s) into %s", len(project.steps), project_path)
    return EXIT_OK


def _cmd_mode(args: argparse.Namespace) -> int:
    print(detect_mode(args.forced).value)
    return EXIT_OK


COMMANDS = {
    "install": _cmd_install,
    "restore": _cmd_restore,
    "inspect": _cmd_inspect,
    "build": _cmd_build,
    "scan": _cmd_scan,
    "import": _cmd_import,
    "mode": _cmd_mode,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    try:
        return COMMANDS[args.command](args)
    except Cancelled as exc:
        LOGGER.warning("%s", exc)
        return EXIT_CANCELLED
    except ValueError as exc:
        LOGGER.error("Invalid input: %s", exc)
        return EXIT_INVALID
    except MisfitError as exc:
        LOGGER.error("%s", exc)
        return EXIT_FAILED
    except OSError as exc:
        LOGGER.exception("Unexpected I/O failure: %s", exc)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
