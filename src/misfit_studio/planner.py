from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any

import requests

from .drafts import (
    DraftBase64Embed,
    DraftCopy,
    DraftPatchBlock,
    DraftRunCommand,
    DraftSetJsonValue,
    DraftStep,
    StudioProject,
    draft_to_step,
    staged_name,
)
from .errors import BuildError, Cancelled, PayloadCollision, ValidationError
from .fetch import PayloadFetcher, is_remote_source
from .manifest import MANIFEST_FILENAME, Manifest, Step, step_problems, write_manifest
from .progress import ProgressLog
from .utils import can_write_dir, copy_payload, ensure_dir, looks_absolute, normalize_rel_path

LOGGER = logging.getLogger(__name__)

SENTINEL_NAME = ".misfit-studio"
SENTINEL_CONTENT = "Misfit Studio output"
SOURCE_SEARCH_DEPTH = 4


@dataclass(frozen=True)
class PayloadFile:
    source: str
    staged: PurePosixPath


@dataclass(frozen=True)
class BuildPlan:
    manifest: Manifest
    payload_files: tuple[PayloadFile, ...]


@dataclass(frozen=True)
class BuildTargetInfo:
    path: Path
    exists: bool
    has_marker: bool
    is_absolute: bool

    def to_raw(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "exists": self.exists,
            "hasMarker": self.has_marker,
            "isAbsolute": self.is_absolute,
        }


@dataclass(frozen=True)
class ConfirmationPrompt:
    title: str
    message: str


class PayloadSet:
    def __init__(self) -> None:
        self._by_staged: dict[PurePosixPath, str] = {}

    def add(self, rel: str, source: str) -> PurePosixPath:
        """Claim ``rel`` for ``source``; raise on an empty or colliding claim."""
        if not rel.strip():
            raise ValidationError("A payload path cannot be empty.")
        try:
            staged = normalize_rel_path(rel)
        except ValueError as exc:
            raise ValidationError(f"Invalid payload path {rel!r}: {exc}") from exc

        claimed = self._by_staged.get(staged)
        if claimed is not None and claimed != source:
            raise PayloadCollision(
                f"A payload path is already claimed: {staged} ({claimed} vs {source})"
            )
        self._by_staged[staged] = source
        return staged

    def files(self) -> tuple[PayloadFile, ...]:
        return tuple(PayloadFile(source=src, staged=rel) for rel, src in self._by_staged.items())


def _draft_problems(draft: DraftStep) -> list[str]:
    if isinstance(draft, DraftCopy):
        problems = []
        if not draft.payload_source.strip():
            problems.append("copy step is missing a source file or folder")
        if not draft.dest.strip():
            problems.append("copy step is missing a destination path")
        return problems
    if isinstance(draft, DraftPatchBlock):
        if not draft.content_source.strip():
            return ["patch step is missing a content file"]
        return []
    if isinstance(draft, DraftBase64Embed):
        if not draft.input_source.strip():
            return ["base64 embed step is missing the input file"]
        return []
    if isinstance(draft, (DraftSetJsonValue, DraftRunCommand)):
        return []
    raise TypeError(f"Unknown draft: {draft!r}")


def _payload_claim(draft: DraftStep) -> tuple[str, str] | None:
    if isinstance(draft, DraftCopy):
        source = draft.payload_source.strip()
        return staged_name(draft.payload_rel, source), source
    if isinstance(draft, DraftPatchBlock):
        source = draft.content_source.strip()
        return staged_name(draft.content_rel, source), source
    if isinstance(draft, DraftBase64Embed):
        source = draft.input_source.strip()
        return staged_name(draft.input_rel, source), source
    return None


def plan_build(project: StudioProject) -> BuildPlan:
    payloads = PayloadSet()
    steps: list[Step] = []
    problems: list[str] = []
    collided = False

    for i, draft in enumerate(project.steps):
        if not draft.enabled:
            continue
        label = f"steps[{i}] ({draft.kind.value})"

        draft_problems = _draft_problems(draft)
        step: Step | None = None
        try:
            step = draft_to_step(draft)
        except ValidationError as exc:
            draft_problems.append(str(exc))
        if step is not None:
            draft_problems.extend(step_problems(step, project.advanced_mode))
        if step is None or draft_problems:
            problems.extend(f"{label}: {p}" for p in draft_problems)
            continue

        claim = _payload_claim(draft)
        if claim is not None and not (project.advanced_mode and looks_absolute(claim[0])):
            try:
                payloads.add(*claim)
            except PayloadCollision as exc:
                collided = True
                problems.append(f"{label}: {exc}")
                continue
            except ValidationError as exc:
                problems.append(f"{label}: {exc}")
                continue
        steps.append(step)

    try:
        normalize_rel_path(project.payload_dir, allow_current=True)
    except ValueError as exc:
        problems.append(f"payloadDir: {exc}")
    if not project.app_name.strip():
        problems.append("appName cannot be empty")

    if problems:
        error_cls = PayloadCollision if collided else ValidationError
        raise error_cls.from_problems("Build validation failed", problems)

    manifest = Manifest(
        app_name=project.app_name,
        version=project.version,
        publisher=project.publisher,
        description=project.description,
        payload_dir=project.payload_dir.strip() or ".",
        steps=tuple(steps),
        logo_path=project.logo_path,
        advanced_mode=project.advanced_mode,
    )
    return BuildPlan(manifest=manifest, payload_files=payloads.files())


def validate_project_name(name: str) -> str:
    trimmed = name.strip()
    if not trimmed:
        raise ValidationError("Project name cannot be empty")
    if trimmed in (".", ".."):
        raise ValidationError(f"Project name cannot be {trimmed!r}")
    if "/" in trimmed or "\\" in trimmed or Path(trimmed).is_absolute() or ":" in trimmed:
        raise ValidationError("Project name must be a single relative folder name")
    return trimmed


def resolve_dist_base(preferred: Path, fallback: Path) -> Path:
    """Return the first writable of ``preferred`` and ``fallback``."""
    for candidate in (preferred, fallback):
        try:
            ensure_dir(candidate)
        except OSError as exc:
            LOGGER.warning("Cannot create dist directory %s: %s", candidate, exc)
            continue
        if can_write_dir(candidate):
            return candidate
        LOGGER.warning("Dist directory is not writable: %s", candidate)
    raise BuildError(f"No writable dist directory ({preferred} or {fallback})")


def resolve_output(project_name: str, advanced_mode: bool, dist_base: Path) -> tuple[Path, bool]:
    if advanced_mode and Path(project_name.strip()).is_absolute():
        output = Path(project_name.strip())
        if not output.name:
            raise ValidationError("Absolute output path must include a folder name")
        return output, True
    return dist_base / validate_project_name(project_name), False


def inspect_build_target(project_name: str, advanced_mode: bool, dist_base: Path) -> BuildTargetInfo:
    output, is_absolute = resolve_output(project_name, advanced_mode, dist_base)
    return BuildTargetInfo(
        path=output,
        exists=output.exists(),
        has_marker=(output / SENTINEL_NAME).exists(),
        is_absolute=is_absolute,
    )


def required_confirmations(info: BuildTargetInfo) -> list[ConfirmationPrompt]:
    if not info.exists:
        return []
    if info.is_absolute and not info.has_marker:
        return [
            ConfirmationPrompt(
                "No marker found",
                f"The output folder exists but does not contain a {SENTINEL_NAME} marker:\n"
                f"{info.path}\n\nDo you want to continue?",
            ),
            ConfirmationPrompt(
                "Delete existing folder?",
                "This will delete the entire folder and its contents before building "
                "the new installer. Continue?",
            ),
        ]
    return [
        ConfirmationPrompt(
            "Overwrite existing build?",
            f"The output folder already exists:\n{info.path}\n\nDo you want to replace it?",
        )
    ]


def confirm_overwrite(info: BuildTargetInfo, confirm: Callable[[ConfirmationPrompt], bool]) -> bool:
    """Ask every required prompt in order; the first "no" stops and returns False."""
    for prompt in required_confirmations(info):
        if not confirm(prompt):
            return False
    return True


def locate_payload_source(source: str, search_from: Path | None = None) -> Path:
    candidate = Path(source)
    if candidate.is_absolute():
        return candidate

    base = (search_from or Path.cwd()).absolute()
    bases = [base, *list(base.parents)[:SOURCE_SEARCH_DEPTH]]
    for root in bases:
        joined = root / source
        if joined.exists():
            return joined
    return candidate


def write_bundle(
    plan: BuildPlan,
    info: BuildTargetInfo,
    *,
    force_overwrite: bool = False,
    fetcher: PayloadFetcher | None = None,
    search_from: Path | None = None,
    progress: ProgressLog | None = None,
) -> Path:
    progress = progress or ProgressLog()
    output = info.path

    if output.exists():
        if not force_overwrite:
            if info.is_absolute and not (output / SENTINEL_NAME).exists():
                raise BuildError(
                    f"Refusing to overwrite {output} (missing {SENTINEL_NAME} marker). "
                    f"Create the folder and add {SENTINEL_NAME} to confirm."
                )
            raise BuildError(f"Output folder already exists: {output}")
        progress.info(f"Removing existing output {output}")
        shutil.rmtree(output)

    ensure_dir(output)
    (output / SENTINEL_NAME).write_text(SENTINEL_CONTENT, encoding="utf-8")

    manifest_path = output / "manifests" / MANIFEST_FILENAME
    write_manifest(manifest_path, plan.manifest)
    progress.info(f"Manifest written to {manifest_path}")

    payload_root = output / normalize_rel_path(plan.manifest.payload_dir, allow_current=True)
    ensure_dir(payload_root)
    for payload in plan.payload_files:
        dest = payload_root / payload.staged
        if is_remote_source(payload.source):
            fetcher = fetcher or PayloadFetcher()
            try:
                fetcher.download(payload.source, dest)
            except (requests.RequestException, OSError) as exc:
                raise BuildError(f"Failed to download payload {payload.source}: {exc}") from exc
        else:
            src = locate_payload_source(payload.source, search_from)
            if not src.exists():
                raise BuildError(f"Payload source not found: {src}")
            try:
                copy_payload(src, dest)
            except OSError as exc:
                raise BuildError(f"Failed to copy payload {src}: {exc}") from exc
        progress.info(f"Staged payload {payload.staged}")

    progress.info(f"Project built successfully at: {output}")
    return output


def build_project(
    project: StudioProject,
    project_name: str,
    dist_base: Path,
    confirm: Callable[[ConfirmationPrompt], bool],
    *,
    fetcher: PayloadFetcher | None = None,
    search_from: Path | None = None,
    progress: ProgressLog | None = None,
    archive: bool = False,
) -> Path:
    progress = progress or ProgressLog()
    progress.info("Planning build")
    plan = plan_build(project)
    info = inspect_build_target(project_name, project.advanced_mode, dist_base)

    if not confirm_overwrite(info, confirm):
        progress.warning("Build cancelled by user.")
        raise Cancelled(f"Build into {info.path} cancelled")

    output = write_bundle(
        plan,
        info,
        force_overwrite=info.exists,
        fetcher=fetcher,
        search_from=search_from,
        progress=progress,
    )
    if archive:
        zipped = shutil.make_archive(str(output), "zip", root_dir=output)
        progress.info(f"Bundle archived at {zipped}")
    return output


def scan_extension_folders(root: Path, dest_template: str = "extensions/{name}") -> list[DraftCopy]:
    """One copy draft per subfolder of ``root``, sorted case-insensitively."""
    if not root.exists():
        raise ValidationError(f"Folder not found: {root}")
    if not root.is_dir():
        raise ValidationError(f"Selected path is not a folder: {root}")

    folders = sorted((p for p in root.iterdir() if p.is_dir()), key=lambda p: p.name.lower())
    return [
        DraftCopy(
            payload_source=str(folder),
            payload_rel=f"extensions/{folder.name}",
            dest=dest_template.format(name=folder.name),
        )
        for folder in folders
    ]
