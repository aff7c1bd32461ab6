from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePath
from typing import Any, ClassVar, Union

from .config import default_documents_dir
from .errors import ValidationError
from .manifest import (
    Base64EmbedStep,
    CopyStep,
    JsonValue,
    Manifest,
    PatchBlockStep,
    RunCommandStep,
    SetJsonValueStep,
    Step,
    StepKind,
    ValueKind,
)
from .utils import home_dir, looks_absolute, normalize_rel_path

LOGGER = logging.getLogger(__name__)

DEFAULT_PAYLOAD_DIR = "payloads"
PAYLOAD_SEARCH_DEPTH = 3
PAYLOAD_SKIP_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        "target",
        "dist",
        ".cache",
        "appdata",
        "windows",
        "program files",
        "program files (x86)",
    }
)


@dataclass
class DraftCopy:
    kind: ClassVar[StepKind] = StepKind.COPY
    payload_source: str = ""
    payload_rel: str = ""
    dest: str = ""
    enabled: bool = True


@dataclass
class DraftPatchBlock:
    kind: ClassVar[StepKind] = StepKind.PATCH_BLOCK
    file: str = ""
    start_marker: str = ""
    end_marker: str = ""
    content_source: str = ""
    content_rel: str = ""
    replacements: list[tuple[str, str]] = field(default_factory=list)
    enabled: bool = True


@dataclass
class DraftSetJsonValue:
    kind: ClassVar[StepKind] = StepKind.SET_JSON_VALUE
    file: str = ""
    key_path: str = ""
    value_type: ValueKind = ValueKind.STRING
    value_raw: str = ""
    value_bool: bool = False
    enabled: bool = True


@dataclass
class DraftBase64Embed:
    kind: ClassVar[StepKind] = StepKind.BASE64_EMBED
    file: str = ""
    placeholder: str = ""
    input_source: str = ""
    input_rel: str = ""
    enabled: bool = True


@dataclass
class DraftRunCommand:
    kind: ClassVar[StepKind] = StepKind.RUN_COMMAND
    command: str = ""
    args: str = ""
    enabled: bool = True


DraftStep = Union[DraftCopy, DraftPatchBlock, DraftSetJsonValue, DraftBase64Embed, DraftRunCommand]


@dataclass
class StudioProject:
    app_name: str = "My App"
    version: str = "1.0.0"
    publisher: str = "Misfit"
    description: str = "Created with Misfit Studio"
    advanced_mode: bool = False
    payload_dir: str = DEFAULT_PAYLOAD_DIR
    steps: list[DraftStep] = field(default_factory=list)
    logo_path: str | None = None

    @staticmethod
    def from_raw(raw: dict[str, Any]) -> "StudioProject":
        steps_raw = raw.get("steps")
        steps = [d for d in (draft_from_raw(s) for s in steps_raw or []) if d is not None]
        return StudioProject(
            app_name=_str(raw.get("appName"), "My App"),
            version=_str(raw.get("version"), "1.0.0"),
            publisher=_str(raw.get("publisher"), "Misfit"),
            description=_str(raw.get("description"), "Created with Misfit Studio"),
            advanced_mode=bool(raw.get("advancedMode", False)),
            payload_dir=_str(raw.get("payloadDir"), DEFAULT_PAYLOAD_DIR),
            steps=steps,
            logo_path=raw.get("logoPath") if isinstance(raw.get("logoPath"), str) else None,
        )

    def to_raw(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "appName": self.app_name,
            "version": self.version,
            "publisher": self.publisher,
            "description": self.description,
            "advancedMode": self.advanced_mode,
            "payloadDir": self.payload_dir,
            "steps": [draft_to_raw(s) for s in self.steps],
        }
        if self.logo_path:
            payload["logoPath"] = self.logo_path
        return payload


def load_project(path: Path) -> StudioProject:
    raw = json.loads(path.read_text(encoding="utf-8-sig"))
    if not isinstance(raw, dict):
        raise ValidationError(f"Project file {path} must contain a JSON object")
    return StudioProject.from_raw(raw)


def save_project(path: Path, project: StudioProject) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(project.to_raw(), ensure_ascii=False, indent=2), encoding="utf-8")


def _str(value: Any, default: str = "") -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return default
    return str(value)


def to_base_name(path: str) -> str:
    cleaned = path.rstrip("/\\")
    base = cleaned.replace("\\", "/").split("/")[-1]
    return base or "file"


def staged_name(rel: str, source: str) -> str:
    return rel.strip() or (to_base_name(source.strip()) if source.strip() else "")


def split_args(args: str) -> tuple[str, ...]:
    return tuple(a.strip() for a in args.split(",") if a.strip())


def resolve_payload_source(payload_dir: str | None, rel: str | None) -> str:
    cleaned = (rel or "").strip()
    if not payload_dir or not cleaned:
        return ""
    if looks_absolute(cleaned):
        return cleaned
    return str(PurePath(payload_dir.rstrip("/\\")) / cleaned.lstrip("/\\"))


def draft_from_raw(raw: Any) -> DraftStep | None:
    if not isinstance(raw, dict):
        return None
    enabled = raw.get("enabled") is not False
    kind = raw.get("type")

    if kind == StepKind.COPY.value:
        return DraftCopy(
            payload_source=_str(raw.get("payloadSource")),
            payload_rel=_str(raw.get("payloadRel", raw.get("src"))),
            dest=_str(raw.get("dest")),
            enabled=enabled,
        )
    if kind == StepKind.PATCH_BLOCK.value:
        reps_raw = raw.get("replacements")
        pairs: list[tuple[str, str]] = []
        if isinstance(reps_raw, list):
            for pair in reps_raw:
                if isinstance(pair, dict):
                    pairs.append((_str(pair.get("key")), _str(pair.get("value"))))
        elif isinstance(reps_raw, dict):
            pairs = [(str(k), _str(v)) for k, v in reps_raw.items()]
        return DraftPatchBlock(
            file=_str(raw.get("file")),
            start_marker=_str(raw.get("startMarker")),
            end_marker=_str(raw.get("endMarker")),
            content_source=_str(raw.get("contentSource")),
            content_rel=_str(raw.get("contentRel", raw.get("contentFile"))),
            replacements=pairs,
            enabled=enabled,
        )
    if kind == StepKind.SET_JSON_VALUE.value:
        try:
            declared = ValueKind(raw.get("valueType") or ValueKind.STRING.value)
        except ValueError:
            declared = ValueKind.STRING
        if "valueRaw" in raw or "valueBool" in raw or ("valueType" in raw and "value" not in raw):
            value_type = declared
            value_raw = _str(raw.get("valueRaw"))
            value_bool = bool(raw.get("valueBool"))
        elif raw.get("valueType") is None:
            value_type, value_raw, value_bool = value_to_draft(JsonValue.infer(raw.get("value")))
        else:
            value_type, value_raw, value_bool = value_to_draft(JsonValue(declared, raw.get("value")))
        return DraftSetJsonValue(
            file=_str(raw.get("file")),
            key_path=_str(raw.get("keyPath")),
            value_type=value_type,
            value_raw=value_raw,
            value_bool=value_bool,
            enabled=enabled,
        )
    if kind == StepKind.BASE64_EMBED.value:
        return DraftBase64Embed(
            file=_str(raw.get("file")),
            placeholder=_str(raw.get("placeholder")),
            input_source=_str(raw.get("inputSource")),
            input_rel=_str(raw.get("inputRel", raw.get("inputFile"))),
            enabled=enabled,
        )
    if kind == StepKind.RUN_COMMAND.value:
        args = raw.get("args")
        if isinstance(args, list):
            args = ", ".join(str(a) for a in args)
        return DraftRunCommand(command=_str(raw.get("command")), args=_str(args), enabled=enabled)

    LOGGER.warning("Ignoring draft step with unknown type %r", kind)
    return None


def draft_to_raw(draft: DraftStep) -> dict[str, Any]:
    base: dict[str, Any] = {"type": draft.kind.value, "enabled": draft.enabled}
    if isinstance(draft, DraftCopy):
        base.update(payloadSource=draft.payload_source, payloadRel=draft.payload_rel, dest=draft.dest)
    elif isinstance(draft, DraftPatchBlock):
        base.update(
            file=draft.file,
            startMarker=draft.start_marker,
            endMarker=draft.end_marker,
            contentSource=draft.content_source,
            contentRel=draft.content_rel,
            replacements=[{"key": k, "value": v} for k, v in draft.replacements],
        )
    elif isinstance(draft, DraftSetJsonValue):
        base.update(
            file=draft.file,
            keyPath=draft.key_path,
            valueType=draft.value_type.value,
            valueRaw=draft.value_raw,
            valueBool=draft.value_bool,
        )
    elif isinstance(draft, DraftBase64Embed):
        base.update(
            file=draft.file,
            placeholder=draft.placeholder,
            inputSource=draft.input_source,
            inputRel=draft.input_rel,
        )
    elif isinstance(draft, DraftRunCommand):
        base.update(command=draft.command, args=draft.args)
    else:
        raise TypeError(f"Unknown draft: {draft!r}")
    return base


def value_to_draft(value: JsonValue) -> tuple[ValueKind, str, bool]:
    if value.kind is ValueKind.BOOLEAN:
        return ValueKind.BOOLEAN, "", bool(value.value)
    if value.kind is ValueKind.NUMBER:
        return ValueKind.NUMBER, json.dumps(value.value), False
    if value.kind is ValueKind.STRING:
        return ValueKind.STRING, str(value.value), False
    return ValueKind.JSON, json.dumps(value.value, indent=2), False


def is_blank(draft: DraftStep) -> bool:
    if isinstance(draft, DraftCopy):
        return not staged_name(draft.payload_rel, draft.payload_source) and not draft.dest.strip()
    if isinstance(draft, DraftPatchBlock):
        return not (draft.file.strip() or draft.content_rel.strip() or draft.content_source.strip())
    if isinstance(draft, DraftSetJsonValue):
        return not (draft.file.strip() or draft.key_path.strip() or draft.value_raw.strip())
    if isinstance(draft, DraftBase64Embed):
        return not (draft.file.strip() or draft.input_rel.strip() or draft.input_source.strip())
    if isinstance(draft, DraftRunCommand):
        return not (draft.command.strip() or draft.args.strip())
    raise TypeError(f"Unknown draft: {draft!r}")


def draft_to_step(draft: DraftStep) -> Step:
    """Convert one draft into a manifest step; raise ValidationError on bad values."""
    if isinstance(draft, DraftCopy):
        return CopyStep(src=staged_name(draft.payload_rel, draft.payload_source), dest=draft.dest.strip())
    if isinstance(draft, DraftPatchBlock):
        replacements = {k: v for k, v in draft.replacements if k.strip()}
        return PatchBlockStep(
            file=draft.file.strip(),
            start_marker=draft.start_marker.strip(),
            end_marker=draft.end_marker.strip(),
            content_file=staged_name(draft.content_rel, draft.content_source),
            replacements=replacements,
        )
    if isinstance(draft, DraftSetJsonValue):
        return SetJsonValueStep(
            file=draft.file.strip(),
            key_path=draft.key_path.strip(),
            value=JsonValue.parse(draft.value_type, draft.value_raw, draft.value_bool),
        )
    if isinstance(draft, DraftBase64Embed):
        return Base64EmbedStep(
            file=draft.file.strip(),
            placeholder=draft.placeholder.strip(),
            input_file=staged_name(draft.input_rel, draft.input_source),
        )
    if isinstance(draft, DraftRunCommand):
        return RunCommandStep(command=draft.command.strip(), args=split_args(draft.args))
    raise TypeError(f"Unknown draft: {draft!r}")


def step_to_draft(step: Step, payload_dir: str | None = None) -> DraftStep:
    if isinstance(step, CopyStep):
        return DraftCopy(
            payload_source=resolve_payload_source(payload_dir, step.src),
            payload_rel=step.src,
            dest=step.dest,
        )
    if isinstance(step, PatchBlockStep):
        return DraftPatchBlock(
            file=step.file,
            start_marker=step.start_marker,
            end_marker=step.end_marker,
            content_source=resolve_payload_source(payload_dir, step.content_file),
            content_rel=step.content_file,
            replacements=list(step.replacements.items()),
        )
    if isinstance(step, SetJsonValueStep):
        value_type, value_raw, value_bool = value_to_draft(step.value)
        return DraftSetJsonValue(
            file=step.file,
            key_path=step.key_path,
            value_type=value_type,
            value_raw=value_raw,
            value_bool=value_bool,
        )
    if isinstance(step, Base64EmbedStep):
        return DraftBase64Embed(
            file=step.file,
            placeholder=step.placeholder,
            input_source=resolve_payload_source(payload_dir, step.input_file),
            input_rel=step.input_file,
        )
    if isinstance(step, RunCommandStep):
        return DraftRunCommand(command=step.command, args=", ".join(step.args))
    raise TypeError(f"Unknown step: {step!r}")


def export_manifest(project: StudioProject) -> Manifest:
    """Build the manifest for the enabled, non-blank drafts of ``project``."""
    steps: list[Step] = []
    problems: list[str] = []
    for i, draft in enumerate(project.steps):
        if not draft.enabled or is_blank(draft):
            continue
        try:
            steps.append(draft_to_step(draft))
        except ValidationError as exc:
            problems.append(f"steps[{i}] ({draft.kind.value}): {exc}")
    if problems:
        raise ValidationError.from_problems("Project cannot be exported", problems)

    return Manifest(
        app_name=project.app_name,
        version=project.version,
        publisher=project.publisher,
        description=project.description,
        payload_dir=project.payload_dir.strip() or ".",
        steps=tuple(steps),
        logo_path=project.logo_path,
        advanced_mode=project.advanced_mode,
    )


def import_manifest(manifest: Manifest, bases: Iterable[Path] | None = None) -> StudioProject:
    payload_dir = manifest.payload_dir or DEFAULT_PAYLOAD_DIR
    found = find_payload_root(payload_dir, bases)
    source_base = str(found) if found is not None else payload_dir
    return StudioProject(
        app_name=manifest.app_name,
        version=manifest.version,
        publisher=manifest.publisher,
        description=manifest.description,
        advanced_mode=manifest.advanced_mode,
        payload_dir=payload_dir,
        steps=[step_to_draft(s, source_base) for s in manifest.steps],
        logo_path=manifest.logo_path,
    )


def default_search_bases(env: Mapping[str, str] | None = None) -> list[Path]:
    env = os.environ if env is None else env
    bases = [Path.cwd(), Path(sys.argv[0]).absolute().parent, default_documents_dir(env)]
    home = home_dir(env)
    if home is not None:
        bases.append(home)
    if env.get("OneDrive"):
        bases.append(Path(env["OneDrive"]))
    return bases


def _search(base: Path, payload_dir: PurePath, depth: int) -> Path | None:
    candidate = base / payload_dir
    if candidate.exists():
        return candidate
    if depth == 0:
        return None
    try:
        children = sorted(p for p in base.iterdir() if p.is_dir())
    except OSError:
        return None
    for child in children:
        if child.name.lower() in PAYLOAD_SKIP_DIRS:
            continue
        found = _search(child, payload_dir, depth - 1)
        if found is not None:
            return found
    return None


def find_payload_root(
    payload_dir: str,
    bases: Iterable[Path] | None = None,
    depth: int = PAYLOAD_SEARCH_DEPTH,
) -> Path | None:
    """Look for ``payload_dir`` under each base, descending up to ``depth`` folders.

    Bases are tried in order and compared case-insensitively; build and
    system folders are never descended into. Returns None when the payload
    directory is the bundle root itself or cannot be found.
    """
    try:
        rel = normalize_rel_path(payload_dir, allow_current=True)
    except ValueError:
        return None
    if str(rel) == ".":
        return None

    seen: set[str] = set()
    for base in default_search_bases() if bases is None else bases:
        key = str(base).lower()
        if key in seen:
            continue
        seen.add(key)
        found = _search(base, rel, depth)
        if found is not None:
            LOGGER.info("Found payload directory %s", found)
            return found
    return None
