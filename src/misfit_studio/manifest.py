from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Union

from .errors import MalformedKeyPath, StepIOError, ValidationError
from .key_path import split_key_path
from .utils import looks_absolute, normalize_rel_path

LOGGER = logging.getLogger(__name__)

MANIFEST_FILENAME = "install.manifest.json"


class StepKind(str, Enum):
    COPY = "copy"
    PATCH_BLOCK = "patchBlock"
    SET_JSON_VALUE = "setJsonValue"
    BASE64_EMBED = "base64Embed"
    RUN_COMMAND = "runCommand"


class ValueKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"


@dataclass(frozen=True)
class JsonValue:
    """A value to write with its declared kind.

    The kind is carried explicitly so a JSON-typed string and a plain string
    stay distinguishable across export and import.
    """

    kind: ValueKind
    value: Any

    @staticmethod
    def infer(value: Any) -> "JsonValue":
        if isinstance(value, bool):
            return JsonValue(ValueKind.BOOLEAN, value)
        if isinstance(value, (int, float)):
            return JsonValue(ValueKind.NUMBER, value)
        if isinstance(value, str):
            return JsonValue(ValueKind.STRING, value)
        return JsonValue(ValueKind.JSON, value)

    @staticmethod
    def parse(kind: ValueKind, raw: str, flag: bool = False) -> "JsonValue":
        """Build a value from its authored text form; raise ValidationError if invalid."""
        if kind is ValueKind.BOOLEAN:
            return JsonValue(kind, bool(flag))
        if kind is ValueKind.NUMBER:
            return JsonValue(kind, parse_number(raw))
        if kind is ValueKind.JSON:
            try:
                return JsonValue(kind, json.loads(raw or "null"))
            except ValueError as exc:
                raise ValidationError(f"JSON value is not valid JSON: {exc}") from exc
        return JsonValue(kind, raw)

    def problems(self) -> list[str]:
        if self.kind is ValueKind.NUMBER:
            if isinstance(self.value, bool) or not isinstance(self.value, (int, float)):
                return [f"number value is invalid: {self.value!r}"]
            if not math.isfinite(self.value):
                return [f"number value is not finite: {self.value!r}"]
        elif self.kind is ValueKind.BOOLEAN and not isinstance(self.value, bool):
            return [f"boolean value is invalid: {self.value!r}"]
        elif self.kind is ValueKind.STRING and not isinstance(self.value, str):
            return [f"string value is invalid: {self.value!r}"]
        return []


def parse_number(raw: str) -> int | float:
    text = str(raw).strip()
    if not text:
        raise ValidationError("JSON number value is empty")
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError as exc:
        raise ValidationError(f"JSON number value is invalid: {raw!r}") from exc
    if not math.isfinite(number):
        raise ValidationError(f"JSON number value is not finite: {raw!r}")
    return number


@dataclass(frozen=True)
class CopyStep:
    kind: ClassVar[StepKind] = StepKind.COPY
    src: str
    dest: str
    enabled: bool = True


@dataclass(frozen=True)
class PatchBlockStep:
    kind: ClassVar[StepKind] = StepKind.PATCH_BLOCK
    file: str
    start_marker: str
    end_marker: str
    content_file: str
    replacements: dict[str, str] = field(default_factory=dict)
    enabled: bool = True


@dataclass(frozen=True)
class SetJsonValueStep:
    kind: ClassVar[StepKind] = StepKind.SET_JSON_VALUE
    file: str
    key_path: str
    value: JsonValue
    enabled: bool = True


@dataclass(frozen=True)
class Base64EmbedStep:
    kind: ClassVar[StepKind] = StepKind.BASE64_EMBED
    file: str
    placeholder: str
    input_file: str
    enabled: bool = True


@dataclass(frozen=True)
class RunCommandStep:
    kind: ClassVar[StepKind] = StepKind.RUN_COMMAND
    command: str
    args: tuple[str, ...] = ()
    enabled: bool = True


Step = Union[CopyStep, PatchBlockStep, SetJsonValueStep, Base64EmbedStep, RunCommandStep]


@dataclass(frozen=True)
class Manifest:
    app_name: str
    version: str
    publisher: str
    description: str
    payload_dir: str
    steps: tuple[Step, ...] = ()
    logo_path: str | None = None
    advanced_mode: bool = False
    targets: tuple[str, ...] = ()

    @property
    def enabled_steps(self) -> list[Step]:
        return [s for s in self.steps if s.enabled]

    def to_raw(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "appName": self.app_name,
            "version": self.version,
            "publisher": self.publisher,
            "description": self.description,
        }
        if self.logo_path:
            payload["logoPath"] = self.logo_path
        payload["advancedMode"] = self.advanced_mode
        payload["targets"] = list(self.targets)
        payload["payloadDir"] = self.payload_dir
        payload["installSteps"] = [step_to_raw(s) for s in self.enabled_steps]
        return payload

    @staticmethod
    def from_raw(raw: Any) -> "Manifest":
        if not isinstance(raw, dict):
            raise ValidationError("Manifest must be a JSON object")

        problems: list[str] = []

        def text(key: str, default: str | None = None) -> str:
            value = raw.get(key, default)
            if value is None:
                problems.append(f"Missing required field: {key}")
                return ""
            if not isinstance(value, str):
                problems.append(f"{key}: must be a string")
                return ""
            return value

        app_name = text("appName")
        version = text("version", "")
        publisher = text("publisher", "")
        description = text("description", "")
        payload_dir = text("payloadDir")

        logo_path = raw.get("logoPath")
        if logo_path is not None and not isinstance(logo_path, str):
            problems.append("logoPath: must be a string")
            logo_path = None

        advanced_raw = raw.get("advancedMode", False)
        if advanced_raw is None:
            advanced_raw = False
        if not isinstance(advanced_raw, bool):
            problems.append("advancedMode: must be a boolean")
            advanced_raw = False

        targets_raw = raw.get("targets") or []
        if not isinstance(targets_raw, list):
            problems.append("targets: must be a list")
            targets_raw = []

        steps_raw = raw.get("installSteps", raw.get("steps"))
        steps: list[Step] = []
        if steps_raw is None:
            problems.append("Missing required field: installSteps")
        elif not isinstance(steps_raw, list):
            problems.append("installSteps: must be a list")
        else:
            for i, step_raw in enumerate(steps_raw):
                step = step_from_raw(step_raw, i, problems)
                if step is not None:
                    steps.append(step)

        if problems:
            raise ValidationError.from_problems("Manifest validation failed", problems)

        return Manifest(
            app_name=app_name,
            version=version,
            publisher=publisher,
            description=description,
            payload_dir=payload_dir,
            steps=tuple(steps),
            logo_path=logo_path,
            advanced_mode=advanced_raw,
            targets=tuple(str(t) for t in targets_raw),
        )


def step_to_raw(step: Step) -> dict[str, Any]:
    if isinstance(step, CopyStep):
        return {"type": step.kind.value, "src": step.src, "dest": step.dest}
    if isinstance(step, PatchBlockStep):
        payload: dict[str, Any] = {
            "type": step.kind.value,
            "file": step.file,
            "startMarker": step.start_marker,
            "endMarker": step.end_marker,
            "contentFile": step.content_file,
        }
        if step.replacements:
            payload["replacements"] = dict(step.replacements)
        return payload
    if isinstance(step, SetJsonValueStep):
        return {
            "type": step.kind.value,
            "file": step.file,
            "keyPath": step.key_path,
            "valueType": step.value.kind.value,
            "value": step.value.value,
        }
    if isinstance(step, Base64EmbedStep):
        return {
            "type": step.kind.value,
            "file": step.file,
            "placeholder": step.placeholder,
            "inputFile": step.input_file,
        }
    if isinstance(step, RunCommandStep):
        return {"type": step.kind.value, "command": step.command, "args": list(step.args)}
    raise TypeError(f"Unknown step: {step!r}")


def step_from_raw(raw: Any, index: int, problems: list[str]) -> Step | None:
    """Parse one step, appending any structural problems to ``problems``."""
    label = f"installSteps[{index}]"
    if not isinstance(raw, dict):
        problems.append(f"{label}: must be an object")
        return None

    kind_raw = raw.get("type")
    try:
        kind = StepKind(kind_raw)
    except ValueError:
        problems.append(
            f"{label}: unknown type {kind_raw!r}. "
            f"Known types: {sorted(k.value for k in StepKind)}"
        )
        return None

    label = f"{label} ({kind.value})"
    ok = True

    def text(key: str, required: bool = True) -> str:
        nonlocal ok
        value = raw.get(key)
        if value is None:
            if required:
                problems.append(f"{label}: missing '{key}'")
                ok = False
            return ""
        if not isinstance(value, str):
            problems.append(f"{label}: '{key}' must be a string")
            ok = False
            return ""
        return value

    enabled = raw.get("enabled", True) is not False

    if kind is StepKind.COPY:
        step: Step = CopyStep(src=text("src"), dest=text("dest"), enabled=enabled)
    elif kind is StepKind.PATCH_BLOCK:
        replacements_raw = raw.get("replacements") or {}
        replacements: dict[str, str] = {}
        if not isinstance(replacements_raw, dict):
            problems.append(f"{label}: 'replacements' must be an object")
            ok = False
        else:
            for token, value in replacements_raw.items():
                if not isinstance(value, str):
                    LOGGER.warning(
                        "Replacement %r in %s was not a string and was converted", token, label
                    )
                    value = json.dumps(value) if value is not None else ""
                replacements[str(token)] = value
        step = PatchBlockStep(
            file=text("file"),
            start_marker=text("startMarker"),
            end_marker=text("endMarker"),
            content_file=text("contentFile"),
            replacements=replacements,
            enabled=enabled,
        )
    elif kind is StepKind.SET_JSON_VALUE:
        if "value" not in raw:
            problems.append(f"{label}: missing 'value'")
            ok = False
        value_type = raw.get("valueType")
        if value_type is None:
            value = JsonValue.infer(raw.get("value"))
        else:
            try:
                value = JsonValue(ValueKind(value_type), raw.get("value"))
            except ValueError:
                problems.append(f"{label}: unknown valueType {value_type!r}")
                ok = False
                value = JsonValue.infer(raw.get("value"))
        step = SetJsonValueStep(
            file=text("file"), key_path=text("keyPath"), value=value, enabled=enabled
        )
    elif kind is StepKind.BASE64_EMBED:
        step = Base64EmbedStep(
            file=text("file"),
            placeholder=text("placeholder"),
            input_file=text("inputFile"),
            enabled=enabled,
        )
    elif kind is StepKind.RUN_COMMAND:
        args_raw = raw.get("args") or []
        if not isinstance(args_raw, list):
            problems.append(f"{label}: 'args' must be a list")
            ok = False
            args_raw = []
        step = RunCommandStep(
            command=text("command"),
            args=tuple(str(a) for a in args_raw),
            enabled=enabled,
        )
    else:
        raise TypeError(f"Unhandled step kind: {kind}")

    return step if ok else None


def step_problems(step: Step, advanced_mode: bool) -> list[str]:
    """Semantic problems for one step; empty when the step is runnable."""
    problems: list[str] = []

    def required(name: str, value: str) -> None:
        if not value.strip():
            problems.append(f"'{name}' cannot be empty")

    def payload_ref(name: str, value: str) -> None:
        if not value.strip():
            return
        if advanced_mode and looks_absolute(value):
            return
        try:
            normalize_rel_path(value)
        except ValueError as exc:
            problems.append(f"'{name}' must stay inside payloadDir: {exc}")

    def target(name: str, value: str) -> None:
        if value.strip() and not advanced_mode and looks_absolute(value):
            problems.append(f"'{name}' is absolute; absolute targets require advancedMode")

    if isinstance(step, CopyStep):
        required("src", step.src)
        required("dest", step.dest)
        payload_ref("src", step.src)
        target("dest", step.dest)
    elif isinstance(step, PatchBlockStep):
        required("file", step.file)
        required("startMarker", step.start_marker)
        required("endMarker", step.end_marker)
        required("contentFile", step.content_file)
        payload_ref("contentFile", step.content_file)
        target("file", step.file)
    elif isinstance(step, SetJsonValueStep):
        required("file", step.file)
        target("file", step.file)
        try:
            split_key_path(step.key_path)
        except MalformedKeyPath as exc:
            problems.append(str(exc))
        problems.extend(step.value.problems())
    elif isinstance(step, Base64EmbedStep):
        required("file", step.file)
        required("placeholder", step.placeholder)
        required("inputFile", step.input_file)
        payload_ref("inputFile", step.input_file)
        target("file", step.file)
    elif isinstance(step, RunCommandStep):
        required("command", step.command)
    else:
        raise TypeError(f"Unknown step: {step!r}")
    return problems


def validate_manifest(manifest: Manifest) -> None:
    """Raise ValidationError listing every problem in the manifest."""
    problems: list[str] = []
    if not manifest.app_name.strip():
        problems.append("appName cannot be empty")
    try:
        normalize_rel_path(manifest.payload_dir, allow_current=True)
    except ValueError as exc:
        problems.append(f"payloadDir: {exc}")

    for i, step in enumerate(manifest.steps):
        if not step.enabled:
            continue
        for problem in step_problems(step, manifest.advanced_mode):
            problems.append(f"steps[{i}] ({step.kind.value}): {problem}")

    if problems:
        raise ValidationError.from_problems("Manifest validation failed", problems)


def load_manifest(path: Path) -> Manifest:
    """Read, parse and validate a manifest file.

    Raises StepIOError if the file cannot be read and ValidationError if it is
    not valid JSON or fails validation.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StepIOError(f"Failed to read manifest file at {path}: {exc}") from exc
    content = content.removeprefix("\ufeff")

    try:
        raw = json.loads(content)
    except ValueError as exc:
        raise ValidationError(
            f"Failed to parse manifest: {exc}. Content snippet: {content[:50]}..."
        ) from exc

    manifest = Manifest.from_raw(raw)
    validate_manifest(manifest)
    return manifest


def write_manifest(path: Path, manifest: Manifest) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(manifest.to_raw(), ensure_ascii=False, indent=2), encoding="utf-8"
    )


def find_manifest(root: Path) -> Path | None:
    """Locate a bundled manifest under ``root`` (``manifests/`` first)."""
    for candidate in (root / "manifests" / MANIFEST_FILENAME, root / MANIFEST_FILENAME):
        if candidate.is_file():
            return candidate
    return None
