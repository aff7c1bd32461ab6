from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .backup import BackupManager
from .errors import (
    Cancelled,
    CommandError,
    MisfitError,
    StepFailed,
    StepIOError,
    ValidationError,
)
from .key_path import set_json_value
from .manifest import (
    Base64EmbedStep,
    CopyStep,
    Manifest,
    PatchBlockStep,
    RunCommandStep,
    SetJsonValueStep,
    Step,
    validate_manifest,
)
from .patcher import apply_replacements, embed_base64, patch_file
from .progress import ProgressLog
from .utils import copy_payload, expand_env_vars, is_within, looks_absolute, normalize_rel_path

LOGGER = logging.getLogger(__name__)

MAX_LISTED_COMMANDS = 5

Runner = Callable[..., "subprocess.CompletedProcess[str]"]


@dataclass
class ExecutorConfig:
    install_root: Path
    payload_root: Path
    command_cwd: Path
    backup_manager: BackupManager | None = None
    progress: ProgressLog = field(default_factory=ProgressLog)
    confirm: Callable[[str], bool] | None = None
    env: Mapping[str, str] | None = None
    runner: Runner = subprocess.run


@dataclass(frozen=True)
class InstallReport:
    app_name: str
    steps_run: int
    skipped: int
    backup_dir: Path | None


@dataclass(frozen=True)
class _Resolved:
    index: int
    step: Step
    target: Path | None = None
    payload: Path | None = None


def run_command(
    command: str,
    args: Sequence[str],
    cwd: Path,
    progress: ProgressLog,
    runner: Runner = subprocess.run,
) -> None:
    """Run ``command`` with ``args`` as a literal argv (no shell)."""
    LOGGER.debug("Running %s %s in %s", command, list(args), cwd)
    try:
        completed = runner(
            [command, *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
    except OSError as exc:
        raise CommandError(f"Failed to execute command {command!r}: {exc}") from exc

    stdout = completed.stdout or ""
    stderr = completed.stderr or ""
    for line in stdout.splitlines():
        progress.info(f"  stdout: {line}")
    for line in stderr.splitlines():
        progress.warning(f"  stderr: {line}")

    if completed.returncode != 0:
        raise CommandError(
            f"Command {command!r} exited with status {completed.returncode}",
            returncode=completed.returncode,
            stdout=stdout,
            stderr=stderr,
        )


class StepExecutor:
    def __init__(self, manifest: Manifest, config: ExecutorConfig) -> None:
        self.manifest = manifest
        self.config = config
        self.progress = config.progress

    def run(self) -> InstallReport:
        plan = self._preflight()
        self._ask_command_consent()

        skipped = len(self.manifest.steps) - len(plan)
        total = len(plan)
        for position, resolved in enumerate(plan, start=1):
            kind = resolved.step.kind.value
            try:
                self._execute(resolved, f"[{position}/{total}]")
            except (MisfitError, OSError) as exc:
                self.progress.error(f"Step {resolved.index + 1} ({kind}) failed: {exc}")
                raise StepFailed(resolved.index, kind, exc) from exc

        backup = self.config.backup_manager.record if self.config.backup_manager else None
        self.progress.info("Installation complete")
        return InstallReport(
            app_name=self.manifest.app_name,
            steps_run=total,
            skipped=skipped,
            backup_dir=backup.directory if backup else None,
        )

    def _preflight(self) -> list[_Resolved]:
        validate_manifest(self.manifest)

        payload_root = self.config.payload_root
        if not payload_root.is_dir():
            raise ValidationError(f"Payload directory not found: {payload_root}")

        problems: list[str] = []
        plan: list[_Resolved] = []
        for index, step in enumerate(self.manifest.steps):
            if not step.enabled:
                self.progress.info(f"Skipping disabled step {index + 1} ({step.kind.value})")
                continue
            try:
                plan.append(self._resolve(index, step))
            except ValueError as exc:
                problems.append(f"steps[{index}] ({step.kind.value}): {exc}")

        if problems:
            raise ValidationError.from_problems("Manifest paths are invalid", problems)
        return plan

    def _resolve(self, index: int, step: Step) -> _Resolved:
        if isinstance(step, CopyStep):
            return _Resolved(index, step, self._target(step.dest), self._payload(step.src))
        if isinstance(step, PatchBlockStep):
            return _Resolved(index, step, self._target(step.file), self._payload(step.content_file))
        if isinstance(step, SetJsonValueStep):
            return _Resolved(index, step, self._target(step.file))
        if isinstance(step, Base64EmbedStep):
            return _Resolved(index, step, self._target(step.file), self._payload(step.input_file))
        if isinstance(step, RunCommandStep):
            return _Resolved(index, step)
        raise TypeError(f"Unknown step: {step!r}")

    def _target(self, raw: str) -> Path:
        expanded = expand_env_vars(raw.strip(), self.config.env)
        root = self.config.install_root
        if looks_absolute(expanded):
            if not self.manifest.advanced_mode:
                raise ValueError(f"target {expanded} is absolute; this requires advancedMode")
            return Path(expanded)
        resolved = root / expanded
        if not self.manifest.advanced_mode and not is_within(resolved, root):
            raise ValueError(f"target {raw} escapes the install root {root}")
        return resolved

    def _payload(self, raw: str) -> Path:
        if self.manifest.advanced_mode and looks_absolute(raw):
            return Path(raw.strip())
        root = self.config.payload_root
        resolved = root / normalize_rel_path(raw)
        if not is_within(resolved, root):
            raise ValueError(f"payload {raw} resolves outside {root}")
        return resolved

    def _ask_command_consent(self) -> None:
        commands = [
            s.command.strip() for s in self.manifest.enabled_steps if isinstance(s, RunCommandStep)
        ]
        if not commands or self.config.confirm is None:
            return

        sample = "\n".join(commands[:MAX_LISTED_COMMANDS])
        extra = len(commands) - MAX_LISTED_COMMANDS
        if extra > 0:
            sample += f"\n...and {extra} more"
        prompt = f"This installer will run system commands.\n{sample}\n\nContinue?"
        if not self.config.confirm(prompt):
            self.progress.warning("Installation cancelled by user.")
            raise Cancelled("Installation cancelled by user")

    def _backup(self, target: Path) -> None:
        if self.config.backup_manager is not None:
            entry = self.config.backup_manager.snapshot(target)
            if entry is not None:
                self.progress.info(f"Backed up {target}")

    def _execute(self, resolved: _Resolved, prefix: str) -> None:
        step = resolved.step
        target = resolved.target
        payload = resolved.payload

        if isinstance(step, RunCommandStep):
            self.progress.info(f"{prefix} Running command: {step.command} {list(step.args)}")
            run_command(
                step.command,
                step.args,
                self.config.command_cwd,
                self.progress,
                self.config.runner,
            )
        elif target is None:
            raise TypeError(f"Step {resolved.index + 1} has no resolved target: {step!r}")
        elif isinstance(step, SetJsonValueStep):
            self.progress.info(f"{prefix} Updating JSON {target} key {step.key_path}")
            self._backup(target)
            set_json_value(target, step.key_path, _plain(step.value.value))
        elif payload is None:
            raise TypeError(f"Step {resolved.index + 1} has no resolved payload: {step!r}")
        elif isinstance(step, CopyStep):
            self._copy(target, payload, prefix)
        elif isinstance(step, PatchBlockStep):
            self._patch(step, target, payload, prefix)
        elif isinstance(step, Base64EmbedStep):
            self._embed(step, target, payload, prefix)
        else:
            raise TypeError(f"Unknown step: {step!r}")

    def _copy(self, target: Path, payload: Path, prefix: str) -> None:
        self.progress.info(f"{prefix} Copying {payload} to {target}")
        if not payload.exists():
            raise StepIOError(f"Payload not found: {payload}")
        self._backup(target)
        copy_payload(payload, target)

    def _patch(self, step: PatchBlockStep, target: Path, payload: Path, prefix: str) -> None:
        self.progress.info(f"{prefix} Patching {target}")
        content = apply_replacements(_read_payload_text(payload), step.replacements)
        self._backup(target)
        patch_file(
            target,
            step.start_marker,
            step.end_marker,
            content,
            strip=self.manifest.advanced_mode,
        )

    def _embed(self, step: Base64EmbedStep, target: Path, payload: Path, prefix: str) -> None:
        self.progress.info(f"{prefix} Embedding base64 into {target}")
        if not payload.is_file():
            raise StepIOError(f"Embed input not found: {payload}")
        self._backup(target)
        count = embed_base64(target, step.placeholder, payload)
        self.progress.info(f"Replaced {count} occurrence(s) of {step.placeholder}")


def _read_payload_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise StepIOError(f"Failed to read patch content {path}: {exc}") from exc


def _plain(value: Any) -> Any:
    # Containers are copied; the document never shares objects with the manifest.
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def install(manifest: Manifest, config: ExecutorConfig) -> InstallReport:
    return StepExecutor(manifest, config).run()
