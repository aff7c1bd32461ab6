from __future__ import annotations

import os
import re
import shutil
import time
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path, PurePosixPath

_ENV_PATTERN = re.compile(r"%([^%]+)%|\$\{([^}]+)\}|\$([A-Za-z0-9_]+)")
_SAFE_COMPONENT = re.compile(r"[^A-Za-z0-9._-]")


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def timestamp_id(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d_%H%M%S")


def sanitize_component(value: str) -> str:
    out = _SAFE_COMPONENT.sub("_", value)
    return out or "_"


def home_dir(env: Mapping[str, str] | None = None) -> Path | None:
    env = os.environ if env is None else env
    raw = env.get("USERPROFILE") or env.get("HOME")
    return Path(raw) if raw else None


def expand_env_vars(value: str, env: Mapping[str, str] | None = None) -> str:
    """Expand ``~``, ``%NAME%``, ``${NAME}`` and ``$NAME``.

    Unknown variables are left exactly as written.
    """
    env = os.environ if env is None else env
    text = value
    if text == "~" or text.startswith(("~/", "~\\")):
        home = home_dir(env)
        if home is not None:
            text = str(home) + text[1:]

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2) or match.group(3)
        resolved = env.get(name)
        return resolved if resolved is not None else match.group(0)

    return _ENV_PATTERN.sub(_sub, text)


def normalize_rel_path(value: str, *, allow_current: bool = False) -> PurePosixPath:
    """Normalise a payload-relative path; reject absolute paths and ``..``."""
    trimmed = value.strip().replace("\\", "/")
    if not trimmed:
        if allow_current:
            return PurePosixPath(".")
        raise ValueError("Path cannot be empty")
    if trimmed.startswith("/") or re.match(r"^[A-Za-z]:", trimmed):
        raise ValueError(f"Path must be relative: {value}")

    parts: list[str] = []
    for part in trimmed.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise ValueError(f"Path cannot contain '..': {value}")
        parts.append(part)

    if not parts:
        if allow_current:
            return PurePosixPath(".")
        raise ValueError(f"Path cannot be '.': {value}")
    return PurePosixPath(*parts)


def looks_absolute(value: str) -> bool:
    text = value.strip()
    return (
        Path(text).is_absolute()
        or text.startswith(("/", "\\\\"))
        or re.match(r"^[A-Za-z]:[\\/]", text) is not None
    )


def is_within(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


def copy_payload(src: Path, dest: Path) -> None:
    if src.is_dir():
        shutil.copytree(src, dest, dirs_exist_ok=True)
        return
    ensure_dir(dest.parent)
    shutil.copy2(src, dest)


def can_write_dir(directory: Path) -> bool:
    scratch = directory / f".misfit_write_test_{time.time_ns()}"
    try:
        with scratch.open("x", encoding="utf-8"):
            pass
    except OSError:
        return False
    scratch.unlink(missing_ok=True)
    return True
