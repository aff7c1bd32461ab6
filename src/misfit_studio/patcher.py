from __future__ import annotations

import base64
from pathlib import Path

from .errors import MissingEndMarker, MissingPatchTarget, PatchError, StepIOError


def apply_replacements(content: str, replacements: dict[str, str] | None) -> str:
    for token, value in (replacements or {}).items():
        if token:
            content = content.replace(token, value)
    return content


def render_block(start_marker: str, end_marker: str, content: str) -> str:
    return f"{start_marker}\n{content}\n{end_marker}"


def strip_markers(content: str, start_marker: str, end_marker: str) -> str:
    return content.replace(start_marker, "").replace(end_marker, "")


def patch_text(
    text: str,
    start_marker: str,
    end_marker: str,
    content: str,
    strip: bool = False,
) -> str:
    if not start_marker or not end_marker:
        raise PatchError("Both start and end markers are required")

    replacement = (
        strip_markers(content, start_marker, end_marker)
        if strip
        else render_block(start_marker, end_marker, content)
    )

    start_idx = text.find(start_marker)
    if start_idx < 0:
        return f"{text}\n{replacement}\n"

    search_from = start_idx + len(start_marker)
    end_idx = text.find(end_marker, search_from)
    if end_idx < 0:
        raise MissingEndMarker(f"End marker not found after start marker: {end_marker!r}")

    return text[:start_idx] + replacement + text[end_idx + len(end_marker):]


def _read_target(target: Path) -> str:
    if not target.is_file():
        raise MissingPatchTarget(f"Patch target not found: {target}")
    try:
        with target.open("r", encoding="utf-8", newline="") as handle:
            return handle.read()
    except UnicodeDecodeError as exc:
        raise StepIOError(f"Patch target is not valid UTF-8: {target}: {exc}") from exc


def _write_target(target: Path, text: str) -> None:
    with target.open("w", encoding="utf-8", newline="") as handle:
        handle.write(text)


def patch_file(
    target: Path,
    start_marker: str,
    end_marker: str,
    content: str,
    strip: bool = False,
) -> None:
    original = _read_target(target)
    _write_target(target, patch_text(original, start_marker, end_marker, content, strip))


def embed_base64(target: Path, placeholder: str, input_file: Path) -> int:
    """Replace every ``placeholder`` in ``target`` with base64 of ``input_file``.

    Returns the number of replacements made.
    """
    original = _read_target(target)
    count = original.count(placeholder)
    if count == 0:
        raise PatchError(f"Placeholder {placeholder!r} not found in {target}")
    encoded = base64.b64encode(input_file.read_bytes()).decode("ascii")
    _write_target(target, original.replace(placeholder, encoded))
    return count
