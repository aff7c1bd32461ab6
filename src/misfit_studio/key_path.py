from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .errors import MalformedKeyPath, StepIOError

LOGGER = logging.getLogger(__name__)


def split_key_path(key_path: str) -> list[str]:
    trimmed = key_path.strip()
    if not trimmed:
        raise MalformedKeyPath("Key path cannot be empty")

    parts: list[str] = []
    current: list[str] = []
    escaped = False
    for ch in trimmed:
        if escaped:
            current.append(ch)
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == ".":
            if not current:
                raise MalformedKeyPath(f"Key path contains an empty segment: {key_path!r}")
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)

    if escaped:
        raise MalformedKeyPath(f"Key path ends with an escape character: {key_path!r}")
    if not current:
        raise MalformedKeyPath(f"Key path contains an empty segment: {key_path!r}")
    parts.append("".join(current))
    return parts


def set_in_document(document: Any, segments: list[str], value: Any) -> dict[str, Any]:
    """Set ``value`` at ``segments``, creating intermediate objects.

    Whatever sits at the terminal key is replaced regardless of its type.
    Non-object intermediates are replaced by objects as well.
    """
    if not isinstance(document, dict):
        raise ValueError("JSON root is not an object")

    current = document
    for segment in segments[:-1]:
        child = current.get(segment)
        if not isinstance(child, dict):
            if child is not None:
                LOGGER.info("Replacing non-object value at key %r with an object", segment)
            child = {}
            current[segment] = child
        current = child
    current[segments[-1]] = value
    return document


def set_json_value(target: Path, key_path: str, value: Any) -> None:
    segments = split_key_path(key_path)

    if target.exists():
        try:
            text = target.read_text(encoding="utf-8-sig")
            document = json.loads(text) if text.strip() else {}
        except (OSError, ValueError) as exc:
            raise StepIOError(f"Cannot read JSON file {target}: {exc}") from exc
    else:
        document = {}

    try:
        set_in_document(document, segments, value)
    except ValueError as exc:
        raise StepIOError(f"Cannot update {target}: {exc}") from exc

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(
        json.dumps(document, ensure_ascii=False, indent=2) + "\n",
        encoding="utf-8",
    )
