from __future__ import annotations

import json

import pytest

from misfit_studio.errors import MalformedKeyPath, StepIOError
from misfit_studio.key_path import set_in_document, set_json_value, split_key_path


def test_split_key_path_honours_escaped_dots() -> None:
    assert split_key_path("theme.colors.primary") == ["theme", "colors", "primary"]
    assert split_key_path("workbench\\.colorTheme") == ["workbench.colorTheme"]
    assert split_key_path("  a\\\\b.c  ") == ["a\\b", "c"]


@pytest.mark.parametrize("raw", ["", "   ", "a..b", ".a", "a.", "a\\"])
def test_split_key_path_rejects_malformed(raw: str) -> None:
    with pytest.raises(MalformedKeyPath):
        split_key_path(raw)


def test_set_in_document_replaces_non_object_intermediate() -> None:
    document = {"a": 5}
    set_in_document(document, ["a", "b"], True)
    assert document == {"a": {"b": True}}


def test_set_json_value_creates_file_and_keeps_siblings(tmp_path) -> None:
    target = tmp_path / "conf" / "settings.json"
    set_json_value(target, "workbench\\.colorTheme", "Misfit Dark")
    set_json_value(target, "editor.fontSize", 14)

    data = json.loads(target.read_text(encoding="utf-8"))
    assert data == {"workbench.colorTheme": "Misfit Dark", "editor": {"fontSize": 14}}
    assert target.read_text(encoding="utf-8").endswith("\n")


def test_set_json_value_reads_bom_prefixed_file(tmp_path) -> None:
    target = tmp_path / "settings.json"
    target.write_text('\ufeff{"keep": 1}', encoding="utf-8")

    set_json_value(target, "theme", "dark")
    assert json.loads(target.read_text(encoding="utf-8")) == {"keep": 1, "theme": "dark"}


def test_set_json_value_leaves_unparsable_file_untouched(tmp_path) -> None:
    target = tmp_path / "settings.json"
    target.write_text("{not json", encoding="utf-8")

    with pytest.raises(StepIOError):
        set_json_value(target, "theme", "dark")
    assert target.read_text(encoding="utf-8") == "{not json"


def test_set_json_value_requires_object_root(tmp_path) -> None:
    target = tmp_path / "list.json"
    target.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(StepIOError):
        set_json_value(target, "a", 1)
