from __future__ import annotations

import json
from datetime import datetime

import pytest

from chat_surface import ChatMessage, ExportFailure
from conftest import RecordingNotifier
from novel_exporter import (
    Chapter,
    ExportOptions,
    FileExporter,
    collect_chapters,
    format_text,
    make_export_callback,
)
from tag_extract import ExtractionSpec, ExtractMode


STORY = "The rain kept falling on the old harbour town."


def _history():
    return [
        ChatMessage(False, "Narrator", "Greeting message that opens the chat."),
        ChatMessage(True, "Reader", "continue please, more story"),
        ChatMessage(False, "Narrator", f"<think>plan</think><content>{STORY}</content>"),
        ChatMessage(True, "Reader", "continue please, more story"),
        ChatMessage(False, "Narrator", "short"),
        ChatMessage(False, "Narrator", "<think>only thinking here</think>"),
    ]


def test_default_options_export_ai_messages_only() -> None:
    chapters = collect_chapters(_history(), ExportOptions())

    assert [c.source_locator for c in chapters] == [0, 2, 5]
    assert [c.sequence_index for c in chapters] == [1, 2, 3]
    assert all(not c.is_user_authored for c in chapters)
    assert chapters[0].author_name == "Narrator"


def test_tag_mode_keeps_only_tagged_content() -> None:
    options = ExportOptions(extraction=ExtractionSpec(tags=("content",), mode=ExtractMode.TAGS))

    chapters = collect_chapters(_history(), options)

    assert [c.content for c in chapters] == [STORY]
    assert chapters[0].source_locator == 2
    assert chapters[0].sequence_index == 1


def test_tag_mode_without_tags_behaves_like_all() -> None:
    options = ExportOptions(extraction=ExtractionSpec(tags=(), mode=ExtractMode.TAGS))
    assert len(collect_chapters(_history(), options)) == 3


def test_floor_range_and_user_messages() -> None:
    options = ExportOptions(export_all=False, start_floor=1, end_floor=3, include_user=True)

    chapters = collect_chapters(_history(), options)

    assert [c.source_locator for c in chapters] == [1, 2, 3]
    assert [c.is_user_authored for c in chapters] == [True, False, True]


def test_end_floor_past_history_is_clamped() -> None:
    options = ExportOptions(export_all=False, start_floor=4, end_floor=500)
    assert [c.source_locator for c in collect_chapters(_history(), options)] == [5]


def test_options_from_settings() -> None:
    options = ExportOptions.from_settings({
        "export_all": False,
        "export_start_floor": 3,
        "export_end_floor": 9,
        "export_include_user": True,
        "extract_mode": "tags",
        "extract_tags": "content, detail",
        "tag_separator": "\\n",
    })
    assert options.start_floor == 3
    assert options.end_floor == 9
    assert options.include_user is True
    assert options.extraction.tags == ("content", "detail")
    assert options.extraction.separator == "\n"


def test_format_text_layout() -> None:
    chapters = [Chapter(4, 1, False, "AI", "Body one"), Chapter(7, 2, True, "Reader", "Body two")]

    text = format_text(chapters, exported_at=datetime(2024, 5, 1, 12, 0, 0))

    assert text.startswith("Exported: 2024-05-01 12:00:00\nChapters: 2\nCharacters: 16\n")
    assert "═" * 40 in text
    assert "══ [floor 4] AI ══\n\nBody one\n\n" in text
    assert "══ [floor 7] User ══\n\nBody two\n\n" in text


def test_file_exporter_writes_txt(tmp_path) -> None:
    notifier = RecordingNotifier()
    exporter = FileExporter(tmp_path / "exports", notifier=notifier)

    path = exporter.export(collect_chapters(_history(), ExportOptions()))

    assert path is not None and path.exists()
    assert path.name.startswith("novel_3ch_") and path.suffix == ".txt"
    assert STORY in path.read_text(encoding="utf-8")
    assert notifier.messages[-1][0] == "success"


def test_file_exporter_writes_json(tmp_path) -> None:
    exporter = FileExporter(tmp_path, fmt="json")

    path = exporter.export([Chapter(2, 1, False, "AI", STORY)])

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["chapters"][0]["content"] == STORY
    assert data["chapters"][0]["source_locator"] == 2
    assert "time" in data


def test_nothing_to_export(tmp_path) -> None:
    notifier = RecordingNotifier()
    exporter = FileExporter(tmp_path, notifier=notifier)

    assert exporter.export([], silent=True) is None
    assert notifier.messages == []
    assert exporter.export([], silent=False) is None
    assert notifier.messages == [("warn", "Nothing to export")]
    assert list(tmp_path.iterdir()) == []


def test_write_failure_raises_only_when_not_silent(tmp_path) -> None:
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("file in the way", encoding="utf-8")
    events = []
    exporter = FileExporter(blocker, events=lambda kind, payload: events.append(kind))
    chapters = [Chapter(0, 1, False, "AI", STORY)]

    assert exporter.export(chapters, silent=True) is None
    assert events == ["export_failed"]
    with pytest.raises(ExportFailure):
        exporter.export(chapters, silent=False)


def test_unknown_format_rejected(tmp_path) -> None:
    with pytest.raises(ValueError):
        FileExporter(tmp_path, fmt="epub")


def test_export_callback_reads_fresh_messages(tmp_path) -> None:
    history = _history()
    exporter = FileExporter(tmp_path)
    callback = make_export_callback(lambda: history, ExportOptions(), exporter)

    path = callback(True)

    assert path is not None
    assert path.name.startswith("novel_3ch_")


def test_options_from_settings_with_null_values() -> None:
    options = ExportOptions.from_settings({
        "extract_mode": None,
        "extract_tags": None,
        "tag_separator": None,
    })
    assert options.extraction.separator == "\n\n"
    assert options.extraction.tags == ()
    assert not options.extraction.uses_tags
