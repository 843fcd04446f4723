"""
Turn chat history into chapters and write them out as .txt or .json.
"""
from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from chat_surface import ChatMessage, ExportFailure
from tag_extract import DEFAULT_SEPARATOR, ExtractionSpec, extract, make_spec, unescape_separator


MIN_CHAPTER_CHARS = 10  # shorter content is not worth exporting
RULE_WIDTH = 40
EXPORT_FORMATS = ("txt", "json")


@dataclass
class Chapter:
    source_locator: int
    sequence_index: int
    is_user_authored: bool
    author_name: str
    content: str


@dataclass
class ExportOptions:
    export_all: bool = True
    start_floor: int = 0
    end_floor: int = 99999
    include_user: bool = False
    include_ai: bool = True
    extraction: ExtractionSpec = field(default_factory=ExtractionSpec)

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "ExportOptions":
        return cls(
            export_all=bool(settings.get("export_all", True)),
            start_floor=int(settings.get("export_start_floor") or 0),
            end_floor=int(settings.get("export_end_floor") if settings.get("export_end_floor") is not None else 99999),
            include_user=bool(settings.get("export_include_user", False)),
            include_ai=bool(settings.get("export_include_ai", True)),
            extraction=make_spec(
                settings.get("extract_mode", "all"),
                settings.get("extract_tags", ""),
                unescape_separator(settings.get("tag_separator") or DEFAULT_SEPARATOR),
            ),
        )


def collect_chapters(messages: Sequence[ChatMessage], options: ExportOptions) -> List[Chapter]:
    """
    Walk messages in the floor range, keep the wanted authors, apply tag
    extraction and drop anything too short. Floors are list positions.
    """
    if not messages:
        return []
    start = 0 if options.export_all else max(0, options.start_floor)
    end = len(messages) - 1 if options.export_all else min(len(messages) - 1, options.end_floor)
    use_tags = options.extraction.uses_tags

    chapters: List[Chapter] = []
    for floor in range(start, end + 1):
        msg = messages[floor]
        if msg.is_user_authored and not options.include_user:
            continue
        if not msg.is_user_authored and not options.include_ai:
            continue
        if not msg.raw_text:
            continue
        content = extract(msg.raw_text, options.extraction) if use_tags else msg.raw_text
        if not content or len(content) <= MIN_CHAPTER_CHARS:
            continue
        chapters.append(Chapter(
            source_locator=floor,
            sequence_index=len(chapters) + 1,
            is_user_authored=msg.is_user_authored,
            author_name=msg.author_name or ("User" if msg.is_user_authored else "AI"),
            content=content,
        ))
    return chapters


def format_text(chapters: Sequence[Chapter], exported_at: Optional[datetime] = None) -> str:
    exported_at = exported_at or datetime.now()
    total_chars = sum(len(c.content) for c in chapters)
    parts = [
        f"Exported: {exported_at.strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"Chapters: {len(chapters)}\n"
        f"Characters: {total_chars}\n"
        f"{'═' * RULE_WIDTH}\n\n"
    ]
    for ch in chapters:
        who = "User" if ch.is_user_authored else "AI"
        parts.append(f"══ [floor {ch.source_locator}] {who} ══\n\n{ch.content}\n\n")
    return "".join(parts)


def format_json(chapters: Sequence[Chapter], exported_at: Optional[datetime] = None) -> str:
    exported_at = exported_at or datetime.now()
    data = {"time": exported_at.isoformat(), "chapters": [asdict(c) for c in chapters]}
    return json.dumps(data, indent=2, ensure_ascii=False)


def now_ms() -> int:
    return int(time.time() * 1000)


class FileExporter:
    """Exporter collaborator: writes one file per export call into out_dir."""

    def __init__(
        self,
        out_dir: Path,
        fmt: str = "txt",
        notifier=None,
        events: Optional[Callable[[str, Dict[str, Any]], None]] = None,
    ):
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"format must be one of {EXPORT_FORMATS}, got {fmt!r}")
        self.out_dir = Path(out_dir)
        self.fmt = fmt
        self.notifier = notifier
        self._events = events
        self.last_path: Optional[Path] = None

    def filename_for(self, chapters: Sequence[Chapter]) -> str:
        if self.fmt == "json":
            return f"novel_{now_ms()}.json"
        return f"novel_{len(chapters)}ch_{now_ms()}.txt"

    def export(self, chapters: Sequence[Chapter], silent: bool = False) -> Optional[Path]:
        if not chapters:
            if not silent and self.notifier is not None:
                self.notifier.warn("Nothing to export")
            return None
        body = format_json(chapters) if self.fmt == "json" else format_text(chapters)
        dest = self.out_dir / self.filename_for(chapters)
        try:
            self.out_dir.mkdir(parents=True, exist_ok=True)
            dest.write_text(body, encoding="utf-8")
        except OSError as e:
            if silent:
                if self._events is not None:
                    self._events("export_failed", {"path": str(dest), "error": str(e), "silent": True})
                return None
            raise ExportFailure(f"Could not write {dest}: {e}") from e
        self.last_path = dest
        if self._events is not None:
            self._events("export_written", {"path": str(dest), "chapters": len(chapters), "silent": silent})
        if not silent and self.notifier is not None:
            self.notifier.success(f"Exported {len(chapters)} chapters to {dest}")
        return dest


def make_export_callback(
    list_messages: Callable[[], List[ChatMessage]],
    options: ExportOptions,
    exporter: FileExporter,
) -> Callable[[bool], Optional[Path]]:
    """Bind message source + options + exporter into the controller's export(silent) hook."""
    def _export(silent: bool) -> Optional[Path]:
        return exporter.export(collect_chapters(list_messages(), options), silent=silent)
    return _export
