#!/usr/bin/env python3
"""
Tag extraction: pull the text inside chosen XML-like tags out of a raw AI reply.

Used by the exporter (and the preview/debug commands) so that only the story
body (e.g. <content>...</content>) ends up in the exported novel, while
thinking/narration blocks the model wraps in other tags are dropped.
"""
from __future__ import annotations

import argparse
import enum
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Tuple


DEFAULT_SEPARATOR = "\n\n"

# Comma, semicolon (ASCII + full-width) and any whitespace separate tags in user input.
TAG_INPUT_SPLIT_RE = re.compile(r"[,;，；\s]+")


class ExtractMode(str, enum.Enum):
    ALL = "all"
    TAGS = "tags"


@dataclass(frozen=True)
class ExtractionSpec:
    tags: Tuple[str, ...] = ()
    separator: str = DEFAULT_SEPARATOR
    mode: ExtractMode = ExtractMode.ALL

    @property
    def uses_tags(self) -> bool:
        """True when tag mode is on and at least one tag is configured."""
        return self.mode == ExtractMode.TAGS and len(self.tags) > 0


def parse_tag_input(s) -> List[str]:
    if not s or not isinstance(s, str):
        return []
    return [t.strip() for t in TAG_INPUT_SPLIT_RE.split(s) if t.strip()]


def build_tag_pattern(tag: str) -> re.Pattern:
    """
    <tag ...>content</tag>, case-insensitive, shortest span.
    Attributes in the opening tag are ignored; tag names are user input so they are escaped.
    """
    escaped = re.escape(tag)
    return re.compile(
        rf"<\s*{escaped}(?:\s[^>]*)?>(.*?)<\s*/\s*{escaped}\s*>",
        re.IGNORECASE | re.DOTALL,
    )


def extract_tag_contents(text: str, tags: Iterable[str], separator: str = DEFAULT_SEPARATOR) -> str:
    """
    Collect trimmed inner content of every match, all matches of the first tag
    first (in document order), then the second tag, and so on.
    """
    tags = list(tags or [])
    if not text or not tags:
        return ""
    parts: List[str] = []
    for tag in tags:
        t = tag.strip()
        if not t:
            continue
        for m in build_tag_pattern(t).finditer(text):
            content = m.group(1).strip()
            if content:
                parts.append(content)
    return separator.join(parts)


def extract(text: str, spec: ExtractionSpec) -> str:
    if spec.mode == ExtractMode.ALL:
        return text
    return extract_tag_contents(text, spec.tags, spec.separator)


def make_spec(extract_mode: str, extract_tags: str, tag_separator: str = DEFAULT_SEPARATOR) -> ExtractionSpec:
    """Build an ExtractionSpec from the raw settings values."""
    try:
        mode = ExtractMode(str(extract_mode or "all").strip().lower())
    except ValueError:
        raise ValueError(f"extract_mode must be one of {[m.value for m in ExtractMode]}, got {extract_mode!r}")
    return ExtractionSpec(
        tags=tuple(parse_tag_input(extract_tags)),
        separator=tag_separator if tag_separator is not None else DEFAULT_SEPARATOR,
        mode=mode,
    )


def unescape_separator(s: str) -> str:
    """Settings and CLI accept a literal backslash-n for newlines."""
    return s.replace("\\n", "\n")


# ----------------------------
# CLI
# ----------------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tag_extract", description="Extract tagged sections from a saved AI reply.")
    p.add_argument("file", help="Text file containing the raw reply.")
    p.add_argument("--tags", required=True, help="Tags to extract, separated by spaces, commas or semicolons.")
    p.add_argument("--separator", default="\\n\\n", help="Joiner between extracted sections (\\n allowed).")
    return p


def main() -> int:
    ns = build_parser().parse_args()
    text = Path(ns.file).read_text(encoding="utf-8")
    spec = ExtractionSpec(
        tags=tuple(parse_tag_input(ns.tags)),
        separator=unescape_separator(ns.separator),
        mode=ExtractMode.TAGS,
    )
    result = extract(text, spec)
    if not result:
        print(f"No content found for tags {list(spec.tags)}", file=sys.stderr)
        return 1
    print(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
