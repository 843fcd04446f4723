"""Tag extraction and tag input parsing."""

from __future__ import annotations

import pytest

from tag_extract import (
    ExtractMode,
    ExtractionSpec,
    extract,
    extract_tag_contents,
    make_spec,
    parse_tag_input,
    unescape_separator,
)


def _tags(*tags: str, sep: str = "\n\n") -> ExtractionSpec:
    return ExtractionSpec(tags=tuple(tags), separator=sep, mode=ExtractMode.TAGS)


@pytest.mark.parametrize("text", ["", "plain", "<content>x</content>", "  spaced  \n"])
def test_all_mode_returns_text_unchanged(text: str) -> None:
    spec = ExtractionSpec(tags=("content",), mode=ExtractMode.ALL)
    assert extract(text, spec) == text


def test_single_tag_returns_trimmed_content() -> None:
    assert extract("<content>  hello world \n</content>", _tags("content")) == "hello world"


def test_absent_tag_returns_empty() -> None:
    assert extract("<content>hello</content>", _tags("detail")) == ""


def test_tag_list_order_beats_document_order() -> None:
    text = "<b>2</b><a>1</a>"
    assert extract(text, _tags("a", "b", sep="|")) == "1|2"


def test_multiple_matches_keep_document_order_within_tag() -> None:
    text = "<p>one</p> filler <q>mid</q> <p>two</p>"
    assert extract(text, _tags("p", "q", sep=",")) == "one,two,mid"


def test_case_insensitive_and_attributes_ignored() -> None:
    text = '<Content class="main">body</CONTENT>'
    assert extract(text, _tags("content")) == "body"


def test_whitespace_inside_tag_delimiters() -> None:
    assert extract("< content >body< / content >", _tags("content")) == "body"


def test_non_greedy_first_close_wins() -> None:
    text = "<c>outer <c>inner</c> tail</c>"
    assert extract(text, _tags("c")) == "outer <c>inner"


def test_multiline_content() -> None:
    text = "<content>line one\nline two</content>"
    assert extract(text, _tags("content")) == "line one\nline two"


def test_empty_matches_are_dropped() -> None:
    text = "<a>  </a><a>kept</a><a></a>"
    assert extract(text, _tags("a", sep="+")) == "kept"


def test_special_characters_in_tag_are_escaped() -> None:
    text = "<a.b>dot</a.b><axb>nope</axb>"
    assert extract(text, _tags("a.b")) == "dot"


def test_empty_tags_or_text_returns_empty() -> None:
    assert extract("<a>x</a>", _tags()) == ""
    assert extract("", _tags("a")) == ""
    assert extract_tag_contents("<a>x</a>", []) == ""


def test_blank_tag_entries_are_skipped() -> None:
    assert extract_tag_contents("<a>x</a>", ["  ", "a"]) == "x"


def test_non_latin_tag_names() -> None:
    text = "<思考>skip</思考><正文>故事内容</正文>"
    assert extract(text, _tags("正文")) == "故事内容"


def test_parse_tag_input_splits_on_all_separators() -> None:
    assert parse_tag_input("content, detail;正文，旁白；x\ny  z") == [
        "content", "detail", "正文", "旁白", "x", "y", "z",
    ]


@pytest.mark.parametrize("value", [None, "", "   ", 42])
def test_parse_tag_input_rejects_empty_or_non_string(value) -> None:
    assert parse_tag_input(value) == []


def test_make_spec_and_uses_tags() -> None:
    spec = make_spec("TAGS", "content detail", "\n")
    assert spec.mode == ExtractMode.TAGS
    assert spec.tags == ("content", "detail")
    assert spec.uses_tags
    assert not make_spec("tags", "", "\n").uses_tags
    assert not make_spec("all", "content").uses_tags


def test_make_spec_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError):
        make_spec("regex", "a")


def test_unescape_separator() -> None:
    assert unescape_separator("\\n---\\n") == "\n---\n"
