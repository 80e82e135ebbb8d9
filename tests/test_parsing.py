import pytest

from bookmark_ai.parsing import (
    clamp_unit,
    coerce_score,
    extract_tags_from_text,
    normalize_tags,
    parse_json_response,
)


def test_parse_json_response_plain_and_fenced():
    assert parse_json_response('{"a": 1}') == {"a": 1}
    assert parse_json_response('Here you go:\n```json\n{"a": 2}\n```') == {"a": 2}
    assert parse_json_response("```\n[1, 2]\n```") == [1, 2]


@pytest.mark.parametrize("content", ["", "not json", "```json\n{broken\n```", '{"tags": ["python"'])
def test_parse_json_response_returns_none_when_unparseable(content):
    assert parse_json_response(content) is None


def test_normalize_tags_cleans_dedupes_and_caps():
    raw = ["  Python ", "python", "WEB", "", 42, "x" * 31, "#data", "ml", "ai", "extra"]
    assert normalize_tags(raw) == ["python", "web", "data", "ml", "ai"]


def test_extract_tags_from_text_handles_prose_lists():
    content = "Tags: Python, Web Dev\n- ML\n* testing"
    assert extract_tags_from_text(content) == ["python", "web dev", "ml", "testing"]


def test_extract_tags_from_text_salvages_broken_json():
    assert extract_tags_from_text('{"tags": ["python", "web"') == ["python", "web"]


@pytest.mark.parametrize(
    "value,expected",
    [(0.5, 0.5), (1, 1.0), ("0.9", None), (True, None), (None, None), (float("nan"), None), (float("inf"), None)],
)
def test_coerce_score(value, expected):
    assert coerce_score(value) == expected


def test_clamp_unit():
    assert clamp_unit(-0.2) == 0.0
    assert clamp_unit(0.4) == 0.4
    assert clamp_unit(3.0) == 1.0
