"""Unit tests for JSON extraction from model output."""

from cadence.providers.json_utils import extract_json_object


def test_plain_object():
    assert extract_json_object('{"action": "wait"}') == {"action": "wait"}


def test_fenced_object_with_prose():
    text = 'Sure! Here you go:\n```json\n{"action": "respond", "reason": "hi"}\n```\nthanks'
    assert extract_json_object(text) == {"action": "respond", "reason": "hi"}


def test_braces_inside_strings():
    assert extract_json_object('prefix {"a": "x } y", "b": 1} suffix') == {"a": "x } y", "b": 1}


def test_trailing_commas_and_comments_repaired():
    text = '{\n  "action": "wait", // waiting\n  "wait_seconds": 40,\n}'
    assert extract_json_object(text) == {"action": "wait", "wait_seconds": 40}


def test_nothing_usable():
    assert extract_json_object("") is None
    assert extract_json_object("no json here") is None
    assert extract_json_object("[1, 2, 3]") is None
