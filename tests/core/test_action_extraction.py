"""Tests for post-action JSON extraction and validation."""

from __future__ import annotations

import pytest

from promptcascade.core.actions.extraction import (
    configured_json_path,
    extract_json_from_response,
    get_nested_value,
    validate_action_response,
)
from promptcascade.core.errors import JsonExtractionError


class TestExtractJson:
    """Tests for extract_json_from_response."""

    def test_plain_json(self):
        """Bare JSON parses."""
        assert extract_json_from_response(' {"a": 1} ') == {"a": 1}

    def test_fenced_json(self):
        """A ```json fence is unwrapped."""
        response = 'Here you go:\n```json\n{"items": [1, 2]}\n```\nEnjoy!'

        assert extract_json_from_response(response) == {"items": [1, 2]}

    def test_unlabelled_fence(self):
        """A plain ``` fence is unwrapped too."""
        assert extract_json_from_response("```\n[1]\n```") == [1]

    def test_not_json(self):
        """Prose raises JsonExtractionError."""
        with pytest.raises(JsonExtractionError, match="JSON parse error"):
            extract_json_from_response("Sure! Here are three ideas.")


class TestNestedValue:
    """Tests for get_nested_value and configured_json_path."""

    def test_paths(self):
        """Dot paths walk dicts and list indexes."""
        data = {"a": {"b": [{"c": "x"}]}}

        assert get_nested_value(data, "a.b.0.c") == "x"
        assert get_nested_value(data, "a.b.5") is None
        assert get_nested_value(data, "a.missing.c") is None
        assert get_nested_value(data, "root") is data
        assert get_nested_value(data, "") is data

    def test_configured_path(self):
        """json_path may be a string or list; default is "sections"."""
        assert configured_json_path({"json_path": "items"}) == "items"
        assert configured_json_path({"json_path": ["first", "second"]}) == "first"
        assert configured_json_path({}) == "sections"
        assert configured_json_path(None) == "sections"


class TestValidateActionResponse:
    """Tests for validate_action_response."""

    def test_array_found(self):
        """An array at json_path is valid."""
        validation = validate_action_response({"items": [1, 2]}, {"json_path": "items"}, "create_children_json")

        assert validation.valid
        assert validation.item_count == 2
        assert not validation.is_empty

    def test_empty_array(self):
        """An empty array is valid but empty."""
        validation = validate_action_response({"items": []}, {"json_path": "items"}, "create_children_json")

        assert validation.valid
        assert validation.is_empty

    def test_wrong_path_suggests_array_key(self):
        """Available arrays are listed and the first suggested."""
        validation = validate_action_response(
            {"ideas": [1], "tags": ["x"], "title": "t"}, {"json_path": "items"}, "create_children_json"
        )

        assert not validation.valid
        assert validation.available_arrays == ["ideas", "tags"]
        assert validation.suggestion == 'Try setting json_path to "ideas"'
        assert "NoneType" in validation.error

    def test_stringified_json(self):
        """A string at the path hints at stringified JSON."""
        validation = validate_action_response(
            {"items": "[1, 2]"}, {"json_path": "items"}, "create_children_json"
        )

        assert "stringified JSON" in validation.suggestion

    def test_root_array(self):
        """A top-level array suggests json_path "root"."""
        validation = validate_action_response([1, 2], {"json_path": "items"}, "create_children_json")

        assert '"root"' in validation.suggestion
        assert validate_action_response([1, 2], {"json_path": "root"}, "create_children_json").valid

    def test_non_array_actions_always_valid(self):
        """Only array actions are shape-checked."""
        assert validate_action_response({}, {}, "create_children_text").valid
