"""Tests for locating the JSON body in model output."""

import json

from liminal.domain.recognition.json_extraction import PayloadKind, extract_json_payload


class TestExtractJsonPayload:
    """Tests for fence handling."""

    def test_raw_json(self):
        payload = extract_json_payload('  {"a": 1}  ')

        assert payload.kind == PayloadKind.RAW
        assert json.loads(payload.text) == {"a": 1}

    def test_json_fence(self):
        content = 'Here you go:\n```json\n{"a": 1}\n```\nThanks'

        payload = extract_json_payload(content)

        assert payload.kind == PayloadKind.JSON_FENCE
        assert json.loads(payload.text) == {"a": 1}

    def test_generic_fence(self):
        payload = extract_json_payload('```\n{"b": 2}\n```')

        assert payload.kind == PayloadKind.GENERIC_FENCE
        assert json.loads(payload.text) == {"b": 2}

    def test_json_fence_preferred_over_earlier_generic(self):
        content = '```\nnot this\n```\n```json\n{"c": 3}\n```'

        payload = extract_json_payload(content)

        assert payload.kind == PayloadKind.JSON_FENCE
        assert json.loads(payload.text) == {"c": 3}

    def test_unterminated_fence_does_not_raise(self):
        payload = extract_json_payload('```json\n{"d": 4')

        assert payload.kind == PayloadKind.UNTERMINATED_FENCE
        assert payload.text == '{"d": 4'

    def test_unterminated_generic_fence(self):
        payload = extract_json_payload('prefix ```\n{"e": 5}')

        assert payload.kind == PayloadKind.UNTERMINATED_FENCE
        assert json.loads(payload.text) == {"e": 5}
