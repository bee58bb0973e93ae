"""
Unit tests for lenient JSON payload extraction.
"""

from atlas_ai.core.payload import extract_payload


class TestExtractPayload:
    """Test finding JSON embedded in free text."""

    def test_plain_object(self):
        """Test a reply that is only JSON."""
        assert extract_payload('{"subject": "Physics"}') == {"subject": "Physics"}

    def test_object_with_surrounding_prose(self):
        """Test JSON wrapped in explanation text."""
        reply = 'Sure! Here it is:\n{"examType": "GCSE", "topic": null}\nHope that helps.'

        assert extract_payload(reply) == {"examType": "GCSE", "topic": None}

    def test_fenced_block(self):
        """Test JSON inside a markdown code fence."""
        reply = '```json\n{"subject": "Biology"}\n```'

        assert extract_payload(reply) == {"subject": "Biology"}

    def test_braces_inside_strings(self):
        """Test brackets inside string values do not end the payload."""
        reply = 'x {"topic": "sets {A} and [B]", "n": 1} y'

        assert extract_payload(reply) == {"topic": "sets {A} and [B]", "n": 1}

    def test_skips_invalid_candidate(self):
        """Test a malformed first candidate is skipped."""
        reply = "{not json} then {\"ok\": true}"

        assert extract_payload(reply) == {"ok": True}

    def test_kind_filters_payload_type(self):
        """Test requesting a list skips leading objects."""
        reply = 'meta {"a": 1} data [{"question": "Q1"}]'

        assert extract_payload(reply, kind=list) == [{"question": "Q1"}]
        assert extract_payload(reply, kind=dict) == {"a": 1}

    def test_no_payload(self):
        """Test replies without JSON return None."""
        assert extract_payload("I could not parse that query.") is None
        assert extract_payload("") is None
        assert extract_payload('{"unterminated": ') is None

    def test_deeply_nested_candidate_skipped(self):
        """Test nesting too deep to decode is skipped instead of raising."""
        deep = "[" * 200000 + "]" * 200000

        assert extract_payload('{"subject": ' + deep + "}") is None
        assert extract_payload(deep + ' then {"ok": true}') == {"ok": True}
