"""Test recovery of malformed AI JSON."""

import pytest
from papertrader.nlp.json_repair import (
    RECOVERY_CHAIN, Err, Ok, RecoveryFailure, parse_closing_brackets, recover_json,
)


class TestRecoverJson:

    def test_valid_json(self):
        assert recover_json('{"a": 1}') == {"a": 1}

    def test_markdown_fences(self):
        text = '```json\n{"tweetAnalyses": []}\n```'
        assert recover_json(text) == {"tweetAnalyses": []}

    def test_surrounding_prose(self):
        assert recover_json('Here you go: {"a": 1} hope that helps') == {"a": 1}

    def test_unterminated_string_before_brace(self):
        assert recover_json('{"a": "b}') == {"a": "b"}

    def test_truncated_analysis_batch(self):
        """A completion cut off mid-object is closed into a valid partial object."""
        result = recover_json('{"tweetAnalyses": [ {"tweetId":"1"')
        assert result == {"tweetAnalyses": [{"tweetId": "1"}]}

    def test_truncated_inside_string(self):
        assert recover_json('{"summary": "markets are up') == {"summary": "markets are up"}

    def test_named_array_extraction(self):
        text = 'garbage "tweetAnalyses": [{"tweetId": "7"}] trailing }'
        assert recover_json(text) == {"tweetAnalyses": [{"tweetId": "7"}]}

    def test_unrecoverable_is_typed_failure(self):
        result = recover_json("not json at all")

        assert isinstance(result, RecoveryFailure)
        assert not result
        assert result.stage == "exhausted"

    @pytest.mark.parametrize("text", [None, "", "   ", "[1, 2]", "}{", '{"a": [}', "```"])
    def test_never_raises(self, text):
        result = recover_json(text)
        assert isinstance(result, (dict, RecoveryFailure))


def test_chain_order():
    """Attempts run cheapest first."""
    assert [name for name, _ in RECOVERY_CHAIN] == [
        "direct", "strip_fences", "brace_slice", "close_string", "close_brackets", "named_array",
    ]


def test_attempts_return_results():
    assert isinstance(parse_closing_brackets('{"a": [1, 2', "tweetAnalyses"), Ok)
    assert isinstance(parse_closing_brackets('{"a": 1}', "tweetAnalyses"), Err)


def test_dangling_key_is_dropped():
    assert recover_json('{"a": 1, "b":') == {"a": 1}
