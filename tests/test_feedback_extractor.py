"""
Unit tests for the feedback extractor.

Malformed feedback must degrade to "no feedback", never to a lost message.
"""

import pytest

from convo_coach.feedback import extract_feedback


class TestWellFormedBlocks:
    """Replies that carry a parseable feedback block."""

    def test_block_after_prose(self):
        raw = (
            "Great! What did you have for lunch?\n"
            '{"grammarFix": "I ate lunch", "betterPhrase": "I grabbed lunch", "fluencyTip": "None"}'
        )
        result = extract_feedback(raw)

        assert result.display_text == "Great! What did you have for lunch?"
        assert result.feedback.grammar_fix == "I ate lunch"
        assert result.feedback.better_phrase == "I grabbed lunch"
        assert result.feedback.fluency_tip is None

    def test_block_between_prose(self):
        raw = 'Nice! {"grammarFix": "None", "betterPhrase": "None", "fluencyTip": "None"} Keep going!'
        result = extract_feedback(raw)

        assert result.display_text == "Nice!  Keep going!"
        assert result.feedback.is_grammar_clean
        assert not result.feedback.suggests_improvement

    def test_fenced_block_removed_with_fence(self):
        raw = (
            "Good try!\n```json\n"
            '{"grammarFix": "She goes", "betterPhrase": "None", "fluencyTip": "Slow down a little"}\n'
            "```"
        )
        result = extract_feedback(raw)

        assert result.display_text == "Good try!"
        assert result.feedback.grammar_fix == "She goes"
        assert result.feedback.fluency_tip == "Slow down a little"

    def test_multiline_block(self):
        raw = (
            "Let's keep going!\n"
            "{\n"
            '  "grammarFix": "None",\n'
            '  "betterPhrase": "I am keen to travel",\n'
            '  "fluencyTip": "None"\n'
            "}"
        )
        result = extract_feedback(raw)

        assert result.display_text == "Let's keep going!"
        assert result.feedback.better_phrase == "I am keen to travel"

    @pytest.mark.parametrize("marker", ["None", "none", "NONE", " None "])
    def test_none_marker_case_insensitive(self, marker):
        raw = f'Ok. {{"grammarFix": "{marker}", "betterPhrase": "x", "fluencyTip": "y"}}'
        result = extract_feedback(raw)

        assert result.feedback.grammar_fix is None

    def test_json_null_is_the_marker(self):
        raw = 'Ok. {"grammarFix": null, "betterPhrase": null, "fluencyTip": null}'
        result = extract_feedback(raw)

        assert result.feedback.is_grammar_clean

    def test_missing_optional_fields_default_to_marker(self):
        result = extract_feedback('Ok. {"grammarFix": "I have been"}')

        assert result.feedback.grammar_fix == "I have been"
        assert result.feedback.better_phrase is None
        assert result.feedback.fluency_tip is None

    def test_only_first_block_is_removed(self):
        first = '{"grammarFix": "one", "betterPhrase": "None", "fluencyTip": "None"}'
        second = '{"grammarFix": "two", "betterPhrase": "None", "fluencyTip": "None"}'
        result = extract_feedback(f"Hi {first} and {second}")

        assert result.feedback.grammar_fix == "one"
        assert result.display_text == f"Hi  and {second}"


class TestDegradation:
    """Anything unexpected returns the reply verbatim with no feedback."""

    def test_no_block(self):
        raw = "Just a friendly reply."
        result = extract_feedback(raw)

        assert result.display_text == raw
        assert result.feedback is None

    def test_invalid_json(self):
        raw = "Reply {\"grammarFix\": \"oops\", betterPhrase: }"
        result = extract_feedback(raw)

        assert result.display_text == raw
        assert result.feedback is None

    def test_non_string_field(self):
        raw = 'Reply {"grammarFix": 3, "betterPhrase": "None", "fluencyTip": "None"}'
        result = extract_feedback(raw)

        assert result.display_text == raw
        assert result.feedback is None

    def test_braces_without_feedback_key(self):
        raw = 'Reply {"tip": "None"}'
        assert extract_feedback(raw) == (raw, None)

    def test_empty_reply(self):
        assert extract_feedback("") == ("", None)

    def test_whitespace_preserved_when_no_block(self):
        raw = "  padded reply \n"
        assert extract_feedback(raw).display_text == raw
