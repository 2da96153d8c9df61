"""Tests for the character-based token estimator."""

from chatnest.models import Message
from chatnest.service.tokens import CHARS_PER_TOKEN, estimate_text_tokens, estimate_tokens


class TestEstimateTextTokens:
    def test_empty_text_is_zero(self):
        assert estimate_text_tokens("") == 0

    def test_rounds_up_partial_tokens(self):
        assert estimate_text_tokens("a") == 1
        assert estimate_text_tokens("abcd") == 1
        assert estimate_text_tokens("abcde") == 2

    def test_uses_four_characters_per_token(self):
        assert CHARS_PER_TOKEN == 4
        assert estimate_text_tokens("x" * 400) == 100


class TestEstimateTokens:
    def test_empty_history_is_zero(self):
        assert estimate_tokens([]) == 0

    def test_joins_contents_with_spaces(self):
        messages = [Message.user("abc"), Message.assistant("defg")]
        # "abc defg" is 8 characters
        assert estimate_tokens(messages) == 2

    def test_non_decreasing_as_content_grows(self):
        previous = 0
        history = []
        for length in range(0, 60, 7):
            history.append(Message.user("y" * length))
            current = estimate_tokens(history)
            assert current >= previous
            previous = current

    def test_never_negative(self):
        assert estimate_tokens([Message.user("")]) >= 0
