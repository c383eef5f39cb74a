import unittest
from typing import List

from smartmark.log import timer
from smartmark.resources import DEFAULT_OPENAI_MODEL, FALLBACK_TIKTOKEN_ENCODING
from smartmark.types import Role, Transcript, Turn

class TokenCounter:
    def __init__(self, model: str = DEFAULT_OPENAI_MODEL, use_tiktoken: bool = True):
        self.model = model
        self.use_tiktoken = use_tiktoken
        self.__encoding = None

    def get_encoding(self):
        if self.__encoding is None:
            timer.record('import tiktoken begin')
            import tiktoken
            timer.record('import tiktoken end')
            try:
                self.__encoding = tiktoken.encoding_for_model(self.model)
            except KeyError:
                self.__encoding = tiktoken.get_encoding(FALLBACK_TIKTOKEN_ENCODING)
        return self.__encoding

    def count_tokens(self, inputs: List[str]) -> List[int]:
        if not self.use_tiktoken:
            return [(len(input.encode('utf-8')) + 3) // 4 for input in inputs]
        tokens = self.get_encoding().encode_batch(inputs, disallowed_special=())
        return [len(t) for t in tokens]

    def count_token(self, text: str) -> int:
        return self.count_tokens([text])[0]

def trim_transcript(turns: Transcript, limit: int, counter: TokenCounter) -> Transcript:
    """Drop the oldest turns until the rest fit in ``limit`` tokens.

    The newest turn is always kept, even when it alone exceeds the limit.
    """
    if limit <= 0 or not turns:
        return turns
    tokens = counter.count_tokens([turn.content for turn in turns])
    total = sum(tokens)
    start = 0
    while total > limit and start < len(turns) - 1:
        total -= tokens[start]
        start += 1
    return turns[start:]

class TestTokenCounter(unittest.TestCase):
    def tiktoken_counter(self, model: str) -> TokenCounter:
        counter = TokenCounter(model=model)
        try:
            counter.get_encoding()
        except Exception as e:  # encodings are downloaded on first use
            self.skipTest(f'tiktoken encoding unavailable: {e}')
        return counter

    def test_estimate(self):
        counter = TokenCounter(use_tiktoken=False)
        self.assertEqual(counter.count_tokens(['', 'abcd', 'abcde']), [0, 1, 2])

    def test_tiktoken(self):
        counter = self.tiktoken_counter('gpt-4o')
        self.assertEqual(counter.count_token('hello'), 1)
        self.assertGreater(counter.count_token('hello world, this is a longer sentence'), 5)

    def test_fallback_encoding_chosen_for_unknown_model(self):
        from unittest import mock
        encoding = mock.Mock()
        encoding.encode_batch.return_value = [[1, 2], [3]]
        with mock.patch('tiktoken.encoding_for_model', side_effect=KeyError('some-local-model')) as for_model, \
                mock.patch('tiktoken.get_encoding', return_value=encoding) as get_encoding:
            counter = TokenCounter(model='some-local-model')
            self.assertEqual(counter.count_tokens(['ab', 'c']), [2, 1])
            self.assertEqual(counter.count_tokens(['ab', 'c']), [2, 1])
        for_model.assert_called_once_with('some-local-model')
        get_encoding.assert_called_once_with(FALLBACK_TIKTOKEN_ENCODING)
        self.assertEqual(FALLBACK_TIKTOKEN_ENCODING, 'o200k_base')

    def test_unknown_model_falls_back(self):
        counter = self.tiktoken_counter('some-local-model')
        self.assertEqual(counter.count_token('hello'), 1)

class TestTrimTranscript(unittest.TestCase):
    def setUp(self):
        self.counter = TokenCounter(use_tiktoken=False)
        self.turns = [
            Turn(Role.USER, 'a' * 40),       # 10 tokens
            Turn(Role.ASSISTANT, 'b' * 40),  # 10 tokens
            Turn(Role.USER, 'c' * 8),        # 2 tokens
        ]

    def test_no_limit(self):
        self.assertEqual(trim_transcript(self.turns, 0, self.counter), self.turns)

    def test_fits(self):
        self.assertEqual(trim_transcript(self.turns, 22, self.counter), self.turns)

    def test_drop_oldest(self):
        self.assertEqual(trim_transcript(self.turns, 21, self.counter), self.turns[1:])
        self.assertEqual(trim_transcript(self.turns, 12, self.counter), self.turns[1:])
        self.assertEqual(trim_transcript(self.turns, 11, self.counter), self.turns[2:])

    def test_keeps_newest(self):
        self.assertEqual(trim_transcript(self.turns, 1, self.counter), self.turns[2:])

    def test_empty(self):
        self.assertEqual(trim_transcript([], 10, self.counter), [])

if __name__ == '__main__':
    unittest.main()
