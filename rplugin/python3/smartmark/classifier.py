import re
import unittest
from typing import Optional

from smartmark.types import ClassifiedLine, MarkerKind
from smartmark.resources import MARKERS, DEFAULT_SEPARATOR_LENGTH, MIN_TERMINATOR_REPEAT

class MarkerClassifier:
    def __init__(self,
                 separator_length: int = DEFAULT_SEPARATOR_LENGTH,
                 terminator: str = MARKERS.TERMINATOR):
        assert separator_length > 0, separator_length
        self.separator_length = separator_length
        self.terminator = terminator.strip() or MARKERS.TERMINATOR
        # the default dashed rule stays a separator whatever length is configured
        shortest = min(separator_length, DEFAULT_SEPARATOR_LENGTH)
        self.__separator_re = re.compile(rf'{re.escape(MARKERS.SEPARATOR_CHAR)}{{{shortest},}}')
        self.__terminator_re = re.compile(rf'[{MARKERS.TERMINATOR_CHARS}]{{{MIN_TERMINATOR_REPEAT},}}')

    def is_terminator(self, stripped: str) -> bool:
        return stripped == self.terminator or bool(self.__terminator_re.fullmatch(stripped))

    def is_separator(self, stripped: str) -> bool:
        return bool(self.__separator_re.fullmatch(stripped))

    @staticmethod
    def inline_payload(stripped: str, token: str) -> Optional[str]:
        if not stripped.startswith(token):
            return None
        # legacy form: ===text===
        if stripped.endswith(token) and len(stripped) > 2 * len(token):
            payload = stripped[len(token):-len(token)].strip()
            if payload:
                return payload
        payload = stripped[len(token):].strip()
        return payload or None

    def classify(self, line: str) -> ClassifiedLine:
        stripped = line.strip()
        if self.is_terminator(stripped):
            return ClassifiedLine(MarkerKind.TERMINATE, line)
        if self.is_separator(stripped):
            return ClassifiedLine(MarkerKind.SEPARATOR, line)
        if stripped == MARKERS.USER:
            return ClassifiedLine(MarkerKind.USER_BOUNDARY, line)
        if stripped == MARKERS.ASSISTANT:
            return ClassifiedLine(MarkerKind.ASSISTANT_BOUNDARY, line)
        payload = self.inline_payload(stripped, MARKERS.USER)
        if payload is not None:
            return ClassifiedLine(MarkerKind.USER_INLINE, line, payload)
        payload = self.inline_payload(stripped, MARKERS.ASSISTANT)
        if payload is not None:
            return ClassifiedLine(MarkerKind.ASSISTANT_INLINE, line, payload)
        return ClassifiedLine(MarkerKind.PLAIN, line)

DEFAULT_CLASSIFIER = MarkerClassifier()

def classify(line: str) -> ClassifiedLine:
    return DEFAULT_CLASSIFIER.classify(line)

class TestMarkerClassifier(unittest.TestCase):
    def assertKind(self, line: str, kind: MarkerKind, payload: str = ''):
        result = classify(line)
        self.assertEqual(result.kind, kind, line)
        self.assertEqual(result.payload, payload, line)

    def test_terminator(self):
        self.assertKind('=-=', MarkerKind.TERMINATE)
        self.assertKind('  =-=  ', MarkerKind.TERMINATE)
        self.assertKind('xxxx', MarkerKind.TERMINATE)
        self.assertKind('XxXxX', MarkerKind.TERMINATE)
        self.assertKind('xxx', MarkerKind.PLAIN)
        self.assertKind('=-= more', MarkerKind.PLAIN)

    def test_separator(self):
        self.assertKind('-----', MarkerKind.SEPARATOR)
        self.assertKind('----------', MarkerKind.SEPARATOR)
        self.assertKind(' ----- ', MarkerKind.SEPARATOR)
        self.assertKind('----', MarkerKind.PLAIN)
        self.assertKind('--- --', MarkerKind.PLAIN)

    def test_custom_separator_length(self):
        classifier = MarkerClassifier(separator_length=3)
        self.assertEqual(classifier.classify('---').kind, MarkerKind.SEPARATOR)
        self.assertEqual(classifier.classify('--').kind, MarkerKind.PLAIN)

    def test_long_separator_keeps_default_rule(self):
        classifier = MarkerClassifier(separator_length=10)
        self.assertEqual(classifier.classify('-' * 10).kind, MarkerKind.SEPARATOR)
        self.assertEqual(classifier.classify('-----').kind, MarkerKind.SEPARATOR)
        self.assertEqual(classifier.classify('----').kind, MarkerKind.PLAIN)
        from smartmark.document import TextDocument
        from smartmark.scanner import scan
        from smartmark.types import Role, Turn
        doc = TextDocument(['=== q', '-----', 'old answer', '= ='])
        self.assertEqual(scan(doc, 3, 5, classifier)[-1], Turn(Role.ASSISTANT, 'old answer'))

    def test_custom_terminator(self):
        classifier = MarkerClassifier(terminator='@@end@@')
        self.assertEqual(classifier.classify('@@end@@').kind, MarkerKind.TERMINATE)
        self.assertEqual(classifier.classify('=-=').kind, MarkerKind.PLAIN)
        self.assertEqual(classifier.classify('xxxx').kind, MarkerKind.TERMINATE)

    def test_boundaries(self):
        self.assertKind('===', MarkerKind.USER_BOUNDARY)
        self.assertKind('  ===\t', MarkerKind.USER_BOUNDARY)
        self.assertKind('= =', MarkerKind.ASSISTANT_BOUNDARY)
        self.assertKind(' = = ', MarkerKind.ASSISTANT_BOUNDARY)

    def test_inline(self):
        self.assertKind('=== What is 2+2?', MarkerKind.USER_INLINE, 'What is 2+2?')
        self.assertKind('===hello', MarkerKind.USER_INLINE, 'hello')
        self.assertKind('= = Paris.', MarkerKind.ASSISTANT_INLINE, 'Paris.')
        self.assertKind('===   ', MarkerKind.USER_BOUNDARY)

    def test_wrapped_inline(self):
        self.assertKind('===hello===', MarkerKind.USER_INLINE, 'hello')
        self.assertKind('=== hello world ===', MarkerKind.USER_INLINE, 'hello world')
        self.assertKind('= =hi= =', MarkerKind.ASSISTANT_INLINE, 'hi')
        self.assertKind('======', MarkerKind.USER_INLINE, '===')
        self.assertKind('=== ===', MarkerKind.USER_INLINE, '===')

    def test_plain(self):
        result = classify('  some text  ')
        self.assertEqual(result.kind, MarkerKind.PLAIN)
        self.assertEqual(result.text, '  some text  ')
        self.assertKind('', MarkerKind.PLAIN)
        self.assertKind('a === b', MarkerKind.PLAIN)
        self.assertKind('==', MarkerKind.PLAIN)

    def test_idempotent(self):
        for line in ['=== q', '-----', '= =', 'text', '=-=', '===a===']:
            self.assertEqual(classify(line), classify(line))

if __name__ == '__main__':
    unittest.main()
