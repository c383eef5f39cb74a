import unittest
from dataclasses import dataclass, field
from typing import List, Optional

from smartmark.classifier import MarkerClassifier, DEFAULT_CLASSIFIER
from smartmark.document import DocumentAccessor, TextDocument
from smartmark.resources import MARKERS, DEFAULT_SEPARATOR_LENGTH
from smartmark.types import MarkerKind, Role, ScanMode, Transcript, Turn

INLINE_ROLES = {
    MarkerKind.USER_INLINE: Role.USER,
    MarkerKind.ASSISTANT_INLINE: Role.ASSISTANT,
}

BOUNDARY_MODES = {
    MarkerKind.USER_BOUNDARY: ScanMode.COLLECTING_USER,
    MarkerKind.ASSISTANT_BOUNDARY: ScanMode.COLLECTING_ASSISTANT,
}

@dataclass
class ScanState:
    limit: int
    mode: ScanMode = ScanMode.NONE
    buffer: List[str] = field(default_factory=list)  # bottom-up
    turns: Transcript = field(default_factory=list)

    def is_full(self) -> bool:
        return len(self.turns) >= self.limit

    def emit(self, role: Role, content: str):
        content = content.strip()
        if content and not self.is_full():
            self.turns.insert(0, Turn(role, content))

    def flush(self):
        role = self.mode.role
        if role is not None and self.buffer:
            self.emit(role, '\n'.join(reversed(self.buffer)))
        self.buffer = []

    def reset(self, mode: ScanMode = ScanMode.NONE):
        self.mode = mode
        self.buffer = []

class ReverseContextScanner:
    """Rebuilds a transcript by walking a document upward from a line.

    ``budget`` counts user/assistant pairs, so at most ``2 * budget`` turns
    are returned, oldest first. A hard terminator stops the walk and drops
    whatever block was still open above it.
    """

    def __init__(self, classifier: Optional[MarkerClassifier] = None):
        self.classifier = classifier or DEFAULT_CLASSIFIER

    def scan(self, document: Optional[DocumentAccessor], start_line: int, budget: int) -> Transcript:
        if document is None or budget <= 0 or start_line < -1:
            return []
        last = document.last_line()
        if last < 0:
            return []
        if start_line == -1 or start_line > last:
            start_line = last

        state = ScanState(limit=2 * budget)
        for i in range(start_line, -1, -1):
            if state.is_full():
                break
            line = self.classifier.classify(document.get_line(i))
            kind = line.kind
            if kind == MarkerKind.TERMINATE:
                return state.turns
            elif kind == MarkerKind.SEPARATOR:
                state.flush()
                state.reset()
            elif kind in BOUNDARY_MODES:
                state.flush()
                state.reset(BOUNDARY_MODES[kind])
            elif kind in INLINE_ROLES:
                state.flush()
                state.emit(INLINE_ROLES[kind], line.payload)
                state.reset()
            elif state.mode != ScanMode.NONE:
                state.buffer.append(line.text)

        state.flush()
        return state.turns

def scan(document: Optional[DocumentAccessor], start_line: int, budget: int,
         classifier: Optional[MarkerClassifier] = None) -> Transcript:
    return ReverseContextScanner(classifier).scan(document, start_line, budget)

def render_transcript(turns: Transcript) -> List[str]:
    lines: List[str] = []
    for turn in turns:
        content = turn.content.split('\n')
        if turn.role == Role.USER:
            if len(content) == 1:
                lines.append(f'{MARKERS.USER} {turn.content}')
            else:
                lines += [MARKERS.USER, *content, MARKERS.USER]
        else:
            lines += [MARKERS.SEPARATOR_CHAR * DEFAULT_SEPARATOR_LENGTH, *content, MARKERS.ASSISTANT]
    return lines

class TestReverseContextScanner(unittest.TestCase):
    def scan_lines(self, lines: List[str], start: int, budget: int = 10) -> Transcript:
        return scan(TextDocument(lines), start, budget)

    def test_single_user_line(self):
        turns = self.scan_lines(['=== What is 2+2?'], 0, 1)
        self.assertEqual(turns, [Turn(Role.USER, 'What is 2+2?')])

    def test_assistant_block(self):
        turns = self.scan_lines(['-----', 'Paris is the capital.', '= ='], 2, 1)
        self.assertEqual(turns, [Turn(Role.ASSISTANT, 'Paris is the capital.')])

    def test_terminator_blocks_everything_above(self):
        lines = ['=== Q1', '-----', 'A1', '= =', '=-=', '=== Q2']
        self.assertEqual(self.scan_lines(lines, 4), [])
        self.assertEqual(self.scan_lines(lines, 5), [Turn(Role.USER, 'Q2')])
        self.assertEqual(self.scan_lines(lines, 3), [
            Turn(Role.USER, 'Q1'),
            Turn(Role.ASSISTANT, 'A1'),
        ])

    def test_terminator_discards_open_block(self):
        lines = ['xxxx', 'half written', '= =']
        self.assertEqual(self.scan_lines(lines, 2), [])

    def test_conversation(self):
        lines = [
            'notes outside any block',
            '=== Q1',
            '-----',
            'A1 line 1',
            '',
            'A1 line 2',
            '= =',
            '<!-- 2026-01-01 00:00:00 -->',
            '',
            '=== Q2',
            '-----',
            'A2',
            '= =',
            '===',
            'Q3 line 1',
            'Q3 line 2',
            '===',
        ]
        self.assertEqual(self.scan_lines(lines, -1), [
            Turn(Role.USER, 'Q1'),
            Turn(Role.ASSISTANT, 'A1 line 1\n\nA1 line 2'),
            Turn(Role.USER, 'Q2'),
            Turn(Role.ASSISTANT, 'A2'),
            Turn(Role.USER, 'Q3 line 1\nQ3 line 2'),
        ])

    def test_consecutive_same_role_not_merged(self):
        lines = ['=== a', '=== b', '= = c', '= = d']
        self.assertEqual(self.scan_lines(lines, 3), [
            Turn(Role.USER, 'a'),
            Turn(Role.USER, 'b'),
            Turn(Role.ASSISTANT, 'c'),
            Turn(Role.ASSISTANT, 'd'),
        ])

    def test_budget(self):
        lines = [f'=== q{i}' for i in range(10)]
        for budget in range(0, 7):
            turns = self.scan_lines(lines, 9, budget)
            self.assertEqual(len(turns), min(10, 2 * budget))
        self.assertEqual(self.scan_lines(lines, 9, 1), [Turn(Role.USER, 'q8'), Turn(Role.USER, 'q9')])

    def test_budget_with_flush_and_inline(self):
        lines = ['=== q', '-----', 'a', '= =', '=== r']
        # the inline turn on line 0 would be a third turn
        turns = self.scan_lines(lines, 4, 1)
        self.assertEqual(turns, [Turn(Role.ASSISTANT, 'a'), Turn(Role.USER, 'r')])

    def test_budget_zero_reads_nothing(self):
        class Untouchable(TextDocument):
            def get_line(self, i):
                raise AssertionError('read')
        self.assertEqual(scan(Untouchable(['=== q']), 0, 0), [])

    def test_no_document(self):
        self.assertEqual(scan(None, 3, 5), [])

    def test_start_beyond_end_is_clamped(self):
        self.assertEqual(self.scan_lines(['=== q'], 100), [Turn(Role.USER, 'q')])

    def test_unclosed_block_flushed_at_top(self):
        self.assertEqual(self.scan_lines(['partial answer', '= ='], 1), [Turn(Role.ASSISTANT, 'partial answer')])

    def test_empty_blocks_dropped(self):
        lines = ['-----', '   ', '= =', '===', '', '===']
        self.assertEqual(self.scan_lines(lines, 5), [])

    def test_malformed_never_raises(self):
        lines = ['= =', '===', '-----', '= = ', '=== ===', 'x', '----', '= =', '===a']
        for start in range(-1, len(lines)):
            self.scan_lines(lines, start)

    def test_custom_classifier(self):
        classifier = MarkerClassifier(separator_length=3, terminator='@@')
        doc = TextDocument(['=== old', '@@', '---', 'answer', '= ='])
        self.assertEqual(scan(doc, 4, 5, classifier), [Turn(Role.ASSISTANT, 'answer')])

    def test_render_round_trip(self):
        turns = [
            Turn(Role.USER, 'first question'),
            Turn(Role.ASSISTANT, 'an answer\nover two lines'),
            Turn(Role.ASSISTANT, 'another'),
            Turn(Role.USER, 'multi\n\nline question'),
            Turn(Role.USER, 'follow up'),
            Turn(Role.ASSISTANT, 'done'),
        ]
        lines = render_transcript(turns)
        self.assertEqual(self.scan_lines(lines, -1, len(turns)), turns)

if __name__ == '__main__':
    unittest.main()
