import threading
import unittest
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Hashable, Optional

from smartmark.config import Config
from smartmark.document import DocumentAccessor, TextDocument
from smartmark.errors import InvalidWriterState, NoActiveDocument, WriterAlreadyOpen
from smartmark.resources import MARKERS, THOUGHT_TAG_REWRITES
from smartmark.scanner import scan
from smartmark.types import InsertionCursor, Role, Turn

_open_writers_lock = threading.Lock()
_open_writers: Dict[Hashable, 'StreamingWriter'] = {}

def is_document_busy(document: Optional[DocumentAccessor]) -> bool:
    if document is None:
        return False
    with _open_writers_lock:
        return document.key in _open_writers

class ThoughtTagRewriter:
    """Rewrites thought tags in streamed text, holding back split tags."""

    def __init__(self, rewrites: Dict[str, str] = THOUGHT_TAG_REWRITES):
        self.rewrites = rewrites
        self.pending = ''

    def partial_tag_length(self, text: str) -> int:
        hold = 0
        for tag in self.rewrites:
            for n in range(min(len(tag) - 1, len(text)), hold, -1):
                if text.endswith(tag[:n]):
                    hold = n
                    break
        return hold

    def feed(self, chunk: str) -> str:
        text = self.pending + chunk
        for tag, replacement in self.rewrites.items():
            text = text.replace(tag, replacement)
        hold = self.partial_tag_length(text)
        self.pending = text[len(text) - hold:] if hold else ''
        return text[:len(text) - hold]

    def flush(self) -> str:
        text, self.pending = self.pending, ''
        return text

class WriterState(Enum):
    IDLE = 'idle'
    OPEN = 'open'
    CLOSED = 'closed'

class StreamingWriter:
    """Writes one assistant block into a document as chunks arrive.

    Text always goes after the last character this writer wrote. That spot is
    kept as a document anchor, so lines added or removed elsewhere while
    streaming carry the block along instead of splitting it. ``cursor`` keeps
    the position where the content started.
    Only one writer may be open per document.
    """

    def __init__(self, document: Optional[DocumentAccessor],
                 config: Optional[Config] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.document = document
        self.cfg = config or Config()
        self.clock = clock
        self.state = WriterState.IDLE
        self.cursor: Optional[InsertionCursor] = None
        self.anchor: Optional[int] = None
        self.cancelled = False
        self.rewriter = ThoughtTagRewriter()

    @property
    def is_open(self) -> bool:
        return self.state == WriterState.OPEN

    def __check_open(self, operation: str):
        if self.state != WriterState.OPEN:
            raise InvalidWriterState(f'cannot {operation} while writer is {self.state.value}')

    def __claim(self, document: DocumentAccessor):
        with _open_writers_lock:
            owner = _open_writers.get(document.key)
            if owner is not None:
                raise WriterAlreadyOpen(f'document {document.key!r} already has an open writer')
            _open_writers[document.key] = self

    def __release(self):
        assert self.document is not None
        with _open_writers_lock:
            if _open_writers.get(self.document.key) is self:
                del _open_writers[self.document.key]

    def separator(self) -> str:
        return MARKERS.SEPARATOR_CHAR * self.cfg.separator_length

    def metadata_comment(self) -> str:
        stamp = self.clock().strftime('%Y-%m-%d %H:%M:%S')
        if self.cfg.model:
            stamp = f'{stamp} {self.cfg.model}'
        return f'<!-- {stamp} -->'

    def open(self, after_line: int) -> InsertionCursor:
        if self.document is None:
            raise NoActiveDocument()
        if self.state == WriterState.OPEN:
            raise WriterAlreadyOpen('writer already has an open cursor')
        if self.state == WriterState.CLOSED:
            raise InvalidWriterState('writer is closed, create a new one')
        document = self.document
        last = document.last_line()
        if not 0 <= after_line <= last:
            raise IndexError(f'line {after_line} out of range 0..{last}')

        self.__claim(document)
        try:
            if after_line == last:
                document.replace_range('\n', after_line, len(document.get_line(after_line)))
                document.replace_range(self.separator() + '\n', after_line + 1, 0)
            else:
                document.replace_range(self.separator() + '\n\n', after_line + 1, 0)
            self.anchor = document.add_anchor(after_line + 2, 0)
        except BaseException:
            self.__release()
            raise

        self.cursor = InsertionCursor(line=after_line + 2, column=0)
        self.state = WriterState.OPEN
        return self.cursor

    def head(self):
        assert self.document is not None and self.anchor is not None
        return self.document.anchor_position(self.anchor)

    def __write(self, text: str):
        if not text:
            return
        assert self.document is not None and self.cursor is not None and self.anchor is not None
        self.document.insert_at_anchor(self.anchor, text)
        self.cursor.bytes_written += len(text)

    def append(self, chunk: str):
        self.__check_open('append')
        self.__write(self.rewriter.feed(chunk))

    def finalize(self, normal: bool = True):
        self.__check_open('finalize')
        try:
            text = self.rewriter.flush()
            if not normal:
                text += '\n' + self.cfg.interruption_tag
            text += '\n' + MARKERS.ASSISTANT
            if self.cfg.include_timestamp:
                text += '\n' + self.metadata_comment()
            self.__write(text + '\n')
        finally:
            self.state = WriterState.CLOSED
            if self.anchor is not None:
                self.document.remove_anchor(self.anchor)
                self.anchor = None
            self.__release()

    def cancel(self):
        self.cancelled = True
        self.finalize(False)

class TestThoughtTagRewriter(unittest.TestCase):
    def test_whole_tags(self):
        rewriter = ThoughtTagRewriter()
        self.assertEqual(rewriter.feed('<think>hmm</think>ok'), '[think]hmm[/think]ok')
        self.assertEqual(rewriter.flush(), '')

    def test_split_tags(self):
        rewriter = ThoughtTagRewriter()
        out = ''
        for chunk in ['a<th', 'ink>b</', 't', 'hink> c']:
            out += rewriter.feed(chunk)
        out += rewriter.flush()
        self.assertEqual(out, 'a[think]b[/think] c')

    def test_held_back_until_flush(self):
        rewriter = ThoughtTagRewriter()
        self.assertEqual(rewriter.feed('x <'), 'x ')
        self.assertEqual(rewriter.flush(), '<')
        self.assertEqual(rewriter.feed('a < b'), 'a < b')

class TestStreamingWriter(unittest.TestCase):
    def setUp(self):
        self.clock = lambda: datetime(2026, 1, 2, 3, 4, 5)
        self.cfg = Config(model='test-model', include_timestamp=False)
        self.doc = TextDocument(['=== hi', '-----', 'hello', '= =', '=== What?'])

    def new_writer(self, document: Optional[TextDocument] = None) -> StreamingWriter:
        return StreamingWriter(document or self.doc, self.cfg, clock=self.clock)

    def test_stream_and_finalize(self):
        writer = self.new_writer()
        cursor = writer.open(4)
        self.assertEqual((cursor.line, cursor.column), (6, 0))
        self.assertEqual(self.doc.lines[5], '-----')
        writer.append('Hello')
        writer.append(' world')
        self.assertEqual(writer.cursor.bytes_written, 11)
        writer.finalize(True)
        self.assertEqual(self.doc.lines[4:], ['=== What?', '-----', 'Hello world', '= =', ''])
        turns = scan(self.doc, 7, 10)
        self.assertEqual(turns[-1], Turn(Role.ASSISTANT, 'Hello world'))
        self.assertEqual(turns[-2], Turn(Role.USER, 'What?'))

    def test_open_in_middle(self):
        writer = self.new_writer()
        writer.open(0)
        writer.append('A')
        writer.finalize()
        self.assertEqual(self.doc.lines[:6], ['=== hi', '-----', 'A', '= =', '', '-----'])

    def test_multiline_chunks(self):
        writer = self.new_writer()
        writer.open(4)
        writer.append('line 1\nli')
        writer.append('ne 2\n\nline 4')
        writer.finalize()
        self.assertEqual(self.doc.lines[6:], ['line 1', 'line 2', '', 'line 4', '= =', ''])
        self.assertEqual(scan(self.doc, 10, 1)[-1], Turn(Role.ASSISTANT, 'line 1\nline 2\n\nline 4'))

    def test_writes_after_own_text_despite_edits_below(self):
        writer = self.new_writer()
        writer.open(0)
        writer.append('abc')
        self.doc.replace_range('edited ', 6, 0)
        writer.append('def')
        writer.finalize()
        self.assertEqual(self.doc.lines[2], 'abcdef')

    def test_lines_added_above_while_streaming(self):
        doc = TextDocument(['=== first', '-----', 'old', '= =', '=== What?'])
        writer = self.new_writer(doc)
        writer.open(4)
        writer.append('Hello')
        doc.replace_range('a note typed above\n', 0, 0)
        self.assertEqual(writer.head(), (7, 5))
        writer.append(' world')
        writer.finalize()
        self.assertEqual(doc.lines[5:], ['=== What?', '-----', 'Hello world', '= =', ''])
        self.assertEqual(scan(doc, 8, 1)[-1], Turn(Role.ASSISTANT, 'Hello world'))
        self.assertEqual(doc.anchors, {})

    def test_lines_removed_above_while_streaming(self):
        writer = self.new_writer()
        writer.open(4)
        writer.append('one\ntw')
        self.doc.delete_lines(0, 4)
        writer.append('o')
        writer.finalize()
        self.assertEqual(self.doc.lines, ['=== What?', '-----', 'one', 'two', '= =', ''])

    def test_cancel_marks_interruption(self):
        writer = self.new_writer()
        writer.open(4)
        writer.append('partial')
        writer.cancel()
        self.assertTrue(writer.cancelled)
        self.assertEqual(self.doc.lines[6:], ['partial', '[interrupted]', '= =', ''])
        turn = scan(self.doc, 8, 1)[-1]
        self.assertEqual(turn, Turn(Role.ASSISTANT, 'partial\n[interrupted]'))

    def test_timestamp_comment(self):
        self.cfg.include_timestamp = True
        writer = self.new_writer()
        writer.open(4)
        writer.append('ok')
        writer.finalize()
        self.assertEqual(self.doc.lines[7:], ['= =', '<!-- 2026-01-02 03:04:05 test-model -->', ''])

    def test_thought_tags_rewritten(self):
        writer = self.new_writer()
        writer.open(4)
        writer.append('<thi')
        writer.append('nk>plan</think>answer')
        writer.finalize()
        self.assertEqual(self.doc.lines[6], '[think]plan[/think]answer')

    def test_invalid_states(self):
        writer = self.new_writer()
        with self.assertRaises(InvalidWriterState):
            writer.append('x')
        with self.assertRaises(InvalidWriterState):
            writer.finalize()
        writer.open(4)
        writer.finalize()
        with self.assertRaises(InvalidWriterState):
            writer.append('x')
        with self.assertRaises(InvalidWriterState):
            writer.finalize()
        with self.assertRaises(InvalidWriterState):
            writer.open(4)

    def test_single_open_writer_per_document(self):
        first = self.new_writer()
        first.open(4)
        first.append('one')
        self.assertTrue(is_document_busy(self.doc))
        second = self.new_writer()
        with self.assertRaises(WriterAlreadyOpen):
            second.open(0)
        self.assertEqual(second.state, WriterState.IDLE)
        with self.assertRaises(WriterAlreadyOpen):
            first.open(4)
        first.append(' two')
        first.finalize()
        self.assertEqual(self.doc.lines[6], 'one two')
        self.assertFalse(is_document_busy(self.doc))
        second.open(0)
        second.finalize()

    def test_other_documents_independent(self):
        other = TextDocument(['=== q'])
        first = self.new_writer()
        second = self.new_writer(other)
        first.open(4)
        second.open(0)
        second.append('b')
        first.append('a')
        first.finalize()
        second.finalize()
        self.assertEqual(other.lines, ['=== q', '-----', 'b', '= =', ''])

    def test_no_document(self):
        with self.assertRaises(NoActiveDocument):
            StreamingWriter(None).open(0)

    def test_out_of_range(self):
        writer = self.new_writer()
        with self.assertRaises(IndexError):
            writer.open(10)
        self.assertFalse(is_document_busy(self.doc))

if __name__ == '__main__':
    unittest.main()
