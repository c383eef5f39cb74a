import itertools
import unittest
from abc import ABC, abstractmethod
from typing import Dict, Hashable, List, Optional, Tuple

def splice_lines(current: str, text: str, ch: int) -> List[str]:
    assert 0 <= ch <= len(current), (ch, current)
    return (current[:ch] + text + current[ch:]).split('\n')

def advance(line: int, ch: int, text: str) -> Tuple[int, int]:
    """Position just after ``text`` when it is inserted at ``(line, ch)``."""
    newlines = text.count('\n')
    if newlines:
        return line + newlines, len(text) - text.rfind('\n') - 1
    return line, ch + len(text)

class DocumentAccessor(ABC):
    """Line-indexed view over a mutable text buffer.

    Lines are 0-based. Columns are offsets into the line string as the host
    editor counts them.
    """

    @abstractmethod
    def get_line(self, i: int) -> str:
        pass

    @abstractmethod
    def line_count(self) -> int:
        pass

    @abstractmethod
    def cursor_line(self) -> int:
        pass

    @abstractmethod
    def replace_range(self, text: str, line: int, ch: int):
        """Insert ``text`` at ``(line, ch)``; newlines in ``text`` split the line."""

    @abstractmethod
    def add_anchor(self, line: int, ch: int) -> int:
        """Mark a position that follows later edits made anywhere in the document."""

    @abstractmethod
    def anchor_position(self, anchor: int) -> Tuple[int, int]:
        pass

    @abstractmethod
    def move_anchor(self, anchor: int, line: int, ch: int):
        pass

    @abstractmethod
    def remove_anchor(self, anchor: int):
        pass

    def insert_at_anchor(self, anchor: int, text: str):
        """Insert ``text`` where the anchor currently is and leave the anchor after it."""
        line, ch = self.anchor_position(anchor)
        self.replace_range(text, line, ch)
        self.move_anchor(anchor, *advance(line, ch, text))

    def last_line(self) -> int:
        return self.line_count() - 1

    @property
    def key(self) -> Hashable:
        return id(self)

class TextDocument(DocumentAccessor):
    def __init__(self, lines: Optional[List[str]] = None, cursor: int = 0):
        self.lines: List[str] = list(lines) if lines else ['']
        self.cursor = cursor
        self.anchors: Dict[int, Tuple[int, int]] = {}
        self.__anchor_ids = itertools.count(1)

    @classmethod
    def from_text(cls, text: str, cursor: int = 0) -> 'TextDocument':
        return cls(text.split('\n'), cursor)

    @property
    def text(self) -> str:
        return '\n'.join(self.lines)

    def get_line(self, i):
        return self.lines[i]

    def line_count(self):
        return len(self.lines)

    def cursor_line(self):
        return self.cursor

    def replace_range(self, text, line, ch):
        if line == len(self.lines):
            self.lines.append('')
        assert 0 <= line < len(self.lines), (line, len(self.lines))
        new_lines = splice_lines(self.lines[line], text, ch)
        self.lines[line:line + 1] = new_lines
        added = len(new_lines) - 1
        if self.cursor > line:
            self.cursor += added
        for anchor, (a_line, a_ch) in list(self.anchors.items()):
            if a_line > line:
                self.anchors[anchor] = (a_line + added, a_ch)
            elif a_line == line and a_ch >= ch:
                end_line, end_ch = advance(line, ch, text)
                self.anchors[anchor] = (end_line, end_ch + a_ch - ch)

    def delete_lines(self, start: int, end: int):
        assert 0 <= start <= end <= len(self.lines), (start, end)
        del self.lines[start:end]
        if not self.lines:
            self.lines.append('')
        removed = end - start
        if self.cursor >= end:
            self.cursor -= removed
        elif self.cursor >= start:
            self.cursor = start
        for anchor, (a_line, a_ch) in list(self.anchors.items()):
            if a_line >= end:
                self.anchors[anchor] = (a_line - removed, a_ch)
            elif a_line >= start:
                self.anchors[anchor] = (start, 0)

    def add_anchor(self, line, ch):
        anchor = next(self.__anchor_ids)
        self.anchors[anchor] = (line, ch)
        return anchor

    def anchor_position(self, anchor):
        return self.anchors[anchor]

    def move_anchor(self, anchor, line, ch):
        self.anchors[anchor] = (line, ch)

    def remove_anchor(self, anchor):
        self.anchors.pop(anchor, None)

class TestTextDocument(unittest.TestCase):
    def test_from_text(self):
        doc = TextDocument.from_text('a\nb\n')
        self.assertEqual(doc.lines, ['a', 'b', ''])
        self.assertEqual(doc.line_count(), 3)
        self.assertEqual(doc.last_line(), 2)
        self.assertEqual(doc.text, 'a\nb\n')

    def test_empty(self):
        doc = TextDocument()
        self.assertEqual(doc.line_count(), 1)
        self.assertEqual(doc.get_line(0), '')

    def test_insert_inline(self):
        doc = TextDocument(['hello world'])
        doc.replace_range(',', 0, 5)
        self.assertEqual(doc.lines, ['hello, world'])

    def test_insert_newlines(self):
        doc = TextDocument(['ab', 'c'])
        doc.replace_range('1\n2\n3', 0, 1)
        self.assertEqual(doc.lines, ['a1', '2', '3b', 'c'])

    def test_insert_past_end(self):
        doc = TextDocument(['a'])
        doc.replace_range('b', 1, 0)
        self.assertEqual(doc.lines, ['a', 'b'])

    def test_cursor_follows_inserted_lines(self):
        doc = TextDocument(['a', 'b', 'c'], cursor=2)
        doc.replace_range('x\ny\n', 0, 0)
        self.assertEqual(doc.cursor_line(), 4)
        self.assertEqual(doc.get_line(doc.cursor_line()), 'c')

    def test_advance(self):
        self.assertEqual(advance(2, 3, 'abc'), (2, 6))
        self.assertEqual(advance(2, 3, 'a\nbc'), (3, 2))
        self.assertEqual(advance(2, 3, 'a\n'), (3, 0))

    def test_anchor_follows_edits_above(self):
        doc = TextDocument(['a', 'b', 'head'])
        anchor = doc.add_anchor(2, 4)
        doc.replace_range('new\nlines\n', 0, 0)
        self.assertEqual(doc.anchor_position(anchor), (4, 4))
        doc.delete_lines(0, 3)
        self.assertEqual(doc.anchor_position(anchor), (1, 4))
        self.assertEqual(doc.get_line(1), 'head')

    def test_anchor_ignores_edits_below_and_after(self):
        doc = TextDocument(['head', 'tail'])
        anchor = doc.add_anchor(0, 2)
        doc.replace_range('x\ny', 1, 0)
        doc.replace_range('!', 0, 3)
        self.assertEqual(doc.anchor_position(anchor), (0, 2))

    def test_anchor_on_same_line_shifts(self):
        doc = TextDocument(['abcd'])
        anchor = doc.add_anchor(0, 2)
        doc.replace_range('12\n3', 0, 1)
        self.assertEqual(doc.lines, ['a12', '3bcd'])
        self.assertEqual(doc.anchor_position(anchor), (1, 2))
        self.assertEqual(doc.get_line(1)[2:], 'cd')

    def test_insert_at_anchor(self):
        doc = TextDocument(['>', 'below'])
        anchor = doc.add_anchor(0, 1)
        doc.insert_at_anchor(anchor, 'one')
        doc.insert_at_anchor(anchor, ' two\nthree')
        self.assertEqual(doc.lines, ['>one two', 'three', 'below'])
        self.assertEqual(doc.anchor_position(anchor), (1, 5))
        doc.remove_anchor(anchor)
        self.assertEqual(doc.anchors, {})

    def test_delete_lines_moves_cursor(self):
        doc = TextDocument(['a', 'b', 'c', 'd'], cursor=3)
        doc.delete_lines(1, 3)
        self.assertEqual(doc.lines, ['a', 'd'])
        self.assertEqual(doc.cursor_line(), 1)

    def test_key_is_per_instance(self):
        a, b = TextDocument(), TextDocument()
        self.assertNotEqual(a.key, b.key)

if __name__ == '__main__':
    unittest.main()
