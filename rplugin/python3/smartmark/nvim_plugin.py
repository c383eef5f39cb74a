import threading
import traceback
import unittest
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pynvim

from smartmark.chat_provider import ChatProvider, ChatProviderOpenAI
from smartmark.config import Config
from smartmark.document import DocumentAccessor, splice_lines
from smartmark.errors import InvalidWriterState, NoActiveDocument, SmartMarkError, TransportFailed
from smartmark.log import log, timer
from smartmark.resources import MARKERS
from smartmark.scanner import render_transcript
from smartmark.session import SessionOutcome, WriterSession
from smartmark.writer import StreamingWriter

class NvimBufferDocument(DocumentAccessor):
    """A Neovim buffer seen through the document interface.

    Writes issued from a thread other than the one that created the accessor
    are queued onto the Neovim event loop with ``async_call``, in order.
    Anchors are extmarks, so Neovim moves them as the user edits; their
    columns are bytes on the Neovim side and characters here.
    """

    def __init__(self, nvim: pynvim.Nvim, buffer, window=None):
        self.nvim = nvim
        self.buffer = buffer
        self.window = window
        self.owner_thread = threading.current_thread()
        self.namespace = nvim.api.create_namespace('smartmark')

    @property
    def key(self):
        return ('nvim', self.buffer.number)

    def get_line(self, i):
        return self.buffer[i]

    def line_count(self):
        return len(self.buffer)

    def cursor_line(self):
        if self.window is None:
            return self.last_line()
        return self.window.cursor[0] - 1

    def on_owner_thread(self, fn, *args):
        if threading.current_thread() is not self.owner_thread:
            self.nvim.async_call(fn, *args)
        else:
            fn(*args)

    def replace_range(self, text, line, ch):
        self.on_owner_thread(self.apply_insert, text, line, ch)

    def apply_insert(self, text: str, line: int, ch: int):
        if line == len(self.buffer):
            self.buffer.append('')
        new_lines = splice_lines(self.buffer[line], text, ch)
        self.nvim.command('silent! undojoin')
        self.buffer[line:line + 1] = new_lines
        self.nvim.command('redraw')

    def byte_column(self, line: int, ch: int) -> int:
        return len(self.buffer[line][:ch].encode('utf-8'))

    def char_column(self, line: int, col: int) -> int:
        return len(self.buffer[line].encode('utf-8')[:col].decode('utf-8', errors='ignore'))

    def add_anchor(self, line, ch):
        return self.nvim.api.buf_set_extmark(self.buffer, self.namespace, line, self.byte_column(line, ch), {})

    def anchor_position(self, anchor):
        position = self.nvim.api.buf_get_extmark_by_id(self.buffer, self.namespace, anchor, {})
        if not position:
            raise InvalidWriterState(f'insertion point {anchor} is gone from buffer {self.buffer.number}')
        row, col = position
        return row, self.char_column(row, col)

    def move_anchor(self, anchor, line, ch):
        self.nvim.api.buf_set_extmark(self.buffer, self.namespace, line, self.byte_column(line, ch), {'id': anchor})

    def remove_anchor(self, anchor):
        self.on_owner_thread(self.nvim.api.buf_del_extmark, self.buffer, self.namespace, anchor)

    def insert_at_anchor(self, anchor, text):
        # the anchor is read back on the event loop, after any edits queued before it
        self.on_owner_thread(super().insert_at_anchor, anchor, text)

@pynvim.plugin
class SmartMarkPlugin:
    def __init__(self, nvim: pynvim.Nvim):
        self.nvim = nvim
        self.cfg = Config()
        self.provider = ChatProviderOpenAI(self.cfg)
        self.sessions_lock = threading.Lock()
        self.sessions: Dict[int, WriterSession] = {}

    def alert(self, message: str, level: str = 'INFO'):
        self.nvim.command(f'lua vim.notify({repr(message)}, vim.log.levels.{level})')

    def alert_later(self, message: str, level: str = 'INFO'):
        self.nvim.async_call(self.alert, message, level)

    def current_document(self) -> NvimBufferDocument:
        buffer = self.nvim.current.buffer
        if not buffer.valid or not self.nvim.api.get_option_value('modifiable', {'buf': buffer.number}):
            raise NoActiveDocument('current buffer is not modifiable')
        return NvimBufferDocument(self.nvim, buffer, self.nvim.current.window)

    def running_session(self, bufnr: int) -> Optional[WriterSession]:
        with self.sessions_lock:
            return self.sessions.get(bufnr)

    def new_session(self, document: DocumentAccessor) -> WriterSession:
        return WriterSession(document, self.provider, self.cfg)

    def insert_question(self, document: DocumentAccessor, question: str) -> int:
        line = document.cursor_line()
        document.replace_range(f'\n{MARKERS.USER} {question}', line, len(document.get_line(line)))
        return line + 1

    def stream_session(self, bufnr: int, session: WriterSession):
        try:
            outcome = session.stream()
            if outcome == SessionOutcome.CANCELLED:
                self.alert_later('SmartMark: interrupted', 'WARN')
        except TransportFailed as e:
            self.alert_later(f'SmartMark: request failed: {e}', 'ERROR')
        except Exception:
            error = traceback.format_exc()
            log(error)
            self.alert_later(error, 'ERROR')
        finally:
            with self.sessions_lock:
                if self.sessions.get(bufnr) is session:
                    del self.sessions[bufnr]

    @pynvim.command('SmartMark', nargs='*')
    def on_SmartMark(self, args: List[str]):
        bufnr = self.nvim.current.buffer.number
        running = self.running_session(bufnr)
        if running is not None:
            running.cancel()
            return

        if not self.cfg.resolve_api_key():
            self.alert('SmartMark: set an API key with :SmartMarkSetup api_key=... or $OPENAI_API_KEY', 'WARN')
            return

        question = ' '.join(args).strip()
        try:
            document = self.current_document()
            after_line = self.insert_question(document, question) if question else None
            session = self.new_session(document)
            if not session.start(after_line):
                self.alert('SmartMark: no conversation above the cursor', 'WARN')
                return
        except SmartMarkError as e:
            self.alert(f'SmartMark: {e}', 'ERROR')
            return

        with self.sessions_lock:
            self.sessions[bufnr] = session
        worker = threading.Thread(target=self.stream_session, args=(bufnr, session), daemon=True)
        worker.start()

    @pynvim.command('SmartMarkCancel')
    def on_SmartMarkCancel(self):
        session = self.running_session(self.nvim.current.buffer.number)
        if session is None:
            self.alert('SmartMark: nothing is running in this buffer')
            return
        session.cancel()

    @pynvim.command('SmartMarkContext')
    def on_SmartMarkContext(self):
        try:
            transcript = self.new_session(self.current_document()).build_transcript()
        except SmartMarkError as e:
            self.alert(f'SmartMark: {e}', 'ERROR')
            return
        if not transcript:
            self.alert('SmartMark: no conversation above the cursor')
            return
        self.alert('\n'.join(render_transcript(transcript)))

    @pynvim.command('SmartMarkSetup', nargs='*')
    def on_SmartMarkSetup(self, args: List[str]):
        try:
            listing = self.cfg.update_from_args(args)
        except (KeyError, ValueError) as e:
            self.alert(str(e), 'ERROR')
            return
        self.provider.reset_client()
        if listing:
            self.alert('\n'.join(listing))

class NvimTestCase(unittest.TestCase):
    class FakeBuffer(list):
        number = 1
        valid = True

    class FakeWindow:
        def __init__(self, row: int):
            self.cursor = (row, 0)

    class FakeApi:
        def __init__(self):
            self.options: Dict[str, Any] = {'modifiable': True}
            self.extmarks: Dict[int, Tuple[int, int]] = {}
            self.next_id = 1

        def get_option_value(self, name: str, opts: Dict[str, Any]):
            return self.options[name]

        def create_namespace(self, name: str) -> int:
            return 7

        def buf_set_extmark(self, buffer, ns: int, row: int, col: int, opts: Dict[str, Any]) -> int:
            mark_id = opts.get('id')
            if mark_id is None:
                mark_id, self.next_id = self.next_id, self.next_id + 1
            self.extmarks[mark_id] = (row, col)
            return mark_id

        def buf_get_extmark_by_id(self, buffer, ns: int, mark_id: int, opts: Dict[str, Any]) -> List[int]:
            return list(self.extmarks.get(mark_id, ()))

        def buf_del_extmark(self, buffer, ns: int, mark_id: int) -> bool:
            return self.extmarks.pop(mark_id, None) is not None

    class FakeNvim:
        def __init__(self, test: 'NvimTestCase', lines: List[str], row: int):
            self.current = SimpleNamespace(buffer=test.FakeBuffer(lines), window=test.FakeWindow(row))
            self.api = test.FakeApi()
            self.commands: List[str] = []
            self.async_calls = 0

        def command(self, cmd: str):
            self.commands.append(cmd)

        def async_call(self, fn, *args):
            self.async_calls += 1
            fn(*args)

    def fake_nvim(self, lines: List[str], row: int = 1):
        return self.FakeNvim(self, lines, row)

    def type_line_above(self, nvim, row: int, text: str):
        # what Neovim does to extmarks when the user opens a line
        nvim.current.buffer.insert(row, text)
        for mark_id, (mark_row, col) in list(nvim.api.extmarks.items()):
            if mark_row >= row:
                nvim.api.extmarks[mark_id] = (mark_row + 1, col)

class TestNvimBufferDocument(NvimTestCase):
    def setUp(self):
        self.nvim = self.fake_nvim(['=== hi', 'second'], row=2)
        self.doc = NvimBufferDocument(self.nvim, self.nvim.current.buffer, self.nvim.current.window)

    def test_reads(self):
        self.assertEqual(self.doc.line_count(), 2)
        self.assertEqual(self.doc.last_line(), 1)
        self.assertEqual(self.doc.get_line(0), '=== hi')
        self.assertEqual(self.doc.cursor_line(), 1)
        self.assertEqual(self.doc.key, ('nvim', 1))

    def test_insert(self):
        self.doc.replace_range('x\ny', 0, 3)
        self.assertEqual(list(self.nvim.current.buffer), ['===x', 'y hi', 'second'])
        self.assertEqual(self.nvim.commands, ['silent! undojoin', 'redraw'])
        self.assertEqual(self.nvim.async_calls, 0)

    def test_insert_from_worker_thread(self):
        worker = threading.Thread(target=self.doc.replace_range, args=('!', 1, 6))
        worker.start()
        worker.join()
        self.assertEqual(self.nvim.current.buffer[1], 'second!')
        self.assertEqual(self.nvim.async_calls, 1)

    def test_anchor_columns_are_bytes(self):
        self.nvim.current.buffer[1] = 'héllo'
        anchor = self.doc.add_anchor(1, 2)
        self.assertEqual(self.nvim.api.extmarks[anchor], (1, 3))
        self.assertEqual(self.doc.anchor_position(anchor), (1, 2))
        self.doc.remove_anchor(anchor)
        self.assertEqual(self.nvim.api.extmarks, {})

    def test_stream_follows_lines_typed_above(self):
        nvim = self.fake_nvim(['=== Q'])
        doc = NvimBufferDocument(nvim, nvim.current.buffer, nvim.current.window)
        writer = StreamingWriter(doc, Config(include_timestamp=False))
        writer.open(0)
        writer.append('Hé')
        self.type_line_above(nvim, 0, 'a note')
        writer.append('llo')
        writer.finalize()
        self.assertEqual(list(nvim.current.buffer), ['a note', '=== Q', '-----', 'Héllo', '= =', ''])
        self.assertEqual(nvim.api.extmarks, {})

    def test_lost_anchor(self):
        with self.assertRaises(InvalidWriterState):
            self.doc.anchor_position(42)

class TestSmartMarkPlugin(NvimTestCase):
    class ScriptedProvider(ChatProvider):
        def __init__(self, chunks: List[str]):
            self.chunks = chunks

        def stream_chat(self, system_prompt, transcript):
            yield from self.chunks

    def setUp(self):
        self.nvim = self.fake_nvim(['=== Q1', '-----', 'A1', '= =', '=== Q2'], row=5)
        self.plugin = SmartMarkPlugin(self.nvim)
        self.plugin.cfg.api_key = 'sk-test'
        self.plugin.cfg.include_timestamp = False

    def test_requires_api_key(self):
        self.plugin.cfg.api_key = None
        import os
        old = os.environ.pop('OPENAI_API_KEY', None)
        try:
            self.plugin.on_SmartMark([])
        finally:
            if old is not None:
                os.environ['OPENAI_API_KEY'] = old
        self.assertIn('API key', self.nvim.commands[-1])
        self.assertEqual(len(self.nvim.current.buffer), 5)

    def test_not_modifiable(self):
        self.nvim.api.options['modifiable'] = False
        self.plugin.on_SmartMark([])
        self.assertIn('not modifiable', self.nvim.commands[-1])
        self.assertIn('ERROR', self.nvim.commands[-1])

    def test_setup(self):
        self.plugin.on_SmartMarkSetup(['context_depth=2', 'model=gpt-4o'])
        self.assertEqual(self.plugin.cfg.context_depth, 2)
        self.plugin.on_SmartMarkSetup(['model'])
        self.assertIn('model=gpt-4o', self.nvim.commands[-1])
        self.plugin.on_SmartMarkSetup(['bogus=1'])
        self.assertIn('ERROR', self.nvim.commands[-1])

    def test_context(self):
        self.plugin.on_SmartMarkContext()
        self.assertIn('=== Q1', self.nvim.commands[-1])
        self.assertIn('A1', self.nvim.commands[-1])
        self.assertIn('=== Q2', self.nvim.commands[-1])

    def test_insert_question(self):
        self.nvim.current.window.cursor = (3, 0)
        doc = self.plugin.current_document()
        self.assertEqual(self.plugin.insert_question(doc, 'new question'), 3)
        self.assertEqual(self.nvim.current.buffer[3], '=== new question')
        self.assertEqual(self.nvim.current.buffer[4], '= =')

    def test_cancel_without_session(self):
        self.plugin.on_SmartMarkCancel()
        self.assertIn('nothing is running', self.nvim.commands[-1])

    def test_stream_session(self):
        self.plugin.provider = self.ScriptedProvider(['Hi', ' there'])
        session = self.plugin.new_session(self.plugin.current_document())
        self.assertTrue(session.start())
        self.plugin.sessions[1] = session
        self.plugin.stream_session(1, session)
        self.assertEqual(list(self.nvim.current.buffer)[4:], ['=== Q2', '-----', 'Hi there', '= =', ''])
        self.assertEqual(self.plugin.sessions, {})
        self.assertEqual(self.nvim.api.extmarks, {})

timer.record('import finish')

if __name__ == '__main__':
    unittest.main()
