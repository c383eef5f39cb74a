import threading
import unittest
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, List, Optional

from smartmark.chat_provider import ChatProvider
from smartmark.classifier import MarkerClassifier
from smartmark.config import Config
from smartmark.document import DocumentAccessor, TextDocument
from smartmark.errors import (
    InvalidWriterState, NoActiveDocument, TransportCancelled, TransportFailed, WriterAlreadyOpen,
)
from smartmark.log import log
from smartmark.scanner import scan
from smartmark.token_counter import TokenCounter, trim_transcript
from smartmark.types import Role, Transcript, Turn
from smartmark.writer import StreamingWriter, is_document_busy

class SessionOutcome(Enum):
    DONE = 'done'
    CANCELLED = 'cancelled'
    EMPTY = 'empty'

class WriterSession:
    """One assistant turn: scan the context, ask the provider, stream the answer back.

    ``cancel()`` may be called from another thread; it is observed between
    chunks, after which the block is closed with the interruption tag.
    """

    def __init__(self, document: Optional[DocumentAccessor],
                 provider: ChatProvider,
                 config: Optional[Config] = None,
                 counter: Optional[TokenCounter] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.document = document
        self.provider = provider
        self.cfg = config or Config()
        self.counter = counter or TokenCounter(self.cfg.model, self.cfg.use_tiktoken_for_counting)
        self.clock = clock
        self.cancel_event = threading.Event()
        self.writer: Optional[StreamingWriter] = None
        self.transcript: Transcript = []

    def classifier(self) -> MarkerClassifier:
        return MarkerClassifier(self.cfg.separator_length, self.cfg.terminator)

    def build_transcript(self, start_line: Optional[int] = None) -> Transcript:
        if self.document is None:
            raise NoActiveDocument()
        if is_document_busy(self.document):
            raise WriterAlreadyOpen('document is being written by another session')
        if start_line is None:
            start_line = self.document.cursor_line()
        turns = scan(self.document, start_line, self.cfg.context_depth, self.classifier())
        return trim_transcript(turns, self.cfg.limit_context_tokens, self.counter)

    def cancel(self):
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def consume(self, writer: StreamingWriter, transcript: Transcript):
        if not self.cfg.stream:
            answer = self.provider.complete(self.cfg.system_prompt, transcript)
            if self.cancelled:
                raise TransportCancelled()
            writer.append(answer)
            return

        chunks: Iterable[str] = self.provider.stream_chat(self.cfg.system_prompt, transcript)
        try:
            for chunk in chunks:
                if self.cancelled:
                    raise TransportCancelled()
                writer.append(chunk)
        finally:
            close = getattr(chunks, 'close', None)
            if close is not None:
                close()

    def start(self, after_line: Optional[int] = None) -> bool:
        """Scan the context and open the writer below ``after_line``.

        Returns False, without touching the document, when there is nothing
        to send.
        """
        if self.document is None:
            raise NoActiveDocument()
        if after_line is None:
            after_line = self.document.cursor_line()
        self.transcript = self.build_transcript(after_line)
        if not self.transcript:
            log(f'[EMPTY] nothing to send from line {after_line}')
            return False
        self.writer = StreamingWriter(self.document, self.cfg, clock=self.clock)
        self.writer.open(after_line)
        return True

    def stream(self) -> SessionOutcome:
        writer = self.writer
        if writer is None or not writer.is_open:
            raise InvalidWriterState('session was not started')
        try:
            self.consume(writer, self.transcript)
        except TransportCancelled:
            log(f'[CANCELLED] after {writer.cursor.bytes_written if writer.cursor else 0} chars')
            writer.cancel()
            return SessionOutcome.CANCELLED
        except BaseException:
            writer.finalize(False)
            raise
        writer.finalize(True)
        return SessionOutcome.DONE

    def run(self, after_line: Optional[int] = None) -> SessionOutcome:
        if not self.start(after_line):
            return SessionOutcome.EMPTY
        return self.stream()

class TestWriterSession(unittest.TestCase):
    class FakeProvider(ChatProvider):
        def __init__(self, chunks: List[str], fail_after: Optional[int] = None,
                     on_chunk: Optional[Callable[[int], None]] = None):
            self.chunks = chunks
            self.fail_after = fail_after
            self.on_chunk = on_chunk
            self.requests: List[tuple[str, Transcript]] = []
            self.closed = False
            self.completed = False

        def stream_chat(self, system_prompt, transcript):
            self.requests.append((system_prompt, transcript))
            try:
                for i, chunk in enumerate(self.chunks):
                    if self.fail_after is not None and i == self.fail_after:
                        raise TransportFailed('connection reset')
                    if self.on_chunk is not None:
                        self.on_chunk(i)
                    yield chunk
            finally:
                self.closed = True

        def complete(self, system_prompt, transcript):
            self.completed = True
            return super().complete(system_prompt, transcript)

    def setUp(self):
        self.cfg = Config(include_timestamp=False, system_prompt='Be brief.', use_tiktoken_for_counting=False)
        self.doc = TextDocument(['=== Q1', '-----', 'A1', '= =', '', '=== What is the capital of France?'], cursor=5)

    def new_session(self, provider: ChatProvider) -> WriterSession:
        return WriterSession(self.doc, provider, self.cfg)

    def test_run(self):
        provider = self.FakeProvider(['Paris', ' is the', ' capital.'])
        outcome = self.new_session(provider).run()
        self.assertEqual(outcome, SessionOutcome.DONE)
        system_prompt, transcript = provider.requests[0]
        self.assertEqual(system_prompt, 'Be brief.')
        self.assertEqual(transcript, [
            Turn(Role.USER, 'Q1'),
            Turn(Role.ASSISTANT, 'A1'),
            Turn(Role.USER, 'What is the capital of France?'),
        ])
        self.assertEqual(self.doc.lines[5:], [
            '=== What is the capital of France?', '-----', 'Paris is the capital.', '= =', '',
        ])
        self.assertEqual(scan(self.doc, 8, 1)[-1], Turn(Role.ASSISTANT, 'Paris is the capital.'))

    def test_context_depth(self):
        self.cfg.context_depth = 1
        provider = self.FakeProvider(['ok'])
        self.new_session(provider).run()
        self.assertEqual(provider.requests[0][1], [
            Turn(Role.ASSISTANT, 'A1'),
            Turn(Role.USER, 'What is the capital of France?'),
        ])

    def test_token_limit(self):
        self.cfg.limit_context_tokens = 8
        provider = self.FakeProvider(['ok'])
        self.new_session(provider).run()
        self.assertEqual(provider.requests[0][1], [Turn(Role.USER, 'What is the capital of France?')])

    def test_terminator_from_config(self):
        self.cfg.terminator = '@@'
        self.doc.lines.insert(4, '@@')
        self.doc.cursor = 6
        provider = self.FakeProvider(['ok'])
        self.new_session(provider).run()
        self.assertEqual(provider.requests[0][1], [Turn(Role.USER, 'What is the capital of France?')])

    def test_cancel_between_chunks(self):
        session = None

        def on_chunk(i: int):
            if i == 2:
                session.cancel()

        provider = self.FakeProvider(['one', ' two', ' three', ' four'], on_chunk=on_chunk)
        session = self.new_session(provider)
        self.assertEqual(session.run(), SessionOutcome.CANCELLED)
        self.assertTrue(provider.closed)
        self.assertTrue(session.writer.cancelled)
        self.assertFalse(session.writer.is_open)
        self.assertEqual(self.doc.lines[6:], ['-----', 'one two', '[interrupted]', '= =', ''])
        self.assertFalse(is_document_busy(self.doc))

    def test_failure_finalizes_partial_block(self):
        provider = self.FakeProvider(['half', ' an answer', 'never'], fail_after=2)
        session = self.new_session(provider)
        with self.assertRaises(TransportFailed):
            session.run()
        self.assertFalse(session.writer.is_open)
        self.assertFalse(session.writer.cancelled)
        self.assertEqual(self.doc.lines[6:], ['-----', 'half an answer', '[interrupted]', '= =', ''])
        self.assertFalse(is_document_busy(self.doc))

    def test_non_streaming(self):
        self.cfg.stream = False
        provider = self.FakeProvider(['Hello', ' world'])
        outcome = self.new_session(provider).run()
        self.assertEqual(outcome, SessionOutcome.DONE)
        self.assertTrue(provider.completed)
        self.assertEqual(self.doc.lines[7], 'Hello world')

    def test_empty_transcript(self):
        doc = TextDocument(['plain text only'])
        provider = self.FakeProvider(['x'])
        outcome = WriterSession(doc, provider, self.cfg).run(0)
        self.assertEqual(outcome, SessionOutcome.EMPTY)
        self.assertEqual(provider.requests, [])
        self.assertEqual(doc.lines, ['plain text only'])

    def test_no_document(self):
        with self.assertRaises(NoActiveDocument):
            WriterSession(None, self.FakeProvider([])).run()

    def test_stream_requires_start(self):
        with self.assertRaises(InvalidWriterState):
            self.new_session(self.FakeProvider(['x'])).stream()

    def test_cancel_from_another_thread(self):
        received = threading.Event()
        release = threading.Event()

        def on_chunk(i: int):
            if i == 1:
                received.set()
                release.wait(5)

        provider = self.FakeProvider(['first', ' second'], on_chunk=on_chunk)
        session = self.new_session(provider)
        self.assertTrue(session.start())
        worker = threading.Thread(target=session.stream)
        worker.start()
        self.assertTrue(received.wait(5))
        session.cancel()
        release.set()
        worker.join(5)
        self.assertFalse(worker.is_alive())
        self.assertEqual(self.doc.lines[7:], ['first', '[interrupted]', '= =', ''])

    def test_busy_document(self):
        writer = StreamingWriter(self.doc, self.cfg)
        writer.open(0)
        try:
            provider = self.FakeProvider(['x'])
            with self.assertRaises(WriterAlreadyOpen):
                self.new_session(provider).run(6)
            self.assertEqual(provider.requests, [])
        finally:
            writer.finalize()

if __name__ == '__main__':
    unittest.main()
