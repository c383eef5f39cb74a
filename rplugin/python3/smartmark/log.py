import os
import tempfile
import time
import unittest
from typing import Callable, Iterable, Optional, TypeVar

T = TypeVar('T')

def log_path() -> str:
    return os.environ.get('SMARTMARK_LOG') or os.path.join(tempfile.gettempdir(), 'smartmark.log')

def log(line: str):
    with open(log_path(), 'a') as f:
        print(line, file=f)
        print('======', file=f)

class Timer:
    def __init__(self):
        self.t0 = time.monotonic()

    def record(self, tag: str) -> float:
        dt = time.monotonic() - self.t0
        self.add(tag, dt)
        return dt

    def add(self, tag: str, dt: float):
        with open(log_path(), 'a') as f:
            f.write(f'[timer] {tag}: {dt:.3f}\n')

timer = Timer()

def check_time(sequence: Callable[[], Iterable[T]], tag: str,
               enabled: bool = True) -> Iterable[T]:
    if not enabled:
        yield from sequence()
        return
    start_t = time.monotonic()
    first_chunk_t: Optional[float] = None
    iterable = sequence()
    try:
        for chunk in iterable:
            if chunk and first_chunk_t is None:
                first_chunk_t = time.monotonic()
            yield chunk
    finally:
        close = getattr(iterable, 'close', None)
        if close is not None:
            close()
        total_time = time.monotonic() - start_t
        latency_time = (first_chunk_t or start_t) - start_t
        log(f'[FINISHED] total {total_time * 1000:.0f} ms, latency {latency_time * 1000:.0f} ms @{tag}')

class TestLog(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.temp_dir.name, 'smartmark.log')
        self.old = os.environ.get('SMARTMARK_LOG')
        os.environ['SMARTMARK_LOG'] = self.path

    def tearDown(self):
        if self.old is None:
            os.environ.pop('SMARTMARK_LOG', None)
        else:
            os.environ['SMARTMARK_LOG'] = self.old
        self.temp_dir.cleanup()

    def read_log(self) -> str:
        with open(self.path, 'r') as f:
            return f.read()

    def test_log(self):
        log('hello')
        log('world')
        self.assertEqual(self.read_log(), 'hello\n======\nworld\n======\n')

    def test_timer_add(self):
        Timer().add('test', 1)
        self.assertEqual(self.read_log(), '[timer] test: 1.000\n')

    def test_timer_record(self):
        timer = Timer()
        self.assertGreaterEqual(timer.record('test'), 0)
        self.assertTrue(self.read_log().startswith('[timer] test: '))

    def test_check_time(self):
        chunks = list(check_time(lambda: iter(['', 'a', 'b']), 'model'))
        self.assertEqual(chunks, ['', 'a', 'b'])
        self.assertIn('[FINISHED] total', self.read_log())
        self.assertIn('@model', self.read_log())

    def test_check_time_closes_source(self):
        closed = []

        def source():
            try:
                yield 'a'
                yield 'b'
            finally:
                closed.append(True)

        timed = check_time(source, 'model')
        self.assertEqual(next(timed), 'a')
        timed.close()
        self.assertEqual(closed, [True])

    def test_check_time_disabled(self):
        chunks = list(check_time(lambda: iter(['a']), 'model', enabled=False))
        self.assertEqual(chunks, ['a'])
        self.assertFalse(os.path.exists(self.path))

if __name__ == '__main__':
    unittest.main()
