import json
import unittest
from typing import Any

from smartmark.types import Role, Transcript, Turn

def json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(',', ':'))

def colorize_transcript(turns: Transcript) -> str:
    from colorama import Fore, Style
    result = ''
    for turn in turns:
        color = Fore.YELLOW if turn.role == Role.USER else Fore.BLUE
        result += f'{Style.BRIGHT}{color}[{turn.role.value}]{Fore.RESET}{Style.NORMAL}\n'
        result += f'{color}{turn.content}{Fore.RESET}\n'
    return result

def scan_file(path: str, line: int = -1, budget: int = 10) -> Transcript:
    from smartmark.document import TextDocument
    from smartmark.scanner import scan
    with open(path, 'r', encoding='utf-8') as f:
        document = TextDocument.from_text(f.read())
    return scan(document, line, budget)

class TestUtils(unittest.TestCase):
    def test_json_dumps(self):
        self.assertEqual(json_dumps({"role": "user", "content": "你好"}), '{"role":"user","content":"你好"}')

    def test_colorize_transcript(self):
        from colorama import Fore
        text = colorize_transcript([Turn(Role.USER, 'q'), Turn(Role.ASSISTANT, 'a')])
        self.assertIn(f'{Fore.YELLOW}q{Fore.RESET}', text)
        self.assertIn(f'{Fore.BLUE}a{Fore.RESET}', text)
        self.assertIn('[assistant]', text)

    def test_scan_file(self):
        import os
        import tempfile
        with tempfile.TemporaryDirectory() as temp_dir:
            path = os.path.join(temp_dir, 'chat.md')
            with open(path, 'w', encoding='utf-8') as f:
                f.write('=== hi\n-----\nhello\n= =\n')
            self.assertEqual(scan_file(path), [Turn(Role.USER, 'hi'), Turn(Role.ASSISTANT, 'hello')])
            self.assertEqual(scan_file(path, 0), [Turn(Role.USER, 'hi')])

if __name__ == '__main__':
    import sys
    if len(sys.argv) < 2:
        print('usage: python -m smartmark.utils FILE [LINE] [BUDGET]', file=sys.stderr)
        sys.exit(2)
    args = sys.argv[1:]
    line = int(args[1]) if len(args) > 1 else -1
    budget = int(args[2]) if len(args) > 2 else 10
    print(colorize_transcript(scan_file(args[0], line, budget)), end='')
