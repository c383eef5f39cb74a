import os
import unittest
from dataclasses import dataclass, fields
from typing import Any, List, Optional

from smartmark.resources import (
    DEFAULT_OPENAI_MODEL, DEFAULT_SEPARATOR_LENGTH, DEFAULT_SYSTEM_PROMPT,
    INTERRUPTION_TAG, MARKERS,
)

@dataclass
class Config:
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    organization: Optional[str] = None
    project: Optional[str] = None
    timeout: Optional[float] = None

    model: str = DEFAULT_OPENAI_MODEL
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    seed: Optional[int] = None
    stream: bool = True
    include_usage: bool = True
    include_time: bool = True

    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    context_depth: int = 10                 # user/assistant pairs
    separator_length: int = DEFAULT_SEPARATOR_LENGTH
    terminator: str = MARKERS.TERMINATOR
    interruption_tag: str = INTERRUPTION_TAG
    include_timestamp: bool = True

    limit_context_tokens: int = 0           # 0 disables trimming
    use_tiktoken_for_counting: bool = True

    def resolve_api_key(self) -> Optional[str]:
        return self.api_key or os.environ.get('OPENAI_API_KEY') or None

    def keys(self) -> List[str]:
        return [f.name for f in fields(self)]

    @staticmethod
    def __unwrap_optional(type_: Any) -> tuple[Any, bool]:
        args = getattr(type_, '__args__', None)
        if args and type(None) in args:
            return next(arg for arg in args if arg is not type(None)), True
        return type_, False

    def set_value(self, key: str, value: str):
        if key.startswith('_') or key not in self.keys():
            raise KeyError(f'no such config key {key}')
        type_, can_be_none = self.__unwrap_optional(self.__annotations__[key])
        v: Any = value
        if can_be_none and (value == '' or value.lower() == 'none'):
            v = None
        elif type_ is bool:
            if value.lower() not in ('true', 'false', '1', '0'):
                raise ValueError(f'{key} expects true or false, got {value!r}')
            v = value.lower() in ('true', '1')
        else:
            v = type_(value)
        setattr(self, key, v)

    def update_from_args(self, args: List[str]) -> List[str]:
        """Apply ``key=value`` pairs; bare keys are reported as ``key=value``."""
        if not args:
            args = self.keys()
        listing: List[str] = []
        for kv in args:
            parts = kv.split('=', maxsplit=1)
            if len(parts) > 1:
                self.set_value(parts[0], parts[1])
            else:
                if parts[0] not in self.keys():
                    raise KeyError(f'no such config key {parts[0]}')
                listing.append(f'{parts[0]}={getattr(self, parts[0])}')
        return listing

class TestConfig(unittest.TestCase):
    def setUp(self):
        self.cfg = Config()

    def test_defaults(self):
        self.assertEqual(self.cfg.context_depth, 10)
        self.assertEqual(self.cfg.separator_length, 5)
        self.assertEqual(self.cfg.terminator, '=-=')
        self.assertTrue(self.cfg.stream)

    def test_update_values(self):
        listing = self.cfg.update_from_args([
            'model=gpt-4o', 'temperature=0.5', 'context_depth=3',
            'stream=false', 'base_url=none', 'max_tokens=100',
        ])
        self.assertEqual(listing, [])
        self.assertEqual(self.cfg.model, 'gpt-4o')
        self.assertEqual(self.cfg.temperature, 0.5)
        self.assertEqual(self.cfg.context_depth, 3)
        self.assertFalse(self.cfg.stream)
        self.assertIsNone(self.cfg.base_url)
        self.assertEqual(self.cfg.max_tokens, 100)

    def test_value_with_equals(self):
        self.cfg.update_from_args(['system_prompt=a=b'])
        self.assertEqual(self.cfg.system_prompt, 'a=b')

    def test_listing(self):
        self.assertEqual(self.cfg.update_from_args(['model', 'context_depth']),
                         [f'model={self.cfg.model}', 'context_depth=10'])
        self.assertEqual(len(self.cfg.update_from_args([])), len(self.cfg.keys()))

    def test_unknown_key(self):
        with self.assertRaises(KeyError):
            self.cfg.update_from_args(['nope=1'])
        with self.assertRaises(KeyError):
            self.cfg.update_from_args(['nope'])

    def test_bad_bool(self):
        with self.assertRaises(ValueError):
            self.cfg.set_value('stream', 'maybe')

    def test_resolve_api_key(self):
        old = os.environ.pop('OPENAI_API_KEY', None)
        try:
            self.assertIsNone(self.cfg.resolve_api_key())
            os.environ['OPENAI_API_KEY'] = 'sk-env'
            self.assertEqual(self.cfg.resolve_api_key(), 'sk-env')
            self.cfg.api_key = 'sk-cfg'
            self.assertEqual(self.cfg.resolve_api_key(), 'sk-cfg')
        finally:
            os.environ.pop('OPENAI_API_KEY', None)
            if old is not None:
                os.environ['OPENAI_API_KEY'] = old

if __name__ == '__main__':
    unittest.main()
