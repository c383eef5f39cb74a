import traceback
import unittest
from abc import ABC, abstractmethod
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Optional

from smartmark.config import Config
from smartmark.errors import TransportFailed
from smartmark.log import check_time, log, timer
from smartmark.types import Role, Transcript, Turn
from smartmark.utils import json_dumps

def build_messages(system_prompt: str, transcript: Transcript) -> List[Dict[str, str]]:
    messages = []
    if system_prompt.strip():
        messages.append({"role": "system", "content": system_prompt})
    messages += [turn.to_message() for turn in transcript]
    return messages

class ChatProvider(ABC):
    @abstractmethod
    def stream_chat(self, system_prompt: str, transcript: Transcript) -> Iterable[str]:
        pass

    def complete(self, system_prompt: str, transcript: Transcript) -> str:
        return ''.join(self.stream_chat(system_prompt, transcript))

class ChatProviderOpenAI(ChatProvider):
    def __init__(self, config: Optional[Config] = None, client: Any = None):
        self.__config = config or Config()
        self.__client = client

    def get_config(self) -> Config:
        return self.__config

    def get_client(self):
        if self.__client is None:
            timer.record('import openai begin')
            import openai
            timer.record('import openai end')
            self.__client = openai.OpenAI(
                api_key=self.__config.resolve_api_key(),
                base_url=self.__config.base_url,
                organization=self.__config.organization,
                project=self.__config.project,
                timeout=self.__config.timeout,
            )
        return self.__client

    def reset_client(self):
        self.__client = None

    def request_options(self, system_prompt: str, transcript: Transcript) -> Dict[str, Any]:
        cfg = self.__config
        options: Dict[str, Any] = dict(
            model=cfg.model,
            messages=build_messages(system_prompt, transcript),
        )
        for key in ('temperature', 'max_tokens', 'seed'):
            value = getattr(cfg, key)
            if value is not None:
                options[key] = value
        return options

    def check_usage(self, usage):
        if not self.__config.include_usage or not usage:
            return
        log(f'[USAGE] prompt {usage.prompt_tokens}, completion {getattr(usage, "completion_tokens", 0)} @{self.__config.model}')

    def stream_chat(self, system_prompt, transcript):
        import openai

        options = self.request_options(system_prompt, transcript)
        log(json_dumps(options['messages']))
        if self.__config.include_usage:
            options['stream_options'] = {"include_usage": True}

        completion = lambda: self.get_client().chat.completions.create(stream=True, **options)

        answer = ''
        try:
            for chunk in check_time(completion, self.__config.model, enabled=self.__config.include_time):
                if getattr(chunk, 'usage', None):
                    self.check_usage(chunk.usage)
                if chunk.choices:
                    content = chunk.choices[0].delta.content
                    if content:
                        answer += content
                        yield content
        except openai.OpenAIError as e:
            log(traceback.format_exc())
            raise TransportFailed(str(e) or type(e).__name__) from e
        finally:
            log(answer or '[empty answer]')

    def complete(self, system_prompt, transcript):
        import openai

        options = self.request_options(system_prompt, transcript)
        log(json_dumps(options['messages']))
        try:
            response = self.get_client().chat.completions.create(**options)
        except openai.OpenAIError as e:
            log(traceback.format_exc())
            raise TransportFailed(str(e) or type(e).__name__) from e
        self.check_usage(getattr(response, 'usage', None))
        answer = ''
        if response.choices:
            answer = response.choices[0].message.content or ''
        log(answer or '[empty answer]')
        return answer

class TestChatProvider(unittest.TestCase):
    class FakeCompletions:
        def __init__(self, chunks: List[Optional[str]], error: Optional[Exception] = None):
            self.chunks = chunks
            self.error = error
            self.requests: List[Dict[str, Any]] = []

        def create(self, **options):
            self.requests.append(options)
            if not options.get('stream'):
                if self.error is not None:
                    raise self.error
                message = SimpleNamespace(content=''.join(c or '' for c in self.chunks))
                return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=None)
            return self.stream()

        def stream(self):
            for content in self.chunks:
                delta = SimpleNamespace(content=content)
                yield SimpleNamespace(choices=[SimpleNamespace(delta=delta)], usage=None)
            if self.error is not None:
                raise self.error
            usage = SimpleNamespace(prompt_tokens=3, completion_tokens=2)
            yield SimpleNamespace(choices=[], usage=usage)

    def fake_client(self, chunks: List[Optional[str]], error: Optional[Exception] = None):
        completions = self.FakeCompletions(chunks, error)
        return SimpleNamespace(chat=SimpleNamespace(completions=completions))

    def setUp(self):
        self.transcript = [Turn(Role.USER, 'What is 2+2?'), Turn(Role.ASSISTANT, '4'), Turn(Role.USER, 'And 3+3?')]
        self.cfg = Config(model='test-model', temperature=0.0, include_time=False, include_usage=False)

    def test_build_messages(self):
        messages = build_messages('Be brief.', self.transcript)
        self.assertEqual(messages, [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "What is 2+2?"},
            {"role": "assistant", "content": "4"},
            {"role": "user", "content": "And 3+3?"},
        ])
        self.assertEqual(build_messages('  ', self.transcript)[0]['role'], 'user')

    def test_stream_chat(self):
        client = self.fake_client(['6', None, '', ' indeed'])
        provider = ChatProviderOpenAI(self.cfg, client=client)
        self.assertEqual(list(provider.stream_chat('sys', self.transcript)), ['6', ' indeed'])
        request = client.chat.completions.requests[0]
        self.assertTrue(request['stream'])
        self.assertEqual(request['model'], 'test-model')
        self.assertEqual(request['temperature'], 0.0)
        self.assertNotIn('max_tokens', request)
        self.assertNotIn('stream_options', request)
        self.assertEqual(len(request['messages']), 4)

    def test_stream_usage_option(self):
        self.cfg.include_usage = True
        client = self.fake_client(['a'])
        provider = ChatProviderOpenAI(self.cfg, client=client)
        self.assertEqual(list(provider.stream_chat('', self.transcript)), ['a'])
        self.assertEqual(client.chat.completions.requests[0]['stream_options'], {"include_usage": True})

    def test_stream_failure(self):
        import openai
        client = self.fake_client(['partial'], error=openai.OpenAIError('boom'))
        provider = ChatProviderOpenAI(self.cfg, client=client)
        received = []
        with self.assertRaises(TransportFailed) as cm:
            for chunk in provider.stream_chat('sys', self.transcript):
                received.append(chunk)
        self.assertEqual(received, ['partial'])
        self.assertIn('boom', str(cm.exception))

    def test_complete(self):
        client = self.fake_client(['Hello', ' there'])
        provider = ChatProviderOpenAI(self.cfg, client=client)
        self.assertEqual(provider.complete('sys', self.transcript), 'Hello there')
        self.assertNotIn('stream', client.chat.completions.requests[0])

    def test_complete_failure(self):
        import openai
        provider = ChatProviderOpenAI(self.cfg, client=self.fake_client([], error=openai.OpenAIError('down')))
        with self.assertRaises(TransportFailed):
            provider.complete('sys', self.transcript)

    def test_get_client(self):
        cfg = Config(api_key='sk-test', base_url='http://localhost:1234/v1')
        provider = ChatProviderOpenAI(cfg)
        client = provider.get_client()
        self.assertIs(client, provider.get_client())
        self.assertIn('localhost', str(client.base_url))
        provider.reset_client()
        self.assertIsNot(client, provider.get_client())

    def test_get_client_records_import_time(self):
        import os
        import tempfile
        with tempfile.TemporaryDirectory() as temp_dir:
            path = os.path.join(temp_dir, 'smartmark.log')
            old = os.environ.get('SMARTMARK_LOG')
            os.environ['SMARTMARK_LOG'] = path
            try:
                ChatProviderOpenAI(Config(api_key='sk-test')).get_client()
            finally:
                if old is None:
                    os.environ.pop('SMARTMARK_LOG', None)
                else:
                    os.environ['SMARTMARK_LOG'] = old
            with open(path, 'r') as f:
                content = f.read()
        self.assertIn('[timer] import openai begin: ', content)
        self.assertIn('[timer] import openai end: ', content)

if __name__ == '__main__':
    unittest.main()
