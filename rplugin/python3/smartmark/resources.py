class MARKERS:
    USER = '==='
    ASSISTANT = '= ='
    SEPARATOR_CHAR = '-'
    TERMINATOR = '=-='
    TERMINATOR_CHARS = 'xX'


DEFAULT_SEPARATOR_LENGTH = 5
MIN_TERMINATOR_REPEAT = 4

INTERRUPTION_TAG = '[interrupted]'

THOUGHT_TAG_REWRITES = {
    '<think>': '[think]',
    '</think>': '[/think]',
}

DEFAULT_SYSTEM_PROMPT = r'''
You are a helpful AI assistant.
'''.strip()

DEFAULT_OPENAI_MODEL = 'gpt-3.5-turbo'
FALLBACK_TIKTOKEN_ENCODING = 'o200k_base'
