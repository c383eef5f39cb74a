from dataclasses import dataclass
from enum import Enum
from typing import List

class Role(Enum):
    USER = 'user'
    ASSISTANT = 'assistant'

class ScanMode(Enum):
    NONE = 'none'
    COLLECTING_USER = 'collecting_user'
    COLLECTING_ASSISTANT = 'collecting_assistant'

    @property
    def role(self) -> 'Role | None':
        return SCAN_MODE_ROLES.get(self)

SCAN_MODE_ROLES = {
    ScanMode.COLLECTING_USER: Role.USER,
    ScanMode.COLLECTING_ASSISTANT: Role.ASSISTANT,
}

class MarkerKind(Enum):
    TERMINATE = 'terminate'
    SEPARATOR = 'separator'
    USER_BOUNDARY = 'user_boundary'
    ASSISTANT_BOUNDARY = 'assistant_boundary'
    USER_INLINE = 'user_inline'
    ASSISTANT_INLINE = 'assistant_inline'
    PLAIN = 'plain'

@dataclass(frozen=True)
class ClassifiedLine:
    kind: MarkerKind
    text: str
    payload: str = ''

@dataclass(frozen=True)
class Turn:
    role: Role
    content: str

    def to_message(self) -> dict:
        return {"role": self.role.value, "content": self.content}

Transcript = List[Turn]

@dataclass
class InsertionCursor:
    line: int
    column: int
    bytes_written: int = 0
