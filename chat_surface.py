"""
Chat surface contract: what the generation loop needs from the chat UI it drives,
plus the failure conditions raised while waiting on it.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Protocol, Sequence


# Local SillyTavern server, used when neither --url nor config.json st_url is set.
DEFAULT_ST_URL = "http://127.0.0.1:8000/"

# ----------------------------
# Errors
# ----------------------------

class GenerationError(RuntimeError):
    """Base for failures of a single generation unit."""


class GenerationTimeout(GenerationError):
    pass


class GenerationAborted(GenerationError):
    """User asked to stop. Never retried."""


class ResponseTooShort(GenerationError):
    pass


class InputUnavailable(GenerationError):
    """No prompt input or send button on the page."""


class ExportFailure(GenerationError):
    pass


# ----------------------------
# Messages & snapshots
# ----------------------------

@dataclass
class ChatMessage:
    is_user_authored: bool
    author_name: str
    raw_text: str


@dataclass
class ResponseSnapshot:
    message_count: int
    last_text: str
    last_length: int


class ChatSurface(Protocol):
    def list_messages(self) -> List[ChatMessage]:
        ...

    def is_generating(self) -> bool:
        ...

    def submit_prompt(self, text: str) -> None:
        ...


def ai_messages(messages: Sequence[ChatMessage]) -> List[ChatMessage]:
    return [m for m in messages if not m.is_user_authored]


def take_snapshot(surface: ChatSurface) -> ResponseSnapshot:
    """Count AI replies and measure the latest one."""
    replies = ai_messages(surface.list_messages())
    if not replies:
        return ResponseSnapshot(message_count=0, last_text="", last_length=0)
    last = (replies[-1].raw_text or "").strip()
    return ResponseSnapshot(message_count=len(replies), last_text=last, last_length=len(last))


def last_ai_floor(messages: Sequence[ChatMessage]) -> int:
    """Floor (index) of the latest non-empty AI message, or -1."""
    for i in range(len(messages) - 1, -1, -1):
        m = messages[i]
        if not m.is_user_authored and m.raw_text:
            return i
    return -1
