"""Shared pytest fixtures: a virtual clock and an in-memory chat surface."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

import pytest

from chat_surface import ChatMessage, InputUnavailable


class FakeClock:
    """sleep() advances virtual time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def wall(self) -> float:
        return 1_700_000_000.0 + self.now


@dataclass
class Reply:
    text: str
    appear_after: float = 1.0
    stream_for: float = 2.0
    show_generating: bool = True


LONG_TEXT = "Chapter text. " * 20


class FakeSurface:
    """
    Each submit_prompt() consumes the next Reply (None = the model never answers).
    A reply appears `appear_after` seconds after the send and grows to its full
    text over `stream_for` seconds, with the generating indicator on meanwhile.
    """

    def __init__(
        self,
        clock: FakeClock,
        replies: Optional[Sequence[Optional[Reply]]] = None,
        history: Optional[Sequence[ChatMessage]] = None,
        generating_windows: Sequence[Tuple[float, float]] = (),
        failing_submits: int = 0,
    ) -> None:
        self.clock = clock
        self.replies: List[Optional[Reply]] = list(replies or [])
        self.default_reply = Reply(LONG_TEXT)
        self.history = list(history or [])
        self.generating_windows = list(generating_windows)
        self.failing_submits = failing_submits
        self.sent: List[Tuple[float, str, Optional[Reply]]] = []
        self.submit_times: List[float] = []
        self.generating_at_submit: List[bool] = []
        self.on_submit: Optional[Callable[[], Any]] = None

    def _generating(self, now: float) -> bool:
        for start, end in self.generating_windows:
            if start <= now < end:
                return True
        for sent_at, _, reply in self.sent:
            if reply is None or not reply.show_generating:
                continue
            if sent_at <= now < sent_at + reply.appear_after + reply.stream_for:
                return True
        return False

    def list_messages(self) -> List[ChatMessage]:
        now = self.clock.now
        msgs = list(self.history)
        for sent_at, prompt, reply in self.sent:
            msgs.append(ChatMessage(True, "User", prompt))
            if reply is None:
                continue
            t = now - sent_at - reply.appear_after
            if t < 0:
                continue
            if reply.stream_for <= 0 or t >= reply.stream_for:
                text = reply.text
            else:
                text = reply.text[: max(1, int(len(reply.text) * t / reply.stream_for))]
            msgs.append(ChatMessage(False, "AI", text))
        return msgs

    def is_generating(self) -> bool:
        return self._generating(self.clock.now)

    def submit_prompt(self, text: str) -> None:
        now = self.clock.now
        self.generating_at_submit.append(self._generating(now))
        if self.failing_submits > 0:
            self.failing_submits -= 1
            raise InputUnavailable("Could not find the prompt input or send button.")
        self.submit_times.append(now)
        reply = self.replies.pop(0) if self.replies else self.default_reply
        self.sent.append((now, text, reply))
        if self.on_submit is not None:
            self.on_submit()


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: List[Tuple[str, str]] = []

    def info(self, message: str) -> None:
        self.messages.append(("info", message))

    def warn(self, message: str) -> None:
        self.messages.append(("warn", message))

    def success(self, message: str) -> None:
        self.messages.append(("success", message))


class ScriptedControl:
    """Returns one scripted command per poll, then None."""

    def __init__(self, commands: Sequence[Optional[str]]) -> None:
        self.commands = list(commands)
        self.polls = 0

    def poll(self) -> Optional[str]:
        self.polls += 1
        if self.commands:
            return self.commands.pop(0)
        return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
