"""
Decide when an AI reply has finished arriving.

The chat UI gives no "done" event, so completion is inferred by polling:
a new AI message must appear, the generating indicator must clear, and the
reply length must stay unchanged for N consecutive samples.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from chat_surface import (
    ChatSurface,
    GenerationAborted,
    GenerationTimeout,
    ResponseSnapshot,
    take_snapshot,
)


POLL_INTERVAL_S = 0.3
NEW_MESSAGE_SETTLE_S = 0.5


@dataclass
class StabilityConfig:
    stability_check_interval_ms: int = 1000
    stability_required_count: int = 5
    response_timeout_ms: int = 300_000
    delay_after_generation_ms: int = 3000


def _never() -> bool:
    return False


class StabilityDetector:
    def __init__(
        self,
        surface: ChatSurface,
        config: StabilityConfig,
        should_abort: Optional[Callable[[], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.surface = surface
        self.config = config
        self._should_abort = should_abort or _never
        self._sleep = sleep
        self._clock = clock
        # Telemetry about the last wait, like the operators' done_info.
        self.last_wait_info: Dict[str, Any] = {}

    # ----------------------------
    # Suspension points
    # ----------------------------

    def check_abort(self) -> None:
        if self._should_abort():
            raise GenerationAborted("aborted")

    def pause_for(self, seconds: float) -> None:
        """Sleep in poll-sized slices so an abort is noticed quickly."""
        remaining = seconds
        while remaining > 0:
            self.check_abort()
            step = min(POLL_INTERVAL_S, remaining)
            self._sleep(step)
            remaining -= step
        self.check_abort()

    def _check_deadline(self, t0: float, phase: str) -> None:
        elapsed = self._clock() - t0
        if elapsed * 1000 > self.config.response_timeout_ms:
            self.last_wait_info = {"done": False, "reason": "timeout", "phase": phase, "elapsed_s": round(elapsed, 2)}
            raise GenerationTimeout(
                f"timeout waiting for {phase} ({self.config.response_timeout_ms / 1000:.0f}s)"
            )

    # ----------------------------
    # Phases
    # ----------------------------

    def wait_for_new_message(self, prior_message_count: int) -> None:
        t0 = self._clock()
        while take_snapshot(self.surface).message_count <= prior_message_count:
            self.check_abort()
            self._check_deadline(t0, "new message")
            self._sleep(POLL_INTERVAL_S)

    def wait_while_generating(self, poll_s: float = POLL_INTERVAL_S, timeout: bool = True) -> None:
        t0 = self._clock()
        while self.surface.is_generating():
            self.check_abort()
            if timeout:
                self._check_deadline(t0, "generation to finish")
            self._sleep(poll_s)

    def confirm_stable(self) -> int:
        """Return the number of length samples taken until stability was declared."""
        required = max(1, int(self.config.stability_required_count))
        interval_s = self.config.stability_check_interval_ms / 1000
        t0 = self._clock()
        last_len = 0
        stable = 0
        samples = 0
        while stable < required:
            self.check_abort()
            self._check_deadline(t0, "stable response")
            if self.surface.is_generating():
                stable = 0
                self._sleep(POLL_INTERVAL_S)
                continue
            length = take_snapshot(self.surface).last_length
            samples += 1
            if length == last_len and length > 0:
                stable += 1
            else:
                stable = 0
                last_len = length
            self.pause_for(interval_s)
        return samples

    def await_stable_response(self, prior_message_count: int) -> ResponseSnapshot:
        t0 = self._clock()
        self.wait_for_new_message(prior_message_count)
        self.pause_for(NEW_MESSAGE_SETTLE_S)
        self.wait_while_generating()
        samples = self.confirm_stable()
        self.pause_for(self.config.delay_after_generation_ms / 1000)
        snap = take_snapshot(self.surface)
        self.last_wait_info = {
            "done": True,
            "reason": "length_stable",
            "elapsed_s": round(self._clock() - t0, 2),
            "samples": samples,
            "length": snap.last_length,
        }
        return snap
