"""
Generation loop: send the prompt, wait for a stable reply, validate, commit,
repeat until the target chapter count is reached.

One chapter is in flight at a time. Every wait is a polling loop that checks
the abort flag, so stop() takes effect at the next tick without interrupting
a prompt that has already been sent.
"""
from __future__ import annotations

import enum
import sys
import time
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, Optional, Protocol

from chat_surface import (
    ChatSurface,
    ExportFailure,
    GenerationAborted,
    GenerationError,
    ResponseSnapshot,
    ResponseTooShort,
    take_snapshot,
)
from progress_store import ProgressState, ProgressStore
from stability_detector import POLL_INTERVAL_S, StabilityConfig, StabilityDetector


DEFAULT_PROMPT = "Continue the story. Keep the plot flowing naturally and the characters consistent."

PAUSE_POLL_S = 0.5
RETRY_BACKOFF_S = 5.0
RETRY_READY_POLL_S = 1.0


class UnitState(str, enum.Enum):
    IDLE = "idle"
    WAITING_FOR_SURFACE_READY = "waiting_for_surface_ready"
    SENT = "sent"
    AWAITING_STABLE_RESPONSE = "awaiting_stable_response"
    VALIDATED = "validated"
    FAILED = "failed"


@dataclass
class GenerationConfig:
    """Timings in milliseconds unless the name says otherwise."""
    prompt: str = DEFAULT_PROMPT
    initial_wait_time: int = 2000
    delay_after_generation: int = 3000
    stability_check_interval: int = 1000
    stability_required_count: int = 5
    response_timeout: int = 300_000
    auto_save_interval: int = 50
    max_retries: int = 3
    min_chapter_length: int = 100

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "GenerationConfig":
        values: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in settings or settings[f.name] is None:
                continue
            raw = settings[f.name]
            values[f.name] = str(raw) if f.name == "prompt" else int(raw)
        return cls(**values)

    def stability(self) -> StabilityConfig:
        return StabilityConfig(
            stability_check_interval_ms=self.stability_check_interval,
            stability_required_count=self.stability_required_count,
            response_timeout_ms=self.response_timeout,
            delay_after_generation_ms=self.delay_after_generation,
        )


class Notifier(Protocol):
    def info(self, message: str) -> None:
        ...

    def warn(self, message: str) -> None:
        ...

    def success(self, message: str) -> None:
        ...


class NullNotifier:
    def info(self, message: str) -> None:
        pass

    def warn(self, message: str) -> None:
        pass

    def success(self, message: str) -> None:
        pass


class RunControl(Protocol):
    def poll(self) -> Optional[str]:
        """Return a pending "pause" / "resume" / "stop" command, or None."""
        ...


def log(msg: str) -> None:
    print(f"[novelgen] {msg}", file=sys.stderr)


class GenerationController:
    def __init__(
        self,
        surface: ChatSurface,
        store: ProgressStore,
        config: GenerationConfig,
        *,
        export: Optional[Callable[[bool], Any]] = None,
        persist: Optional[Callable[[Dict[str, Any]], None]] = None,
        notifier: Optional[Notifier] = None,
        control: Optional[RunControl] = None,
        events: Optional[Callable[[str, Dict[str, Any]], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.surface = surface
        self.store = store
        self.config = config
        self._export_fn = export
        self._persist_fn = persist
        self.notifier = notifier or NullNotifier()
        self.control = control
        self._events = events
        self._sleep = sleep
        self._wall_clock = wall_clock
        self.unit_state = UnitState.IDLE
        self.detector = StabilityDetector(
            surface,
            config.stability(),
            should_abort=self.should_abort,
            sleep=sleep,
            clock=clock,
        )

    # ----------------------------
    # Side effects
    # ----------------------------

    def _persist(self) -> None:
        if self._persist_fn is not None:
            self._persist_fn(self.store.snapshot())

    def _event(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if self._events is not None:
            self._events(event_type, payload or {})

    def _export(self, silent: bool) -> None:
        if self._export_fn is None:
            return
        try:
            self._export_fn(silent)
        except Exception as e:
            if silent:
                log(f"Checkpoint export failed: {e}")
                self._event("export_failed", {"silent": True, "error": str(e)})
                return
            self.notifier.warn(f"Export failed: {e}")
            self._event("export_failed", {"silent": False, "error": str(e)})
            if isinstance(e, ExportFailure):
                raise
            raise ExportFailure(str(e)) from e
        self._event("export_done", {"silent": silent, "chapter": self.store.get().current_index})

    # ----------------------------
    # Control (pause / resume / stop / reset)
    # ----------------------------

    def _sync_control(self) -> None:
        if self.control is None:
            return
        cmd = self.control.poll()
        if cmd == "pause":
            self.pause()
        elif cmd == "resume":
            self.resume()
        elif cmd == "stop":
            self.stop()

    def should_abort(self) -> bool:
        self._sync_control()
        return self.store.get().aborted

    def pause(self) -> None:
        self.store.update(paused=True)
        self._persist()
        self.notifier.info("Paused")

    def resume(self) -> None:
        self.store.update(paused=False)
        self._persist()
        self.notifier.info("Resumed")

    def stop(self) -> None:
        self.store.update(aborted=True, running=False)
        self._persist()
        self.notifier.warn("Stopped")

    def reset_progress(self) -> bool:
        if self.store.get().running:
            self.notifier.warn("Stop the run before resetting")
            return False
        self.store.update(current_index=0)
        self.store.reset_stats()
        self._persist()
        self.notifier.info("Progress reset")
        return True

    # ----------------------------
    # Waits
    # ----------------------------

    def _wait_until_ready(self, poll_s: float) -> None:
        """Block while the surface is mid-generation. Raises GenerationAborted."""
        self.unit_state = UnitState.WAITING_FOR_SURFACE_READY
        self.detector.wait_while_generating(poll_s=poll_s, timeout=False)

    def _wait_while_paused(self) -> None:
        while self.store.get().paused:
            if self.should_abort():
                raise GenerationAborted("aborted while paused")
            self._sleep(PAUSE_POLL_S)

    # ----------------------------
    # One chapter
    # ----------------------------

    def generate_unit(self, number: int = 0) -> ResponseSnapshot:
        self.unit_state = UnitState.WAITING_FOR_SURFACE_READY
        self.detector.pause_for(self.config.initial_wait_time / 1000)
        self._wait_until_ready(POLL_INTERVAL_S)
        before = take_snapshot(self.surface)
        self.surface.submit_prompt(self.config.prompt)
        self.unit_state = UnitState.SENT
        self._event("prompt_sent", {"chapter": number, "ai_messages_before": before.message_count})
        self.unit_state = UnitState.AWAITING_STABLE_RESPONSE
        result = self.detector.await_stable_response(before.message_count)
        if result.last_length < self.config.min_chapter_length:
            raise ResponseTooShort(
                f"response too short ({result.last_length} < {self.config.min_chapter_length} chars)"
            )
        self.unit_state = UnitState.VALIDATED
        return result

    def generate_with_retries(self, number: int) -> bool:
        """
        Try chapter `number` up to max_retries times.
        Returns False when every attempt failed; GenerationAborted propagates.
        """
        attempts = max(1, int(self.config.max_retries))
        for attempt in range(1, attempts + 1):
            try:
                result = self.generate_unit(number)
            except GenerationAborted:
                raise
            except GenerationError as e:
                self.unit_state = UnitState.FAILED
                self.store.record_error(number, str(e))
                self._persist()
                log(f"Chapter {number} attempt {attempt}/{attempts} failed: {e}")
                self._event("chapter_failed", {"chapter": number, "attempt": attempt, "error": str(e)})
                if attempt < attempts:
                    self.detector.pause_for(RETRY_BACKOFF_S)
                    self._wait_until_ready(RETRY_READY_POLL_S)
                continue
            self.store.record_chapter(result.last_length)
            log(f"Chapter {number} done ({result.last_length} chars)")
            self._event("chapter_done", {
                "chapter": number,
                "length": result.last_length,
                "wait": self.detector.last_wait_info,
            })
            return True
        self.notifier.warn(f"Chapter {number} failed after {attempts} attempts, moving on")
        return False

    # ----------------------------
    # Whole run
    # ----------------------------

    def _run_loop(self) -> bool:
        """Return True when the target was reached, False on abort."""
        while True:
            state = self.store.get()
            if state.current_index >= state.total_target:
                return True
            if self.should_abort():
                return False
            try:
                self._wait_while_paused()
                self.generate_with_retries(state.current_index + 1)
            except GenerationAborted:
                self._event("run_aborted", {"chapter": state.current_index + 1})
                return False
            committed = self.store.update(current_index=state.current_index + 1).current_index
            self.unit_state = UnitState.IDLE
            self._persist()
            interval = int(self.config.auto_save_interval)
            if interval > 0 and committed % interval == 0:
                self._export(silent=True)

    def run_to_completion(self) -> ProgressState:
        if self.store.get().running:
            self.notifier.warn("Already running")
            return self.store.get()

        self.store.update(running=True, paused=False, aborted=False)
        self.store.reset_stats(start_time=self._wall_clock())
        self._persist()
        start = self.store.get()
        self._event("run_started", {"from": start.current_index, "target": start.total_target})

        try:
            ready = True
            if self.surface.is_generating():
                self.notifier.info("Waiting for the current AI reply to finish before starting...")
                try:
                    self._wait_until_ready(POLL_INTERVAL_S)
                except GenerationAborted:
                    ready = False
            if ready:
                self.notifier.info(f"Generating {start.total_target - start.current_index} chapters")
                if self._run_loop():
                    self.notifier.success("Generation complete!")
                    self._export(silent=False)
        finally:
            self.store.update(running=False, paused=False)
            self.unit_state = UnitState.IDLE
            self._persist()
            final = self.store.get()
            self._event("run_finished", {
                "chapter": final.current_index,
                "aborted": final.aborted,
                "errors": len(self.store.stats.errors),
            })
        return self.store.get()
