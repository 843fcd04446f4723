"""
Resumable progress counters and per-run statistics.

The store only holds state; whoever mutates it is responsible for handing
snapshot() to the settings persistence afterwards.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional


@dataclass
class ProgressState:
    current_index: int = 0
    total_target: int = 1
    running: bool = False
    paused: bool = False
    aborted: bool = False


@dataclass
class ErrorRecord:
    index: int
    message: str


@dataclass
class GenerationStats:
    start_time: Optional[float] = None
    completed_count: int = 0
    total_characters: int = 0
    errors: List[ErrorRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GenerationStats":
        data = data or {}
        return cls(
            start_time=data.get("start_time"),
            completed_count=int(data.get("completed_count") or 0),
            total_characters=int(data.get("total_characters") or 0),
            errors=[
                ErrorRecord(index=int(e.get("index", 0)), message=str(e.get("message", "")))
                for e in (data.get("errors") or [])
                if isinstance(e, dict)
            ],
        )


def validate_progress(state: ProgressState) -> None:
    if state.total_target <= 0:
        raise ValueError(f"total_target must be > 0, got {state.total_target}")
    if state.current_index < 0:
        raise ValueError(f"current_index must be >= 0, got {state.current_index}")
    if state.current_index > state.total_target:
        raise ValueError(
            f"current_index ({state.current_index}) cannot exceed total_target ({state.total_target})"
        )


class ProgressStore:
    def __init__(self, state: Optional[ProgressState] = None, stats: Optional[GenerationStats] = None):
        self._state = state or ProgressState()
        validate_progress(self._state)
        self._stats = stats or GenerationStats()

    def get(self) -> ProgressState:
        return replace(self._state)

    def set(self, state: ProgressState) -> None:
        validate_progress(state)
        self._state = replace(state)

    def update(self, **changes: Any) -> ProgressState:
        self.set(replace(self._state, **changes))
        return self.get()

    @property
    def stats(self) -> GenerationStats:
        return self._stats

    def record_error(self, index: int, message: str) -> None:
        self._stats.errors.append(ErrorRecord(index=index, message=message))

    def record_chapter(self, length: int) -> None:
        self._stats.completed_count += 1
        self._stats.total_characters += length

    def reset_stats(self, start_time: Optional[float] = None) -> None:
        self._stats = GenerationStats(start_time=start_time)

    def snapshot(self) -> Dict[str, Any]:
        """Settings-shaped view of progress for persistence."""
        s = self._state
        return {
            "current_chapter": s.current_index,
            "total_chapters": s.total_target,
            "is_running": s.running,
            "is_paused": s.paused,
            "stats": self._stats.to_dict(),
        }


def elapsed_seconds(stats: GenerationStats, now: float) -> Optional[float]:
    if stats.start_time is None:
        return None
    return max(0.0, now - stats.start_time)


def estimate_remaining(state: ProgressState, stats: GenerationStats, now: float) -> Optional[float]:
    """Average time per finished chapter times chapters left."""
    elapsed = elapsed_seconds(stats, now)
    if elapsed is None or stats.completed_count <= 0:
        return None
    avg = elapsed / stats.completed_count
    return avg * (state.total_target - state.current_index)


def format_duration(seconds: Optional[float]) -> str:
    if not seconds or seconds < 0:
        return "--:--:--"
    total = int(seconds)
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"
