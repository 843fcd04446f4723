#!/usr/bin/env python3
"""
novelrun-manager: main control for automatic novel generation in SillyTavern.
Owns the run folder layout (settings.json, events.ndjson, control.json, exports/),
wires the Playwright surface into the generation controller and exposes
run / pause / resume / stop / reset / export / preview / debug / status.
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from chat_surface import DEFAULT_ST_URL, ChatMessage, last_ai_floor
from generation_controller import DEFAULT_PROMPT, GenerationConfig, GenerationController
from novel_exporter import EXPORT_FORMATS, ExportOptions, FileExporter, collect_chapters, make_export_callback
from progress_store import (
    GenerationStats,
    ProgressState,
    ProgressStore,
    elapsed_seconds,
    estimate_remaining,
    format_duration,
)
from tag_extract import extract_tag_contents, unescape_separator

# ----------------------------
# Config & paths
# ----------------------------

DEFAULT_RUNS_DIR = "runs"
CONTROL_COMMANDS = ("pause", "resume", "stop")
PREVIEW_RAW_CHARS = 200
PREVIEW_EXTRACT_CHARS = 400
DEBUG_RAW_CHARS = 500

DEFAULT_SETTINGS: Dict[str, Any] = {
    "total_chapters": 1000,
    "current_chapter": 0,
    "prompt": DEFAULT_PROMPT,
    "delay_after_generation": 3000,
    "initial_wait_time": 2000,
    "stability_check_interval": 1000,
    "stability_required_count": 5,
    "response_timeout": 300000,
    "auto_save_interval": 50,
    "max_retries": 3,
    "min_chapter_length": 100,
    "is_running": False,
    "is_paused": False,
    "export_all": True,
    "export_start_floor": 0,
    "export_end_floor": 99999,
    "export_include_user": False,
    "export_include_ai": True,
    "use_raw_content": True,
    "extract_tags": "",
    "extract_mode": "all",
    "tag_separator": "\n\n",
}


def get_runs_dir() -> Path:
    return Path(os.environ.get("NOVELGEN_RUNS_DIR", DEFAULT_RUNS_DIR)).resolve()


def get_run_dir(run_id: str) -> Path:
    return get_runs_dir() / run_id


def get_project_root() -> Path:
    """Project root (directory containing novelrun_manager.py and config)."""
    return Path(__file__).resolve().parent


def read_config() -> Dict[str, Any]:
    """Read config.json from project root. Missing or invalid file returns {}."""
    path = get_project_root() / "config.json"
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return {}


# ----------------------------
# events.ndjson
# ----------------------------


def now_ts() -> int:
    return int(time.time() * 1000)


def append_event(run_dir: Path, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
    run_dir.mkdir(parents=True, exist_ok=True)
    event = {"event": event_type, "ts": now_ts()}
    if payload:
        event.update(payload)
    with open(run_dir / "events.ndjson", "a", encoding="utf-8") as f:
        f.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")


class RunEvents:
    """events(event_type, payload) hook bound to one run folder."""

    def __init__(self, run_dir: Path):
        self.run_dir = run_dir

    def __call__(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        try:
            append_event(self.run_dir, event_type, payload)
        except OSError as e:
            print(f"Could not append event {event_type}: {e}", file=sys.stderr)


# ----------------------------
# Notifications
# ----------------------------


class ConsoleNotifier:
    def __init__(self, events: Optional[RunEvents] = None):
        self._events = events

    def _emit(self, level: str, message: str) -> None:
        print(f"[{level}] {message}", file=sys.stderr)
        if self._events is not None:
            self._events("notify", {"level": level, "message": message})

    def info(self, message: str) -> None:
        self._emit("info", message)

    def warn(self, message: str) -> None:
        self._emit("warn", message)

    def success(self, message: str) -> None:
        self._emit("success", message)


# ----------------------------
# settings.json
# ----------------------------


class SettingsStore:
    def __init__(self, run_dir: Path):
        self.run_dir = run_dir
        self.path = run_dir / "settings.json"

    def read_raw(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid settings file {self.path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def load(self) -> Dict[str, Any]:
        """Defaults overlaid with the saved file; running/paused never survive a restart."""
        settings = dict(DEFAULT_SETTINGS)
        settings.update(self.read_raw())
        settings["is_running"] = False
        settings["is_paused"] = False
        return settings

    def set_aside(self) -> Optional[Path]:
        """Rename an unreadable settings file so nothing overwrites it."""
        bad = self.path.with_name(f"settings.json.bad-{now_ts()}")
        try:
            self.path.replace(bad)
        except OSError as e:
            print(f"Could not move invalid settings file {self.path}: {e}", file=sys.stderr)
            return None
        print(f"Invalid settings file moved to {bad}", file=sys.stderr)
        return bad

    def save(self, snapshot: Dict[str, Any]) -> None:
        try:
            data = self.read_raw()
        except ValueError:
            if self.set_aside() is None:
                return
            data = dict(DEFAULT_SETTINGS)
        data.update(snapshot)
        try:
            self.run_dir.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            print(f"Could not save settings to {self.path}: {e}", file=sys.stderr)


def coerce_setting(key: str, value: str) -> Any:
    """Convert a CLI string to the type of the setting's default."""
    if key not in DEFAULT_SETTINGS:
        raise ValueError(f"Unknown setting {key!r}. Known: {', '.join(sorted(DEFAULT_SETTINGS))}")
    default = DEFAULT_SETTINGS[key]
    if isinstance(default, bool):
        v = value.strip().lower()
        if v in ("1", "true", "yes", "on"):
            return True
        if v in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"{key} expects true/false, got {value!r}")
    if isinstance(default, int):
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"{key} expects an integer, got {value!r}")
    if key == "tag_separator":
        return unescape_separator(value)
    return value


def parse_assignments(items: List[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for item in items or []:
        if "=" not in item:
            raise ValueError(f"Expected key=value, got {item!r}")
        key, value = item.split("=", 1)
        key = key.strip().replace("-", "_")
        out[key] = coerce_setting(key, value)
    return out


# ----------------------------
# control.json (pause / resume / stop from another shell)
# ----------------------------


class FileRunControl:
    def __init__(self, run_dir: Path):
        self.path = run_dir / "control.json"

    def send(self, command: str) -> None:
        if command not in CONTROL_COMMANDS:
            raise ValueError(f"command must be one of {CONTROL_COMMANDS}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"command": command, "ts": now_ts()}), encoding="utf-8")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def poll(self) -> Optional[str]:
        """Consume and return a pending command, or None."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        self.clear()
        cmd = data.get("command") if isinstance(data, dict) else None
        return cmd if cmd in CONTROL_COMMANDS else None


# ----------------------------
# Run lifecycle
# ----------------------------


def init_run(run_id: str) -> Path:
    run_dir = get_run_dir(run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    (run_dir / "exports").mkdir(exist_ok=True)
    store = SettingsStore(run_dir)
    if not store.path.exists():
        store.save(dict(DEFAULT_SETTINGS))
    if not (run_dir / "events.ndjson").exists():
        append_event(run_dir, "run_created", {"run_id": run_id})
    return run_dir


def configure_run(run_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    run_dir = init_run(run_id)
    store = SettingsStore(run_dir)
    if store.read_raw().get("is_running"):
        raise RuntimeError("A run is in progress; stop it before changing settings.")
    for key in ("total_chapters",):
        if key in updates and updates[key] <= 0:
            raise ValueError(f"{key} must be > 0")
    store.save(updates)
    append_event(run_dir, "settings_saved", {"keys": sorted(updates)})
    return store.load()


def build_progress_store(settings: Dict[str, Any]) -> ProgressStore:
    total = int(settings["total_chapters"])
    current = min(max(0, int(settings.get("current_chapter") or 0)), total)
    state = ProgressState(current_index=current, total_target=total)
    return ProgressStore(state, GenerationStats.from_dict(settings.get("stats")))


def reset_run(run_id: str, force: bool = False) -> Dict[str, Any]:
    run_dir = get_run_dir(run_id)
    store = SettingsStore(run_dir)
    if not store.path.exists():
        raise FileNotFoundError(f"Run not found: {run_dir}. Run init-run first.")
    if store.read_raw().get("is_running") and not force:
        raise RuntimeError("A run is in progress; stop it first (or pass --force if it crashed).")
    settings = store.load()
    events = RunEvents(run_dir)
    controller = GenerationController(
        surface=None,  # reset never touches the page
        store=build_progress_store(settings),
        config=GenerationConfig.from_settings(settings),
        persist=store.save,
        notifier=ConsoleNotifier(events),
        events=events,
    )
    controller.reset_progress()
    return {"ok": True, "run_id": run_id, "current_chapter": 0}


def run_status(run_id: str) -> Dict[str, Any]:
    run_dir = get_run_dir(run_id)
    store = SettingsStore(run_dir)
    if not store.path.exists():
        raise FileNotFoundError(f"Run not found: {run_dir}. Run init-run first.")
    raw = store.read_raw()
    settings = dict(DEFAULT_SETTINGS)
    settings.update(raw)
    progress = build_progress_store(settings)
    state = progress.get()
    stats = progress.stats
    now = time.time()
    pct = round(state.current_index / state.total_target * 100, 1) if state.total_target > 0 else 0
    if raw.get("is_running"):
        status = "paused" if raw.get("is_paused") else "running"
    else:
        status = "stopped"
    return {
        "run_id": run_id,
        "status": status,
        "progress": f"{state.current_index} / {state.total_target} ({pct}%)",
        "current_chapter": state.current_index,
        "total_chapters": state.total_target,
        "chapters_generated": stats.completed_count,
        "total_characters": stats.total_characters,
        "elapsed": format_duration(elapsed_seconds(stats, now)),
        "remaining": format_duration(estimate_remaining(state, stats, now)),
        "errors": len(stats.errors),
        "last_errors": [e.__dict__ for e in stats.errors[-5:]],
    }


def send_control(run_id: str, command: str) -> Dict[str, Any]:
    run_dir = get_run_dir(run_id)
    if not (run_dir / "settings.json").exists():
        raise FileNotFoundError(f"Run not found: {run_dir}. Run init-run first.")
    FileRunControl(run_dir).send(command)
    append_event(run_dir, "control_sent", {"command": command})
    return {"ok": True, "run_id": run_id, "command": command}


def resolve_url(url: Optional[str]) -> str:
    return url or read_config().get("st_url") or DEFAULT_ST_URL


def start_run(
    run_id: str,
    *,
    url: Optional[str] = None,
    headed: bool = False,
    profile_dir: Optional[str] = None,
    connect: Optional[str] = None,
    fmt: str = "txt",
    force: bool = False,
) -> Dict[str, Any]:
    run_dir = init_run(run_id)
    store = SettingsStore(run_dir)
    if store.read_raw().get("is_running"):
        if not force:
            raise RuntimeError("A run is in progress; stop it first (or pass --force if it crashed).")
        print("Ignoring the running flag in settings.json (--force).", file=sys.stderr)
    settings = store.load()
    config = GenerationConfig.from_settings(settings)
    if not config.prompt.strip():
        raise ValueError("Prompt is empty. Set it with: configure <run> --prompt-file PATH")

    events = RunEvents(run_dir)
    notifier = ConsoleNotifier(events)
    control = FileRunControl(run_dir)
    control.clear()
    progress = build_progress_store(settings)
    options = ExportOptions.from_settings(settings)
    exporter = FileExporter(run_dir / "exports", fmt=fmt, notifier=notifier, events=events)
    profile = Path(profile_dir).resolve() if profile_dir else None
    connect_url = (connect or "").strip() or None

    from st_operator import SillyTavernSurface, open_st_page, save_debug

    with open_st_page(resolve_url(url), headed=headed, profile_dir=profile, connect_url=connect_url) as page:
        surface = SillyTavernSurface(page, use_raw_content=options_use_raw(settings))
        controller = GenerationController(
            surface,
            progress,
            config,
            export=make_export_callback(surface.list_messages, options, exporter),
            persist=store.save,
            notifier=notifier,
            control=control,
            events=events,
        )
        # only flag the abort here; the loop's finally persists
        previous = signal.signal(signal.SIGINT, lambda signum, frame: progress.update(aborted=True))
        try:
            final = controller.run_to_completion()
        except Exception:
            save_debug(page, run_dir)
            raise
        finally:
            signal.signal(signal.SIGINT, previous)

    return {
        "ok": not final.aborted,
        "run_id": run_id,
        "current_chapter": final.current_index,
        "total_chapters": final.total_target,
        "aborted": final.aborted,
        "chapters_generated": progress.stats.completed_count,
        "total_characters": progress.stats.total_characters,
        "errors": [e.__dict__ for e in progress.stats.errors],
        "last_export": str(exporter.last_path) if exporter.last_path else None,
    }


def options_use_raw(settings: Dict[str, Any]) -> bool:
    return bool(settings.get("use_raw_content", True))


def _read_messages(
    settings: Dict[str, Any],
    url: Optional[str],
    headed: bool,
    profile_dir: Optional[str],
    connect: Optional[str],
) -> List[ChatMessage]:
    from st_operator import SillyTavernSurface, open_st_page

    profile = Path(profile_dir).resolve() if profile_dir else None
    connect_url = (connect or "").strip() or None
    with open_st_page(resolve_url(url), headed=headed, profile_dir=profile, connect_url=connect_url) as page:
        return SillyTavernSurface(page, use_raw_content=options_use_raw(settings)).list_messages()


def export_run(run_id: str, *, fmt: str = "txt", out: Optional[str] = None, **browser: Any) -> Dict[str, Any]:
    run_dir = init_run(run_id)
    settings = SettingsStore(run_dir).load()
    events = RunEvents(run_dir)
    out_dir = Path(out).resolve() if out else run_dir / "exports"
    exporter = FileExporter(out_dir, fmt=fmt, notifier=ConsoleNotifier(events), events=events)
    messages = _read_messages(settings, **browser)
    chapters = collect_chapters(messages, ExportOptions.from_settings(settings))
    path = exporter.export(chapters, silent=False)
    return {"ok": path is not None, "path": str(path) if path else None, "chapters": len(chapters)}


def build_preview(messages: List[ChatMessage], settings: Dict[str, Any]) -> Dict[str, Any]:
    """What tag extraction would make of the latest AI reply."""
    if not messages:
        return {"ok": False, "warning": "Could not read chat data."}
    floor = last_ai_floor(messages)
    if floor < 0:
        return {"ok": False, "warning": "No AI messages."}
    raw = messages[floor].raw_text
    spec = ExportOptions.from_settings(settings).extraction
    preview: Dict[str, Any] = {
        "ok": True,
        "floor": floor,
        "length": len(raw),
        "raw": raw[:PREVIEW_RAW_CHARS] + ("..." if len(raw) > PREVIEW_RAW_CHARS else ""),
        "mode": spec.mode.value,
    }
    if spec.uses_tags:
        extracted = extract_tag_contents(raw, spec.tags, spec.separator)
        preview["tags"] = list(spec.tags)
        if extracted:
            preview["extracted_length"] = len(extracted)
            preview["extracted"] = extracted[:PREVIEW_EXTRACT_CHARS] + (
                "..." if len(extracted) > PREVIEW_EXTRACT_CHARS else ""
            )
        else:
            preview["ok"] = False
            preview["warning"] = "No tags found."
    return preview


def build_debug(messages: List[ChatMessage], settings: Dict[str, Any], floor: Optional[int] = None) -> Dict[str, Any]:
    if floor is None:
        floor = last_ai_floor(messages)
    if floor < 0 or floor >= len(messages):
        return {"ok": False, "count": len(messages), "warning": f"Floor {floor} does not exist."}
    msg = messages[floor]
    out: Dict[str, Any] = {
        "ok": True,
        "count": len(messages),
        "floor": floor,
        "is_user": msg.is_user_authored,
        "mes": msg.raw_text[:DEBUG_RAW_CHARS],
    }
    tags = list(ExportOptions.from_settings(settings).extraction.tags)
    if tags:
        out["tags"] = tags
        out["tag_test"] = extract_tag_contents(msg.raw_text, tags, "\n---\n") or "(no match)"
    return out


# ----------------------------
# CLI
# ----------------------------


def _add_browser_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--url", default=None, help="SillyTavern URL (else config.json st_url).")
    p.add_argument("--headed", action="store_true", help="Run browser visible.")
    p.add_argument("--profile-dir", default=None, help="Chrome profile dir for a persistent session.")
    p.add_argument("--connect", default=None, metavar="URL", help="Attach to Chrome via CDP.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="novelrun-manager",
        description="Automatic chapter generation in SillyTavern: run state, control and export.",
    )
    p.add_argument(
        "--runs-dir",
        default=None,
        help=f"Runs root directory (default: env NOVELGEN_RUNS_DIR or {DEFAULT_RUNS_DIR}).",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    init_p = sub.add_parser("init-run", help="Create run folder with default settings.json.")
    init_p.add_argument("run_id", help="Run identifier (folder name).")

    conf_p = sub.add_parser("configure", help="Update settings.json.")
    conf_p.add_argument("run_id", help="Run identifier.")
    conf_p.add_argument("--set", dest="assignments", action="append", default=[], metavar="KEY=VALUE",
                        help="Setting to change (repeatable), e.g. --set total_chapters=200.")
    conf_p.add_argument("--prompt-file", default=None, help="Path to a text file containing the prompt.")

    run_p = sub.add_parser("run", help="Generate chapters until the target is reached (resumes).")
    run_p.add_argument("run_id", help="Run identifier.")
    run_p.add_argument("--format", choices=EXPORT_FORMATS, default="txt", help="Checkpoint/final export format.")
    run_p.add_argument("--force", action="store_true", help="Start even if settings.json says a run is active.")
    _add_browser_args(run_p)

    for name, help_text in (
        ("pause", "Pause a running generation before its next chapter."),
        ("resume", "Resume a paused generation."),
        ("stop", "Stop a running generation at its next wait point."),
    ):
        cp = sub.add_parser(name, help=help_text)
        cp.add_argument("run_id", help="Run identifier.")

    reset_p = sub.add_parser("reset", help="Reset progress to chapter 0 and clear stats.")
    reset_p.add_argument("run_id", help="Run identifier.")
    reset_p.add_argument("--force", action="store_true", help="Reset even if a run looks active.")

    status_p = sub.add_parser("status", help="Show progress, elapsed time and estimate.")
    status_p.add_argument("run_id", help="Run identifier.")

    export_p = sub.add_parser("export", help="Export chapters from the current chat.")
    export_p.add_argument("run_id", help="Run identifier.")
    export_p.add_argument("--format", choices=EXPORT_FORMATS, default="txt", help="Output format.")
    export_p.add_argument("--out", default=None, help="Output directory (default <run>/exports).")
    _add_browser_args(export_p)

    preview_p = sub.add_parser("preview", help="Show tag extraction on the latest AI reply.")
    preview_p.add_argument("run_id", help="Run identifier.")
    _add_browser_args(preview_p)

    debug_p = sub.add_parser("debug", help="Print raw content of a floor and test tag extraction.")
    debug_p.add_argument("run_id", help="Run identifier.")
    debug_p.add_argument("--floor", type=int, default=None, help="Floor index (default: latest AI reply).")
    _add_browser_args(debug_p)

    return p


def _browser_kwargs(ns: argparse.Namespace) -> Dict[str, Any]:
    return {"url": ns.url, "headed": ns.headed, "profile_dir": ns.profile_dir, "connect": ns.connect}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    ns = parser.parse_args(argv)

    if ns.runs_dir:
        os.environ["NOVELGEN_RUNS_DIR"] = ns.runs_dir

    try:
        if ns.cmd == "init-run":
            init_run(ns.run_id)
            print(f"Run initialized: {get_run_dir(ns.run_id)}")
            return 0

        if ns.cmd == "configure":
            updates = parse_assignments(ns.assignments)
            if ns.prompt_file:
                updates["prompt"] = Path(ns.prompt_file).read_text(encoding="utf-8")
            if not updates:
                print("Nothing to change: pass --set KEY=VALUE or --prompt-file", file=sys.stderr)
                return 2
            settings = configure_run(ns.run_id, updates)
            print(json.dumps({k: settings[k] for k in sorted(updates)}, indent=2, ensure_ascii=False))
            return 0

        if ns.cmd == "run":
            result = start_run(ns.run_id, fmt=ns.format, force=ns.force, **_browser_kwargs(ns))
        elif ns.cmd in CONTROL_COMMANDS:
            result = send_control(ns.run_id, ns.cmd)
        elif ns.cmd == "reset":
            result = reset_run(ns.run_id, force=ns.force)
        elif ns.cmd == "status":
            result = run_status(ns.run_id)
        elif ns.cmd == "export":
            result = export_run(ns.run_id, fmt=ns.format, out=ns.out, **_browser_kwargs(ns))
        elif ns.cmd == "preview":
            settings = SettingsStore(init_run(ns.run_id)).load()
            result = build_preview(_read_messages(settings, **_browser_kwargs(ns)), settings)
        elif ns.cmd == "debug":
            settings = SettingsStore(init_run(ns.run_id)).load()
            result = build_debug(_read_messages(settings, **_browser_kwargs(ns)), settings, ns.floor)
        else:
            parser.error(f"Unknown command: {ns.cmd}")
            return 2
    except (ValueError, FileNotFoundError, RuntimeError) as e:
        print(str(e), file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
