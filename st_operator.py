#!/usr/bin/env python3
"""
SillyTavern operator: Playwright-backed chat surface for a SillyTavern tab.
Reads chat history, detects an in-flight generation and submits prompts.
"""
from __future__ import annotations

import argparse
import contextlib
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from playwright.sync_api import sync_playwright, Page

from chat_surface import DEFAULT_ST_URL, ChatMessage, InputUnavailable, take_snapshot


# ----------------------------
# SillyTavern selectors
# ----------------------------

MESSAGE_SELECTOR = "#chat .mes"
MESSAGE_TEXT_SELECTOR = ".mes_text"
TEXTAREA_SELECTOR = "#send_textarea"
SEND_BUTTON_SELECTOR = "#send_but"
GENERATING_SELECTORS = (
    '#mes_stop:not([style*="display: none"])',
    "#send_but[disabled]",
    ".mes.generating",
)

# Raw chat array (what the edit button shows), before any display regex runs.
READ_RAW_CHAT_JS = """
() => {
  const pick = (ctx) => (ctx && Array.isArray(ctx.chat)) ? ctx.chat : null;
  let chat = null;
  try {
    if (typeof SillyTavern !== 'undefined' && SillyTavern.getContext) chat = pick(SillyTavern.getContext());
  } catch (e) {}
  if (!chat) {
    try { if (typeof getContext === 'function') chat = pick(getContext()); } catch (e) {}
  }
  if (!chat && Array.isArray(window.chat)) chat = window.chat;
  if (!chat) return null;
  return chat.map(m => {
    const isUser = !!(m && (m.is_user || m.is_human));
    return { is_user: isUser, name: (m && m.name) || (isUser ? 'User' : 'AI'), mes: (m && m.mes) || '' };
  });
}
"""

# Rendered messages, after display regex / formatting.
READ_DOM_CHAT_JS = """
(sel) => Array.from(document.querySelectorAll(sel.message)).map(el => {
  const isUser = el.getAttribute('is_user') === 'true';
  const textEl = el.querySelector(sel.text);
  return {
    is_user: isUser,
    name: el.getAttribute('ch_name') || (isUser ? 'User' : 'AI'),
    mes: textEl ? (textEl.innerText || '').trim() : '',
  };
})
"""

FILL_TEXTAREA_JS = """
([sel, text]) => {
  const ta = document.querySelector(sel);
  if (!ta) return false;
  ta.value = '';
  ta.focus();
  ta.value = text;
  ta.dispatchEvent(new Event('input', { bubbles: true }));
  return true;
}
"""


def _to_messages(rows: Any) -> List[ChatMessage]:
    out: List[ChatMessage] = []
    for r in rows or []:
        if not isinstance(r, dict):
            continue
        out.append(ChatMessage(
            is_user_authored=bool(r.get("is_user")),
            author_name=str(r.get("name") or ""),
            raw_text=str(r.get("mes") or ""),
        ))
    return out


class SillyTavernSurface:
    def __init__(self, page: Page, use_raw_content: bool = True):
        self.page = page
        self.use_raw_content = use_raw_content

    def read_raw_chat(self) -> Optional[List[ChatMessage]]:
        try:
            rows = self.page.evaluate(READ_RAW_CHAT_JS)
        except Exception:
            return None
        if rows is None:
            return None
        return _to_messages(rows)

    def read_dom_chat(self) -> List[ChatMessage]:
        try:
            rows = self.page.evaluate(
                READ_DOM_CHAT_JS, {"message": MESSAGE_SELECTOR, "text": MESSAGE_TEXT_SELECTOR}
            )
        except Exception:
            return []
        return _to_messages(rows)

    def list_messages(self) -> List[ChatMessage]:
        if self.use_raw_content:
            raw = self.read_raw_chat()
            if raw is not None:
                return raw
        return self.read_dom_chat()

    def is_generating(self) -> bool:
        for sel in GENERATING_SELECTORS:
            try:
                if self.page.locator(sel).count() > 0:
                    return True
            except Exception:
                pass
        return False

    def submit_prompt(self, text: str) -> None:
        try:
            if self.page.locator(TEXTAREA_SELECTOR).count() == 0 or self.page.locator(SEND_BUTTON_SELECTOR).count() == 0:
                raise InputUnavailable("Could not find the prompt input or send button.")
            if not self.page.evaluate(FILL_TEXTAREA_JS, [TEXTAREA_SELECTOR, text]):
                raise InputUnavailable("Prompt input disappeared before it could be filled.")
            self.page.wait_for_timeout(100)
            self.page.locator(SEND_BUTTON_SELECTOR).first.click(timeout=2000)
        except InputUnavailable:
            raise
        except Exception as e:
            raise InputUnavailable(f"Could not submit prompt: {e}") from e


# ----------------------------
# Browser session
# ----------------------------

def save_debug(page: Page, out_dir: Path) -> None:
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        (out_dir / "debug.html").write_text(page.content(), encoding="utf-8")
        page.screenshot(path=str(out_dir / "debug.png"), full_page=True)
    except Exception:
        pass


def _pick_tab(pages: List[Page], url: str) -> Optional[Page]:
    target = url.rstrip("/")
    for tab in pages:
        try:
            if target in (tab.url or ""):
                return tab
        except Exception:
            pass
    return pages[0] if pages else None


@contextlib.contextmanager
def open_st_page(
    url: str,
    *,
    headed: bool = False,
    profile_dir: Optional[Path] = None,
    connect_url: Optional[str] = None,
) -> Iterator[Page]:
    """
    Yield a Page showing SillyTavern. Either attach to a running Chrome over CDP
    (the tab with the chat you want must be open) or launch Chromium ourselves.
    """
    with sync_playwright() as p:
        attached = connect_url is not None
        if attached:
            # 127.0.0.1 instead of localhost avoids IPv6 (::1) connection refused on some systems
            cdp = connect_url.strip().replace("localhost", "127.0.0.1")
            try:
                browser = p.chromium.connect_over_cdp(cdp)
            except Exception as e:
                raise RuntimeError(
                    f"Could not connect to browser at {cdp}: {e}. "
                    "Start Chrome with --remote-debugging-port=9222 and pass --connect http://127.0.0.1:9222"
                ) from e
            if not browser.contexts:
                raise RuntimeError(
                    "No browser context found. Make sure Chrome was started with --remote-debugging-port=9222"
                )
            context = browser.contexts[0]
            page = _pick_tab(context.pages, url)
            if page is None:
                raise RuntimeError("No tabs found in the attached browser. Open SillyTavern and re-run with --connect.")
            if url.rstrip("/") not in (page.url or ""):
                page.goto(url, wait_until="domcontentloaded", timeout=60_000)
            page.wait_for_timeout(1500)
        else:
            if profile_dir is not None:
                profile_dir.mkdir(parents=True, exist_ok=True)
                context = p.chromium.launch_persistent_context(
                    user_data_dir=str(profile_dir),
                    headless=not headed,
                )
            else:
                browser = p.chromium.launch(headless=not headed)
                context = browser.new_context()
            page = context.new_page()
            page.goto(url, wait_until="domcontentloaded", timeout=60_000)
            page.wait_for_timeout(1500)

        try:
            yield page
        finally:
            if not attached:
                try:
                    context.close()
                except Exception:
                    pass


# ----------------------------
# CLI
# ----------------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="st_operator", description="Inspect or drive a SillyTavern tab.")
    sub = p.add_subparsers(dest="cmd", required=True)

    for name, help_text in (
        ("messages", "Dump the chat history as JSON."),
        ("state", "Print AI message count, last reply length and the generating flag."),
        ("send", "Send one prompt (no waiting)."),
    ):
        sp = sub.add_parser(name, help=help_text)
        sp.add_argument("--url", default=DEFAULT_ST_URL, help="SillyTavern URL.")
        sp.add_argument("--rendered", action="store_true", help="Read rendered DOM text instead of raw chat.")
        sp.add_argument("--headed", action="store_true", help="Run with visible browser window.")
        sp.add_argument("--profile-dir", default=None, help="Chrome profile dir for a persistent session.")
        sp.add_argument("--connect", default=None, metavar="URL", help="Attach to existing Chrome via CDP.")
        if name == "send":
            sp.add_argument("--prompt", required=True, help="Prompt text.")
    return p


def main() -> int:
    ns = build_parser().parse_args()
    profile_dir = Path(ns.profile_dir).resolve() if ns.profile_dir else None
    connect_url = (ns.connect or "").strip() or None
    try:
        with open_st_page(ns.url, headed=ns.headed, profile_dir=profile_dir, connect_url=connect_url) as page:
            surface = SillyTavernSurface(page, use_raw_content=not ns.rendered)
            result: Dict[str, Any]
            if ns.cmd == "messages":
                msgs = surface.list_messages()
                result = {"count": len(msgs), "messages": [m.__dict__ for m in msgs]}
            elif ns.cmd == "state":
                snap = take_snapshot(surface)
                result = {
                    "ai_messages": snap.message_count,
                    "last_length": snap.last_length,
                    "generating": surface.is_generating(),
                }
            else:
                if surface.is_generating():
                    print("AI is still generating; not sending.", file=sys.stderr)
                    return 1
                surface.submit_prompt(ns.prompt)
                result = {"ok": True}
    except (InputUnavailable, RuntimeError) as e:
        print(str(e), file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
