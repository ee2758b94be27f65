"""
PageValidator — loads a URL in headless Chromium (Playwright, sync API) and
reduces four signal channels to a pass/fail verdict:

  console     error-level messages, automation noise filtered out
  pageerror   uncaught exceptions not raised by Playwright's own evaluation
  response    HTTP >= 400, favicon / sourcemaps excluded
  DOM probe   content present? visible Vite error overlay? (2s after load)

Without Playwright, or when the browser cannot be launched, a plain HTTP GET
with requests stands in; it only sees resolver errors rendered into the body.
"""
import os, re, logging, importlib.util
from dataclasses import dataclass, field
from typing import Optional

import requests
import urllib3

from devpilot import config
from devpilot.detector import (
    detect_from_overlay, detect_from_console, dedupe,
    MISSING_DEPENDENCY, CSS_ERROR, IMPORT_ERROR,
)
from devpilot.fixer import install_command

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

log = logging.getLogger("validator")
_emit = None

def set_emit(fn):
    global _emit
    _emit = fn

def elog(lvl, txt):
    if _emit:
        _emit({"type": "log", "level": lvl, "text": txt})
    log.info(f"[{lvl}] {txt}")


# ── Noise filters ─────────────────────────────────────────────────────────────

CONSOLE_NOISE = (
    "playwright", "evaluation", "chromium", "browser", "favicon", "sourcemap",
    "devtools", "extension", "chrome-extension",
)
STACK_NOISE = (
    "page.evaluate", "evaluation", "playwright", "chromium", "browser",
    "frame.evaluate", "framemanager",
)
MESSAGE_NOISE = ("favicon", "sourcemap", "extension", "chrome-extension")
URL_NOISE     = ("favicon", "sourcemap", ".map")

RESOLVER_SIGNALS = ("failed to resolve", "cannot find module", "module not found")
CONSOLE_SIGNALS  = RESOLVER_SIGNALS + ("[plugin:vite:import-analysis]", "@ant-design", "@/")

HTTP_BODY_SIGNALS = (
    "Failed to resolve import", "[plugin:vite:import-analysis]",
    "Cannot find module", "Module not found",
)
HTTP_ERROR_PATTERNS = [
    re.compile(r"""Failed to resolve import\s+["']([^"']+)["']""", re.I),
    re.compile(r"\[plugin:vite:import-analysis\][^\n<]+", re.I),
    re.compile(r"""Cannot find module\s+["']([^"']+)["']""", re.I),
    re.compile(r"""Module not found:?\s+["']([^"']+)["']""", re.I),
]
_PKG_GUESS = [
    re.compile(r"""["'](@[^"'/\s]+/[^"'\s]+)["']"""),
    re.compile(r"""Failed to resolve import\s+["']([^"']+)["']""", re.I),
    re.compile(r"""Cannot find module\s+["']([^"']+)["']""", re.I),
    re.compile(r"""Module not found:?\s+["']([^"']+)["']""", re.I),
]

REQUIRE_HINT = (
    '\n\n⚠️ IMPORTANT: "require is not defined" error means code is using Node.js '
    "require() in browser context. Fix by:\n"
    "1. Find the file causing the error (check error stack trace)\n"
    "2. Replace require() with ES6 import statements\n"
    '3. Example: const module = require("module") → import module from "module"\n'
    '4. For named exports: const { func } = require("module") → import { func } from "module"\n'
)


def is_loader_symbol_error(text: str) -> bool:
    """`require is not defined`: CommonJS code reaching the browser."""
    lower = (text or "").lower()
    return "require is not defined" in lower or ("referenceerror" in lower and "require" in lower)


def normalize_url(url: str) -> str:
    url = (url or "").strip()
    if not re.match(r"^https?://", url, re.I):
        url = f"http://{url}"
    return url


# ── Channels ──────────────────────────────────────────────────────────────────

class ChannelCollector:
    """Listener sink for the three event channels. Noise never gets stored."""

    def __init__(self):
        self.console = []
        self.page    = []
        self.network = []
        self.loader  = []   # require-is-not-defined style errors, judged later

    def on_console(self, type_: str, text: str):
        if type_ != "error":
            return
        lower = (text or "").lower()
        if any(n in lower for n in CONSOLE_NOISE):
            return
        if is_loader_symbol_error(text):
            self.loader.append(text)
        elif any(s in lower for s in CONSOLE_SIGNALS):
            self.console.append(text)

    def on_page_error(self, message: str, stack: str = ""):
        lower_stack = (stack or "").lower()
        lower = (message or "").lower()
        if any(n in lower_stack for n in STACK_NOISE) or any(n in lower for n in MESSAGE_NOISE):
            return
        if is_loader_symbol_error(message):
            self.loader.append(message)
        elif any(s in lower for s in RESOLVER_SIGNALS):
            self.page.append(message)

    def on_response(self, status: int, url: str, status_text: str = ""):
        if not (400 <= status < 600):
            return
        if any(n in url.lower() for n in URL_NOISE):
            return
        self.network.append(f"Failed to load {url}: {status} {status_text}".rstrip())

    def counts(self) -> dict:
        return {"console": len(self.console), "page": len(self.page),
                "network": len(self.network), "loader": len(self.loader)}


@dataclass
class PageProbe:
    has_content: bool = False
    overlay_visible: bool = False
    overlay_text: Optional[str] = None


@dataclass
class ValidationVerdict:
    passed: bool
    message: str
    errors: list = field(default_factory=list)
    channel_counts: dict = field(default_factory=dict)


# Runs in the page. Never throws: a failed probe reads as "no content, no overlay".
PROBE_JS = """() => {
  try {
    const body = !!(document.body && document.body.children.length > 0);
    const title = !!(document.title && document.title.trim().length > 0);
    const root = !!(document.getElementById('root') ||
                    document.querySelector('[id^="root"]') ||
                    document.querySelector('#app'));
    let overlay = document.querySelector('[data-vite-error-overlay]') ||
                  document.querySelector('.vite-error-overlay') ||
                  document.querySelector('vite-error-overlay');
    let visible = false, text = null;
    if (overlay) {
      const s = window.getComputedStyle(overlay);
      visible = s.display !== 'none' && s.visibility !== 'hidden' &&
                s.opacity !== '0' && (parseInt(s.zIndex, 10) || 0) >= 0;
      const src = overlay.shadowRoot || overlay;
      text = (src.textContent || '').trim().slice(0, 500) || null;
    }
    return {has_content: body && title && root, overlay_visible: visible, overlay_text: text};
  } catch (e) {
    return {has_content: false, overlay_visible: false, overlay_text: null};
  }
}"""


# ── Verdict ───────────────────────────────────────────────────────────────────

def _install_hint(cwd, package: str) -> str:
    cmd = " ".join(install_command(cwd, package)) if cwd else f"pnpm add {package}"
    return f"\n\n⚠️ IMPORTANT: Missing dependency detected. Install it using: {cmd}\n"


def _guess_package(text: str, errors: list) -> str:
    for e in errors:
        if e.type == MISSING_DEPENDENCY and e.package_name:
            return e.package_name
    for pattern in _PKG_GUESS:
        m = pattern.search(text)
        if m:
            return m.group(1)
    return "<package-name>"


def fix_hints(errors: list) -> str:
    fixable = [e for e in errors if e.fixable]
    if not fixable:
        return ""
    hint = "\n\n🔧 Auto-fixable errors detected:\n"
    for e in fixable:
        if e.type == MISSING_DEPENDENCY:
            hint += f"- Missing dependency: {e.package_name} (will be installed automatically)\n"
        elif e.type == CSS_ERROR:
            hint += f"- CSS/Resource file not found: {e.import_path} (will be fixed automatically)\n"
        elif e.type == IMPORT_ERROR:
            hint += f"- Import error: {e.import_path} (may require manual fix)\n"
    return hint + "\nThese errors will be automatically fixed."


def decide(probe: PageProbe, channels: ChannelCollector, url: str, cwd=None) -> ValidationVerdict:
    """Turn one page visit into a verdict. Order: clean render, overlay, channel errors, pass."""
    counts = channels.counts()
    overlay = probe.overlay_text if probe.overlay_visible else None
    if overlay and probe.has_content and is_loader_symbol_error(overlay):
        overlay = None

    if probe.has_content and not overlay:
        return ValidationVerdict(
            True,
            f"✅ Page validation successful: {url} loaded correctly. "
            f"Page has content and no error overlay detected.",
            channel_counts=counts,
        )

    if overlay:
        errors = detect_from_overlay(overlay, cwd)
        for msg in channels.console:
            errors += detect_from_console(msg, cwd)
        errors = dedupe(errors)
        lines = ([f"Console Error: {e}" for e in channels.console]
                 + [f"Page Error: {e}" for e in channels.page]
                 + [f"Network Error: {e}" for e in channels.network]
                 + [f"Vite Error Overlay: {overlay}"])
        return ValidationVerdict(
            False,
            f"❌ Page validation failed: {url}\n\nErrors detected:\n" + "\n".join(lines)
            + fix_hints(errors) + "\n\nPlease fix these errors and restart the dev server.",
            errors, counts,
        )

    loader = [] if probe.has_content else channels.loader
    lines = ([f"Console Error: {e}" for e in channels.console + loader]
             + [f"Page Error: {e}" for e in channels.page]
             + [f"Network Error: {e}" for e in channels.network])
    if lines:
        errors = []
        for msg in channels.console + channels.page:
            errors += detect_from_console(msg, cwd)
        errors = dedupe(errors)
        text = "\n".join(lines)
        lower = text.lower()
        if loader:
            hint = REQUIRE_HINT
        elif any(s in lower for s in RESOLVER_SIGNALS):
            hint = _install_hint(cwd, _guess_package(text, errors))
        else:
            hint = ""
        return ValidationVerdict(
            False,
            f"❌ Page validation failed: {url}\n\nErrors detected:\n{text}{hint}"
            f"\nPlease fix these errors and restart the dev server.",
            errors, counts,
        )

    return ValidationVerdict(
        True, f"✅ Page validation successful: {url} loaded correctly with no errors detected.",
        channel_counts=counts,
    )


def decide_http(status: int, body: str, url: str, cwd=None) -> ValidationVerdict:
    """Verdict from a bare GET: resolver errors rendered into the HTML, or a non-200 status."""
    body = body or ""
    if status == 200 and not any(s in body for s in HTTP_BODY_SIGNALS):
        return ValidationVerdict(
            True,
            f"✅ Page validation successful: {url} loaded correctly (status: {status})\n\n"
            f"Note: HTTP validation may not detect all errors. For accurate validation, use Playwright.",
        )

    found = []
    for pattern in HTTP_ERROR_PATTERNS:
        found += [m.group(0) for m in pattern.finditer(body)][:5]
    text = "\n".join(found) if found else f"Page returned status {status}"

    errors = []
    for line in found:
        errors += detect_from_console(line, cwd)
    errors = dedupe(errors)
    hint = ""
    if any(s in text.lower() for s in RESOLVER_SIGNALS):
        hint = _install_hint(cwd, _guess_package(text, errors))
    return ValidationVerdict(
        False,
        f"❌ Page validation failed: {url}\n\nErrors detected:\n{text}{hint}"
        f"\nPlease fix these errors and restart the dev server.",
        errors,
    )


# ── Validator ─────────────────────────────────────────────────────────────────

class PageValidator:
    def __init__(self, runtime=None, timeout_ms: int = None, overlay_delay_ms: int = None,
                 http_get=None):
        self.runtime          = runtime
        self.timeout_ms       = timeout_ms or config.VALIDATE_TIMEOUT_MS
        self.overlay_delay_ms = config.OVERLAY_DELAY_MS if overlay_delay_ms is None else overlay_delay_ms
        self.http_get         = http_get or requests.get

    @staticmethod
    def playwright_available() -> bool:
        return importlib.util.find_spec("playwright") is not None

    def validate_page(self, url: str, timeout: int = None, cwd=None) -> str:
        url = normalize_url(url)
        try:
            return self.validate(url, timeout, cwd).message
        except Exception as e:
            log.error(f"❌ Validation crashed: {e}")
            return (f"❌ Page validation failed: {url}\n\nError: {e}\n\n"
                    f"Unable to validate page. Please check manually.")

    def validate(self, url: str, timeout: int = None, cwd=None) -> ValidationVerdict:
        url = normalize_url(url)
        timeout = timeout or self.timeout_ms
        if self.playwright_available():
            try:
                return self._browser_check(url, timeout, cwd)
            except Exception as e:
                elog("WARN", f"⚠ Playwright validation failed, falling back to HTTP: {e}")
        else:
            elog("INFO", "Playwright not installed, using HTTP validation")
        return self._http_check(url, timeout, cwd)

    # ── Browser path ──────────────────────────────────────────────────────────

    def _browser_check(self, url: str, timeout: int, cwd) -> ValidationVerdict:
        from playwright.sync_api import sync_playwright

        channels = ChannelCollector()
        launch_env = None
        if self.runtime is not None and self.runtime.playwright_env:
            launch_env = {**os.environ, **self.runtime.playwright_env}

        with sync_playwright() as pw:
            elog("INFO", "🎭 Launching Chromium (headless)...")
            browser = pw.chromium.launch(headless=True, env=launch_env)
            try:
                page = browser.new_page()
                page.on("console", lambda m: channels.on_console(m.type, m.text))
                page.on("pageerror", lambda e: channels.on_page_error(e.message, e.stack or ""))
                page.on("response", lambda r: channels.on_response(r.status, r.url, r.status_text))

                # "load", not "networkidle": the Vite HMR socket never goes idle
                elog("INFO", f"→ Navigating to {url}...")
                try:
                    page.goto(url, timeout=timeout, wait_until="load")
                except Exception as e:
                    elog("WARN", f"❌ Navigation error: {e}")
                    return ValidationVerdict(
                        False,
                        f"❌ Page validation failed: {url}\n\nError: {e}\n\n"
                        f"Page may not be accessible or server may not be running.",
                        channel_counts=channels.counts(),
                    )

                page.wait_for_timeout(self.overlay_delay_ms)
                try:
                    raw = page.evaluate(PROBE_JS) or {}
                except Exception as e:
                    log.info(f"page.evaluate failed (ignored): {e}")
                    raw = {}
                probe = PageProbe(
                    has_content=bool(raw.get("has_content")),
                    overlay_visible=bool(raw.get("overlay_visible")),
                    overlay_text=raw.get("overlay_text"),
                )
            finally:
                browser.close()

        verdict = decide(probe, channels, url, cwd)
        elog("INFO" if verdict.passed else "WARN",
             f"{'✅' if verdict.passed else '❌'} {url}: {len(verdict.errors)} error(s), "
             f"channels {verdict.channel_counts}")
        return verdict

    # ── HTTP fallback ─────────────────────────────────────────────────────────

    def _http_check(self, url: str, timeout: int, cwd) -> ValidationVerdict:
        try:
            r = self.http_get(url, timeout=timeout / 1000, verify=False)
        except requests.Timeout:
            return ValidationVerdict(
                False,
                f"❌ Page validation failed: {url}\n\nError: Request timeout after {timeout}ms\n\n"
                f"Server may be slow to start or not responding.",
            )
        except requests.RequestException as e:
            return ValidationVerdict(
                False,
                f"❌ Page validation failed: {url}\n\nError: {e}\n\n"
                f"Server may not be running or URL is incorrect.",
            )
        return decide_http(r.status_code, r.text, url, cwd)
