"""
DevToolbox — the four agent-facing tools wired to one shared ProcessRegistry.

  run_command              CommandExecutor.execute + auto-fix of startup errors
  open_browser_preview     hands a normalized URL to the host's preview tab
  kill_project_dev_server  CommandExecutor.kill_server
  validate_page            PageValidator.validate + auto-fix of findings

Every tool returns text. call() is the dispatch used by the host server.
"""
import logging

from devpilot.detector import dedupe
from devpilot.executor import CommandExecutor, DEV_SERVER
from devpilot.fixer import ErrorFixer, SKIPPED
from devpilot.registry import ProcessRegistry
from devpilot.runtime import Runtime
from devpilot.validator import PageValidator, normalize_url

log = logging.getLogger("toolbox")


TOOL_SCHEMAS = [
    {
        "name": "run_command",
        "description": "Execute a shell command (bash, python, npm, etc.) in the given working "
                       "directory. Dev and preview server commands are started in the background "
                       "on fixed ports (3000 / 4173).",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The command to execute (e.g. 'npm install')."},
                "cwd": {"type": "string", "description": "Working directory for the command."},
            },
            "required": ["command"],
        },
    },
    {
        "name": "open_browser_preview",
        "description": "Open the built-in browser preview tab on a URL. Use after starting a dev server.",
        "input_schema": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "URL to open. http:// is added if missing."},
            },
            "required": ["url"],
        },
    },
    {
        "name": "validate_page",
        "description": "Load a page in a headless browser and report console errors, failed requests, "
                       "error overlays and missing dependencies. Fixable errors are fixed automatically.",
        "input_schema": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "URL to validate. http:// is added if missing."},
                "timeout": {"type": "number", "description": "Timeout in milliseconds (default: 15000)."},
                "cwd": {"type": "string", "description": "Project directory used to resolve file paths."},
            },
            "required": ["url"],
        },
    },
    {
        "name": "kill_project_dev_server",
        "description": "Stop the user's project dev server on port 3000. Never kills this "
                       "application's own UI server (port 5173).",
        "input_schema": {
            "type": "object",
            "properties": {
                "cwd": {"type": "string", "description": "Working directory of the current project."},
            },
            "required": ["cwd"],
        },
    },
]


class DevToolbox:
    def __init__(self, registry: ProcessRegistry = None, runtime: Runtime = None,
                 executor: CommandExecutor = None, validator: PageValidator = None,
                 fixer: ErrorFixer = None, opener=None, default_cwd=None, auto_fix: bool = True):
        self.registry  = registry or ProcessRegistry()
        self.runtime   = runtime or Runtime()
        self.executor  = executor or CommandExecutor(self.registry, self.runtime, default_cwd=default_cwd)
        self.validator = validator or PageValidator(self.runtime)
        self.fixer     = fixer or ErrorFixer(self.runtime)
        self.opener    = opener           # callable(url), e.g. emits a preview event to the UI
        self.default_cwd = default_cwd
        self.auto_fix_enabled = auto_fix

    # ── Tools ─────────────────────────────────────────────────────────────────

    def run_command(self, command: str, cwd: str = None) -> str:
        workdir = cwd or self.default_cwd
        outcome = self.executor.execute(command, workdir)
        if outcome.kind == DEV_SERVER and outcome.errors and self.auto_fix_enabled:
            return outcome.text + self.auto_fix(outcome.errors, workdir or self.executor.default_cwd)
        return outcome.text

    def open_browser_preview(self, url: str) -> str:
        url = normalize_url(url)
        if self.opener is None:
            return f"Preview URL: {url}\n\nNo preview tab is attached; open the URL manually."
        try:
            self.opener(url)
        except Exception as e:
            log.warning(f"⚠ Preview opener failed: {e}")
            return f"Failed to open browser preview for {url}: {e}"
        log.info(f"🌐 Preview → {url}")
        return f"Opened browser preview: {url}"

    def kill_project_dev_server(self, cwd: str = None) -> str:
        return self.executor.kill_server(cwd or self.default_cwd)

    def validate_page(self, url: str, timeout: int = None, cwd: str = None) -> str:
        workdir = cwd or self.default_cwd
        url = normalize_url(url)
        try:
            verdict = self.validator.validate(url, timeout, workdir)
        except Exception as e:
            log.error(f"❌ validate_page crashed: {e}")
            return (f"❌ Page validation failed: {url}\n\nError: {e}\n\n"
                    f"Unable to validate page. Please check manually.")
        if not verdict.passed and verdict.errors and workdir and self.auto_fix_enabled:
            return verdict.message + self.auto_fix(verdict.errors, workdir)
        return verdict.message

    # ── Auto-fix ──────────────────────────────────────────────────────────────

    def auto_fix(self, errors: list, cwd) -> str:
        """Run ErrorFixer once per distinct fixable error; render the outcomes."""
        fixable = [e for e in dedupe(errors) if e.fixable]
        if not fixable or not cwd:
            return ""
        lines = []
        for err in fixable:
            try:
                result = self.fixer.fix_error(err, cwd)
            except Exception as e:
                log.error(f"❌ Fixer crashed on {err.type}: {e}")
                lines.append(f"- ❌ {err.type}: {e}")
                continue
            if result.success:
                mark = "✅"
            elif result.action == SKIPPED:
                mark = "⏭"
            else:
                mark = "❌"
            lines.append(f"- {mark} [{result.action}] {result.message}")
        log.info(f"🔧 Auto-fix: {len(fixable)} error(s) processed")
        return "\n\n🔧 Auto-fix results:\n" + "\n".join(lines)

    # ── Dispatch ──────────────────────────────────────────────────────────────

    def call(self, name: str, args: dict) -> str:
        args = args or {}
        if name == "run_command":
            if not args.get("command"):
                return "Error: run_command requires a 'command'"
            return self.run_command(args["command"], args.get("cwd"))
        if name == "open_browser_preview":
            return self.open_browser_preview(args.get("url", ""))
        if name == "kill_project_dev_server":
            return self.kill_project_dev_server(args.get("cwd"))
        if name == "validate_page":
            if not args.get("url"):
                return "Error: validate_page requires a 'url'"
            timeout = args.get("timeout")
            return self.validate_page(args["url"], int(timeout) if timeout else None, args.get("cwd"))
        return f"Error: unknown tool {name!r}"

    def shutdown(self):
        self.registry.kill_all()
