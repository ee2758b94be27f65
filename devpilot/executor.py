"""
CommandExecutor — runs the agent's shell commands.

Three kinds of command:
  dev server      → detached, port 3000, output scanned for startup errors
  preview server  → detached, port 4173
  everything else → blocking, 60s timeout, 10MB output cap

run() never raises: failures come back as text the agent can read.
"""
import os, re, sys, json, time, shutil, logging, tempfile, threading, subprocess
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from devpilot import config
from devpilot.detector import detect_from_output, dedupe
from devpilot.registry import ProcessRegistry, ServerState
from devpilot.runtime import Runtime

log = logging.getLogger("executor")

DEV_SERVER     = "dev_server"
PREVIEW_SERVER = "preview_server"
ONE_SHOT       = "one_shot"

_PREVIEW_RE = re.compile(r"(?:pnpm|npm|yarn)\s+(?:run\s+)?preview\b|\bvite\s+preview\b", re.I)
_DEV_RE = re.compile(
    r"(?:npm|pnpm|yarn)\s+(?:run\s+)?(?:dev|start)\b"
    r"|\bvite(?:\s+(?:dev|serve)\b|\s+-|\s*$|\s*[;&|])"
    r"|webpack(?:-dev-server\b|\s+serve\b)"
    r"|\bnext\s+dev\b",
    re.I,
)
_RUN_SCRIPT_RE = re.compile(r"(?:npm|pnpm|yarn)\s+(?:run\s+)?(?:dev|start)\b", re.I)
_PORT_FLAG_RE  = re.compile(r"--port(?:\s+|=)\d+")
_AUTOMATION_RE = re.compile(r"playwright|chrome-agent|chromium", re.I)

_SHELL = shutil.which("bash") or "/bin/sh"


def classify(command: str) -> str:
    if _PREVIEW_RE.search(command):
        return PREVIEW_SERVER
    if _DEV_RE.search(command):
        return DEV_SERVER
    return ONE_SHOT


def is_automation_command(command: str) -> bool:
    lower = command.lower()
    return bool(_AUTOMATION_RE.search(lower)) or (
        "node" in lower and ".js" in lower and "chrome" in lower
    )


# ── Command rewriting ─────────────────────────────────────────────────────────

def _quote(path: str) -> str:
    return f'"{path}"' if " " in path else path


def _token(name: str):
    return re.compile(rf"""(^|[\s"'&|;(]){re.escape(name)}(?=[\s"'&|;)]|$)""")


def rewrite_command(command: str, runtime: Runtime) -> str:
    """Point bare `node` / `npm` tokens at the resolved runtime binaries."""
    node = runtime.node
    if node and node != "node":
        command = _token("node").sub(lambda m: m.group(1) + _quote(node), command)

    if runtime.npm and runtime.npm != "npm":
        command = _token("npm").sub(lambda m: m.group(1) + _quote(runtime.npm), command)
    elif not runtime.npm and runtime.npm_cli_js and node and node != "node":
        # No npm launcher script: run npm-cli.js with our node directly
        replacement = f"{_quote(node)} {_quote(runtime.npm_cli_js)}"
        command = _token("npm").sub(lambda m: m.group(1) + replacement, command)
    return command


def default_port(command: str, cwd) -> int:
    """Port the underlying tool would pick on its own."""
    lower = command.lower()
    if "5173" in lower or "vite" in lower:
        return 5173
    if "8080" in lower:
        return 8080
    if "4173" in lower:
        return 4173
    root = Path(cwd)
    try:
        scripts = json.loads((root / "package.json").read_text(encoding="utf-8")).get("scripts") or {}
        script = str(scripts.get("dev") or scripts.get("start") or "")
        if re.search(r"5173|vite", script):
            return 5173
        if "8080" in script:
            return 8080
    except (OSError, ValueError):
        pass
    if any((root / f"vite.config.{ext}").exists() for ext in ("js", "ts", "mjs", "cjs", "mts")):
        return 5173
    return 3000


def force_port(command: str, cwd, port: int, run_script: bool) -> str:
    """Pin `port` on the command line when the tool would not pick it by itself."""
    if _PORT_FLAG_RE.search(command):
        return _PORT_FLAG_RE.sub(f"--port {port}", command)
    if default_port(command, cwd) == port:
        return command
    return command.rstrip() + (f" -- --port {port}" if run_script else f" --port {port}")


def _no_browser_dir():
    """Temp dir with no-op `open` / `xdg-open` so servers cannot pop an external browser."""
    if sys.platform not in ("darwin", "linux"):
        return None
    try:
        d = Path(tempfile.gettempdir()) / "devpilot-no-browser"
        d.mkdir(parents=True, exist_ok=True)
        script = d / ("open" if sys.platform == "darwin" else "xdg-open")
        script.write_text("#!/bin/sh\nexit 0\n")
        script.chmod(0o755)
        return str(d)
    except OSError as e:
        log.warning(f"⚠ Could not create no-browser shim: {e}")
        return None


def _decode(out) -> str:
    if out is None:
        return ""
    if isinstance(out, bytes):
        return out.decode("utf-8", errors="replace")
    return out


def _cap(stdout: str, stderr: str, limit: int):
    """Trim stdout+stderr to `limit` characters combined."""
    if len(stdout) + len(stderr) <= limit:
        return stdout, stderr
    note = "\n...[output truncated]"
    stdout = stdout[:limit] + (note if len(stdout) > limit else "")
    room = max(0, limit - len(stdout))
    if len(stderr) > room:
        stderr = stderr[:room] + note
    return stdout, stderr


# ── Output capture ────────────────────────────────────────────────────────────

class OutputSink:
    """Thread-safe accumulator for a server's output, with optional error detection."""

    def __init__(self, cwd, detect: bool = True, keep: int = 2000):
        self.cwd    = cwd
        self.detect = detect
        self.lines  = deque(maxlen=keep)
        self.errors = []
        self._lock  = threading.Lock()

    def feed(self, line: str):
        found = detect_from_output(line, self.cwd) if self.detect else []
        with self._lock:
            self.lines.append(line)
            if found:
                self.errors = dedupe(self.errors + found)

    def text(self) -> str:
        with self._lock:
            return "\n".join(self.lines)

    def snapshot_errors(self) -> list:
        with self._lock:
            return list(self.errors)


@dataclass
class CommandOutcome:
    text: str
    kind: str = ONE_SHOT
    errors: list = field(default_factory=list)
    ok: bool = True


@contextmanager
def automation_cleanup(platform, enabled: bool):
    """Kill leftover automation browsers once the command is done, however it ended."""
    try:
        yield
    finally:
        if enabled:
            log.info(f"🧹 Cleaning up {config.AUTOMATION_BROWSER} processes")
            try:
                platform.kill_by_name(config.AUTOMATION_BROWSER)
            except Exception as e:
                log.warning(f"⚠ Automation browser cleanup failed: {e}")


# ── Executor ──────────────────────────────────────────────────────────────────

class CommandExecutor:
    def __init__(self, registry: ProcessRegistry, runtime: Runtime = None,
                 default_cwd=None, popen=subprocess.Popen, runner=subprocess.run,
                 sleep=time.sleep):
        self.registry    = registry
        self.reaper      = registry.reaper
        self.platform    = registry.platform
        self.runtime     = runtime or Runtime()
        self.default_cwd = default_cwd
        self.popen       = popen
        self.runner      = runner
        self.sleep       = sleep

        self.dev_port       = config.DEV_PORT
        self.preview_port   = config.PREVIEW_PORT
        self.timeout        = config.COMMAND_TIMEOUT
        self.max_output     = config.MAX_OUTPUT_BYTES
        self.dev_settle     = config.DEV_SETTLE
        self.preview_settle = config.PREVIEW_SETTLE
        self.app_root       = config.APP_ROOT

    # ── Public API ────────────────────────────────────────────────────────────

    def run(self, command: str, cwd=None) -> str:
        return self.execute(command, cwd).text

    def execute(self, command: str, cwd=None) -> CommandOutcome:
        workdir = str(cwd or self.default_cwd or os.getcwd())
        if not os.path.isdir(workdir):
            return CommandOutcome(f"Command failed: working directory does not exist: {workdir}",
                                  ok=False)
        kind = classify(command)
        try:
            rewritten = rewrite_command(command, self.runtime)
            env = self.build_env(kind)
            log.info(f"▶ [{kind}] {rewritten}  (cwd={workdir})")
            if kind == DEV_SERVER:
                return self._start_dev_server(command, rewritten, workdir, env)
            if kind == PREVIEW_SERVER:
                return self._start_preview_server(rewritten, workdir, env)
            return self._run_one_shot(rewritten, workdir, env)
        except Exception as e:
            log.error(f"❌ Command crashed: {e}")
            return CommandOutcome(f"Command failed in {workdir}:\n$ {command}\n\nError: {e}",
                                  kind=kind, ok=False)

    def build_env(self, kind: str) -> dict:
        rt = self.runtime
        env = {**os.environ, **rt.playwright_env, **rt.npm_env}
        base_path = rt.npm_env.get("PATH") or os.environ.get("PATH", "")
        env["PATH"] = (rt.node_dir + os.pathsep + base_path) if rt.node_dir else base_path

        if kind in (DEV_SERVER, PREVIEW_SERVER):
            env["BROWSER"] = "none"
            shim = _no_browser_dir()
            if shim:
                env["PATH"] = shim + os.pathsep + env["PATH"]
        if kind == DEV_SERVER:
            env["PORT"] = env["VITE_PORT"] = str(self.dev_port)
        elif kind == PREVIEW_SERVER:
            env["PORT"] = env["VITE_PORT"] = str(self.preview_port)
        return env

    def kill_server(self, cwd=None) -> str:
        """Stop the project dev server on the dev port, sparing anything under our install root."""
        port = self.dev_port
        try:
            pids = self.reaper.listeners(port)
            if not pids:
                return f"No process is listening on port {port}; the dev server is probably already stopped."

            to_kill = [pid for pid in pids if not self._inside_app_root(pid)]
            if not to_kill:
                return (f"Nothing to kill: the process(es) on port {port} belong to this "
                        f"application and were left running.")

            prior = self.registry.release_port(port)
            if prior is not None:
                self.registry.kill_tracked(prior)
            killed = self.reaper.kill_pids(to_kill)
            if not killed:
                return f"Failed to stop the dev server on port {port} (PIDs: {to_kill})."
            log.info(f"🛑 Killed project dev server PIDs {killed}")
            return f"Dev server stopped: killed {len(killed)} process(es) (PIDs: {', '.join(map(str, killed))})."
        except Exception as e:
            log.warning(f"⚠ Failed to kill project dev server: {e}")
            return f"Error while stopping the dev server: {e}"

    def _inside_app_root(self, pid: int) -> bool:
        cwd = self.platform.process_cwd(pid)
        if not cwd:
            return False
        path = Path(cwd).resolve()
        if path == self.app_root or self.app_root in path.parents:
            log.info(f"Skipping PID {pid} (cwd under app root: {cwd})")
            return True
        return False

    # ── One-shot ──────────────────────────────────────────────────────────────

    def _shell_args(self, command: str):
        if os.name == "nt":
            return ["powershell.exe", "-NoProfile", "-Command", command], {}
        return command, {"shell": True, "executable": _SHELL}

    def _run_one_shot(self, command: str, cwd: str, env: dict) -> CommandOutcome:
        args, extra = self._shell_args(command)
        with automation_cleanup(self.platform, is_automation_command(command)):
            try:
                r = self.runner(
                    args, cwd=cwd, env=env, capture_output=True, text=True,
                    encoding="utf-8", errors="replace", timeout=self.timeout, **extra,
                )
            except subprocess.TimeoutExpired as e:
                return self._failure(command, cwd, _decode(e.stdout), _decode(e.stderr),
                                     f"Command timed out after {self.timeout:g}s")
            except OSError as e:
                return self._failure(command, cwd, "", "", str(e))

        stdout, stderr = _cap(r.stdout or "", r.stderr or "", self.max_output)
        if r.returncode != 0:
            return self._failure(command, cwd, stdout, stderr,
                                 f"Command exited with code {r.returncode}")

        result = f"Command executed in {cwd}:\n$ {command}\n\n"
        if stdout:
            result += f"STDOUT:\n{stdout}\n"
        if stderr:
            result += f"STDERR:\n{stderr}\n"
        if not stdout and not stderr:
            result += "Command completed with no output."
        return CommandOutcome(result)

    def _failure(self, command, cwd, stdout, stderr, reason) -> CommandOutcome:
        log.warning(f"❌ {reason}: {command}")
        stdout, stderr = _cap(stdout, stderr, self.max_output)
        text = f"Command failed in {cwd}:\n$ {command}\n\n"
        if stdout:
            text += f"STDOUT:\n{stdout}\n"
        if stderr:
            text += f"STDERR:\n{stderr}\n"
        text += f"Error: {reason}"
        return CommandOutcome(text, ok=False)

    # ── Background servers ────────────────────────────────────────────────────

    def _spawn(self, command: str, cwd: str, env: dict, sink: OutputSink, label: str):
        kwargs = dict(cwd=cwd, env=env, stdin=subprocess.DEVNULL,
                      stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                      text=True, encoding="utf-8", errors="replace", bufsize=1)
        if os.name == "nt":
            kwargs["creationflags"] = (subprocess.CREATE_NEW_PROCESS_GROUP
                                       | subprocess.DETACHED_PROCESS)
            proc = self.popen(["powershell.exe", "-NoProfile", "-Command", command], **kwargs)
        else:
            kwargs["start_new_session"] = True
            proc = self.popen(command, shell=True, executable=_SHELL, **kwargs)

        for stream in (proc.stdout, proc.stderr):
            if stream is not None:
                threading.Thread(target=self._pump, args=(stream, sink, label),
                                 daemon=True).start()
        return proc

    @staticmethod
    def _pump(stream, sink: OutputSink, label: str):
        try:
            for line in stream:
                l = line.rstrip()
                if l:
                    sink.feed(l)
                    log.debug(f"[{label}] {l[:200]}")
        except (OSError, ValueError):
            pass   # stream closed under us when the process was killed

    def _launch(self, command, cwd, env, port, sink, label):
        """Reap the port, spawn, register. Port claims are serialized."""
        with self.registry.claim_lock:
            self.registry.claim_port(port)
            proc = self._spawn(command, cwd, env, sink, label)
            tracked = self.registry.track(
                proc, port, label=label,
                respawn=lambda: self._spawn(command, cwd, env, sink, label),
            )
            self.registry.watch(tracked)
        return tracked

    def _start_dev_server(self, original: str, command: str, cwd: str, env: dict) -> CommandOutcome:
        port = self.dev_port
        run_cmd = force_port(command, cwd, port, bool(_RUN_SCRIPT_RE.search(original)))
        sink = OutputSink(cwd, detect=True)

        log.info(f"🌐 Starting dev server on :{port}: {run_cmd}")
        try:
            tracked = self._launch(run_cmd, cwd, env, port, sink, "dev server")
        except OSError as e:
            return CommandOutcome(f"Failed to start dev server: {e}", DEV_SERVER, ok=False)

        log.info(f"⏳ Waiting {self.dev_settle:g}s for dev server on :{port}")
        self.sleep(self.dev_settle)

        errors = dedupe(sink.snapshot_errors() + detect_from_output(sink.text(), cwd))
        url = f"http://localhost:{port}"
        text = (
            f"[Dev server started in background]\n\n"
            f"Command: {run_cmd}\n"
            f"Working directory: {cwd}\n"
            f"Node.js: {self.runtime.node}\n"
            f"npm: {self.runtime.npm or 'builtin'}\n\n"
            f"Preview URL: {url}\n\n"
            f"The development server is running on port {port}. "
            f"Use open_browser_preview to display it in the built-in browser."
        )
        text += self._state_note(tracked)
        if errors:
            text += f"\n\n⚠️ Detected {len(errors)} error(s) during startup:\n"
            for e in errors:
                text += f"- {e.type}: {e.message}"
                if e.package_name:
                    text += f" (package: {e.package_name})"
                text += "\n"
            text += "\nThese errors will be automatically fixed if possible."
        return CommandOutcome(text, DEV_SERVER, errors)

    def _start_preview_server(self, command: str, cwd: str, env: dict) -> CommandOutcome:
        port = self.preview_port
        sink = OutputSink(cwd, detect=False, keep=200)

        log.info(f"🌐 Starting preview server on :{port}: {command}")
        try:
            tracked = self._launch(command, cwd, env, port, sink, "preview server")
        except OSError as e:
            return CommandOutcome(f"Failed to start preview server: {e}", PREVIEW_SERVER, ok=False)

        self.sleep(self.preview_settle)
        url = f"http://localhost:{port}"
        text = (
            f"[Preview server started in background]\n\n"
            f"Command: {command}\n"
            f"Working directory: {cwd}\n\n"
            f"Preview URL: {url}\n\n"
            f"The preview server is running on port {port}. "
            f"Use open_browser_preview to display it in the built-in browser."
        )
        return CommandOutcome(text + self._state_note(tracked), PREVIEW_SERVER)

    @staticmethod
    def _state_note(tracked) -> str:
        if tracked.state == ServerState.RUNNING:
            return ""
        return f"\n\n⚠️ Server process state after startup: {tracked.state.value}"
