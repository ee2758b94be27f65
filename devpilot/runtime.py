"""
Node / npm / Playwright resolution.

Which interpreter and package manager a project should use is decided by the
host app; devpilot only consumes the answer as a Runtime (paths + env map).
This module provides the default answer: explicit DEVPILOT_NODE/DEVPILOT_NPM
overrides, then the binaries bundled next to a frozen build, then PATH.
"""
import os, sys, shutil, logging
from pathlib import Path

log = logging.getLogger("runtime")


class Runtime:
    def __init__(self, node: str = "node", npm: str = None, npm_cli_js: str = None,
                 npm_env: dict = None, playwright_env: dict = None):
        self.node           = node
        self.npm            = npm
        self.npm_cli_js     = npm_cli_js
        self.npm_env        = dict(npm_env or {})
        self.playwright_env = dict(playwright_env or {})

    @property
    def node_dir(self):
        """Directory of a resolved node binary, None when we only have the bare name."""
        if not self.node or self.node == "node":
            return None
        return str(Path(self.node).parent)

    def __repr__(self):
        return f"Runtime(node={self.node!r}, npm={self.npm!r}, npm_cli_js={self.npm_cli_js!r})"


def _resources_dir() -> Path:
    # Packaged: <Resources>/backend/<exe>  →  <Resources>
    return Path(sys.argv[0]).resolve().parent.parent


def playwright_env() -> dict:
    """PLAYWRIGHT_* variables for spawned processes, inferred from the app bundle if unset."""
    env = {k: v for k, v in os.environ.items() if k.startswith("PLAYWRIGHT_")}
    if env.get("PLAYWRIGHT_BROWSERS_PATH"):
        env.setdefault("PLAYWRIGHT_SKIP_BROWSER_DOWNLOAD", "1")
        return env

    pw = _resources_dir() / "ms-playwright"
    if pw.exists():
        env["PLAYWRIGHT_BROWSERS_PATH"] = str(pw)
        env["PLAYWRIGHT_SKIP_BROWSER_DOWNLOAD"] = "1"
    return env


def resolve_runtime() -> Runtime:
    node = os.environ.get("DEVPILOT_NODE")
    npm  = os.environ.get("DEVPILOT_NPM")
    npm_cli_js = None
    npm_env = {}

    if getattr(sys, "frozen", False) and not (node and npm):
        bin_dir = _resources_dir() / "node" / "bin"
        if (bin_dir / "node").exists():
            node = node or str(bin_dir / "node")
            if (bin_dir / "npm").exists():
                npm = npm or str(bin_dir / "npm")
            cli = bin_dir.parent / "lib" / "node_modules" / "npm" / "bin" / "npm-cli.js"
            if cli.exists():
                npm_cli_js = str(cli)
            npm_env["NPM_CONFIG_PREFIX"] = str(bin_dir.parent)

    node = node or shutil.which("node") or "node"
    npm  = npm  or shutil.which("npm")  or None

    rt = Runtime(node=node, npm=npm, npm_cli_js=npm_cli_js,
                 npm_env=npm_env, playwright_env=playwright_env())
    if npm is None and npm_cli_js is None:
        log.warning("⚠ npm not found on PATH — commands keep the bare npm name")
    log.info(f"Using {rt}")
    return rt
