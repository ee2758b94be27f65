"""
Settings shared by every devpilot component.

Each value can be overridden with a DEVPILOT_* environment variable so the
host app (Electron shell, CI, tests) can tune them without code changes.
"""
import os
from pathlib import Path


def _int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default

def _float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


# ── Canonical ports ───────────────────────────────────────────────────────────
DEV_PORT     = _int("DEVPILOT_DEV_PORT", 3000)      # user project dev server
PREVIEW_PORT = _int("DEVPILOT_PREVIEW_PORT", 4173)  # user project build preview
APP_UI_PORT  = _int("DEVPILOT_APP_UI_PORT", 5173)   # our own UI, never killed

# ── Host process ──────────────────────────────────────────────────────────────
HTTP_PORT = _int("DEVPILOT_HTTP_PORT", 7824)
WS_PORT   = _int("DEVPILOT_WS_PORT", 7825)

# ── Timeouts / limits ─────────────────────────────────────────────────────────
COMMAND_TIMEOUT   = _float("DEVPILOT_COMMAND_TIMEOUT", 60)     # one-shot commands (s)
INSTALL_TIMEOUT   = _float("DEVPILOT_INSTALL_TIMEOUT", 120)    # package installs (s)
MAX_OUTPUT_BYTES  = _int("DEVPILOT_MAX_OUTPUT", 10 * 1024 * 1024)
DEV_SETTLE        = _float("DEVPILOT_DEV_SETTLE", 4.0)
PREVIEW_SETTLE    = _float("DEVPILOT_PREVIEW_SETTLE", 3.0)
REAP_GRACE        = _float("DEVPILOT_REAP_GRACE", 0.5)         # socket release wait
OS_QUERY_TIMEOUT  = _float("DEVPILOT_OS_QUERY_TIMEOUT", 3.0)   # lsof / netstat / kill
VALIDATE_TIMEOUT_MS = _int("DEVPILOT_VALIDATE_TIMEOUT_MS", 15000)
OVERLAY_DELAY_MS    = _int("DEVPILOT_OVERLAY_DELAY_MS", 2000)  # wait before DOM probe

# ── Install root protected from kill_project_dev_server ──────────────────────
APP_ROOT = Path(
    os.environ.get("DEVPILOT_APP_ROOT")
    or os.environ.get("APP_ROOT")
    or Path(__file__).resolve().parent.parent
).resolve()

# Process name left behind by Playwright / chrome-agent scripts
AUTOMATION_BROWSER = "Google Chrome for Testing"
