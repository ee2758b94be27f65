#!/usr/bin/env python3
"""
devpilot server  —  HTTP :7824  |  WebSocket :7825
- Agent tool calls in, tool results + live log events out
- One ProcessRegistry for every server the agent starts
- All tracked servers killed and their ports reaped on exit / SIGINT / SIGTERM
"""
import atexit
import signal
import sys, os, json, asyncio, logging, threading
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler

import websockets

from devpilot import config
from devpilot.registry import ProcessRegistry
from devpilot.runtime import resolve_runtime
from devpilot.toolbox import DevToolbox, TOOL_SCHEMAS
from devpilot.validator import set_emit as set_validator_emit

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
log = logging.getLogger("server")

clients   = set()
MAIN_LOOP = None
TOOLBOX   = None


# ── Broadcast helpers ─────────────────────────────────────────────────────────

def emit(msg: dict):
    if MAIN_LOOP is None: return
    data = json.dumps(msg, ensure_ascii=False)
    async def _s():
        dead = set()
        for ws in list(clients):
            try: await ws.send(data)
            except websockets.exceptions.ConnectionClosed: dead.add(ws)
        clients.difference_update(dead)
    asyncio.run_coroutine_threadsafe(_s(), MAIN_LOOP)

def elog(lvl, txt):       emit({"type":"log",     "level":lvl, "text":txt})
def epreview(url):        emit({"type":"preview", "url":url})
def etool(name, st):      emit({"type":"tool",    "name":name, "status":st})


# ── Toolbox ───────────────────────────────────────────────────────────────────

def build_toolbox(default_cwd=None) -> DevToolbox:
    runtime = resolve_runtime()
    # Playwright's driver reads these from our own environment
    for k, v in runtime.playwright_env.items():
        os.environ.setdefault(k, v)
    registry = ProcessRegistry()
    return DevToolbox(registry, runtime, opener=epreview, default_cwd=default_cwd)


def run_tool(name: str, args: dict) -> str:
    etool(name, "running")
    elog("INFO", f"🔧 {name} {json.dumps(args or {}, ensure_ascii=False)[:200]}")
    try:
        result = TOOLBOX.call(name, args)
    except Exception as e:
        log.exception(f"Tool {name} crashed")
        result = f"Error: {name} failed: {e}"
    etool(name, "done")
    return result


# ── WebSocket handler ─────────────────────────────────────────────────────────

async def ws_handler(websocket, path=None):
    clients.add(websocket)
    log.info(f"WS connected ({len(clients)})")
    try:
        await websocket.send(json.dumps({"type": "tools", "tools": TOOL_SCHEMAS}))
        async for raw in websocket:
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if msg.get("type") != "tool":
                continue
            call_id, name, args = msg.get("id"), msg.get("name", ""), msg.get("input") or {}

            def _run(ws=websocket, call_id=call_id, name=name, args=args):
                result = run_tool(name, args)
                reply = json.dumps({"type": "tool_result", "id": call_id,
                                    "name": name, "content": result}, ensure_ascii=False)
                asyncio.run_coroutine_threadsafe(ws.send(reply), MAIN_LOOP)

            threading.Thread(target=_run, daemon=True).start()
    except websockets.exceptions.ConnectionClosed: pass
    finally:
        clients.discard(websocket)
        log.info(f"WS disconnected ({len(clients)})")


# ── HTTP handler ──────────────────────────────────────────────────────────────

class ToolHandler(BaseHTTPRequestHandler):
    def log_message(self, *a): pass

    def _json(self, code: int, payload):
        data = json.dumps(payload, ensure_ascii=False).encode()
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(data)

    def do_OPTIONS(self):
        self.send_response(200)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.end_headers()

    def do_GET(self):
        if self.path == "/status":
            self._json(200, {"servers": TOOLBOX.registry.snapshot(),
                             "ports": sorted(TOOLBOX.registry.ports)})
        elif self.path == "/tools":
            self._json(200, TOOL_SCHEMAS)
        else:
            self._json(404, {"error": "not found"})

    def do_POST(self):
        if not self.path.startswith("/tool/"):
            self._json(404, {"error": "not found"})
            return
        name = self.path[len("/tool/"):].strip("/")
        length = int(self.headers.get("Content-Length", 0))
        try:
            body = json.loads(self.rfile.read(length) or b"{}")
        except json.JSONDecodeError as e:
            self._json(400, {"error": f"invalid JSON: {e}"})
            return
        self._json(200, {"name": name, "content": run_tool(name, body)})

def start_http():
    try:
        httpd = ThreadingHTTPServer(("127.0.0.1", config.HTTP_PORT), ToolHandler)
        log.info(f"HTTP server listening on 127.0.0.1:{config.HTTP_PORT}")
        httpd.serve_forever()
    except OSError as e:
        log.error(f"HTTP server failed: {e}")


# ── Shutdown ──────────────────────────────────────────────────────────────────

def shutdown_all():
    if TOOLBOX is None: return
    log.info("🛑 Shutting down devpilot, stopping background servers...")
    TOOLBOX.shutdown()

def handle_signal(sig, frame):
    shutdown_all()
    sys.exit(0)

def install_shutdown_hooks():
    atexit.register(shutdown_all)
    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


# ── Main ──────────────────────────────────────────────────────────────────────

async def main():
    global MAIN_LOOP, TOOLBOX
    MAIN_LOOP = asyncio.get_running_loop()
    TOOLBOX = build_toolbox(sys.argv[1] if len(sys.argv) > 1 else None)
    set_validator_emit(emit)
    install_shutdown_hooks()
    threading.Thread(target=start_http, daemon=True).start()
    print(f"\n{'━'*46}")
    print(f"  ⚡ devpilot starting...")
    print(f"  ⚡ HTTP        →  http://127.0.0.1:{config.HTTP_PORT}")
    print(f"  🔌 WebSocket   →  ws://127.0.0.1:{config.WS_PORT}")
    print(f"  🌐 Dev / preview ports: {config.DEV_PORT} / {config.PREVIEW_PORT}")
    print(f"  🛡  Protected app root : {config.APP_ROOT}")
    print(f"{'━'*46}\n")
    async with websockets.serve(ws_handler, "127.0.0.1", config.WS_PORT):
        await asyncio.Future()


def _cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n⛔ Stopped.")
        shutdown_all()


if __name__ == "__main__":
    _cli()
