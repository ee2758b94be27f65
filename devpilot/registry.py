"""
ProcessRegistry: owner of every background server devpilot spawns and of
every port those servers claim.

One instance is built by the host and handed to the CommandExecutor and to
the shutdown hook; there is no module-level state.
"""
import logging, threading
from enum import Enum

from devpilot.ports import PortReaper

log = logging.getLogger("registry")


class ServerState(str, Enum):
    RUNNING         = "running"
    RESTARTING_ONCE = "restarting_once"
    FAILED          = "failed"
    STOPPED         = "stopped"


class TrackedProcess:
    """A spawned server plus the port it claimed and its restart latch."""

    def __init__(self, handle, port: int = None, respawn=None, label: str = ""):
        self.handle    = handle
        self.port      = port
        self.respawn   = respawn      # () -> new handle, or None for "never restart"
        self.label     = label
        self.state     = ServerState.RUNNING
        self.restarted = False

    @property
    def pid(self):
        return getattr(self.handle, "pid", None)

    def on_exit(self, returncode) -> ServerState:
        """
        RUNNING --exit--> RESTARTING_ONCE --exit--> FAILED.
        A clean exit (0) or an explicit stop ends in STOPPED instead.
        """
        if self.state == ServerState.STOPPED:
            return self.state
        if returncode == 0:
            self.state = ServerState.STOPPED
        elif self.restarted or self.respawn is None:
            self.state = ServerState.FAILED
        else:
            self.restarted = True
            self.state = ServerState.RESTARTING_ONCE
        return self.state

    def __repr__(self):
        return f"<TrackedProcess pid={self.pid} port={self.port} {self.state.value}>"


class ProcessRegistry:
    def __init__(self, reaper: PortReaper = None):
        self.reaper     = reaper or PortReaper()
        self.platform   = self.reaper.platform
        self._entries   = []
        self._ports     = set()
        self._lock      = threading.RLock()
        # Held by callers across reap → spawn → track of one server
        self.claim_lock = threading.Lock()

    # ── Bookkeeping ───────────────────────────────────────────────────────────

    def __len__(self):
        with self._lock:
            return len(self._entries)

    @property
    def ports(self) -> set:
        with self._lock:
            return set(self._ports)

    def holder(self, port: int):
        with self._lock:
            for t in self._entries:
                if t.port == port:
                    return t
        return None

    def find(self, handle):
        with self._lock:
            for t in self._entries:
                if t.handle is handle:
                    return t
        return None

    def track(self, handle, port: int = None, respawn=None, label: str = "") -> TrackedProcess:
        with self._lock:
            if port is not None:
                prior = self.holder(port)
                if prior is not None and prior.handle is not handle:
                    self._stop(prior)
                self._ports.add(port)
            tracked = TrackedProcess(handle, port, respawn, label)
            self._entries.append(tracked)
        log.info(f"📌 Tracking PID {tracked.pid}" + (f" on :{port}" if port else ""))
        return tracked

    def untrack(self, handle):
        with self._lock:
            tracked = self.find(handle)
            if tracked is None:
                return None
            self._entries.remove(tracked)
            if tracked.port is not None and self.holder(tracked.port) is None:
                self._ports.discard(tracked.port)
        return tracked

    def snapshot(self) -> list:
        with self._lock:
            return [{"pid": t.pid, "port": t.port, "state": t.state.value, "label": t.label}
                    for t in self._entries]

    # ── Port claims ───────────────────────────────────────────────────────────

    def claim_port(self, port: int) -> list:
        """Stop our own holder of `port` (if any), then reap whatever still listens."""
        prior = self.release_port(port)
        if prior is not None:
            self.kill_tracked(prior)
        return self.reaper.reap_port(port)

    def release_port(self, port: int):
        """Forget the holder of `port` without restarting it. The caller kills it."""
        with self._lock:
            prior = self.holder(port)
            if prior is None:
                return None
            prior.state = ServerState.STOPPED
            self.untrack(prior.handle)
        return prior

    def _stop(self, tracked: TrackedProcess):
        tracked.state = ServerState.STOPPED
        self.untrack(tracked.handle)
        self.kill_tracked(tracked)

    def kill_tracked(self, tracked: TrackedProcess):
        if tracked.pid is None or tracked.handle.poll() is not None:
            return
        try:
            if not self.platform.force_kill_tree(tracked.pid):
                log.warning(f"⚠ Could not kill PID {tracked.pid}")
        except Exception as e:
            log.warning(f"⚠ Error killing PID {tracked.pid}: {e}")

    # ── Exit handling ─────────────────────────────────────────────────────────

    def watch(self, tracked: TrackedProcess):
        """Wait for the tracked handle in a daemon thread and feed its exit to handle_exit."""
        handle = tracked.handle

        def _wait():
            try:
                rc = handle.wait()
            except Exception as e:
                log.warning(f"⚠ wait() on PID {tracked.pid} failed: {e}")
                rc = -1
            if tracked.handle is handle:
                self.handle_exit(tracked, rc)

        threading.Thread(target=_wait, daemon=True).start()

    def handle_exit(self, tracked: TrackedProcess, returncode):
        with self._lock:
            if tracked not in self._entries:
                return tracked.state
            state = tracked.on_exit(returncode)

            if state == ServerState.RESTARTING_ONCE:
                log.warning(f"⚠ {tracked.label or 'server'} (PID {tracked.pid}) exited "
                            f"with {returncode}, restarting once")
                try:
                    tracked.handle = tracked.respawn()
                except Exception as e:
                    log.error(f"❌ Restart failed: {e}")
                    tracked.state = ServerState.FAILED
                    self._entries.remove(tracked)
                    if tracked.port is not None and self.holder(tracked.port) is None:
                        self._ports.discard(tracked.port)
                    return tracked.state
                self.watch(tracked)
                return state

            if state == ServerState.FAILED:
                log.error(f"❌ {tracked.label or 'server'} (PID {tracked.pid}) exited "
                          f"with {returncode}, giving up")
            else:
                log.info(f"{tracked.label or 'server'} (PID {tracked.pid}) stopped")
            self.untrack(tracked.handle)
            return state

    # ── Teardown ──────────────────────────────────────────────────────────────

    def kill_all(self):
        """Force-kill every tracked process and reap every claimed port. Idempotent."""
        with self._lock:
            entries, ports = list(self._entries), set(self._ports)
            for t in entries:
                t.state = ServerState.STOPPED
            self._entries.clear()
            self._ports.clear()

        if not entries and not ports:
            return
        log.info(f"🛑 Killing {len(entries)} tracked process(es), reaping ports {sorted(ports)}")
        for t in entries:
            self.kill_tracked(t)
        for port in ports:
            try:
                self.reaper.reap_port(port)
            except Exception as e:
                log.warning(f"⚠ Failed to reap port {port}: {e}")
