"""
Shared fakes for the devpilot tests.

No test binds a real port, kills a real process or runs a real install:
the OS layer is a FakePlatform and spawned servers are FakeProc objects.
"""
import io
import threading

import pytest

from devpilot.ports import ProcessPlatform, PortReaper
from devpilot.registry import ProcessRegistry


class FakePlatform(ProcessPlatform):
    """In-memory stand-in for lsof/netstat + kill."""
    name = "fake"

    def __init__(self, listeners=None, cwds=None, failing=()):
        self.listeners   = {port: list(pids) for port, pids in (listeners or {}).items()}
        self.cwds        = dict(cwds or {})
        self.failing     = set(failing)
        self.killed      = []
        self.tree_killed = []
        self.name_killed = []

    def list_listeners(self, port):
        return list(self.listeners.get(port, []))

    def _drop(self, pid):
        for pids in self.listeners.values():
            if pid in pids:
                pids.remove(pid)

    def force_kill(self, pid):
        if pid in self.failing:
            raise OSError(f"EPERM {pid}")
        self.killed.append(pid)
        self._drop(pid)
        return True

    def force_kill_tree(self, pid):
        self.tree_killed.append(pid)
        self._drop(pid)
        return True

    def process_cwd(self, pid):
        return self.cwds.get(pid)

    def kill_by_name(self, name):
        self.name_killed.append(name)
        return True


class FakeProc:
    """Popen look-alike whose wait() blocks until release()."""

    def __init__(self, pid, stdout="", stderr=""):
        self.pid        = pid
        self.stdout     = io.StringIO(stdout)
        self.stderr     = io.StringIO(stderr)
        self.returncode = None
        self._exited    = threading.Event()

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        self._exited.wait(timeout)
        return self.returncode

    def release(self, returncode=0):
        self.returncode = returncode
        self._exited.set()


class FakePopen:
    """Records spawn calls and hands out FakeProc objects with increasing PIDs."""

    def __init__(self, stdout="", stderr="", first_pid=5000):
        self.stdout   = stdout
        self.stderr   = stderr
        self.next_pid = first_pid
        self.calls    = []
        self.procs    = []

    def __call__(self, args, **kwargs):
        self.calls.append((args, kwargs))
        proc = FakeProc(self.next_pid, self.stdout, self.stderr)
        self.next_pid += 1
        self.procs.append(proc)
        return proc

    def release_all(self):
        for p in self.procs:
            p.release(-9)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def registry(platform):
    return ProcessRegistry(PortReaper(platform, grace=0))
