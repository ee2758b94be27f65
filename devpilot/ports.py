"""
Port reaping.

ProcessPlatform is the one place that knows how to enumerate listeners and
kill processes on a given OS family. PortReaper builds the "free this port"
operation on top of it.
"""
import os, sys, time, signal, logging, subprocess
from pathlib import Path

from devpilot import config

log = logging.getLogger("ports")


def parse_pids(text: str) -> list:
    """Numeric, positive, de-duplicated PIDs from whitespace separated output."""
    pids = []
    for tok in (text or "").split():
        if tok.isdigit():
            pid = int(tok)
            if pid > 0 and pid not in pids:
                pids.append(pid)
    return pids


def parse_netstat(text: str, port: int) -> list:
    """LISTENING PIDs for `port` from `netstat -ano` output."""
    pids = []
    for line in (text or "").splitlines():
        parts = line.split()
        # Proto  Local Address  Foreign Address  State  PID
        if len(parts) < 5 or parts[3].upper() != "LISTENING":
            continue
        if not parts[1].endswith(f":{port}"):
            continue
        for pid in parse_pids(parts[-1]):
            if pid not in pids:
                pids.append(pid)
    return pids


class ProcessPlatform:
    """OS capability used by the registry and the reaper."""
    name = "unknown"

    def list_listeners(self, port: int) -> list:
        raise NotImplementedError

    def force_kill(self, pid: int) -> bool:
        raise NotImplementedError

    def force_kill_tree(self, pid: int) -> bool:
        raise NotImplementedError

    def process_cwd(self, pid: int):
        return None

    def kill_by_name(self, name: str) -> bool:
        raise NotImplementedError


class PosixPlatform(ProcessPlatform):
    name = "posix"

    def list_listeners(self, port: int) -> list:
        try:
            r = subprocess.run(
                ["lsof", "-ti", f"tcp:{port}", "-sTCP:LISTEN"],
                capture_output=True, text=True, timeout=config.OS_QUERY_TIMEOUT,
            )
        except FileNotFoundError:
            return self._proc_net_listeners(port)
        except subprocess.TimeoutExpired:
            log.warning(f"⚠ lsof timed out on port {port}")
            return []
        # lsof exits 1 when nothing matches
        return parse_pids(r.stdout)

    def _proc_net_listeners(self, port: int) -> list:
        """Linux without lsof: match LISTEN sockets in /proc/net/tcp* to fd inodes."""
        hex_port = f"{port:04X}"
        inodes = set()
        for tcp_file in ("/proc/net/tcp", "/proc/net/tcp6"):
            try:
                lines = Path(tcp_file).read_text().splitlines()[1:]
            except OSError:
                continue
            for line in lines:
                fields = line.split()
                # st 0A == TCP_LISTEN
                if len(fields) >= 10 and fields[1].split(":")[-1] == hex_port and fields[3] == "0A":
                    inodes.add(fields[9])
        if not inodes:
            return []

        pids = []
        for pid_dir in os.listdir("/proc"):
            if not pid_dir.isdigit():
                continue
            fd_dir = f"/proc/{pid_dir}/fd"
            try:
                for fd in os.listdir(fd_dir):
                    try:
                        link = os.readlink(f"{fd_dir}/{fd}")
                    except OSError:
                        continue
                    if link.startswith("socket:[") and link[8:-1] in inodes:
                        pids.append(int(pid_dir))
                        break
            except OSError:
                continue
        return pids

    def force_kill(self, pid: int) -> bool:
        try:
            os.kill(pid, signal.SIGKILL)
            return True
        except ProcessLookupError:
            return True   # already gone
        except OSError as e:
            log.warning(f"⚠ kill -9 {pid} failed: {e}")
            return False

    def force_kill_tree(self, pid: int) -> bool:
        # Servers are spawned as session leaders, so pid == pgid
        try:
            os.killpg(pid, signal.SIGKILL)
            return True
        except ProcessLookupError:
            return True
        except OSError:
            return self.force_kill(pid)

    def process_cwd(self, pid: int):
        try:
            return os.readlink(f"/proc/{pid}/cwd")
        except OSError:
            pass
        try:
            r = subprocess.run(
                ["lsof", "-a", "-p", str(pid), "-d", "cwd", "-Fn"],
                capture_output=True, text=True, timeout=config.OS_QUERY_TIMEOUT,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return None
        for line in r.stdout.splitlines():
            if line.startswith("n"):
                return line[1:]
        return None

    def kill_by_name(self, name: str) -> bool:
        try:
            r = subprocess.run(["pkill", "-9", "-f", name],
                               capture_output=True, text=True, timeout=5)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            log.warning(f"⚠ pkill {name!r} failed: {e}")
            return False
        # pkill: 0 = killed something, 1 = nothing matched
        return r.returncode in (0, 1)


class WindowsPlatform(ProcessPlatform):
    name = "windows"

    def list_listeners(self, port: int) -> list:
        try:
            r = subprocess.run(
                ["netstat", "-ano", "-p", "TCP"],
                capture_output=True, text=True, timeout=config.OS_QUERY_TIMEOUT,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            log.warning(f"⚠ netstat failed: {e}")
            return []
        return parse_netstat(r.stdout, port)

    def _taskkill(self, *args) -> bool:
        try:
            r = subprocess.run(["taskkill", *args], capture_output=True, text=True,
                               timeout=config.OS_QUERY_TIMEOUT)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            log.warning(f"⚠ taskkill {' '.join(args)} failed: {e}")
            return False
        # 128 = process not found
        return r.returncode in (0, 128)

    def force_kill(self, pid: int) -> bool:
        return self._taskkill("/PID", str(pid), "/F")

    def force_kill_tree(self, pid: int) -> bool:
        return self._taskkill("/PID", str(pid), "/T", "/F")

    def kill_by_name(self, name: str) -> bool:
        return self._taskkill("/F", "/IM", f"{name}.exe", "/T")


def detect_platform() -> ProcessPlatform:
    return WindowsPlatform() if sys.platform == "win32" else PosixPlatform()


class PortReaper:
    def __init__(self, platform: ProcessPlatform = None, grace: float = None):
        self.platform = platform or detect_platform()
        self.grace    = config.REAP_GRACE if grace is None else grace

    def listeners(self, port: int) -> list:
        try:
            return [p for p in self.platform.list_listeners(port) if p != os.getpid()]
        except Exception as e:
            log.warning(f"⚠ Could not list listeners on :{port}: {e}")
            return []

    def kill_pids(self, pids: list) -> list:
        killed = []
        for pid in pids:
            try:
                ok = self.platform.force_kill(pid)
            except Exception as e:
                log.warning(f"⚠ Failed to kill PID {pid}: {e}")
                continue
            if ok:
                killed.append(pid)
        return killed

    def reap_port(self, port: int) -> list:
        """Kill whatever listens on `port`. Returns killed PIDs; [] when the port was free."""
        pids = self.listeners(port)
        if not pids:
            log.info(f"Port {port} is free")
            return []
        log.info(f"🔪 Port {port} is held by PIDs {pids}, killing")
        killed = self.kill_pids(pids)
        time.sleep(self.grace)
        return killed
