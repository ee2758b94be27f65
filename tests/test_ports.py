"""Tests for PID parsing and PortReaper."""
import os

from devpilot.ports import PortReaper, parse_pids, parse_netstat, detect_platform, ProcessPlatform

from conftest import FakePlatform


NETSTAT = """
Active Connections

  Proto  Local Address          Foreign Address        State           PID
  TCP    0.0.0.0:3000           0.0.0.0:0              LISTENING       4242
  TCP    0.0.0.0:30000          0.0.0.0:0              LISTENING       999
  TCP    127.0.0.1:3000         127.0.0.1:51234        ESTABLISHED     777
  TCP    [::]:3000              [::]:0                 LISTENING       4242
  TCP    [::]:5173              [::]:0                 LISTENING       1234
"""


class TestParsing:

    def test_parse_pids_filters_and_dedupes(self):
        assert parse_pids("123\n456\n123\nabc\n0\n-5\n") == [123, 456]

    def test_parse_pids_empty(self):
        assert parse_pids("") == []
        assert parse_pids(None) == []

    def test_parse_netstat_only_listening_rows_for_port(self):
        assert parse_netstat(NETSTAT, 3000) == [4242]
        assert parse_netstat(NETSTAT, 5173) == [1234]
        assert parse_netstat(NETSTAT, 8080) == []

    def test_detect_platform(self):
        assert isinstance(detect_platform(), ProcessPlatform)


class TestPortReaper:

    def test_free_port_is_a_noop_twice(self):
        platform = FakePlatform()
        reaper = PortReaper(platform, grace=0)

        assert reaper.reap_port(3000) == []
        assert reaper.reap_port(3000) == []
        assert platform.killed == []

    def test_reap_kills_every_listener(self):
        platform = FakePlatform(listeners={3000: [11, 12]})
        reaper = PortReaper(platform, grace=0)

        assert reaper.reap_port(3000) == [11, 12]
        assert platform.list_listeners(3000) == []
        assert reaper.reap_port(3000) == []

    def test_kill_failure_does_not_abort_batch(self):
        platform = FakePlatform(listeners={3000: [11, 12, 13]}, failing={12})
        reaper = PortReaper(platform, grace=0)

        assert reaper.reap_port(3000) == [11, 13]
        assert platform.killed == [11, 13]

    def test_never_reaps_itself(self):
        platform = FakePlatform(listeners={3000: [os.getpid(), 77]})
        reaper = PortReaper(platform, grace=0)

        assert reaper.listeners(3000) == [77]

    def test_enumeration_errors_read_as_free(self):
        class Broken(FakePlatform):
            def list_listeners(self, port):
                raise OSError("lsof exploded")

        assert PortReaper(Broken(), grace=0).reap_port(3000) == []
