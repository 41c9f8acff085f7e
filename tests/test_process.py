"""Tests for client process supervision."""

import asyncio
import signal

import pytest

from vpn_relay.exceptions import ProcessError
from vpn_relay.process import ProcessSupervisor, build_command


class RecordingSink:
    """Collects client output lines by level."""

    def __init__(self):
        self.lines: list[tuple[str, str]] = []

    def debug(self, event, **kw):
        self.lines.append(("debug", kw.get("line", event)))

    def error(self, event, **kw):
        self.lines.append(("error", kw.get("line", event)))

    def warning(self, event, **kw):
        self.lines.append(("warning", event))


def _supervisor(script: str, sink=None):
    events: asyncio.Queue = asyncio.Queue()
    supervisor = ProcessSupervisor(
        "site-a", ["/bin/sh", "-c", script], events, log_sink=sink or RecordingSink()
    )
    return supervisor, events


class TestProcessSupervisor:
    @pytest.mark.asyncio
    async def test_reports_unintentional_exit(self):
        supervisor, events = _supervisor("exit 3")

        await supervisor.spawn()
        event = await asyncio.wait_for(events.get(), timeout=5)

        assert event.connection_id == "site-a"
        assert event.supervisor is supervisor
        assert event.returncode == 3
        assert event.signal is None
        assert event.requested is False
        assert event.unintentional
        assert not supervisor.is_running()

    @pytest.mark.asyncio
    async def test_clean_exit_is_not_unintentional(self):
        supervisor, events = _supervisor("exit 0")

        await supervisor.spawn()
        event = await asyncio.wait_for(events.get(), timeout=5)

        assert event.returncode == 0
        assert not event.unintentional

    @pytest.mark.asyncio
    async def test_output_goes_to_sink(self):
        sink = RecordingSink()
        supervisor, events = _supervisor(
            "echo 'Initialization Sequence Completed'; echo 'AUTH_FAILED' >&2", sink
        )

        await supervisor.spawn()
        await asyncio.wait_for(events.get(), timeout=5)

        assert ("debug", "Initialization Sequence Completed") in sink.lines
        assert ("error", "AUTH_FAILED") in sink.lines

    @pytest.mark.asyncio
    async def test_terminate_reports_requested_exit(self):
        supervisor, events = _supervisor("exec sleep 30")

        await supervisor.spawn()
        assert supervisor.is_running()
        assert supervisor.pid is not None

        supervisor.terminate(grace_period=5.0)
        event = await asyncio.wait_for(events.get(), timeout=5)

        assert event.signal == signal.SIGTERM
        assert event.returncode is None
        assert event.requested is True
        assert not event.unintentional

    @pytest.mark.asyncio
    async def test_force_kill_after_grace_period(self):
        """A client ignoring SIGTERM is killed once the grace period ends"""
        supervisor, events = _supervisor(
            "trap '' TERM; while true; do sleep 0.05; done"
        )

        await supervisor.spawn()
        await asyncio.sleep(0.1)
        supervisor.terminate(grace_period=0.2)
        event = await asyncio.wait_for(events.get(), timeout=5)

        assert event.signal == signal.SIGKILL
        assert supervisor.returncode == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_terminate_after_exit_is_noop(self):
        supervisor, events = _supervisor("exit 0")

        await supervisor.spawn()
        await asyncio.wait_for(supervisor.wait(), timeout=5)
        supervisor.terminate()

        assert supervisor.stop_requested
        assert events.qsize() == 1

    @pytest.mark.asyncio
    async def test_cancelled_watch_stops_output_pumps(self):
        supervisor, _ = _supervisor("exec sleep 30")
        await supervisor.spawn()
        await asyncio.sleep(0.05)

        supervisor._watch_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await supervisor._watch_task
        await asyncio.sleep(0.05)

        pumps = [
            task
            for task in asyncio.all_tasks()
            if task.get_name().startswith("vpn-pump-site-a")
        ]
        assert pumps == []

        supervisor._process.kill()
        await supervisor._process.wait()

    @pytest.mark.asyncio
    async def test_spawn_missing_binary(self, tmp_path):
        supervisor = ProcessSupervisor(
            "site-a", [str(tmp_path / "missing")], asyncio.Queue()
        )

        with pytest.raises(ProcessError, match="Failed to start VPN client"):
            await supervisor.spawn()

    @pytest.mark.asyncio
    async def test_spawn_twice(self):
        supervisor, events = _supervisor("exit 0")
        await supervisor.spawn()

        with pytest.raises(ProcessError, match="already spawned"):
            await supervisor.spawn()

        await asyncio.wait_for(supervisor.wait(), timeout=5)


class TestBuildCommand:
    def test_command_line(self, tmp_path):
        command = build_command(
            "/usr/sbin/openvpn",
            "site-a",
            tmp_path / "vpn-tcp.ovpn",
            tmp_path / "auth.txt",
            tmp_path / "logs",
        )

        assert command == [
            "/usr/sbin/openvpn",
            "--config",
            str(tmp_path / "vpn-tcp.ovpn"),
            "--auth-user-pass",
            str(tmp_path / "auth.txt"),
            "--log",
            str(tmp_path / "logs" / "vpn-site-a.log"),
            "--writepid",
            str(tmp_path / "logs" / "vpn-site-a.pid"),
        ]
        assert "--daemon" not in command
