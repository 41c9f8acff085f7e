"""Process supervision for the OpenVPN client."""

import asyncio
import signal as signal_module
from datetime import datetime
from pathlib import Path

import structlog

from .exceptions import ProcessError
from .logging import connection_log_sink, get_logger
from .models import ProcessExit

logger = get_logger(__name__)

OUTPUT_DRAIN_TIMEOUT = 1.0


def _signal_name(signum: int) -> str:
    try:
        return signal_module.Signals(signum).name
    except ValueError:
        return str(signum)


class ProcessSupervisor:
    """Owns one client process for one connection.

    The supervisor spawns the process, pumps its output into the connection's
    log sink and reports its exit as a :class:`ProcessExit` on the shared
    event queue. Nothing else writes to the process handle.
    """

    def __init__(
        self,
        connection_id: str,
        command: list[str],
        events: "asyncio.Queue[ProcessExit]",
        log_sink: structlog.stdlib.BoundLogger | None = None,
    ):
        """Initialize supervisor.

        Args:
            connection_id: Connection this process backs
            command: Full argv of the client process
            events: Queue that receives the exit notification
            log_sink: Destination for stdout/stderr lines
        """
        self.connection_id = connection_id
        self.command = command
        self._events = events
        self._sink = log_sink or connection_log_sink(connection_id)
        self._process: asyncio.subprocess.Process | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._kill_task: asyncio.Task[None] | None = None
        self._exited = asyncio.Event()
        self._stop_requested = False
        self.started_at: datetime | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def is_running(self) -> bool:
        """Check if the process was spawned and has not exited."""
        return self._process is not None and not self._exited.is_set()

    async def spawn(self) -> None:
        """Start the client process and begin watching it.

        Raises:
            ProcessError: If the process cannot be launched
        """
        if self._process is not None:
            raise ProcessError(f"Process for {self.connection_id} already spawned")

        logger.info(
            "Starting VPN client process",
            connection=self.connection_id,
            binary=self.command[0],
        )
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(
                "Failed to start VPN client process",
                connection=self.connection_id,
                error=str(e),
            )
            raise ProcessError(
                f"Failed to start VPN client for {self.connection_id}: {e}"
            ) from e

        self.started_at = datetime.now()
        self._watch_task = asyncio.create_task(
            self._watch(), name=f"vpn-watch-{self.connection_id}"
        )
        logger.info(
            "VPN client process started", connection=self.connection_id, pid=self.pid
        )

    async def _pump(self, stream: asyncio.StreamReader | None, is_stderr: bool) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # line longer than the reader limit
                self._sink.warning("Dropped oversized output line", stderr=is_stderr)
                continue
            if not raw:
                return
            line = raw.decode(errors="replace").rstrip()
            if not line:
                continue
            if is_stderr:
                self._sink.error("stderr", line=line)
            else:
                self._sink.debug("stdout", line=line)

    async def _watch(self) -> None:
        assert self._process is not None
        process = self._process
        pumps = asyncio.gather(
            asyncio.create_task(
                self._pump(process.stdout, is_stderr=False),
                name=f"vpn-pump-{self.connection_id}-stdout",
            ),
            asyncio.create_task(
                self._pump(process.stderr, is_stderr=True),
                name=f"vpn-pump-{self.connection_id}-stderr",
            ),
        )
        try:
            returncode = await process.wait()
            self._exited.set()

            if self._kill_task is not None:
                self._kill_task.cancel()

            # Children of the client may hold the pipes open after it exits
            try:
                await asyncio.wait_for(pumps, timeout=OUTPUT_DRAIN_TIMEOUT)
            except TimeoutError:
                pass
        finally:
            pumps.cancel()

        exit_signal = -returncode if returncode < 0 else None
        logger.info(
            "VPN client process exited",
            connection=self.connection_id,
            code=None if exit_signal else returncode,
            signal=_signal_name(exit_signal) if exit_signal else None,
        )
        await self._events.put(
            ProcessExit(
                connection_id=self.connection_id,
                supervisor=self,
                returncode=None if exit_signal else returncode,
                signal=exit_signal,
                requested=self._stop_requested,
            )
        )

    def terminate(self, grace_period: float = 5.0) -> None:
        """Ask the process to exit, escalating to SIGKILL after a grace period.

        Returns immediately. The forced kill is cancelled if the process exits
        on its own first.

        Args:
            grace_period: Seconds to wait before SIGKILL
        """
        self._stop_requested = True
        if not self.is_running():
            logger.debug("Process not running, nothing to stop", connection=self.connection_id)
            return

        assert self._process is not None
        logger.info("Stopping VPN client process", connection=self.connection_id, pid=self.pid)
        try:
            self._process.terminate()
        except ProcessLookupError:
            return

        if self._kill_task is None:
            self._kill_task = asyncio.create_task(
                self._kill_after(grace_period), name=f"vpn-kill-{self.connection_id}"
            )

    async def _kill_after(self, grace_period: float) -> None:
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=grace_period)
        except TimeoutError:
            if self._process is not None and not self._exited.is_set():
                logger.warning(
                    "Process did not terminate gracefully, force killing",
                    connection=self.connection_id,
                    pid=self.pid,
                )
                try:
                    self._process.kill()
                except ProcessLookupError:
                    pass

    async def wait(self) -> int | None:
        """Wait until the process has exited and its exit was reported."""
        if self._watch_task is not None:
            await asyncio.shield(self._watch_task)
        return self.returncode


def build_command(
    binary: str,
    connection_id: str,
    config_path: Path,
    auth_path: Path,
    logs_dir: Path,
) -> list[str]:
    """Argv for an OpenVPN client bound to one connection.

    The client runs in the foreground so its exit can be observed; it writes
    its own log and pid file under ``logs_dir``.
    """
    return [
        binary,
        "--config",
        str(config_path),
        "--auth-user-pass",
        str(auth_path),
        "--log",
        str(logs_dir / f"vpn-{connection_id}.log"),
        "--writepid",
        str(logs_dir / f"vpn-{connection_id}.pid"),
    ]
