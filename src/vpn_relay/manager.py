"""Connection lifecycle management."""

import asyncio
from datetime import datetime
from types import TracebackType

from .config import ArtifactLocator, RelaySettings, find_openvpn_binary
from .exceptions import ConnectionTimeoutError, ProcessError
from .logging import get_logger
from .models import (
    ConnectionState,
    ConnectionStatus,
    ProcessExit,
    Protocol,
)
from .probe import LivenessProber
from .process import ProcessSupervisor, build_command
from .reconnect import ReconnectPolicy
from .registry import ConnectionEntry, ConnectionRegistry

logger = get_logger(__name__)


class _StoppedWhileConnecting(ProcessError):
    """A stop overtook an in-flight start."""

    def __init__(self, name: str):
        super().__init__(f"VPN connection {name} was stopped while connecting")


class ConnectionManager:
    """Starts, stops and auto-recovers named VPN connections.

    State for each name is changed only under that name's registry lock.
    Process exits arrive on an event queue and are applied by a single
    watcher task, which also hands unintentional exits to the reconnect
    policy.
    """

    def __init__(
        self,
        settings: RelaySettings | None = None,
        *,
        registry: ConnectionRegistry | None = None,
        prober: LivenessProber | None = None,
        locator: ArtifactLocator | None = None,
    ):
        """Initialize connection manager.

        Args:
            settings: Runtime settings (defaults if None)
            registry: Registry to track connections in
            prober: Liveness prober (routing table check if None)
            locator: Config/credential lookup (``settings.config_dir`` if None)
        """
        self.settings = settings or RelaySettings()
        self.registry = registry or ConnectionRegistry()
        self.prober = prober or LivenessProber(
            interval=self.settings.probe_interval,
            timeout=self.settings.connect_timeout,
        )
        self.locator = locator or ArtifactLocator(self.settings.config_dir)
        self.reconnect_policy = ReconnectPolicy(
            self.registry,
            max_attempts=self.settings.max_reconnect_attempts,
            delay=self.settings.reconnect_delay,
        )
        self._events: asyncio.Queue[ProcessExit] = asyncio.Queue()
        self._watcher: asyncio.Task[None] | None = None
        logger.info(
            "Initialized ConnectionManager",
            config_dir=str(self.settings.config_dir),
            max_reconnect_attempts=self.settings.max_reconnect_attempts,
        )

    async def __aenter__(self) -> "ConnectionManager":
        self._ensure_watcher()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    def _ensure_watcher(self) -> None:
        if self._watcher is None or self._watcher.done():
            self._watcher = asyncio.create_task(
                self._watch_exits(), name="vpn-exit-watcher"
            )

    def _set_state(self, entry: ConnectionEntry, state: ConnectionState) -> None:
        name = entry.connection.name
        if self.registry.entry(name) is entry:
            self.registry.set_state(name, state)

    async def start(self, name: str, protocol: Protocol | str = Protocol.TCP) -> bool:
        """Start a VPN connection and wait until it is connected.

        Concurrent calls for the same name share one attempt.

        Args:
            name: Connection name
            protocol: ``tcp`` or ``udp``

        Returns:
            True once the connection is connected

        Raises:
            ConfigMissingError: If the config or credential file is missing
            ConnectionTimeoutError: If the tunnel does not come up in time
            ProcessError: If the client fails to launch, exits while connecting
                or the connection is stopped before it comes up
        """
        protocol = Protocol(protocol)
        self._ensure_watcher()
        entry = self.registry.ensure(name, protocol)

        async with entry.lock:
            if entry.connection.state == ConnectionState.CONNECTED:
                logger.info("VPN connection is already active", connection=name)
                return True

            task = entry.start_task
            if task is None or task.done():
                task = asyncio.create_task(
                    self._launch(entry, protocol, entry.generation),
                    name=f"vpn-start-{name}",
                )
                entry.start_task = task
            else:
                logger.debug("Joining in-flight start", connection=name)

        return await asyncio.shield(task)

    async def _launch(
        self, entry: ConnectionEntry, protocol: Protocol, generation: int
    ) -> bool:
        name = entry.connection.name
        logger.info(
            "Starting VPN connection", connection=name, protocol=protocol.value
        )
        config_path, auth_path = self.locator.resolve(name, protocol)

        try:
            binary = find_openvpn_binary(self.settings.openvpn_binary)
            self.settings.logs_dir.mkdir(parents=True, exist_ok=True)
            supervisor = ProcessSupervisor(
                name,
                build_command(
                    binary, name, config_path, auth_path, self.settings.logs_dir
                ),
                self._events,
            )
            async with entry.lock:
                if entry.generation != generation:
                    raise _StoppedWhileConnecting(name)
                await supervisor.spawn()
                entry.supervisor = supervisor
                self.registry.update(
                    name, protocol=protocol, started_at=supervisor.started_at
                )
                self._set_state(entry, ConnectionState.CONNECTING)
        except _StoppedWhileConnecting:
            logger.info("VPN connection stopped before launch", connection=name)
            raise
        except (ProcessError, OSError) as e:
            logger.error("Failed to start VPN connection", connection=name, error=str(e))
            async with entry.lock:
                if entry.generation == generation:
                    self._set_state(entry, ConnectionState.ERROR)
            if isinstance(e, ProcessError):
                raise
            raise ProcessError(f"Failed to start VPN connection {name}: {e}") from e

        try:
            polls = await self.prober.wait_until_up(name, supervisor.is_running)
        except ConnectionTimeoutError:
            logger.error(
                "VPN connection timed out",
                connection=name,
                timeout=self.prober.timeout,
            )
            async with entry.lock:
                if entry.supervisor is supervisor:
                    entry.supervisor = None
                    supervisor.terminate(self.settings.stop_grace_period)
                    self._set_state(entry, ConnectionState.ERROR)
            raise
        except ProcessError as e:
            logger.error("Failed to start VPN connection", connection=name, error=str(e))
            async with entry.lock:
                if entry.supervisor is supervisor:
                    # the exit watcher releases the process and consults the
                    # reconnect policy
                    self._set_state(entry, ConnectionState.ERROR)
            raise

        async with entry.lock:
            if (
                entry.generation != generation
                or entry.supervisor is not supervisor
                or not supervisor.is_running()
            ):
                raise _StoppedWhileConnecting(name)
            self._set_state(entry, ConnectionState.CONNECTED)

        logger.info("VPN connection established successfully", connection=name, polls=polls)
        return True

    async def _watch_exits(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._handle_exit(event)
            except Exception:
                logger.exception(
                    "Error handling VPN process exit", connection=event.connection_id
                )
            finally:
                self._events.task_done()

    async def _handle_exit(self, event: ProcessExit) -> None:
        name = event.connection_id
        entry = self.registry.entry(name)
        if entry is None:
            return

        async with entry.lock:
            if entry.supervisor is not event.supervisor:
                logger.debug("Ignoring exit of released process", connection=name)
                return

            entry.supervisor = None
            if entry.connection.state in (ConnectionState.CONNECTING, ConnectionState.ERROR):
                self._set_state(entry, ConnectionState.ERROR)
            else:
                self._set_state(entry, ConnectionState.DISCONNECTED)

            self.reconnect_policy.handle_exit(event, self.start)

    async def stop(self, name: str) -> None:
        """Stop a VPN connection without waiting for the process to exit.

        Sends SIGTERM now and SIGKILL after the grace period if needed. The
        connection is marked disconnected immediately and its reconnect
        counter is cleared. A start still in flight fails with
        ``ProcessError`` instead of bringing the connection up.

        Args:
            name: Connection name
        """
        entry = self.registry.entry(name)
        if entry is None:
            logger.warning("No VPN connection found", connection=name)
            return

        async with entry.lock:
            logger.info("Stopping VPN connection", connection=name)
            entry.generation += 1
            entry.start_task = None
            self.reconnect_policy.cancel(name)
            supervisor, entry.supervisor = entry.supervisor, None
            if supervisor is not None:
                supervisor.terminate(self.settings.stop_grace_period)
            self._set_state(entry, ConnectionState.DISCONNECTED)
            if self.registry.entry(name) is entry:
                self.registry.update(name, reconnect_attempts=0, was_connected=False)

    def is_active(self, name: str) -> bool:
        """True iff the connection is currently connected."""
        return self.registry.get_state(name) == ConnectionState.CONNECTED

    def status(self, name: str) -> ConnectionStatus:
        """Get status, protocol and uptime of one connection.

        Args:
            name: Connection name

        Returns:
            Status report; untracked names report disconnected
        """
        entry = self.registry.entry(name)
        if entry is None:
            return ConnectionStatus(name=name, state=ConnectionState.DISCONNECTED)

        connection = entry.connection
        uptime = 0.0
        if entry.is_live and connection.started_at is not None:
            uptime = (datetime.now() - connection.started_at).total_seconds()

        return ConnectionStatus(
            name=name,
            state=connection.state,
            protocol=connection.protocol,
            uptime=max(uptime, 0.0),
            reconnect_attempts=connection.reconnect_attempts,
        )

    def status_all(self) -> dict[str, ConnectionStatus]:
        """Status of every tracked connection, keyed by name."""
        return {
            connection.name: self.status(connection.name)
            for connection in self.registry.list_connections()
        }

    async def shutdown(self) -> None:
        """Stop every tracked connection and drop all state.

        Waits until every stop has been issued and every in-flight start has
        given up, not until every process has exited.
        """
        names = [connection.name for connection in self.registry.list_connections()]
        pending_starts = [
            entry.start_task
            for entry in map(self.registry.entry, names)
            if entry is not None
            and entry.start_task is not None
            and not entry.start_task.done()
        ]
        logger.info("Shutting down all VPN connections", count=len(names))

        results = await asyncio.gather(
            *(self.stop(name) for name in names), return_exceptions=True
        )
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.error(
                    "Error stopping VPN connection", connection=name, error=str(result)
                )

        # stopped launches fail fast; none of them may outlive the registry
        await asyncio.gather(*pending_starts, return_exceptions=True)

        if self._watcher is not None:
            self._watcher.cancel()
            self._watcher = None

        self.registry.clear()
