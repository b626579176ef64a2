"""
Connection state machine for the SIMIP instrument.

A connect attempt runs on its own worker thread:

    SEARCHING_WIFI -> CONNECTING_WIFI -> WIFI_CONNECTED -> CONNECTING_TCP
        -> VERIFYING_DEVICE -> CONNECTED

Any failure before CONNECTED tears everything down and ends in
CONNECTION_ERROR. Once CONNECTED, the status poller runs; a transport error
or too many failed polls tear down to DEVICE_ERROR. There is no automatic
reconnect.

Every attempt carries a generation number. ``disconnect()`` and teardown
bump it, so a worker or poller that is still unwinding can never publish a
state after the caller has been told DISCONNECTED.
"""

import logging
import threading
from typing import Any, Callable, Optional

from py2simip.core.errors import (
    ExchangeTimeout,
    HandshakeError,
    ProtocolParseError,
    SessionStateError,
    SimipError,
    TransportError,
    ErrorCodes,
    wrap_external_error,
)
from py2simip.core.exchange_coordinator import ExchangeCoordinator
from py2simip.core.line_protocol import Commands
from py2simip.core.response_parser import MessageKind
from py2simip.core.retry import RetryCancelled, RetryPolicy
from py2simip.core.tcp_connection import TCPConnection
from py2simip.models.connection import ConnectionConfig, ConnectionState, ConnectionStatus
from py2simip.models.measurement import DeviceStatus, DISCONNECTED_STATUS
from py2simip.models.observable import ObservableValue
from py2simip.models.settings import EngineSettings
from py2simip.services.measurement_service import MeasurementSession
from py2simip.services.status_service import StatusPoller
from py2simip.services.wifi import WifiAssociator

TransportFactory = Callable[[ConnectionConfig], Any]

_SETTLED_STATES = (
    ConnectionState.DISCONNECTED,
    ConnectionState.CONNECTED,
    ConnectionState.CONNECTION_ERROR,
    ConnectionState.DEVICE_ERROR,
)


class ConnectionStateMachine:
    """
    Drives Wi-Fi association, TCP connect and handshake, and owns teardown.

    Attributes:
        settings: Engine settings
        status: Latest-value stream of ConnectionStatus
        device_status: Latest-value stream of DeviceStatus
        device_version: Latest-value stream of the firmware version string
        connected_ssid: Latest-value stream of the joined SSID
    """

    def __init__(
        self,
        settings: EngineSettings,
        wifi: WifiAssociator,
        session: MeasurementSession,
        status: ObservableValue,
        device_status: ObservableValue,
        device_version: ObservableValue,
        connected_ssid: ObservableValue,
        transport_factory: TransportFactory = TCPConnection
    ):
        self.settings = settings
        self.wifi = wifi
        self.session = session
        self.status = status
        self.device_status = device_status
        self.device_version = device_version
        self.connected_ssid = connected_ssid
        self._transport_factory = transport_factory
        self.logger = logging.getLogger(__name__)

        # Serializes connect()/disconnect() calls from callers
        self._lifecycle_lock = threading.RLock()
        # Guards the generation and the per-connection objects below
        self._state_lock = threading.RLock()
        self._generation = 0
        self._cancel = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._transport = None
        self._coordinator: Optional[ExchangeCoordinator] = None
        self._poller: Optional[StatusPoller] = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self.status.value.state

    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def coordinator(self) -> Optional[ExchangeCoordinator]:
        with self._state_lock:
            return self._coordinator

    def wait_until_settled(self, timeout: Optional[float] = None) -> ConnectionStatus:
        """
        Block until the state is CONNECTED, DISCONNECTED or an error state.

        Returns:
            The status at that moment (or the current status on timeout)
        """
        self.status.wait_for(lambda s: s.state in _SETTLED_STATES, timeout)
        return self.status.value

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    def connect(self) -> bool:
        """
        Start a connect attempt on a worker thread.

        Returns:
            True if an attempt was started, False if one is already in
            progress or the device is already connected
        """
        with self._lifecycle_lock:
            with self._state_lock:
                current = self.state
                if current == ConnectionState.CONNECTED or current.is_in_progress:
                    self.logger.warning(f"connect() ignored in state '{current.value}'")
                    return False

                self._generation += 1
                generation = self._generation
                self._cancel = threading.Event()
                cancel = self._cancel
                self._publish(ConnectionState.SEARCHING_WIFI)

                self._worker = threading.Thread(
                    target=self._connect_worker,
                    args=(generation, cancel),
                    name=f"SimipConnect-{generation}",
                    daemon=True
                )
                self._worker.start()
        self.logger.info("Connect attempt started")
        return True

    def _connect_worker(self, generation: int, cancel: threading.Event) -> None:
        try:
            self._run_connect_sequence(generation, cancel)
        except RetryCancelled:
            self.logger.info("Connect attempt cancelled")
        except SimipError as e:
            self.logger.error(f"Connect attempt failed: {e.format_log_message()}")
            self._fail(generation, ConnectionState.CONNECTION_ERROR, e)
        except Exception as e:
            # Collaborators (Wi-Fi associator, transport factory) may raise anything
            self.logger.exception(f"Connect attempt failed unexpectedly: {e}")
            self._fail(
                generation,
                ConnectionState.CONNECTION_ERROR,
                wrap_external_error(e, f"Connect attempt failed: {e}")
            )

    def _run_connect_sequence(self, generation: int, cancel: threading.Event) -> None:
        settings = self.settings
        config = settings.connection

        # Wi-Fi
        handle = self.wifi.connect(
            settings.ssid_pattern,
            settings.max_connection_retries,
            settings.retry_delay,
            on_found=lambda ssid: self._set_state(generation, ConnectionState.CONNECTING_WIFI),
            cancel_event=cancel
        )
        if cancel.is_set():
            return
        if handle is None:
            raise TransportError(
                f"No Wi-Fi network matching '{settings.ssid_pattern}' could be joined",
                error_code=ErrorCodes.WIFI_UNAVAILABLE,
                suggestions=["Switch the instrument on and move closer to it"]
            )
        with self._state_lock:
            if not self._is_current(generation):
                return
            self.connected_ssid.set(handle.ssid)
            self._publish(ConnectionState.WIFI_CONNECTED)

        # TCP
        if not self._set_state(generation, ConnectionState.CONNECTING_TCP):
            return
        transport = self._transport_factory(config)
        with self._state_lock:
            if not self._is_current(generation):
                return
            self._transport = transport
        try:
            transport.connect(config.host, config.port, config.connect_timeout)
        except ValueError as e:
            raise TransportError(
                f"Invalid device address: {e}",
                host=config.host, port=config.port, cause=e,
                error_code=ErrorCodes.SOCKET_ERROR
            )
        if not self._set_state(generation, ConnectionState.VERIFYING_DEVICE):
            transport.close()
            return

        # Handshake
        coordinator = ExchangeCoordinator(transport, default_timeout=settings.exchange_timeout)
        version = self._handshake(coordinator, cancel)

        with self._state_lock:
            if not self._is_current(generation):
                transport.close()
                return
            self._coordinator = coordinator
            self.session.attach(coordinator)
            self._poller = StatusPoller(
                coordinator,
                self.session,
                settings,
                on_status=lambda status: self._on_device_status(generation, status),
                on_failure=lambda error: self._on_poll_failure(generation, error)
            )
            self.device_version.set(version)
            self._publish(ConnectionState.CONNECTED)
            self._poller.start()
        self.logger.info(f"Connected to device firmware {version} at {config.host}:{config.port}")

    def _handshake(self, coordinator: ExchangeCoordinator, cancel: threading.Event) -> str:
        """
        Send ``Vers`` until a ``Ver<x.y>`` line arrives or attempts run out.

        Each attempt re-sends the command and waits one read timeout.
        """
        policy = RetryPolicy(
            max_attempts=self.settings.max_connection_retries,
            delay=self.settings.retry_delay,
            retry_on=(ExchangeTimeout, ProtocolParseError)
        )

        def attempt(number: int) -> str:
            reply = coordinator.run_exchange(
                Commands.GET_VERSION,
                MessageKind.VERSION,
                timeout=self.settings.connection.read_timeout
            )
            return reply.version

        try:
            return policy.run(attempt, cancel, description="Device handshake")
        except (ExchangeTimeout, ProtocolParseError) as e:
            raise HandshakeError(
                f"Device did not report a valid version after "
                f"{self.settings.max_connection_retries} attempts",
                error_code=ErrorCodes.HANDSHAKE_FAILED,
                cause=e,
                suggestions=["Check that the peer at this address is a SIMIP instrument"]
            )

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _publish(self, state: ConnectionState, cause: Optional[Exception] = None) -> None:
        # Caller holds _state_lock
        self.logger.info(f"Connection state -> {state.value}")
        self.status.set(ConnectionStatus(state=state, cause=cause))

    def _set_state(self, generation: int, state: ConnectionState) -> bool:
        with self._state_lock:
            if not self._is_current(generation):
                return False
            self._publish(state)
            return True

    def _on_device_status(self, generation: int, status: DeviceStatus) -> None:
        with self._state_lock:
            if self._is_current(generation):
                self.device_status.set(status)

    def _on_poll_failure(self, generation: int, error: SimipError) -> None:
        self._fail(generation, ConnectionState.DEVICE_ERROR, error)

    def report_transport_failure(self, error: TransportError) -> None:
        """Tear down to DEVICE_ERROR after a caller's exchange hit a broken socket."""
        with self._state_lock:
            generation = self._generation
            if self.state != ConnectionState.CONNECTED:
                return
        self._fail(generation, ConnectionState.DEVICE_ERROR, error)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _detach_resources(self):
        """Invalidate the current generation and take its resources. Caller holds _state_lock."""
        self._generation += 1
        self._cancel.set()
        resources = (self._transport, self._poller)
        self._transport = None
        self._coordinator = None
        self._poller = None
        return resources

    def _release(self, transport, poller: Optional[StatusPoller], cause: Exception) -> None:
        if transport is not None:
            # Closing the socket unblocks any read in progress
            transport.close()
        if poller is not None:
            poller.stop()
        self.session.detach(cause)
        self.device_status.set(DISCONNECTED_STATUS)
        self.device_version.set(None)
        self.connected_ssid.set(None)

    def _fail(self, generation: int, state: ConnectionState, error: SimipError) -> None:
        with self._state_lock:
            if not self._is_current(generation):
                self.logger.debug(f"Ignoring stale failure: {error}")
                return
            transport, poller = self._detach_resources()
            torn_down = self._generation

        self._release(transport, poller, error)

        with self._state_lock:
            if self._generation == torn_down:
                self._publish(state, cause=error)

    def disconnect(self) -> None:
        """
        Cancel any attempt or connection and end in DISCONNECTED.

        Idempotent, and safe from any state. Closing the transport unblocks
        an exchange or poll waiting on the socket.
        """
        with self._lifecycle_lock:
            with self._state_lock:
                previous = self.state
                transport, poller = self._detach_resources()
                torn_down = self._generation

            self.logger.info(f"Disconnecting (state was '{previous.value}')")
            self._release(
                transport, poller,
                SessionStateError("Disconnected by caller", error_code=ErrorCodes.NOT_CONNECTED)
            )

            with self._state_lock:
                if self._generation == torn_down and self.state != ConnectionState.DISCONNECTED:
                    self._publish(ConnectionState.DISCONNECTED)
