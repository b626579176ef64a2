"""
DeviceClient: the single entry point for callers (UI, CLI, scripts).

Composes the connection state machine, the measurement session and the
observable streams. Imperative operations block the calling thread; each
has an ``*_async`` twin that runs on the client's own I/O executor and
returns a ``concurrent.futures.Future`` so UI threads never block.

Streams:
    connection_status: ObservableValue[ConnectionStatus]
    device_status: ObservableValue[DeviceStatus]
    device_version: ObservableValue[Optional[str]]
    connected_ssid: ObservableValue[Optional[str]]
    progress: EventStream[MeasurementProgress]
    results: EventStream[MeasurementResult]
    aborts: EventStream[MeasurementAbort]
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from py2simip.core.errors import SimipError, TransportError
from py2simip.core.tcp_connection import TCPConnection
from py2simip.models.connection import ConnectionState, ConnectionStatus
from py2simip.models.measurement import DISCONNECTED_STATUS
from py2simip.models.observable import EventStream, ObservableValue
from py2simip.models.settings import EngineSettings
from py2simip.services.connection_service import ConnectionStateMachine, TransportFactory
from py2simip.services.measurement_service import MeasurementSession
from py2simip.services.wifi import WifiAssociator


class DeviceClient:
    """
    Facade over the SIMIP device engine.

    Example:
        >>> client = DeviceClient(wifi=PresetNetworkAssociator(["SIMIP-kia"]))
        >>> client.results.subscribe(store_result)
        >>> status = client.connect_and_wait(timeout=30)
        >>> client.send_configuration(80, 2.0, 4) and client.start_measurement()
        True
    """

    def __init__(
        self,
        wifi: WifiAssociator,
        settings: Optional[EngineSettings] = None,
        transport_factory: TransportFactory = TCPConnection
    ):
        """
        Args:
            wifi: Wi-Fi associator collaborator
            settings: Engine settings (defaults when None)
            transport_factory: Builds a fresh transport for each connect attempt
        """
        self.settings = settings or EngineSettings()
        self.logger = logging.getLogger(__name__)

        self.connection_status: ObservableValue = ObservableValue(
            "connection_status", ConnectionStatus(state=ConnectionState.DISCONNECTED)
        )
        self.device_status: ObservableValue = ObservableValue("device_status", DISCONNECTED_STATUS)
        self.device_version: ObservableValue = ObservableValue("device_version", None)
        self.connected_ssid: ObservableValue = ObservableValue("connected_ssid", None)
        self.progress: EventStream = EventStream("progress")
        self.results: EventStream = EventStream("results")
        self.aborts: EventStream = EventStream("aborts")

        self.session = MeasurementSession(self.settings, self.progress, self.results, self.aborts)
        self.connection = ConnectionStateMachine(
            self.settings,
            wifi,
            self.session,
            status=self.connection_status,
            device_status=self.device_status,
            device_version=self.device_version,
            connected_ssid=self.connected_ssid,
            transport_factory=transport_factory
        )
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="SimipClientIO")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self) -> bool:
        """Start connecting. Progress is reported through ``connection_status``."""
        return self.connection.connect()

    def connect_and_wait(self, timeout: Optional[float] = None) -> ConnectionStatus:
        """
        Start connecting and block until the attempt settles.

        Returns:
            The resulting status (CONNECTED, or an error state with its cause)
        """
        self.connection.connect()
        return self.connection.wait_until_settled(timeout)

    def disconnect(self) -> None:
        """Cancel everything and end in DISCONNECTED. Idempotent."""
        self.connection.disconnect()

    def is_connected(self) -> bool:
        return self.connection.is_connected()

    # ------------------------------------------------------------------
    # Measurement
    # ------------------------------------------------------------------

    def send_configuration(self, current: int, time: float, stack: int) -> bool:
        """
        Configure the next measurement.

        Args:
            current: Injection current in mA
            time: Measurement time in seconds
            stack: Number of repeats

        Returns:
            True if the device echoed exactly this configuration
        """
        try:
            self.session.send_configuration(current, time, stack)
            return True
        except SimipError as e:
            self._log_failure("send_configuration", e)
            return False

    def start_measurement(self) -> bool:
        """
        Start the configured measurement.

        Returns:
            True once the device acknowledged the start; progress and the
            result then arrive on ``progress`` and ``results``
        """
        try:
            self.session.start_measurement()
            return True
        except SimipError as e:
            self._log_failure("start_measurement", e)
            return False

    @property
    def is_measuring(self) -> bool:
        return self.session.is_measuring

    def _log_failure(self, operation: str, error: SimipError) -> None:
        self.logger.error(f"{operation} failed: {error.format_log_message()}")
        if isinstance(error, TransportError):
            self.connection.report_transport_failure(error)

    # ------------------------------------------------------------------
    # Async variants
    # ------------------------------------------------------------------

    def connect_async(self, timeout: Optional[float] = None) -> Future:
        """Future resolving to the settled ConnectionStatus."""
        return self._executor.submit(self.connect_and_wait, timeout)

    def disconnect_async(self) -> Future:
        # Runs inline: it must not queue behind an exchange blocked on the executor
        future: Future = Future()
        self.disconnect()
        future.set_result(None)
        return future

    def send_configuration_async(self, current: int, time: float, stack: int) -> Future:
        return self._executor.submit(self.send_configuration, current, time, stack)

    def start_measurement_async(self) -> Future:
        return self._executor.submit(self.start_measurement)

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Disconnect and stop the I/O executor."""
        self.disconnect()
        self._executor.shutdown(wait=True)

    def __enter__(self) -> 'DeviceClient':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
