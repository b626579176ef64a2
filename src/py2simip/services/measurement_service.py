"""
Measurement session: configure, start, follow progress, deliver the result.

The session lives as long as the client. It is attached to the exchange
coordinator of each new connection and detached on teardown, which aborts
any measurement in flight.
"""

import logging
import threading
from enum import Enum
from typing import Optional

from py2simip.core.errors import (
    MeasurementAbort,
    SessionStateError,
    ErrorCodes,
)
from py2simip.core.exchange_coordinator import ExchangeCoordinator
from py2simip.core.line_protocol import Commands, build_set_config
from py2simip.core.response_parser import (
    ConfigAck,
    MessageKind,
    ParsedMessage,
    ParseError,
    Progress,
    Result,
)
from py2simip.models.measurement import (
    MeasurementConfig,
    MeasurementProgress,
    MeasurementResult,
)
from py2simip.models.observable import EventStream
from py2simip.models.settings import EngineSettings


class SessionState(Enum):
    """Where the session is in configure -> start -> result."""

    IDLE = "idle"
    CONFIGURED = "configured"
    MEASURING = "measuring"


class MeasurementSession:
    """
    Drives one measurement at a time over the shared socket.

    Progress and results are not returned from ``start_measurement``; they
    arrive later through the background listener, which hands each line to
    ``handle_message`` in the order it was read.

    Example:
        >>> session.send_configuration(80, 2.0, 4)
        >>> session.start_measurement()
        >>> session.is_measuring
        True
    """

    def __init__(self, settings: EngineSettings,
                 progress: EventStream, results: EventStream, aborts: EventStream):
        """
        Args:
            settings: Exchange timeout and current limits
            progress: Stream receiving MeasurementProgress events
            results: Stream receiving MeasurementResult events
            aborts: Stream receiving MeasurementAbort errors
        """
        self._settings = settings
        self._progress = progress
        self._results = results
        self._aborts = aborts
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._coordinator: Optional[ExchangeCoordinator] = None
        self._state = SessionState.IDLE
        self._config: Optional[MeasurementConfig] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def is_measuring(self) -> bool:
        with self._lock:
            return self._state == SessionState.MEASURING

    @property
    def config(self) -> Optional[MeasurementConfig]:
        """Configuration acknowledged by the device, if any."""
        with self._lock:
            return self._config

    def attach(self, coordinator: ExchangeCoordinator) -> None:
        """Bind the session to a freshly connected coordinator."""
        with self._lock:
            self._coordinator = coordinator
            self._state = SessionState.IDLE
            self._config = None

    def detach(self, cause: Optional[Exception] = None) -> None:
        """Unbind from the coordinator; a running measurement is aborted."""
        self.abort(cause)
        with self._lock:
            self._coordinator = None

    def _require_coordinator(self, operation: str) -> ExchangeCoordinator:
        if self._coordinator is None:
            raise SessionStateError(
                f"Cannot {operation}: not connected to device",
                error_code=ErrorCodes.NOT_CONNECTED
            )
        return self._coordinator

    # ------------------------------------------------------------------
    # Imperative operations
    # ------------------------------------------------------------------

    def send_configuration(self, current_ma: int, time_s: float, stack: int) -> MeasurementConfig:
        """
        Send ``SetConfig`` and wait for an identical ``ResConf`` echo.

        Args:
            current_ma: Injection current in mA (zero-padded to 3 digits on the wire)
            time_s: Measurement time in seconds
            stack: Number of repeats

        Returns:
            The acknowledged configuration

        Raises:
            ValidationError: Parameters out of range (nothing is sent)
            SessionStateError: Not connected, or a measurement is running
            ProtocolMismatchError: The echo differs from the request
            ExchangeTimeout, ProtocolParseError, TransportError: Exchange failed
        """
        config = MeasurementConfig(current_ma=current_ma, stack=stack, time_s=time_s)
        config.validate(self._settings.min_current_ma, self._settings.max_current_ma)

        with self._lock:
            coordinator = self._require_coordinator("send configuration")
            if self._state == SessionState.MEASURING:
                raise SessionStateError(
                    "Cannot reconfigure while a measurement is running",
                    error_code=ErrorCodes.EXCHANGE_BUSY
                )
            # Device configuration is unknown until the new echo arrives
            self._state = SessionState.IDLE
            self._config = None

        command = build_set_config(config.current_ma, config.stack, config.time_s)
        self.logger.info(f"Sending configuration: {command}")

        def echo_matches(message: ParsedMessage) -> bool:
            return (isinstance(message, ConfigAck)
                    and config.matches(message.amp, message.stack, message.time))

        coordinator.run_exchange(
            command,
            MessageKind.CONFIG_ACK,
            validate=echo_matches,
            timeout=self._settings.exchange_timeout
        )

        with self._lock:
            self._config = config
            self._state = SessionState.CONFIGURED
        self.logger.info(f"Configuration acknowledged: {config}")
        return config

    def start_measurement(self) -> None:
        """
        Send ``Star`` and wait for ``ResStar``.

        The session is MEASURING once this returns; from then on the status
        poll is suspended and progress/results flow through ``handle_message``.

        Raises:
            SessionStateError: Not connected or not configured
            ExchangeTimeout, ProtocolParseError, TransportError: Exchange failed
        """
        with self._lock:
            coordinator = self._require_coordinator("start measurement")
            if self._state != SessionState.CONFIGURED:
                raise SessionStateError(
                    f"Cannot start measurement from state '{self._state.value}'; "
                    f"send a configuration first",
                    error_code=ErrorCodes.NOT_CONFIGURED
                )

        self.logger.info("Starting measurement")
        coordinator.run_exchange(
            Commands.START_MEASUREMENT,
            MessageKind.START_ACK,
            timeout=self._settings.exchange_timeout,
            on_accept=lambda message: self._enter_measuring()
        )
        self.logger.info("Measurement started")

    def _enter_measuring(self) -> None:
        # Called under socket ownership: no Gets can go out between ResStar and here
        with self._lock:
            self._state = SessionState.MEASURING

    # ------------------------------------------------------------------
    # Background path
    # ------------------------------------------------------------------

    def handle_message(self, message: ParsedMessage) -> bool:
        """
        Consume a line read outside an exchange.

        Returns:
            True if the message was a Progress or Result handled by the session
        """
        if isinstance(message, Progress):
            self._handle_progress(message)
            return True
        if isinstance(message, Result):
            self._handle_result(message.result)
            return True
        if isinstance(message, ParseError) and message.expected in (
                MessageKind.PROGRESS, MessageKind.RESULT):
            self.logger.warning(f"Ignoring malformed measurement line: {message.reason}")
            return True
        return False

    def _handle_progress(self, message: Progress) -> None:
        with self._lock:
            if self._state != SessionState.MEASURING or self._config is None:
                self.logger.debug(f"Progress outside a measurement ignored: {message.raw!r}")
                return
            stack = self._config.stack

        progress = MeasurementProgress.from_report(message.stage, message.repeat, stack)
        self.logger.debug(
            f"Progress: stage {progress.stage}, repeat {progress.repeat} -> {progress.percent}%"
        )
        self._progress.emit(progress)

    def _handle_result(self, result: MeasurementResult) -> None:
        with self._lock:
            if self._state != SessionState.MEASURING:
                self.logger.warning(f"Result outside a measurement ignored (id {result.id})")
                return
            self._state = SessionState.IDLE
            self._config = None

        self.logger.info(f"Measurement {result.id} complete, average IP {result.average_ip:.3f}")
        self._results.emit(result)

    def abort(self, cause: Optional[Exception] = None) -> bool:
        """
        End the current session without a result.

        Returns:
            True if a running measurement was aborted
        """
        with self._lock:
            was_measuring = self._state == SessionState.MEASURING
            self._state = SessionState.IDLE
            self._config = None

        if not was_measuring:
            return False

        reason = f"Measurement aborted: {cause}" if cause else "Measurement aborted"
        self.logger.warning(reason)
        self._aborts.emit(MeasurementAbort(
            reason,
            error_code=ErrorCodes.MEASUREMENT_ABORTED,
            cause=cause
        ))
        return True
