"""
Background status poller and measurement listener.

One daemon thread per connection. While the measurement session is idle it
runs a ``Gets`` exchange every ``poll_interval``. While a measurement runs,
``Gets`` polling is suspended; the thread instead sends ``Data`` every
``data_request_interval`` and reads unsolicited lines, handing Progress and
Result messages to the session in the order they were read.

The thread never reads while an exchange owns the socket: every read goes
through the coordinator, which skips the turn when ownership is held.
"""

import logging
import threading
import time
from typing import Callable, Optional

from py2simip.core.errors import (
    ExchangeBusy,
    ExchangeTimeout,
    PollFailure,
    ProtocolParseError,
    SimipError,
    TransportError,
    ErrorCodes,
)
from py2simip.core.exchange_coordinator import ExchangeCoordinator
from py2simip.core.line_protocol import Commands
from py2simip.core.response_parser import MessageKind, ParsedMessage, Status
from py2simip.models.measurement import DeviceStatus
from py2simip.models.settings import EngineSettings
from py2simip.services.measurement_service import MeasurementSession


class StatusPoller:
    """
    Periodic ``Gets`` poll plus the background classification path.

    ``on_failure`` is called at most once, from the poller thread, when the
    loop ends because of a transport error or too many consecutive poll
    failures. It is not called when ``stop()`` ends the loop.
    """

    def __init__(
        self,
        coordinator: ExchangeCoordinator,
        session: MeasurementSession,
        settings: EngineSettings,
        on_status: Callable[[DeviceStatus], None],
        on_failure: Callable[[SimipError], None]
    ):
        self.coordinator = coordinator
        self.session = session
        self.settings = settings
        self._on_status = on_status
        self._on_failure = on_failure
        self.logger = logging.getLogger(__name__)

        # Threading control
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._consecutive_failures = 0
        self._next_poll = 0.0
        self._next_data_request = 0.0
        self._was_measuring = False

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def start(self) -> None:
        """Start the poller thread."""
        if self._thread and self._thread.is_alive():
            self.logger.warning("Status poller already running")
            return

        self._stop_event.clear()
        self._consecutive_failures = 0
        self._next_poll = time.monotonic()
        self._thread = threading.Thread(
            target=self._run,
            name="SimipStatusPoller",
            daemon=True
        )
        self._thread.start()
        self.logger.info("Status poller thread started")

    def stop(self, timeout: float = 2.0) -> None:
        """
        Stop the poller thread.

        Args:
            timeout: Maximum time to wait for the thread to finish
        """
        self._stop_event.set()
        thread = self._thread
        if thread is None or not thread.is_alive():
            return
        if thread is threading.current_thread():
            # Stopped from inside on_failure; the loop exits on its own
            return

        thread.join(timeout=timeout)
        if thread.is_alive():
            self.logger.warning("Status poller thread did not stop gracefully")
        else:
            self.logger.info("Status poller stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _run(self) -> None:
        self.logger.info("Status poller loop started")
        try:
            while not self._stop_event.is_set():
                if self.session.is_measuring:
                    self._measuring_step()
                else:
                    self._idle_step()
        except (TransportError, PollFailure) as e:
            if not self._stop_event.is_set():
                self.logger.error(f"Status poller failed: {e.format_log_message()}")
                self._on_failure(e)
        self.logger.info("Status poller loop exited")

    def _idle_step(self) -> None:
        if self._was_measuring:
            # Polling resumes right after a measurement ends
            self._was_measuring = False
            self._next_poll = time.monotonic()

        wait = self._next_poll - time.monotonic()
        if wait > 0:
            # Wake early if a measurement starts so Data requests are not delayed
            self._stop_event.wait(min(wait, self.settings.busy_backoff * 4))
            return

        try:
            reply = self.coordinator.run_exchange(
                Commands.GET_STATUS,
                MessageKind.STATUS,
                timeout=self.settings.exchange_timeout,
                blocking=False,
                precondition=lambda: not self.session.is_measuring
            )
        except ExchangeBusy:
            self._stop_event.wait(self.settings.busy_backoff)
            return
        except (ExchangeTimeout, ProtocolParseError) as e:
            self._record_failure(e)
        else:
            self._consecutive_failures = 0
            self._publish_status(reply)

        self._next_poll = time.monotonic() + self.settings.poll_interval

    def _record_failure(self, error: SimipError) -> None:
        self._consecutive_failures += 1
        self.logger.warning(
            f"Status poll failed ({self._consecutive_failures}/"
            f"{self.settings.max_poll_failures}): {error.message}"
        )
        if self._consecutive_failures >= self.settings.max_poll_failures:
            raise PollFailure(
                f"{self._consecutive_failures} consecutive status polls failed",
                failures=self._consecutive_failures,
                error_code=ErrorCodes.POLL_FAILURE,
                cause=error
            )

    def _measuring_step(self) -> None:
        now = time.monotonic()
        if not self._was_measuring:
            self._was_measuring = True
            self._next_data_request = now

        if now >= self._next_data_request:
            if self.coordinator.send_request(Commands.REQUEST_DATA):
                self.logger.debug("Sent Data request")
                self._next_data_request = now + self.settings.data_request_interval

        message = self.coordinator.read_unsolicited(self.settings.listen_timeout)
        if message is None:
            if self.coordinator.is_busy:
                self._stop_event.wait(self.settings.busy_backoff)
            return
        self._dispatch(message)

    def _dispatch(self, message: ParsedMessage) -> None:
        if self.session.handle_message(message):
            return
        if isinstance(message, Status):
            self._publish_status(message)
            return
        self.logger.debug(f"Ignoring {message.kind.value} line while measuring: {message.raw!r}")

    def _publish_status(self, message: ParsedMessage) -> None:
        if isinstance(message, Status):
            self._on_status(message.status)
