"""
Exchange coordinator: serialized access to the instrument socket.

The line protocol carries no message ids, so at most one request/response
exchange may be outstanding at any time. Every read and write on the
transport goes through a ``threading.Lock`` held by this class:

- ``run_exchange`` holds it for send-then-wait-for-matching-reply.
- ``read_unsolicited`` only tries to take it; if an exchange owns the
  socket the caller skips its turn and performs no read at all.
- ``send_request`` holds it just long enough to write one line.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from py2simip.core.errors import (
    ExchangeBusy,
    ExchangeTimeout,
    ProtocolMismatchError,
    ProtocolParseError,
    ErrorCodes,
)
from py2simip.core.response_parser import (
    MessageKind,
    ParsedMessage,
    ParseError,
    ResponseParser,
    default_parser,
)

logger = logging.getLogger(__name__)

Validator = Callable[[ParsedMessage], bool]


class ExchangeCoordinator:
    """
    Single-owner discipline around one line transport.

    Example:
        >>> coordinator = ExchangeCoordinator(transport)
        >>> reply = coordinator.run_exchange("Vers", MessageKind.VERSION, timeout=2.0)
        >>> reply.version
        '1.4'
    """

    def __init__(self, transport, parser: Optional[ResponseParser] = None,
                 default_timeout: float = 2.0):
        """
        Args:
            transport: Object with ``send_line(str)`` and
                ``receive_line(timeout) -> Optional[str]``
            parser: Line classifier (defaults to the shared parser)
            default_timeout: Overall exchange timeout when none is given
        """
        self._transport = transport
        self._parser = parser or default_parser
        self._default_timeout = default_timeout
        self._ownership = threading.Lock()
        self._owner: Optional[str] = None

        self._stats_lock = threading.Lock()
        self._stats: Dict[str, int] = {
            'exchanges': 0,
            'exchange_failures': 0,
            'discarded_lines': 0,
            'unsolicited_reads': 0,
            'skipped_busy': 0,
        }

    @property
    def transport(self):
        return self._transport

    @property
    def is_busy(self) -> bool:
        """True while some caller owns the socket."""
        return self._ownership.locked()

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def get_stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)

    @contextmanager
    def _owned(self, purpose: str, blocking: bool, timeout: float) -> Iterator[None]:
        if blocking:
            acquired = self._ownership.acquire(timeout=timeout)
        else:
            acquired = self._ownership.acquire(blocking=False)
        if not acquired:
            raise ExchangeBusy(
                f"Socket is owned by '{self._owner}', cannot run '{purpose}'",
                error_code=ErrorCodes.EXCHANGE_BUSY,
                context={'requested': purpose}
            )
        self._owner = purpose
        try:
            yield
        finally:
            self._owner = None
            self._ownership.release()

    def run_exchange(
        self,
        command: str,
        expected: MessageKind,
        validate: Optional[Validator] = None,
        timeout: Optional[float] = None,
        blocking: bool = True,
        precondition: Optional[Callable[[], bool]] = None,
        on_accept: Optional[Callable[[ParsedMessage], None]] = None
    ) -> ParsedMessage:
        """
        Send ``command`` and wait for a matching reply.

        Each line read while waiting is classified:

        - expected kind and ``validate`` accepts it: returned
        - expected kind but ``validate`` rejects it: discarded, keep waiting
        - ParseError for the expected keyword: the exchange fails at once
        - anything else: discarded, keep waiting

        Args:
            command: Command line without terminator
            expected: Kind of message that answers this command
            validate: Optional predicate on the decoded reply
            timeout: Overall timeout for the whole wait loop
            blocking: If False, raise ExchangeBusy instead of waiting for
                ownership
            precondition: Checked once ownership is held; if it returns
                False nothing is sent and ExchangeBusy is raised
            on_accept: Called with the accepted reply before ownership is
                released

        Returns:
            The accepted reply

        Raises:
            ExchangeBusy: Ownership could not be obtained, or the
                precondition failed
            ExchangeTimeout: No matching reply within ``timeout``
            ProtocolMismatchError: Only non-validating replies arrived in time
            ProtocolParseError: The expected reply was malformed
            TransportError: The transport failed (propagated unchanged)
        """
        timeout = self._default_timeout if timeout is None else timeout
        # One deadline covers waiting for ownership and waiting for the reply
        deadline = time.monotonic() + timeout

        with self._owned(command, blocking, timeout):
            if precondition is not None and not precondition():
                raise ExchangeBusy(
                    f"Precondition for '{command}' no longer holds",
                    error_code=ErrorCodes.EXCHANGE_BUSY,
                    context={'requested': command}
                )
            self._count('exchanges')
            try:
                reply = self._exchange_locked(command, expected, validate, timeout, deadline)
                if on_accept is not None:
                    on_accept(reply)
                return reply
            except Exception:
                self._count('exchange_failures')
                raise

    def _exchange_locked(self, command: str, expected: MessageKind,
                         validate: Optional[Validator], timeout: float,
                         deadline: float) -> ParsedMessage:
        if time.monotonic() < deadline:
            self._transport.send_line(command)
        rejected: Optional[ParsedMessage] = None

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break

            line = self._transport.receive_line(remaining)
            if line is None:
                continue

            message = self._parser.parse(line)
            if message.kind == expected:
                if validate is None or validate(message):
                    logger.debug(f"Exchange '{command}' completed with {line!r}")
                    return message
                logger.warning(f"Exchange '{command}': reply {line!r} failed validation, waiting")
                rejected = message
                continue

            if isinstance(message, ParseError) and message.expected == expected:
                raise ProtocolParseError(
                    f"Malformed reply to '{command}': {message.reason}",
                    raw_line=line,
                    keyword=message.keyword,
                    error_code=ErrorCodes.RESPONSE_PARSE_ERROR
                )

            self._count('discarded_lines')
            logger.debug(f"Exchange '{command}': discarded unrelated line {line!r}")

        if rejected is not None:
            raise ProtocolMismatchError(
                f"Reply to '{command}' did not match the request: {rejected.raw!r}",
                command=command,
                error_code=ErrorCodes.ACK_MISMATCH,
                context={'reply': rejected.raw}
            )
        raise ExchangeTimeout(
            f"No reply to '{command}' within {timeout}s",
            command=command,
            timeout_seconds=timeout,
            error_code=ErrorCodes.RESPONSE_TIMEOUT
        )

    def read_unsolicited(self, timeout: float) -> Optional[ParsedMessage]:
        """
        Read and classify one line outside any exchange.

        If an exchange owns the socket this returns None immediately
        without touching the transport.

        Returns:
            The classified line, or None if busy or nothing arrived
        """
        if not self._ownership.acquire(blocking=False):
            self._count('skipped_busy')
            return None
        self._owner = 'listener'
        try:
            line = self._transport.receive_line(timeout)
        finally:
            self._owner = None
            self._ownership.release()

        if line is None:
            return None
        self._count('unsolicited_reads')
        return self._parser.parse(line)

    def send_request(self, command: str, blocking: bool = False) -> bool:
        """
        Send one line without waiting for a reply.

        Returns:
            True if sent, False if the socket was owned and ``blocking`` is False
        """
        try:
            with self._owned(command, blocking, self._default_timeout):
                self._transport.send_line(command)
        except ExchangeBusy:
            logger.debug(f"Skipped '{command}': socket busy")
            return False
        return True
