"""
Line-oriented TCP transport for SIMIP instrument communication.

A ``TCPConnection`` wraps one socket for one connection attempt. Any send or
receive failure (I/O error, EOF) permanently invalidates it; the caller must
close it and create a fresh instance for the next attempt. There is no
implicit reconnect.
"""

import socket
import logging
import threading
import time
from typing import Optional, Tuple

from py2simip.core.errors import TransportError, ErrorCodes, wrap_external_error
from py2simip.core.line_protocol import ENCODING, frame
from py2simip.models.connection import ConnectionConfig

_RECV_SIZE = 4096
_LINE_BREAKS = (ord('\r'), ord('\n'))


class TCPConnection:
    """
    Manages the TCP socket to the SIMIP instrument.

    ``receive_line`` never holds the state lock while blocked in ``recv``,
    so ``close()`` from another thread shuts the socket down and unblocks a
    pending read immediately.

    Example:
        >>> connection = TCPConnection()
        >>> connection.connect("192.168.4.1", 8888, timeout=5.0)
        >>> connection.send_line("Vers")
        >>> line = connection.receive_line(timeout=2.0)
        >>> connection.close()
    """

    def __init__(self, config: Optional[ConnectionConfig] = None):
        """
        Initialize the transport.

        Args:
            config: Default host, port and timeouts used when ``connect``
                is called without explicit values
        """
        self._config = config or ConnectionConfig()
        self._socket: Optional[socket.socket] = None
        self._lock = threading.Lock()
        self._connected = False
        self._used = False
        self._buffer = bytearray()
        self.logger = logging.getLogger(__name__)

        # Connection info
        self._ip: Optional[str] = None
        self._port: Optional[int] = None

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    def connect(
        self,
        ip: Optional[str] = None,
        port: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> None:
        """
        Open the TCP connection.

        Args:
            ip: Instrument IP address (defaults to the configured host)
            port: Instrument port (defaults to the configured port)
            timeout: Connect timeout in seconds (defaults to the configured value)

        Raises:
            ValueError: If IP address or port is invalid
            TransportError: If the connect fails, or this instance was used before
        """
        ip = self._config.host if ip is None else ip
        port = self._config.port if port is None else port
        timeout = self._config.connect_timeout if timeout is None else timeout

        self._validate_ip(ip)
        self._validate_port(port)

        with self._lock:
            if self._used:
                raise TransportError(
                    "Transport instances are single-use; create a new one to reconnect",
                    host=ip, port=port, error_code=ErrorCodes.SOCKET_ERROR
                )
            self._used = True
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            # Published before connecting so close() can abort a slow connect
            self._socket = sock
            self._ip = ip
            self._port = port

        try:
            self.logger.info(f"Connecting to {ip}:{port}")
            sock.settimeout(timeout)
            sock.connect((ip, port))
        except socket.timeout as e:
            self.logger.error(f"Connection to {ip}:{port} timed out after {timeout}s")
            self.close()
            raise TransportError(
                f"Connection to {ip}:{port} timed out",
                host=ip, port=port, cause=e,
                error_code=ErrorCodes.CONNECTION_TIMEOUT,
                suggestions=["Check that this host is joined to the instrument's Wi-Fi"]
            )
        except OSError as e:
            self.logger.error(f"Connection failed: {e}")
            self.close()
            raise TransportError(
                f"Could not connect to {ip}:{port}: {e}",
                host=ip, port=port, cause=e,
                error_code=ErrorCodes.CONNECTION_REFUSED
            )

        with self._lock:
            if self._socket is not sock:
                raise TransportError(
                    f"Connection to {ip}:{port} was closed while connecting",
                    host=ip, port=port, error_code=ErrorCodes.CONNECTION_LOST
                )
            self._connected = True
        self.logger.info(f"Connected to {ip}:{port}")

    def close(self) -> None:
        """
        Close the socket. Safe to call any number of times, from any thread.
        """
        with self._lock:
            sock = self._socket
            was_connected = self._connected
            self._socket = None
            self._connected = False
            self._used = True
            self._buffer.clear()

        if sock is not None:
            self._close_socket(sock)
            if was_connected:
                self.logger.info(f"Closed connection to {self._ip}:{self._port}")

    def _close_socket(self, sock: Optional[socket.socket]) -> None:
        if sock is None:
            return
        try:
            # shutdown wakes a thread blocked in recv on this socket
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            self.logger.debug(f"Socket shutdown: {e}")
        try:
            sock.close()
        except OSError as e:
            self.logger.error(f"Error closing socket: {e}")

    def _invalidate(self, reason: str) -> None:
        """Mark the transport broken after an I/O failure."""
        self.logger.error(f"Transport invalidated: {reason}")
        self.close()

    def _current_socket(self) -> socket.socket:
        with self._lock:
            if not self._connected or self._socket is None:
                raise TransportError(
                    "Not connected to instrument",
                    host=self._ip, port=self._port,
                    error_code=ErrorCodes.CONNECTION_LOST
                )
            return self._socket

    def send_line(self, line: str) -> None:
        """
        Send one command line. The terminator is appended here.

        Raises:
            TransportError: If not connected or the send fails
        """
        sock = self._current_socket()
        data = frame(line)
        try:
            sock.sendall(data)
        except OSError as e:
            self._invalidate(f"send failed: {e}")
            raise wrap_external_error(
                e, f"Failed to send {line!r}", host=self._ip, port=self._port,
                error_code=ErrorCodes.CONNECTION_LOST
            )
        self.logger.debug(f"Sent {line!r} ({len(data)} bytes)")

    def receive_line(self, timeout: float) -> Optional[str]:
        """
        Receive one line.

        Lines are split on ``\\r`` or ``\\n``; empty lines are skipped.

        Args:
            timeout: Seconds to wait for a complete line

        Returns:
            The decoded line without terminator, or None if the timeout
            expired (not an error)

        Raises:
            TransportError: On EOF or socket error. The transport is
                unusable afterwards.
        """
        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            line = self._pop_line()
            if line is not None:
                self.logger.debug(f"Received {line!r}")
                return line

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None

            sock = self._current_socket()
            try:
                sock.settimeout(remaining)
                chunk = sock.recv(_RECV_SIZE)
            except socket.timeout:
                return None
            except OSError as e:
                self._invalidate(f"receive failed: {e}")
                raise wrap_external_error(
                    e, "Failed to receive from instrument",
                    host=self._ip, port=self._port,
                    error_code=ErrorCodes.CONNECTION_LOST
                )

            if not chunk:
                self._invalidate("connection closed by peer")
                raise TransportError(
                    "Connection closed by instrument",
                    host=self._ip, port=self._port,
                    error_code=ErrorCodes.CONNECTION_LOST
                )

            with self._lock:
                self._buffer.extend(chunk)

    def _pop_line(self) -> Optional[str]:
        """Remove and return the first non-empty buffered line, if complete."""
        with self._lock:
            while True:
                end = -1
                for i, byte in enumerate(self._buffer):
                    if byte in _LINE_BREAKS:
                        end = i
                        break
                if end == -1:
                    return None
                raw = bytes(self._buffer[:end])
                del self._buffer[:end + 1]
                text = raw.decode(ENCODING, errors='replace')
                if text.strip():
                    return text

    def is_connected(self) -> bool:
        """True while the socket is open and no I/O failure has occurred."""
        with self._lock:
            return self._connected

    def get_connection_info(self) -> Tuple[Optional[str], Optional[int]]:
        """
        Get current connection information.

        Returns:
            Tuple of (ip_address, port) or (None, None) if never connected
        """
        with self._lock:
            return self._ip, self._port

    @staticmethod
    def _validate_ip(ip: str) -> None:
        """
        Validate IP address format.

        Raises:
            ValueError: If IP address is invalid
        """
        if not isinstance(ip, str) or not ip:
            raise ValueError(f"Invalid IP address: {ip}")

        parts = ip.split('.')
        if len(parts) != 4:
            raise ValueError(f"Invalid IP address format: {ip}")

        for part in parts:
            if not part.isdigit() or not 0 <= int(part) <= 255:
                raise ValueError(f"Invalid IP address: {ip}")

    @staticmethod
    def _validate_port(port: int) -> None:
        """
        Validate port number.

        Raises:
            ValueError: If port is invalid
        """
        if isinstance(port, bool) or not isinstance(port, int):
            raise ValueError(f"Port must be an integer, got {type(port)}")

        if port < 1 or port > 65535:
            raise ValueError(f"Port must be 1-65535, got {port}")
