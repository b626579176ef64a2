"""
Connection models for the SIMIP device engine.

Classes:
    ConnectionConfig: Immutable host/port/timeout configuration
    ConnectionState: Enumeration of connection lifecycle states
    ConnectionStatus: Current state plus the error that caused it, if any
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from py2simip.core.line_protocol import DEFAULT_HOST, DEFAULT_PORT


# IP address validation pattern (IPv4)
_IPV4_PATTERN = re.compile(
    r'^(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}'
    r'(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)$'
)


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Immutable configuration for the device TCP link.

    Attributes:
        host: IPv4 address of the instrument access point
        port: Line-protocol port
        connect_timeout: TCP connect timeout in seconds
        read_timeout: Per-line read timeout in seconds (also one handshake attempt)

    Example:
        >>> config = ConnectionConfig()
        >>> config.host, config.port
        ('192.168.4.1', 8888)
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    connect_timeout: float = 5.0
    read_timeout: float = 2.0

    def validate(self) -> Tuple[bool, List[str]]:
        """
        Validate the connection configuration.

        Returns:
            Tuple of (is_valid, list_of_error_messages)
        """
        errors = []

        if not isinstance(self.host, str) or not _IPV4_PATTERN.match(self.host):
            errors.append(f"Invalid IP address format: {self.host}")

        if isinstance(self.port, bool) or not isinstance(self.port, int) \
                or not (1 <= self.port <= 65535):
            errors.append(f"Port out of range (1-65535): {self.port}")

        if self.connect_timeout <= 0:
            errors.append(f"Connect timeout must be positive: {self.connect_timeout}")

        if self.read_timeout <= 0:
            errors.append(f"Read timeout must be positive: {self.read_timeout}")

        return (len(errors) == 0, errors)


class ConnectionState(Enum):
    """
    Connection lifecycle states, in the order a successful connect visits them.

    CONNECTION_ERROR is reached from any stage before CONNECTED;
    DEVICE_ERROR is reached from CONNECTED when polling or I/O fails.
    """

    DISCONNECTED = "disconnected"
    SEARCHING_WIFI = "searching_wifi"
    CONNECTING_WIFI = "connecting_wifi"
    WIFI_CONNECTED = "wifi_connected"
    CONNECTING_TCP = "connecting_tcp"
    VERIFYING_DEVICE = "verifying_device"
    CONNECTED = "connected"
    CONNECTION_ERROR = "connection_error"
    DEVICE_ERROR = "device_error"

    @property
    def is_error(self) -> bool:
        return self in (ConnectionState.CONNECTION_ERROR, ConnectionState.DEVICE_ERROR)

    @property
    def is_in_progress(self) -> bool:
        """True while a connect attempt is between DISCONNECTED and CONNECTED."""
        return self in _IN_PROGRESS_STATES


_IN_PROGRESS_STATES = frozenset({
    ConnectionState.SEARCHING_WIFI,
    ConnectionState.CONNECTING_WIFI,
    ConnectionState.WIFI_CONNECTED,
    ConnectionState.CONNECTING_TCP,
    ConnectionState.VERIFYING_DEVICE,
})


@dataclass(frozen=True)
class ConnectionStatus:
    """
    Current status of the connection.

    Attributes:
        state: Current connection state
        cause: Error that produced CONNECTION_ERROR or DEVICE_ERROR, None otherwise
        changed_at: When this status was published
    """

    state: ConnectionState
    cause: Optional[Exception] = None
    changed_at: datetime = field(default_factory=datetime.now, compare=False)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def describe(self) -> str:
        if self.cause is not None:
            return f"{self.state.value}: {self.cause}"
        return self.state.value
