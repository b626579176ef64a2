"""
Core layer for SIMIP instrument communication.

This package contains the line protocol, the TCP transport, the response
parser and the exchange coordinator that serializes socket access.
"""

from .errors import (
    SimipError,
    TransportError,
    HandshakeError,
    ProtocolParseError,
    ProtocolMismatchError,
    ExchangeTimeout,
    ExchangeBusy,
    PollFailure,
    SessionStateError,
    MeasurementAbort,
    ConfigurationError,
    ValidationError,
    ErrorCodes,
)
from .line_protocol import Commands, Keywords, COMMAND_TERMINATOR

__all__ = [
    'SimipError',
    'TransportError',
    'HandshakeError',
    'ProtocolParseError',
    'ProtocolMismatchError',
    'ExchangeTimeout',
    'ExchangeBusy',
    'PollFailure',
    'SessionStateError',
    'MeasurementAbort',
    'ConfigurationError',
    'ValidationError',
    'ErrorCodes',
    'Commands',
    'Keywords',
    'COMMAND_TERMINATOR',
]
