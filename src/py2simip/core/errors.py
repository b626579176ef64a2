"""
Unified error handling framework for the SIMIP device engine.

This module defines the error hierarchy shared by the transport, the
line-protocol parser, the exchange coordinator and the connection and
measurement services.

Error Code Ranges:
- 1000-1999: Connection / transport errors
- 2000-2999: Protocol errors
- 5000-5999: Measurement / state errors
- 6000-6999: Configuration errors
- 7000-7999: Validation errors
- 8000-8999: Timeout errors
- 9000-9999: Unknown/System errors
"""

from typing import Optional, Dict, Any, List
from datetime import datetime
import traceback


class SimipError(Exception):
    """
    Base exception for all engine-specific errors.

    Provides structured error information with context tracking.
    """

    DEFAULT_CODE = 9000
    CATEGORY = 'SYSTEM'

    def __init__(
        self,
        message: str,
        error_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """
        Initialize an engine error.

        Args:
            message: Human-readable error description
            error_code: Numeric error code for categorization
            context: Additional context information (WHERE)
            cause: Original exception if this wraps another error
            suggestions: List of possible solutions or next steps
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.DEFAULT_CODE
        self.context = dict(context) if context else {}
        self.context.setdefault('category', self.CATEGORY)
        self.cause = cause
        self.suggestions = suggestions or []
        self.timestamp = datetime.now()

        self.stack_trace = traceback.format_exc() if cause else None

        if cause:
            self.context['original_error'] = str(cause)
            self.context['original_type'] = type(cause).__name__

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            'error_type': self.__class__.__name__,
            'message': self.message,
            'code': self.error_code,
            'context': self.context,
            'suggestions': self.suggestions,
            'timestamp': self.timestamp.isoformat(),
            'cause': str(self.cause) if self.cause else None,
        }

    def format_user_message(self) -> str:
        """Format error for user display (without technical details)."""
        msg = f"{self.message}"
        if self.suggestions:
            msg += "\n\nSuggestions:"
            for i, suggestion in enumerate(self.suggestions, 1):
                msg += f"\n  {i}. {suggestion}"
        return msg

    def format_log_message(self) -> str:
        """Format error for logging (with all details)."""
        parts = [
            f"[{self.error_code}] {self.__class__.__name__}: {self.message}"
        ]

        if self.context:
            parts.append(f"Context: {self.context}")

        if self.cause:
            parts.append(f"Caused by: {self.cause}")

        return " | ".join(parts)


class TransportError(SimipError):
    """Socket connect, send or receive failure. The transport is unusable afterwards."""
    DEFAULT_CODE = 1001
    CATEGORY = 'CONNECTION'

    def __init__(self, message: str, host: Optional[str] = None,
                 port: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        if host is not None:
            self.context['host'] = host
        if port is not None:
            self.context['port'] = port


class HandshakeError(SimipError):
    """The peer did not answer ``Vers`` with a valid ``Ver<x.y>`` line."""
    DEFAULT_CODE = 1010
    CATEGORY = 'CONNECTION'


class ProtocolParseError(SimipError):
    """A line carrying a required message could not be decoded."""
    DEFAULT_CODE = 2005
    CATEGORY = 'PROTOCOL'

    def __init__(self, message: str, raw_line: Optional[str] = None,
                 keyword: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.raw_line = raw_line
        self.keyword = keyword
        if raw_line is not None:
            self.context['raw_line'] = raw_line
        if keyword is not None:
            self.context['keyword'] = keyword


class ProtocolMismatchError(SimipError):
    """An acknowledgement arrived but its echoed values differ from the request."""
    DEFAULT_CODE = 2006
    CATEGORY = 'PROTOCOL'

    def __init__(self, message: str, command: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if command is not None:
            self.context['command'] = command


class ExchangeTimeout(SimipError):
    """No matching reply arrived within the overall exchange timeout."""
    DEFAULT_CODE = 8002
    CATEGORY = 'TIMEOUT'

    def __init__(self, message: str, command: Optional[str] = None,
                 timeout_seconds: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        if command is not None:
            self.context['command'] = command
        if timeout_seconds is not None:
            self.context['timeout_seconds'] = timeout_seconds


class ExchangeBusy(SimipError):
    """Socket ownership is held by another exchange."""
    DEFAULT_CODE = 5002
    CATEGORY = 'STATE'


class PollFailure(SimipError):
    """Too many consecutive ``Gets`` polls failed."""
    DEFAULT_CODE = 5003
    CATEGORY = 'STATE'

    def __init__(self, message: str, failures: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        if failures is not None:
            self.context['consecutive_failures'] = failures


class SessionStateError(SimipError):
    """Operation not allowed in the current connection or session state."""
    DEFAULT_CODE = 5004
    CATEGORY = 'STATE'


class MeasurementAbort(SimipError):
    """A running measurement was cut short by a disconnect or teardown."""
    DEFAULT_CODE = 5005
    CATEGORY = 'MEASUREMENT'


class ConfigurationError(SimipError):
    """Invalid or unreadable engine configuration."""
    DEFAULT_CODE = 6001
    CATEGORY = 'CONFIGURATION'

    def __init__(self, message: str, setting_name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if setting_name:
            self.context['setting'] = setting_name


class ValidationError(SimipError):
    """Invalid caller-supplied parameter."""
    DEFAULT_CODE = 7001
    CATEGORY = 'VALIDATION'

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if field_name:
            self.context['field'] = field_name


class ErrorCodes:
    """Standard error codes for common error scenarios."""

    # Connection errors (1000-1999)
    CONNECTION_REFUSED = 1001
    CONNECTION_TIMEOUT = 1002
    CONNECTION_LOST = 1003
    SOCKET_ERROR = 1004
    WIFI_UNAVAILABLE = 1005
    HANDSHAKE_FAILED = 1010

    # Protocol errors (2000-2999)
    RESPONSE_PARSE_ERROR = 2005
    ACK_MISMATCH = 2006

    # State errors (5000-5999)
    NOT_CONNECTED = 5001
    EXCHANGE_BUSY = 5002
    POLL_FAILURE = 5003
    NOT_CONFIGURED = 5004
    MEASUREMENT_ABORTED = 5005

    # Configuration errors (6000-6999)
    CONFIG_NOT_FOUND = 6001
    CONFIG_INVALID = 6002

    # Validation errors (7000-7999)
    INVALID_PARAMETER = 7001
    OUT_OF_RANGE = 7002

    # Timeout errors (8000-8999)
    RESPONSE_TIMEOUT = 8002

    UNKNOWN_ERROR = 9000


def wrap_external_error(e: Exception, message: str, error_class=TransportError,
                        error_code: Optional[int] = None, **context) -> SimipError:
    """
    Wrap an external exception (usually an ``OSError``) in a SimipError.

    Args:
        e: The original exception
        message: Context-specific error message
        error_class: The SimipError subclass to use
        error_code: Code to report (defaults to the class default)
        **context: Additional context information

    Returns:
        A SimipError instance wrapping the original exception
    """
    return error_class(
        message=message,
        error_code=error_code,
        cause=e,
        context=context
    )
