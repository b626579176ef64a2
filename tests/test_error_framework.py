"""
Tests for the unified error handling framework.

Verifies the error classes, their context and formatting, and the retry
helper used at the connection boundary.
"""

import threading
import time
import unittest

from py2simip.core.errors import (
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
    wrap_external_error
)
from py2simip.core.retry import RetryCancelled, RetryPolicy


class TestSimipError(unittest.TestCase):
    """Test the base SimipError class."""

    def test_basic_error_creation(self):
        """Test creating a basic error."""
        error = SimipError(
            message="Test error",
            error_code=1001,
            context={'location': 'test'},
            suggestions=["Try again", "Check settings"]
        )

        self.assertEqual(error.message, "Test error")
        self.assertEqual(error.error_code, 1001)
        self.assertEqual(error.context['location'], 'test')
        self.assertEqual(error.context['category'], 'SYSTEM')
        self.assertEqual(len(error.suggestions), 2)
        self.assertIsNotNone(error.timestamp)

    def test_error_with_cause(self):
        """Test wrapping another exception."""
        original = ValueError("Original error")
        error = SimipError(message="Wrapped error", cause=original)

        self.assertIs(error.cause, original)
        self.assertEqual(error.context['original_error'], "Original error")
        self.assertEqual(error.context['original_type'], "ValueError")

    def test_caller_context_not_mutated(self):
        """Test that the passed context dict is copied."""
        context = {'location': 'test'}
        SimipError("x", context=context)
        self.assertEqual(context, {'location': 'test'})

    def test_to_dict(self):
        """Test converting error to dictionary."""
        error = SimipError(message="Test error", error_code=1001, context={'test': True})

        error_dict = error.to_dict()
        self.assertEqual(error_dict['error_type'], "SimipError")
        self.assertEqual(error_dict['code'], 1001)
        self.assertEqual(error_dict['context']['test'], True)
        self.assertIn('timestamp', error_dict)
        self.assertIsNone(error_dict['cause'])

    def test_format_user_message(self):
        """Test formatting for user display."""
        error = SimipError(
            message="Connection failed",
            suggestions=["Check Wi-Fi", "Power cycle the instrument"]
        )

        user_msg = error.format_user_message()
        self.assertIn("Connection failed", user_msg)
        self.assertIn("1. Check Wi-Fi", user_msg)
        self.assertIn("2. Power cycle the instrument", user_msg)

    def test_format_log_message(self):
        """Test formatting for logs."""
        error = SimipError(
            message="Test error",
            error_code=1001,
            cause=OSError("reset")
        )

        log_msg = error.format_log_message()
        self.assertIn("[1001]", log_msg)
        self.assertIn("SimipError", log_msg)
        self.assertIn("Context:", log_msg)
        self.assertIn("Caused by: reset", log_msg)


class TestErrorSubclasses(unittest.TestCase):
    """Test specific error subclasses."""

    def test_default_codes_and_categories(self):
        """Test each subclass's default code and category."""
        cases = [
            (TransportError, 1001, 'CONNECTION'),
            (HandshakeError, 1010, 'CONNECTION'),
            (ProtocolParseError, 2005, 'PROTOCOL'),
            (ProtocolMismatchError, 2006, 'PROTOCOL'),
            (ExchangeBusy, 5002, 'STATE'),
            (PollFailure, 5003, 'STATE'),
            (SessionStateError, 5004, 'STATE'),
            (MeasurementAbort, 5005, 'MEASUREMENT'),
            (ConfigurationError, 6001, 'CONFIGURATION'),
            (ValidationError, 7001, 'VALIDATION'),
            (ExchangeTimeout, 8002, 'TIMEOUT'),
        ]
        for cls, code, category in cases:
            with self.subTest(cls=cls.__name__):
                error = cls("failure")
                self.assertIsInstance(error, SimipError)
                self.assertEqual(error.error_code, code)
                self.assertEqual(error.context['category'], category)

    def test_transport_error_endpoint(self):
        """Test TransportError with host and port."""
        error = TransportError("Refused", host="192.168.4.1", port=8888,
                               error_code=ErrorCodes.CONNECTION_REFUSED)
        self.assertEqual(error.context['host'], "192.168.4.1")
        self.assertEqual(error.context['port'], 8888)

    def test_parse_error_raw_line(self):
        """Test ProtocolParseError keeps the offending line."""
        error = ProtocolParseError("Bad", raw_line="ResConf,x", keyword="ResConf,")
        self.assertEqual(error.raw_line, "ResConf,x")
        self.assertEqual(error.context['keyword'], "ResConf,")

    def test_exchange_timeout_context(self):
        """Test ExchangeTimeout with command and duration."""
        error = ExchangeTimeout("Timed out", command="Gets", timeout_seconds=2.0)
        self.assertEqual(error.context['command'], "Gets")
        self.assertEqual(error.context['timeout_seconds'], 2.0)

    def test_poll_failure_count(self):
        """Test PollFailure records the failure count."""
        error = PollFailure("Too many", failures=10)
        self.assertEqual(error.context['consecutive_failures'], 10)

    def test_validation_error_field(self):
        """Test ValidationError with field name."""
        error = ValidationError("Invalid input", field_name="current_ma",
                                error_code=ErrorCodes.OUT_OF_RANGE)
        self.assertEqual(error.context['field'], "current_ma")


class TestWrapExternalError(unittest.TestCase):
    """Test wrapping external exceptions."""

    def test_wrap_defaults_to_transport_error(self):
        """Test wrapping an OSError."""
        original = ConnectionResetError("reset by peer")
        wrapped = wrap_external_error(original, "Receive failed", host="192.168.4.1")

        self.assertIsInstance(wrapped, TransportError)
        self.assertIs(wrapped.cause, original)
        self.assertEqual(wrapped.context['host'], "192.168.4.1")
        self.assertEqual(wrapped.context['original_type'], "ConnectionResetError")

    def test_wrap_with_error_code(self):
        """Test that an explicit code replaces the class default."""
        wrapped = wrap_external_error(BrokenPipeError(), "Send failed",
                                      error_code=ErrorCodes.CONNECTION_LOST)
        self.assertEqual(wrapped.error_code, ErrorCodes.CONNECTION_LOST)

        default = wrap_external_error(BrokenPipeError(), "Send failed")
        self.assertEqual(default.error_code, TransportError.DEFAULT_CODE)

    def test_wrap_with_other_class(self):
        """Test wrapping into a chosen error class."""
        wrapped = wrap_external_error(ValueError("bad"), "Bad value", ValidationError)
        self.assertIsInstance(wrapped, ValidationError)


class TestRetryPolicy(unittest.TestCase):
    """Test the bounded retry helper."""

    def test_returns_first_success(self):
        """Test that retries stop at the first success."""
        attempts = []

        def flaky(attempt):
            attempts.append(attempt)
            if attempt < 3:
                raise TimeoutError("not yet")
            return "ok"

        result = RetryPolicy(max_attempts=5, delay=0, retry_on=(TimeoutError,)).run(flaky)
        self.assertEqual(result, "ok")
        self.assertEqual(attempts, [1, 2, 3])

    def test_last_error_after_exhaustion(self):
        """Test that the last error propagates once attempts run out."""
        attempts = []

        def failing(attempt):
            attempts.append(attempt)
            raise TimeoutError(f"attempt {attempt}")

        with self.assertRaises(TimeoutError) as ctx:
            RetryPolicy(max_attempts=3, delay=0, retry_on=(TimeoutError,)).run(failing)
        self.assertEqual(str(ctx.exception), "attempt 3")
        self.assertEqual(attempts, [1, 2, 3])

    def test_other_errors_not_retried(self):
        """Test that errors outside retry_on propagate immediately."""
        attempts = []

        def broken(attempt):
            attempts.append(attempt)
            raise KeyError("bug")

        with self.assertRaises(KeyError):
            RetryPolicy(max_attempts=3, delay=0, retry_on=(TimeoutError,)).run(broken)
        self.assertEqual(attempts, [1])

    def test_delay_between_attempts(self):
        """Test that attempts are spaced by the delay."""
        def failing(attempt):
            raise TimeoutError()

        start = time.monotonic()
        with self.assertRaises(TimeoutError):
            RetryPolicy(max_attempts=3, delay=0.05, retry_on=(TimeoutError,)).run(failing)
        self.assertGreaterEqual(time.monotonic() - start, 0.1)

    def test_cancel_during_delay(self):
        """Test that setting the cancel event ends the wait."""
        cancel = threading.Event()

        def failing(attempt):
            cancel.set()
            raise TimeoutError()

        start = time.monotonic()
        with self.assertRaises(RetryCancelled):
            RetryPolicy(max_attempts=3, delay=5.0, retry_on=(TimeoutError,)).run(failing, cancel)
        self.assertLess(time.monotonic() - start, 1.0)

    def test_cancelled_before_first_attempt(self):
        """Test that a pre-set cancel event runs nothing."""
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(RetryCancelled):
            RetryPolicy(max_attempts=3, delay=0).run(lambda attempt: "ok", cancel)


if __name__ == '__main__':
    unittest.main()
