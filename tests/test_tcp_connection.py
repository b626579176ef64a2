"""
Unit tests for TCP connection management.

Tests the TCPConnection class for socket management, line framing and
failure handling against a loopback mock instrument.
"""

import socket
import threading
import time
import unittest
from unittest import mock

from py2simip.core.errors import TransportError, ErrorCodes
from py2simip.core.tcp_connection import TCPConnection
from py2simip.models.connection import ConnectionConfig

from mock_simip_server import MockSimipServer
from test_utils import wait_until


class TestTCPConnectionBasic(unittest.TestCase):
    """Test basic TCPConnection functionality."""

    def setUp(self):
        """Set up test fixtures."""
        self.connection = TCPConnection()

    def test_init_creates_disconnected_connection(self):
        """Test that new connection starts disconnected."""
        self.assertFalse(self.connection.is_connected())

    def test_get_connection_info_when_disconnected(self):
        """Test that connection info is None when never connected."""
        ip, port = self.connection.get_connection_info()
        self.assertIsNone(ip)
        self.assertIsNone(port)

    def test_default_config(self):
        """Test that the default target is the instrument access point."""
        self.assertEqual(self.connection.config.host, "192.168.4.1")
        self.assertEqual(self.connection.config.port, 8888)

    def test_close_when_not_connected_is_safe(self):
        """Test that close can be called any number of times."""
        self.connection.close()
        self.connection.close()
        self.assertFalse(self.connection.is_connected())

    def test_send_when_not_connected_raises(self):
        """Test that sending without a connection is a TransportError."""
        with self.assertRaises(TransportError):
            self.connection.send_line("Vers")

    def test_receive_when_not_connected_raises(self):
        """Test that receiving without a connection is a TransportError."""
        with self.assertRaises(TransportError):
            self.connection.receive_line(0.1)


class TestTCPConnectionValidation(unittest.TestCase):
    """Test input validation."""

    def setUp(self):
        """Set up test fixtures."""
        self.connection = TCPConnection()

    def test_connect_validates_ip_format(self):
        """Test that invalid IP address raises ValueError."""
        invalid_ips = [
            "invalid",
            "999.999.999.999",
            "10.0.0",
            "10.0.0.0.0",
            "",
            "10.0.0.256"
        ]

        for invalid_ip in invalid_ips:
            with self.assertRaises(ValueError):
                self.connection.connect(invalid_ip, 8888)

    def test_connect_validates_port_range(self):
        """Test that invalid port raises ValueError."""
        for invalid_port in [0, -1, 65536, 70000]:
            with self.assertRaises(ValueError):
                self.connection.connect("127.0.0.1", invalid_port)

    def test_connect_validates_port_type(self):
        """Test that non-integer port raises ValueError."""
        with self.assertRaises(ValueError):
            self.connection.connect("127.0.0.1", "8888")


class TestTCPConnectionWithServer(unittest.TestCase):
    """Test line I/O against the mock instrument."""

    def setUp(self):
        """Start a mock server and connect to it."""
        self.server = MockSimipServer(noise_prefix="")
        self.server.start()
        self.connection = TCPConnection(ConnectionConfig(host="127.0.0.1", port=self.server.port))
        self.connection.connect(timeout=2.0)

    def tearDown(self):
        """Close the connection and stop the server."""
        self.connection.close()
        self.server.stop()

    def test_connect_uses_config_defaults(self):
        """Test that connect() without arguments uses the config."""
        self.assertTrue(self.connection.is_connected())
        self.assertEqual(self.connection.get_connection_info(), ("127.0.0.1", self.server.port))

    def test_send_appends_terminator(self):
        """Test that the server sees one framed command."""
        self.connection.send_line("Vers")
        self.assertTrue(wait_until(lambda: self.server.commands() == ["Vers"]))

    def test_receive_line_strips_terminator(self):
        """Test a full request and reply."""
        self.connection.send_line("Vers")
        self.assertEqual(self.connection.receive_line(2.0), "Ver1.4")

    def test_receive_timeout_returns_none(self):
        """Test that a silent peer is a timeout, not an error."""
        start = time.monotonic()
        self.assertIsNone(self.connection.receive_line(0.2))
        self.assertGreaterEqual(time.monotonic() - start, 0.15)
        self.assertTrue(self.connection.is_connected())

    def test_multiple_lines_in_one_chunk(self):
        """Test that buffered lines are returned one per call."""
        self.connection.send_line("Gets")
        self.connection.send_line("Vers")
        first = self.connection.receive_line(2.0)
        second = self.connection.receive_line(2.0)
        self.assertTrue(first.startswith("State,"))
        self.assertEqual(second, "Ver1.4")

    def test_peer_close_invalidates_transport(self):
        """Test that EOF raises TransportError and disconnects."""
        self.assertTrue(wait_until(lambda: len(self.server.clients) == 1))
        self.server.drop_clients()
        with self.assertRaises(TransportError) as ctx:
            self.connection.receive_line(2.0)
        self.assertEqual(ctx.exception.error_code, ErrorCodes.CONNECTION_LOST)
        self.assertFalse(self.connection.is_connected())
        with self.assertRaises(TransportError):
            self.connection.send_line("Vers")

    def test_instance_is_single_use(self):
        """Test that a closed transport cannot reconnect."""
        self.connection.close()
        with self.assertRaises(TransportError):
            self.connection.connect(timeout=1.0)

    def test_close_unblocks_pending_read(self):
        """Test that close() from another thread ends a blocked read."""
        outcome = {}

        def reader():
            try:
                outcome['line'] = self.connection.receive_line(5.0)
            except TransportError as e:
                outcome['error'] = e

        thread = threading.Thread(target=reader)
        start = time.monotonic()
        thread.start()
        time.sleep(0.1)
        self.connection.close()
        thread.join(timeout=2.0)

        self.assertFalse(thread.is_alive())
        self.assertLess(time.monotonic() - start, 2.0)
        self.assertIn('error', outcome)


class TestTCPConnectionNoise(unittest.TestCase):
    """Test line splitting with noisy peers."""

    def test_cr_and_lf_both_split_lines(self):
        """Test that CR, LF and blank lines are handled."""
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]

        connection = TCPConnection()
        connection.connect("127.0.0.1", port, timeout=2.0)
        peer, _ = listener.accept()
        try:
            peer.sendall(b"\r\n\r\nResStar\r\nBussyMS00\rVer1.4\n")
            self.assertEqual(connection.receive_line(1.0), "ResStar")
            self.assertEqual(connection.receive_line(1.0), "BussyMS00")
            self.assertEqual(connection.receive_line(1.0), "Ver1.4")
        finally:
            connection.close()
            peer.close()
            listener.close()

    def test_invalid_utf8_is_replaced(self):
        """Test that undecodable bytes do not raise."""
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]

        connection = TCPConnection()
        connection.connect("127.0.0.1", port, timeout=2.0)
        peer, _ = listener.accept()
        try:
            peer.sendall(b"\xff\xfeResStar\r\n")
            line = connection.receive_line(1.0)
            self.assertTrue(line.endswith("ResStar"))
        finally:
            connection.close()
            peer.close()
            listener.close()


class TestTCPConnectionIOErrors(unittest.TestCase):
    """Test socket errors raised during line I/O."""

    def setUp(self):
        """Connect to a mock server and substitute a failing socket."""
        self.server = MockSimipServer(noise_prefix="")
        self.server.start()
        self.connection = TCPConnection(ConnectionConfig(host="127.0.0.1", port=self.server.port))
        self.connection.connect(timeout=2.0)
        self.sock = mock.Mock()

    def tearDown(self):
        """Close the connection and stop the server."""
        self.connection.close()
        self.server.stop()

    def test_send_error_reports_connection_lost(self):
        """Test that a failed send is reported as a lost connection."""
        self.sock.sendall.side_effect = BrokenPipeError("broken pipe")
        with mock.patch.object(self.connection, '_current_socket', return_value=self.sock):
            with self.assertRaises(TransportError) as ctx:
                self.connection.send_line("Gets")

        self.assertEqual(ctx.exception.error_code, ErrorCodes.CONNECTION_LOST)
        self.assertIsInstance(ctx.exception.cause, BrokenPipeError)
        self.assertFalse(self.connection.is_connected())

    def test_receive_error_reports_connection_lost(self):
        """Test that a failed receive is reported as a lost connection."""
        self.sock.recv.side_effect = ConnectionResetError("reset by peer")
        with mock.patch.object(self.connection, '_current_socket', return_value=self.sock):
            with self.assertRaises(TransportError) as ctx:
                self.connection.receive_line(1.0)

        self.assertEqual(ctx.exception.error_code, ErrorCodes.CONNECTION_LOST)
        self.assertIsInstance(ctx.exception.cause, ConnectionResetError)
        self.assertFalse(self.connection.is_connected())


class TestTCPConnectionFailures(unittest.TestCase):
    """Test connect failures."""

    def test_connection_refused(self):
        """Test that a closed port raises TransportError."""
        spare = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        spare.bind(("127.0.0.1", 0))
        port = spare.getsockname()[1]
        spare.close()

        connection = TCPConnection()
        with self.assertRaises(TransportError) as ctx:
            connection.connect("127.0.0.1", port, timeout=1.0)
        self.assertEqual(ctx.exception.error_code, ErrorCodes.CONNECTION_REFUSED)
        self.assertFalse(connection.is_connected())


if __name__ == '__main__':
    unittest.main()
