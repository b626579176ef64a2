"""
Tests for engine settings and their YAML persistence.
"""

import tempfile
import unittest
from pathlib import Path

import yaml

from py2simip.core.errors import ConfigurationError, ErrorCodes
from py2simip.models.settings import EngineSettings, load_settings, dump_settings


class TestEngineSettings(unittest.TestCase):
    """Test EngineSettings defaults and validation."""

    def test_defaults(self):
        """Test the documented defaults."""
        settings = EngineSettings()
        self.assertEqual(settings.ssid_pattern, "kia")
        self.assertEqual(settings.max_connection_retries, 10)
        self.assertEqual(settings.retry_delay, 2.0)
        self.assertEqual(settings.poll_interval, 2.0)
        self.assertEqual(settings.max_poll_failures, 10)
        self.assertEqual(settings.exchange_timeout, 2.0)
        self.assertEqual(settings.connection.port, 8888)
        self.assertTrue(settings.validate()[0])

    def test_invalid_values_reported(self):
        """Test that validate() lists every problem."""
        settings = EngineSettings(ssid_pattern="", poll_interval=0, max_poll_failures=0,
                                  min_current_ma=900, max_current_ma=800)
        valid, errors = settings.validate()
        self.assertFalse(valid)
        self.assertEqual(len(errors), 4)

    def test_with_connection(self):
        """Test copying with a different host."""
        settings = EngineSettings().with_connection(host="10.0.0.5")
        self.assertEqual(settings.connection.host, "10.0.0.5")
        self.assertEqual(settings.connection.port, 8888)


class TestFromDict(unittest.TestCase):
    """Test building settings from plain data."""

    def test_partial_dict(self):
        """Test that missing keys keep their defaults."""
        settings = EngineSettings.from_dict({'poll_interval': 1, 'connection': {'port': 9000}})
        self.assertEqual(settings.poll_interval, 1.0)
        self.assertIsInstance(settings.poll_interval, float)
        self.assertEqual(settings.connection.port, 9000)
        self.assertEqual(settings.connection.host, "192.168.4.1")

    def test_empty_dict(self):
        """Test that None and {} give the defaults."""
        self.assertEqual(EngineSettings.from_dict(None), EngineSettings())
        self.assertEqual(EngineSettings.from_dict({}), EngineSettings())

    def test_unknown_key(self):
        """Test that typos are reported, not ignored."""
        with self.assertRaises(ConfigurationError) as ctx:
            EngineSettings.from_dict({'pol_interval': 1.0})
        self.assertEqual(ctx.exception.context['setting'], 'pol_interval')

    def test_unknown_connection_key(self):
        """Test that nested typos are reported with their prefix."""
        with self.assertRaises(ConfigurationError) as ctx:
            EngineSettings.from_dict({'connection': {'hostname': 'x'}})
        self.assertEqual(ctx.exception.context['setting'], 'connection.hostname')

    def test_wrong_types(self):
        """Test that wrong value types are rejected."""
        for data in [{'max_poll_failures': 2.5}, {'poll_interval': "fast"},
                     {'max_connection_retries': True}, {'connection': {'port': "8888"}},
                     {'connection': "192.168.4.1"}]:
            with self.subTest(data=data):
                with self.assertRaises(ConfigurationError):
                    EngineSettings.from_dict(data)

    def test_invalid_values(self):
        """Test that out-of-range values are rejected."""
        with self.assertRaises(ConfigurationError) as ctx:
            EngineSettings.from_dict({'connection': {'host': 'not-an-ip'}})
        self.assertEqual(ctx.exception.error_code, ErrorCodes.CONFIG_INVALID)


class TestYamlPersistence(unittest.TestCase):
    """Test load_settings and dump_settings."""

    def setUp(self):
        """Create a temporary directory."""
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)

    def tearDown(self):
        """Remove the temporary directory."""
        self.tmp.cleanup()

    def test_round_trip(self):
        """Test that dumped settings load back identically."""
        settings = EngineSettings(ssid_pattern="simip", poll_interval=0.5).with_connection(port=9999)
        path = self.dir / "settings.yaml"
        text = dump_settings(settings, path)

        self.assertIn("ssid_pattern: simip", text)
        self.assertEqual(load_settings(path), settings)

    def test_load_none_gives_defaults(self):
        """Test that no path means defaults."""
        self.assertEqual(load_settings(None), EngineSettings())

    def test_missing_file(self):
        """Test that a missing file is a ConfigurationError."""
        with self.assertRaises(ConfigurationError) as ctx:
            load_settings(self.dir / "missing.yaml")
        self.assertEqual(ctx.exception.error_code, ErrorCodes.CONFIG_NOT_FOUND)

    def test_empty_file(self):
        """Test that an empty file gives defaults."""
        path = self.dir / "empty.yaml"
        path.write_text("")
        self.assertEqual(load_settings(path), EngineSettings())

    def test_non_mapping_file(self):
        """Test that a YAML list is rejected."""
        path = self.dir / "list.yaml"
        path.write_text(yaml.dump([1, 2, 3]))
        with self.assertRaises(ConfigurationError):
            load_settings(path)

    def test_malformed_yaml(self):
        """Test that a YAML syntax error is wrapped."""
        path = self.dir / "bad.yaml"
        path.write_text("connection: [unclosed\n")
        with self.assertRaises(ConfigurationError) as ctx:
            load_settings(path)
        self.assertIsNotNone(ctx.exception.cause)


if __name__ == '__main__':
    unittest.main()
