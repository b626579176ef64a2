"""
Engine settings for the SIMIP device client.

Settings are a frozen dataclass so that every component sees one consistent
set of timeouts and limits for the lifetime of a client. They can be loaded
from and saved to YAML:

    ssid_pattern: kia
    poll_interval: 2.0
    connection:
      host: 192.168.4.1
      port: 8888
"""

import logging
from dataclasses import dataclass, field, fields, asdict, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from py2simip.core.errors import ConfigurationError, ErrorCodes
from py2simip.models.connection import ConnectionConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineSettings:
    """
    Timeouts, retry counts and limits used by the engine.

    Attributes:
        connection: Host, port and socket timeouts
        ssid_pattern: Case-insensitive substring identifying the instrument's SSID
        max_connection_retries: Wi-Fi and handshake attempts before giving up
        retry_delay: Seconds between Wi-Fi/handshake attempts
        poll_interval: Seconds between ``Gets`` polls while idle
        max_poll_failures: Consecutive poll failures that force DEVICE_ERROR
        exchange_timeout: Overall timeout of one request/response exchange
        data_request_interval: Seconds between ``Data`` requests while measuring
        listen_timeout: Per-read timeout of the background listener
        busy_backoff: Pause when the poller finds the socket owned by an exchange
        min_current_ma: Lowest accepted injection current
        max_current_ma: Highest accepted injection current
    """

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    ssid_pattern: str = "kia"
    max_connection_retries: int = 10
    retry_delay: float = 2.0
    poll_interval: float = 2.0
    max_poll_failures: int = 10
    exchange_timeout: float = 2.0
    data_request_interval: float = 5.0
    listen_timeout: float = 0.05
    busy_backoff: float = 0.05
    min_current_ma: int = 80
    max_current_ma: int = 800

    def validate(self) -> Tuple[bool, List[str]]:
        """
        Validate the settings.

        Returns:
            Tuple of (is_valid, list_of_error_messages)
        """
        valid, errors = self.connection.validate()
        errors = list(errors)

        if not isinstance(self.ssid_pattern, str) or not self.ssid_pattern:
            errors.append("ssid_pattern must be a non-empty string")

        for name in ('max_connection_retries', 'max_poll_failures'):
            value = getattr(self, name)
            if value < 1:
                errors.append(f"{name} must be at least 1: {value}")

        for name in ('poll_interval', 'exchange_timeout', 'data_request_interval',
                     'listen_timeout', 'busy_backoff'):
            value = getattr(self, name)
            if value <= 0:
                errors.append(f"{name} must be positive: {value}")

        if self.retry_delay < 0:
            errors.append(f"retry_delay must not be negative: {self.retry_delay}")

        if not (0 < self.min_current_ma <= self.max_current_ma <= 999):
            errors.append(
                f"Current limits must satisfy 0 < min <= max <= 999: "
                f"{self.min_current_ma}-{self.max_current_ma}"
            )

        return (len(errors) == 0, errors)

    def with_connection(self, **changes) -> 'EngineSettings':
        """Copy with some connection fields replaced (e.g. ``host=...``)."""
        return replace(self, connection=replace(self.connection, **changes))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the nested dictionary shape used in YAML files."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'EngineSettings':
        """
        Build settings from a (possibly partial) dictionary.

        Raises:
            ConfigurationError: On unknown keys, wrong types or invalid values
        """
        data = dict(data or {})
        connection_data = data.pop('connection', None) or {}
        if not isinstance(connection_data, dict):
            raise ConfigurationError(
                "'connection' must be a mapping",
                setting_name='connection',
                error_code=ErrorCodes.CONFIG_INVALID
            )

        connection = ConnectionConfig(**_coerce(ConnectionConfig, connection_data, 'connection.'))
        settings = cls(connection=connection, **_coerce(cls, data, ''))

        valid, errors = settings.validate()
        if not valid:
            raise ConfigurationError(
                "Invalid settings: " + "; ".join(errors),
                error_code=ErrorCodes.CONFIG_INVALID,
                context={'errors': errors}
            )
        return settings


def _coerce(cls, data: Dict[str, Any], prefix: str) -> Dict[str, Any]:
    """Check keys and types of ``data`` against the dataclass fields of ``cls``."""
    known = {f.name: f for f in fields(cls) if f.name != 'connection'}
    defaults = cls()
    result = {}
    for key, value in data.items():
        if key not in known:
            raise ConfigurationError(
                f"Unknown setting '{prefix}{key}'",
                setting_name=f"{prefix}{key}",
                error_code=ErrorCodes.CONFIG_INVALID,
                suggestions=[f"Valid settings: {', '.join(sorted(known))}"]
            )
        expected = type(getattr(defaults, key))
        if isinstance(value, bool) or not _type_ok(value, expected):
            raise ConfigurationError(
                f"Setting '{prefix}{key}' must be {expected.__name__}, got {value!r}",
                setting_name=f"{prefix}{key}",
                error_code=ErrorCodes.CONFIG_INVALID
            )
        result[key] = float(value) if expected is float else value
    return result


def _type_ok(value: Any, expected: type) -> bool:
    if expected is float:
        return isinstance(value, (int, float))
    return isinstance(value, expected)


def load_settings(path: Optional[Union[str, Path]] = None) -> EngineSettings:
    """
    Load settings from a YAML file.

    Args:
        path: YAML file. None returns the defaults.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    if path is None:
        return EngineSettings()

    path = Path(path)
    if not path.exists():
        raise ConfigurationError(
            f"Settings file not found: {path}",
            setting_name=str(path),
            error_code=ErrorCodes.CONFIG_NOT_FOUND
        )

    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Could not read settings file {path}: {e}",
            setting_name=str(path),
            error_code=ErrorCodes.CONFIG_INVALID,
            cause=e
        )

    if data is not None and not isinstance(data, dict):
        raise ConfigurationError(
            f"Settings file {path} must contain a mapping",
            setting_name=str(path),
            error_code=ErrorCodes.CONFIG_INVALID
        )

    settings = EngineSettings.from_dict(data)
    logger.info(f"Loaded settings from {path}")
    return settings


def dump_settings(settings: EngineSettings, path: Optional[Union[str, Path]] = None) -> str:
    """
    Serialize settings as YAML, optionally writing them to ``path``.

    Returns:
        The YAML text
    """
    text = yaml.dump(settings.to_dict(), default_flow_style=False, sort_keys=False)
    if path is not None:
        with open(path, 'w') as f:
            f.write(text)
        logger.info(f"Saved settings to {path}")
    return text
