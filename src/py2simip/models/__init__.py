"""
Data models for py2simip.

This package contains the connection, telemetry and measurement data
structures and the observable streams that publish them.
"""

from .connection import (
    ConnectionConfig,
    ConnectionState,
    ConnectionStatus
)

from .measurement import (
    DeviceStatus,
    DISCONNECTED_STATUS,
    MeasurementConfig,
    MeasurementProgress,
    MeasurementResult,
    progress_percent
)

from .observable import (
    ObservableValue,
    EventStream
)

from .settings import (
    EngineSettings,
    load_settings,
    dump_settings
)

__all__ = [
    'ConnectionConfig',
    'ConnectionState',
    'ConnectionStatus',
    'DeviceStatus',
    'DISCONNECTED_STATUS',
    'MeasurementConfig',
    'MeasurementProgress',
    'MeasurementResult',
    'progress_percent',
    'ObservableValue',
    'EventStream',
    'EngineSettings',
    'load_settings',
    'dump_settings',
]
