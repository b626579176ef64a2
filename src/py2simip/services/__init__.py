"""
Services for py2simip.

This package contains the connection state machine, the status poller, the
measurement session and the DeviceClient facade that composes them.
"""

from .wifi import WifiAssociator, WifiHandle, PresetNetworkAssociator
from .measurement_service import MeasurementSession, SessionState
from .status_service import StatusPoller
from .connection_service import ConnectionStateMachine
from .device_client import DeviceClient

__all__ = [
    'WifiAssociator',
    'WifiHandle',
    'PresetNetworkAssociator',
    'MeasurementSession',
    'SessionState',
    'StatusPoller',
    'ConnectionStateMachine',
    'DeviceClient',
]
