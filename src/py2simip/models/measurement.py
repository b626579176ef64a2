"""
Measurement and telemetry models for the SIMIP instrument.

Classes:
    DeviceStatus: Telemetry snapshot decoded from a ``State,`` line
    MeasurementConfig: Current/stack/time sent with ``SetConfig``
    MeasurementProgress: Progress decoded from a ``BussyM`` line
    MeasurementResult: Final result decoded from a ``Data,`` line
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Tuple

import numpy as np

from py2simip.core.errors import ValidationError, ErrorCodes
from py2simip.core.line_protocol import (
    IP_DECAY_POINTS,
    IP_WINDOW_SPACING_MS,
    STAGES_PER_REPEAT,
)


@dataclass(frozen=True)
class DeviceStatus:
    """
    Telemetry snapshot from the ``Gets`` poll.

    Every field is optional. ``None`` means the field could not be parsed
    in this cycle; it never stands for zero.

    Attributes:
        state: Raw device state code
        fe: Opaque passthrough field
        set_amper: Configured current (mA)
        stack: Configured repeat count
        time: Configured measurement time (s)
        no: Opaque passthrough field
        battery_voltage: Battery voltage (V)
        temperature: Temperature (degrees C)
        mn_voltage: Instantaneous MN voltage (mV)
    """

    state: Optional[str] = None
    fe: Optional[str] = None
    set_amper: Optional[int] = None
    stack: Optional[int] = None
    time: Optional[float] = None
    no: Optional[str] = None
    battery_voltage: Optional[float] = None
    temperature: Optional[float] = None
    mn_voltage: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        """True if no field carries a value (disconnected snapshot)."""
        return all(value is None for value in asdict(self).values())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Snapshot published while no device is connected
DISCONNECTED_STATUS = DeviceStatus()


@dataclass(frozen=True)
class MeasurementConfig:
    """
    Acquisition parameters sent with ``SetConfig``.

    Immutable once sent: the ``ResConf`` acknowledgement must echo identical
    values.
    """

    current_ma: int
    stack: int
    time_s: float

    def validate(self, min_current_ma: int = 80, max_current_ma: int = 800) -> None:
        """
        Check the parameters before anything touches the socket.

        Raises:
            ValidationError: If a parameter is out of range
        """
        if isinstance(self.current_ma, bool) or not isinstance(self.current_ma, int):
            raise ValidationError(
                f"Current must be an integer number of mA, got {self.current_ma!r}",
                field_name='current_ma',
                error_code=ErrorCodes.INVALID_PARAMETER
            )
        if not (min_current_ma <= self.current_ma <= max_current_ma) or self.current_ma > 999:
            raise ValidationError(
                f"Current {self.current_ma} mA outside {min_current_ma}-{max_current_ma} mA",
                field_name='current_ma',
                error_code=ErrorCodes.OUT_OF_RANGE
            )
        if isinstance(self.stack, bool) or not isinstance(self.stack, int) or self.stack < 1:
            raise ValidationError(
                f"Stack must be a positive integer, got {self.stack!r}",
                field_name='stack',
                error_code=ErrorCodes.OUT_OF_RANGE
            )
        if not isinstance(self.time_s, (int, float)) or self.time_s <= 0:
            raise ValidationError(
                f"Time must be positive, got {self.time_s!r}",
                field_name='time_s',
                error_code=ErrorCodes.OUT_OF_RANGE
            )

    def matches(self, amp: int, stack: int, time_s: float) -> bool:
        """True if an acknowledgement echoes exactly these values."""
        return (amp == self.current_ma
                and stack == self.stack
                and float(time_s) == float(self.time_s))


def progress_percent(stage: int, repeat: int, stack: int) -> int:
    """
    Percent complete for a ``BussyM`` report.

    ``repeat`` is 0-indexed; each repeat runs the S, C and V stages.
    The result is clamped to [0, 100].

    >>> progress_percent(2, 3, 4)
    91
    """
    if stack <= 0:
        return 0
    percent = int((stage + STAGES_PER_REPEAT * repeat) * 100 / (STAGES_PER_REPEAT * stack))
    return max(0, min(100, percent))


@dataclass(frozen=True)
class MeasurementProgress:
    """Progress of a running measurement."""

    stage: int
    repeat: int
    stack: int
    percent: int

    @classmethod
    def from_report(cls, stage: int, repeat: int, stack: int) -> 'MeasurementProgress':
        return cls(stage=stage, repeat=repeat, stack=stack,
                   percent=progress_percent(stage, repeat, stack))


@dataclass(frozen=True)
class MeasurementResult:
    """
    Final result of one measurement, decoded from a ``Data,`` line.

    A result always carries exactly 20 IP decay samples; lines with fewer
    or garbled samples are rejected by the parser and never reach this
    class.

    Attributes:
        id: Device-assigned measurement id
        set_amper: Configured current (mA)
        stack: Configured repeat count
        time: Configured measurement time (s)
        reserved: Reserved field, passed through unparsed
        battery_voltage: Battery voltage at measurement time (V)
        temperature: Temperature at measurement time (degrees C)
        contact_resistance: Electrode contact resistance (kOhm)
        measured_current: Injected current actually measured (mA)
        measured_sp: Self potential (mV)
        delta_v: Primary voltage (mV)
        ip_decay: The 20 IP decay window samples (mV/V)
    """

    id: int
    set_amper: int
    stack: int
    time: float
    reserved: str
    battery_voltage: float
    temperature: float
    contact_resistance: float
    measured_current: float
    measured_sp: float
    delta_v: float
    ip_decay: Tuple[float, ...]

    def __post_init__(self):
        if len(self.ip_decay) != IP_DECAY_POINTS:
            raise ValueError(
                f"MeasurementResult needs exactly {IP_DECAY_POINTS} IP decay samples, "
                f"got {len(self.ip_decay)}"
            )

    def decay_array(self) -> np.ndarray:
        """IP decay samples as a float array."""
        return np.asarray(self.ip_decay, dtype=float)

    @property
    def decay_offsets_ms(self) -> np.ndarray:
        """Start offset of each decay window, 80 ms apart."""
        return np.arange(IP_DECAY_POINTS, dtype=float) * IP_WINDOW_SPACING_MS

    @property
    def average_ip(self) -> float:
        """Mean of the decay samples (mV/V)."""
        return float(np.mean(self.decay_array()))

    def to_dict(self) -> Dict[str, Any]:
        """Plain-dict form handed to the persistence layer."""
        result = asdict(self)
        result['ip_decay'] = list(self.ip_decay)
        result['average_ip'] = self.average_ip
        return result
