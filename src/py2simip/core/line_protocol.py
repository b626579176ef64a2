"""
ASCII line protocol spoken by the SIMIP resistivity/IP instrument.

Every command is a single line terminated by ``"\\n\\r"``. The device answers
with single lines that begin with one of a small set of keywords; stray
bytes may precede the keyword.

Commands:
    - ``Vers``: request firmware version, answered by ``Ver<x.y>``
    - ``Gets``: request status telemetry, answered by ``State,...``
    - ``SetConfig,<cur3>,<stack>,<time>``: answered by ``ResConf,...``
    - ``Star``: start a measurement, answered by ``ResStar``
    - ``Data``: request the measurement result, answered by
      ``BussyM<S|C|V><NN>`` while busy or ``Data,...`` when finished
"""

from typing import Tuple


COMMAND_TERMINATOR = "\n\r"
ENCODING = "utf-8"

DEFAULT_HOST = "192.168.4.1"
DEFAULT_PORT = 8888

# IP decay windows in a Data message, 80 ms apart
IP_DECAY_POINTS = 20
IP_WINDOW_SPACING_MS = 80.0

# Current is sent as a zero-padded 3-digit field
CURRENT_FIELD_WIDTH = 3


class Commands:
    """Command words sent to the device."""

    GET_VERSION = "Vers"
    GET_STATUS = "Gets"
    SET_CONFIG = "SetConfig"
    START_MEASUREMENT = "Star"
    REQUEST_DATA = "Data"


class Keywords:
    """Response keywords, in the exact form they appear on the wire."""

    VERSION = "Ver"
    STATE = "State,"
    CONFIG_ACK = "ResConf,"
    START_ACK = "ResStar"
    BUSY = "BussyM"
    DATA = "Data,"

    ALL: Tuple[str, ...] = (VERSION, STATE, CONFIG_ACK, START_ACK, BUSY, DATA)


# BussyM stage code -> stage index
STAGE_CODES = {'S': 0, 'C': 1, 'V': 2}
STAGES_PER_REPEAT = len(STAGE_CODES)


def format_current(current_ma: int) -> str:
    """
    Format a current in mA as the zero-padded 3-digit wire field.

    >>> format_current(80)
    '080'
    """
    return str(int(current_ma)).zfill(CURRENT_FIELD_WIDTH)


def format_time(time_s: float) -> str:
    """Format a measurement time in seconds, always with a decimal point."""
    return repr(float(time_s))


def build_set_config(current_ma: int, stack: int, time_s: float) -> str:
    """
    Build the ``SetConfig`` command line (without terminator).

    >>> build_set_config(80, 4, 2.0)
    'SetConfig,080,4,2.0'
    """
    return ",".join([
        Commands.SET_CONFIG,
        format_current(current_ma),
        str(int(stack)),
        format_time(time_s),
    ])


def frame(command: str) -> bytes:
    """Encode a command line with its terminator, ready for the socket."""
    return (command + COMMAND_TERMINATOR).encode(ENCODING)
