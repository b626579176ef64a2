"""
Response parser for the SIMIP line protocol.

Each raw line from the socket is classified into exactly one
``ParsedMessage`` variant:

    Version, Status, ConfigAck, StartAck, Progress, Result,
    ParseError, NoKeyword

The parser scans for the earliest keyword and drops any noise in front of
it. Two rules apply to malformed payloads:

- Optional telemetry (``State,``) is partial-tolerant: a numeric field that
  fails to parse becomes ``None`` for that field only.
- Required messages (``ResConf,``, ``ResStar``, ``BussyM``, ``Data,``,
  ``Ver``) are fail-closed: any bad field turns the whole line into a
  ``ParseError``. A ``Result`` is never emitted with missing samples.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple, TypeVar

from py2simip.core.line_protocol import Keywords, STAGE_CODES, IP_DECAY_POINTS
from py2simip.models.measurement import DeviceStatus, MeasurementResult

logger = logging.getLogger(__name__)

T = TypeVar('T')

_VERSION_PATTERN = re.compile(r'^\d+\.\d+$')

# State,<state>,<fe>,<setAmper>,<stack>,<time>,<no>,<vbat>,<temp>,<vmn>
STATUS_MIN_FIELDS = 8
# Data,<id>,<setAmper>,<stack>,<time>,<reserved>,<vbat>,<temp>,<contact>,
#      <measAmp>,<measSP>,<deltaV>,<ip1..ip20>
RESULT_FIXED_FIELDS = 11
RESULT_MIN_FIELDS = RESULT_FIXED_FIELDS + IP_DECAY_POINTS
CONFIG_ACK_FIELDS = 3


class MessageKind(Enum):
    """Tag of a ParsedMessage variant."""

    VERSION = "version"
    STATUS = "status"
    CONFIG_ACK = "config_ack"
    START_ACK = "start_ack"
    PROGRESS = "progress"
    RESULT = "result"
    PARSE_ERROR = "parse_error"
    NO_KEYWORD = "no_keyword"


# Keyword that introduces each decodable kind
KIND_KEYWORDS = {
    MessageKind.VERSION: Keywords.VERSION,
    MessageKind.STATUS: Keywords.STATE,
    MessageKind.CONFIG_ACK: Keywords.CONFIG_ACK,
    MessageKind.START_ACK: Keywords.START_ACK,
    MessageKind.PROGRESS: Keywords.BUSY,
    MessageKind.RESULT: Keywords.DATA,
}


@dataclass(frozen=True)
class ParsedMessage:
    """Base of the tagged union. ``raw`` is the line as received."""

    raw: str = field(default="", compare=False)

    kind = None  # set by each variant

    @property
    def keyword(self) -> Optional[str]:
        return KIND_KEYWORDS.get(self.kind)


@dataclass(frozen=True)
class Version(ParsedMessage):
    version: str = ""
    kind = MessageKind.VERSION


@dataclass(frozen=True)
class Status(ParsedMessage):
    status: DeviceStatus = field(default_factory=DeviceStatus)
    kind = MessageKind.STATUS


@dataclass(frozen=True)
class ConfigAck(ParsedMessage):
    amp: int = 0
    stack: int = 0
    time: float = 0.0
    kind = MessageKind.CONFIG_ACK


@dataclass(frozen=True)
class StartAck(ParsedMessage):
    kind = MessageKind.START_ACK


@dataclass(frozen=True)
class Progress(ParsedMessage):
    stage: int = 0
    repeat: int = 0
    kind = MessageKind.PROGRESS


@dataclass(frozen=True)
class Result(ParsedMessage):
    result: Optional[MeasurementResult] = None
    kind = MessageKind.RESULT


@dataclass(frozen=True)
class ParseError(ParsedMessage):
    """A keyword was found but the payload is malformed."""

    reason: str = ""
    expected: Optional[MessageKind] = None
    kind = MessageKind.PARSE_ERROR

    @property
    def keyword(self) -> Optional[str]:
        return KIND_KEYWORDS.get(self.expected)


@dataclass(frozen=True)
class NoKeyword(ParsedMessage):
    """No recognized keyword in the line; callers ignore it."""

    kind = MessageKind.NO_KEYWORD


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _to_int(text: Optional[str]) -> Optional[int]:
    if text is None:
        return None
    try:
        return int(text.strip())
    except ValueError:
        return None


def _to_float(text: Optional[str]) -> Optional[float]:
    if text is None:
        return None
    try:
        return float(text.strip())
    except ValueError:
        return None


def _text(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return text.strip()


def _field(parts: List[str], index: int) -> Optional[str]:
    return parts[index] if index < len(parts) else None


def _require(value: Optional[T], name: str) -> T:
    if value is None:
        raise ValueError(f"invalid {name}")
    return value


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class ResponseParser:
    """
    Classifies and decodes raw device lines.

    Example:
        >>> parser = ResponseParser()
        >>> msg = parser.parse("xxBussyMV03")
        >>> msg.kind, msg.stage, msg.repeat
        (<MessageKind.PROGRESS: 'progress'>, 2, 3)
    """

    def __init__(self):
        self._decoders: dict = {
            Keywords.VERSION: self._parse_version,
            Keywords.STATE: self._parse_status,
            Keywords.CONFIG_ACK: self._parse_config_ack,
            Keywords.START_ACK: self._parse_start_ack,
            Keywords.BUSY: self._parse_progress,
            Keywords.DATA: self._parse_result,
        }

    @staticmethod
    def find_keyword(line: str) -> Tuple[Optional[str], int]:
        """
        Locate the earliest recognized keyword.

        Returns:
            Tuple of (keyword, index), or (None, -1) if no keyword is present
        """
        found: Optional[str] = None
        found_at = -1
        for keyword in Keywords.ALL:
            index = line.find(keyword)
            if index != -1 and (found_at == -1 or index < found_at):
                found, found_at = keyword, index
        return found, found_at

    def parse(self, line: Optional[str]) -> ParsedMessage:
        """
        Classify one raw line.

        Args:
            line: Line as read from the socket (terminator already removed)

        Returns:
            Exactly one ParsedMessage variant
        """
        raw = line or ""
        keyword, index = self.find_keyword(raw)
        if keyword is None:
            if raw.strip():
                logger.debug(f"No keyword in line: {raw!r}")
            return NoKeyword(raw=raw)

        if index > 0:
            logger.debug(f"Dropped {index} leading noise chars before '{keyword}'")

        payload = raw[index:]
        decoder: Callable[[str, str], ParsedMessage] = self._decoders[keyword]
        message = decoder(payload, raw)
        if isinstance(message, ParseError):
            logger.warning(f"Malformed '{keyword}' line ({message.reason}): {raw!r}")
        else:
            logger.debug(f"Parsed {message.kind.value}: {raw!r}")
        return message

    # -- individual grammars -------------------------------------------------

    def _parse_version(self, payload: str, raw: str) -> ParsedMessage:
        rest = payload[len(Keywords.VERSION):].strip()
        version = ""
        for char in rest:
            if char.isdigit() or char == '.':
                version += char
            else:
                break
        if not _VERSION_PATTERN.match(version):
            return ParseError(raw=raw, reason="invalid version format",
                              expected=MessageKind.VERSION)
        return Version(raw=raw, version=version)

    def _parse_status(self, payload: str, raw: str) -> ParsedMessage:
        parts = payload[len(Keywords.STATE):].split(',')
        if len(parts) < STATUS_MIN_FIELDS:
            return ParseError(
                raw=raw,
                reason=f"expected at least {STATUS_MIN_FIELDS} fields, got {len(parts)}",
                expected=MessageKind.STATUS
            )
        status = DeviceStatus(
            state=_text(_field(parts, 0)),
            fe=_text(_field(parts, 1)),
            set_amper=_to_int(_field(parts, 2)),
            stack=_to_int(_field(parts, 3)),
            time=_to_float(_field(parts, 4)),
            no=_text(_field(parts, 5)),
            battery_voltage=_to_float(_field(parts, 6)),
            temperature=_to_float(_field(parts, 7)),
            mn_voltage=_to_float(_field(parts, 8)),
        )
        return Status(raw=raw, status=status)

    def _parse_config_ack(self, payload: str, raw: str) -> ParsedMessage:
        parts = payload[len(Keywords.CONFIG_ACK):].split(',')
        if len(parts) != CONFIG_ACK_FIELDS:
            return ParseError(
                raw=raw,
                reason=f"expected {CONFIG_ACK_FIELDS} fields, got {len(parts)}",
                expected=MessageKind.CONFIG_ACK
            )
        amp = _to_int(parts[0])
        stack = _to_int(parts[1])
        time_s = _to_float(parts[2])
        if amp is None or stack is None or time_s is None:
            return ParseError(raw=raw, reason="invalid numeric value",
                              expected=MessageKind.CONFIG_ACK)
        return ConfigAck(raw=raw, amp=amp, stack=stack, time=time_s)

    def _parse_start_ack(self, payload: str, raw: str) -> ParsedMessage:
        if payload.strip() != Keywords.START_ACK:
            return ParseError(raw=raw, reason="unexpected text after ResStar",
                              expected=MessageKind.START_ACK)
        return StartAck(raw=raw)

    def _parse_progress(self, payload: str, raw: str) -> ParsedMessage:
        body = payload[len(Keywords.BUSY):].strip()
        if len(body) < 3:
            return ParseError(raw=raw, reason="too short",
                              expected=MessageKind.PROGRESS)
        code, repeat_text = body[0], body[1:]
        if code not in STAGE_CODES:
            return ParseError(raw=raw, reason=f"invalid stage code {code!r}",
                              expected=MessageKind.PROGRESS)
        if len(repeat_text) != 2 or not repeat_text.isdigit():
            return ParseError(raw=raw, reason=f"invalid repeat {repeat_text!r}",
                              expected=MessageKind.PROGRESS)
        return Progress(raw=raw, stage=STAGE_CODES[code], repeat=int(repeat_text))

    def _parse_result(self, payload: str, raw: str) -> ParsedMessage:
        parts = payload[len(Keywords.DATA):].split(',')
        if len(parts) < RESULT_MIN_FIELDS:
            return ParseError(
                raw=raw,
                reason=f"expected at least {RESULT_MIN_FIELDS} fields, got {len(parts)}",
                expected=MessageKind.RESULT
            )
        try:
            samples = []
            for i in range(IP_DECAY_POINTS):
                samples.append(_require(
                    _to_float(parts[RESULT_FIXED_FIELDS + i]), f"IP sample {i + 1}"
                ))
            result = MeasurementResult(
                id=_require(_to_int(parts[0]), "id"),
                set_amper=_require(_to_int(parts[1]), "setAmper"),
                stack=_require(_to_int(parts[2]), "stack"),
                time=_require(_to_float(parts[3]), "time"),
                reserved=parts[4].strip(),
                battery_voltage=_require(_to_float(parts[5]), "battery voltage"),
                temperature=_require(_to_float(parts[6]), "temperature"),
                contact_resistance=_require(_to_float(parts[7]), "contact"),
                measured_current=_require(_to_float(parts[8]), "measured current"),
                measured_sp=_require(_to_float(parts[9]), "measured SP"),
                delta_v=_require(_to_float(parts[10]), "deltaV"),
                ip_decay=tuple(samples),
            )
        except ValueError as e:
            return ParseError(raw=raw, reason=str(e), expected=MessageKind.RESULT)
        return Result(raw=raw, result=result)


# Shared stateless instance
default_parser = ResponseParser()


def parse_line(line: Optional[str]) -> ParsedMessage:
    """Classify a line with the shared parser."""
    return default_parser.parse(line)
