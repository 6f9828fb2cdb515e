"""EiBotBoard wire protocol: command kinds, frames and reply matching.

Every outbound command is a short ASCII frame of comma separated fields
terminated by CR.  Replies are CR/LF terminated lines; most commands answer
with ``OK``, queries answer with a payload line first (and some, such as
``V`` and ``QM``, with the payload only).  Errors are reported by the board
as ``!<code> Err: <text>``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Pattern, Tuple, Union

from ..errors import CommandProtocolError, InvalidCommand

TERMINATOR = b"\r"
MAX_FRAME_BYTES = 64
OK = "OK"

_ERROR_LINE = re.compile(r"^!(\d+)\s*Err:\s*(.*)$")
_PRINTABLE = re.compile(r"^[\x20-\x7e]*$")


class CommandClass(Enum):
    QUERY = "query"
    PEN = "pen"
    CONFIG = "config"
    MOTION = "motion"
    STOP = "stop"


@dataclass(frozen=True)
class ResponseShape:
    """What a well-formed reply to a command looks like.

    ``payload`` matches the single data line a command answers with, if any;
    ``ok`` tells whether the reply is terminated by an ``OK`` line.
    """

    payload: Optional[Pattern[str]] = None
    ok: bool = True

    @property
    def expects_reply(self) -> bool:
        return self.ok or self.payload is not None

    def matches_payload(self, line: str) -> Optional[re.Match]:
        if self.payload is None:
            return None
        return self.payload.match(line)


@dataclass(frozen=True)
class CommandKind:
    mnemonic: str
    klass: CommandClass
    retry_safe: bool
    checksummed: bool
    response: ResponseShape

    def __str__(self) -> str:
        return self.mnemonic


def _shape(pattern: Optional[str], ok: bool = True) -> ResponseShape:
    return ResponseShape(payload=re.compile(pattern) if pattern else None, ok=ok)


# Retry safety is declared per kind and never inferred: resending a motion
# frame that was partially executed would move the carriage twice.
VERSION = CommandKind(
    "V", CommandClass.QUERY, True, False,
    _shape(r"^(EBB.*Firmware Version (\d+)\.(\d+)\.(\d+).*)$", ok=False),
)
QUERY_MOTORS = CommandKind(
    "QM", CommandClass.QUERY, True, False,
    _shape(r"^QM,([01]),([01]),([01])(?:,([01]))?$", ok=False),
)
QUERY_STEPS = CommandKind("QS", CommandClass.QUERY, True, False, _shape(r"^(-?\d+),(-?\d+)$"))
QUERY_PEN = CommandKind("QP", CommandClass.QUERY, True, False, _shape(r"^([01])$"))
READ_PIN = CommandKind("PI", CommandClass.QUERY, True, False, _shape(r"^PI,([01])$", ok=False))
SET_PEN = CommandKind("SP", CommandClass.PEN, True, False, _shape(None))
# Toggling twice would leave the pen where it started.
TOGGLE_PEN = CommandKind("TP", CommandClass.PEN, False, False, _shape(None))
SERVO_CONFIG = CommandKind("SC", CommandClass.CONFIG, True, True, _shape(None))
ENABLE_MOTORS = CommandKind("EM", CommandClass.CONFIG, True, True, _shape(None))
PIN_DIRECTION = CommandKind("PD", CommandClass.CONFIG, True, True, _shape(None))
NICKNAME = CommandKind("ST", CommandClass.CONFIG, True, True, _shape(None))
RESET = CommandKind("R", CommandClass.CONFIG, True, False, _shape(None))
# The board restarts without answering.
REBOOT = CommandKind("RB", CommandClass.CONFIG, False, False, _shape(None, ok=False))
CLEAR_STEPS = CommandKind("CS", CommandClass.CONFIG, False, True, _shape(None))
HOME = CommandKind("HM", CommandClass.MOTION, False, True, _shape(None))
MIXED_MOVE = CommandKind("XM", CommandClass.MOTION, False, True, _shape(None))
STEPPER_MOVE = CommandKind("SM", CommandClass.MOTION, False, True, _shape(None))
LOW_LEVEL_MOVE = CommandKind("LM", CommandClass.MOTION, False, True, _shape(None))
EMERGENCY_STOP = CommandKind(
    "ES", CommandClass.STOP, False, False, _shape(r"^(\d+),(\d+),(\d+),(\d+),(\d+)$")
)

KINDS: Dict[str, CommandKind] = {
    k.mnemonic: k
    for k in (
        VERSION,
        QUERY_MOTORS,
        QUERY_STEPS,
        QUERY_PEN,
        READ_PIN,
        SET_PEN,
        TOGGLE_PEN,
        SERVO_CONFIG,
        ENABLE_MOTORS,
        PIN_DIRECTION,
        NICKNAME,
        RESET,
        REBOOT,
        CLEAR_STEPS,
        HOME,
        MIXED_MOVE,
        STEPPER_MOVE,
        LOW_LEVEL_MOVE,
        EMERGENCY_STOP,
    )
}


def checksum(data: bytes) -> int:
    """Two's complement of the byte sum, so body plus checksum is 0 mod 256."""
    return (-sum(data)) & 0xFF


def verify_checksum(body: bytes, value: int) -> bool:
    return (sum(body) + value) & 0xFF == 0


@dataclass(frozen=True)
class CommandFrame:
    """A single command ready to be put on the wire.

    ``duration_s`` is the time the board needs to execute the command (the
    slice length of a move, the settle delay of a pen change); the driver
    derives the reply deadline from it.  ``timeout_s`` overrides that
    deadline when set.
    """

    kind: CommandKind
    args: Tuple[Union[int, str], ...] = ()
    duration_s: float = 0.0
    timeout_s: Optional[float] = None

    @property
    def text(self) -> str:
        return ",".join([self.kind.mnemonic, *(str(a) for a in self.args)])

    @property
    def retry_safe(self) -> bool:
        return self.kind.retry_safe

    def encode(self, checksums: bool = False) -> bytes:
        body = self.text
        if "\r" in body or "\n" in body:
            raise InvalidCommand("Frame contains a line terminator", command=body)
        try:
            raw = body.encode("ascii")
        except UnicodeEncodeError as exc:
            raise InvalidCommand("Frame is not ASCII", command=body) from exc
        if checksums and self.kind.checksummed:
            raw += f",{checksum(raw)}".encode("ascii")
        raw += TERMINATOR
        if len(raw) > MAX_FRAME_BYTES:
            raise InvalidCommand(
                f"Frame is {len(raw)} bytes, limit is {MAX_FRAME_BYTES}", command=body
            )
        return raw

    def __str__(self) -> str:
        return self.text


# ---------------------------------------------------------------------------
# Reply handling
# ---------------------------------------------------------------------------


class LineVerdict(Enum):
    PAYLOAD = "payload"
    DONE = "done"
    UNSOLICITED = "unsolicited"


def decode_line(raw: bytes, command: Optional[str] = None) -> str:
    """Decode one inbound line, rejecting anything that is not printable ASCII."""

    try:
        line = raw.decode("ascii")
    except UnicodeDecodeError as exc:
        raise CommandProtocolError(f"Non-ASCII reply {raw!r}", command=command) from exc
    line = line.strip()
    if not _PRINTABLE.match(line):
        raise CommandProtocolError(f"Unprintable reply {raw!r}", command=command)
    return line


def device_error(line: str) -> Optional[Tuple[int, str]]:
    m = _ERROR_LINE.match(line)
    if not m:
        return None
    return int(m.group(1)), m.group(2).strip()


class ReplyMatcher:
    """Accumulates the reply lines of one in-flight command.

    ``feed`` returns a verdict for every line: part of the reply, the end of
    the reply, or unsolicited (the caller discards and logs it).  A device
    error line, or a terminator arriving before the required payload, raises
    :class:`CommandProtocolError`.
    """

    def __init__(self, frame: CommandFrame) -> None:
        self.frame = frame
        self.shape = frame.kind.response
        self.payload: Optional[str] = None
        self.groups: Tuple[Optional[str], ...] = ()
        self.done = False

    def feed(self, line: str) -> LineVerdict:
        err = device_error(line)
        if err is not None:
            code, message = err
            raise CommandProtocolError(
                f"Device rejected command: {message}", command=self.frame.text, error_code=code
            )
        if self.payload is None and self.shape.payload is not None:
            m = self.shape.matches_payload(line)
            if m is not None:
                self.payload = line
                self.groups = m.groups()
                if not self.shape.ok:
                    self.done = True
                    return LineVerdict.DONE
                return LineVerdict.PAYLOAD
        if line == OK and self.shape.ok:
            if self.shape.payload is not None and self.payload is None:
                raise CommandProtocolError(
                    "Reply terminated before its payload", command=self.frame.text
                )
            self.done = True
            return LineVerdict.DONE
        return LineVerdict.UNSOLICITED


__all__ = [
    "TERMINATOR",
    "MAX_FRAME_BYTES",
    "CommandClass",
    "ResponseShape",
    "CommandKind",
    "CommandFrame",
    "KINDS",
    "VERSION",
    "QUERY_MOTORS",
    "QUERY_STEPS",
    "QUERY_PEN",
    "READ_PIN",
    "SET_PEN",
    "TOGGLE_PEN",
    "SERVO_CONFIG",
    "ENABLE_MOTORS",
    "PIN_DIRECTION",
    "NICKNAME",
    "RESET",
    "REBOOT",
    "CLEAR_STEPS",
    "HOME",
    "MIXED_MOVE",
    "STEPPER_MOVE",
    "LOW_LEVEL_MOVE",
    "EMERGENCY_STOP",
    "checksum",
    "verify_checksum",
    "LineVerdict",
    "ReplyMatcher",
    "decode_line",
    "device_error",
]
