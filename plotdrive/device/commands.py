"""Builders for EBB command frames.

Each builder validates its parameters against the ranges the board accepts
and raises :class:`~plotdrive.errors.InvalidCommand` before anything reaches
the wire.
"""
from __future__ import annotations

import math
from typing import List, Optional, Tuple

from ..config import PenSettings, StepMode
from ..errors import InvalidCommand
from ..motion import MotionSegment, PenState
from .protocol import (
    CLEAR_STEPS,
    EMERGENCY_STOP,
    ENABLE_MOTORS,
    HOME,
    LOW_LEVEL_MOVE,
    MIXED_MOVE,
    NICKNAME,
    PIN_DIRECTION,
    QUERY_MOTORS,
    QUERY_PEN,
    QUERY_STEPS,
    READ_PIN,
    REBOOT,
    RESET,
    SERVO_CONFIG,
    SET_PEN,
    STEPPER_MOVE,
    TOGGLE_PEN,
    VERSION,
    CommandFrame,
)

MAX_MOVE_MS = 16777215
MAX_MOVE_STEPS = 16777215
MAX_PEN_DELAY_MS = 65535
HOME_RATE_RANGE = (2, 25000)
MAX_LM_VALUE = 2147483647
MAX_NICKNAME_CHARS = 16
PIN_PORTS = "ABCDE"

# SC parameter numbers
SERVO_UP_POSITION = 4
SERVO_DOWN_POSITION = 5
SERVO_UP_RATE = 11
SERVO_DOWN_RATE = 12


def _check_range(name: str, value: int, lo: int, hi: int, command: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidCommand(f"{name} must be an integer, got {value!r}", command=command)
    if not lo <= value <= hi:
        raise InvalidCommand(f"{name}={value} outside {lo}..{hi}", command=command)
    return value


# ---- queries ----
def version() -> CommandFrame:
    return CommandFrame(VERSION)


def query_motors() -> CommandFrame:
    return CommandFrame(QUERY_MOTORS)


def query_steps() -> CommandFrame:
    return CommandFrame(QUERY_STEPS)


def query_pen() -> CommandFrame:
    return CommandFrame(QUERY_PEN)


def _check_pin(port: str, pin: int, command: str) -> Tuple[str, int]:
    if not isinstance(port, str) or len(port) != 1 or port.upper() not in PIN_PORTS:
        raise InvalidCommand(f"port must be one of {', '.join(PIN_PORTS)}, got {port!r}", command=command)
    return port.upper(), _check_range("pin", pin, 0, 7, command)


def read_pin(port: str, pin: int) -> CommandFrame:
    """``PI``: digital level of one pin on ports A to E."""

    return CommandFrame(READ_PIN, _check_pin(port, pin, "PI"))


# ---- pen ----
def set_pen(state: PenState, delay_ms: int = 0) -> CommandFrame:
    """``SP``: 1 raises the pen, 0 lowers it; the board then waits ``delay_ms``."""

    _check_range("delay_ms", delay_ms, 0, MAX_PEN_DELAY_MS, "SP")
    value = 1 if state is PenState.UP else 0
    return CommandFrame(SET_PEN, (value, delay_ms), duration_s=delay_ms / 1000.0)


def toggle_pen(delay_ms: Optional[int] = None) -> CommandFrame:
    """``TP``: flip the pen, optionally waiting ``delay_ms`` afterwards."""

    if delay_ms is None:
        return CommandFrame(TOGGLE_PEN)
    _check_range("delay_ms", delay_ms, 1, MAX_PEN_DELAY_MS, "TP")
    return CommandFrame(TOGGLE_PEN, (delay_ms,), duration_s=delay_ms / 1000.0)


def servo_config(parameter: int, value: int) -> CommandFrame:
    _check_range("parameter", parameter, 1, 255, "SC")
    _check_range("value", value, 0, 65535, "SC")
    return CommandFrame(SERVO_CONFIG, (parameter, value))


def servo_setup(pen: PenSettings) -> List[CommandFrame]:
    """Servo positions (percent mapped to pulse width) and rates."""

    return [
        servo_config(SERVO_UP_POSITION, pen.to_servo(pen.up_position)),
        servo_config(SERVO_DOWN_POSITION, pen.to_servo(pen.down_position)),
        servo_config(SERVO_UP_RATE, int(pen.up_rate * 5)),
        servo_config(SERVO_DOWN_RATE, int(pen.down_rate * 5)),
    ]


# ---- motors ----
def enable_motors(mode: StepMode = StepMode.SIXTEENTH) -> CommandFrame:
    if mode is StepMode.DISABLE:
        return disable_motors()
    return CommandFrame(ENABLE_MOTORS, (mode.value, 1))


def disable_motors() -> CommandFrame:
    return CommandFrame(ENABLE_MOTORS, (0, 0))


def clear_steps() -> CommandFrame:
    return CommandFrame(CLEAR_STEPS)


def home(rate: int) -> CommandFrame:
    _check_range("rate", rate, HOME_RATE_RANGE[0], HOME_RATE_RANGE[1], "HM")
    return CommandFrame(HOME, (rate,))


def mixed_move(duration_ms: int, steps_a: int, steps_b: int) -> CommandFrame:
    """``XM``: move ``steps_a`` along X and ``steps_b`` along Y in ``duration_ms``."""

    _check_range("duration_ms", duration_ms, 1, MAX_MOVE_MS, "XM")
    _check_range("steps_a", steps_a, -MAX_MOVE_STEPS, MAX_MOVE_STEPS, "XM")
    _check_range("steps_b", steps_b, -MAX_MOVE_STEPS, MAX_MOVE_STEPS, "XM")
    return CommandFrame(MIXED_MOVE, (duration_ms, steps_a, steps_b), duration_s=duration_ms / 1000.0)


def stepper_move(duration_ms: int, steps1: int, steps2: Optional[int] = None) -> CommandFrame:
    """``SM``: move each motor by a step count in ``duration_ms``."""

    _check_range("duration_ms", duration_ms, 1, MAX_MOVE_MS, "SM")
    _check_range("steps1", steps1, -MAX_MOVE_STEPS, MAX_MOVE_STEPS, "SM")
    args = (duration_ms, steps1)
    if steps2 is not None:
        args += (_check_range("steps2", steps2, -MAX_MOVE_STEPS, MAX_MOVE_STEPS, "SM"),)
    return CommandFrame(STEPPER_MOVE, args, duration_s=duration_ms / 1000.0)


def low_level_move(
    rate1: int,
    steps1: int,
    accel1: int,
    rate2: int,
    steps2: int,
    accel2: int,
    clear: Optional[int] = None,
) -> CommandFrame:
    """``LM``: per-motor rate, step count and acceleration in the board's native units.

    ``clear`` resets the step-rate accumulators: 1 for motor 1, 2 for motor 2,
    3 for both.  The board acknowledges once the move is queued.
    """

    for name, value in (("rate1", rate1), ("rate2", rate2)):
        _check_range(name, value, 0, MAX_LM_VALUE, "LM")
    for name, value in (("steps1", steps1), ("accel1", accel1), ("steps2", steps2), ("accel2", accel2)):
        _check_range(name, value, -MAX_LM_VALUE, MAX_LM_VALUE, "LM")
    if steps1 == 0 and steps2 == 0:
        raise InvalidCommand("LM needs a non-zero step count", command="LM")
    args = (rate1, steps1, accel1, rate2, steps2, accel2)
    if clear is not None:
        args += (_check_range("clear", clear, 0, 3, "LM"),)
    return CommandFrame(LOW_LEVEL_MOVE, args)


def emergency_stop(disable_motors: bool = False) -> CommandFrame:
    """``ES``; with ``disable_motors`` the drivers are de-energized as well."""

    return CommandFrame(EMERGENCY_STOP, (1,) if disable_motors else ())


# ---- board ----
def pin_direction(port: str, pin: int, direction: int) -> CommandFrame:
    """``PD``: 0 makes the pin an output, 1 an input."""

    port, pin = _check_pin(port, pin, "PD")
    return CommandFrame(PIN_DIRECTION, (port, pin, _check_range("direction", direction, 0, 1, "PD")))


def nickname(name: str) -> CommandFrame:
    """``ST``: store a nickname of at most 16 printable characters on the board."""

    if not isinstance(name, str):
        raise InvalidCommand(f"nickname must be a string, got {name!r}", command="ST")
    if len(name) > MAX_NICKNAME_CHARS:
        raise InvalidCommand(f"nickname is {len(name)} characters, limit is {MAX_NICKNAME_CHARS}", command="ST")
    if not all(" " <= ch <= "~" for ch in name) or "," in name:
        raise InvalidCommand(f"nickname must be printable ASCII without commas: {name!r}", command="ST")
    return CommandFrame(NICKNAME, (name,))


def reset() -> CommandFrame:
    return CommandFrame(RESET)


def reboot() -> CommandFrame:
    return CommandFrame(REBOOT)


# ---- planned motion ----
def segment_frames(segment: MotionSegment, timeslice_ms: int) -> List[CommandFrame]:
    """Cut a planned segment into time slices of ``XM`` frames.

    Positions are sampled from the segment's velocity profile at the slice
    boundaries and rounded cumulatively, so the slices always add up to the
    exact step delta of the segment.
    """

    if timeslice_ms < 1:
        raise InvalidCommand(f"timeslice_ms must be >= 1, got {timeslice_ms}", command="XM")
    duration = segment.duration
    total_ms = max(1, int(round(duration * 1000.0)))
    count = max(1, int(math.ceil(total_ms / float(timeslice_ms))))

    dx, dy = segment.delta
    sx, sy = int(round(segment.start.x)), int(round(segment.start.y))
    ex, ey = int(round(segment.end.x)), int(round(segment.end.y))
    length = segment.length

    frames: List[CommandFrame] = []
    prev_x, prev_y, prev_ms = sx, sy, 0
    for k in range(1, count + 1):
        if k == count:
            ms, x, y = total_ms, ex, ey
        else:
            ms = k * timeslice_ms
            frac = segment.distance_at(ms / 1000.0) / length if length > 0 else 1.0
            x = int(round(segment.start.x + dx * frac))
            y = int(round(segment.start.y + dy * frac))
        frames.append(mixed_move(max(1, ms - prev_ms), x - prev_x, y - prev_y))
        prev_x, prev_y, prev_ms = x, y, ms
    return frames


__all__ = [
    "version",
    "query_motors",
    "query_steps",
    "query_pen",
    "read_pin",
    "set_pen",
    "toggle_pen",
    "servo_config",
    "servo_setup",
    "enable_motors",
    "disable_motors",
    "clear_steps",
    "home",
    "mixed_move",
    "stepper_move",
    "low_level_move",
    "emergency_stop",
    "pin_direction",
    "nickname",
    "reset",
    "reboot",
    "segment_frames",
]
