"""In-memory EiBotBoard used for development and unit tests.

:class:`MockEBB` behaves like an open ``serial.Serial``: the driver writes
command frames to it and reads the board's replies back.  Replies follow the
real firmware's wire format, and the mock keeps enough machine state (step
counters, pen, servo settings) for tests to check what the plotter would
have done.  Faults can be injected per command mnemonic.
"""
from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import serial

from ..config import StepMode
from .ebb import MICROSTEP_PINS
from .protocol import KINDS, verify_checksum

DEFAULT_FIRMWARE = "EBBv13_and_above EB Firmware Version 2.8.1"


class MockEBB:
    """Serial-link stand-in speaking the EBB command protocol."""

    def __init__(
        self,
        *,
        firmware: str = DEFAULT_FIRMWARE,
        checksums: bool = False,
        home_polls: int = 1,
    ) -> None:
        self.firmware = firmware
        self.checksums = checksums
        self.home_polls = home_polls

        self.port: Optional[str] = None
        self.baudrate: Optional[int] = None
        self.timeout: Optional[float] = None
        self.is_open = False
        self.open_count = 0

        # Device state
        self.motor1 = 0
        self.motor2 = 0
        self.pen_up = True
        self.motors: Tuple[int, int] = (0, 0)
        self.servo: Dict[int, int] = {}
        self.moving_polls = 0
        self.path: List[Tuple[int, int]] = []
        self.microstep = StepMode.SIXTEENTH
        self.pins: Dict[Tuple[str, int], int] = {}
        self.pin_directions: Dict[Tuple[str, int], int] = {}
        self.nickname = ""
        self.resets = 0
        self.reboots = 0

        # Traffic log: command text without terminator or checksum
        self.commands: List[str] = []
        self.frames: List[bytes] = []

        self._cond = threading.Condition()
        self._rx = bytearray()
        self._tx = bytearray()
        self._failed = False
        self._silence: Dict[str, List[int]] = {}
        self._garble: Dict[str, int] = {}
        self._seen: Dict[str, int] = {}
        self._handlers: Dict[str, Callable[[List[str]], str]] = {
            "V": self._cmd_version,
            "QM": self._cmd_query_motors,
            "QS": self._cmd_query_steps,
            "QP": self._cmd_query_pen,
            "SP": self._cmd_set_pen,
            "TP": self._cmd_toggle_pen,
            "SC": self._cmd_servo_config,
            "EM": self._cmd_enable_motors,
            "CS": self._cmd_clear_steps,
            "HM": self._cmd_home,
            "XM": self._cmd_mixed_move,
            "SM": self._cmd_stepper_move,
            "LM": self._cmd_low_level_move,
            "PI": self._cmd_read_pin,
            "PD": self._cmd_pin_direction,
            "ST": self._cmd_nickname,
            "R": self._cmd_reset,
            "RB": self._cmd_reboot,
            "ES": self._cmd_emergency_stop,
        }

    # Connection ---------------------------------------------------------
    def open(self, port: Optional[str] = None, baudrate: int = 115200, timeout: Optional[float] = None, **_: object) -> "MockEBB":
        """Link factory with the ``serial.Serial`` call signature."""
        with self._cond:
            if self._failed:
                raise serial.SerialException(f"could not open port {port!r}")
            self.port = port
            self.baudrate = baudrate
            self.timeout = timeout
            self.is_open = True
            self.open_count += 1
            self._rx.clear()
            self._tx.clear()
        return self

    def close(self) -> None:
        with self._cond:
            self.is_open = False
            self._cond.notify_all()

    # Serial API ---------------------------------------------------------
    @property
    def in_waiting(self) -> int:
        with self._cond:
            self._check_link()
            return len(self._tx)

    def read(self, size: int = 1) -> bytes:
        with self._cond:
            self._check_link()
            if not self._tx and self.is_open:
                self._cond.wait(self.timeout)
                self._check_link()
            if not self.is_open:
                return b""
            data = bytes(self._tx[:size])
            del self._tx[:size]
            return data

    def write(self, data: bytes) -> int:
        with self._cond:
            self._check_link()
            if not self.is_open:
                raise serial.SerialException("write to a closed port")
            self._rx.extend(data)
            while b"\r" in self._rx:
                idx = self._rx.index(b"\r")
                frame = bytes(self._rx[:idx])
                del self._rx[: idx + 1]
                reply = self._handle(frame)
                if reply:
                    self._tx.extend(reply)
            self._cond.notify_all()
        return len(data)

    def flush(self) -> None:
        with self._cond:
            self._check_link()

    def reset_input_buffer(self) -> None:
        with self._cond:
            self._tx.clear()

    def _check_link(self) -> None:
        if self._failed:
            raise serial.SerialException("device reports readiness to read but returned no data")

    # Fault injection ----------------------------------------------------
    def silence(self, mnemonic: str, count: int = 1, *, skip: int = 0) -> None:
        """Swallow ``count`` occurrences of ``mnemonic`` after letting ``skip`` through."""
        with self._cond:
            seen = self._seen.get(mnemonic, 0)
            self._silence.setdefault(mnemonic, []).extend(
                range(seen + skip + 1, seen + skip + count + 1)
            )

    def garble(self, mnemonic: str, count: int = 1) -> None:
        """Answer the next ``count`` occurrences of ``mnemonic`` with line noise."""
        with self._cond:
            self._garble[mnemonic] = self._garble.get(mnemonic, 0) + count

    def inject(self, data: bytes) -> None:
        """Queue bytes the host did not ask for."""
        with self._cond:
            self._tx.extend(data)
            self._cond.notify_all()

    def fail_link(self) -> None:
        """Make every further serial call raise, as on a pulled USB cable."""
        with self._cond:
            self._failed = True
            self._cond.notify_all()

    def wait_for(self, mnemonic: str, count: int = 1, timeout: float = 2.0) -> bool:
        """Block until ``count`` frames of ``mnemonic`` have been received."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self.count(mnemonic) < count:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def count(self, mnemonic: str) -> int:
        return sum(1 for c in self.commands if c.split(",", 1)[0] == mnemonic)

    @property
    def position(self) -> Tuple[int, int]:
        """Carriage position in X/Y steps, decoded from the motor counters."""
        return (self.motor1 + self.motor2) // 2, (self.motor1 - self.motor2) // 2

    # Command handling ---------------------------------------------------
    def _handle(self, frame: bytes) -> bytes:
        self.frames.append(frame)
        try:
            text = frame.decode("ascii").strip()
        except UnicodeDecodeError:
            return b"!8 Err: Unknown command\r\n"
        if not text:
            return b""
        fields = text.split(",")
        mnemonic = fields[0].upper()
        kind = KINDS.get(mnemonic)
        if self.checksums and kind is not None and kind.checksummed:
            body, _, value = text.rpartition(",")
            if not body or not value.isdigit() or not verify_checksum(body.encode("ascii"), int(value)):
                self.commands.append(text)
                return b"!8 Err: Checksum incorrect\r\n"
            text = body
            fields = text.split(",")
        self.commands.append(text)
        self._seen[mnemonic] = self._seen.get(mnemonic, 0) + 1

        if self._seen[mnemonic] in self._silence.get(mnemonic, ()):
            return b""
        if self._garble.get(mnemonic, 0) > 0:
            self._garble[mnemonic] -= 1
            return b"\xff\xfe\x80OK\r\n"

        handler = self._handlers.get(mnemonic)
        if handler is None:
            return f"!8 Err: Unknown command '{mnemonic}'\r\n".encode("ascii")
        try:
            reply = handler(fields[1:])
        except (ValueError, IndexError):
            return f"!8 Err: Invalid parameter for '{mnemonic}'\r\n".encode("ascii")
        return reply.encode("ascii")

    def _cmd_version(self, args: List[str]) -> str:
        return f"{self.firmware}\r\n"

    def _cmd_query_motors(self, args: List[str]) -> str:
        moving = 1 if self.moving_polls > 0 else 0
        if self.moving_polls > 0:
            self.moving_polls -= 1
        return f"QM,{moving},{moving},{moving},0\r\n"

    def _cmd_query_steps(self, args: List[str]) -> str:
        return f"{self.motor1},{self.motor2}\r\nOK\r\n"

    def _cmd_query_pen(self, args: List[str]) -> str:
        return f"{1 if self.pen_up else 0}\r\nOK\r\n"

    def _cmd_set_pen(self, args: List[str]) -> str:
        value = int(args[0])
        if value not in (0, 1):
            raise ValueError(value)
        self.pen_up = value == 1
        return "OK\r\n"

    def _cmd_toggle_pen(self, args: List[str]) -> str:
        if args and not 1 <= int(args[0]) <= 65535:
            raise ValueError(args[0])
        self.pen_up = not self.pen_up
        return "OK\r\n"

    def _cmd_servo_config(self, args: List[str]) -> str:
        self.servo[int(args[0])] = int(args[1])
        return "OK\r\n"

    def _cmd_enable_motors(self, args: List[str]) -> str:
        self.motors = (int(args[0]), int(args[1]) if len(args) > 1 else 0)
        if self.motors[0]:
            self.microstep = StepMode(self.motors[0])
        return "OK\r\n"

    def _cmd_clear_steps(self, args: List[str]) -> str:
        self.motor1 = self.motor2 = 0
        return "OK\r\n"

    def _cmd_home(self, args: List[str]) -> str:
        rate = int(args[0])
        if not 2 <= rate <= 25000:
            raise ValueError(rate)
        self.motor1 = self.motor2 = 0
        self.path.append(self.position)
        self.moving_polls = self.home_polls
        return "OK\r\n"

    def _cmd_mixed_move(self, args: List[str]) -> str:
        duration, a, b = int(args[0]), int(args[1]), int(args[2])
        if duration < 1:
            raise ValueError(duration)
        self.motor1 += a + b
        self.motor2 += a - b
        self.path.append(self.position)
        return "OK\r\n"

    def _cmd_stepper_move(self, args: List[str]) -> str:
        duration, steps1 = int(args[0]), int(args[1])
        steps2 = int(args[2]) if len(args) > 2 else 0
        if duration < 1:
            raise ValueError(duration)
        self.motor1 += steps1
        self.motor2 += steps2
        self.path.append(self.position)
        return "OK\r\n"

    def _cmd_low_level_move(self, args: List[str]) -> str:
        if len(args) not in (6, 7):
            raise ValueError(args)
        values = [int(a) for a in args]
        if values[0] < 0 or values[3] < 0:
            raise ValueError(args)
        self.motor1 += values[1]
        self.motor2 += values[4]
        self.path.append(self.position)
        return "OK\r\n"

    def pin_level(self, port: str, pin: int) -> int:
        """Level the board reports for ``PI``; driver pins follow the motor state."""
        if (port, pin) == ("E", 0):
            return 0 if self.motors[0] else 1
        if (port, pin) == ("C", 1):
            return 0 if self.motors[1] else 1
        ms_pins = {("E", 2): 0, ("E", 1): 1, ("A", 6): 2}
        if (port, pin) in ms_pins:
            levels = next(k for k, v in MICROSTEP_PINS.items() if v is self.microstep)
            return int(levels[ms_pins[(port, pin)]])
        return self.pins.get((port, pin), 0)

    def _cmd_read_pin(self, args: List[str]) -> str:
        port, pin = args[0].strip().upper(), int(args[1])
        if port not in "ABCDE" or len(port) != 1 or not 0 <= pin <= 7:
            raise ValueError(args)
        return f"PI,{self.pin_level(port, pin)}\r\n"

    def _cmd_pin_direction(self, args: List[str]) -> str:
        port, pin, direction = args[0].strip().upper(), int(args[1]), int(args[2])
        if port not in "ABCDE" or len(port) != 1 or not 0 <= pin <= 7 or direction not in (0, 1):
            raise ValueError(args)
        self.pin_directions[(port, pin)] = direction
        return "OK\r\n"

    def _cmd_nickname(self, args: List[str]) -> str:
        name = ",".join(args)
        if len(name) > 16:
            raise ValueError(name)
        self.nickname = name
        return "OK\r\n"

    def _power_on_state(self) -> None:
        self.motor1 = self.motor2 = 0
        self.pen_up = True
        self.motors = (0, 0)
        self.servo.clear()
        self.microstep = StepMode.SIXTEENTH
        self.moving_polls = 0

    def _cmd_reset(self, args: List[str]) -> str:
        self._power_on_state()
        self.resets += 1
        return "OK\r\n"

    def _cmd_reboot(self, args: List[str]) -> str:
        self._power_on_state()
        self.reboots += 1
        return ""

    def _cmd_emergency_stop(self, args: List[str]) -> str:
        if args and args[0] not in ("0", "1"):
            raise ValueError(args[0])
        if args and args[0] == "1":
            self.motors = (0, 0)
        return "0,0,0,0,0\r\nOK\r\n"


__all__ = ["MockEBB", "DEFAULT_FIRMWARE"]
