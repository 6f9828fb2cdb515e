"""EiBotBoard driver: connection state machine and command exchange.

One command is in flight at a time.  A background reader thread splits the
inbound byte stream into lines and hands each one to the pending exchange,
a single-slot handoff guarded by the driver lock; the calling thread waits
on the exchange's event until the reply is complete, the deadline passes
or the exchange is abandoned.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Tuple

import serial
from serial.tools import list_ports

from ..config import MachineConfig, StepMode
from ..errors import (
    CommandAbandoned,
    CommandProtocolError,
    CommandTimeout,
    ConnectError,
    ConnectProtocolError,
    ConnectTimeout,
    DriverError,
    DriverStateError,
    InvalidCommand,
    LinkLost,
    PortNotFound,
)
from ..motion import PenState
from . import commands
from .protocol import (
    ENABLE_MOTORS,
    SET_PEN,
    TOGGLE_PEN,
    CommandClass,
    CommandFrame,
    LineVerdict,
    ReplyMatcher,
    decode_line,
)

logger = logging.getLogger(__name__)

EBB_PRODUCT = "EiBotBoard"

# (MS1, MS2, MS3) pin levels for each microstep mode
MICROSTEP_PINS: Dict[Tuple[bool, bool, bool], StepMode] = {
    (True, True, True): StepMode.SIXTEENTH,
    (True, True, False): StepMode.EIGHTH,
    (False, True, False): StepMode.QUARTER,
    (True, False, False): StepMode.HALF,
    (False, False, False): StepMode.FULL,
}

LinkFactory = Callable[..., "serial.Serial"]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    BUSY = "busy"
    FAULTED = "faulted"


_TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.READY, ConnectionState.FAULTED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.READY: frozenset({ConnectionState.BUSY, ConnectionState.DISCONNECTED}),
    ConnectionState.BUSY: frozenset(
        {ConnectionState.READY, ConnectionState.FAULTED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.FAULTED: frozenset({ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}),
}


@dataclass(frozen=True)
class Reply:
    """Accepted reply to one command."""

    frame: CommandFrame
    payload: Optional[str] = None
    groups: Tuple[Optional[str], ...] = ()


@dataclass(frozen=True)
class MotorStatus:
    """Decoded ``QM`` reply."""

    executing: bool
    motor1_moving: bool
    motor2_moving: bool
    fifo_pending: bool = False

    @property
    def idle(self) -> bool:
        return not (self.executing or self.motor1_moving or self.motor2_moving or self.fifo_pending)


class _Exchange:
    def __init__(self, frame: CommandFrame, *, strict: bool = False) -> None:
        self.frame = frame
        self.matcher = ReplyMatcher(frame)
        self.strict = strict
        self.event = threading.Event()
        self.error: Optional[DriverError] = None

    def finish(self, error: Optional[DriverError] = None) -> None:
        self.error = error
        self.event.set()


class EBBDriver:
    """Stateful driver for an EiBotBoard behind a serial link."""

    def __init__(self, config: MachineConfig, *, link_factory: LinkFactory = serial.Serial) -> None:
        self.config = config
        self._link_factory = link_factory
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._link = None
        self._reader: Optional[threading.Thread] = None
        self._reader_stop = threading.Event()
        self._pending: Optional[_Exchange] = None
        self._stop_exchange: Optional[_Exchange] = None
        self._halted = False
        self._fault: Optional[DriverError] = None
        self._pen_state: Optional[PenState] = None
        self._step_mode: Optional[StepMode] = None
        self._firmware: Optional[str] = None

    # ------------------------------------------------------------------
    # Status surface
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pen_state(self) -> Optional[PenState]:
        return self._pen_state

    @property
    def step_mode(self) -> Optional[StepMode]:
        """Motor mode last set on the board; ``StepMode.DISABLE`` when de-energized."""
        return self._step_mode

    @property
    def firmware_version(self) -> Optional[str]:
        return self._firmware

    @property
    def fault(self) -> Optional[DriverError]:
        return self._fault

    @property
    def halted(self) -> bool:
        return self._halted

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    @staticmethod
    def find_port() -> str:
        """Device name of the first attached EiBotBoard."""
        for info in list_ports.comports():
            product = getattr(info, "product", None) or ""
            if product.startswith(EBB_PRODUCT) or EBB_PRODUCT in (info.description or ""):
                logger.info("Found %s on %s", product or info.description, info.device)
                return info.device
        raise PortNotFound("No serial port with an attached EiBotBoard")

    def connect(self) -> str:
        """Open the link, identify the board and configure it.  Returns the firmware string."""
        with self._lock:
            if self._state is not ConnectionState.DISCONNECTED:
                raise DriverStateError("connect() requires a disconnected driver", state=self._state.name)
        return self._establish()

    def reconnect(self) -> str:
        """Leave the Faulted state by tearing down the link and connecting again."""
        with self._lock:
            if self._state is not ConnectionState.FAULTED:
                raise DriverStateError("reconnect() is only valid when faulted", state=self._state.name)
        self._teardown_link()
        return self._establish()

    def disconnect(self) -> None:
        """Abandon any in-flight command and close the link."""
        with self._lock:
            if self._state is ConnectionState.DISCONNECTED:
                return
            self._abandon_pending("Link closed by disconnect()")
            self._transition(ConnectionState.DISCONNECTED)
        self._teardown_link()
        logger.info("Disconnected")

    def _establish(self) -> str:
        link_cfg = self.config.link
        port = link_cfg.port or self.find_port()
        attempts = 1 + max(0, link_cfg.connect_retries)
        backoff = link_cfg.connect_backoff_s
        last: Optional[ConnectError] = None
        for attempt in range(1, attempts + 1):
            with self._lock:
                self._transition(ConnectionState.CONNECTING)
                self._halted = False
                self._fault = None
            try:
                self._open(port)
                self._identify()
            except ConnectError as exc:
                last = exc
                self._teardown_link()
                with self._lock:
                    if self._state is ConnectionState.CONNECTING:
                        self._transition(ConnectionState.FAULTED)
                    self._fault = exc
                logger.warning("Connect attempt %d of %d on %s failed: %s", attempt, attempts, port, exc)
                if attempt < attempts:
                    time.sleep(backoff)
                    backoff *= 2
                continue
            break
        else:
            logger.error("Could not connect to %s", port)
            assert last is not None
            raise last

        with self._lock:
            self._transition(ConnectionState.READY)
        logger.info("Connected to %s: %s", port, self._firmware)
        self.configure_servo()
        self.enable_motors()
        return self._firmware or ""

    def _open(self, port: str) -> None:
        link_cfg = self.config.link
        try:
            link = self._link_factory(port, baudrate=link_cfg.baudrate, timeout=link_cfg.read_timeout_s)
            link.reset_input_buffer()
        except (serial.SerialException, OSError) as exc:
            raise ConnectError(f"Cannot open {port}: {exc}", state=ConnectionState.CONNECTING.name) from exc
        stop = threading.Event()
        reader = threading.Thread(target=self._read_loop, args=(link, stop), name="ebb-reader", daemon=True)
        with self._lock:
            self._link = link
            self._reader = reader
            self._reader_stop = stop
        reader.start()

    def _identify(self) -> None:
        link_cfg = self.config.link
        frame = CommandFrame(commands.version().kind, timeout_s=link_cfg.connect_timeout_s)
        try:
            reply = self._exchange(frame, connecting=True)
        except CommandTimeout as exc:
            raise ConnectTimeout("No identity reply", command=frame.text, state=ConnectionState.CONNECTING.name) from exc
        except CommandProtocolError as exc:
            raise ConnectProtocolError(
                f"Unexpected identity reply: {exc.message}",
                command=frame.text,
                error_code=exc.error_code,
                state=ConnectionState.CONNECTING.name,
            ) from exc
        self._firmware = reply.payload

    def _teardown_link(self) -> None:
        with self._lock:
            link, reader, stop = self._link, self._reader, self._reader_stop
            self._link = None
            self._reader = None
        stop.set()
        if link is not None:
            self._close_quietly(link)
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=1.0)

    @staticmethod
    def _close_quietly(link) -> None:
        try:
            link.close()
        except (serial.SerialException, OSError) as exc:
            logger.warning("Error while closing link: %s", exc)

    # ------------------------------------------------------------------
    # Reader thread
    # ------------------------------------------------------------------
    def _read_loop(self, link, stop: threading.Event) -> None:
        buf = bytearray()
        while not stop.is_set():
            try:
                chunk = link.read(max(1, link.in_waiting))
            except (serial.SerialException, OSError) as exc:
                if not stop.is_set():
                    with self._lock:
                        self._drain(exc, link)
                return
            if not chunk:
                continue
            buf.extend(chunk)
            while True:
                cuts = [i for i in (buf.find(b"\r"), buf.find(b"\n")) if i >= 0]
                if not cuts:
                    break
                idx = min(cuts)
                raw = bytes(buf[:idx])
                del buf[: idx + 1]
                if raw.strip():
                    self._on_line(raw)

    def _on_line(self, raw: bytes) -> None:
        logger.debug("<- %r", raw)
        with self._lock:
            stop_ex = self._stop_exchange
            if stop_ex is not None and self._offer_stop_reply(stop_ex, raw):
                return
            ex = self._pending
            if ex is None:
                logger.warning("Discarding unsolicited line %r", raw)
                return
            try:
                line = decode_line(raw, ex.frame.text)
                verdict = ex.matcher.feed(line)
                if verdict is LineVerdict.UNSOLICITED and ex.strict:
                    raise CommandProtocolError(f"Unexpected reply {line!r}", command=ex.frame.text)
            except CommandProtocolError as exc:
                exc.state = self._state.name
                self._pending = None
                ex.finish(exc)
                return
            if verdict is LineVerdict.UNSOLICITED:
                logger.warning("Discarding line %r while waiting for %s", line, ex.frame.text)
            elif verdict is LineVerdict.DONE:
                self._pending = None
                ex.finish()

    def _offer_stop_reply(self, ex: _Exchange, raw: bytes) -> bool:
        # Lines left over from the abandoned command may precede the stop
        # reply; they are not errors here.
        try:
            verdict = ex.matcher.feed(decode_line(raw, ex.frame.text))
        except CommandProtocolError:
            return False
        if verdict is LineVerdict.DONE:
            self._stop_exchange = None
            logger.info("Emergency stop acknowledged: %s", ex.matcher.payload)
        return verdict is not LineVerdict.UNSOLICITED

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------
    def _deadline(self, frame: CommandFrame) -> float:
        if frame.timeout_s is not None:
            return frame.timeout_s
        link_cfg = self.config.link
        if frame.kind.klass is CommandClass.MOTION:
            return frame.duration_s + link_cfg.motion_timeout_margin_s
        return link_cfg.command_timeout_s + frame.duration_s

    def send(self, frame: CommandFrame) -> Reply:
        """Issue ``frame`` and wait for its reply.

        Retry-safe commands are resent up to ``command_retries`` times on a
        timeout or malformed reply; anything else faults the driver on the
        first failure.
        """
        if not frame.kind.response.expects_reply:
            raise InvalidCommand(f"{frame.kind} gets no reply and cannot be sent as an exchange", command=frame.text)
        reply = self._exchange(frame)
        if frame.kind is SET_PEN:
            self._pen_state = PenState.UP if frame.args[0] == 1 else PenState.DOWN
        elif frame.kind is TOGGLE_PEN and self._pen_state is not None:
            self._pen_state = PenState.DOWN if self._pen_state is PenState.UP else PenState.UP
        elif frame.kind is ENABLE_MOTORS:
            self._step_mode = StepMode(frame.args[0]) if frame.args[1] else StepMode.DISABLE
        return reply

    def _exchange(self, frame: CommandFrame, *, connecting: bool = False) -> Reply:
        raw = frame.encode(self.config.link.checksums)
        deadline = self._deadline(frame)
        retries = self.config.link.command_retries if frame.retry_safe and not connecting else 0
        attempts = 1 + max(0, retries)

        with self._send_lock:
            with self._lock:
                self._check_sendable(frame, connecting)
                if not connecting:
                    self._transition(ConnectionState.BUSY)
            for attempt in range(1, attempts + 1):
                ex = self._post(frame, raw, strict=connecting)
                ex.event.wait(deadline)
                with self._lock:
                    error = self._outcome(ex, deadline)
                    if error is None:
                        if not connecting:
                            self._transition(ConnectionState.READY)
                        return Reply(frame, ex.matcher.payload, ex.matcher.groups)
                    if isinstance(error, (CommandAbandoned, LinkLost)):
                        if self._state is ConnectionState.BUSY:
                            self._transition(ConnectionState.READY)
                        raise error
                    if attempt < attempts:
                        logger.warning(
                            "Retrying %s after %s (attempt %d of %d)", frame.text, error.kind, attempt + 1, attempts
                        )
                        continue
                    if not connecting:
                        self._fault = error
                        self._transition(ConnectionState.FAULTED)
                        error.state = ConnectionState.FAULTED.name
                        logger.error("Command %s failed: %s", frame.text, error)
                    raise error
        raise AssertionError("unreachable")

    def _check_sendable(self, frame: CommandFrame, connecting: bool) -> None:
        if self._halted:
            raise CommandAbandoned(
                "Emergency stop latched; call release_halt() first", command=frame.text, state=self._state.name
            )
        expected = ConnectionState.CONNECTING if connecting else ConnectionState.READY
        if self._state is not expected:
            raise DriverStateError(
                f"Cannot send in state {self._state.name}", command=frame.text, state=self._state.name
            )

    def _post(self, frame: CommandFrame, raw: bytes, *, strict: bool) -> _Exchange:
        with self._lock:
            if self._halted:
                if self._state is ConnectionState.BUSY:
                    self._transition(ConnectionState.READY)
                raise CommandAbandoned("Emergency stop latched", command=frame.text, state=self._state.name)
            if self._link is None:
                raise LinkLost("Link is not open", command=frame.text, state=self._state.name)
            ex = _Exchange(frame, strict=strict)
            self._pending = ex
            self._write(raw)
            return ex

    def _outcome(self, ex: _Exchange, deadline: float) -> Optional[DriverError]:
        if ex.event.is_set():
            return ex.error
        if self._pending is ex:
            self._pending = None
        return CommandTimeout(
            f"No reply within {deadline:.3f} s", command=ex.frame.text, state=self._state.name
        )

    def _write(self, raw: bytes) -> None:
        # Caller holds self._lock.
        link = self._link
        logger.debug("-> %r", raw)
        try:
            link.write(raw)
            link.flush()
        except (serial.SerialException, OSError) as exc:
            error = self._drain(exc, link)
            raise error from exc

    def _drain(self, exc: Exception, link) -> LinkLost:
        # Caller holds self._lock.
        error = LinkLost(f"Serial link failed: {exc}", state=self._state.name)
        if link is not self._link:
            return error
        logger.error("%s", error)
        self._abandon_pending(None, error)
        if self._stop_exchange is not None:
            self._stop_exchange = None
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)
        self._reader_stop.set()
        self._link = None
        self._close_quietly(link)
        return error

    def _abandon_pending(self, reason: Optional[str], error: Optional[DriverError] = None) -> None:
        ex = self._pending
        if ex is None:
            return
        self._pending = None
        if error is None:
            error = CommandAbandoned(
                f"{reason}; outcome unknown", command=ex.frame.text, state=self._state.name
            )
        ex.finish(error)

    def _transition(self, new: ConnectionState) -> None:
        old = self._state
        if new is old:
            return
        if new not in _TRANSITIONS[old]:
            raise DriverStateError(f"Illegal transition {old.name} -> {new.name}", state=old.name)
        self._state = new
        logger.debug("Connection state %s -> %s", old.name, new.name)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------
    def emergency_stop(self, disable_motors: bool = False) -> None:
        """Halt the board now, bypassing the one-command queue.

        The in-flight command (if any) is abandoned, ``ES`` is written at
        once and further sends are refused until :meth:`release_halt`.
        With ``disable_motors`` the board also de-energizes the motors.
        """
        frame = commands.emergency_stop(disable_motors)
        raw = frame.encode(self.config.link.checksums)
        with self._lock:
            self._halted = True
            self._abandon_pending("Abandoned by emergency stop")
            if self._link is None:
                logger.warning("Emergency stop requested without an open link")
                return
            self._stop_exchange = _Exchange(frame)
            self._write(raw)
            if disable_motors:
                self._step_mode = StepMode.DISABLE
        logger.warning("Emergency stop sent: %s", frame.text)

    def release_halt(self) -> None:
        with self._lock:
            self._halted = False

    # ------------------------------------------------------------------
    # Device operations
    # ------------------------------------------------------------------
    def version(self) -> str:
        reply = self.send(commands.version())
        self._firmware = reply.payload
        return reply.payload or ""

    def query_motors(self) -> MotorStatus:
        reply = self.send(commands.query_motors())
        executing, m1, m2, fifo = reply.groups
        return MotorStatus(
            executing=executing == "1",
            motor1_moving=m1 == "1",
            motor2_moving=m2 == "1",
            fifo_pending=fifo == "1",
        )

    def read_position(self) -> Tuple[int, int]:
        """Raw motor step counters (``QS``)."""
        reply = self.send(commands.query_steps())
        return int(reply.groups[0]), int(reply.groups[1])

    def position(self) -> Tuple[int, int]:
        """Carriage position in X/Y steps.  Motor 1 counts A+B, motor 2 counts A-B."""
        m1, m2 = self.read_position()
        return (m1 + m2) // 2, (m1 - m2) // 2

    def query_pen(self) -> PenState:
        reply = self.send(commands.query_pen())
        state = PenState.UP if reply.groups[0] == "1" else PenState.DOWN
        self._pen_state = state
        return state

    def set_pen(self, state: PenState, delay_ms: int = 0) -> None:
        self.send(commands.set_pen(state, delay_ms))

    def pen_up(self, delay_ms: Optional[int] = None) -> None:
        self.set_pen(PenState.UP, self.config.pen.up_delay_ms if delay_ms is None else delay_ms)

    def pen_down(self, delay_ms: Optional[int] = None) -> None:
        self.set_pen(PenState.DOWN, self.config.pen.down_delay_ms if delay_ms is None else delay_ms)

    def toggle_pen(self, delay_ms: Optional[int] = None) -> Optional[PenState]:
        """Flip the pen (``TP``).  Returns the new state when it was known before."""
        self.send(commands.toggle_pen(delay_ms))
        return self._pen_state

    def configure_servo(self) -> None:
        for frame in commands.servo_setup(self.config.pen):
            self.send(frame)

    def enable_motors(self, mode: Optional[StepMode] = None) -> None:
        self.send(commands.enable_motors(mode or self.config.step_mode))

    def disable_motors(self) -> None:
        self.send(commands.disable_motors())

    def zero_position(self) -> None:
        self.send(commands.clear_steps())

    def home(self, rate: int) -> None:
        self.send(commands.home(rate))

    def move_mixed(self, duration_ms: int, steps_a: int, steps_b: int) -> None:
        self.send(commands.mixed_move(duration_ms, steps_a, steps_b))

    def move_steppers(self, duration_ms: int, steps1: int, steps2: Optional[int] = None) -> None:
        """Move the motors themselves (``SM``), not the X/Y axes."""
        self.send(commands.stepper_move(duration_ms, steps1, steps2))

    def move_low_level(
        self,
        rate1: int,
        steps1: int,
        accel1: int,
        rate2: int,
        steps2: int,
        accel2: int,
        clear: Optional[int] = None,
    ) -> None:
        self.send(commands.low_level_move(rate1, steps1, accel1, rate2, steps2, accel2, clear))

    def query_motor_enable(self) -> Tuple[bool, bool, StepMode]:
        """Read the driver enable and microstep pins back from the board.

        The enable lines are active low.  The step mode is decoded from the
        MS1 (RE2), MS2 (RE1) and MS3 (RA6) levels.
        """
        motor1 = not self.read_pin("E", 0)
        motor2 = not self.read_pin("C", 1)
        levels = (self.read_pin("E", 2), self.read_pin("E", 1), self.read_pin("A", 6))
        mode = MICROSTEP_PINS.get(levels)
        if mode is None:
            raise CommandProtocolError(
                f"Inconsistent microstep pins {levels}", command="PI", state=self._state.name
            )
        return motor1, motor2, mode

    def read_pin(self, port: str, pin: int) -> bool:
        reply = self.send(commands.read_pin(port, pin))
        return reply.groups[0] == "1"

    def set_pin_direction(self, port: str, pin: int, output: bool) -> None:
        self.send(commands.pin_direction(port, pin, 0 if output else 1))

    def set_nickname(self, name: str) -> None:
        self.send(commands.nickname(name))
        logger.info("Board nickname set to %r", name)

    def reset(self) -> None:
        """Software reset (``R``).  Servo and motor settings are applied again afterwards."""
        self.send(commands.reset())
        self._pen_state = None
        self._step_mode = None
        logger.info("Board reset")
        self.configure_servo()
        self.enable_motors()

    def reboot(self) -> None:
        """Restart the board firmware (``RB``).

        The board drops off the bus without answering, so the link is closed
        and the driver ends Disconnected; :meth:`connect` again once the port
        reappears.
        """
        frame = commands.reboot()
        raw = frame.encode(self.config.link.checksums)
        with self._send_lock:
            with self._lock:
                self._check_sendable(frame, False)
                if self._link is None:
                    raise LinkLost("Link is not open", command=frame.text, state=self._state.name)
                self._write(raw)
                self._transition(ConnectionState.DISCONNECTED)
        self._teardown_link()
        self._pen_state = None
        self._step_mode = None
        logger.info("Board rebooting, link closed")

    def wait_for_motors(self, timeout: float = 60.0, poll_s: float = 0.01) -> None:
        """Poll ``QM`` until both motors are idle."""
        deadline = time.monotonic() + timeout
        while True:
            if self.query_motors().idle:
                return
            if time.monotonic() >= deadline:
                raise CommandTimeout(
                    f"Motors still moving after {timeout:.1f} s", command="QM", state=self._state.name
                )
            time.sleep(poll_s)


__all__ = [
    "ConnectionState",
    "EBBDriver",
    "MotorStatus",
    "Reply",
    "EBB_PRODUCT",
    "MICROSTEP_PINS",
]
