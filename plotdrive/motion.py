"""Motion primitives: timed segments, pen transitions and planned jobs.

All quantities here are in machine units: positions in motor steps,
velocities in steps/s and accelerations in steps/s^2.  A segment stores its
velocity profile; the timing is always derived from it.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .geometry import Point

_EPS = 1e-9


class PenState(Enum):
    UP = "up"
    DOWN = "down"


@dataclass(frozen=True)
class PenTransition:
    """Raise or lower the pen, then wait ``delay_ms`` for the servo to settle."""

    state: PenState
    delay_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "pen", "state": self.state.value, "delay_ms": self.delay_ms}


@dataclass(frozen=True)
class MotionSegment:
    """A straight move with a trapezoidal (or triangular) velocity profile.

    The carriage accelerates at ``acceleration`` from ``entry_velocity`` to
    ``peak_velocity``, cruises, then decelerates to ``exit_velocity``.  When
    the segment is too short to cruise, the profile degrades to a triangle
    whose apex is ``peak_velocity``.
    """

    start: Point
    end: Point
    entry_velocity: float
    peak_velocity: float
    exit_velocity: float
    acceleration: float
    pen: PenState = PenState.DOWN

    def __post_init__(self) -> None:
        if self.acceleration <= 0:
            raise ValueError("acceleration must be positive")
        if min(self.entry_velocity, self.exit_velocity) < 0:
            raise ValueError("velocities must be non-negative")
        if self.peak_velocity + _EPS < max(self.entry_velocity, self.exit_velocity):
            raise ValueError("peak velocity below entry/exit velocity")
        if self.length > 0 and self.peak_velocity <= 0:
            raise ValueError("a segment with length needs a positive peak velocity")
        ramp = self.accel_distance + self.decel_distance
        if ramp > self.length * (1.0 + 1e-9) + 1e-6:
            raise ValueError(
                f"profile needs {ramp:.6f} steps of ramps but segment is {self.length:.6f} long"
            )

    # ----------------------------- geometry ----------------------------------
    @property
    def length(self) -> float:
        return self.start.distance(self.end)

    @property
    def delta(self) -> Tuple[float, float]:
        return self.end.x - self.start.x, self.end.y - self.start.y

    @property
    def direction(self) -> Tuple[float, float]:
        length = self.length
        if length == 0:
            return 0.0, 0.0
        dx, dy = self.delta
        return dx / length, dy / length

    # ----------------------------- profile -----------------------------------
    @property
    def accel_distance(self) -> float:
        return (self.peak_velocity ** 2 - self.entry_velocity ** 2) / (2.0 * self.acceleration)

    @property
    def decel_distance(self) -> float:
        return (self.peak_velocity ** 2 - self.exit_velocity ** 2) / (2.0 * self.acceleration)

    @property
    def cruise_distance(self) -> float:
        return max(0.0, self.length - self.accel_distance - self.decel_distance)

    @property
    def accel_time(self) -> float:
        return (self.peak_velocity - self.entry_velocity) / self.acceleration

    @property
    def decel_time(self) -> float:
        return (self.peak_velocity - self.exit_velocity) / self.acceleration

    @property
    def cruise_time(self) -> float:
        if self.peak_velocity <= 0:
            return 0.0
        return self.cruise_distance / self.peak_velocity

    @property
    def duration(self) -> float:
        return self.accel_time + self.cruise_time + self.decel_time

    @property
    def is_triangular(self) -> bool:
        return self.cruise_distance <= _EPS

    def distance_at(self, t: float) -> float:
        """Distance travelled after ``t`` seconds, clamped to the segment."""

        t = max(0.0, min(self.duration, t))
        a = self.acceleration
        t1 = self.accel_time
        t2 = self.cruise_time
        if t <= t1:
            s = self.entry_velocity * t + 0.5 * a * t * t
        elif t <= t1 + t2:
            s = self.accel_distance + self.peak_velocity * (t - t1)
        else:
            tau = t - t1 - t2
            s = self.accel_distance + self.cruise_distance + self.peak_velocity * tau - 0.5 * a * tau * tau
        return max(0.0, min(self.length, s))

    def velocity_at(self, t: float) -> float:
        t = max(0.0, min(self.duration, t))
        t1 = self.accel_time
        t2 = self.cruise_time
        if t <= t1:
            return self.entry_velocity + self.acceleration * t
        if t <= t1 + t2:
            return self.peak_velocity
        return max(0.0, self.peak_velocity - self.acceleration * (t - t1 - t2))

    def position_at(self, t: float) -> Point:
        length = self.length
        if length == 0:
            return self.start
        return self.start.lerp(self.end, self.distance_at(t) / length)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "move",
            "pen": self.pen.value,
            "start": [self.start.x, self.start.y],
            "end": [self.end.x, self.end.y],
            "entry_velocity": self.entry_velocity,
            "peak_velocity": self.peak_velocity,
            "exit_velocity": self.exit_velocity,
            "acceleration": self.acceleration,
            "duration": self.duration,
        }


Action = Union[MotionSegment, PenTransition]


def corner_velocity(
    incoming: Tuple[float, float],
    outgoing: Tuple[float, float],
    max_velocity: float,
    acceleration: float,
    deviation: float,
) -> float:
    """Highest speed at which two unit directions can be joined.

    Junction-deviation model: the corner is treated as an arc that stays
    within ``deviation`` of the sharp corner, traversed at centripetal
    acceleration ``acceleration``.  Straight continuation yields
    ``max_velocity``; a full reversal yields zero.
    """

    dot = incoming[0] * outgoing[0] + incoming[1] * outgoing[1]
    sine = math.sqrt(max(0.0, min(1.0, (1.0 + dot) / 2.0)))
    if sine <= _EPS:
        return 0.0
    if sine >= 1.0 - _EPS:
        return max_velocity
    v = math.sqrt(acceleration * deviation * sine / (1.0 - sine))
    return min(v, max_velocity)


def junction_velocity(
    incoming: Tuple[float, float],
    outgoing: Tuple[float, float],
    incoming_cap: float,
    outgoing_cap: float,
    acceleration: float,
    deviation: float,
) -> float:
    """Corner speed between two edges, bounded by the slower edge's own cap."""
    cap = min(incoming_cap, outgoing_cap)
    return corner_velocity(incoming, outgoing, cap, acceleration, deviation)


@dataclass(frozen=True)
class PlannedJob:
    """Immutable, ordered sequence of moves and pen transitions."""

    actions: Tuple[Action, ...] = ()
    steps_per_mm_x: float = 1.0
    steps_per_mm_y: float = 1.0

    def __len__(self) -> int:
        return len(self.actions)

    def __iter__(self) -> Iterator[Action]:
        return iter(self.actions)

    def __getitem__(self, index: int) -> Action:
        return self.actions[index]

    @property
    def segments(self) -> List[MotionSegment]:
        return [a for a in self.actions if isinstance(a, MotionSegment)]

    @property
    def pen_transitions(self) -> List[PenTransition]:
        return [a for a in self.actions if isinstance(a, PenTransition)]

    @property
    def duration(self) -> float:
        total = 0.0
        for action in self.actions:
            if isinstance(action, MotionSegment):
                total += action.duration
            else:
                total += action.delay_ms / 1000.0
        return total

    def _mm_length(self, seg: MotionSegment) -> float:
        dx, dy = seg.delta
        return math.hypot(dx / self.steps_per_mm_x, dy / self.steps_per_mm_y)

    @property
    def pen_down_distance(self) -> float:
        return sum(self._mm_length(s) for s in self.segments if s.pen is PenState.DOWN)

    @property
    def pen_up_distance(self) -> float:
        return sum(self._mm_length(s) for s in self.segments if s.pen is PenState.UP)

    def position_before(self, index: int) -> Point:
        """Planned carriage position (steps) when action ``index`` starts."""

        for action in reversed(self.actions[: max(0, index)]):
            if isinstance(action, MotionSegment):
                return action.end
        for action in self.actions[max(0, index):]:
            if isinstance(action, MotionSegment):
                return action.start
        return Point(0, 0)

    def pen_before(self, index: int) -> Optional[PenState]:
        """Pen state when action ``index`` starts; None before the first transition."""

        for action in reversed(self.actions[: max(0, index)]):
            if isinstance(action, PenTransition):
                return action.state
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps_per_mm": [self.steps_per_mm_x, self.steps_per_mm_y],
            "actions": [a.to_dict() for a in self.actions],
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode("ascii")


__all__ = [
    "PenState",
    "PenTransition",
    "MotionSegment",
    "Action",
    "PlannedJob",
    "corner_velocity",
    "junction_velocity",
]
