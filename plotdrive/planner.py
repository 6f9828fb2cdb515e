"""Motion planning: turn ordered polylines into a timed, pen-scheduled job."""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence, Tuple

from .config import MachineConfig
from .errors import UnreachableGeometry
from .geometry import Point, Polyline
from .motion import Action, MotionSegment, PenState, PenTransition, PlannedJob, junction_velocity

logger = logging.getLogger(__name__)


class MotionPlanner:
    """Velocity- and acceleration-bounded planner working in motor steps."""

    def __init__(self, config: MachineConfig) -> None:
        config.motion.validate()
        self.config = config
        spm = config.steps_per_mm
        self.max_velocity = config.motion.max_velocity * spm
        self.acceleration = config.motion.max_acceleration * spm
        self.deviation = config.motion.junction_deviation * spm

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def plan(self, polylines: Sequence[Polyline], *, start: Point = Point(0.0, 0.0)) -> PlannedJob:
        """Plan ``polylines`` in the given order, starting from ``start`` (mm).

        Every coordinate is bounds-checked before anything is emitted, so an
        unreachable drawing fails without producing a partial job.
        """

        self._check_bounds(polylines)
        pen_cfg = self.config.pen

        actions: List[Action] = []
        pen: Optional[PenState] = None
        pos = Point(*self.config.to_steps(start[0], start[1]))
        skipped = 0

        for poly in polylines:
            pts = self._to_steps(poly)
            if len(pts) < 2:
                skipped += 1
                continue
            if pen is not PenState.UP:
                actions.append(PenTransition(PenState.UP, pen_cfg.up_delay_ms))
                pen = PenState.UP
            if pos != pts[0]:
                actions.append(self.travel(pos, pts[0]))
            actions.append(PenTransition(PenState.DOWN, pen_cfg.down_delay_ms))
            pen = PenState.DOWN
            actions.extend(self.profile(pts, PenState.DOWN))
            pos = pts[-1]

        if pen is PenState.DOWN:
            actions.append(PenTransition(PenState.UP, pen_cfg.up_delay_ms))

        if skipped:
            logger.warning("Skipped %d strokes shorter than one motor step", skipped)
        job = PlannedJob(
            actions=tuple(actions),
            steps_per_mm_x=self.config.steps_per_mm_x,
            steps_per_mm_y=self.config.steps_per_mm_y,
        )
        logger.info(
            "Planned %d actions: %.1f mm pen-down, %.1f mm pen-up, %.2f s",
            len(job),
            job.pen_down_distance,
            job.pen_up_distance,
            job.duration,
        )
        return job

    def travel(self, start: Point, end: Point) -> MotionSegment:
        """Single pen-up move that starts and ends at rest."""
        return self.profile([start, end], PenState.UP)[0]

    def profile(self, points: Sequence[Point], pen: PenState) -> List[MotionSegment]:
        """Velocity profile for a chain of step-space points.

        The chain starts and ends at rest.  Junction speeds are limited by
        the cornering rule, then a backward and a forward pass make every
        junction reachable from its neighbours under the acceleration limit.
        """

        a = self.acceleration
        vmax = self.max_velocity
        m = len(points) - 1
        if m < 1:
            return []
        lengths = [points[i].distance(points[i + 1]) for i in range(m)]
        units = [_unit(points[i], points[i + 1], lengths[i]) for i in range(m)]

        junction = [0.0] * (m + 1)
        for i in range(1, m):
            junction[i] = junction_velocity(units[i - 1], units[i], vmax, vmax, a, self.deviation)

        for i in range(m - 1, -1, -1):
            junction[i] = min(junction[i], math.sqrt(junction[i + 1] ** 2 + 2.0 * a * lengths[i]))
        for i in range(m):
            junction[i + 1] = min(junction[i + 1], math.sqrt(junction[i] ** 2 + 2.0 * a * lengths[i]))

        segments: List[MotionSegment] = []
        for i in range(m):
            ve, vx = junction[i], junction[i + 1]
            vp = min(vmax, math.sqrt((2.0 * a * lengths[i] + ve * ve + vx * vx) / 2.0))
            vp = max(vp, ve, vx)
            segments.append(
                MotionSegment(
                    start=points[i],
                    end=points[i + 1],
                    entry_velocity=ve,
                    peak_velocity=vp,
                    exit_velocity=vx,
                    acceleration=a,
                    pen=pen,
                )
            )
        return segments

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    def _check_bounds(self, polylines: Sequence[Polyline]) -> None:
        workspace = self.config.workspace
        for index, poly in enumerate(polylines):
            for p in poly.points:
                if not workspace.contains(p.x, p.y):
                    raise UnreachableGeometry(
                        f"Point ({p.x:.3f}, {p.y:.3f}) mm of stroke {index} is outside the "
                        f"{workspace.width_mm:.1f} x {workspace.height_mm:.1f} mm travel",
                        point=p,
                        polyline_index=index,
                    )

    def _to_steps(self, poly: Polyline) -> List[Point]:
        pts: List[Point] = []
        for p in poly.points:
            q = Point(*self.config.to_steps(p.x, p.y))
            if not pts or pts[-1] != q:
                pts.append(q)
        return pts


def _unit(a: Point, b: Point, length: float) -> Tuple[float, float]:
    return (b.x - a.x) / length, (b.y - a.y) / length


__all__ = ["MotionPlanner"]
