import math
import random

import pytest

from plotdrive.config import MachineConfig
from plotdrive.errors import UnreachableGeometry
from plotdrive.geometry import Point, Polyline
from plotdrive.motion import MotionSegment, PenState, PenTransition, corner_velocity
from plotdrive.planner import MotionPlanner
from plotdrive.sequencer import order_polylines
from plotdrive.svg_loader import SVGDocument
from plotdrive.toolpath import extract_polylines

TWO_STROKES = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="100mm" height="100mm" viewBox="0 0 100 100">'
    '<path d="M 0 0 L 1 0"/><path d="M 0 10 L 1 10"/>'
    "</svg>"
)

CURVES = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="150mm" height="150mm" viewBox="0 0 150 150">'
    '<path d="M 10 10 C 10 80 90 80 90 10"/>'
    '<path d="M 20 100 L 60 100 L 60 140 L 20 100"/>'
    '<path d="M 120 60 A 15 15 0 1 1 105 75"/>'
    "</svg>"
)


def _pipeline(svg, config):
    drawing = SVGDocument.from_string(svg).to_drawing()
    polys = extract_polylines(drawing, 0.01)
    return MotionPlanner(config).plan(order_polylines(polys))


def _random_strokes(n, seed, size=150.0):
    rng = random.Random(seed)
    out = []
    while len(out) < n:
        pts = [(rng.uniform(0, size), rng.uniform(0, size)) for _ in range(rng.randint(2, 8))]
        poly = Polyline.build(pts)
        if poly is not None:
            out.append(poly)
    return out


class TestTwoStrokeScenario:
    def test_one_travel_between_two_strokes(self, config):
        job = _pipeline(TWO_STROKES, config)
        travels = [s for s in job.segments if s.pen is PenState.UP]
        strokes = [s for s in job.segments if s.pen is PenState.DOWN]
        assert len(travels) == 1
        assert len(strokes) == 2

    def test_action_order(self, config):
        job = _pipeline(TWO_STROKES, config)
        kinds = [
            a.state.value if isinstance(a, PenTransition) else a.pen.value + "-move" for a in job
        ]
        assert kinds == ["up", "down", "down-move", "up", "up-move", "down", "down-move", "up"]

    def test_second_stroke_drawn_from_nearest_end(self, config):
        job = _pipeline(TWO_STROKES, config)
        travel = next(s for s in job.segments if s.pen is PenState.UP)
        # From (1, 0) mm the closest endpoint is (1, 10) mm.
        assert travel.start == Point(80, 0)
        assert travel.end == Point(80, 800)
        assert job.pen_up_distance == pytest.approx(10.0)
        assert job.pen_down_distance == pytest.approx(2.0)


class TestKinematicBounds:
    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_velocity_and_acceleration_limits(self, config, seed):
        planner = MotionPlanner(config)
        job = planner.plan(order_polylines(_random_strokes(15, seed)))
        vmax, amax = planner.max_velocity, planner.acceleration
        for seg in job.segments:
            assert seg.peak_velocity <= vmax * (1 + 1e-9)
            assert seg.acceleration <= amax * (1 + 1e-9)
            # Recompute acceleration from sampled velocities.
            n = 50
            dt = seg.duration / n
            vs = [seg.velocity_at(i * dt) for i in range(n + 1)]
            for v0, v1 in zip(vs, vs[1:]):
                assert abs(v1 - v0) <= amax * dt * (1 + 1e-6) + 1e-9
            # Entry and exit speeds reachable within the segment.
            assert abs(seg.exit_velocity ** 2 - seg.entry_velocity ** 2) <= 2 * amax * seg.length * (1 + 1e-9) + 1e-6

    def test_strokes_start_and_end_at_rest(self, config):
        job = _pipeline(CURVES, config)
        actions = list(job)
        for i, action in enumerate(actions):
            if not isinstance(action, MotionSegment):
                continue
            if i == 0 or not isinstance(actions[i - 1], MotionSegment):
                assert action.entry_velocity == 0.0
            if i == len(actions) - 1 or not isinstance(actions[i + 1], MotionSegment):
                assert action.exit_velocity == 0.0

    def test_velocity_is_continuous_and_corner_limited(self, config):
        planner = MotionPlanner(config)
        job = _pipeline(CURVES, config)
        actions = list(job)
        for prev, nxt in zip(actions, actions[1:]):
            if isinstance(prev, MotionSegment) and isinstance(nxt, MotionSegment):
                assert prev.exit_velocity == nxt.entry_velocity
                limit = corner_velocity(
                    prev.direction, nxt.direction, planner.max_velocity, planner.acceleration, planner.deviation
                )
                assert nxt.entry_velocity <= limit * (1 + 1e-9)

    def test_straight_continuation_keeps_full_speed(self, config, planner):
        stroke = Polyline.build([(0, 0), (100, 0), (200, 0)])
        job = planner.plan([stroke])
        first, second = job.segments
        assert first.exit_velocity == pytest.approx(planner.max_velocity)
        assert second.entry_velocity == pytest.approx(planner.max_velocity)

    def test_reversal_stops(self, config, planner):
        stroke = Polyline.build([(0, 0), (50, 0), (0, 0)])
        job = planner.plan([stroke])
        assert job.segments[0].exit_velocity == 0.0

    def test_short_segment_is_triangular(self, config, planner):
        job = planner.plan([Polyline.build([(0, 0), (0.5, 0)])])
        (seg,) = job.segments
        assert seg.is_triangular
        assert seg.peak_velocity == pytest.approx(math.sqrt(planner.acceleration * seg.length))


class TestPlannerBehaviour:
    def test_out_of_bounds_is_rejected_before_planning(self, config, planner):
        polys = [Polyline.build([(1, 1), (5, 5)]), Polyline.build([(10, 10), (config.workspace.width_mm + 1, 10)])]
        with pytest.raises(UnreachableGeometry) as info:
            planner.plan(polys)
        assert info.value.polyline_index == 1
        assert info.value.point == Point(config.workspace.width_mm + 1, 10)

    def test_negative_coordinates_are_unreachable(self, planner):
        with pytest.raises(UnreachableGeometry):
            planner.plan([Polyline.build([(0, 0), (-0.5, 3)])])

    def test_collapsed_stroke_is_skipped(self, planner, caplog):
        tiny = Polyline.build([(10, 10), (10.001, 10)])
        real = Polyline.build([(20, 20), (25, 20)])
        with caplog.at_level("WARNING", logger="plotdrive.planner"):
            job = planner.plan([tiny, real])
        assert len([s for s in job.segments if s.pen is PenState.DOWN]) == 1
        assert "Skipped 1" in caplog.text

    def test_pen_delays_come_from_config(self, config, planner):
        job = planner.plan([Polyline.build([(5, 5), (6, 5)])])
        ups = [t for t in job.pen_transitions if t.state is PenState.UP]
        downs = [t for t in job.pen_transitions if t.state is PenState.DOWN]
        assert {t.delay_ms for t in ups} == {config.pen.up_delay_ms}
        assert {t.delay_ms for t in downs} == {config.pen.down_delay_ms}

    def test_steps_use_axis_resolution(self):
        config = MachineConfig(steps_per_mm_x=80.0, steps_per_mm_y=40.0)
        job = MotionPlanner(config).plan([Polyline.build([(0, 0), (2, 2)])])
        (seg,) = [s for s in job.segments if s.pen is PenState.DOWN]
        assert seg.end == Point(160, 80)
        assert job.pen_down_distance == pytest.approx(math.hypot(2, 2))

    def test_empty_job(self, planner):
        job = planner.plan([])
        assert len(job) == 0
        assert job.duration == 0.0

    def test_deterministic_output(self, config):
        assert _pipeline(CURVES, config).to_json() == _pipeline(CURVES, config).to_json()
