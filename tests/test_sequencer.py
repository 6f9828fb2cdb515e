import random

import pytest

from plotdrive.geometry import Point, Polyline
from plotdrive.sequencer import merge_touching, order_polylines, sequence, travel_distance


def _canonical(poly):
    return min(poly.points, tuple(reversed(poly.points)))


def _random_polylines(n, seed):
    rng = random.Random(seed)
    polys = []
    while len(polys) < n:
        pts = [(rng.uniform(0, 200), rng.uniform(0, 200)) for _ in range(rng.randint(2, 5))]
        poly = Polyline.build(pts)
        if poly is not None:
            polys.append(poly)
    return polys


class TestOrderPolylines:
    @pytest.mark.parametrize("n,seed", [(1, 0), (7, 1), (50, 2), (600, 3)])
    def test_output_is_a_permutation(self, n, seed):
        polys = _random_polylines(n, seed)
        ordered = order_polylines(polys)
        assert len(ordered) == n
        assert sorted(map(_canonical, ordered)) == sorted(map(_canonical, polys))

    def test_empty_input(self):
        assert order_polylines([]) == []

    def test_nearest_endpoint_first(self):
        far = Polyline.build([(100, 100), (110, 100)])
        near = Polyline.build([(1, 1), (5, 1)])
        assert order_polylines([far, near]) == [near, far]

    def test_reverses_when_far_end_is_closer(self):
        poly = Polyline.build([(50, 0), (1, 0)])
        (out,) = order_polylines([poly])
        assert out.start == Point(1, 0)

    def test_no_reversal_when_disabled(self):
        poly = Polyline.build([(50, 0), (1, 0)])
        (out,) = order_polylines([poly], allow_reverse=False)
        assert out is poly

    def test_ties_prefer_input_order(self):
        a = Polyline.build([(10, 0), (20, 0)])
        b = Polyline.build([(0, 10), (0, 20)])
        assert order_polylines([a, b])[0] is a
        assert order_polylines([b, a])[0] is b

    def test_ties_prefer_forward_direction(self):
        # Both ends of a closed loop coincide with the start point.
        loop = Polyline.build([(5, 0), (10, 0), (10, 5), (5, 0)])
        (out,) = order_polylines([loop])
        assert out is loop

    def test_deterministic(self):
        polys = _random_polylines(300, 11)
        assert order_polylines(polys) == order_polylines(list(polys))

    def test_reduces_travel(self):
        polys = [Polyline.build([(x, 0), (x, 1)]) for x in (90, 10, 50, 30, 70)]
        ordered = order_polylines(polys)
        assert travel_distance(ordered) < travel_distance(polys)

    def test_custom_start(self):
        a = Polyline.build([(0, 0), (1, 0)])
        b = Polyline.build([(100, 0), (101, 0)])
        assert order_polylines([a, b], Point(120, 0))[0].start == Point(101, 0)


class TestHelpers:
    def test_travel_distance(self):
        polys = [Polyline.build([(3, 4), (10, 4)]), Polyline.build([(10, 8), (0, 8)])]
        assert travel_distance(polys) == pytest.approx(5.0 + 4.0)

    def test_merge_touching(self):
        polys = [
            Polyline.build([(0, 0), (1, 0)]),
            Polyline.build([(1.01, 0), (2, 0)]),
            Polyline.build([(9, 9), (10, 10)]),
        ]
        merged = merge_touching(polys, join_tol_mm=0.05)
        assert len(merged) == 2
        assert merged[0].end == Point(2, 0)

    def test_sequence_logs_travel(self, caplog):
        polys = _random_polylines(20, 5)
        with caplog.at_level("INFO", logger="plotdrive.sequencer"):
            ordered = sequence(polys)
        assert len(ordered) == 20
        assert "Optimize order" in caplog.text
