"""Path sequencing: order strokes to keep pen-up travel short."""

from __future__ import annotations

import logging
import math
from typing import List, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from .geometry import Point, Polyline

logger = logging.getLogger(__name__)

_INITIAL_K = 8


def order_polylines(
    polylines: Sequence[Polyline],
    start: Point = Point(0.0, 0.0),
    *,
    allow_reverse: bool = True,
) -> List[Polyline]:
    """Greedy nearest-endpoint ordering.

    From the current pen position, always travel to the closest endpoint of
    an unvisited polyline; reaching its far end first means the polyline is
    drawn reversed.  Ties prefer the polyline appearing earlier in the input,
    then the forward direction, so the output is deterministic.

    Endpoints live in a KD-tree which is rebuilt whenever half of its
    entries have been consumed, keeping the whole pass near O(n log n).
    """

    n = len(polylines)
    if n == 0:
        return []

    # Row r of the endpoint table belongs to polyline r // stride; odd rows
    # are the far ends (reverse traversal) when reversal is allowed.
    stride = 2 if allow_reverse else 1
    rows: List[Tuple[float, float]] = []
    for poly in polylines:
        rows.append(poly.start)
        if allow_reverse:
            rows.append(poly.end)
    coords = np.asarray(rows, dtype=float)

    visited = [False] * n
    ordered: List[Polyline] = []
    cur = Point(float(start[0]), float(start[1]))

    index = _EndpointIndex(coords, stride, visited)
    while len(ordered) < n:
        poly_idx, reverse = index.nearest(cur)
        visited[poly_idx] = True
        index.consume()
        poly = polylines[poly_idx]
        if reverse:
            poly = poly.reversed()
        ordered.append(poly)
        cur = poly.end
    return ordered


class _EndpointIndex:
    """KD-tree over the endpoints of the still unvisited polylines."""

    def __init__(self, coords: np.ndarray, stride: int, visited: List[bool]) -> None:
        self.coords = coords
        self.stride = stride
        self.visited = visited
        self.remaining = len(visited)
        self._rebuild()

    def _rebuild(self) -> None:
        self.rows = np.array(
            [r for r in range(len(self.coords)) if not self.visited[r // self.stride]], dtype=int
        )
        self.tree = cKDTree(self.coords[self.rows])
        self.built_with = self.remaining

    def consume(self) -> None:
        self.remaining -= 1
        if self.remaining and self.remaining * 2 <= self.built_with:
            self._rebuild()

    def nearest(self, cur: Point) -> Tuple[int, bool]:
        size = len(self.rows)
        k = min(_INITIAL_K, size)
        while True:
            dists, idxs = self.tree.query(cur, k=k)
            dists = np.atleast_1d(dists)
            idxs = np.atleast_1d(idxs)
            live = [d for d, i in zip(dists, idxs) if i < size and not self._dead(i)]
            if live:
                break
            if k >= size:
                raise RuntimeError("Endpoint index is empty while polylines remain")
            k = min(size, k * 2)

        # Gather every live endpoint that could tie with the best one and
        # resolve exactly in Python so the tie-break does not depend on the
        # tree layout.
        radius = float(min(live)) * (1.0 + 1e-9) + 1e-12
        best = None
        for i in self.tree.query_ball_point(cur, radius):
            if self._dead(i):
                continue
            row = int(self.rows[i])
            px, py = self.coords[row]
            d = math.hypot(float(px) - cur.x, float(py) - cur.y)
            key = (d, row // self.stride, row % self.stride)
            if best is None or key < best:
                best = key
        if best is None:
            raise RuntimeError("Endpoint lookup lost its nearest candidate")
        return best[1], bool(best[2])

    def _dead(self, tree_index: int) -> bool:
        return self.visited[int(self.rows[tree_index]) // self.stride]


def travel_distance(polylines: Sequence[Polyline], start: Point = Point(0.0, 0.0)) -> float:
    """Total pen-up travel when drawing ``polylines`` in the given order."""

    cur = Point(float(start[0]), float(start[1]))
    total = 0.0
    for poly in polylines:
        total += cur.distance(poly.start)
        cur = poly.end
    return total


def merge_touching(polylines: Sequence[Polyline], *, join_tol_mm: float = 0.05) -> List[Polyline]:
    """Merge chains whose tail meets the head of another within ``join_tol_mm``.

    This changes the number of strokes, so it is never applied implicitly.
    """

    chains = [list(p.points) for p in polylines]
    used = [False] * len(chains)
    merged: List[Polyline] = []

    for i, chain in enumerate(chains):
        if used[i]:
            continue
        pts = list(chain)
        used[i] = True
        changed = True
        while changed:
            changed = False
            tail = pts[-1]
            for j, other in enumerate(chains):
                if used[j]:
                    continue
                if tail.distance(other[0]) <= join_tol_mm:
                    pts.extend(other[1:])
                    used[j] = True
                    changed = True
                    break
        poly = Polyline.build(pts)
        if poly is not None:
            merged.append(poly)

    logger.debug(
        "Merge touching: %d strokes -> %d, join_tol=%s mm", len(polylines), len(merged), join_tol_mm
    )
    return merged


def sequence(
    polylines: Sequence[Polyline],
    start: Point = Point(0.0, 0.0),
    *,
    allow_reverse: bool = True,
) -> List[Polyline]:
    """Order ``polylines`` and log the pen-up travel saved."""

    before = travel_distance(polylines, start)
    ordered = order_polylines(polylines, start, allow_reverse=allow_reverse)
    after = travel_distance(ordered, start)
    gain = max(0.0, before - after)
    pct = (gain / before * 100.0) if before > 0 else 0.0
    logger.info(
        "Optimize order: nn, travel %.2f -> %.2f mm, saved %.2f mm (%.1f percent)",
        before,
        after,
        gain,
        pct,
    )
    return ordered


__all__ = ["order_polylines", "travel_distance", "merge_touching", "sequence"]
