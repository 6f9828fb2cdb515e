"""Geometry extraction: flatten drawing paths into millimetre polylines."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from svgpathtools import Arc, CubicBezier, Line, Path as SVGPath, QuadraticBezier

from .config import Workspace
from .errors import MalformedInput
from .geometry import Polyline, bounding_box
from .svg_loader import Drawing

logger = logging.getLogger(__name__)

MAX_DEPTH = 18


@dataclass
class Transform:
    """Placement of the drawing on the bed, applied after unit scaling."""

    scale: float = 1.0
    rotation_deg: float = 0.0
    offset_x: float = 0.0
    offset_y: float = 0.0
    origin_x: float = 0.0
    origin_y: float = 0.0

    def apply(self, x: float, y: float) -> Tuple[float, float]:
        x -= self.origin_x
        y -= self.origin_y
        theta = math.radians(self.rotation_deg)
        cos_t = math.cos(theta)
        sin_t = math.sin(theta)
        sx = x * self.scale
        sy = y * self.scale
        rx = sx * cos_t - sy * sin_t
        ry = sx * sin_t + sy * cos_t
        return rx + self.offset_x, ry + self.offset_y


def extract_polylines(
    drawing: Drawing,
    tolerance: float,
    *,
    transform: Optional[Transform] = None,
) -> List[Polyline]:
    """Flatten every continuous subpath of ``drawing`` into a polyline.

    ``tolerance`` is the maximum deviation, in millimetres, between a curve
    and its chords.  Strokes that collapse to a single point are dropped.
    """

    scale = drawing.scale
    if not (isinstance(scale, (int, float)) and math.isfinite(scale) and scale > 0):
        raise MalformedInput(f"Invalid unit scale: {scale!r}")
    if not tolerance > 0:
        raise ValueError("tolerance must be positive")
    total_scale = scale * (abs(transform.scale) if transform is not None else 1.0)
    if total_scale <= 0:
        raise MalformedInput("Transform collapses the drawing to a point")
    tol_doc = tolerance / total_scale

    polylines: List[Polyline] = []
    dropped = 0
    for path_index, path in enumerate(drawing.paths):
        if not isinstance(path, SVGPath):
            raise MalformedInput(f"Path {path_index} is not a path object: {type(path).__name__}")
        if len(path) == 0:
            continue
        for subpath in path.continuous_subpaths():
            pts = [subpath[0].start]
            for segment in subpath:
                _flatten_segment(segment, tol_doc, pts)
            mm_pts = []
            for p in pts:
                if not (math.isfinite(p.real) and math.isfinite(p.imag)):
                    raise MalformedInput(f"Non-finite coordinate in path {path_index}")
                x, y = p.real * scale, p.imag * scale
                if transform is not None:
                    x, y = transform.apply(x, y)
                mm_pts.append((x, y))
            poly = Polyline.build(mm_pts)
            if poly is None:
                dropped += 1
                continue
            polylines.append(poly)
    logger.debug(
        "Extracted %d polylines from %d paths (%d degenerate dropped), tolerance %.4f mm",
        len(polylines),
        len(drawing.paths),
        dropped,
        tolerance,
    )
    return polylines


# ---------------------------------------------------------------------------
# Flattening
# ---------------------------------------------------------------------------


def _flatten_segment(segment, tol: float, out: List[complex]) -> None:
    if isinstance(segment, Line):
        out.append(segment.end)
    elif isinstance(segment, (QuadraticBezier, CubicBezier)):
        _flatten_bezier(list(segment.bpoints()), tol, out, 0)
    elif isinstance(segment, Arc):
        sweep = abs(float(segment.delta))
        min_depth = max(0, math.ceil(math.log2(sweep / 90.0))) if sweep > 90.0 else 0
        _flatten_param(segment, 0.0, 1.0, segment.start, segment.end, tol, out, 0, min_depth)
    else:
        raise MalformedInput(f"Unsupported path segment: {type(segment).__name__}")


def _flatten_bezier(ctrl: List[complex], tol: float, out: List[complex], depth: int) -> None:
    if depth >= MAX_DEPTH or _hull_deviation(ctrl) <= tol:
        out.append(ctrl[-1])
        return
    left, right = _split_bezier(ctrl)
    _flatten_bezier(left, tol, out, depth + 1)
    _flatten_bezier(right, tol, out, depth + 1)


def _split_bezier(ctrl: Sequence[complex]) -> Tuple[List[complex], List[complex]]:
    """de Casteljau split at t = 0.5."""
    left = [ctrl[0]]
    right = [ctrl[-1]]
    level = list(ctrl)
    while len(level) > 1:
        level = [(a + b) / 2.0 for a, b in zip(level, level[1:])]
        left.append(level[0])
        right.append(level[-1])
    return left, right[::-1]


def _hull_deviation(ctrl: Sequence[complex]) -> float:
    # The curve lies in the hull of its control points, so the furthest inner
    # control point bounds the distance to the chord.
    a, b = ctrl[0], ctrl[-1]
    return max((_dist_to_chord(p, a, b) for p in ctrl[1:-1]), default=0.0)


def _flatten_param(
    segment,
    t0: float,
    t1: float,
    p0: complex,
    p1: complex,
    tol: float,
    out: List[complex],
    depth: int,
    min_depth: int,
) -> None:
    samples = [segment.point(t0 + (t1 - t0) * q) for q in (0.25, 0.5, 0.75)]
    deviation = max(_dist_to_chord(p, p0, p1) for p in samples)
    if depth >= min_depth and (deviation <= tol or depth >= MAX_DEPTH):
        out.append(p1)
        return
    tm = 0.5 * (t0 + t1)
    pm = samples[1]
    _flatten_param(segment, t0, tm, p0, pm, tol, out, depth + 1, min_depth)
    _flatten_param(segment, tm, t1, pm, p1, tol, out, depth + 1, min_depth)


def _dist_to_chord(p: complex, a: complex, b: complex) -> float:
    d = b - a
    denom = d.real * d.real + d.imag * d.imag
    if denom == 0.0:
        return abs(p - a)
    t = ((p - a).real * d.real + (p - a).imag * d.imag) / denom
    t = max(0.0, min(1.0, t))
    return abs(p - (a + t * d))


# ---------------------------------------------------------------------------
# Placement helpers
# ---------------------------------------------------------------------------


def transformed_bounds(polylines: Iterable[Polyline]) -> Tuple[float, float, float, float]:
    """Bounds as (xmin, xmax, ymin, ymax); all zero for an empty drawing."""
    box = bounding_box(polylines)
    if box is None:
        return (0.0, 0.0, 0.0, 0.0)
    lo, hi = box
    return lo.x, hi.x, lo.y, hi.y


def fits_workspace(bounds: Tuple[float, float, float, float], workspace: Workspace) -> bool:
    xmin, xmax, ymin, ymax = bounds
    return workspace.contains(xmin, ymin) and workspace.contains(xmax, ymax)


__all__ = ["Transform", "extract_polylines", "transformed_bounds", "fits_workspace"]
