"""Top-level package for the plotdrive toolkit.

This package turns vector drawings into velocity-planned pen-plotter jobs and
streams them to an EiBotBoard (AxiDraw) over its serial command protocol.
"""

from .config import (
    LinkSettings,
    MachineConfig,
    MachineModel,
    MotionSettings,
    PenSettings,
    SessionSettings,
    StepMode,
    Workspace,
)
from .geometry import Point, Polyline
from .motion import MotionSegment, PenState, PenTransition, PlannedJob
from .planner import MotionPlanner
from .sequencer import merge_touching, order_polylines, travel_distance
from .session import JobOutcome, JobProgress, JobStatus, SessionController
from .svg_loader import Drawing, SVGDocument, load_drawing
from .toolpath import Transform, extract_polylines

__all__ = [
    "LinkSettings",
    "MachineConfig",
    "MachineModel",
    "MotionSettings",
    "PenSettings",
    "SessionSettings",
    "StepMode",
    "Workspace",
    "Point",
    "Polyline",
    "MotionSegment",
    "PenState",
    "PenTransition",
    "PlannedJob",
    "MotionPlanner",
    "merge_touching",
    "order_polylines",
    "travel_distance",
    "JobOutcome",
    "JobProgress",
    "JobStatus",
    "SessionController",
    "Drawing",
    "SVGDocument",
    "load_drawing",
    "Transform",
    "extract_polylines",
]
