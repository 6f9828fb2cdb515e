"""Plan an SVG file and plot it on an AxiDraw, or just print the plan."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Tuple

from plotdrive import (
    JobStatus,
    MachineConfig,
    MachineModel,
    MotionPlanner,
    SessionController,
    Transform,
    extract_polylines,
)
from plotdrive.device import EBBDriver, MockEBB
from plotdrive.errors import PlotDriveError
from plotdrive.sequencer import merge_touching, sequence
from plotdrive.svg_loader import load_drawing

logger = logging.getLogger("plot_svg")


def _parse_offset(value: str) -> Tuple[float, float]:
    raw = value.strip().lower().replace("mm", "")
    try:
        x_str, y_str = raw.split(",", 1)
        return float(x_str), float(y_str)
    except (ValueError, TypeError) as exc:
        raise argparse.ArgumentTypeError("Offset must be in X,Y format, e.g. 10,20") from exc


def parse_arguments() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plot an SVG drawing on an EiBotBoard pen plotter.")
    parser.add_argument("svg", type=Path, help="Drawing to plot.")
    parser.add_argument(
        "--serial-device",
        "-s",
        dest="serial_device",
        help="Serial port of the EiBotBoard; auto-detected when omitted.",
    )
    parser.add_argument(
        "--model",
        choices=[m.name for m in MachineModel],
        default=MachineModel.V3.name,
        help="AxiDraw model, sets the travel bounds.",
    )
    parser.add_argument("--scale", type=float, default=1.0, help="Extra scale applied to the drawing.")
    parser.add_argument("--rotate", type=float, default=0.0, help="Rotation in degrees.")
    parser.add_argument(
        "--offset",
        type=_parse_offset,
        default=(0.0, 0.0),
        metavar="X,Y",
        help="Offset of the drawing on the bed in millimeters.",
    )
    parser.add_argument("--tolerance", type=float, default=None, help="Curve flattening tolerance in mm.")
    parser.add_argument("--no-home", action="store_true", help="Stay at the last point after plotting.")
    parser.add_argument("--mock", action="store_true", help="Plot on the in-memory board simulator.")
    parser.add_argument("--plan-only", action="store_true", help="Print the plan summary and exit.")
    parser.add_argument("--json", type=Path, help="Write the planned job as JSON to this file.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log wire traffic.")
    return parser.parse_args()


def main() -> int:
    args = parse_arguments()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = MachineConfig.for_model(MachineModel[args.model])
    config.link.port = args.serial_device
    config.session.return_home = not args.no_home
    tolerance = args.tolerance if args.tolerance is not None else config.motion.tolerance
    transform = Transform(
        scale=args.scale, rotation_deg=args.rotate, offset_x=args.offset[0], offset_y=args.offset[1]
    )

    try:
        drawing = load_drawing(args.svg)
        polylines = extract_polylines(drawing, tolerance, transform=transform)
        polylines = sequence(merge_touching(polylines))
        job = MotionPlanner(config).plan(polylines)
    except PlotDriveError as exc:
        logger.error("Cannot plan %s: %s", args.svg, exc)
        return 1

    print(
        f"{len(polylines)} strokes, {len(job)} actions, pen down {job.pen_down_distance:.1f} mm, "
        f"pen up {job.pen_up_distance:.1f} mm, about {job.duration:.1f} s"
    )
    if args.json is not None:
        args.json.write_bytes(job.to_json())
    if args.plan_only:
        return 0

    if args.mock:
        config.link.port = config.link.port or "mock"
        driver = EBBDriver(config, link_factory=MockEBB().open)
    else:
        driver = EBBDriver(config)
    session = SessionController(
        driver,
        config,
        status_cb=lambda message: logger.info("%s", message),
        progress_cb=lambda done, total: logger.debug("Progress %d/%d", done, total),
    )
    try:
        driver.connect()
        session.start(job)
        try:
            outcome = session.wait()
        except KeyboardInterrupt:
            session.abort()
            outcome = session.wait()
    except PlotDriveError as exc:
        logger.error("Plot failed: %s", exc)
        return 1
    finally:
        driver.disconnect()

    if outcome is None or outcome.status is not JobStatus.COMPLETED:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
