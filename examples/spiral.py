"""Example script that plans a spiral and plots it on a simulated EiBotBoard."""
from __future__ import annotations

import logging
import math

from plotdrive import MachineConfig, MotionPlanner, Polyline, SessionController
from plotdrive.device import EBBDriver, MockEBB


def build_spiral(turns: int = 10, radius: float = 50.0, steps: int = 800) -> Polyline:
    pts = []
    for i in range(steps):
        t = i / (steps - 1)
        angle = turns * 2 * math.pi * t
        r = radius * t
        x = r * math.cos(angle)
        y = r * math.sin(angle)
        pts.append((x + radius + 10.0, y + radius + 10.0))
    return Polyline.build(pts)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    config = MachineConfig()
    config.link.port = "mock"
    job = MotionPlanner(config).plan([build_spiral()])

    board = MockEBB()
    driver = EBBDriver(config, link_factory=board.open)
    driver.connect()
    try:
        session = SessionController(
            driver,
            config,
            status_cb=print,
            progress_cb=lambda done, total: None,
        )
        outcome = session.run(job)
        print(f"{outcome.status.value}: {outcome.completed}/{outcome.total} actions, "
              f"{board.count('XM')} XM frames, planned {job.duration:.1f} s")
    finally:
        driver.disconnect()


if __name__ == "__main__":
    main()
