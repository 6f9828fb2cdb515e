"""Job execution: stream a planned job through the driver.

The controller walks the job action by action.  A pen transition becomes a
single ``SP`` frame, a motion segment a run of time-sliced ``XM`` frames.
An action counts as completed once every one of its frames has been
acknowledged, so a faulted job can be restarted from ``outcome.completed``.
A resumed run reads the carriage position back from the board, travels
there with the pen up and re-profiles an interrupted stroke so it starts
from rest.  A pause that holds the job inside a stroke is recovered the same
way once the job is resumed.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .config import MachineConfig
from .device import commands
from .device.ebb import EBBDriver
from .device.protocol import CommandFrame
from .errors import CommandAbandoned, DriverError, InvalidCommand, PlotDriveError, SessionError
from .geometry import Point
from .motion import Action, MotionSegment, PenState, PenTransition, PlannedJob
from .planner import MotionPlanner

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]
ProgressCallback = Callable[[int, int], None]


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAULTED = "faulted"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ABORTED, JobStatus.FAULTED)


@dataclass(frozen=True)
class JobProgress:
    status: JobStatus
    completed: int
    total: int
    error: Optional[str] = None

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 1.0


@dataclass(frozen=True)
class JobOutcome:
    """Terminal result of a job run.

    ``completed`` is the number of fully acknowledged actions, which is also
    the index to resume from.  For a faulted job ``action_index`` and
    ``frame`` identify the action and command that failed.
    """

    status: JobStatus
    completed: int
    total: int
    error: Optional[PlotDriveError] = None
    action_index: Optional[int] = None
    frame: Optional[str] = None

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None

    @property
    def resume_from(self) -> int:
        return self.completed


class _Aborted(Exception):
    pass


def _in_motion(action: Action, sent: int) -> bool:
    """True when the carriage is still moving as ``action`` frame ``sent`` is due."""
    return isinstance(action, MotionSegment) and (sent > 0 or action.entry_velocity > 0)


class SessionController:
    """Runs planned jobs on an :class:`EBBDriver`, optionally in a background thread."""

    def __init__(
        self,
        driver: EBBDriver,
        config: MachineConfig,
        *,
        status_cb: Optional[StatusCallback] = None,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> None:
        self.driver = driver
        self.config = config
        self.planner = MotionPlanner(config)
        self.status_cb = status_cb or (lambda message: None)
        self.progress_cb = progress_cb or (lambda done, total: None)

        self._job_lock = threading.Lock()
        self._abort_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._abort_event = threading.Event()
        self._resume_event = threading.Event()
        self._resume_event.set()
        self._status = JobStatus.PENDING
        self._completed = 0
        self._total = 0
        self._error: Optional[str] = None
        self._outcome: Optional[JobOutcome] = None

    # ------------------------------------------------------------------
    @property
    def status(self) -> JobStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status in (JobStatus.RUNNING, JobStatus.PAUSED)

    @property
    def outcome(self) -> Optional[JobOutcome]:
        return self._outcome

    def progress(self) -> JobProgress:
        return JobProgress(self._status, self._completed, self._total, self._error)

    # ------------------------------------------------------------------
    def run(self, job: PlannedJob, start_at: int = 0) -> JobOutcome:
        """Execute ``job`` from action ``start_at`` and block until it ends."""
        self._begin(job, start_at)
        return self._execute(job, start_at)

    def start(self, job: PlannedJob, start_at: int = 0) -> None:
        """Execute ``job`` on a background thread; see :meth:`wait`."""
        self._begin(job, start_at)
        self._thread = threading.Thread(
            target=self._execute, args=(job, start_at), name="plot-session", daemon=True
        )
        self._thread.start()

    def wait(self, timeout: Optional[float] = None) -> Optional[JobOutcome]:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                return None
        return self._outcome

    def pause(self) -> None:
        """Let the in-flight command finish, then hold further commands.

        The carriage stops while the job is held, so a pause that lands
        inside a stroke makes the rest of that stroke start again from rest.
        """
        if not self.is_running:
            return
        self._resume_event.clear()
        self._status = JobStatus.PAUSED
        self.status_cb("Job paused")

    def resume(self) -> None:
        if self._status is not JobStatus.PAUSED:
            return
        self._status = JobStatus.RUNNING
        self._resume_event.set()
        self.status_cb("Job resumed")

    def abort(self) -> None:
        """Stop the machine immediately and end the job as aborted."""
        if not self.is_running:
            return
        # The halt is latched before the abort flag is raised, so no frame
        # can reach the board between the two.
        with self._abort_lock:
            try:
                self.driver.emergency_stop()
            except DriverError as exc:
                logger.error("Emergency stop failed: %s", exc)
            finally:
                self._abort_event.set()
                self._resume_event.set()
            self.status_cb("Job stopping ...")

    # ------------------------------------------------------------------
    def _begin(self, job: PlannedJob, start_at: int) -> None:
        with self._job_lock:
            if self.is_running:
                raise SessionError("A job is already running")
            if not 0 <= start_at <= len(job):
                raise SessionError(f"start_at={start_at} outside 0..{len(job)}")
            self._abort_event.clear()
            self._resume_event.set()
            self._status = JobStatus.RUNNING
            self._completed = start_at
            self._total = len(job)
            self._error = None
            self._outcome = None

    def _execute(self, job: PlannedJob, start_at: int) -> JobOutcome:
        try:
            return self._run_actions(job, start_at)
        finally:
            if not self._status.terminal:
                # Only reached when something other than a device error
                # escaped, such as a failing callback.
                logger.error("Job ended unexpectedly after %d of %d actions", self._completed, self._total)
                self._status = JobStatus.FAULTED
                self._outcome = JobOutcome(JobStatus.FAULTED, self._completed, self._total)

    def _run_actions(self, job: PlannedJob, start_at: int) -> JobOutcome:
        self.status_cb("Job started")
        self.progress_cb(self._completed, self._total)
        index: Optional[int] = None
        frame: Optional[CommandFrame] = None
        try:
            if start_at == 0:
                if self.config.session.zero_on_start:
                    frame = commands.clear_steps()
                    self._dispatch(frame)
                actions = list(job)
            else:
                actions = self._resume_actions(job, start_at)
                self._reposition(job, start_at)
            index = start_at
            while index < len(actions):
                action = actions[index]
                for sent, frame in enumerate(self._frames(action)):
                    if self._hold() and _in_motion(action, sent):
                        index = self._replan_after_pause(actions, index)
                        break
                    self._dispatch(frame)
                else:
                    index += 1
                    self._completed = index
                    self.progress_cb(self._completed, self._total)
            index = None
            self._finish_motion()
        except _Aborted:
            return self._aborted()
        except DriverError as exc:
            if self._abort_event.is_set() or (isinstance(exc, CommandAbandoned) and self.driver.halted):
                return self._aborted()
            return self._faulted(exc, index, frame)
        except InvalidCommand as exc:
            return self._faulted(exc, index, frame)
        return self._finish(JobOutcome(JobStatus.COMPLETED, self._completed, self._total), "Job finished")

    def _frames(self, action: Action) -> List[CommandFrame]:
        if isinstance(action, MotionSegment):
            return commands.segment_frames(action, self.config.session.timeslice_ms)
        if isinstance(action, PenTransition):
            return [commands.set_pen(action.state, action.delay_ms)]
        raise SessionError(f"Unknown job action {action!r}")

    @staticmethod
    def _stroke_end(actions: List[Action], start: int) -> int:
        end = start
        while end < len(actions) and isinstance(actions[end], MotionSegment):
            end += 1
        return end

    def _resume_actions(self, job: PlannedJob, start_at: int) -> List[Action]:
        actions = list(job)
        end = self._stroke_end(actions, start_at)
        if end > start_at and actions[start_at].entry_velocity > 0:
            run = actions[start_at:end]
            points = [run[0].start] + [seg.end for seg in run]
            actions[start_at:end] = self.planner.profile(points, run[0].pen)
        return actions

    def _replan_after_pause(self, actions: List[Action], index: int) -> int:
        """Re-profile the held stroke from where the carriage stopped.

        ``actions`` is updated in place; returns the index to continue from.
        """
        self.driver.wait_for_motors(timeout=self.config.session.idle_timeout_s)
        here = Point(*self.driver.position())
        end = self._stroke_end(actions, index)
        run = actions[index:end]
        if here == run[0].end:
            index += 1
            self._completed = index
            self.progress_cb(self._completed, self._total)
            run = run[1:]
        logger.info("Restarting stroke at action %d from rest at %s", index, tuple(here))
        if run:
            points = [here] + [seg.end for seg in run]
            actions[index:end] = self.planner.profile(points, run[0].pen)
        return index

    def _reposition(self, job: PlannedJob, start_at: int) -> None:
        """Bring the carriage and pen to where action ``start_at`` expects them."""
        target = job.position_before(start_at)
        here = Point(*self.driver.position())
        logger.info("Resuming at action %d: moving from %s to %s", start_at, tuple(here), tuple(target))
        self._dispatch(commands.set_pen(PenState.UP, self.config.pen.up_delay_ms))
        if here != target:
            travel = self.planner.travel(here, target)
            for frame in commands.segment_frames(travel, self.config.session.timeslice_ms):
                self._dispatch(frame)
        if job.pen_before(start_at) is PenState.DOWN:
            self._dispatch(commands.set_pen(PenState.DOWN, self.config.pen.down_delay_ms))

    def _hold(self) -> bool:
        """Block while paused.  True when the job was actually held."""
        if self._resume_event.is_set():
            return False
        self._resume_event.wait()
        if self._abort_event.is_set():
            raise _Aborted()
        return True

    def _dispatch(self, frame: CommandFrame) -> None:
        if self._abort_event.is_set():
            raise _Aborted()
        self.driver.send(frame)

    def _finish_motion(self) -> None:
        session = self.config.session
        if session.return_home:
            rate = int(round(self.config.motion.max_velocity * self.config.steps_per_mm))
            rate = max(commands.HOME_RATE_RANGE[0], min(commands.HOME_RATE_RANGE[1], rate))
            self._dispatch(commands.home(rate))
        self.driver.wait_for_motors(timeout=session.idle_timeout_s)

    def _aborted(self) -> JobOutcome:
        with self._abort_lock:
            self.driver.release_halt()
        try:
            self.driver.pen_up()
        except DriverError as exc:
            logger.error("Could not raise the pen after abort: %s", exc)
        return self._finish(JobOutcome(JobStatus.ABORTED, self._completed, self._total), "Job stopped")

    def _faulted(self, exc: PlotDriveError, index: Optional[int], frame: Optional[CommandFrame]) -> JobOutcome:
        text = exc.command or (frame.text if frame is not None else None)
        logger.error("Job faulted at action %s on %s: %s", index, text, exc)
        self._error = f"{exc.kind}: {exc}"
        outcome = JobOutcome(
            JobStatus.FAULTED,
            self._completed,
            self._total,
            error=exc,
            action_index=index,
            frame=text,
        )
        return self._finish(outcome, f"Device error: {exc}")

    def _finish(self, outcome: JobOutcome, message: str) -> JobOutcome:
        self._status = outcome.status
        self._outcome = outcome
        self.status_cb(message)
        self.progress_cb(self._completed, self._total)
        logger.info("%s: %d of %d actions", message, outcome.completed, outcome.total)
        return outcome


__all__ = ["JobStatus", "JobProgress", "JobOutcome", "SessionController"]
