import time

import pytest

from plotdrive.device import ConnectionState
from plotdrive.errors import SessionError
from plotdrive.geometry import Point, Polyline
from plotdrive.motion import MotionSegment, PenState
from plotdrive.session import JobStatus, SessionController


def _strokes():
    return [
        Polyline.build([(10, 10), (40, 10), (40, 40)]),
        Polyline.build([(60, 60), (90, 60)]),
    ]


def _stroke_ends(config):
    return {config.to_steps(*p) for poly in _strokes() for p in poly.points}


@pytest.fixture
def job(planner):
    return planner.plan(_strokes())


@pytest.fixture
def events():
    return {"status": [], "progress": []}


@pytest.fixture
def session(driver, config, events):
    return SessionController(
        driver,
        config,
        status_cb=events["status"].append,
        progress_cb=lambda done, total: events["progress"].append((done, total)),
    )


def _sent_after_connect(mock_ebb):
    return mock_ebb.commands[6:]


class TestCompletedRun:
    def test_job_is_drawn_and_homed(self, session, job, mock_ebb, config, events):
        outcome = session.run(job)
        assert outcome.status is JobStatus.COMPLETED
        assert outcome.completed == len(job)
        assert outcome.error is None
        sent = _sent_after_connect(mock_ebb)
        assert sent[0] == "CS"
        home = next(i for i, c in enumerate(sent) if c.startswith("HM,"))
        assert set(sent[home + 1:]) == {"QM"}
        assert _stroke_ends(config) <= set(mock_ebb.path)
        assert mock_ebb.position == (0, 0)
        assert mock_ebb.pen_up
        assert events["status"] == ["Job started", "Job finished"]
        assert events["progress"][-1] == (len(job), len(job))

    def test_home_rate_follows_max_velocity(self, session, job, mock_ebb, config):
        session.run(job)
        rate = int(round(config.motion.max_velocity * config.steps_per_mm))
        assert f"HM,{rate}" in mock_ebb.commands

    def test_without_return_home(self, session, job, mock_ebb, config):
        config.session.return_home = False
        outcome = session.run(job)
        assert outcome.status is JobStatus.COMPLETED
        assert mock_ebb.count("HM") == 0
        last = job.segments[-1].end
        assert mock_ebb.position == (int(last.x), int(last.y))

    def test_only_pen_and_motion_frames_during_the_job(self, session, job, mock_ebb):
        session.run(job)
        sent = _sent_after_connect(mock_ebb)
        home = next(i for i, c in enumerate(sent) if c.startswith("HM,"))
        body = sent[1:home]
        assert {c.split(",", 1)[0] for c in body} == {"SP", "XM"}
        assert len([c for c in body if c.startswith("SP")]) == len(job.pen_transitions)

    def test_progress_is_monotonic(self, session, job, events):
        session.run(job)
        done = [d for d, _ in events["progress"]]
        assert done == sorted(done)
        assert session.progress().fraction == 1.0

    def test_start_at_must_be_in_range(self, session, job):
        with pytest.raises(SessionError):
            session.run(job, start_at=len(job) + 1)


class TestFaultAndResume:
    def test_timeout_mid_job_faults(self, session, job, driver, mock_ebb, events):
        mock_ebb.silence("XM", 1, skip=3)
        outcome = session.run(job)
        assert outcome.status is JobStatus.FAULTED
        assert outcome.error_kind == "CommandTimeout"
        assert outcome.frame.startswith("XM,")
        assert outcome.action_index == outcome.completed
        assert isinstance(job[outcome.action_index], MotionSegment)
        assert outcome.completed < len(job)
        assert driver.state is ConnectionState.FAULTED
        assert events["status"][-1].startswith("Device error")
        assert session.progress().error.startswith("CommandTimeout")

    def test_resume_after_reconnect(self, session, job, driver, mock_ebb, config):
        mock_ebb.silence("XM", 1, skip=3)
        first = session.run(job)
        assert first.status is JobStatus.FAULTED
        driver.reconnect()
        mark = len(mock_ebb.commands)
        second = session.run(job, start_at=first.resume_from)
        assert second.status is JobStatus.COMPLETED
        resumed = mock_ebb.commands[mark:]
        assert "CS" not in resumed
        assert resumed[0] == "QS"
        assert resumed[1].startswith("SP,1")
        assert _stroke_ends(config) <= set(mock_ebb.path)
        assert mock_ebb.position == (0, 0)

    def test_resume_inside_a_stroke_starts_at_rest(self, session, job, mock_ebb, config):
        # Second segment of the first stroke enters at corner speed.
        index = next(
            i for i, a in enumerate(job) if isinstance(a, MotionSegment) and a.entry_velocity > 0
        )
        outcome = session.run(job, start_at=index)
        assert outcome.status is JobStatus.COMPLETED
        sent = _sent_after_connect(mock_ebb)
        assert sent[0] == "QS"
        assert sent[1].startswith("SP,1")
        # Pen goes back down once the carriage reaches the stroke.
        down = next(i for i, c in enumerate(sent) if c.startswith("SP,0"))
        assert Point(*config.to_steps(40, 10)) == job.position_before(index)
        assert all(c.startswith("XM") for c in sent[2:down])
        assert job.pen_before(index) is PenState.DOWN
        assert config.to_steps(40, 40) in mock_ebb.path


class TestAbortAndPause:
    def test_abort_stops_the_machine(self, session, job, mock_ebb, config, events):
        config.link.motion_timeout_margin_s = 5.0
        mock_ebb.silence("XM", 1, skip=3)
        session.start(job)
        assert mock_ebb.wait_for("XM", 4)
        session.abort()
        outcome = session.wait(5.0)
        assert outcome is not None
        assert outcome.status is JobStatus.ABORTED
        stop = mock_ebb.commands.index("ES")
        after = mock_ebb.commands[stop + 1:]
        assert not any(c.startswith("XM") for c in after)
        assert after[0].startswith("SP,1")
        assert mock_ebb.pen_up
        assert events["status"][-2:] == ["Job stopping ...", "Job stopped"]
        assert not session.driver.halted

    def test_second_start_is_rejected(self, session, job, mock_ebb, config):
        config.link.motion_timeout_margin_s = 5.0
        mock_ebb.silence("XM")
        session.start(job)
        assert mock_ebb.wait_for("XM")
        with pytest.raises(SessionError):
            session.start(job)
        session.abort()
        assert session.wait(5.0).status is JobStatus.ABORTED

    def test_pause_and_resume(self, driver, config, job, mock_ebb, events, wait_until):
        def on_progress(done, total):
            if done == 2 and session.status is JobStatus.RUNNING:
                session.pause()

        session = SessionController(driver, config, status_cb=events["status"].append, progress_cb=on_progress)
        session.start(job)
        assert wait_until(lambda: session.status is JobStatus.PAUSED)
        held = len(mock_ebb.commands)
        time.sleep(0.1)
        assert len(mock_ebb.commands) == held
        assert session.progress().completed == 2
        session.resume()
        outcome = session.wait(5.0)
        assert outcome.status is JobStatus.COMPLETED
        assert "Job paused" in events["status"]
        assert "Job resumed" in events["status"]

    def test_abort_while_paused(self, driver, config, job, mock_ebb, wait_until):
        def on_progress(done, total):
            if done == 1 and session.status is JobStatus.RUNNING:
                session.pause()

        session = SessionController(driver, config, progress_cb=on_progress)
        session.start(job)
        assert wait_until(lambda: session.status is JobStatus.PAUSED)
        session.abort()
        outcome = session.wait(5.0)
        assert outcome.status is JobStatus.ABORTED
        assert outcome.completed == 1
        assert mock_ebb.count("ES") == 1

    def test_pause_inside_a_stroke_restarts_from_rest(
        self, driver, config, planner, mock_ebb, monkeypatch, wait_until
    ):
        job = planner.plan([Polyline.build([(10, 10), (150, 10)])])
        session = SessionController(driver, config)
        slices = {"down": 0}
        send = driver.send

        def counting_send(frame):
            reply = send(frame)
            if frame.kind.mnemonic == "XM" and driver.pen_state is PenState.DOWN:
                slices["down"] += 1
                if slices["down"] == 40:
                    session.pause()
            return reply

        monkeypatch.setattr(driver, "send", counting_send)
        session.start(job)
        assert wait_until(lambda: session.status is JobStatus.PAUSED)
        held = len(mock_ebb.commands)
        stopped_at = mock_ebb.position
        time.sleep(0.05)
        assert len(mock_ebb.commands) == held
        session.resume()
        outcome = session.wait(5.0)

        assert outcome.status is JobStatus.COMPLETED
        assert outcome.completed == len(job)
        resumed = mock_ebb.commands[held:]
        assert resumed[:2] == ["QM", "QS"]
        first = resumed[2].split(",")
        assert first[0] == "XM"
        ms, dx = int(first[1]), abs(int(first[2]))
        assert dx <= 0.5 * planner.acceleration * (ms / 1000.0) ** 2 + 1
        assert stopped_at != config.to_steps(150, 10)
        assert config.to_steps(150, 10) in mock_ebb.path

    def test_pause_between_strokes_sends_no_extra_frames(self, driver, config, job, mock_ebb, wait_until):
        def on_progress(done, total):
            if done == 2 and session.status is JobStatus.RUNNING:
                session.pause()

        session = SessionController(driver, config, progress_cb=on_progress)
        session.start(job)
        assert wait_until(lambda: session.status is JobStatus.PAUSED)
        held = len(mock_ebb.commands)
        session.resume()
        assert session.wait(5.0).status is JobStatus.COMPLETED
        assert "QS" not in mock_ebb.commands[held:]

    def test_external_halt_ends_the_job_as_aborted(self, session, job, driver, mock_ebb, config):
        config.link.motion_timeout_margin_s = 5.0
        mock_ebb.silence("XM", 1, skip=3)
        session.start(job)
        assert mock_ebb.wait_for("XM", 4)
        driver.emergency_stop()
        outcome = session.wait(5.0)
        assert outcome.status is JobStatus.ABORTED
        stop = mock_ebb.commands.index("ES")
        assert not any(c.startswith("XM") for c in mock_ebb.commands[stop + 1:])
        assert not driver.halted


class TestCallbackErrors:
    def test_failing_callback_does_not_wedge_the_session(self, driver, config, job):
        def flaky(done, total):
            if done == 1:
                raise RuntimeError("display went away")

        session = SessionController(driver, config, progress_cb=flaky)
        with pytest.raises(RuntimeError):
            session.run(job)
        assert session.status is JobStatus.FAULTED
        assert not session.is_running
        assert session.outcome.completed == 1

        session.progress_cb = lambda done, total: None
        outcome = session.run(job, start_at=session.outcome.resume_from)
        assert outcome.status is JobStatus.COMPLETED

    def test_failing_callback_on_a_background_run(self, driver, config, job):
        def flaky(message):
            if message == "Job started":
                raise RuntimeError("log sink closed")

        session = SessionController(driver, config, status_cb=flaky)
        session.start(job)
        session.wait(5.0)
        assert session.status is JobStatus.FAULTED
        session.status_cb = lambda message: None
        assert session.run(job).status is JobStatus.COMPLETED
