import pytest

from plotdrive.config import PenSettings, StepMode
from plotdrive.device import commands
from plotdrive.device.protocol import (
    HOME,
    MIXED_MOVE,
    QUERY_MOTORS,
    QUERY_STEPS,
    SET_PEN,
    VERSION,
    CommandClass,
    CommandFrame,
    LineVerdict,
    ReplyMatcher,
    checksum,
    decode_line,
    verify_checksum,
)
from plotdrive.errors import CommandProtocolError, InvalidCommand
from plotdrive.geometry import Point
from plotdrive.motion import MotionSegment, PenState


class TestFraming:
    def test_frame_is_cr_terminated(self):
        assert commands.mixed_move(10, 5, -5).encode() == b"XM,10,5,-5\r"
        assert commands.query_steps().encode() == b"QS\r"

    def test_checksum_only_on_flagged_kinds(self):
        move = commands.mixed_move(10, 5, -5)
        body = b"XM,10,5,-5"
        assert move.encode(checksums=True) == body + b"," + str(checksum(body)).encode() + b"\r"
        assert commands.set_pen(PenState.UP, 100).encode(checksums=True) == b"SP,1,100\r"

    def test_checksum_is_twos_complement(self):
        body = b"XM,10,5,-5"
        value = checksum(body)
        assert 0 <= value <= 255
        assert (sum(body) + value) % 256 == 0
        assert verify_checksum(body, value)
        assert not verify_checksum(body, (value + 1) & 0xFF)

    def test_oversized_frame_rejected(self):
        frame = CommandFrame(MIXED_MOVE, tuple(range(1000, 1030)))
        with pytest.raises(InvalidCommand):
            frame.encode()

    def test_retry_safety_is_explicit(self):
        assert commands.query_steps().retry_safe
        assert commands.set_pen(PenState.DOWN).retry_safe
        assert not commands.mixed_move(1, 0, 0).retry_safe
        assert not commands.home(100).retry_safe
        assert not commands.clear_steps().retry_safe
        assert not commands.toggle_pen().retry_safe
        assert not commands.stepper_move(10, 5).retry_safe
        assert not commands.low_level_move(100, 5, 0, 0, 0, 0).retry_safe
        assert not commands.reboot().retry_safe
        assert commands.read_pin("B", 3).retry_safe
        assert commands.nickname("desk").retry_safe


class TestBuilders:
    @pytest.mark.parametrize(
        "args",
        [(0, 1, 1), (16777216, 1, 1), (10, 16777216, 0), (10, 0, -16777216), (10, 1.5, 0)],
    )
    def test_mixed_move_ranges(self, args):
        with pytest.raises(InvalidCommand):
            commands.mixed_move(*args)

    def test_invalid_command_is_a_value_error(self):
        with pytest.raises(ValueError):
            commands.home(1)

    def test_home_range(self):
        assert commands.home(2).text == "HM,2"
        assert commands.home(25000).text == "HM,25000"
        with pytest.raises(InvalidCommand):
            commands.home(25001)

    def test_pen_frames(self):
        up = commands.set_pen(PenState.UP, 250)
        assert up.text == "SP,1,250"
        assert up.duration_s == pytest.approx(0.25)
        assert commands.set_pen(PenState.DOWN).text == "SP,0,0"
        with pytest.raises(InvalidCommand):
            commands.set_pen(PenState.UP, 70000)

    def test_servo_setup(self):
        frames = commands.servo_setup(PenSettings(up_position=60, down_position=30, up_rate=150, down_rate=100))
        assert [f.text for f in frames] == ["SC,4,19800", "SC,5,13650", "SC,11,750", "SC,12,500"]

    def test_motor_enable(self):
        assert commands.enable_motors(StepMode.SIXTEENTH).text == "EM,1,1"
        assert commands.enable_motors(StepMode.FULL).text == "EM,5,1"
        assert commands.enable_motors(StepMode.DISABLE).text == "EM,0,0"
        assert commands.disable_motors().text == "EM,0,0"

    def test_toggle_pen(self):
        assert commands.toggle_pen().text == "TP"
        frame = commands.toggle_pen(500)
        assert frame.text == "TP,500"
        assert frame.duration_s == pytest.approx(0.5)
        for bad in (0, 65536):
            with pytest.raises(InvalidCommand):
                commands.toggle_pen(bad)

    def test_stepper_move(self):
        assert commands.stepper_move(100, -40).text == "SM,100,-40"
        assert commands.stepper_move(100, 10, 20).text == "SM,100,10,20"
        with pytest.raises(InvalidCommand):
            commands.stepper_move(0, 10)
        with pytest.raises(InvalidCommand):
            commands.stepper_move(10, 1, 16777216)

    def test_low_level_move(self):
        frame = commands.low_level_move(85899, 1000, 0, 0, -20, 10, clear=3)
        assert frame.text == "LM,85899,1000,0,0,-20,10,3"
        assert frame.kind.klass is CommandClass.MOTION
        with pytest.raises(InvalidCommand):
            commands.low_level_move(-1, 10, 0, 0, 0, 0)
        with pytest.raises(InvalidCommand):
            commands.low_level_move(10, 10, 0, 0, 0, 0, clear=4)
        with pytest.raises(InvalidCommand):
            commands.low_level_move(10, 0, 0, 10, 0, 0)

    def test_emergency_stop_variants(self):
        assert commands.emergency_stop().text == "ES"
        assert commands.emergency_stop(disable_motors=True).text == "ES,1"

    def test_pin_frames(self):
        assert commands.read_pin("e", 0).text == "PI,E,0"
        assert commands.pin_direction("B", 7, 1).text == "PD,B,7,1"
        for port, pin in (("F", 0), ("AB", 0), ("A", 8), ("A", -1)):
            with pytest.raises(InvalidCommand):
                commands.read_pin(port, pin)
        with pytest.raises(InvalidCommand):
            commands.pin_direction("A", 0, 2)

    def test_nickname(self):
        assert commands.nickname("AxiDraw-Studio").text == "ST,AxiDraw-Studio"
        assert commands.nickname("x" * 16).text == "ST," + "x" * 16
        for bad in ("x" * 17, "a,b", "café", "tab\there"):
            with pytest.raises(InvalidCommand):
                commands.nickname(bad)

    def test_board_commands_expect_replies_except_reboot(self):
        assert commands.reset().kind.response.expects_reply
        assert not commands.reboot().kind.response.expects_reply


class TestSegmentFrames:
    def _segment(self):
        return MotionSegment(Point(100, 50), Point(1300, -850), 0.0, 2000.0, 0.0, 16000.0)

    def test_slices_sum_to_segment_delta(self):
        seg = self._segment()
        frames = commands.segment_frames(seg, 30)
        assert sum(f.args[1] for f in frames) == 1200
        assert sum(f.args[2] for f in frames) == -900
        assert all(f.kind is MIXED_MOVE for f in frames)

    def test_slices_cover_the_duration(self):
        seg = self._segment()
        frames = commands.segment_frames(seg, 30)
        assert sum(f.args[0] for f in frames) == round(seg.duration * 1000)
        assert all(1 <= f.args[0] <= 30 for f in frames)

    def test_slices_follow_the_profile(self):
        seg = self._segment()
        frames = commands.segment_frames(seg, 30)
        steps = [abs(f.args[1]) for f in frames]
        # Accelerating at the start, decelerating at the end.
        assert steps[0] < max(steps)
        assert steps[-1] < max(steps)

    def test_short_segment_gets_one_frame(self):
        seg = MotionSegment(Point(0, 0), Point(1, 0), 0.0, 126.0, 0.0, 16000.0)
        (frame,) = commands.segment_frames(seg, 30)
        assert frame.args == (max(1, round(seg.duration * 1000)), 1, 0)

    def test_invalid_timeslice(self):
        with pytest.raises(InvalidCommand):
            commands.segment_frames(self._segment(), 0)


class TestReplyMatcher:
    def test_payload_then_ok(self):
        m = ReplyMatcher(CommandFrame(QUERY_STEPS))
        assert m.feed("120,-40") is LineVerdict.PAYLOAD
        assert m.feed("OK") is LineVerdict.DONE
        assert m.groups == ("120", "-40")

    def test_payload_only_reply(self):
        m = ReplyMatcher(CommandFrame(VERSION))
        assert m.feed("EBBv13_and_above EB Firmware Version 2.8.1") is LineVerdict.DONE
        m = ReplyMatcher(CommandFrame(QUERY_MOTORS))
        assert m.feed("QM,0,1,0,0") is LineVerdict.DONE
        assert m.groups == ("0", "1", "0", "0")

    def test_ok_only_reply(self):
        m = ReplyMatcher(CommandFrame(SET_PEN, (1, 0)))
        assert m.feed("OK") is LineVerdict.DONE

    def test_mismatched_line_is_unsolicited(self):
        m = ReplyMatcher(CommandFrame(QUERY_STEPS))
        assert m.feed("QM,0,0,0,0") is LineVerdict.UNSOLICITED
        assert not m.done

    def test_terminator_before_payload(self):
        m = ReplyMatcher(CommandFrame(QUERY_STEPS))
        with pytest.raises(CommandProtocolError):
            m.feed("OK")

    def test_device_error_line(self):
        m = ReplyMatcher(CommandFrame(HOME, (1,)))
        with pytest.raises(CommandProtocolError) as info:
            m.feed("!8 Err: Invalid parameter for 'HM'")
        assert info.value.error_code == 8
        assert info.value.command == "HM,1"

    def test_decode_rejects_non_ascii(self):
        with pytest.raises(CommandProtocolError):
            decode_line(b"\xff\xfeOK")
        with pytest.raises(CommandProtocolError):
            decode_line(b"O\x07K")
        assert decode_line(b"OK\r") == "OK"
