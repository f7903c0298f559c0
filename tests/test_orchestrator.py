"""
Veriface — Orchestrator Tests
==============================
Drives full liveness runs with a fake clock, a fake frame source and a
scripted extractor. No camera, no MediaPipe, no real sleeping.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from veriface_camera import CameraError, CaptureError, FrameSource
from veriface_config import OrchestratorSettings
from veriface_landmarks import ExtractorUnavailableError, FaceLandmarkExtractor
from veriface_logger import VerifaceLogger
from veriface_orchestrator import INSTRUCTIONS, VerificationOrchestrator
from veriface_types import (
    FailureReason,
    FrameSample,
    LivenessState,
    RunState,
    VerificationOutcome,
)


# ─── Fakes ────────────────────────────────────────────────────

class FakeClock:
    """Monotonic clock that only moves when the orchestrator sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.wall = 1_700_000_000.0

    def monotonic(self) -> float:
        return self.now

    def time(self) -> float:
        return self.wall + self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


class FakeSource(FrameSource):
    def __init__(self, start_error: Exception | None = None) -> None:
        self.start_error = start_error
        self.start_calls = 0
        self.stop_calls = 0
        self._running = False
        rng = np.random.default_rng(7)
        self.frame = rng.integers(30, 220, size=(120, 160, 3), dtype=np.uint8)

    def start(self) -> None:
        self.start_calls += 1
        if self.start_error is not None:
            raise self.start_error
        self._running = True

    def read(self):
        return self.frame.copy() if self._running else None

    def stop(self) -> None:
        self.stop_calls += 1
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running


class ScriptedExtractor(FaceLandmarkExtractor):
    """Returns scripted samples in order, then repeats the last one.

    An exception instance in the script is raised instead of returned.
    """

    def __init__(self, script) -> None:
        self.script = list(script)
        self.calls = 0

    @property
    def name(self) -> str:
        return "scripted"

    def extract(self, frame, timestamp=None):
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(item, BaseException):
            raise item
        if item is None:
            return FrameSample.no_face(timestamp or 0.0)
        return item


def _make_eye(ear: float, x0: float) -> tuple:
    v = 5.0 * ear
    return ((x0, 50.0), (x0 + 3, 50.0 - v), (x0 + 6, 50.0 - v),
            (x0 + 10, 50.0), (x0 + 6, 50.0 + v), (x0 + 3, 50.0 + v))


def _face(ear: float = 0.3, yaw: float = 0.0) -> FrameSample:
    return FrameSample(
        timestamp=0.0,
        face_present=True,
        left_eye=_make_eye(ear, 40.0),
        right_eye=_make_eye(ear, 10.0),
        head_pose=(yaw, 0.0),
    )


OPEN, CLOSED = 0.3, 0.18

HAPPY_SCRIPT = [
    _face(OPEN),                 # presence
    _face(CLOSED), _face(OPEN),  # blink 1
    _face(CLOSED),               # blink 2
    _face(OPEN, yaw=-25.0),      # look left
    _face(OPEN, yaw=25.0),       # look right
]

FAST = OrchestratorSettings(
    poll_interval=0.1,
    settle_delay=1.0,
    presence_timeout=10.0,
    blink_timeout=8.0,
    head_turn_timeout=8.0,
    jpeg_quality=80,
)


def _build(script, source=None, audit=None, settings=FAST):
    clock = FakeClock()
    source = source or FakeSource()
    states = []

    def on_update(frame, orch):
        states.append(orch.run_state)

    orch = VerificationOrchestrator(
        source,
        ScriptedExtractor(script),
        settings=settings,
        audit=audit,
        on_update=on_update,
        clock=clock.monotonic,
        sleep=clock.sleep,
        wall_clock=clock.time,
    )
    return orch, source, clock, states


# ═══════════════════════════════════════════════════════════════
# Happy path
# ═══════════════════════════════════════════════════════════════

def test_full_run_captures_image():
    orch, source, clock, states = _build(HAPPY_SCRIPT)
    outcome = asyncio.run(orch.run())

    assert outcome.passed is True
    assert outcome.run_state is RunState.CAPTURED
    assert outcome.failure_reason is None
    assert outcome.image_data.startswith("data:image/jpeg;base64,")
    assert outcome.state.blink_detected is True
    assert outcome.state.head_movement is True
    assert orch.run_state is RunState.CAPTURED
    assert orch.instruction == INSTRUCTIONS[RunState.CAPTURED]
    assert source.start_calls == 1
    assert source.stop_calls == 1
    assert not source.is_running


def test_steps_run_in_order():
    orch, _, _, states = _build(HAPPY_SCRIPT)
    asyncio.run(orch.run())

    seen = [s for i, s in enumerate(states) if i == 0 or states[i - 1] != s]
    assert seen == [RunState.PRESENCE, RunState.BLINKING, RunState.HEAD_TURNING, RunState.CAPTURED]


def test_outcome_timestamp_and_durations():
    orch, _, clock, _ = _build(HAPPY_SCRIPT)
    outcome = asyncio.run(orch.run())

    assert outcome.timestamp_ms == int((clock.wall + clock.now) * 1000)
    assert set(outcome.step_durations) == {"PRESENCE", "BLINKING", "HEAD_TURNING"}
    assert outcome.step_durations["PRESENCE"] == 0.0
    assert outcome.to_dict()["has_image"] is True


def test_settle_delay_precedes_blink_step():
    orch, _, clock, _ = _build(HAPPY_SCRIPT)
    asyncio.run(orch.run())
    # 1.0 s settle, then three 0.1 s poll sleeps
    assert clock.now == pytest.approx(1.3)


def test_start_schedules_task():
    async def scenario():
        orch, _, _, _ = _build(HAPPY_SCRIPT)
        task = orch.start()
        assert orch.is_active
        with pytest.raises(RuntimeError):
            orch.start()
        return await task

    outcome = asyncio.run(scenario())
    assert outcome.passed is True


# ═══════════════════════════════════════════════════════════════
# Timeouts
# ═══════════════════════════════════════════════════════════════

def test_no_blink_fails_and_never_captures():
    orch, source, clock, states = _build([_face(OPEN)])
    outcome = asyncio.run(orch.run())

    assert outcome.passed is False
    assert outcome.run_state is RunState.FAILED
    assert outcome.failure_reason is FailureReason.BLINK_NOT_DETECTED
    assert outcome.image_data is None
    assert RunState.CAPTURED not in states
    assert RunState.HEAD_TURNING not in states
    assert source.stop_calls == 1
    assert 9.0 <= clock.now < 9.2


def test_no_face_fails_presence():
    orch, source, clock, _ = _build([None])
    outcome = asyncio.run(orch.run())

    assert outcome.failure_reason is FailureReason.FACE_NOT_DETECTED
    assert outcome.state.face_present is False
    assert outcome.state.ear_history == ()
    assert 10.0 <= clock.now < 10.2
    assert source.stop_calls == 1


def test_one_sided_turn_fails_head_step():
    script = HAPPY_SCRIPT[:4] + [_face(OPEN, yaw=-30.0)]
    orch, _, _, states = _build(script)
    outcome = asyncio.run(orch.run())

    assert outcome.failure_reason is FailureReason.HEAD_TURN_NOT_DETECTED
    assert outcome.state.blink_detected is True
    assert outcome.state.head_movement is False
    assert RunState.CAPTURED not in states


def test_face_lost_mid_run_keeps_blinks():
    script = [_face(OPEN), _face(CLOSED), None, None, _face(OPEN), _face(CLOSED),
              _face(OPEN, yaw=-25.0), _face(OPEN, yaw=25.0)]
    orch, _, _, _ = _build(script)
    outcome = asyncio.run(orch.run())
    assert outcome.passed is True
    assert outcome.state.blink_count == 2


# ═══════════════════════════════════════════════════════════════
# Camera & detection failures
# ═══════════════════════════════════════════════════════════════

@pytest.mark.parametrize("reason", [
    FailureReason.CAMERA_PERMISSION_DENIED,
    FailureReason.NO_CAMERA_FOUND,
    FailureReason.CAMERA_BUSY,
])
def test_camera_errors_fail_run(reason):
    source = FakeSource(start_error=CameraError(reason))
    orch, _, _, states = _build(HAPPY_SCRIPT, source=source)
    outcome = asyncio.run(orch.run())

    assert outcome.run_state is RunState.FAILED
    assert outcome.failure_reason is reason
    assert outcome.image_data is None
    assert states == [RunState.FAILED]


def test_extractor_hiccup_is_a_miss():
    script = [RuntimeError("landmarker glitch"), ValueError("bad eye")] + HAPPY_SCRIPT
    orch, _, _, _ = _build(script)
    outcome = asyncio.run(orch.run())
    assert outcome.passed is True


def test_malformed_sample_is_a_miss():
    broken = FrameSample(timestamp=0.0, face_present=True,
                         left_eye=_make_eye(OPEN, 40.0)[:5],
                         right_eye=_make_eye(OPEN, 10.0), head_pose=(0.0, 0.0))
    orch, _, _, _ = _build([broken] + HAPPY_SCRIPT)
    outcome = asyncio.run(orch.run())
    assert outcome.passed is True


def test_unavailable_extractor_is_detection_error():
    orch, source, _, _ = _build([ExtractorUnavailableError("released")])
    outcome = asyncio.run(orch.run())

    assert outcome.failure_reason is FailureReason.DETECTION_ERROR
    assert outcome.image_data is None
    assert source.stop_calls == 1


def test_capture_failure_has_no_image():
    orch, source, _, states = _build(HAPPY_SCRIPT)
    with patch("veriface_orchestrator.encode_jpeg_data_url",
               side_effect=CaptureError("encode failed")):
        outcome = asyncio.run(orch.run())

    assert outcome.run_state is RunState.FAILED
    assert outcome.failure_reason is FailureReason.CAPTURE_FAILED
    assert outcome.image_data is None
    assert outcome.passed is False
    assert RunState.CAPTURED not in states
    assert source.stop_calls == 1


# ═══════════════════════════════════════════════════════════════
# Cancel / reset
# ═══════════════════════════════════════════════════════════════

def test_cancel_twice_releases_source_once():
    async def scenario():
        orch, source, _, _ = _build([_face(OPEN)])
        task = orch.start()
        for _ in range(5):
            await asyncio.sleep(0)
        assert orch.is_active
        assert source.stop_calls == 0

        orch.cancel()
        orch.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        orch.cancel()
        return orch, source

    orch, source = asyncio.run(scenario())
    assert source.stop_calls == 1
    assert orch.run_state is RunState.IDLE
    assert orch.outcome is None
    assert not orch.is_active


def test_cancel_without_run_is_noop():
    orch, source, _, _ = _build(HAPPY_SCRIPT)
    orch.cancel()
    assert source.stop_calls == 0
    assert orch.run_state is RunState.IDLE


def test_reset_mid_run_clears_state():
    async def scenario():
        orch, source, _, _ = _build([_face(OPEN), _face(CLOSED), _face(OPEN)])
        task = orch.start()
        for _ in range(8):
            await asyncio.sleep(0)
        assert orch.liveness.face_present is True

        orch.reset()
        with pytest.raises(asyncio.CancelledError):
            await task
        return orch, source

    orch, source = asyncio.run(scenario())
    assert source.stop_calls == 1
    assert orch.run_state is RunState.IDLE
    assert orch.outcome is None
    assert orch.liveness.blink_count == 0
    assert orch.liveness.ear_history == ()

    for i in range(20):
        orch.evaluator.process(FrameSample.no_face(float(i)))
    assert orch.liveness.blink_detected is False
    assert orch.liveness.head_movement is False


def test_terminal_run_requires_reset():
    orch, source, clock, _ = _build(HAPPY_SCRIPT)
    asyncio.run(orch.run())

    with pytest.raises(RuntimeError):
        asyncio.run(orch.run())

    orch.reset()
    orch.extractor.calls = 0
    outcome = asyncio.run(orch.run())
    assert outcome.passed is True
    assert source.start_calls == 2
    assert source.stop_calls == 2


# ═══════════════════════════════════════════════════════════════
# Audit trail
# ═══════════════════════════════════════════════════════════════

def test_audit_trail_records_run(tmp_path):
    audit = VerifaceLogger(log_dir=str(tmp_path))
    orch, _, _, _ = _build(HAPPY_SCRIPT, audit=audit)
    asyncio.run(orch.run())
    audit.close()

    with open(audit.log_path, encoding="utf-8") as f:
        events = [json.loads(line)["event"] for line in f]

    assert events[0] == "system_startup"
    assert "run_started" in events
    assert events.count("step_completed") == 3
    assert "run_captured" in events
    assert events[-1] == "system_shutdown"


def test_audit_trail_records_failure(tmp_path):
    audit = VerifaceLogger(log_dir=str(tmp_path))
    orch, _, _, _ = _build([None], audit=audit)
    asyncio.run(orch.run())
    audit.close()

    with open(audit.log_path, encoding="utf-8") as f:
        entries = [json.loads(line) for line in f]

    failed = [e for e in entries if e["event"] == "run_failed"]
    assert len(failed) == 1
    assert failed[0]["data"]["reason"] == "face not detected"
    assert failed[0]["data"]["outcome"]["has_image"] is False


def test_camera_error_is_audited_as_warning(tmp_path):
    audit = VerifaceLogger(log_dir=str(tmp_path))
    source = FakeSource(start_error=CameraError(FailureReason.CAMERA_BUSY))
    orch, _, _, _ = _build(HAPPY_SCRIPT, source=source, audit=audit)
    asyncio.run(orch.run())
    audit.close()

    with open(audit.log_path, encoding="utf-8") as f:
        entries = [json.loads(line) for line in f]

    warnings = [e for e in entries if e["event"] == "system_warning"]
    assert len(warnings) == 1
    assert warnings[0]["level"] == "WARN"
    assert warnings[0]["data"]["context"] == {"reason": "camera busy"}


def test_detection_error_is_audited_as_error(tmp_path):
    audit = VerifaceLogger(log_dir=str(tmp_path))
    orch, _, _, _ = _build([ExtractorUnavailableError("landmarker released")], audit=audit)
    asyncio.run(orch.run())
    audit.close()

    with open(audit.log_path, encoding="utf-8") as f:
        entries = [json.loads(line) for line in f]

    errors = [e for e in entries if e["event"] == "system_error"]
    assert len(errors) == 1
    assert errors[0]["data"]["exception"] == "landmarker released"
    assert [e["event"] for e in entries].index("system_error") < \
        [e["event"] for e in entries].index("run_failed")


# ═══════════════════════════════════════════════════════════════
# Cancel from the update callback
# ═══════════════════════════════════════════════════════════════

@pytest.mark.parametrize("flag", ["face_present", "blink_detected", "head_movement"])
def test_cancel_from_callback_on_completing_frame(tmp_path, flag):
    audit = VerifaceLogger(log_dir=str(tmp_path))
    orch, source, _, _ = _build(HAPPY_SCRIPT, audit=audit)

    def on_update(frame, o):
        if getattr(o.liveness, flag):
            o.cancel()

    orch.on_update = on_update

    async def scenario():
        task = orch.start()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    audit.close()

    assert orch.run_state is RunState.IDLE
    assert orch.outcome is None
    assert source.stop_calls == 1

    with open(audit.log_path, encoding="utf-8") as f:
        events = [json.loads(line)["event"] for line in f]
    assert events.count("run_cancelled") == 1
    assert "run_failed" not in events
    assert "run_captured" not in events


def test_state_settles_to_idle_once_task_unwinds():
    async def scenario():
        orch, source, _, _ = _build([_face(OPEN)])
        task = orch.start()
        for _ in range(5):
            await asyncio.sleep(0)

        orch.cancel()
        assert source.stop_calls == 1
        assert orch.is_active
        assert orch.run_state is RunState.BLINKING

        with pytest.raises(asyncio.CancelledError):
            await task
        return orch

    orch = asyncio.run(scenario())
    assert not orch.is_active
    assert orch.run_state is RunState.IDLE
    assert orch.outcome is None


# ═══════════════════════════════════════════════════════════════
# Outcome immutability
# ═══════════════════════════════════════════════════════════════

def test_outcome_durations_are_read_only():
    orch, _, _, _ = _build(HAPPY_SCRIPT)
    outcome = asyncio.run(orch.run())
    before = dict(outcome.step_durations)

    with pytest.raises(TypeError):
        outcome.step_durations["PRESENCE"] = 99.0
    with pytest.raises(TypeError):
        del outcome.step_durations["BLINKING"]

    assert dict(outcome.step_durations) == before
    assert outcome.to_dict()["step_durations"] == before


def test_outcome_detached_from_caller_dict():
    durations = {"PRESENCE": 0.5}
    outcome = VerificationOutcome(
        image_data=None,
        state=LivenessState(),
        timestamp_ms=0,
        run_state=RunState.FAILED,
        failure_reason=FailureReason.BLINK_NOT_DETECTED,
        step_durations=durations,
    )
    durations["PRESENCE"] = 42.0
    assert outcome.step_durations["PRESENCE"] == 0.5
