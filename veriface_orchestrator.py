"""
Veriface — Verification Orchestrator
=====================================
Drives one liveness run through a fixed instruction sequence:

    IDLE → PRESENCE → BLINKING → HEAD_TURNING → CAPTURED
                 (any timeout / camera failure) → FAILED

Each step polls Frame Source → Extractor → Evaluator at a fixed cadence
until its predicate holds or its timeout expires. CAPTURED and FAILED
are terminal; a new run requires reset().

Concurrency: a single asyncio task. Each poll finishes before the next
frame is requested, and the loop yields with sleep(poll_interval).
cancel() stops the task and releases the frame source exactly once.

Failure handling:
  - extractor hiccup on one frame      → treated as "no face", loop continues
  - ExtractorUnavailableError           → FAILED (detection error)
  - CameraError on start                → FAILED (permission / not found / busy)
  - step timeout                        → FAILED (face / blink / head turn)
  - final capture / encode failure      → FAILED (capture failed), no image
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import numpy as np

from veriface_camera import CameraError, CaptureError, FrameSource, encode_jpeg_data_url
from veriface_config import LivenessSettings, OrchestratorSettings
from veriface_evaluator import LivenessEvaluator
from veriface_landmarks import ExtractorUnavailableError, FaceLandmarkExtractor
from veriface_logger import VerifaceLogger
from veriface_types import (
    FailureReason,
    FrameSample,
    LivenessState,
    RunState,
    VerificationOutcome,
)

_log = logging.getLogger("VerifaceOrchestrator")

INSTRUCTIONS = {
    RunState.IDLE: "Press start to begin the liveness check",
    RunState.PRESENCE: "Please position your face in the frame",
    RunState.BLINKING: "Blink twice",
    RunState.HEAD_TURNING: "Slowly turn your head left and right",
    RunState.CAPTURED: "Liveness check complete",
    RunState.FAILED: "Liveness check failed",
}

UpdateCallback = Callable[[Optional[np.ndarray], "VerificationOrchestrator"], None]


@dataclass(frozen=True)
class _Step:
    run_state: RunState
    predicate: Callable[[LivenessState], bool]
    timeout: float
    failure: FailureReason


class VerificationOrchestrator:
    """Runs the presence → blink → head-turn sequence for one user."""

    def __init__(
        self,
        source: FrameSource,
        extractor: FaceLandmarkExtractor,
        settings: Optional[OrchestratorSettings] = None,
        liveness_settings: Optional[LivenessSettings] = None,
        audit: Optional[VerifaceLogger] = None,
        on_update: Optional[UpdateCallback] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.source = source
        self.extractor = extractor
        self.settings = settings or OrchestratorSettings()
        self.evaluator = LivenessEvaluator(liveness_settings)
        self.audit = audit
        self.on_update = on_update

        self._clock = clock
        self._sleep = sleep
        self._wall_clock = wall_clock

        self._run_state = RunState.IDLE
        self._outcome: Optional[VerificationOutcome] = None
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._source_released = True
        self._step_durations: dict = {}

    # ── Read-only views ───────────────────────────────────────

    @property
    def run_state(self) -> RunState:
        return self._run_state

    @property
    def liveness(self) -> LivenessState:
        return self.evaluator.state

    @property
    def outcome(self) -> Optional[VerificationOutcome]:
        return self._outcome

    @property
    def instruction(self) -> str:
        return INSTRUCTIONS[self._run_state]

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self) -> asyncio.Task:
        """Schedule run() as a task on the running event loop."""
        if self.is_active:
            raise RuntimeError("A liveness run is already active")
        self._task = asyncio.ensure_future(self.run())
        return self._task

    def cancel(self) -> None:
        """Stop the active run and release the camera. Safe to call repeatedly.

        The camera is released immediately. The task itself unwinds at its
        next await (or right after the current poll when called from
        `on_update`); until then `is_active` stays True and `run_state`
        still shows the interrupted step. Once unwound the orchestrator is
        IDLE with no outcome.
        """
        if self._task is not None and not self._task.done() and not self._cancelled:
            self._cancelled = True
            self._task.cancel()
            _log.info("Liveness run cancelled in state %s", self._run_state.value)
            if self.audit:
                self.audit.log_run_event("run_cancelled", state=self._run_state)
        self._release_source()

    def reset(self) -> None:
        """Return to IDLE with empty liveness state, ready for a fresh run."""
        self.cancel()
        self.evaluator.reset()
        self._run_state = RunState.IDLE
        self._outcome = None
        self._task = None
        self._step_durations = {}

    async def run(self) -> VerificationOutcome:
        """Execute one full run. Returns the outcome (passed or failed)."""
        if self._run_state is not RunState.IDLE or self._outcome is not None:
            raise RuntimeError("Orchestrator must be reset() before a new run")

        self._task = asyncio.current_task()
        self._cancelled = False
        self._source_released = False
        self._step_durations = {}
        self.evaluator.reset()

        if self.audit:
            self.audit.log_run_event("run_started", extractor=self.extractor.name)
        _log.info("Liveness run started — extractor=%s", self.extractor.name)

        try:
            try:
                self.source.start()
            except CameraError as e:
                if self.audit:
                    self.audit.warn(f"Camera acquisition failed: {e}", {"reason": e.reason})
                else:
                    _log.warning("Camera acquisition failed: %s", e)
                return self._fail(e.reason)

            for step in self._steps():
                self._set_state(step.run_state)
                t0 = self._clock()
                completed = await self._wait_for(step.predicate, step.timeout)
                self._step_durations[step.run_state.value] = round(self._clock() - t0, 3)
                if not completed:
                    return self._fail(step.failure)

                if self.audit:
                    self.audit.log_run_event(
                        "step_completed",
                        step=step.run_state,
                        duration_s=self._step_durations[step.run_state.value],
                    )
                if step.run_state is RunState.PRESENCE and self.settings.settle_delay > 0:
                    await self._sleep(self.settings.settle_delay)

            self._raise_if_cancelled()
            return self._capture()

        except ExtractorUnavailableError as e:
            if self.audit:
                self.audit.error("Face detection unavailable", e)
            else:
                _log.error("Face detection unavailable: %s", e)
            return self._fail(FailureReason.DETECTION_ERROR)
        except asyncio.CancelledError:
            self._run_state = RunState.IDLE
            raise
        finally:
            self._release_source()

    # ── Steps ─────────────────────────────────────────────────

    def _steps(self) -> list[_Step]:
        s = self.settings
        return [
            _Step(RunState.PRESENCE, lambda st: st.face_present,
                  s.presence_timeout, FailureReason.FACE_NOT_DETECTED),
            _Step(RunState.BLINKING, lambda st: st.blink_detected,
                  s.blink_timeout, FailureReason.BLINK_NOT_DETECTED),
            _Step(RunState.HEAD_TURNING, lambda st: st.head_movement,
                  s.head_turn_timeout, FailureReason.HEAD_TURN_NOT_DETECTED),
        ]

    async def _wait_for(self, predicate: Callable[[LivenessState], bool], timeout: float) -> bool:
        deadline = self._clock() + timeout
        while True:
            self._raise_if_cancelled()
            self._poll_once()
            # on_update may have cancelled the run
            self._raise_if_cancelled()
            if predicate(self.evaluator.state):
                return True
            if self._clock() >= deadline:
                return False
            await self._sleep(self.settings.poll_interval)

    def _raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError()

    def _poll_once(self) -> None:
        frame = self.source.read()
        timestamp = self._clock()

        if frame is None:
            self.evaluator.process(FrameSample.no_face(timestamp))
        else:
            try:
                sample = self.extractor.extract(frame, timestamp)
                self.evaluator.process(sample)
            except ExtractorUnavailableError:
                raise
            except Exception as e:
                # One bad frame is a miss, not a failure
                _log.debug("Detection hiccup treated as no face: %s", e)
                self.evaluator.process(FrameSample.no_face(timestamp))

        if self.on_update is not None:
            self.on_update(frame, self)

    # ── Terminal transitions ──────────────────────────────────

    def _capture(self) -> VerificationOutcome:
        frame = self.source.read()
        try:
            if frame is None:
                raise CaptureError("Camera returned no frame for the final capture")
            image_data = encode_jpeg_data_url(frame, self.settings.jpeg_quality)
        except CaptureError as e:
            if self.audit:
                self.audit.warn(f"Final capture failed: {e}")
            else:
                _log.warning("Final capture failed: %s", e)
            return self._fail(FailureReason.CAPTURE_FAILED)

        self._run_state = RunState.CAPTURED
        self._outcome = VerificationOutcome(
            image_data=image_data,
            state=self.evaluator.state,
            timestamp_ms=int(self._wall_clock() * 1000),
            run_state=RunState.CAPTURED,
            step_durations=dict(self._step_durations),
        )
        _log.info(
            "Liveness run captured — blinks=%d frames=%d",
            self.evaluator.state.blink_count,
            self.evaluator.state.frames_processed,
        )
        if self.audit:
            self.audit.log_run_event("run_captured", outcome=self._outcome.to_dict())
        if self.on_update is not None:
            self.on_update(frame, self)
        return self._outcome

    def _fail(self, reason: FailureReason) -> VerificationOutcome:
        self._run_state = RunState.FAILED
        self._outcome = VerificationOutcome(
            image_data=None,
            state=self.evaluator.state,
            timestamp_ms=int(self._wall_clock() * 1000),
            run_state=RunState.FAILED,
            failure_reason=reason,
            step_durations=dict(self._step_durations),
        )
        _log.warning("Liveness run failed: %s", reason.value)
        if self.audit:
            self.audit.log_run_event("run_failed", reason=reason, outcome=self._outcome.to_dict())
        if self.on_update is not None:
            self.on_update(None, self)
        return self._outcome

    def _set_state(self, new_state: RunState) -> None:
        _log.info("Liveness step: %s → %s", self._run_state.value, new_state.value)
        self._run_state = new_state

    def _release_source(self) -> None:
        if self._source_released:
            return
        self._source_released = True
        self.source.stop()
