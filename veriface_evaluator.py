"""
Veriface — Liveness Evaluator
==============================
Folds per-frame landmark samples into a rolling LivenessState.

Signals:
  A) Eye Aspect Ratio (EAR) with edge-triggered blink counting
  B) Head yaw/pitch with a both-directions (or range) turn check

EAR formula (six ordered points per eye, p0..p5):
    EAR = (|p1 - p5| + |p2 - p4|) / (2 * |p0 - p3|)
Open eyes sit around 0.25-0.35; a closed eye drops below ~0.22.

A frame without a face is a no-op apart from clearing face_present:
a transient miss never costs the user their progress.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import replace
from typing import Optional, Sequence

from veriface_config import (
    HEAD_TURN_BOTH_DIRECTIONS,
    HEAD_TURN_RANGE,
    LivenessSettings,
)
from veriface_types import FrameSample, LivenessState

_log = logging.getLogger("VerifaceEvaluator")


# ===================================================================
# Geometry helpers
# ===================================================================

def _xy(point) -> tuple[float, float]:
    # Support both object (.x, .y) and array/tuple ([0], [1]) formats
    if hasattr(point, "x") and hasattr(point, "y"):
        return float(point.x), float(point.y)
    return float(point[0]), float(point[1])


def _dist(a: tuple[float, float], b: tuple[float, float]) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def compute_ear(eye: Sequence) -> float:
    """Eye Aspect Ratio for one eye.

    Args:
        eye: Six ordered points [outer, upper1, upper2, inner, lower2, lower1].

    Returns:
        EAR value; 0.0 for a degenerate (zero-width) eye.

    Raises:
        ValueError: if the eye does not have exactly six points.
    """
    if len(eye) != 6:
        raise ValueError(f"EAR needs 6 eye landmarks, got {len(eye)}")

    p0, p1, p2, p3, p4, p5 = (_xy(p) for p in eye)

    v1 = _dist(p1, p5)
    v2 = _dist(p2, p4)
    h_dist = _dist(p0, p3)

    if h_dist < 1e-6:
        return 0.0
    return (v1 + v2) / (2.0 * h_dist)


def average_ear(left_eye: Sequence, right_eye: Sequence) -> float:
    """Mean EAR of both eyes."""
    return (compute_ear(left_eye) + compute_ear(right_eye)) / 2.0


def estimate_yaw_from_landmarks(nose: Sequence, jaw: Sequence) -> float:
    """Approximate head yaw (degrees) from the nose tip and outer jaw points.

    The nose tip's horizontal offset from the midpoint of the two outer
    jaw landmarks, divided by half the jaw width, behaves like sin(yaw)
    for a roughly cylindrical head. Negative = turned left in image
    coordinates, positive = turned right.
    """
    if not nose or len(jaw) < 2:
        raise ValueError("Yaw estimate needs a nose tip and two outer jaw points")

    nose_x, _ = _xy(nose[-1])
    left_x, _ = _xy(jaw[0])
    right_x, _ = _xy(jaw[-1])

    half_width = abs(right_x - left_x) / 2.0
    if half_width < 1e-6:
        return 0.0

    center_x = (left_x + right_x) / 2.0
    ratio = (nose_x - center_x) / half_width
    ratio = max(-1.0, min(1.0, ratio))
    return math.degrees(math.asin(ratio))


# ===================================================================
# LivenessEvaluator
# ===================================================================

class LivenessEvaluator:
    """Pure state transition from (FrameSample, LivenessState) to LivenessState.

    One instance is owned by one orchestration run. `evaluate` never
    mutates its input; `process` is a convenience that keeps the running
    state on the instance.
    """

    def __init__(self, settings: Optional[LivenessSettings] = None) -> None:
        self.settings = settings or LivenessSettings()
        self._state = LivenessState()

    @property
    def state(self) -> LivenessState:
        return self._state

    def reset(self) -> LivenessState:
        """Clear histories, blink count and all flags."""
        self._state = LivenessState()
        return self._state

    def process(self, frame: FrameSample) -> LivenessState:
        self._state = self.evaluate(frame, self._state)
        return self._state

    def evaluate(self, frame: FrameSample, state: LivenessState) -> LivenessState:
        s = self.settings

        if not frame.face_present:
            if not state.face_present:
                return state
            return replace(state, face_present=False)

        # ── A) Eye aspect ratio + falling-edge blink ──────────────
        ear = average_ear(frame.left_eye, frame.right_eye)
        ear_history = deque(state.ear_history, maxlen=s.ear_history_size)
        ear_history.append(ear)

        closed = ear < s.ear_threshold
        blink_count = state.blink_count
        if closed and not state.eye_closed:
            blink_count += 1
            _log.debug("Blink %d detected (EAR=%.3f)", blink_count, ear)

        blink_detected = state.blink_detected or blink_count >= s.required_blinks

        # ── B) Head pose ──────────────────────────────────────────
        if frame.head_pose is not None:
            yaw, pitch = float(frame.head_pose[0]), float(frame.head_pose[1])
        else:
            yaw, pitch = estimate_yaw_from_landmarks(frame.nose, frame.jaw), 0.0

        head_history = deque(state.head_history, maxlen=s.head_history_size)
        head_history.append((yaw, pitch))

        turned_left = state.turned_left or yaw < -s.head_angle_threshold
        turned_right = state.turned_right or yaw > s.head_angle_threshold

        if s.head_turn_mode == HEAD_TURN_RANGE:
            moved = self._range_exceeds(head_history, s.head_angle_threshold)
        elif s.head_turn_mode == HEAD_TURN_BOTH_DIRECTIONS:
            moved = turned_left and turned_right
        else:
            raise ValueError(f"Unknown head_turn_mode: {s.head_turn_mode!r}")

        head_movement = state.head_movement or moved
        if head_movement and not state.head_movement:
            _log.debug("Head movement complete (yaw=%.1f)", yaw)

        return LivenessState(
            face_present=True,
            blink_count=blink_count,
            blink_detected=blink_detected,
            head_movement=head_movement,
            eye_closed=closed,
            turned_left=turned_left,
            turned_right=turned_right,
            ear_history=tuple(ear_history),
            head_history=tuple(head_history),
            frames_processed=state.frames_processed + 1,
            last_ear=round(ear, 4),
            last_yaw=round(yaw, 1),
        )

    @staticmethod
    def _range_exceeds(history, threshold: float) -> bool:
        if len(history) < 2:
            return False
        yaws = [h[0] for h in history]
        pitches = [h[1] for h in history]
        return (max(yaws) - min(yaws) > threshold
                or max(pitches) - min(pitches) > threshold)
