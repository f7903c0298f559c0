from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

Point = Tuple[float, float]


class RunState(str, Enum):
    """Orchestrator run states. CAPTURED and FAILED are terminal."""
    IDLE = "IDLE"
    PRESENCE = "PRESENCE"
    BLINKING = "BLINKING"
    HEAD_TURNING = "HEAD_TURNING"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.CAPTURED, RunState.FAILED)


class FailureReason(str, Enum):
    """Externally distinguishable reasons a run can fail."""
    FACE_NOT_DETECTED = "face not detected"
    BLINK_NOT_DETECTED = "blink not detected"
    HEAD_TURN_NOT_DETECTED = "head turn not detected"
    CAMERA_PERMISSION_DENIED = "camera permission denied"
    NO_CAMERA_FOUND = "no camera found"
    CAMERA_BUSY = "camera busy"
    DETECTION_ERROR = "detection error"
    CAPTURE_FAILED = "capture failed"


@dataclass(frozen=True)
class FrameSample:
    """Landmarks of the primary face in one analysed frame.

    Attributes:
        timestamp: Monotonic capture time in seconds.
        face_present: False when the extractor found no face.
        left_eye / right_eye: Six ordered (x, y) points per eye:
            [outer, upper1, upper2, inner, lower2, lower1].
        nose: Nose points; the last one is the nose tip.
        jaw: Jaw outline from one ear to the other; the first and last
            points are the outer jaw landmarks.
        head_pose: (yaw, pitch) in degrees when the extractor estimates
            pose itself, otherwise None.
    """
    timestamp: float
    face_present: bool
    left_eye: Tuple[Point, ...] = ()
    right_eye: Tuple[Point, ...] = ()
    nose: Tuple[Point, ...] = ()
    jaw: Tuple[Point, ...] = ()
    head_pose: Optional[Tuple[float, float]] = None

    @classmethod
    def no_face(cls, timestamp: float) -> "FrameSample":
        return cls(timestamp=timestamp, face_present=False)


@dataclass(frozen=True)
class LivenessState:
    """Rolling liveness state for one run.

    Replaced (never mutated) by LivenessEvaluator on every processed
    frame. Histories are bounded FIFOs; the flags only ever go from
    False to True within a run.
    """
    face_present: bool = False
    blink_count: int = 0
    blink_detected: bool = False
    head_movement: bool = False
    eye_closed: bool = False
    turned_left: bool = False
    turned_right: bool = False
    ear_history: Tuple[float, ...] = ()
    head_history: Tuple[Tuple[float, float], ...] = ()
    frames_processed: int = 0
    last_ear: Optional[float] = None
    last_yaw: Optional[float] = None

    @property
    def passed(self) -> bool:
        return self.blink_detected and self.head_movement

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class VerificationOutcome:
    """Result of one orchestration run, created once and never changed."""
    image_data: Optional[str]          # JPEG data URL, None on failure
    state: LivenessState
    timestamp_ms: int                  # wall clock, milliseconds
    run_state: RunState
    failure_reason: Optional[FailureReason] = None
    step_durations: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Read-only view over a private copy
        object.__setattr__(self, "step_durations", MappingProxyType(dict(self.step_durations)))

    @property
    def passed(self) -> bool:
        return self.run_state is RunState.CAPTURED and self.image_data is not None

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "run_state": self.run_state.value,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "timestamp_ms": self.timestamp_ms,
            "step_durations": dict(self.step_durations),
            "state": self.state.to_dict(),
            "has_image": self.image_data is not None,
        }
