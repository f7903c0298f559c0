"""
Veriface — Face Landmark Extraction
====================================
Owns ALL face detection. No other module should run a face detector.

The evaluator only ever sees a FrameSample; the extraction backend can
be swapped behind the FaceLandmarkExtractor interface:

  - 'heuristic':  MediaPipe FaceLandmarker landmarks only. Head yaw is
                  derived later from the nose offset against the jaw.
  - 'pose_model': Same landmarks plus a model-based (yaw, pitch)
                  estimate via cv2.solvePnP on a generic 3D face.

MediaPipe 478-mesh indices used (subject's right = image left):
  Right eye  33, 160, 158, 133, 153, 144   (outer → inner, upper, lower)
  Left eye   362, 385, 387, 263, 373, 380  (inner → outer, upper, lower)
  Nose       168 → 1 along the bridge; 1 is the tip (pronasale)
  Jaw        234 → 152 (chin) → 454 along the lower face oval
"""

from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Optional

import cv2
import numpy as np

from veriface_types import FrameSample

_log = logging.getLogger("VerifaceLandmarks")

# ─── Project Root ─────────────────────────────────────────────
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))

BACKEND_HEURISTIC = "heuristic"
BACKEND_POSE_MODEL = "pose_model"
SUPPORTED_BACKENDS = (BACKEND_HEURISTIC, BACKEND_POSE_MODEL)


# ═══════════════════════════════════════════════════════════════
# Constants
# ═══════════════════════════════════════════════════════════════

_MP_RIGHT_EYE_INDICES = [33, 160, 158, 133, 153, 144]
_MP_LEFT_EYE_INDICES = [362, 385, 387, 263, 373, 380]

_MP_NOSE_INDICES = [168, 6, 197, 195, 5, 4, 1]

_MP_JAW_INDICES = [
    234, 93, 132, 58, 172, 136, 150, 149, 176, 148,
    152,
    377, 400, 378, 379, 365, 397, 288, 361, 323, 454,
]

# 3D model points for head-pose estimation (generic face model, mm)
# Points: nose tip, chin, left eye corner, right eye corner,
#         left mouth corner, right mouth corner
_MODEL_POINTS_3D = np.array([
    (0.0, 0.0, 0.0),
    (0.0, -330.0, -65.0),
    (-225.0, 170.0, -135.0),
    (225.0, 170.0, -135.0),
    (-150.0, -150.0, -125.0),
    (150.0, -150.0, -125.0),
], dtype=np.float64)

# nose tip=1, chin=152, eye outer corners=33/263, mouth corners=61/291
_MP_POSE_INDICES = [1, 152, 33, 263, 61, 291]

_MIN_MESH_POINTS = max(
    _MP_RIGHT_EYE_INDICES + _MP_LEFT_EYE_INDICES + _MP_NOSE_INDICES
    + _MP_JAW_INDICES + _MP_POSE_INDICES
) + 1


class ExtractorUnavailableError(RuntimeError):
    """The extractor cannot run at all (model missing, already released)."""


# ═══════════════════════════════════════════════════════════════
# Capability interface
# ═══════════════════════════════════════════════════════════════

class FaceLandmarkExtractor(ABC):
    """Turns one frame into a FrameSample for the primary face."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend tag, e.g. 'heuristic' or 'pose_model'."""
        pass

    @abstractmethod
    def extract(self, frame: np.ndarray, timestamp: Optional[float] = None) -> FrameSample:
        """Detect at most one face.

        Args:
            frame: BGR uint8 image.
            timestamp: Monotonic capture time; defaults to now.

        Returns:
            FrameSample with face_present=False when no face was found.

        Raises:
            ExtractorUnavailableError: the backend cannot run.
            Any other exception is a per-frame hiccup.
        """
        pass

    def release(self) -> None:
        """Optional cleanup logic on shutdown."""
        pass


# ═══════════════════════════════════════════════════════════════
# Head pose
# ═══════════════════════════════════════════════════════════════

def _normalize_angle(angle: float) -> float:
    """Fold an Euler angle into the physically meaningful [-90, +90] range."""
    if angle > 90.0:
        angle = angle - 180.0
    elif angle < -90.0:
        angle = angle + 180.0
    return angle


def estimate_head_pose(
    landmarks_2d: np.ndarray,
    image_size: tuple[int, int],
) -> Optional[tuple[float, float]]:
    """Estimate (yaw, pitch) in degrees from 478-mesh pixel landmarks.

    Uses 6 key landmarks matched to a generic 3D face model and
    cv2.solvePnP with approximate camera intrinsics.

    Returns:
        (yaw, pitch), or None when the pose cannot be solved.
    """
    if landmarks_2d.shape[0] < max(_MP_POSE_INDICES) + 1:
        return None

    image_points = np.array(
        [landmarks_2d[idx] for idx in _MP_POSE_INDICES], dtype=np.float64
    )

    w, h = image_size
    focal_length = w
    camera_matrix = np.array([
        [focal_length, 0, w / 2.0],
        [0, focal_length, h / 2.0],
        [0, 0, 1],
    ], dtype=np.float64)
    dist_coeffs = np.zeros((4, 1), dtype=np.float64)

    success, rotation_vec, translation_vec = cv2.solvePnP(
        _MODEL_POINTS_3D,
        image_points,
        camera_matrix,
        dist_coeffs,
        flags=cv2.SOLVEPNP_ITERATIVE,
    )
    if not success:
        return None

    rotation_mat, _ = cv2.Rodrigues(rotation_vec)
    proj_matrix = np.hstack((rotation_mat, translation_vec))
    euler_angles = cv2.decomposeProjectionMatrix(proj_matrix)[6]

    pitch = _normalize_angle(float(euler_angles[0, 0]))
    yaw = _normalize_angle(float(euler_angles[1, 0]))
    return round(yaw, 1), round(pitch, 1)


# ═══════════════════════════════════════════════════════════════
# MediaPipe backend
# ═══════════════════════════════════════════════════════════════

class MediaPipeLandmarkExtractor(FaceLandmarkExtractor):
    """MediaPipe FaceLandmarker (478-point mesh) in VIDEO running mode."""

    def __init__(
        self,
        backend: str = BACKEND_HEURISTIC,
        landmarker_model: str = "face_landmarker.task",
        min_detection_confidence: float = 0.5,
    ) -> None:
        if backend not in SUPPORTED_BACKENDS:
            raise ValueError(f"Unknown extractor backend: {backend!r}. "
                             f"Supported: {', '.join(SUPPORTED_BACKENDS)}")
        self._backend = backend
        self._landmarker = None
        self._last_timestamp_ms: int = 0

        self._init_mediapipe(landmarker_model, min_detection_confidence)
        _log.info("MediaPipeLandmarkExtractor initialized — backend=%s", backend)

    @property
    def name(self) -> str:
        return self._backend

    def _init_mediapipe(self, model_path: str, min_confidence: float) -> None:
        from mediapipe.tasks import python
        from mediapipe.tasks.python import vision

        full_path = model_path if os.path.isabs(model_path) else os.path.join(_SCRIPT_DIR, model_path)
        if not os.path.exists(full_path):
            raise FileNotFoundError(f"MediaPipe model not found: {full_path}")

        base_options = python.BaseOptions(
            model_asset_path=full_path,
            delegate=python.BaseOptions.Delegate.CPU,
        )
        options = vision.FaceLandmarkerOptions(
            base_options=base_options,
            running_mode=vision.RunningMode.VIDEO,
            num_faces=1,
            min_face_detection_confidence=min_confidence,
            min_face_presence_confidence=min_confidence,
            min_tracking_confidence=0.5,
        )
        self._landmarker = vision.FaceLandmarker.create_from_options(options)

    def extract(self, frame: np.ndarray, timestamp: Optional[float] = None) -> FrameSample:
        if timestamp is None:
            timestamp = time.monotonic()
        if self._landmarker is None:
            raise ExtractorUnavailableError("MediaPipe landmarker not initialized")

        import mediapipe as mp

        h, w = frame.shape[:2]
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)

        # VIDEO mode requires strictly increasing timestamps
        ts_ms = max(self._last_timestamp_ms + 1, int(timestamp * 1000))
        self._last_timestamp_ms = ts_ms
        result = self._landmarker.detect_for_video(mp_image, ts_ms)

        if not result or not result.face_landmarks:
            return FrameSample.no_face(timestamp)

        face_lms = result.face_landmarks[0]
        lm_pixel = np.array(
            [[lm.x * w, lm.y * h] for lm in face_lms], dtype=np.float32
        )
        return self.sample_from_landmarks(lm_pixel, timestamp, (w, h))

    def sample_from_landmarks(
        self,
        lm_pixel: np.ndarray,
        timestamp: float,
        image_size: tuple[int, int],
    ) -> FrameSample:
        """Build a FrameSample from (N, 2) 478-mesh pixel landmarks."""
        if lm_pixel.shape[0] < _MIN_MESH_POINTS:
            return FrameSample.no_face(timestamp)

        def pts(indices):
            return tuple((float(lm_pixel[i, 0]), float(lm_pixel[i, 1])) for i in indices)

        head_pose = None
        if self._backend == BACKEND_POSE_MODEL:
            head_pose = estimate_head_pose(lm_pixel, image_size)

        return FrameSample(
            timestamp=timestamp,
            face_present=True,
            left_eye=pts(_MP_LEFT_EYE_INDICES),
            right_eye=pts(_MP_RIGHT_EYE_INDICES),
            nose=pts(_MP_NOSE_INDICES),
            jaw=pts(_MP_JAW_INDICES),
            head_pose=head_pose,
        )

    def release(self) -> None:
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None
        _log.info("MediaPipeLandmarkExtractor released")

    def __enter__(self) -> "MediaPipeLandmarkExtractor":
        return self

    def __exit__(self, *args) -> None:
        self.release()


def create_extractor(backend: str = BACKEND_HEURISTIC, **kwargs) -> FaceLandmarkExtractor:
    """Build the extractor for a backend tag."""
    return MediaPipeLandmarkExtractor(backend=backend, **kwargs)
