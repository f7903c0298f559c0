"""
Veriface — Camera Input Module
===============================
Owns ALL camera interaction. No other file should touch
cv2.VideoCapture directly.

Features:
  - FrameSource interface (start / read / stop) consumed by the orchestrator
  - Acquisition failures classified as permission denied / not found / busy
  - Per-frame validation (shape, dtype, channel count, brightness)
  - Health monitoring (FPS, drop rate, connection status)
  - Idempotent stop: releasing twice is a no-op
  - JPEG data-URL encoding for the final captured frame
"""

from __future__ import annotations

import base64
import logging
import os
import sys
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Optional

import cv2
import numpy as np

from veriface_types import FailureReason


# ─── Module Logger ─────────────────────────────────────────────
_log = logging.getLogger("VerifaceCamera")


class CameraError(RuntimeError):
    """Camera could not be acquired. Never retried automatically."""

    def __init__(self, reason: FailureReason, message: str = "") -> None:
        super().__init__(message or reason.value)
        self.reason = reason


class CaptureError(RuntimeError):
    """Final frame could not be captured or encoded."""


class FrameSource(ABC):
    """Supplies successive video frames.

    Only the orchestrator starts and stops a source. `stop` must be
    safe to call any number of times.
    """

    @abstractmethod
    def start(self) -> None:
        """Acquire the device. Raises CameraError on failure."""

    @abstractmethod
    def read(self) -> Optional[np.ndarray]:
        """Return the current BGR frame, or None if no valid frame."""

    @abstractmethod
    def stop(self) -> None:
        """Release the device."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass


class CameraFrameSource(FrameSource):
    """Validated OpenCV webcam capture.

    Wraps cv2.VideoCapture with:
      - 1-frame buffer to minimize latency
      - Per-frame validation (shape, dtype, brightness, channels)
      - Monotonic timestamping of the last valid frame
      - Health status reporting (FPS, drops, age)
    """

    # ── Validation constants ──────────────────────────────────
    MIN_HEIGHT: int = 120
    MIN_WIDTH: int = 160
    EXPECTED_CHANNELS: int = 3
    EXPECTED_DTYPE = np.uint8
    MIN_MEAN_BRIGHTNESS: float = 5.0    # lens cap / hw failure
    MAX_MEAN_BRIGHTNESS: float = 250.0  # sensor saturation
    FPS_WINDOW: int = 30

    def __init__(
        self,
        camera_id: int | str = 0,
        width: Optional[int] = None,
        height: Optional[int] = None,
        backend: int = cv2.CAP_ANY,
    ) -> None:
        """
        Args:
            camera_id: System camera index or a video file path.
            width / height: Requested resolution (the device may ignore it).
            backend: OpenCV capture backend.
        """
        self._camera_id = camera_id
        self._width = width
        self._height = height
        self._backend = backend
        self._cap: Optional[cv2.VideoCapture] = None

        self._frames_total: int = 0
        self._frames_dropped: int = 0
        self._last_valid_timestamp: float = 0.0
        self._frame_times: deque[float] = deque(maxlen=self.FPS_WINDOW)

    # ── Public API ────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._cap is not None

    def start(self) -> None:
        if self._cap is not None:
            return

        self._check_device_permission()

        try:
            cap = cv2.VideoCapture(self._camera_id, self._backend)
        except cv2.error as e:
            raise CameraError(FailureReason.NO_CAMERA_FOUND, f"Camera open failed: {e}") from e

        if not cap.isOpened():
            cap.release()
            raise CameraError(
                FailureReason.NO_CAMERA_FOUND,
                f"No camera found at {self._camera_id!r}",
            )

        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        if self._width:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
        if self._height:
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)

        # An opened device that cannot deliver a frame is held by
        # another process.
        ret, _ = cap.read()
        if not ret:
            cap.release()
            raise CameraError(
                FailureReason.CAMERA_BUSY,
                f"Camera {self._camera_id!r} is in use by another application",
            )

        self._cap = cap
        _log.info(
            "Camera started — id=%s resolution=%s",
            self._camera_id,
            (int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)), int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))),
        )

    def read(self) -> Optional[np.ndarray]:
        if self._cap is None:
            return None

        self._frames_total += 1
        ret, frame = self._cap.read()

        if not self._validate_frame(ret, frame):
            self._frames_dropped += 1
            return None

        timestamp = time.monotonic()
        self._last_valid_timestamp = timestamp
        self._frame_times.append(timestamp)
        return frame

    def stop(self) -> None:
        if self._cap is None:
            return
        health = self.get_health_status()
        _log.info(
            "Camera releasing — total=%d dropped=%d (%.1f%%) avg_fps=%.1f",
            health["frames_total"],
            health["frames_dropped"],
            health["drop_rate_pct"],
            health["fps_actual"],
        )
        self._cap.release()
        self._cap = None

    def get_health_status(self) -> dict:
        """Connection status, measured FPS, drop count and last frame age."""
        now = time.monotonic()
        last_age_ms = (
            (now - self._last_valid_timestamp) * 1000.0
            if self._last_valid_timestamp > 0
            else float("inf")
        )
        return {
            "connected": self._cap is not None and self._cap.isOpened(),
            "fps_actual": self._calculate_fps(),
            "frames_total": self._frames_total,
            "frames_dropped": self._frames_dropped,
            "drop_rate_pct": (
                (self._frames_dropped / self._frames_total * 100.0)
                if self._frames_total > 0
                else 0.0
            ),
            "last_valid_frame_age_ms": round(last_age_ms, 2),
        }

    # ── Context manager support ───────────────────────────────

    def __enter__(self) -> "CameraFrameSource":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    # ── Private helpers ───────────────────────────────────────

    def _check_device_permission(self) -> None:
        """On Linux, an existing /dev/videoN we cannot open means no permission."""
        if not sys.platform.startswith("linux") or not isinstance(self._camera_id, int):
            return
        device = f"/dev/video{self._camera_id}"
        if os.path.exists(device) and not os.access(device, os.R_OK | os.W_OK):
            raise CameraError(
                FailureReason.CAMERA_PERMISSION_DENIED,
                f"No permission to open {device}",
            )

    def _validate_frame(self, ret: bool, frame: Optional[np.ndarray]) -> bool:
        if not ret or frame is None:
            _log.debug("Validation FAIL: no frame returned")
            return False

        # Grayscale or 4-channel frames break the landmark pipeline
        if frame.ndim != 3 or frame.shape[2] != self.EXPECTED_CHANNELS:
            _log.debug("Validation FAIL: shape=%s", frame.shape)
            return False

        if frame.dtype != self.EXPECTED_DTYPE:
            _log.debug("Validation FAIL: dtype=%s (expected uint8)", frame.dtype)
            return False

        h, w = frame.shape[:2]
        if h < self.MIN_HEIGHT or w < self.MIN_WIDTH:
            _log.debug(
                "Validation FAIL: resolution %dx%d below minimum %dx%d",
                w, h, self.MIN_WIDTH, self.MIN_HEIGHT,
            )
            return False

        mean_brightness = float(frame.mean())
        if mean_brightness <= self.MIN_MEAN_BRIGHTNESS:
            _log.debug("Validation FAIL: all-black frame (mean=%.2f)", mean_brightness)
            return False
        if mean_brightness >= self.MAX_MEAN_BRIGHTNESS:
            _log.debug("Validation FAIL: all-white frame (mean=%.2f)", mean_brightness)
            return False

        return True

    def _calculate_fps(self) -> float:
        if len(self._frame_times) < 2:
            return 0.0
        elapsed = self._frame_times[-1] - self._frame_times[0]
        if elapsed <= 0:
            return 0.0
        return (len(self._frame_times) - 1) / elapsed


def encode_jpeg_data_url(frame: np.ndarray, quality: int = 80) -> str:
    """Encode a BGR frame as a `data:image/jpeg;base64,...` URL.

    Raises:
        CaptureError: if the frame is missing or cannot be encoded.
    """
    if frame is None or getattr(frame, "size", 0) == 0:
        raise CaptureError("No frame to encode")

    ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise CaptureError("JPEG encoding failed")

    payload = base64.b64encode(buf.tobytes()).decode("ascii")
    return f"data:image/jpeg;base64,{payload}"
