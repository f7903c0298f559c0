import time
import logging
import cv2
import numpy as np
from typing import Optional, Tuple

from veriface_types import FailureReason, LivenessState, RunState

_log = logging.getLogger("VerifaceHUD")


class VerifaceHUD:
    """Instruction overlay for the desktop liveness check.

    Shows the current instruction, a three-item checklist
    (face / blink / head turn) with distinct shapes for colour-blind
    users, and a bottom bar with live EAR, yaw and blink count.
    """

    COLORS = {
        RunState.IDLE:         {"bg": (128, 128, 128), "shape": "dash"},
        RunState.PRESENCE:     {"bg": (0, 165, 255),   "shape": "circle"},
        RunState.BLINKING:     {"bg": (0, 165, 255),   "shape": "circle"},
        RunState.HEAD_TURNING: {"bg": (0, 165, 255),   "shape": "circle"},
        RunState.CAPTURED:     {"bg": (0, 180, 0),     "shape": "checkmark"},
        RunState.FAILED:       {"bg": (0, 0, 220),     "shape": "x_mark"},
    }

    DONE_COLOR = (0, 180, 0)
    PENDING_COLOR = (160, 160, 160)

    def __init__(self):
        _log.info("VerifaceHUD initialized")

    def render(
        self,
        frame: Optional[np.ndarray],
        run_state: RunState,
        liveness: LivenessState,
        instruction: str,
        failure_reason: Optional[FailureReason] = None,
    ) -> Tuple[Optional[np.ndarray], float]:
        """Draw overlay onto a copy of the frame.

        Returns:
            (annotated_frame, hud_render_time_seconds)
        """
        t_start = time.monotonic()
        if frame is None:
            return None, 0.0

        viz = frame.copy()

        self._draw_instruction(viz, run_state, instruction)
        self._draw_checklist(viz, liveness)
        self._draw_status_bar(viz, liveness)

        if run_state is RunState.FAILED and failure_reason is not None:
            self._draw_central_notification(viz, failure_reason.value.upper(), self.COLORS[run_state]["bg"])
        elif run_state is RunState.CAPTURED:
            self._draw_central_notification(viz, "VERIFIED", self.COLORS[run_state]["bg"])

        return viz, time.monotonic() - t_start

    def _draw_instruction(self, frame: np.ndarray, run_state: RunState, instruction: str):
        props = self.COLORS.get(run_state, self.COLORS[RunState.IDLE])
        h, w = frame.shape[:2]

        (tw, th), _ = cv2.getTextSize(instruction, cv2.FONT_HERSHEY_SIMPLEX, 0.8, 2)
        cv2.rectangle(frame, (0, 0), (w, th + 30), (0, 0, 0), -1)
        cv2.rectangle(frame, (0, 0), (w, th + 30), props["bg"], 2)
        self._draw_shape(frame, props["shape"], (10, 8), props["bg"])
        cv2.putText(frame, instruction, (45, th + 12),
            cv2.FONT_HERSHEY_SIMPLEX, 0.8, (255, 255, 255), 2)

    def _draw_checklist(self, frame: np.ndarray, liveness: LivenessState):
        items = [
            ("Face in frame", liveness.face_present),
            (f"Blink ({liveness.blink_count})", liveness.blink_detected),
            ("Head turn", liveness.head_movement),
        ]
        y = 80
        for label, done in items:
            color = self.DONE_COLOR if done else self.PENDING_COLOR
            self._draw_shape(frame, "checkmark" if done else "circle", (10, y - 15), color)
            cv2.putText(frame, label, (40, y),
                cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 2)
            y += 30

    def _draw_status_bar(self, frame: np.ndarray, liveness: LivenessState):
        h, w = frame.shape[:2]
        bar_h = 40
        overlay = frame.copy()
        cv2.rectangle(overlay, (0, h - bar_h), (w, h), (0, 0, 0), -1)
        alpha = 0.6
        cv2.addWeighted(overlay, alpha, frame, 1 - alpha, 0, frame)

        ear = f"{liveness.last_ear:.2f}" if liveness.last_ear is not None else "--"
        yaw = f"{liveness.last_yaw:+.0f}" if liveness.last_yaw is not None else "--"
        text = f"EAR: {ear} | YAW: {yaw} | BLINKS: {liveness.blink_count}"
        cv2.putText(frame, text, (10, h - 12),
            cv2.FONT_HERSHEY_SIMPLEX, 0.6, (255, 255, 255), 1)

    def _draw_central_notification(self, frame: np.ndarray, text: str, color: Tuple[int, int, int]):
        h, w = frame.shape[:2]
        font = cv2.FONT_HERSHEY_SIMPLEX
        scale = 1.2
        thickness = 3
        (fw, fh), _ = cv2.getTextSize(text, font, scale, thickness)

        cx, cy = w // 2, h // 2
        pad = 20
        cv2.rectangle(frame,
            (cx - fw // 2 - pad, cy - fh // 2 - pad),
            (cx + fw // 2 + pad, cy + fh // 2 + pad),
            (0, 0, 0), -1)
        cv2.rectangle(frame,
            (cx - fw // 2 - pad, cy - fh // 2 - pad),
            (cx + fw // 2 + pad, cy + fh // 2 + pad),
            color, 2)
        cv2.putText(frame, text, (cx - fw // 2, cy + fh // 2), font, scale, color, thickness)

    def _draw_shape(self, frame: np.ndarray, shape: str, pos: Tuple[int, int], color: Tuple[int, int, int]):
        """Draw accessible shape icon."""
        x, y = pos
        size = 20
        if shape == "checkmark":
            pts = np.array([[x, y+10], [x+7, y+17], [x+20, y]], dtype=np.int32)
            cv2.polylines(frame, [pts], False, color, 3)
        elif shape == "x_mark":
            cv2.line(frame, (x, y), (x+size, y+size), color, 3)
            cv2.line(frame, (x+size, y), (x, y+size), color, 3)
        elif shape == "circle":
            cv2.circle(frame, (x+10, y+10), 10, color, 2)
        elif shape == "dash":
            cv2.line(frame, (x, y+10), (x+20, y+10), color, 3)
