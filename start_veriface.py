"""
Veriface — Launcher
====================
Runs one liveness check against a local webcam, shows the instruction
HUD and, when a session id is given, submits the captured outcome to
the verification backend.

Usage:
  python start_veriface.py --source 0
  python start_veriface.py --source 0 --session-id abc123 --base-url http://localhost:5000
  python start_veriface.py --source clip.mp4 --headless --backend pose_model
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

import cv2
import numpy as np

from veriface_camera import CameraFrameSource
from veriface_config import CONFIG, OrchestratorSettings, setup_logger
from veriface_hud import VerifaceHUD
from veriface_landmarks import SUPPORTED_BACKENDS, create_extractor
from veriface_logger import get_logger
from veriface_orchestrator import VerificationOrchestrator
from veriface_submission import BiometricSubmitter, SubmissionError
from veriface_types import FailureReason

WINDOW_NAME = "Veriface | Liveness Check"

_LOGGER_NAMES = (
    "Veriface",
    "VerifaceCamera",
    "VerifaceLandmarks",
    "VerifaceEvaluator",
    "VerifaceOrchestrator",
    "VerifaceSubmission",
    "VerifaceAudit",
    "VerifaceHUD",
)

_log = logging.getLogger("Veriface")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Veriface liveness check")
    parser.add_argument("--source", type=str, default=str(CONFIG["camera"]["camera_id"]),
                        help="Camera ID (0, 1, etc.) or Video File Path")
    parser.add_argument("--width", type=int, default=CONFIG["camera"]["width"], help="Camera width")
    parser.add_argument("--height", type=int, default=CONFIG["camera"]["height"], help="Camera height")
    parser.add_argument("--backend", choices=SUPPORTED_BACKENDS, default=CONFIG["extractor"]["backend"],
                        help="Landmark extraction backend")
    parser.add_argument("--model", type=str, default=CONFIG["extractor"]["landmarker_model"],
                        help="Path to MediaPipe FaceLandmarker .task model")
    parser.add_argument("--session-id", type=str, default=None,
                        help="Verification session to submit the outcome to")
    parser.add_argument("--base-url", type=str, default=CONFIG["submission"]["base_url"],
                        help="Verification backend base URL")
    parser.add_argument("--audit", action="store_true", help="Write the JSONL audit trail")
    parser.add_argument("--headless", action="store_true", help="Run without UI window")
    parser.add_argument("--debug", action="store_true", help="Verbose per-frame logging")
    return parser


async def run_check(args) -> int:
    audit = get_logger(CONFIG["logging"]["audit_dir"]) if args.audit else None
    source = CameraFrameSource(
        camera_id=int(args.source) if args.source.isdigit() else args.source,
        width=args.width,
        height=args.height,
    )

    try:
        extractor = create_extractor(
            args.backend,
            landmarker_model=args.model,
            min_detection_confidence=CONFIG["extractor"]["min_detection_confidence"],
        )
    except (FileNotFoundError, RuntimeError) as e:
        _log.error("Face detection could not be loaded: %s", e)
        print(json.dumps({"passed": False, "failure_reason": FailureReason.DETECTION_ERROR.value}))
        return 1

    hud = VerifaceHUD()
    if not args.headless:
        cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_AUTOSIZE)

    def on_update(frame: Optional[np.ndarray], orch: VerificationOrchestrator) -> None:
        if args.headless or frame is None:
            return
        annotated, _ = hud.render(
            frame,
            orch.run_state,
            orch.liveness,
            orch.instruction,
            orch.outcome.failure_reason if orch.outcome else None,
        )
        cv2.imshow(WINDOW_NAME, annotated)
        key = cv2.waitKey(1) & 0xFF
        if key in (ord("q"), ord("Q"), 27):  # Q or ESC
            _log.info("Exit key pressed — cancelling run")
            orch.cancel()

    orchestrator = VerificationOrchestrator(
        source,
        extractor,
        settings=OrchestratorSettings(),
        audit=audit,
        on_update=on_update,
    )

    try:
        outcome = await orchestrator.start()
    except asyncio.CancelledError:
        _log.info("Liveness run cancelled by user")
        return 130
    finally:
        extractor.release()
        if not args.headless:
            cv2.destroyAllWindows()
            cv2.waitKey(1)

    print(json.dumps(outcome.to_dict(), indent=2))

    exit_code = 0 if outcome.passed else 1
    if outcome.passed and args.session_id:
        async with BiometricSubmitter(base_url=args.base_url, audit=audit) as submitter:
            try:
                result = await submitter.submit(args.session_id, outcome)
                print(json.dumps({k: result.get(k) for k in ("success", "faceMatchScore", "livenessScore")}))
                exit_code = 0 if result.get("success") else 1
            except SubmissionError as e:
                _log.error("Submission failed: %s", e)
                exit_code = 1

    if audit:
        audit.close()
    return exit_code


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    level = logging.DEBUG if args.debug else logging.INFO
    for name in _LOGGER_NAMES:
        setup_logger(name, level)

    try:
        return asyncio.run(run_check(args))
    except KeyboardInterrupt:
        print("\n[VERIFACE] Interrupted by User.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
