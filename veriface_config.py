"""
Veriface — Configuration & Logging Setup
=========================================
Loads config.yaml and exposes the liveness thresholds as named
constants. Every tunable of the evaluator and orchestrator lives here;
nothing downstream hard-codes a threshold.

Sections:
  - liveness:      EAR / blink / head-turn thresholds, history sizes
  - orchestrator:  poll cadence, settle delay, per-step timeouts
  - camera:        device index, resolution, JPEG quality
  - extractor:     landmark backend selection
  - submission:    verification backend URL
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass
from typing import Optional

import yaml


_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, "config.yaml")

HEAD_TURN_BOTH_DIRECTIONS = "both_directions"
HEAD_TURN_RANGE = "range"

_DEFAULTS: dict = {
    "liveness": {
        "ear_threshold": 0.22,
        "required_blinks": 2,
        "head_angle_threshold": 20.0,
        "head_turn_mode": HEAD_TURN_BOTH_DIRECTIONS,
        "ear_history_size": 10,
        "head_history_size": 30,
    },
    "orchestrator": {
        "poll_interval": 0.1,
        "settle_delay": 1.0,
        "presence_timeout": 10.0,
        "blink_timeout": 8.0,
        "head_turn_timeout": 8.0,
    },
    "camera": {
        "camera_id": 0,
        "width": 1280,
        "height": 720,
        "jpeg_quality": 80,
    },
    "extractor": {
        "backend": "heuristic",
        "landmarker_model": "face_landmarker.task",
        "min_detection_confidence": 0.5,
    },
    "submission": {
        "base_url": "http://localhost:5000",
        "timeout": 10.0,
    },
    "logging": {
        "audit_dir": "logs",
    },
}


def load_config(path: Optional[str] = None) -> dict:
    """Load configuration from config.yaml, filling gaps with defaults.

    Unknown sections are kept as-is; missing sections or keys fall back
    to the built-in defaults so a partial file is always usable.
    """
    target = path or _config_path
    loaded: dict = {}
    if os.path.exists(target):
        with open(target, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}

    merged = copy.deepcopy(_DEFAULTS)
    for section, values in loaded.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


CONFIG = load_config()


# ===================================================================
# Constants (loaded from config.yaml, overridable at runtime)
# ===================================================================

EAR_THRESHOLD        = float(CONFIG["liveness"]["ear_threshold"])
REQUIRED_BLINKS      = int(CONFIG["liveness"]["required_blinks"])
HEAD_ANGLE_THRESHOLD = float(CONFIG["liveness"]["head_angle_threshold"])
HEAD_TURN_MODE       = str(CONFIG["liveness"]["head_turn_mode"])
EAR_HISTORY_SIZE     = int(CONFIG["liveness"]["ear_history_size"])
HEAD_HISTORY_SIZE    = int(CONFIG["liveness"]["head_history_size"])

POLL_INTERVAL     = float(CONFIG["orchestrator"]["poll_interval"])
SETTLE_DELAY      = float(CONFIG["orchestrator"]["settle_delay"])
PRESENCE_TIMEOUT  = float(CONFIG["orchestrator"]["presence_timeout"])
BLINK_TIMEOUT     = float(CONFIG["orchestrator"]["blink_timeout"])
HEAD_TURN_TIMEOUT = float(CONFIG["orchestrator"]["head_turn_timeout"])

JPEG_QUALITY = int(CONFIG["camera"]["jpeg_quality"])


@dataclass(frozen=True)
class LivenessSettings:
    """Evaluator thresholds bundled for injection into one run."""
    ear_threshold: float = EAR_THRESHOLD
    required_blinks: int = REQUIRED_BLINKS
    head_angle_threshold: float = HEAD_ANGLE_THRESHOLD
    head_turn_mode: str = HEAD_TURN_MODE
    ear_history_size: int = EAR_HISTORY_SIZE
    head_history_size: int = HEAD_HISTORY_SIZE

    def __post_init__(self) -> None:
        if self.head_turn_mode not in (HEAD_TURN_BOTH_DIRECTIONS, HEAD_TURN_RANGE):
            raise ValueError(
                f"Unknown head_turn_mode: {self.head_turn_mode!r}. "
                f"Supported: {HEAD_TURN_BOTH_DIRECTIONS!r}, {HEAD_TURN_RANGE!r}"
            )
        if self.ear_history_size < 1 or self.head_history_size < 1:
            raise ValueError("History sizes must be at least 1")
        if self.required_blinks < 1:
            raise ValueError("required_blinks must be at least 1")


@dataclass(frozen=True)
class OrchestratorSettings:
    """Polling cadence and per-step timeouts (seconds)."""
    poll_interval: float = POLL_INTERVAL
    settle_delay: float = SETTLE_DELAY
    presence_timeout: float = PRESENCE_TIMEOUT
    blink_timeout: float = BLINK_TIMEOUT
    head_turn_timeout: float = HEAD_TURN_TIMEOUT
    jpeg_quality: int = JPEG_QUALITY


# ===================================================================
# Logging Setup
# ===================================================================

def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a configured logger for Veriface modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "[%(asctime)s] %(name)-12s %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
