"""
Veriface — Biometric Submission Client
=======================================
Hands a captured VerificationOutcome to the verification backend:

    POST {base_url}/api/verification/{session_id}/biometric
    {
      "faceImageData": "data:image/jpeg;base64,...",
      "livenessData": {"blinkDetected": bool, "headMovement": bool,
                       "timestamp": <ms since epoch>}
    }

The backend answers with {"success", "session", "faceMatchScore",
"livenessScore"}. Scores are produced server side; this client only
transports the outcome.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from veriface_config import CONFIG
from veriface_logger import VerifaceLogger
from veriface_types import VerificationOutcome

_log = logging.getLogger("VerifaceSubmission")

DEFAULT_BASE_URL = str(CONFIG["submission"]["base_url"])
DEFAULT_TIMEOUT = float(CONFIG["submission"]["timeout"])


class SubmissionError(RuntimeError):
    """Backend rejected the submission or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def build_submission_payload(outcome: VerificationOutcome) -> dict:
    """Wire payload for a captured outcome.

    Raises:
        ValueError: if the outcome did not pass (no image was captured).
    """
    if not outcome.passed or outcome.image_data is None:
        reason = outcome.failure_reason.value if outcome.failure_reason else outcome.run_state.value
        raise ValueError(f"Only captured outcomes can be submitted (got: {reason})")

    return {
        "faceImageData": outcome.image_data,
        "livenessData": {
            "blinkDetected": bool(outcome.state.blink_detected),
            "headMovement": bool(outcome.state.head_movement),
            "timestamp": int(outcome.timestamp_ms),
        },
    }


class BiometricSubmitter:
    """Async HTTP client for the biometric verification endpoint."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        audit: Optional[VerifaceLogger] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.audit = audit

    def endpoint(self, session_id: str) -> str:
        return f"{self.base_url}/api/verification/{session_id}/biometric"

    async def submit(self, session_id: str, outcome: VerificationOutcome) -> dict[str, Any]:
        """POST the outcome and return the backend's JSON response.

        Raises:
            ValueError: outcome did not pass.
            SubmissionError: network failure or non-2xx response.
        """
        payload = build_submission_payload(outcome)
        url = self.endpoint(session_id)

        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError as e:
            if self.audit:
                self.audit.error(f"Biometric submission to {url} failed", e)
            else:
                _log.error("Biometric submission to %s failed: %s", url, e)
            raise SubmissionError(f"Could not reach verification backend: {e}") from e

        if response.is_error:
            text = response.text or response.reason_phrase
            _log.warning("Biometric submission rejected — status=%d", response.status_code)
            if self.audit:
                self.audit.log_run_event(
                    "submission_rejected", session_id=session_id, status=response.status_code
                )
            raise SubmissionError(
                f"{response.status_code}: {text}",
                status_code=response.status_code,
                body=text,
            )

        try:
            result = response.json()
        except ValueError as e:
            if self.audit:
                self.audit.error("Verification backend returned a non-JSON body", e)
            else:
                _log.error("Biometric submission returned a non-JSON body — status=%d",
                           response.status_code)
            raise SubmissionError(
                f"{response.status_code}: response is not JSON",
                status_code=response.status_code,
                body=response.text,
            ) from e

        _log.info(
            "Biometric submission accepted — success=%s faceMatch=%s liveness=%s",
            result.get("success"), result.get("faceMatchScore"), result.get("livenessScore"),
        )
        if self.audit:
            self.audit.log_run_event(
                "submission_sent",
                session_id=session_id,
                success=result.get("success"),
                face_match_score=result.get("faceMatchScore"),
                liveness_score=result.get("livenessScore"),
            )
        return result

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "BiometricSubmitter":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()
