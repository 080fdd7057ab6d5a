"""Shared state definitions for the liveness flow."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional


class LivenessState(str, enum.Enum):
    """
    Orchestrator states in chronological order:

    1. IDLE             - Waiting for camera permission and a start command
    2. SESSION_PENDING  - Exchanging credentials and creating the remote session
    3. CONNECTION_OPEN  - Streaming connection established
    4. DETECTING_FACE   - Waiting for the engine to find a face
    5. DETECTING_SMILE  - Waiting for the engine to see a smile
    6. COMPLETED        - All steps passed, connection closed
    7. ABORTED          - Any failure or cancellation, connection closed
    """
    IDLE = "idle"
    SESSION_PENDING = "session_pending"
    CONNECTION_OPEN = "connection_open"
    DETECTING_FACE = "detecting_face"
    DETECTING_SMILE = "detecting_smile"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (LivenessState.COMPLETED, LivenessState.ABORTED)


class DetectionStep(str, enum.Enum):
    """Challenges understood by the liveness engine."""
    FACE = "face"
    SMILE = "smile"
    HEAD_LEFT = "head_left"  # reserved
    HEAD_RIGHT = "head_right"  # reserved


@dataclass(frozen=True)
class StepPolicy:
    """Per-attempt timeout and whether the engine may retry once internally."""

    step: DetectionStep
    retry: bool
    timeout: float

    @property
    def budget(self) -> float:
        """Total wall-clock exposure for the step including the internal retry."""
        return self.timeout * 2 if self.retry else self.timeout


@dataclass
class LivenessEvent:
    """Event payload distributed to UI clients over the local WebSocket."""

    type: str
    data: Dict[str, Any]
    state: LivenessState
    error: Optional[str] = None

    def as_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "state": self.state.value, "data": self.data}
        if self.error:
            payload["error"] = self.error
        return payload


__all__ = ["DetectionStep", "LivenessEvent", "LivenessState", "StepPolicy"]
