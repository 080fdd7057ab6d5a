"""Error kinds raised across the liveness flow."""
from __future__ import annotations

import json
from typing import Any, Optional, Sequence, Union

ExpectedStatus = Union[int, Sequence[int]]


class LivenessError(RuntimeError):
    """Base error; carries a short message suitable for the UI."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


class CameraError(LivenessError):
    """Camera permission denied or capture device unavailable."""


class TransportError(LivenessError):
    """Network failure, timeout, or an unparseable response body."""


class MalformedResponseError(TransportError):
    """The server answered, but its body is not JSON."""

    def __init__(self, *, method: str, path: str, status: int, text: str) -> None:
        self.status = status
        self.text = text
        super().__init__(
            "Malformed response",
            log_message=f"{method} {path} returned non-JSON body ({status}): {text[:200]!r}",
        )


class ResourceError(LivenessError):
    """A REST resource answered with an unexpected status."""

    def __init__(
        self,
        *,
        method: str,
        path: str,
        expected: ExpectedStatus,
        actual: int,
        body: Any,
        user_message: str = "Remote service rejected the request",
    ) -> None:
        self.method = method
        self.path = path
        self.expected = expected
        self.actual = actual
        self.body = body
        super().__init__(
            user_message,
            log_message=(
                f"{method} {path} failed! Expected {expected} but got {actual}. "
                f"Body:{json.dumps(body)}"
            ),
        )


class AuthError(LivenessError):
    """Token exchange failed."""


class SessionError(ResourceError):
    """Liveness session creation failed."""


class StreamConnectionError(LivenessError):
    """The streaming connection to the liveness engine could not be opened."""


class DetectionError(LivenessError):
    """A detection step failed, timed out, or lost its connection."""

    def __init__(self, step: str, reason: str, *, timed_out: bool = False) -> None:
        super().__init__(f"{step} detection failed", log_message=f"{step} detection failed: {reason}")
        self.step = step
        self.timed_out = timed_out


class OrchestratorBusyError(LivenessError):
    """A liveness run is already in flight."""


__all__ = [
    "AuthError",
    "CameraError",
    "DetectionError",
    "LivenessError",
    "MalformedResponseError",
    "OrchestratorBusyError",
    "ResourceError",
    "SessionError",
    "StreamConnectionError",
    "TransportError",
]
