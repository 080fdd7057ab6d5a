from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import numpy as np
import pytest

from liveness_demo.backend.session_client import Session
from liveness_demo.config import LivenessSettings, Settings
from liveness_demo.sensors.camera import CaptureSource, MediaConstraints, MediaStream, MediaTrack
from liveness_demo.state import DetectionStep

AUTH_BASE = "https://auth.example.test"
STREAMING_BASE = "https://api.example.test"


def make_settings(tmp_path, **overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "auth_base_url": AUTH_BASE,
        "streaming_api_url": STREAMING_BASE,
        "streaming_ws_url": "ws://127.0.0.1:9/liveness",
        "api_key": "dGVzdDpzZWNyZXQ=",
        "oauth_scope": "liveness.api/results:read",
        "log_directory": tmp_path / "logs",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def fast_settings(tmp_path) -> Settings:
    """Short step budget: 0.2s total, 0.1s per attempt."""
    return make_settings(tmp_path, liveness=LivenessSettings(step_total_timeout_seconds=0.2))


class FakeDevice:
    def __init__(self, width: int = 1280, height: int = 720) -> None:
        self.frame = np.zeros((height, width, 3), dtype=np.uint8)
        self.reads = 0
        self.releases = 0

    def read(self):
        self.reads += 1
        return True, self.frame

    def release(self) -> None:
        self.releases += 1


class FakeAcquire:
    """Stands in for the device open; counts calls and can fail on demand."""

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.calls = 0
        self.device = FakeDevice()

    async def __call__(self, constraints: MediaConstraints) -> MediaStream:
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return MediaStream([MediaTrack(CaptureSource(self.device, label="fake"))])


@pytest.fixture
def fake_acquire() -> FakeAcquire:
    return FakeAcquire()


Behaviour = Callable[[Optional[Callable[[], None]]], Awaitable[None]]


class FakeConnection:
    """In-memory streaming connection recording every call."""

    def __init__(self) -> None:
        self.open_calls: List[Dict[str, str]] = []
        self.detect_calls: List[DetectionStep] = []
        self.detect_kwargs: List[Dict[str, Any]] = []
        self.close_calls = 0
        self.open_error: Optional[Exception] = None
        self.behaviours: Dict[DetectionStep, Behaviour] = {}

    async def open(self, surface, auth) -> str:
        self.open_calls.append(dict(auth))
        await asyncio.sleep(0)
        if self.open_error is not None:
            raise self.open_error
        return "remote-1"

    async def detect(self, step, *, retry=False, timeout=None, on_repeat=None) -> None:
        step = DetectionStep(step)
        self.detect_calls.append(step)
        self.detect_kwargs.append({"retry": retry, "timeout": timeout})
        behaviour = self.behaviours.get(step)
        if behaviour is not None:
            await behaviour(on_repeat)
        else:
            await asyncio.sleep(0)

    async def close(self) -> None:
        self.close_calls += 1


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()


class FakeSessions:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.calls = 0

    async def create_session(self) -> Session:
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return Session(session_id=f"s{self.calls}", transaction_id=f"tx-{self.calls}")


@pytest.fixture
def fake_sessions() -> FakeSessions:
    return FakeSessions()


class RecordingBackend:
    """httpx.MockTransport handler emulating the token and session endpoints."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.token_body: Dict[str, Any] = {"access_token": "t1", "token_type": "Bearer", "expires_in": 3600}
        self.token_status = 200
        self.session_status = 200
        self.session_body: Optional[Dict[str, Any]] = {"session_id": "s1"}
        self.session_text: Optional[str] = None

    def token_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/oauth2/token"]

    def session_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/v1/session"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth2/token":
            return httpx.Response(self.token_status, json=self.token_body)
        if request.url.path == "/v1/session":
            if self.session_text is not None:
                return httpx.Response(self.session_status, text=self.session_text)
            if self.session_body is None:
                return httpx.Response(self.session_status)
            return httpx.Response(self.session_status, content=json.dumps(self.session_body))
        return httpx.Response(404, json={"error": "not_found"})


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def mock_client(backend) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(backend))
