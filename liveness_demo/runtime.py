"""Wiring of the liveness components for one process."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .backend.auth import AuthClient
from .backend.http_client import HttpTransport
from .backend.session_client import SessionClient
from .backend.ws_client import LivenessStreamClient
from .config import Settings
from .orchestrator import LivenessOrchestrator, StreamingConnection
from .sensors.camera import Acquire, CameraController, MediaConstraints, VideoSurface, acquire_user_media

logger = logging.getLogger(__name__)


@dataclass
class LivenessRuntime:
    settings: Settings
    transport: HttpTransport
    auth: AuthClient
    sessions: SessionClient
    camera: CameraController
    preview: VideoSurface
    streaming: VideoSurface
    orchestrator: LivenessOrchestrator

    async def start(self) -> None:
        outcome = await self.camera.mount(self.preview, self.streaming)
        logger.info("Camera outcome: %s", outcome.kind if outcome else "unchanged")

    async def stop(self) -> None:
        try:
            await self.orchestrator.cancel()
        except Exception as e:
            logger.warning("Error cancelling liveness run: %s", e)
        try:
            await self.camera.unmount()
        except Exception as e:
            logger.warning("Error unmounting camera: %s", e)
        await self.transport.aclose()


def build_runtime(
    settings: Settings,
    *,
    acquire: Acquire = acquire_user_media,
    connection: Optional[StreamingConnection] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> LivenessRuntime:
    transport = HttpTransport(settings, client=http_client)
    auth = AuthClient(settings, transport)
    sessions = SessionClient(settings, transport, auth)

    preview = VideoSurface("preview", autoplay=True)
    streaming = VideoSurface("streaming")
    orchestrator = LivenessOrchestrator(
        settings,
        sessions,
        connection or LivenessStreamClient(settings),
        streaming,
    )
    camera = CameraController(
        MediaConstraints.from_settings(settings.camera),
        acquire=acquire,
        on_permission_granted=orchestrator.grant_permission,
        on_permission_denied=orchestrator.deny_permission,
    )
    return LivenessRuntime(
        settings=settings,
        transport=transport,
        auth=auth,
        sessions=sessions,
        camera=camera,
        preview=preview,
        streaming=streaming,
        orchestrator=orchestrator,
    )


__all__ = ["LivenessRuntime", "build_runtime"]
