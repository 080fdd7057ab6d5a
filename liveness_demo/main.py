"""FastAPI entry-point for the liveness demo."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from .config import Settings, get_settings
from .errors import CameraError, OrchestratorBusyError
from .logging_config import configure_logging
from .runtime import LivenessRuntime, build_runtime
from .sensors.camera import VideoSurface

logger = logging.getLogger(__name__)


def _mjpeg(surface: VideoSurface, fps: float) -> StreamingResponse:
    boundary = "frame"

    async def frame_iterator() -> AsyncIterator[bytes]:
        try:
            async for frame in surface.jpeg_frames(fps):
                header = (
                    f"--{boundary}\r\n"
                    f"Content-Type: image/jpeg\r\n"
                    f"Content-Length: {len(frame)}\r\n\r\n"
                ).encode("ascii")
                yield header + frame + b"\r\n"
        except Exception as e:
            logger.error(f"Preview stream error: {e}")

    media_type = f"multipart/x-mixed-replace; boundary={boundary}"
    return StreamingResponse(frame_iterator(), media_type=media_type)


def create_app(settings: Optional[Settings] = None, runtime: Optional[LivenessRuntime] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    runtime = runtime or build_runtime(settings)
    orchestrator = runtime.orchestrator

    app = FastAPI(title="liveness-demo", version="0.1.0")
    app.state.runtime = runtime

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        """Catch-all exception handler to prevent application crashes."""
        logger.exception(f"Unhandled exception in {request.url.path}: {exc}")
        return PlainTextResponse(
            f"Internal server error: {str(exc)}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def on_startup() -> None:
        try:
            await runtime.start()
            logger.info("Application started (camera permission=%s)", orchestrator.permission_granted)
        except Exception as e:
            logger.exception(f"Failed to start services: {e}")
            logger.error("Application startup failed - liveness disabled")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        try:
            await runtime.stop()
            logger.info("Application shutdown complete")
        except Exception as e:
            logger.exception(f"Error during shutdown: {e}")

    @app.get("/healthz")
    async def healthcheck() -> JSONResponse:
        return JSONResponse({"status": "ok", "state": orchestrator.state.value})

    @app.get("/liveness/status")
    async def liveness_status() -> JSONResponse:
        return JSONResponse(orchestrator.snapshot())

    @app.post("/liveness/start")
    async def liveness_start() -> JSONResponse:
        """The single start control; disabled until camera permission is granted."""
        try:
            orchestrator.start()
        except CameraError as exc:
            return JSONResponse({"status": "error", "message": exc.user_message}, status_code=status.HTTP_409_CONFLICT)
        except OrchestratorBusyError as exc:
            return JSONResponse({"status": "error", "message": exc.user_message}, status_code=status.HTTP_409_CONFLICT)
        logger.info("Liveness start requested")
        return JSONResponse({"status": "started", **orchestrator.snapshot()}, status_code=status.HTTP_202_ACCEPTED)

    @app.get("/preview")
    async def preview_stream() -> StreamingResponse:
        return _mjpeg(runtime.preview, settings.performance.preview_fps)

    @app.get("/preview/streaming")
    async def streaming_preview() -> StreamingResponse:
        return _mjpeg(runtime.streaming, settings.performance.preview_fps)

    @app.websocket("/ws/ui")
    async def ui_socket(ws: WebSocket) -> None:
        await ws.accept()
        queue = orchestrator.register_ui()
        try:
            while True:
                try:
                    event = await queue.get()
                except asyncio.CancelledError:
                    break  # Clean shutdown

                try:
                    await ws.send_json(event.as_payload())
                except Exception as e:
                    logger.debug(f"WebSocket send failed (client disconnected): {e}")
                    break
        except WebSocketDisconnect:
            pass
        except asyncio.CancelledError:
            pass  # Clean shutdown
        except Exception as e:
            logger.error(f"Unexpected error in UI websocket: {e}")
        finally:
            orchestrator.unregister_ui(queue)
            try:
                await ws.close()
            except Exception:
                pass

    return app


__all__ = ["create_app"]
