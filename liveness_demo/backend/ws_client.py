"""Streaming connection to the remote liveness engine."""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any, Dict, Mapping, Optional

import websockets

from ..config import Settings
from ..errors import DetectionError, StreamConnectionError
from ..sensors.camera import VideoSurface
from ..state import DetectionStep

logger = logging.getLogger(__name__)

RepeatHandler = Callable[[], None]


class LivenessStreamClient:
    """Owns one engine connection: auth handshake, frame pump, and detect calls."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._conn: Optional[Any] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._pending: Dict[str, asyncio.Future[None]] = {}
        self._repeat_handlers: Dict[str, RepeatHandler] = {}
        self.remote_session_id: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    async def open(self, surface: VideoSurface, auth: Mapping[str, str]) -> str:
        """Connect, authenticate with ``{session_id, tx_id}`` and start streaming frames."""
        uri = self.settings.streaming_ws_url
        timeout = self.settings.liveness.connect_timeout_seconds
        logger.info("Connecting to liveness engine %s", uri)
        try:
            self._conn = await websockets.connect(uri, open_timeout=timeout, ping_interval=None, ping_timeout=None)
            await self._conn.send(json.dumps({"type": "auth", **auth}))
            reply = json.loads(await asyncio.wait_for(self._conn.recv(), timeout=timeout))
        except asyncio.TimeoutError as exc:
            raise StreamConnectionError("Liveness engine did not answer", log_message=f"{uri}: handshake timeout") from exc
        except (OSError, websockets.WebSocketException, json.JSONDecodeError) as exc:
            raise StreamConnectionError("Could not connect to liveness engine", log_message=f"{uri}: {exc}") from exc

        if not isinstance(reply, dict) or reply.get("type") != "session" or not reply.get("session_id"):
            raise StreamConnectionError(
                "Liveness engine rejected the session",
                log_message=f"unexpected handshake reply: {reply}",
            )

        self.remote_session_id = str(reply["session_id"])
        self._listener_task = asyncio.create_task(self._listen(), name="liveness-ws-listener")
        self._pump_task = asyncio.create_task(self._pump_frames(surface), name="liveness-frame-pump")
        logger.info("Liveness session %s open", self.remote_session_id)
        return self.remote_session_id

    async def detect(
        self,
        step: DetectionStep | str,
        *,
        retry: bool = False,
        timeout: Optional[float] = None,
        on_repeat: Optional[RepeatHandler] = None,
    ) -> None:
        """Ask the engine to run one challenge; resolves on pass, raises ``DetectionError`` otherwise.

        ``timeout`` is per attempt. With ``retry`` the engine may restart the
        challenge once, so the local wait covers two attempts.
        """
        action = DetectionStep(step).value
        if self._conn is None:
            raise DetectionError(action, "connection is not open")
        if action in self._pending:
            raise DetectionError(action, "detection already in progress")

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending[action] = future
        if on_repeat:
            self._repeat_handlers[action] = on_repeat

        message: Dict[str, Any] = {"type": "detect", "action": action, "retry": retry}
        if timeout is not None:
            message["timeout_ms"] = int(timeout * 1000)
        wait = None if timeout is None else timeout * (2 if retry else 1)
        try:
            await self._conn.send(json.dumps(message))
            await asyncio.wait_for(future, timeout=wait)
        except asyncio.TimeoutError as exc:
            raise DetectionError(action, f"no result within {wait}s", timed_out=True) from exc
        except websockets.ConnectionClosed as exc:
            raise DetectionError(action, f"connection closed: {exc}") from exc
        finally:
            self._pending.pop(action, None)
            self._repeat_handlers.pop(action, None)

    async def close(self) -> None:
        """Tear the connection down; safe to call any number of times."""
        for task in (self._pump_task, self._listener_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.warning("Error during stream task cleanup: %s", e)
        self._pump_task = None
        self._listener_task = None

        if self._conn is not None:
            try:
                await self._conn.close()
            except Exception as e:
                logger.warning("Error closing liveness connection: %s", e)
            self._conn = None
            logger.info("Liveness connection closed")
        self._fail_pending("connection closed")

    def _fail_pending(self, reason: str) -> None:
        for action, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(DetectionError(action, reason))

    async def _pump_frames(self, surface: VideoSurface) -> None:
        quality = self.settings.liveness.jpeg_quality
        sent = 0
        try:
            async for frame in surface.jpeg_frames(self.settings.liveness.frame_rate, quality):
                if self._conn is None:
                    break
                await self._conn.send(frame)
                sent += 1
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosed:
            logger.debug("Frame pump stopped: connection closed")
        except Exception:  # pragma: no cover - defensive guard
            logger.exception("Frame pump crashed")
        finally:
            logger.debug("Frame pump sent %d frames", sent)

    async def _listen(self) -> None:
        assert self._conn is not None
        try:
            async for message in self._conn:
                if isinstance(message, bytes):
                    continue
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from liveness engine: %s", message)
                    continue
                await self._dispatch(payload)
        except asyncio.CancelledError:  # cooperative cancel
            raise
        except websockets.ConnectionClosedOK:
            logger.info("Liveness connection closed cleanly")
        except websockets.ConnectionClosedError as exc:
            logger.warning("Liveness connection closed: %s", exc)
        except Exception:  # pragma: no cover - defensive guard
            logger.exception("Liveness listener crashed")
        finally:
            self._fail_pending("connection lost")

    async def _dispatch(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("type")
        action = payload.get("action")

        if kind == "ping":
            if self._conn is not None:
                await self._conn.send(json.dumps({"type": "pong"}))
            return

        if kind == "repeat":
            handler = self._repeat_handlers.get(action)
            logger.info("Engine restarted %s challenge", action)
            if handler:
                try:
                    handler()
                except Exception as e:
                    logger.exception("Error in repeat handler: %s", e)
            return

        if kind == "result":
            future = self._pending.get(action)
            if future is None or future.done():
                logger.debug("Ignoring result for %s (nothing pending)", action)
                return
            if payload.get("passed"):
                future.set_result(None)
            else:
                future.set_exception(DetectionError(action, payload.get("reason") or "engine reported failure"))
            return

        if kind == "error":
            logger.error("Liveness engine error: %s", payload.get("message"))
            self._fail_pending(str(payload.get("message") or "engine error"))
            return

        logger.debug("Unhandled engine message: %s", payload)


__all__ = ["LivenessStreamClient"]
