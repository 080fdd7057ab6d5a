"""
Camera acquisition and stream lifecycle.

The preview stream owns the device tracks; the streaming surface gets a clone
whose tracks are logical copies over the same capture device. The device is
released once every track referencing it has stopped.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Tuple, Union

import numpy as np

# Optional deps
try:
    import cv2  # type: ignore
except Exception:
    cv2 = None

from ..config import CameraSettings
from ..errors import CameraError

logger = logging.getLogger(__name__)

_ASPECT_TOLERANCE = 0.01


class CaptureDevice(Protocol):
    """The subset of ``cv2.VideoCapture`` the tracks rely on."""

    def read(self) -> Tuple[bool, Optional[np.ndarray]]: ...

    def release(self) -> None: ...


@dataclass(frozen=True)
class MediaConstraints:
    facing_mode: str = "user"
    aspect_ratio: float = 16 / 9
    width: int = 1280
    height: int = 720
    fps: int = 30
    device_index: int = 0
    audio: bool = False

    @classmethod
    def from_settings(cls, camera: CameraSettings) -> "MediaConstraints":
        return cls(
            facing_mode=camera.facing_mode,
            width=camera.width,
            height=camera.height,
            fps=camera.fps,
            device_index=camera.device_index,
        )


class CaptureSource:
    """Reference-counted wrapper around one opened capture device."""

    def __init__(self, device: CaptureDevice, label: str) -> None:
        self.label = label
        self._device: Optional[CaptureDevice] = device
        self._refs = 0

    @property
    def released(self) -> bool:
        return self._device is None

    def retain(self) -> None:
        self._refs += 1

    def release(self) -> None:
        self._refs -= 1
        if self._refs <= 0 and self._device is not None:
            logger.info("Releasing capture device %s", self.label)
            self._device.release()
            self._device = None

    def read(self) -> Optional[np.ndarray]:
        if self._device is None:
            return None
        ok, frame = self._device.read()
        return frame if ok else None


class MediaTrack:
    """A video track; stopping it twice is a no-op."""

    kind = "video"

    def __init__(self, source: CaptureSource) -> None:
        self.id = str(uuid.uuid4())
        self.source = source
        self.ready_state = "live"
        source.retain()

    @property
    def label(self) -> str:
        return self.source.label

    def stop(self) -> None:
        if self.ready_state == "ended":
            return
        self.ready_state = "ended"
        self.source.release()

    def clone(self) -> "MediaTrack":
        return MediaTrack(self.source)

    def read_frame(self) -> Optional[np.ndarray]:
        if self.ready_state == "ended":
            return None
        return self.source.read()


class MediaStream:
    def __init__(self, tracks: List[MediaTrack]) -> None:
        self.id = str(uuid.uuid4())
        self._tracks = list(tracks)

    def get_tracks(self) -> List[MediaTrack]:
        return list(self._tracks)

    @property
    def active(self) -> bool:
        return any(track.ready_state == "live" for track in self._tracks)

    def clone(self) -> "MediaStream":
        return MediaStream([track.clone() for track in self._tracks])

    def stop(self) -> None:
        for track in self._tracks:
            track.stop()

    def read_frame(self) -> Optional[np.ndarray]:
        for track in self._tracks:
            frame = track.read_frame()
            if frame is not None:
                return frame
        return None


class VideoSurface:
    """A rendering target bound to at most one stream."""

    def __init__(self, name: str, *, autoplay: bool = False) -> None:
        self.name = name
        self.autoplay = autoplay
        self.paused = True
        self.on_loaded_metadata: Optional[Callable[[], None]] = None
        self.frame_shape: Optional[Tuple[int, ...]] = None
        self._src_object: Optional[MediaStream] = None

    @property
    def src_object(self) -> Optional[MediaStream]:
        return self._src_object

    @src_object.setter
    def src_object(self, stream: Optional[MediaStream]) -> None:
        self._src_object = stream
        self.frame_shape = None
        self.paused = not (stream is not None and self.autoplay)

    def play(self) -> None:
        if self._src_object is None:
            return
        self.paused = False
        logger.debug("Surface %s playing", self.name)

    async def load_metadata(self) -> None:
        """Read one frame to learn the stream geometry, then fire ``on_loaded_metadata``."""
        frame = await self.read_frame()
        if frame is None:
            logger.warning("Surface %s: no frame available for metadata", self.name)
            return
        self.frame_shape = frame.shape
        if self.on_loaded_metadata:
            self.on_loaded_metadata()

    async def read_frame(self) -> Optional[np.ndarray]:
        stream = self._src_object
        if stream is None:
            return None
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, stream.read_frame)

    async def jpeg_frames(self, fps: float, quality: int = 80) -> AsyncIterator[bytes]:
        """Yield JPEG-encoded frames while the surface is playing."""
        interval = 1.0 / fps if fps > 0 else 0.0
        while True:
            if self._src_object is None or not self._src_object.active:
                return
            if not self.paused:
                frame = await self.read_frame()
                if frame is not None:
                    encoded = encode_jpeg(frame, quality)
                    if encoded is not None:
                        yield encoded
            await asyncio.sleep(interval)


def encode_jpeg(frame: np.ndarray, quality: int = 80) -> Optional[bytes]:
    if cv2 is None:
        return None
    ok, buf = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    return buf.tobytes() if ok else None


def open_video_capture(constraints: MediaConstraints) -> MediaStream:
    """Blocking device open; raises ``CameraError`` when unavailable or over-constrained."""
    if constraints.audio:
        raise CameraError("Audio capture is not supported")
    if cv2 is None:
        raise CameraError("Camera unavailable", log_message="OpenCV is not installed")

    capture = cv2.VideoCapture(constraints.device_index)
    if not capture.isOpened():
        capture.release()
        raise CameraError(
            "Camera unavailable",
            log_message=f"Failed to open camera {constraints.device_index} (denied or busy)",
        )

    capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
    capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
    capture.set(cv2.CAP_PROP_FPS, constraints.fps)

    width = capture.get(cv2.CAP_PROP_FRAME_WIDTH)
    height = capture.get(cv2.CAP_PROP_FRAME_HEIGHT)
    if not height or abs(width / height - constraints.aspect_ratio) > _ASPECT_TOLERANCE:
        capture.release()
        raise CameraError(
            "Camera does not support the required aspect ratio",
            log_message=f"Camera {constraints.device_index} delivers {width}x{height}",
        )

    source = CaptureSource(capture, label=f"camera:{constraints.device_index}:{constraints.facing_mode}")
    return MediaStream([MediaTrack(source)])


async def acquire_user_media(constraints: MediaConstraints) -> MediaStream:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, open_video_capture, constraints)


@dataclass
class CameraSuccess:
    stream: MediaStream
    kind: str = field(default="success", init=False)


@dataclass
class CameraFailed:
    reason: str = ""
    kind: str = field(default="failed", init=False)


CameraOutcome = Union[CameraSuccess, CameraFailed]
Acquire = Callable[[MediaConstraints], Awaitable[MediaStream]]


class CameraController:
    """Requests the camera once per lifetime and guarantees single teardown."""

    def __init__(
        self,
        constraints: Optional[MediaConstraints] = None,
        *,
        acquire: Acquire = acquire_user_media,
        on_permission_granted: Optional[Callable[[], None]] = None,
        on_permission_denied: Optional[Callable[[], None]] = None,
    ) -> None:
        self.constraints = constraints or MediaConstraints()
        self._acquire = acquire
        self.on_permission_granted = on_permission_granted
        self.on_permission_denied = on_permission_denied
        self._lock = asyncio.Lock()
        self._mounting = False
        self._outcome: Optional[CameraOutcome] = None
        self.preview: Optional[VideoSurface] = None
        self.streaming: Optional[VideoSurface] = None

    @property
    def mounted(self) -> bool:
        return self._mounting

    @property
    def outcome(self) -> Optional[CameraOutcome]:
        return self._outcome

    async def request_camera(self, constraints: Optional[MediaConstraints] = None) -> CameraOutcome:
        try:
            stream = await self._acquire(constraints or self.constraints)
            return CameraSuccess(stream)
        except (CameraError, OSError) as exc:
            logger.error("Camera request failed: %s", exc)
            return CameraFailed(reason=str(exc))
        except Exception as exc:
            # cv2.error from set/get, executor failures
            logger.exception("Unexpected camera failure: %s", exc)
            return CameraFailed(reason=str(exc) or type(exc).__name__)

    async def mount(self, preview: VideoSurface, streaming: VideoSurface) -> Optional[CameraOutcome]:
        """Acquire the camera and bind both surfaces; repeated calls do not re-acquire."""
        async with self._lock:
            if self._mounting:
                logger.debug("Camera already mounted; ignoring")
                return self._outcome
            self._mounting = True
            self.preview = preview
            self.streaming = streaming

            outcome = await self.request_camera()
            self._outcome = outcome
            if isinstance(outcome, CameraFailed):
                if self.on_permission_denied:
                    self.on_permission_denied()
                return outcome

            if self.on_permission_granted:
                self.on_permission_granted()

            preview.src_object = outcome.stream
            streaming.src_object = outcome.stream.clone()
            streaming.on_loaded_metadata = streaming.play
            await streaming.load_metadata()
            logger.info("Camera mounted (preview=%s, streaming=%s)", preview.name, streaming.name)
            return outcome

    async def unmount(self) -> None:
        """Stop all tracks and clear surfaces; a no-op when nothing was attached."""
        async with self._lock:
            for surface in (self.preview, self.streaming):
                if surface is None:
                    continue
                stream = surface.src_object
                # Nothing attached: mounted and unmounted quickly, or acquisition failed
                if stream is None:
                    continue
                for track in stream.get_tracks():
                    track.stop()
                surface.src_object = None
            logger.info("Camera unmounted")

    @asynccontextmanager
    async def scoped(self, preview: VideoSurface, streaming: VideoSurface) -> AsyncIterator[Optional[CameraOutcome]]:
        try:
            yield await self.mount(preview, streaming)
        finally:
            await self.unmount()


__all__ = [
    "CameraController",
    "CameraFailed",
    "CameraOutcome",
    "CameraSuccess",
    "CaptureSource",
    "MediaConstraints",
    "MediaStream",
    "MediaTrack",
    "VideoSurface",
    "acquire_user_media",
    "encode_jpeg",
    "open_video_capture",
]
