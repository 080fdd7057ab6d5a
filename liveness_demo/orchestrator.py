"""Liveness flow orchestration: session negotiation, streaming connection and detection steps."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import logging
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .backend.session_client import Session, SessionClient
from .config import Settings
from .errors import CameraError, DetectionError, LivenessError, OrchestratorBusyError
from .sensors.camera import VideoSurface
from .state import DetectionStep, LivenessEvent, LivenessState, StepPolicy

logger = logging.getLogger(__name__)

_STEP_STATES: Dict[DetectionStep, LivenessState] = {
    DetectionStep.FACE: LivenessState.DETECTING_FACE,
    DetectionStep.SMILE: LivenessState.DETECTING_SMILE,
}


class StreamingConnection(Protocol):
    async def open(self, surface: VideoSurface, auth: Mapping[str, str]) -> str: ...

    async def detect(
        self,
        step: DetectionStep,
        *,
        retry: bool = False,
        timeout: Optional[float] = None,
        on_repeat: Optional[Callable[[], None]] = None,
    ) -> None: ...

    async def close(self) -> None: ...


class LivenessTimer:
    """Single cancellable timer handle; clearing is always safe."""

    def __init__(self) -> None:
        self._handle: Optional[asyncio.TimerHandle] = None
        self.fired = False

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self, delay: float, callback: Callable[[], None]) -> None:
        self.clear()
        self.fired = False
        self._handle = asyncio.get_running_loop().call_later(delay, self._fire, callback)

    def clear(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, callback: Callable[[], None]) -> None:
        self._handle = None
        self.fired = True
        callback()


class LivenessOrchestrator:
    """Drives one liveness attempt at a time through the detection state machine."""

    def __init__(
        self,
        settings: Settings,
        sessions: SessionClient,
        connection: StreamingConnection,
        surface: VideoSurface,
    ) -> None:
        self.settings = settings
        self._sessions = sessions
        self._connection = connection
        self._surface = surface
        self._ui_subscribers: List[asyncio.Queue[LivenessEvent]] = []
        self._run_task: Optional[asyncio.Task[LivenessState]] = None

        self.permission_granted = False
        self.timer = LivenessTimer()
        self.state = LivenessState.IDLE
        self.trace: List[LivenessState] = [LivenessState.IDLE]
        self.session: Optional[Session] = None
        self.face_detected = False
        self.smile_detected = False
        self.repeats: Dict[str, int] = {}
        self.last_error: Optional[str] = None

    @property
    def steps(self) -> List[StepPolicy]:
        timeout = self.settings.liveness.step_timeout_seconds
        return [
            StepPolicy(DetectionStep.FACE, retry=True, timeout=timeout),
            StepPolicy(DetectionStep.SMILE, retry=True, timeout=timeout),
        ]

    @property
    def running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def grant_permission(self) -> None:
        logger.info("Camera permission granted; liveness can start")
        self.permission_granted = True

    def deny_permission(self) -> None:
        logger.warning("Camera permission denied; liveness disabled")
        self.permission_granted = False

    def register_ui(self) -> asyncio.Queue[LivenessEvent]:
        queue: asyncio.Queue[LivenessEvent] = asyncio.Queue(maxsize=self.settings.performance.ui_event_queue_size)
        self._ui_subscribers.append(queue)
        return queue

    def unregister_ui(self, queue: asyncio.Queue[LivenessEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "permission_granted": self.permission_granted,
            "face_detected": self.face_detected,
            "smile_detected": self.smile_detected,
            "session_id": self.session.session_id if self.session else None,
            "error": self.last_error,
        }

    def start(self) -> asyncio.Task[LivenessState]:
        """Begin a fresh attempt; each attempt gets a new session and transaction id."""
        if not self.permission_granted:
            raise CameraError("Camera permission has not been granted")
        if self.running:
            raise OrchestratorBusyError("A liveness check is already running")
        self._run_task = asyncio.create_task(self.run(), name="liveness-run")
        return self._run_task

    async def cancel(self) -> None:
        task = self._run_task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run(self) -> LivenessState:
        """Execute the state machine once and return the terminal state.

        Cancellation still aborts and closes the connection, then re-raises.
        """
        if not self.permission_granted:
            raise CameraError("Camera permission has not been granted")
        if not self.state.terminal and self.state is not LivenessState.IDLE:
            raise OrchestratorBusyError("A liveness check is already running")

        self._reset_run()
        outcome = LivenessState.ABORTED
        error: Optional[str] = None
        try:
            logger.info("[LIVENESS] ================================")
            logger.info("[LIVENESS] New liveness attempt starting")

            await self._transition(LivenessState.SESSION_PENDING)
            self.session = await self._sessions.create_session()

            remote_id = await self._connection.open(self._surface, self.session.auth_payload())
            await self._transition(LivenessState.CONNECTION_OPEN, data={"remote_session_id": remote_id})

            for policy in self.steps:
                await self._run_step(policy)

            outcome = LivenessState.COMPLETED
            logger.info("[LIVENESS] All steps passed")

        except asyncio.CancelledError:
            logger.info("[LIVENESS] Attempt cancelled")
            error = "Liveness check cancelled"
            # propagates once the finally block has torn down
            raise

        except LivenessError as exc:
            logger.error("[LIVENESS] Attempt aborted: %s", exc)
            error = exc.user_message

        except Exception as exc:
            logger.exception("[LIVENESS] Unexpected error: %s", exc)
            error = "Please try again"

        finally:
            self.timer.clear()
            await self._close_connection()
            self.last_error = error
            await self._transition(outcome, error=error)
            logger.info("[LIVENESS] Attempt finished: %s", outcome.value)
            logger.info("[LIVENESS] ================================")

        return outcome

    async def _run_step(self, policy: StepPolicy) -> None:
        step = policy.step
        if step is DetectionStep.SMILE and not self.face_detected:
            raise DetectionError(step.value, "face must be detected first")

        await self._transition(_STEP_STATES[step], data={"retry": policy.retry, "timeout": policy.timeout})
        detect_task = asyncio.create_task(
            self._connection.detect(
                step,
                retry=policy.retry,
                timeout=policy.timeout,
                on_repeat=partial(self._on_repeat, step),
            ),
            name=f"liveness-detect-{step.value}",
        )
        self.timer.start(policy.budget, detect_task.cancel)
        try:
            await detect_task
        except asyncio.CancelledError:
            if self.timer.fired:
                raise DetectionError(step.value, f"no result within {policy.budget}s", timed_out=True) from None
            raise
        finally:
            self.timer.clear()
            if not detect_task.done():
                detect_task.cancel()

        if step is DetectionStep.FACE:
            self.face_detected = True
        elif step is DetectionStep.SMILE:
            self.smile_detected = True
        logger.info("[LIVENESS] %s detected", step.value)
        await self._broadcast(
            LivenessEvent(type="detection", state=self.state, data={"step": step.value, "passed": True})
        )

    def _on_repeat(self, step: DetectionStep) -> None:
        self.repeats[step.value] = self.repeats.get(step.value, 0) + 1
        logger.info("[LIVENESS] Engine asked to repeat %s (%d)", step.value, self.repeats[step.value])
        self._publish(LivenessEvent(type="repeat", state=self.state, data={"step": step.value}))

    async def _close_connection(self) -> None:
        try:
            await self._connection.close()
        except Exception as e:
            logger.warning("Error closing liveness connection: %s", e)

    def _reset_run(self) -> None:
        self.timer.clear()
        self.state = LivenessState.IDLE
        self.trace = [LivenessState.IDLE]
        self.session = None
        self.face_detected = False
        self.smile_detected = False
        self.repeats = {}
        self.last_error = None

    async def _transition(
        self,
        state: LivenessState,
        *,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        logger.debug("[LIVENESS] %s -> %s", self.state.value, state.value)
        self.state = state
        self.trace.append(state)
        payload = {"face_detected": self.face_detected, "smile_detected": self.smile_detected}
        payload.update(data or {})
        await self._broadcast(LivenessEvent(type="state", data=payload, state=state, error=error))

    async def _broadcast(self, event: LivenessEvent) -> None:
        self._publish(event)

    def _publish(self, event: LivenessEvent) -> None:
        """Fan out to UI subscribers, dropping the oldest event when a queue is full."""
        for queue in list(self._ui_subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)


__all__ = ["LivenessOrchestrator", "LivenessTimer", "StreamingConnection"]
