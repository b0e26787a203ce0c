"""Per-frame scan loop and camera lifecycle for the thermal scan kiosk."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional

import numpy as np

from .config import Settings, get_settings
from .errors import AcquisitionFailure
from .imaging import FrameCompositor, blend
from .phase_controller import PhaseController, Scheduler
from .preview import PreviewBroadcaster, RenderTarget
from .sensors.camera import CameraSource, CameraStream, OpenCVCameraSource, RawFrame
from .sensors.perception import PerceptionGate
from .state import THERMAL_PHASES, Outcome, ScanPhase, ScanStatus

logger = logging.getLogger(__name__)

PROMPT_LOOK = "Please look at the camera."
PROMPT_INITIALIZING = "Initializing Camera..."
PROMPT_UNAVAILABLE = "Camera unavailable"
PROMPT_NO_PERCEPTION = "Face detection unavailable"


class ScanSessionDriver:
    """Coordinates camera, perception, phase controller and render target."""

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        camera_source: Optional[CameraSource] = None,
        perception_gate: Optional[PerceptionGate] = None,
        render_target: Optional[RenderTarget] = None,
        controller: Optional[PhaseController] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self._clock = clock
        self._scheduler = scheduler
        self._camera_source: CameraSource = camera_source or OpenCVCameraSource(self.settings.camera.camera_id)
        self._gate = perception_gate or PerceptionGate(self.settings.perception)
        self._render: RenderTarget = render_target or PreviewBroadcaster(
            jpeg_quality=self.settings.output.jpeg_quality,
            preview_queue_size=self.settings.output.preview_queue_size,
            ui_queue_size=self.settings.output.ui_event_queue_size,
        )
        self.controller = controller or PhaseController(self.settings.phases, self.settings.outcome, clock=clock)
        self._compositor = FrameCompositor(
            self.settings.output.width,
            self.settings.output.height,
            mirror=bool(self.settings.camera.mirror),
        )

        self._stream: Optional[CameraStream] = None
        self._camera_lock = asyncio.Lock()
        self._camera_ready = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._last_frame_timestamp: Optional[float] = None
        self._started = False

        self.camera_error: Optional[str] = None
        self.frames_processed = 0
        self.stale_frames = 0
        self.camera_acquisitions = 0
        self.camera_releases = 0

        self.controller.register_phase_callback(self._on_phase_change)
        self.controller.register_reveal_callback(self._on_reveal)

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------

    @property
    def phase(self) -> ScanPhase:
        return self.controller.phase

    @property
    def render_target(self) -> RenderTarget:
        return self._render

    @property
    def camera_active(self) -> bool:
        return self._stream is not None

    @property
    def unavailable(self) -> bool:
        """Camera could not be acquired; the frame loop does not run."""
        return self.camera_error is not None

    @property
    def perception_ready(self) -> bool:
        return self._gate.available

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        logger.info("Starting scan session driver")
        self._started = True
        self._stop_event.clear()
        loop = asyncio.get_running_loop()
        self.controller.attach_scheduler(self._scheduler or loop)

        await loop.run_in_executor(None, self._gate.load)
        if not self._gate.available:
            logger.error("🚫 [STARTUP] Perception unavailable (%s) - scans cannot be triggered", self._gate.error)

        if await self._acquire_camera():
            self._ensure_frame_loop()
        else:
            logger.error("🎥 [STARTUP] Camera unavailable - frame loop not started")
        self._publish_status()

    async def stop(self) -> None:
        logger.info("Stopping scan session driver")
        self._stop_event.set()
        self._camera_ready.set()
        self.controller.close()

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping frame loop: %s", e)
            self._loop_task = None

        # Pending camera open/close tasks are short; let them settle so every
        # acquisition is matched by the release below.
        results = await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Error in background task during shutdown: %s", result)
        self._background_tasks.clear()

        await self._release_camera(reason="teardown")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._gate.close)
        self._started = False
        logger.info("Scan session driver stopped")

    async def retry_camera(self) -> bool:
        """Attempt to leave the unavailable state by reopening the camera."""
        if await self._acquire_camera():
            self._ensure_frame_loop()
            self._publish_status()
            return True
        self._publish_status()
        return False

    # ------------------------------------------------------------------
    # Operator / external events
    # ------------------------------------------------------------------

    def trigger(self) -> bool:
        """Simulate a presence detection (debug)."""
        return self.controller.handle_presence(True, self.controller.generation)

    def complete_countdown(self) -> bool:
        return self.controller.complete_countdown()

    def reset(self, reason: str = "operator") -> None:
        self.controller.reset(reason)

    # ------------------------------------------------------------------
    # Camera
    # ------------------------------------------------------------------

    async def _acquire_camera(self) -> bool:
        async with self._camera_lock:
            if self._stream is not None:
                return True
            camera = self.settings.camera
            loop = asyncio.get_running_loop()
            try:
                stream = await loop.run_in_executor(
                    None,
                    self._camera_source.open,
                    camera.preferred_width,
                    camera.preferred_height,
                    camera.facing,
                )
            except AcquisitionFailure as exc:
                self.camera_error = exc.reason
                self._camera_ready.clear()
                logger.error("📷 Camera acquisition failed: %s", exc.reason)
                return False
            except Exception as exc:
                self.camera_error = str(exc) or exc.__class__.__name__
                self._camera_ready.clear()
                logger.exception("📷 Unexpected camera acquisition error: %s", exc)
                return False

            self._stream = stream
            self._last_frame_timestamp = None
            self.camera_error = None
            self.camera_acquisitions += 1
            self._camera_ready.set()
            logger.info("📷 Camera acquired")
            return True

    def _detach_stream(self) -> Optional[CameraStream]:
        """Stop handing out frames immediately; the device is closed separately."""
        stream = self._stream
        self._stream = None
        self._camera_ready.clear()
        return stream

    async def _close_stream(self, stream: Optional[CameraStream], *, reason: str) -> None:
        if stream is None:
            return
        # Waits for any in-flight read on the same stream.
        async with self._camera_lock:
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, stream.close)
            except Exception as exc:
                logger.warning("Error closing camera: %s", exc)
            self.camera_releases += 1
            logger.info("📷 Camera released (%s)", reason)

    async def _release_camera(self, *, reason: str) -> None:
        await self._close_stream(self._detach_stream(), reason=reason)

    def _on_phase_change(self, previous: ScanPhase, phase: ScanPhase) -> None:
        if phase is ScanPhase.RESULT:
            stream = self._detach_stream()
            if stream is not None:
                self._spawn(self._close_stream(stream, reason="result"), name="camera-release")
        elif phase is ScanPhase.IDLE and previous is not ScanPhase.IDLE and self._started:
            self._spawn(self._reacquire_camera(), name="camera-reacquire")
        self._publish_status()

    async def _reacquire_camera(self) -> None:
        if await self._acquire_camera():
            self._ensure_frame_loop()
        else:
            logger.error("🎥 Camera unavailable after result - frame loop stopped until retry")
            self._halt_frame_loop()
        self._publish_status()

    def _on_reveal(self, outcome: Outcome) -> None:
        self._publish_status()

    def _spawn(self, coro: Any, *, name: str) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro, name=name)
        except RuntimeError:
            coro.close()
            logger.debug("No running loop for %s", name)
            return
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # ------------------------------------------------------------------
    # Frame loop
    # ------------------------------------------------------------------

    def _ensure_frame_loop(self) -> None:
        if self._loop_task and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._frame_loop(), name="scan-frame-loop")

    def _halt_frame_loop(self) -> None:
        task = self._loop_task
        self._loop_task = None
        if task is None or task.done():
            return
        task.cancel()
        # stop() gathers it with the other background work.
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _frame_loop(self) -> None:
        poll = self.settings.camera.idle_poll_seconds
        logger.info("Frame loop started")
        try:
            while not self._stop_event.is_set():
                if self._stream is None:
                    if self.unavailable:
                        break
                    # Camera parked (result screen); keep the status fresh for the UI.
                    self._publish_status()
                    try:
                        await asyncio.wait_for(self._camera_ready.wait(), timeout=0.1)
                    except asyncio.TimeoutError:
                        pass
                    continue

                try:
                    raw = await self._read_frame()
                    if raw is None or await self.process_frame(raw) is None:
                        await asyncio.sleep(poll)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Frame iteration failed")
                    await asyncio.sleep(poll)
        finally:
            logger.info("Frame loop stopped")

    async def _read_frame(self) -> Optional[RawFrame]:
        async with self._camera_lock:
            stream = self._stream
            if stream is None:
                return None
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, stream.next_frame)

    async def process_frame(self, raw: RawFrame) -> Optional[np.ndarray]:
        """
        Run one frame through the pipeline and publish it.

        Returns the published buffer, or ``None`` when the frame was a repeat
        of the previous timestamp.
        """
        if raw.timestamp == self._last_frame_timestamp:
            self.stale_frames += 1
            return None
        self._last_frame_timestamp = raw.timestamp

        buffer = self._compositor.compose(raw.pixels)
        self.controller.advance()

        if self.controller.phase is ScanPhase.IDLE and self._gate.available:
            generation = self.controller.generation
            loop = asyncio.get_running_loop()
            signal = await loop.run_in_executor(None, self._gate.evaluate, buffer, ScanPhase.IDLE, generation)
            if signal is not None and signal.present:
                # Rejected by the controller if a transition happened meanwhile.
                self.controller.handle_presence(signal)

        status = self.build_status()
        if status.phase in THERMAL_PHASES and status.progress > 0:
            buffer = blend(buffer, status.progress)

        self.frames_processed += 1
        self._render.publish(buffer, status)
        return buffer

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def build_status(self) -> ScanStatus:
        status = self.controller.status(self._clock())
        status.available = not self.unavailable
        status.perception_ready = self._gate.available

        if self.unavailable:
            status.prompt = PROMPT_UNAVAILABLE
            status.error = f"camera: {self.camera_error}"
        elif status.phase is ScanPhase.IDLE:
            if not self._gate.available and self._gate.error:
                status.prompt = PROMPT_NO_PERCEPTION
                status.error = f"perception: {self._gate.error}"
            elif self._stream is None:
                status.prompt = PROMPT_INITIALIZING
            else:
                status.prompt = PROMPT_LOOK
        return status

    def _publish_status(self) -> None:
        try:
            self._render.publish(None, self.build_status())
        except Exception as e:
            logger.warning("Failed to publish status: %s", e)


__all__ = ["ScanSessionDriver"]
