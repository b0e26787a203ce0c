"""
Render target for the scan pipeline.
Encodes finished frames as JPEG for the MJPEG preview and fans status
events out to UI websocket subscribers.
"""

from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import base64
import logging
from typing import Any, AsyncIterator, List, Optional, Protocol, Tuple

import cv2
import numpy as np

from .state import ControllerEvent, ScanStatus

logger = logging.getLogger("preview")

_PLACEHOLDER_JPEG = base64.b64decode(
    b"/9j/4AAQSkZJRgABAQAAAQABAAD/2wBDAAgGBgcGBQgHBwcJCQgKDBQNDAsLDBkSEw8UHRofHh0aHBwgJC4nICIsIxwcKDcpLDAxNDQ0Hyc5PTgyPC4zNDL/2wBDAQkJCQwLDBgNDRgyIRwhMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjL/wAARCAABAAEDASIAAhEBAxEB/8QAHwAAAQUBAQEBAQEAAAAAAAAAAAECAwQFBgcICQoL/8QAtRAAAgEDAwIEAwUFBAQAAAF9AQIDAAQRBRIhMUEGE1FhByJxFDKBkaEII0KxwRVS0fAkM2JyggkKFhcYGRolJicoKSo0NTY3ODk6Q0RFRkdISUpTVFVWV1hZWmNkZWZnaGlqc3R1dnd4eXqDhIWGh4iJipKTlJWWl5iZmqKjpKWmp6ipqrKztLW2t7i5usLDxMXGx8jJytLT1NXW19jZ2uHi4+Tl5ufo6erx8vP09fb3+Pn6/8QAHwEAAwEBAQEBAQEBAQAAAAAAAAECAwQFBgcICQoL/8QAtREAAgECBAQDBAcFBAQAAQJ3AAECAxEEBSExBhJBUQdhcRMiMoEIFEKRobHBCSMzUvAVYnLRChYkNOEl8RcYGRomJygpKjU2Nzg5OkNERUZHSElKU1RVVldYWVpjZGVmZ2hpanN0dXZ3eHl6goOEhYaHiImKkpOUlZaXmJmaoqOkpaanqKmqsrO0tba3uLm6wsPExcbHyMnK0tPU1dbX2Nna4uPk5ebn6Onq8vP09fb3+Pn6/9oADAMBAAIRAxEAPwD5/ooooA//2Q=="
)


class RenderTarget(Protocol):
    def publish(self, frame: Optional[np.ndarray], status: ScanStatus) -> None: ...


def _status_key(status: ScanStatus) -> Tuple[Any, ...]:
    """Fields whose change is worth a UI event (progress alone is not)."""
    return (
        status.phase,
        status.countdown,
        status.scan_line_direction,
        status.outcome,
        status.displayed_value,
        status.message,
        status.prompt,
        status.available,
        status.perception_ready,
        status.error,
    )


class PreviewBroadcaster:
    """Fan-out of JPEG frames and status events to asyncio queues."""

    def __init__(self, *, jpeg_quality: int = 85, preview_queue_size: int = 2, ui_queue_size: int = 8) -> None:
        self.jpeg_quality = jpeg_quality
        self.preview_queue_size = preview_queue_size
        self.ui_queue_size = ui_queue_size
        self._preview_subscribers: List[asyncio.Queue[bytes]] = []
        self._ui_subscribers: List[asyncio.Queue[ControllerEvent]] = []
        self._last_key: Optional[Tuple[Any, ...]] = None
        self.last_status: Optional[ScanStatus] = None
        self.frames_published = 0

    # ------------------------------------------------------------------
    # RenderTarget
    # ------------------------------------------------------------------

    def publish(self, frame: Optional[np.ndarray], status: ScanStatus) -> None:
        self.last_status = status
        if frame is not None:
            self.frames_published += 1
            if self._preview_subscribers:
                self._broadcast_frame(self._encode(frame))
        elif not status.available:
            self._broadcast_frame(_PLACEHOLDER_JPEG)

        key = _status_key(status)
        if key != self._last_key:
            self._last_key = key
            self.broadcast_event(ControllerEvent(type="state", phase=status.phase, data=status.as_dict(), error=status.error))

    def _encode(self, frame: np.ndarray) -> bytes:
        try:
            bgr = cv2.cvtColor(frame, cv2.COLOR_RGB2BGR)
            ret, enc = cv2.imencode(".jpg", bgr, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
            return enc.tobytes() if ret else _PLACEHOLDER_JPEG
        except Exception as e:
            logger.warning(f"Frame serialization error: {e}")
            return _PLACEHOLDER_JPEG

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    @staticmethod
    def _put_latest(queue: asyncio.Queue[Any], item: Any) -> None:
        if queue.full():
            try:
                queue.get_nowait()
            except QueueEmpty:
                pass
        queue.put_nowait(item)

    def _broadcast_frame(self, frame: bytes) -> None:
        for q in list(self._preview_subscribers):
            self._put_latest(q, frame)

    def broadcast_event(self, event: ControllerEvent) -> None:
        for q in list(self._ui_subscribers):
            try:
                self._put_latest(q, event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)

    def register_ui(self) -> asyncio.Queue[ControllerEvent]:
        queue: asyncio.Queue[ControllerEvent] = asyncio.Queue(maxsize=self.ui_queue_size)
        self._ui_subscribers.append(queue)
        if self.last_status is not None:
            queue.put_nowait(
                ControllerEvent(type="state", phase=self.last_status.phase, data=self.last_status.as_dict(), error=self.last_status.error)
            )
        return queue

    def unregister_ui(self, queue: asyncio.Queue[ControllerEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    async def preview_stream(self) -> AsyncIterator[bytes]:
        """Stream preview frames."""
        q: asyncio.Queue[bytes] = asyncio.Queue(maxsize=self.preview_queue_size)
        self._preview_subscribers.append(q)
        try:
            while True:
                frame = await q.get()
                yield frame
        finally:
            self._preview_subscribers.remove(q)


__all__ = ["RenderTarget", "PreviewBroadcaster"]
