"""
Camera acquisition for the scan kiosk.
Front-facing webcam via OpenCV; frames are handed out as RGB arrays.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import cv2
import numpy as np

from ..errors import AcquisitionFailure

logger = logging.getLogger("camera")


@dataclass
class RawFrame:
    """Single frame as delivered by the camera."""
    width: int
    height: int
    pixels: np.ndarray  # (height, width, 3) uint8 RGB
    timestamp: float  # seconds; repeats mean "no new data"


class CameraStream(Protocol):
    def next_frame(self) -> Optional[RawFrame]: ...

    def close(self) -> None: ...


class CameraSource(Protocol):
    def open(self, preferred_width: int, preferred_height: int, facing: str) -> CameraStream: ...


class OpenCVCameraStream:
    """Wraps an opened ``cv2.VideoCapture``; ``close`` is idempotent."""

    def __init__(self, capture: "cv2.VideoCapture", camera_id: int) -> None:
        self._cap: Optional[cv2.VideoCapture] = capture
        self.camera_id = camera_id
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def next_frame(self) -> Optional[RawFrame]:
        with self._lock:
            if self._cap is None or not self._cap.isOpened():
                return None

            ret, frame = self._cap.read()
            if not ret or frame is None:
                return None

            # Files and some drivers report a position; live devices often report 0.
            position_ms = self._cap.get(cv2.CAP_PROP_POS_MSEC)
            timestamp = position_ms / 1000.0 if position_ms and position_ms > 0 else time.monotonic()

        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        height, width = rgb.shape[:2]
        return RawFrame(width=width, height=height, pixels=rgb, timestamp=timestamp)

    def close(self) -> None:
        with self._lock:
            if self._cap is None:
                return
            logger.info(f"Closing webcam (camera_id={self.camera_id})")
            self._cap.release()
            self._cap = None


class OpenCVCameraSource:
    """Opens the configured OpenCV device at the preferred resolution."""

    def __init__(self, camera_id: int = 0, fps: int = 30) -> None:
        self.camera_id = camera_id
        self.fps = fps

    def open(self, preferred_width: int, preferred_height: int, facing: str = "user") -> OpenCVCameraStream:
        # OpenCV has no notion of facing; the device index selects the camera.
        logger.info(
            f"Opening webcam (camera_id={self.camera_id}, {preferred_width}x{preferred_height}, facing={facing})"
        )
        cap = cv2.VideoCapture(self.camera_id)
        if not cap.isOpened():
            cap.release()
            logger.error(f"Failed to open webcam {self.camera_id}")
            raise AcquisitionFailure("no device", camera_id=self.camera_id)

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, preferred_width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, preferred_height)
        cap.set(cv2.CAP_PROP_FPS, self.fps)

        # A device that opens but never delivers is usually blocked by OS permissions.
        ret, _ = cap.read()
        if not ret:
            cap.release()
            logger.error(f"Webcam {self.camera_id} opened but delivered no frames")
            raise AcquisitionFailure("permission denied", camera_id=self.camera_id)

        logger.info("Webcam activated successfully")
        return OpenCVCameraStream(cap, self.camera_id)


__all__ = ["RawFrame", "CameraStream", "CameraSource", "OpenCVCameraStream", "OpenCVCameraSource"]
