"""
Face presence detection.
MediaPipe FaceLandmarker (VIDEO mode) or MediaPipe face detection, wrapped
by a gate that only runs while the scanner is idle.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, List, Optional, Protocol

import numpy as np

# Optional deps
try:
    import mediapipe as mp  # type: ignore
except Exception:
    mp = None

from ..config import PerceptionSettings
from ..errors import ModelLoadFailure
from ..state import DetectionSignal, ScanPhase

logger = logging.getLogger("perception")


class PerceptionModel(Protocol):
    def infer(self, frame: np.ndarray, timestamp_ms: int) -> List[Any]: ...

    def close(self) -> None: ...


class FaceLandmarkerModel:
    """MediaPipe Tasks FaceLandmarker; returns one landmark list per face."""

    def __init__(self, settings: PerceptionSettings) -> None:
        from mediapipe.tasks import python as mp_tasks
        from mediapipe.tasks.python import vision

        options = vision.FaceLandmarkerOptions(
            base_options=mp_tasks.BaseOptions(model_asset_path=str(settings.model_path)),
            running_mode=vision.RunningMode.VIDEO,
            num_faces=settings.num_faces,
            min_face_detection_confidence=settings.min_detection_confidence,
            min_face_presence_confidence=settings.min_presence_confidence,
            min_tracking_confidence=settings.min_tracking_confidence,
        )
        self._landmarker = vision.FaceLandmarker.create_from_options(options)

    def infer(self, frame: np.ndarray, timestamp_ms: int) -> List[Any]:
        image = mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(frame))
        result = self._landmarker.detect_for_video(image, timestamp_ms)
        return list(result.face_landmarks or [])

    def close(self) -> None:
        self._landmarker.close()


class FaceDetectorModel:
    """Legacy MediaPipe face detection solution; no model file required."""

    def __init__(self, settings: PerceptionSettings) -> None:
        self._detector = mp.solutions.face_detection.FaceDetection(
            model_selection=0,
            min_detection_confidence=settings.min_detection_confidence,
        )

    def infer(self, frame: np.ndarray, timestamp_ms: int) -> List[Any]:
        result = self._detector.process(frame)
        return list(result.detections or []) if result else []

    def close(self) -> None:
        self._detector.close()


def load_perception_model(settings: PerceptionSettings) -> PerceptionModel:
    """Build the configured model, raising ``ModelLoadFailure`` on any problem."""
    if mp is None:
        raise ModelLoadFailure("mediapipe is not installed")

    if settings.backend == "landmarker" and not settings.model_path.is_file():
        raise ModelLoadFailure(f"face landmarker model not found at {settings.model_path}")

    try:
        if settings.backend == "landmarker":
            return FaceLandmarkerModel(settings)
        return FaceDetectorModel(settings)
    except Exception as exc:
        raise ModelLoadFailure(f"failed to initialise {settings.backend}: {exc}") from exc


class PerceptionGate:
    """
    Presence check in front of the perception model.

    The model is only consulted while the scanner is IDLE. If it cannot be
    loaded the gate stays permanently "not present" and exposes ``error`` so
    the kiosk can show it instead of waiting forever.
    """

    def __init__(
        self,
        settings: Optional[PerceptionSettings] = None,
        *,
        loader: Callable[[PerceptionSettings], PerceptionModel] = load_perception_model,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or PerceptionSettings()
        self._loader = loader
        self._clock = clock
        self._model: Optional[PerceptionModel] = None
        self._lock = threading.Lock()
        self._last_timestamp_ms = -1
        self.error: Optional[str] = None
        self.inference_count = 0

    @property
    def available(self) -> bool:
        return self._model is not None

    def load(self) -> bool:
        """Load the model once; returns whether presence detection is usable."""
        if self._model is not None:
            return True
        try:
            self._model = self._loader(self.settings)
        except ModelLoadFailure as exc:
            self.error = str(exc)
            logger.error("Face detection disabled: %s", exc)
            return False
        self.error = None
        logger.info("Face detection ready (backend=%s)", self.settings.backend)
        return True

    def _next_timestamp_ms(self) -> int:
        # VIDEO running mode rejects non-increasing timestamps.
        ts = max(self._last_timestamp_ms + 1, int(self._clock() * 1000))
        self._last_timestamp_ms = ts
        return ts

    def detect(self, frame: np.ndarray) -> List[Any]:
        with self._lock:
            if self._model is None:
                return []
            self.inference_count += 1
            try:
                return self._model.infer(frame, self._next_timestamp_ms())
            except Exception as e:
                logger.warning(f"Face detection error: {e}")
                return []

    def check_presence(self, frame: np.ndarray) -> bool:
        return bool(self.detect(frame))

    def evaluate(self, frame: np.ndarray, phase: ScanPhase, generation: int) -> Optional[DetectionSignal]:
        """Presence signal for ``frame``; ``None`` (model untouched) outside IDLE."""
        if phase is not ScanPhase.IDLE:
            return None
        detections = self.detect(frame)
        return DetectionSignal(
            present=bool(detections),
            generation=generation,
            landmarks=detections[0] if detections else None,
        )

    def close(self) -> None:
        with self._lock:
            if self._model is not None:
                self._model.close()
                self._model = None


__all__ = [
    "PerceptionModel",
    "FaceLandmarkerModel",
    "FaceDetectorModel",
    "load_perception_model",
    "PerceptionGate",
]
