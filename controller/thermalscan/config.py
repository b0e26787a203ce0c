"""Central configuration for the thermal scan controller service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class PhaseDurations(BaseModel):
    """Scan phase duration configuration (seconds)."""
    countdown: float = Field(3.5, gt=0, description="Countdown fallback timer (ends earlier on completion event)")
    countdown_from: int = Field(3, ge=1, description="Highest digit shown by the countdown overlay")
    scan_down: float = Field(3.0, gt=0, description="Downward scan-line sweep")
    thermal_hold_down: float = Field(3.0, gt=0, description="First thermal ramp 0 -> 1")
    scan_up: float = Field(3.0, gt=0, description="Upward scan-line sweep (thermal held at 1)")
    thermal_hold_up: float = Field(3.0, gt=0, description="Second thermal ramp, outcome revealed here")
    result: float = Field(5.0, gt=0, description="Result dwell before the session resets")
    result_fade: float = Field(1.0, gt=0, description="Thermal fade-out at the start of the result dwell")
    reveal_delay: float = Field(1.0, ge=0, description="Delay before the temperature starts counting up")
    reveal_animation: float = Field(2.0, gt=0, description="Temperature count-up window")


class OutcomeSettings(BaseModel):
    """Presentation constants for the simulated outcome."""
    favorable_probability: float = Field(0.9, ge=0.0, le=1.0, description="Chance of a 'cool' result")
    favorable_range: Tuple[float, float] = Field((80.0, 90.0), description="Display value range for 'cool'")
    unfavorable_range: Tuple[float, float] = Field((90.0, 100.0), description="Display value range for 'hot'")
    reveal_start_value: float = Field(10.0, description="Value the temperature counter starts from")
    favorable_message: str = Field("Cool vibes detected. Come on in!")
    unfavorable_message: str = Field("Whoa, you're on fire! Cool down and try again!")

    @field_validator("favorable_range", "unfavorable_range")
    @classmethod
    def _check_range(cls, value: Tuple[float, float]) -> Tuple[float, float]:
        low, high = value
        if high <= low:
            raise ValueError("range upper bound must exceed lower bound")
        return value


class CameraSettings(BaseModel):
    """Camera acquisition configuration."""
    camera_id: int = Field(0, description="OpenCV device index")
    preferred_width: int = Field(1280, description="Requested capture width (pixels)")
    preferred_height: int = Field(720, description="Requested capture height (pixels)")
    facing: Literal["user", "environment"] = Field("user", description="Camera facing hint")
    mirror: Optional[bool] = Field(None, description="Flip output horizontally (defaults to facing == user)")
    idle_poll_seconds: float = Field(0.005, description="Sleep between reads when no new frame is available")

    @model_validator(mode="after")
    def _default_mirror(self) -> "CameraSettings":
        if self.mirror is None:
            self.mirror = self.facing == "user"
        return self


class OutputSettings(BaseModel):
    """Composited output canvas configuration."""
    width: int = Field(720, gt=0, description="Output canvas width")
    height: int = Field(1280, gt=0, description="Output canvas height (9:16 portrait)")
    jpeg_quality: int = Field(85, ge=1, le=100, description="Preview JPEG quality")
    preview_queue_size: int = Field(2, description="Max buffered preview JPEG frames per subscriber")
    ui_event_queue_size: int = Field(8, description="Max buffered UI status events per subscriber")


class PerceptionSettings(BaseModel):
    """Face presence model configuration."""
    backend: Literal["landmarker", "detector"] = Field("landmarker", description="MediaPipe task to run")
    model_path: Path = Field(ROOT_DIR / "models" / "face_landmarker.task", description="FaceLandmarker task file")
    num_faces: int = Field(1, description="Maximum faces tracked by the landmarker")
    min_detection_confidence: float = Field(0.3, ge=0.0, le=1.0)
    min_presence_confidence: float = Field(0.3, ge=0.0, le=1.0)
    min_tracking_confidence: float = Field(0.3, ge=0.0, le=1.0)


class Settings(BaseSettings):
    """Environment-driven settings for controller subsystems."""

    # Controller HTTP Server
    controller_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    phases: PhaseDurations = Field(default_factory=PhaseDurations, description="Scan phase durations")
    outcome: OutcomeSettings = Field(default_factory=OutcomeSettings, description="Outcome presentation constants")
    camera: CameraSettings = Field(default_factory=CameraSettings, description="Camera settings")
    output: OutputSettings = Field(default_factory=OutputSettings, description="Output canvas settings")
    perception: PerceptionSettings = Field(default_factory=PerceptionSettings, description="Perception model settings")

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
