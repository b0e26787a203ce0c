"""Shared scan state definitions for the thermal scan kiosk."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence


class ScanPhase(str, enum.Enum):
    """
    Scan phases in chronological order:

    1. IDLE               - Waiting for a face (unbounded)
    2. COUNTDOWN          - Countdown overlay (3.5s or completion event)
    3. SCAN_DOWN          - Scan line sweeps top -> bottom (3s)
    4. THERMAL_HOLD_DOWN  - Thermal overlay ramps in (3s)
    5. SCAN_UP            - Scan line sweeps bottom -> top, thermal held (3s)
    6. THERMAL_HOLD_UP    - Thermal ramps in again, outcome revealed (3s)
    7. RESULT             - Result screen (5s) -> IDLE
    """
    IDLE = "idle"
    COUNTDOWN = "countdown"
    SCAN_DOWN = "scan_down"
    THERMAL_HOLD_DOWN = "thermal_hold_down"
    SCAN_UP = "scan_up"
    THERMAL_HOLD_UP = "thermal_hold_up"
    RESULT = "result"


# Phases during which the blend engine is applied to the frame.
THERMAL_PHASES = frozenset(
    {
        ScanPhase.THERMAL_HOLD_DOWN,
        ScanPhase.SCAN_UP,
        ScanPhase.THERMAL_HOLD_UP,
        ScanPhase.RESULT,
    }
)


@dataclass(frozen=True)
class Outcome:
    """Simulated scan verdict, sampled once per session."""

    favorable: bool
    display_value: float

    @property
    def label(self) -> str:
        return "cool" if self.favorable else "hot"


@dataclass(frozen=True)
class DetectionSignal:
    """Presence verdict for a single frame."""

    present: bool
    generation: int
    landmarks: Optional[Sequence[Any]] = None


@dataclass
class ScanStatus:
    """Per-frame snapshot handed to the render target alongside the buffer."""

    phase: ScanPhase
    progress: float = 0.0
    countdown: Optional[int] = None
    scan_line_direction: Optional[str] = None
    scan_line_position: Optional[float] = None
    outcome: Optional[Outcome] = None
    displayed_value: Optional[float] = None
    message: Optional[str] = None
    prompt: Optional[str] = None
    available: bool = True
    perception_ready: bool = True
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "phase": self.phase.value,
            "progress": round(self.progress, 4),
            "countdown": self.countdown,
            "scan_line": None,
            "outcome": None,
            "displayed_value": self.displayed_value,
            "message": self.message,
            "prompt": self.prompt,
            "available": self.available,
            "perception_ready": self.perception_ready,
        }
        if self.scan_line_direction is not None:
            data["scan_line"] = {
                "direction": self.scan_line_direction,
                "position": round(self.scan_line_position or 0.0, 4),
            }
        if self.outcome is not None:
            data["outcome"] = {
                "result": self.outcome.label,
                "favorable": self.outcome.favorable,
                "value": round(self.outcome.display_value, 1),
            }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ControllerEvent:
    """Event payload distributed to UI clients over the local WebSocket."""

    type: str
    phase: ScanPhase
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


__all__ = [
    "ScanPhase",
    "THERMAL_PHASES",
    "Outcome",
    "DetectionSignal",
    "ScanStatus",
    "ControllerEvent",
]
