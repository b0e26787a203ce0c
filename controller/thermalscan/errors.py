"""Error taxonomy for the scan pipeline."""
from __future__ import annotations


class ScanError(RuntimeError):
    """Base class for scan pipeline failures."""


class AcquisitionFailure(ScanError):
    """Camera could not be opened ("no device" / "permission denied")."""

    def __init__(self, reason: str, *, camera_id: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.camera_id = camera_id


class ModelLoadFailure(ScanError):
    """Perception model could not be initialised; presence is disabled."""


__all__ = ["ScanError", "AcquisitionFailure", "ModelLoadFailure"]
