"""
Exception hierarchy for the spike analysis pipeline.
"""

from typing import Optional


class SpikeTrackerError(Exception):
    """Base exception for all spike tracker errors."""

    pass


class FrameShapeError(SpikeTrackerError, ValueError):
    """Raised when input frames do not match the canonical frame layout."""

    def __init__(self, message: str, frame_index: Optional[int] = None):
        self.frame_index = frame_index
        super().__init__(message)


class CalibrationError(SpikeTrackerError, ValueError):
    """Raised when an externally supplied scale is unusable."""

    pass


class PoseEstimationError(SpikeTrackerError):
    """Raised by pose estimators when inference cannot be performed."""

    pass


class PipelineError(SpikeTrackerError):
    """Terminal failure of a whole pipeline run."""

    def __init__(self, message: str, stage: Optional[str] = None):
        self.stage = stage
        super().__init__(message)


class PipelineCancelled(SpikeTrackerError):
    """Raised when a run is cancelled through its cancellation token."""

    pass
