"""
Scale Calibration
=================

Maps pixel distances to metres using the known size of a volleyball.

If the detector finds the ball confidently in at least two early frames,
the median on-screen radius gives the scale directly. Otherwise a fixed
assumption (45px diameter at 640x360, roughly a 3m filming distance) is
used and flagged with a low confidence, which later lowers the speed
confidence instead of being silently trusted.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

try:
    from .exceptions import CalibrationError
except ImportError:
    from exceptions import CalibrationError

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

VOLLEYBALL_DIAMETER_M = 0.21
FALLBACK_DIAMETER_PX = 45.0
MIN_CALIBRATION_RADIUS_PX = 5.0

DETECTED_CONFIDENCE = 0.9
FALLBACK_CONFIDENCE = 0.4


# ============================================================================
# Data Structures
# ============================================================================

@dataclass(frozen=True)
class CalibrationResult:
    """Pixel-to-metre scale for one run."""
    pixels_per_meter: float
    confidence: float
    ball_diameter_px: float
    source: str  # "detected", "fallback" or "override"

    @property
    def is_fallback(self) -> bool:
        return self.source == "fallback"


# ============================================================================
# Calibration
# ============================================================================

def calibrate_from_radius(median_radius: Optional[float]) -> CalibrationResult:
    """
    Build the calibration from a median ball radius (pixels).

    A missing or implausibly small radius falls back to the 45px
    diameter assumption.
    """
    if median_radius is not None and median_radius > MIN_CALIBRATION_RADIUS_PX:
        diameter = 2.0 * float(median_radius)
        return CalibrationResult(
            pixels_per_meter=diameter / VOLLEYBALL_DIAMETER_M,
            confidence=DETECTED_CONFIDENCE,
            ball_diameter_px=diameter,
            source="detected",
        )

    logger.warning(
        "Ball not detected for calibration, using fallback scale "
        "(%.0fpx diameter)", FALLBACK_DIAMETER_PX,
    )
    return CalibrationResult(
        pixels_per_meter=FALLBACK_DIAMETER_PX / VOLLEYBALL_DIAMETER_M,
        confidence=FALLBACK_CONFIDENCE,
        ball_diameter_px=FALLBACK_DIAMETER_PX,
        source="fallback",
    )


def calibrate(
    detector, frames: Sequence[np.ndarray], max_frames: Optional[int] = None
) -> CalibrationResult:
    """
    Calibrate from the early frames of a clip.

    Args:
        detector: Object exposing detect_for_calibration(frames)
        frames: The clip
        max_frames: Only hand this many leading frames to the detector
            (None lets the detector apply its own limit)
    """
    if max_frames is not None:
        frames = frames[:max_frames]
    median_radius = detector.detect_for_calibration(frames)
    result = calibrate_from_radius(median_radius)
    logger.debug(
        "Calibration: %.1f px/m (source=%s, confidence=%.2f)",
        result.pixels_per_meter, result.source, result.confidence,
    )
    return result


def calibrate_from_detections(detector, detections: Sequence) -> CalibrationResult:
    """
    Calibrate from detections already computed for the leading frames.

    Args:
        detector: Object exposing radius_from_detections(detections)
        detections: One BallDetection-or-None per leading frame
    """
    result = calibrate_from_radius(detector.radius_from_detections(detections))
    logger.debug(
        "Calibration from %d detections: %.1f px/m (source=%s)",
        len(detections), result.pixels_per_meter, result.source,
    )
    return result


def override_calibration(
    pixels_per_meter: float, confidence: float = DETECTED_CONFIDENCE
) -> CalibrationResult:
    """Use an externally measured scale instead of automatic calibration."""
    if pixels_per_meter is None or not np.isfinite(pixels_per_meter) or pixels_per_meter <= 0:
        raise CalibrationError(
            f"pixels_per_meter must be a positive number, got {pixels_per_meter!r}"
        )
    return CalibrationResult(
        pixels_per_meter=float(pixels_per_meter),
        confidence=float(np.clip(confidence, 0.0, 1.0)),
        ball_diameter_px=float(pixels_per_meter) * VOLLEYBALL_DIAMETER_M,
        source="override",
    )
