"""
Module 4: Trajectory Fusion & Speed Estimation
==============================================

Fuses per-frame ball detections with optical flow into a trajectory and
turns it into a calibrated speed with a composite confidence.

Fusion is a 3-state machine driven once per frame:

    TRACKING  detector found the ball -> adopt it, lost counter = 0
    FLOW      no detection, previous position known and the ball has been
              missing for fewer than `max_lost_frames` frames -> optical
              flow from the previous position
    LOST      position unknown for this frame

The lost counter counts consecutive frames without a detector fix, so
optical flow can carry the ball for at most `max_lost_frames` frames.

Speed:
    km/h = displacement_px / pixels_per_meter * fps * 3.6

The reported speed is the mean displacement over a 5-frame window
centred on the peak of the smoothed displacement series (the presumed
contact moment). The confidence is a weighted sum, so one weak signal
degrades the estimate instead of zeroing it:

    confidence = 0.4 * tracking_consistency
               + 0.4 * smoothness
               + 0.2 * calibration_confidence
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


MAX_SPEED_KMH = 200.0
MS_TO_KMH = 3.6

Position = Tuple[float, float]


# ============================================================================
# Data Structures
# ============================================================================

class TrackingState(Enum):
    TRACKING = "tracking"
    FLOW = "flow"
    LOST = "lost"


@dataclass
class TrackingResult:
    """Raw output of trajectory fusion, one entry per frame."""
    positions: List[Optional[Position]] = field(default_factory=list)
    displacements: List[float] = field(default_factory=list)
    states: List[TrackingState] = field(default_factory=list)
    smoothed_displacements: List[float] = field(default_factory=list)
    peak_frame_index: int = 0
    tracking_consistency: float = 0.0

    @property
    def frame_count(self) -> int:
        return len(self.positions)


@dataclass(frozen=True)
class TrajectoryPoint:
    """Ball state at one frame of the clip."""
    frame: int
    x: Optional[float]
    y: Optional[float]
    displacement: float
    speed_kmh: float

    def to_dict(self) -> dict:
        return {
            "frame": self.frame,
            "x": self.x,
            "y": self.y,
            "displacement": self.displacement,
            "speed_kmh": self.speed_kmh,
        }


@dataclass
class SpeedResult:
    """Calibrated speed estimate for a clip."""
    speed_kmh: float
    peak_speed_kmh: float
    confidence: float
    trajectory: List[TrajectoryPoint] = field(default_factory=list)
    smoothness: float = 0.5


# ============================================================================
# Helpers
# ============================================================================

def smooth_displacements(values: Sequence[float], window: int = 3) -> np.ndarray:
    """
    Centred moving average over +/- `window` samples.

    The window is truncated at the ends of the series, so every output
    sample is the mean of the samples that actually exist around it.
    """
    arr = np.asarray(values, dtype=np.float64)
    n = len(arr)
    if n == 0:
        return arr

    csum = np.concatenate([[0.0], np.cumsum(arr)])
    idx = np.arange(n)
    start = np.maximum(0, idx - window)
    end = np.minimum(n, idx + window + 1)
    return (csum[end] - csum[start]) / (end - start)


def coefficient_of_variation(values: Sequence[float]) -> float:
    """Population std / mean. Defined as 0 when the mean is 0."""
    arr = np.asarray(values, dtype=np.float64)
    if len(arr) == 0:
        return 0.0
    mean = float(arr.mean())
    if mean == 0:
        return 0.0
    return float(arr.std()) / mean


def displacement_to_kmh(
    displacement_px: float, pixels_per_meter: float, fps: float
) -> float:
    """Per-frame pixel displacement -> km/h."""
    return displacement_px / pixels_per_meter * fps * MS_TO_KMH


# ============================================================================
# Trajectory Fusion
# ============================================================================

class TrajectoryFuser:
    """
    Combines detector output and optical flow into one position per frame.

    Workflow per frame:
    1. Decide the state (TRACKING / FLOW / LOST) from the detection, the
       previous position and the lost counter
    2. In FLOW, run the tracker from the previous position
    3. Record position, displacement to the previous frame and state
    """

    def __init__(
        self,
        flow_tracker,
        max_lost_frames: int = 8,
        smoothing_window: int = 3,
    ):
        """
        Args:
            flow_tracker: Object with track(prev_gray, curr_gray, w, h, px, py)
            max_lost_frames: Max consecutive detector misses bridged by flow
            smoothing_window: Half-width of the displacement moving average
        """
        self.flow_tracker = flow_tracker
        self.max_lost_frames = max_lost_frames
        self.smoothing_window = smoothing_window

    def fuse(
        self,
        detections: Sequence,
        gray_frames: Sequence[np.ndarray],
        width: int,
        height: int,
        should_continue: Optional[Callable[[], None]] = None,
    ) -> TrackingResult:
        """
        Run the fusion over a whole clip.

        Args:
            detections: One BallDetection-or-None per frame
            gray_frames: Luminance fields, same length as detections
            width, height: Frame size
            should_continue: Optional callable checked before every frame;
                it is expected to raise to abort the run

        Returns:
            TrackingResult with exactly one entry per frame
        """
        if len(detections) != len(gray_frames):
            raise ValueError(
                f"Got {len(detections)} detections for {len(gray_frames)} frames"
            )

        result = TrackingResult()
        lost_count = 0
        prev_position: Optional[Position] = None

        for i, detection in enumerate(detections):
            if should_continue is not None:
                should_continue()

            state, position = self._next_state(
                detection, prev_position, lost_count,
                gray_frames[i - 1] if i > 0 else None, gray_frames[i],
                width, height,
            )
            lost_count = 0 if state is TrackingState.TRACKING else lost_count + 1

            if position is not None and prev_position is not None:
                disp = math.hypot(
                    position[0] - prev_position[0], position[1] - prev_position[1]
                )
            else:
                disp = 0.0

            result.positions.append(position)
            result.displacements.append(disp)
            result.states.append(state)
            prev_position = position

        n = len(result.positions)
        smoothed = smooth_displacements(result.displacements, self.smoothing_window)
        result.smoothed_displacements = smoothed.tolist()
        result.peak_frame_index = int(np.argmax(smoothed)) if n > 0 else 0
        known = sum(1 for p in result.positions if p is not None)
        result.tracking_consistency = known / n if n > 0 else 0.0

        logger.debug(
            "Fusion: %d frames, %d tracked, %d flow, peak at %d",
            n,
            result.states.count(TrackingState.TRACKING),
            result.states.count(TrackingState.FLOW),
            result.peak_frame_index,
        )
        return result

    def _next_state(
        self,
        detection,
        prev_position: Optional[Position],
        lost_count: int,
        prev_gray: Optional[np.ndarray],
        curr_gray: np.ndarray,
        width: int,
        height: int,
    ) -> Tuple[TrackingState, Optional[Position]]:
        """One transition of the fusion state machine."""
        if detection is not None:
            return TrackingState.TRACKING, (float(detection.x), float(detection.y))

        can_flow = (
            prev_position is not None
            and prev_gray is not None
            and lost_count < self.max_lost_frames
        )
        if not can_flow:
            return TrackingState.LOST, None

        flow = self.flow_tracker.track(
            prev_gray, curr_gray, width, height, prev_position[0], prev_position[1]
        )
        if flow.found:
            return TrackingState.FLOW, (float(flow.x), float(flow.y))
        return TrackingState.LOST, None


# ============================================================================
# Speed Calculator
# ============================================================================

class SpeedCalculator:
    """
    Converts a fused trajectory into speed, peak speed and confidence.
    """

    def __init__(
        self,
        peak_half_window: int = 2,
        max_speed_kmh: float = MAX_SPEED_KMH,
        weights: Tuple[float, float, float] = (0.4, 0.4, 0.2),
    ):
        """
        Args:
            peak_half_window: Frames on each side of the peak averaged for the
                reported speed (2 -> 5-frame window)
            max_speed_kmh: Upper clamp for reported and peak speed
            weights: (consistency, smoothness, calibration) confidence weights
        """
        self.peak_half_window = peak_half_window
        self.max_speed_kmh = max_speed_kmh
        self.weights = weights

    def calculate(
        self,
        tracking: TrackingResult,
        pixels_per_meter: float,
        fps: float,
        calibration_confidence: float,
    ) -> SpeedResult:
        """
        Args:
            tracking: Output of TrajectoryFuser.fuse()
            pixels_per_meter: Calibration scale
            fps: Frame rate of the clip
            calibration_confidence: Confidence of the calibration [0, 1]

        Returns:
            SpeedResult including the per-frame trajectory
        """
        if not pixels_per_meter > 0:
            raise ValueError(f"pixels_per_meter must be > 0, got {pixels_per_meter}")
        if not fps > 0:
            raise ValueError(f"fps must be > 0, got {fps}")

        trajectory = []
        for i, pos in enumerate(tracking.positions):
            disp = tracking.displacements[i] if i < len(tracking.displacements) else 0.0
            trajectory.append(
                TrajectoryPoint(
                    frame=i,
                    x=pos[0] if pos is not None else None,
                    y=pos[1] if pos is not None else None,
                    displacement=disp,
                    speed_kmh=round(displacement_to_kmh(disp, pixels_per_meter, fps), 1),
                )
            )

        peak = tracking.peak_frame_index
        lo = max(0, peak - self.peak_half_window)
        hi = min(len(trajectory), peak + self.peak_half_window + 1)
        window = [t.displacement for t in trajectory[lo:hi] if t.displacement > 0]
        avg_disp = sum(window) / max(len(window), 1)
        speed_kmh = round(displacement_to_kmh(avg_disp, pixels_per_meter, fps), 1)

        peak_disp = tracking.displacements[peak] if peak < len(tracking.displacements) else 0.0
        peak_speed_kmh = round(displacement_to_kmh(peak_disp, pixels_per_meter, fps), 1)

        valid_speeds = [t.speed_kmh for t in trajectory if t.speed_kmh > 0]
        if len(valid_speeds) > 2:
            smoothness = 1.0 - min(coefficient_of_variation(valid_speeds), 1.0)
        else:
            smoothness = 0.5

        w_track, w_smooth, w_calib = self.weights
        confidence = (
            tracking.tracking_consistency * w_track
            + smoothness * w_smooth
            + calibration_confidence * w_calib
        )
        confidence = round(float(np.clip(confidence, 0.0, 1.0)), 2)

        return SpeedResult(
            speed_kmh=self._clamp(speed_kmh),
            peak_speed_kmh=self._clamp(peak_speed_kmh),
            confidence=confidence,
            trajectory=trajectory,
            smoothness=smoothness,
        )

    def _clamp(self, kmh: float) -> float:
        return float(min(max(kmh, 0.0), self.max_speed_kmh))
