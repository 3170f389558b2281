"""
Module 2: Ball Detection
========================

Circular-object localisation by edge voting (circular Hough transform).

Pipeline per frame:
1. RGBA -> grayscale luminance
2. Sobel gradient magnitude, threshold -> edge pixels
3. Every edge pixel votes, for every sampled radius and 36 angular
   offsets, for the circle centre it would imply
4. Peaks of the (x/4, y/4, r/4) accumulator become candidates
5. Candidates are de-duplicated and the strongest one is the ball

Volleyballs are 20-22cm in diameter. At 640x360 and typical filming
distances the on-screen radius is:
    - Close (2m):  ~100-120px
    - Medium (4m): ~50-70px
    - Far (6m):    ~25-40px

Knowledge applied:
- Hough Transform (parameter-space voting)
- Sobel edge detection
- Robust statistics (median radius for scale calibration)
"""

import math
import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

try:
    from .image_processing import (
        FRAME_WIDTH,
        FRAME_HEIGHT,
        DEFAULT_EDGE_THRESHOLD,
        to_grayscale,
        sobel_magnitude,
        edge_points,
    )
except ImportError:
    from image_processing import (
        FRAME_WIDTH,
        FRAME_HEIGHT,
        DEFAULT_EDGE_THRESHOLD,
        to_grayscale,
        sobel_magnitude,
        edge_points,
    )


# ============================================================================
# Data Structures
# ============================================================================

@dataclass(frozen=True)
class BallDetection:
    """A single ball detection in canonical frame pixels."""
    x: float
    y: float
    radius: float
    confidence: float

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x, self.y)

    def __repr__(self):
        return (
            f"BallDetection(center=({self.x:.1f}, {self.y:.1f}), "
            f"r={self.radius:.0f}, conf={self.confidence:.2f})"
        )


# ============================================================================
# Hough Circle Detector
# ============================================================================

class HoughBallDetector:
    """
    Ball detector based on a downsampled circular Hough accumulator.

    Space and radius are both divided by `accumulator_scale` (4 by
    default), so the accumulator has ~16x fewer spatial cells than the
    frame. Detected centres are therefore quantised to multiples of the
    scale, which is adequate for speed measurement over several frames.
    """

    def __init__(
        self,
        width: int = FRAME_WIDTH,
        height: int = FRAME_HEIGHT,
        min_radius: int = 10,
        max_radius: int = 120,
        edge_threshold: float = DEFAULT_EDGE_THRESHOLD,
        accumulator_scale: int = 4,
        angle_step_deg: int = 10,
        peak_ratio: float = 0.65,
        max_candidates: int = 3,
        calibration_frames: int = 30,
        calibration_min_confidence: float = 0.4,
    ):
        """
        Args:
            width, height: Canonical frame size the detector expects
            min_radius, max_radius: Searched radius range (pixels)
            edge_threshold: Sobel magnitude above which a pixel is an edge
            accumulator_scale: Downsampling of the accumulator (space and radius)
            angle_step_deg: Angular spacing of the votes (10 -> 36 votes)
            peak_ratio: Cells with votes >= peak_ratio * max are candidates
            max_candidates: Keep at most this many de-duplicated candidates
            calibration_frames: Frames inspected by detect_for_calibration
            calibration_min_confidence: Minimum confidence for a calibration sample
        """
        self.width = width
        self.height = height
        self.min_radius = min_radius
        self.max_radius = max_radius
        self.edge_threshold = edge_threshold
        self.scale = accumulator_scale
        self.peak_ratio = peak_ratio
        self.max_candidates = max_candidates
        self.calibration_frames = calibration_frames
        self.calibration_min_confidence = calibration_min_confidence

        self.acc_w = math.ceil(width / self.scale)
        self.acc_h = math.ceil(height / self.scale)
        self.acc_r = math.ceil((max_radius - min_radius) / self.scale) + 1

        self.radii = np.arange(min_radius, max_radius + 1, self.scale)
        angles = np.deg2rad(np.arange(0, 360, angle_step_deg, dtype=np.float64))
        self._cos = np.cos(angles)
        self._sin = np.sin(angles)

    def detect(self, frame: np.ndarray) -> Optional[BallDetection]:
        """
        Detect the ball in a canonical RGBA frame.

        Returns the strongest de-duplicated candidate, or None.
        """
        return self.detect_gray(to_grayscale(frame))

    def detect_gray(self, gray: np.ndarray) -> Optional[BallDetection]:
        """Same as detect() for an already computed luminance field."""
        candidates = self.detect_candidates(gray)
        return candidates[0] if candidates else None

    def detect_candidates(self, gray: np.ndarray) -> List[BallDetection]:
        """
        Run the full voting procedure on a luminance field.

        Returns up to `max_candidates` detections sorted by confidence.
        """
        magnitude = sobel_magnitude(gray)
        points = edge_points(magnitude, self.edge_threshold)
        if len(points) == 0:
            return []

        acc = self._vote(points)
        max_votes = int(acc.max())
        if max_votes == 0:
            return []

        candidates = self._extract_candidates(acc, max_votes)
        return deduplicate_candidates(candidates, self.max_candidates)

    def _vote(self, points: np.ndarray) -> np.ndarray:
        """
        Accumulate circle-centre votes.

        One radius at a time, so memory stays at (edges x angles) even on
        cluttered frames with tens of thousands of edge pixels.
        """
        ex = points[:, 0].astype(np.float64)[:, None]
        ey = points[:, 1].astype(np.float64)[:, None]
        size = self.acc_h * self.acc_w * self.acc_r
        acc = np.zeros(size, dtype=np.int64)

        for r in self.radii:
            ri = (int(r) - self.min_radius) // self.scale
            # Half-up rounding, so that -2.5 -> -2 like a pixel grid would
            cx = np.floor(ex - r * self._cos[None, :] + 0.5).astype(np.int64)
            cy = np.floor(ey - r * self._sin[None, :] + 0.5).astype(np.int64)

            inside = (cx >= 0) & (cx < self.width) & (cy >= 0) & (cy < self.height)
            if not np.any(inside):
                continue

            flat = (
                (cy[inside] // self.scale) * self.acc_w * self.acc_r
                + (cx[inside] // self.scale) * self.acc_r
                + ri
            )
            acc += np.bincount(flat, minlength=size)

        return acc.reshape(self.acc_h, self.acc_w, self.acc_r)

    def _extract_candidates(
        self, acc: np.ndarray, max_votes: int
    ) -> List[BallDetection]:
        """Map accumulator peaks back to full-resolution detections."""
        threshold = max_votes * self.peak_ratio
        cell_y, cell_x, cell_r = np.nonzero(acc >= threshold)

        candidates = []
        for cy, cx, ri in zip(cell_y, cell_x, cell_r):
            candidates.append(
                BallDetection(
                    x=float(cx * self.scale),
                    y=float(cy * self.scale),
                    radius=float(self.min_radius + ri * self.scale),
                    confidence=float(acc[cy, cx, ri]) / max_votes,
                )
            )
        return candidates

    def detect_for_calibration(
        self, frames: Sequence[np.ndarray]
    ) -> Optional[float]:
        """
        Estimate the on-screen ball radius from the first frames of a clip.

        Runs detect() on up to `calibration_frames` frames and hands the
        results to radius_from_detections().
        """
        return self.radius_from_detections(
            [self.detect(frame) for frame in frames[: self.calibration_frames]]
        )

    def radius_from_detections(
        self, detections: Sequence[Optional[BallDetection]]
    ) -> Optional[float]:
        """
        Median radius of the confident detections among `detections`.

        At least two are required; the median is used so that a single
        spurious circle cannot skew the scale.
        """
        radii = [
            det.radius for det in detections
            if det is not None and det.confidence > self.calibration_min_confidence
        ]
        if len(radii) < 2:
            return None

        radii.sort()
        return radii[len(radii) // 2]


# ============================================================================
# Utility: Candidate De-duplication
# ============================================================================

def deduplicate_candidates(
    candidates: List[BallDetection], max_keep: int = 3
) -> List[BallDetection]:
    """
    Greedy de-duplication of concentric / overlapping circle candidates.

    Candidates are visited by confidence (descending, stable). One is kept
    only if it is at least its own radius away from every kept candidate.
    """
    ordered = sorted(candidates, key=lambda c: c.confidence, reverse=True)
    keep: List[BallDetection] = []

    for cand in ordered:
        too_close = any(
            math.hypot(k.x - cand.x, k.y - cand.y) < cand.radius for k in keep
        )
        if not too_close:
            keep.append(cand)
        if len(keep) >= max_keep:
            break

    return keep
