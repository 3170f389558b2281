"""
Module 1: Grayscale & Edge Primitives
=====================================

Low-level image operations shared by the ball detector and the optical
flow tracker. Every stage works on the canonical 640x360 RGBA frame;
callers resample with `resize_to_canonical` before handing frames over.

Knowledge applied:
- Luminance (ITU-R BT.601 weights: 0.299 R + 0.587 G + 0.114 B)
- Sobel operator (3x3 first-derivative kernels Gx, Gy)
- Gradient magnitude thresholding for edge extraction
"""

import cv2
import numpy as np
from typing import Optional, Sequence

try:
    from .exceptions import FrameShapeError
except ImportError:
    from exceptions import FrameShapeError


# ============================================================================
# Constants
# ============================================================================

FRAME_WIDTH = 640
FRAME_HEIGHT = 360
FRAME_CHANNELS = 4  # RGBA

DEFAULT_EDGE_THRESHOLD = 40.0


# ============================================================================
# Frame Validation
# ============================================================================

def validate_frame(
    frame: np.ndarray,
    width: int = FRAME_WIDTH,
    height: int = FRAME_HEIGHT,
    frame_index: Optional[int] = None,
) -> np.ndarray:
    """
    Check that a frame is a (height, width, 4) uint8 RGBA buffer.

    Raises FrameShapeError otherwise. The frame is returned unchanged,
    it is never reshaped or converted.
    """
    where = f"Frame {frame_index}" if frame_index is not None else "Frame"
    if not isinstance(frame, np.ndarray):
        raise FrameShapeError(
            f"{where} must be a numpy array, got {type(frame).__name__}",
            frame_index=frame_index,
        )
    expected = (height, width, FRAME_CHANNELS)
    if frame.shape != expected:
        raise FrameShapeError(
            f"{where} has shape {frame.shape}, expected {expected}",
            frame_index=frame_index,
        )
    if frame.dtype != np.uint8:
        raise FrameShapeError(
            f"{where} has dtype {frame.dtype}, expected uint8",
            frame_index=frame_index,
        )
    return frame


def validate_frames(
    frames: Sequence[np.ndarray],
    width: int = FRAME_WIDTH,
    height: int = FRAME_HEIGHT,
) -> None:
    """Validate a whole clip. An empty clip is rejected as well."""
    if frames is None or len(frames) == 0:
        raise FrameShapeError("Clip contains no frames")
    for i, frame in enumerate(frames):
        validate_frame(frame, width, height, frame_index=i)


def resize_to_canonical(
    image: np.ndarray,
    width: int = FRAME_WIDTH,
    height: int = FRAME_HEIGHT,
) -> np.ndarray:
    """
    Resample an arbitrary BGR / BGRA / grayscale image to a canonical
    RGBA frame.

    This is the caller-side helper; the pipeline itself rejects frames
    of the wrong size instead of resizing them.
    """
    if image.ndim == 2:
        rgba = cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
    elif image.shape[2] == 3:
        rgba = cv2.cvtColor(image, cv2.COLOR_BGR2RGBA)
    elif image.shape[2] == 4:
        rgba = cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)
    else:
        raise FrameShapeError(
            f"Cannot convert image with {image.shape[2]} channels to RGBA"
        )

    if rgba.shape[:2] != (height, width):
        rgba = cv2.resize(rgba, (width, height), interpolation=cv2.INTER_AREA)
    if rgba.dtype != np.uint8:
        rgba = np.clip(rgba, 0, 255).astype(np.uint8)
    return rgba


# ============================================================================
# Grayscale & Sobel
# ============================================================================

def to_grayscale(frame: np.ndarray) -> np.ndarray:
    """
    Luminance field of an RGBA frame as float32.

    OpenCV's RGB->GRAY conversion uses exactly the BT.601 weights; running
    it on float input keeps the fractional part instead of rounding to uint8.
    """
    return cv2.cvtColor(frame.astype(np.float32), cv2.COLOR_RGBA2GRAY)


def sobel_magnitude(gray: np.ndarray) -> np.ndarray:
    """
    Gradient magnitude sqrt(Gx^2 + Gy^2) from 3x3 Sobel kernels.

    The one-pixel border is zeroed: the 3x3 neighbourhood is incomplete
    there, so no edge is reported on the frame boundary.
    """
    gray = gray.astype(np.float32, copy=False)
    gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    magnitude = cv2.magnitude(gx, gy)

    magnitude[0, :] = 0
    magnitude[-1, :] = 0
    magnitude[:, 0] = 0
    magnitude[:, -1] = 0
    return magnitude


def edge_points(
    magnitude: np.ndarray, threshold: float = DEFAULT_EDGE_THRESHOLD
) -> np.ndarray:
    """
    Collect edge pixels whose magnitude is strictly above threshold.

    Returns:
        (N, 2) int array of (x, y) pixel coordinates, row-major order
    """
    ys, xs = np.nonzero(magnitude > threshold)
    return np.stack([xs, ys], axis=1).astype(np.int64)
