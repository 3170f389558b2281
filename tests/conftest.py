"""
Shared fixtures: synthetic RGBA clips of a bright disk on a dark
background, so every test is deterministic and needs no video files.
"""

import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

# ---------------------------------------------------------------------------
# Setup: add src/ to path so we can import project modules
# ---------------------------------------------------------------------------
ROOT_DIR = Path(__file__).resolve().parent.parent
SRC_DIR = ROOT_DIR / "src"
sys.path.insert(0, str(SRC_DIR))

WIDTH = 640
HEIGHT = 360


def make_disk_frame(cx, cy, radius=30, width=WIDTH, height=HEIGHT):
    """White filled disk on black, RGBA uint8."""
    frame = np.zeros((height, width, 4), dtype=np.uint8)
    frame[:, :, 3] = 255
    cv2.circle(frame, (int(cx), int(cy)), int(radius), (255, 255, 255, 255), -1)
    return frame


def make_blank_frame(width=WIDTH, height=HEIGHT):
    frame = np.zeros((height, width, 4), dtype=np.uint8)
    frame[:, :, 3] = 255
    return frame


@pytest.fixture(scope="session")
def disk_frame():
    """Factory fixture for single disk frames."""
    return make_disk_frame


@pytest.fixture(scope="session")
def blank_frame():
    return make_blank_frame


@pytest.fixture(scope="module")
def moving_disk_clip():
    """
    20 frames of a radius-30 disk moving 8px/frame to the right.

    Centres sit at 4k+2 so that every centre falls in the middle of a
    detector accumulator cell and the detected positions shift by
    exactly 8px per frame.
    """
    start_x, y, step = 102, 182, 8
    return [make_disk_frame(start_x + i * step, y, 30) for i in range(20)]
