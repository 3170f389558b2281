"""
Tests for the low-level vision modules: grayscale / Sobel primitives,
the Hough ball detector, Lucas-Kanade optical flow and scale calibration.

Run:
    python -m pytest tests/test_vision.py -v --tb=short -s
"""

import cv2
import numpy as np
import pytest

from image_processing import (
    validate_frame,
    validate_frames,
    resize_to_canonical,
    to_grayscale,
    sobel_magnitude,
    edge_points,
)
from ball_detection import BallDetection, HoughBallDetector, deduplicate_candidates
from optical_flow import LucasKanadeTracker
from calibration import (
    VOLLEYBALL_DIAMETER_M,
    calibrate,
    calibrate_from_detections,
    calibrate_from_radius,
    override_calibration,
)
from exceptions import FrameShapeError, CalibrationError


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="module")
def detector():
    return HoughBallDetector()


@pytest.fixture(scope="module")
def blob_pair():
    """Two luminance fields with a Gaussian blob shifted by (+2, +1)."""
    ys, xs = np.mgrid[0:360, 0:640].astype(np.float64)

    def blob(cx, cy):
        return 200.0 * np.exp(-((xs - cx) ** 2 + (ys - cy) ** 2) / (2 * 8.0 ** 2))

    return blob(200, 150), blob(202, 151)


# ============================================================================
# 1. Grayscale & Edge Primitives
# ============================================================================

class TestImageProcessing:

    def test_grayscale_luminance_weights(self):
        frame = np.zeros((360, 640, 4), dtype=np.uint8)
        frame[..., 0] = 255  # R
        frame[..., 3] = 255
        gray = to_grayscale(frame)
        assert gray.shape == (360, 640)
        assert gray.dtype == np.float32
        assert gray[10, 10] == pytest.approx(0.299 * 255, abs=0.01)

    def test_grayscale_white_is_255(self, blank_frame):
        frame = blank_frame()
        frame[..., :3] = 255
        assert to_grayscale(frame)[100, 100] == pytest.approx(255.0, abs=0.01)

    def test_sobel_border_is_zero(self):
        gray = np.random.RandomState(0).rand(360, 640).astype(np.float32) * 255
        mag = sobel_magnitude(gray)
        assert np.all(mag[0, :] == 0)
        assert np.all(mag[-1, :] == 0)
        assert np.all(mag[:, 0] == 0)
        assert np.all(mag[:, -1] == 0)

    def test_flat_image_has_no_edges(self):
        gray = np.full((360, 640), 128.0, dtype=np.float32)
        assert len(edge_points(sobel_magnitude(gray))) == 0

    def test_vertical_step_edge(self):
        gray = np.zeros((360, 640), dtype=np.float32)
        gray[:, 320:] = 255
        points = edge_points(sobel_magnitude(gray), 40)
        assert points.shape[1] == 2
        assert len(points) > 0
        assert set(np.unique(points[:, 0])) <= {319, 320}
        assert points[:, 1].min() >= 1 and points[:, 1].max() <= 358

    def test_edge_threshold_is_strict(self):
        mag = np.zeros((10, 10), dtype=np.float32)
        mag[5, 5] = 40.0
        mag[5, 6] = 40.5
        points = edge_points(mag, 40)
        assert points.tolist() == [[6, 5]]


class TestFrameValidation:

    def test_valid_frame_passes(self, blank_frame):
        frame = blank_frame()
        assert validate_frame(frame) is frame

    def test_wrong_shape_rejected(self):
        with pytest.raises(FrameShapeError):
            validate_frame(np.zeros((360, 640, 3), dtype=np.uint8))

    def test_wrong_dtype_rejected(self):
        with pytest.raises(FrameShapeError):
            validate_frame(np.zeros((360, 640, 4), dtype=np.float32))

    def test_shape_error_is_value_error(self):
        with pytest.raises(ValueError):
            validate_frame(np.zeros((100, 100, 4), dtype=np.uint8))

    def test_offending_index_reported(self, blank_frame):
        frames = [blank_frame(), blank_frame(), np.zeros((1, 1, 4), dtype=np.uint8)]
        with pytest.raises(FrameShapeError) as exc_info:
            validate_frames(frames)
        assert exc_info.value.frame_index == 2

    def test_empty_clip_rejected(self):
        with pytest.raises(FrameShapeError):
            validate_frames([])

    def test_resize_to_canonical_from_bgr(self):
        image = np.zeros((720, 1280, 3), dtype=np.uint8)
        image[..., 0] = 255  # blue in BGR
        rgba = resize_to_canonical(image)
        assert rgba.shape == (360, 640, 4)
        assert rgba.dtype == np.uint8
        assert tuple(rgba[100, 100]) == (0, 0, 255, 255)
        validate_frame(rgba)

    def test_resize_to_canonical_from_gray(self):
        image = np.full((180, 320), 77, dtype=np.uint8)
        rgba = resize_to_canonical(image)
        assert rgba.shape == (360, 640, 4)
        assert tuple(rgba[0, 0]) == (77, 77, 77, 255)


# ============================================================================
# 2. Ball Detection
# ============================================================================

class TestBallDetection:

    def test_blank_frame_returns_none(self, detector, blank_frame):
        assert detector.detect(blank_frame()) is None

    def test_detects_disk(self, detector, disk_frame):
        det = detector.detect(disk_frame(322, 182, 30))
        assert det is not None
        print(f"\n  Detected: {det}")
        assert abs(det.x - 322) <= 4
        assert abs(det.y - 182) <= 4
        assert 10 <= det.radius <= 118
        assert abs(det.radius - 30) <= 4
        assert 0 < det.confidence <= 1.0

    def test_centre_is_quantised_to_accumulator_cells(self, detector, disk_frame):
        det = detector.detect(disk_frame(322, 182, 30))
        assert det.x % 4 == 0
        assert det.y % 4 == 0
        assert (det.radius - 10) % 4 == 0

    def test_detection_shifts_with_disk(self, detector, disk_frame):
        a = detector.detect(disk_frame(202, 182, 30))
        b = detector.detect(disk_frame(210, 182, 30))
        assert b.x - a.x == pytest.approx(8.0)
        assert b.y == pytest.approx(a.y)

    def test_candidates_bounded(self, detector, disk_frame):
        frame = disk_frame(162, 182, 30)
        cv2.circle(frame, (450, 182), 40, (255, 255, 255, 255), -1)
        candidates = detector.detect_candidates(to_grayscale(frame))
        assert 1 <= len(candidates) <= 3
        confs = [c.confidence for c in candidates]
        assert confs == sorted(confs, reverse=True)
        for c in candidates:
            assert 10 <= c.radius <= 118
            assert 0 <= c.confidence <= 1

    def test_calibration_radius_needs_two_samples(self, detector, disk_frame, blank_frame):
        frames = [disk_frame(322, 182, 30)] + [blank_frame() for _ in range(5)]
        assert detector.detect_for_calibration(frames) is None

    def test_calibration_radius_from_disks(self, detector, disk_frame):
        frames = [disk_frame(322, 182, 30) for _ in range(3)]
        radius = detector.detect_for_calibration(frames)
        assert radius is not None
        assert abs(radius - 30) <= 4

    def test_calibration_radius_is_upper_median(self):
        radii = iter([50, 20, 40, 30])

        class StubDetector(HoughBallDetector):
            def detect(self, frame):
                return BallDetection(x=100, y=100, radius=next(radii), confidence=0.9)

        frames = [None] * 4
        assert StubDetector().detect_for_calibration(frames) == 40

    def test_calibration_uses_leading_frames_only(self):
        seen = []

        class CountingDetector(HoughBallDetector):
            def detect(self, frame):
                seen.append(frame)
                return None

        CountingDetector(calibration_frames=30).detect_for_calibration(list(range(50)))
        assert seen == list(range(30))

    def test_low_confidence_ignored_for_calibration(self):
        class WeakDetector(HoughBallDetector):
            def detect(self, frame):
                return BallDetection(x=100, y=100, radius=30, confidence=0.4)

        assert WeakDetector().detect_for_calibration([None] * 5) is None

    def test_radius_from_precomputed_detections(self, detector):
        detections = [
            BallDetection(x=100, y=100, radius=r, confidence=c)
            for r, c in [(50, 0.9), (20, 0.9), (90, 0.3), (40, 0.9), (30, 0.9)]
        ] + [None]
        # 0.3 is below the confidence floor
        assert detector.radius_from_detections(detections) == 40
        assert detector.radius_from_detections([None, detections[0]]) is None


class TestDeduplication:

    def test_keeps_far_apart(self):
        cands = [
            BallDetection(100, 100, 20, 1.0),
            BallDetection(300, 100, 20, 0.9),
        ]
        assert len(deduplicate_candidates(cands)) == 2

    def test_drops_concentric(self):
        cands = [
            BallDetection(100, 100, 20, 0.8),
            BallDetection(104, 100, 24, 1.0),
        ]
        kept = deduplicate_candidates(cands)
        assert len(kept) == 1
        assert kept[0].confidence == 1.0

    def test_distance_equal_to_radius_is_kept(self):
        cands = [
            BallDetection(100, 100, 20, 1.0),
            BallDetection(120, 100, 20, 0.9),
        ]
        assert len(deduplicate_candidates(cands)) == 2

    def test_caps_at_three(self):
        cands = [BallDetection(100 * i, 50, 10, 1.0 - i * 0.1) for i in range(6)]
        kept = deduplicate_candidates(cands)
        assert len(kept) == 3
        assert [c.x for c in kept] == [0, 100, 200]

    def test_stable_for_equal_confidence(self):
        cands = [BallDetection(100 * i, 50, 10, 0.7) for i in range(3)]
        assert [c.x for c in deduplicate_candidates(cands)] == [0, 100, 200]


# ============================================================================
# 3. Optical Flow
# ============================================================================

class TestOpticalFlow:

    def test_tracks_shifted_blob(self, blob_pair):
        prev, curr = blob_pair
        tracker = LucasKanadeTracker()
        result = tracker.track(prev, curr, 640, 360, 200.0, 150.0)
        print(f"\n  Flow: ({result.x:.2f}, {result.y:.2f}) found={result.found}")
        assert result.found
        assert abs(result.x - 202) < 1.0
        assert abs(result.y - 151) < 1.0

    def test_stationary_blob(self, blob_pair):
        prev, _ = blob_pair
        result = LucasKanadeTracker().track(prev, prev, 640, 360, 200.0, 150.0)
        assert result.found
        assert result.x == pytest.approx(200.0, abs=1e-6)
        assert result.y == pytest.approx(150.0, abs=1e-6)

    def test_flat_field_is_lost(self):
        flat = np.zeros((360, 640), dtype=np.float32)
        result = LucasKanadeTracker().track(flat, flat, 640, 360, 320.0, 180.0)
        assert not result.found

    def test_seed_outside_frame_is_lost(self, blob_pair):
        prev, curr = blob_pair
        result = LucasKanadeTracker().track(prev, curr, 640, 360, -50.0, -50.0)
        assert not result.found

    def test_drift_limit(self, blob_pair):
        prev, curr = blob_pair
        tracker = LucasKanadeTracker(max_drift=0.5)
        result = tracker.track(prev, curr, 640, 360, 200.0, 150.0)
        assert not result.found


# ============================================================================
# 4. Calibration
# ============================================================================

class TestCalibration:

    def test_detected_radius(self):
        result = calibrate_from_radius(30)
        assert result.pixels_per_meter == pytest.approx(60 / VOLLEYBALL_DIAMETER_M)
        assert result.confidence == pytest.approx(0.9)
        assert result.ball_diameter_px == pytest.approx(60)
        assert result.source == "detected"
        assert not result.is_fallback

    @pytest.mark.parametrize("radius", [None, 0, 5])
    def test_fallback(self, radius):
        result = calibrate_from_radius(radius)
        assert result.pixels_per_meter == pytest.approx(45 / 0.21)
        assert result.confidence == pytest.approx(0.4)
        assert result.is_fallback

    def test_calibrate_with_detector(self, detector, disk_frame):
        frames = [disk_frame(322, 182, 30) for _ in range(3)]
        result = calibrate(detector, frames)
        assert result.pixels_per_meter > 0
        assert result.source == "detected"

    def test_calibrate_blank_clip_falls_back(self, detector, blank_frame):
        result = calibrate(detector, [blank_frame() for _ in range(3)])
        assert result.is_fallback
        assert result.pixels_per_meter > 0

    def test_calibrate_max_frames(self, detector, disk_frame, blank_frame):
        frames = [blank_frame(), blank_frame()] + [disk_frame(322, 182, 30)] * 3
        assert calibrate(detector, frames, max_frames=2).is_fallback

    def test_calibrate_from_detections(self, detector):
        detections = [BallDetection(x=100, y=100, radius=30, confidence=0.9)] * 3
        result = calibrate_from_detections(detector, detections)
        assert result.source == "detected"
        assert result.pixels_per_meter == pytest.approx(60 / 0.21)
        assert calibrate_from_detections(detector, [None] * 3).is_fallback

    def test_override(self):
        result = override_calibration(250.0)
        assert result.pixels_per_meter == 250.0
        assert result.confidence == pytest.approx(0.9)
        assert result.source == "override"

    @pytest.mark.parametrize("value", [0, -10.0, float("nan"), float("inf")])
    def test_override_rejects_invalid(self, value):
        with pytest.raises(CalibrationError):
            override_calibration(value)
