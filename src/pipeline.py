"""
Pipeline: End-to-End Spike Analysis
===================================

Integrates all modules into one analysis run over a decoded clip:

1. Scale calibration from the ball size (or an external override)
2. Ball detection on every frame (Module 2)
3. Trajectory fusion with optical flow (Modules 3 + 4)
4. Speed and confidence from the trajectory (Module 4)
5. Pose estimation on the contact frame
6. Form scoring (Module 5)

Usage:
    pipeline = SpikeAnalysisPipeline(PipelineConfig("configs/pipeline_config.yaml"))
    result = pipeline.run(frames, fps=60, camera_angle="behind_court")
"""

import json
import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence, Union

import cv2
import numpy as np
import yaml
from tqdm import tqdm

# Module imports
try:
    from .image_processing import (
        FRAME_WIDTH,
        FRAME_HEIGHT,
        validate_frames,
        resize_to_canonical,
        to_grayscale,
    )
    from .ball_detection import HoughBallDetector
    from .optical_flow import LucasKanadeTracker
    from .calibration import CalibrationResult, calibrate_from_detections, override_calibration
    from .speed_estimation import TrajectoryFuser, SpeedCalculator, TrajectoryPoint
    from .pose_scoring import CameraAngle, PoseFormScorer, PoseKeypoint
    from .pose_estimation import (
        PoseEstimator,
        StaticPoseEstimator,
        YOLOPoseEstimator,
        estimate_pose_with_timeout,
    )
    from .exceptions import SpikeTrackerError, PipelineError, PipelineCancelled
except ImportError:
    from image_processing import (
        FRAME_WIDTH,
        FRAME_HEIGHT,
        validate_frames,
        resize_to_canonical,
        to_grayscale,
    )
    from ball_detection import HoughBallDetector
    from optical_flow import LucasKanadeTracker
    from calibration import CalibrationResult, calibrate_from_detections, override_calibration
    from speed_estimation import TrajectoryFuser, SpeedCalculator, TrajectoryPoint
    from pose_scoring import CameraAngle, PoseFormScorer, PoseKeypoint
    from pose_estimation import (
        PoseEstimator,
        StaticPoseEstimator,
        YOLOPoseEstimator,
        estimate_pose_with_timeout,
    )
    from exceptions import SpikeTrackerError, PipelineError, PipelineCancelled

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]

REMOTE_ANALYSIS_THRESHOLD = 0.6


class PipelineConfig:
    """Configuration container for the pipeline."""

    def __init__(self, config_path: Optional[str] = None):
        self.config = {}
        if config_path and os.path.exists(config_path):
            with open(config_path, "r") as f:
                self.config = yaml.safe_load(f) or {}

        # Canonical frame size
        self.frame_width = self.config.get("frame_width", FRAME_WIDTH)
        self.frame_height = self.config.get("frame_height", FRAME_HEIGHT)

        # Ball detection (Hough voting)
        self.edge_threshold = self.config.get("edge_threshold", 40)
        self.min_radius = self.config.get("min_radius", 10)
        self.max_radius = self.config.get("max_radius", 120)
        self.accumulator_scale = self.config.get("accumulator_scale", 4)
        self.angle_step_deg = self.config.get("angle_step_deg", 10)
        self.peak_ratio = self.config.get("peak_ratio", 0.65)
        self.max_candidates = self.config.get("max_candidates", 3)

        # Calibration
        self.calibration_frames = self.config.get("calibration_frames", 30)
        self.calibration_min_confidence = self.config.get(
            "calibration_min_confidence", 0.4
        )
        self.override_calibration_confidence = self.config.get(
            "override_calibration_confidence", 0.9
        )

        # Optical flow / fusion
        self.flow_half_window = self.config.get("flow_half_window", 7)
        self.flow_iterations = self.config.get("flow_iterations", 10)
        self.flow_max_drift = self.config.get("flow_max_drift", 150)
        self.max_lost_frames = self.config.get("max_lost_frames", 8)
        self.smoothing_window = self.config.get("smoothing_window", 3)

        # Pose
        self.pose_model = self.config.get("pose_model", "yolov8n-pose.pt")
        self.pose_device = self.config.get("pose_device", "cpu")
        self.pose_timeout_s = self.config.get("pose_timeout_s", 10.0)
        self.keypoint_threshold = self.config.get("keypoint_threshold", 0.25)

        # Progress reporting: detection progress every N frames
        self.progress_every = self.config.get("progress_every", 30)


# ============================================================================
# Results
# ============================================================================

@dataclass(frozen=True)
class RemoteAnalysis:
    """Speed figures computed by an external (server-side) analysis."""
    speed_kmh: float
    peak_speed_kmh: float
    speed_confidence: float
    calibration_confidence: float
    pixels_per_meter: float


@dataclass(frozen=True)
class PipelineResult:
    speed_kmh: float
    peak_speed_kmh: float
    speed_confidence: float
    form_score: int
    wrist_snap_score: int
    arm_extension_score: float
    contact_point_score: int
    contact_frame_index: int
    trajectory: List[TrajectoryPoint]
    keypoints: List[PoseKeypoint]
    frame_count: int
    fps: float
    camera_angle: CameraAngle
    calibration_confidence: float
    pixels_per_meter: float
    remote: Optional[RemoteAnalysis] = None

    @property
    def used_remote_analysis(self) -> bool:
        return self.remote is not None

    @property
    def confidence_label(self) -> str:
        if self.speed_confidence >= 0.8:
            return "high"
        if self.speed_confidence >= 0.6:
            return "medium"
        return "low"

    def should_request_remote_analysis(
        self, threshold: float = REMOTE_ANALYSIS_THRESHOLD
    ) -> bool:
        """True when the local estimate is too weak to report on its own."""
        return not self.used_remote_analysis and self.speed_confidence < threshold

    def with_remote(self, remote: RemoteAnalysis) -> "PipelineResult":
        """
        Copy of this result with speed and calibration taken from a remote
        analysis. Trajectory, keypoints and form scores stay local.
        """
        return replace(
            self,
            speed_kmh=remote.speed_kmh,
            peak_speed_kmh=remote.peak_speed_kmh,
            speed_confidence=remote.speed_confidence,
            calibration_confidence=remote.calibration_confidence,
            pixels_per_meter=remote.pixels_per_meter,
            remote=remote,
        )

    def to_dict(self) -> dict:
        return {
            "speed_kmh": self.speed_kmh,
            "peak_speed_kmh": self.peak_speed_kmh,
            "speed_confidence": self.speed_confidence,
            "confidence_label": self.confidence_label,
            "form_score": self.form_score,
            "wrist_snap_score": self.wrist_snap_score,
            "arm_extension_score": self.arm_extension_score,
            "contact_point_score": self.contact_point_score,
            "contact_frame_index": self.contact_frame_index,
            "trajectory": [t.to_dict() for t in self.trajectory],
            "keypoints": [k.to_dict() for k in self.keypoints],
            "frame_count": self.frame_count,
            "fps": self.fps,
            "camera_angle": self.camera_angle.value,
            "calibration_confidence": self.calibration_confidence,
            "pixels_per_meter": self.pixels_per_meter,
            "used_remote_analysis": self.used_remote_analysis,
        }


# ============================================================================
# Cancellation
# ============================================================================

class CancellationToken:
    """Cooperative cancellation flag shared with a running pipeline."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled("Analysis was cancelled")


class _ProgressCallbackFailed(Exception):
    """Carries an exception raised by the caller's progress callback."""

    def __init__(self, error: BaseException):
        super().__init__(str(error))
        self.error = error


# ============================================================================
# Pipeline
# ============================================================================

class SpikeAnalysisPipeline:
    """
    Complete spike analysis pipeline.

    Orchestrates calibration, detection, tracking, speed estimation and
    form scoring over one clip. Collaborators can be injected; anything
    not supplied is built from the configuration.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        detector=None,
        flow_tracker=None,
        pose_estimator: Optional[PoseEstimator] = None,
        scorer: Optional[PoseFormScorer] = None,
    ):
        self.config = config or PipelineConfig()
        cfg = self.config

        self.detector = detector or HoughBallDetector(
            width=cfg.frame_width,
            height=cfg.frame_height,
            min_radius=cfg.min_radius,
            max_radius=cfg.max_radius,
            edge_threshold=cfg.edge_threshold,
            accumulator_scale=cfg.accumulator_scale,
            angle_step_deg=cfg.angle_step_deg,
            peak_ratio=cfg.peak_ratio,
            max_candidates=cfg.max_candidates,
            calibration_frames=cfg.calibration_frames,
            calibration_min_confidence=cfg.calibration_min_confidence,
        )
        self.flow_tracker = flow_tracker or LucasKanadeTracker(
            half_window=cfg.flow_half_window,
            max_iterations=cfg.flow_iterations,
            max_drift=cfg.flow_max_drift,
        )
        self.fuser = TrajectoryFuser(
            self.flow_tracker,
            max_lost_frames=cfg.max_lost_frames,
            smoothing_window=cfg.smoothing_window,
        )
        self.speed_calculator = SpeedCalculator()
        self.pose_estimator = pose_estimator or YOLOPoseEstimator(
            model_path=cfg.pose_model,
            device=cfg.pose_device,
        )
        self.scorer = scorer or PoseFormScorer(
            keypoint_threshold=cfg.keypoint_threshold,
            frame_width=cfg.frame_width,
            frame_height=cfg.frame_height,
        )

        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        # one inference thread for the pipeline's lifetime
        self._pose_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pose")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        frames: Sequence[np.ndarray],
        fps: float,
        camera_angle: Union[CameraAngle, str],
        pixels_per_meter: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        """
        Analyse one clip.

        Args:
            frames: Canonical RGBA frames (H x W x 4, uint8)
            fps: Frame rate of the clip
            camera_angle: "sideline" or "behind_court"
            pixels_per_meter: Optional externally measured scale
            on_progress: Called with (label, percent), percent non-decreasing
            cancel_token: Checked between frames and stages

        Returns:
            PipelineResult

        Raises:
            FrameShapeError / ValueError: invalid input, before any work
            PipelineCancelled: the token was cancelled
            PipelineError: a stage failed unexpectedly
        """
        try:
            return self._run(
                frames, fps, camera_angle, pixels_per_meter, on_progress, cancel_token
            )
        except _ProgressCallbackFailed as e:
            raise e.error

    def run_in_background(self, *args, **kwargs) -> Future:
        """Submit run() to the pipeline's worker thread."""
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="spike-pipeline"
                )
            return self._executor.submit(self.run, *args, **kwargs)

    def close(self) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None
        # a hung model must not block close()
        self._pose_executor.shutdown(wait=False)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Implementation
    # ------------------------------------------------------------------

    def _run(self, frames, fps, camera_angle, pixels_per_meter, on_progress, cancel_token):
        cfg = self.config
        width, height = cfg.frame_width, cfg.frame_height

        # Validation happens before any work or progress event
        validate_frames(frames, width, height)
        if fps is None or not np.isfinite(fps) or fps <= 0:
            raise ValueError(f"fps must be a positive number, got {fps!r}")
        angle = CameraAngle.parse(camera_angle)
        override = None
        if pixels_per_meter is not None:
            override = override_calibration(
                pixels_per_meter, cfg.override_calibration_confidence
            )

        def emit(label: str, percent: float) -> None:
            if on_progress is None:
                return
            try:
                on_progress(label, percent)
            except Exception as e:
                raise _ProgressCallbackFailed(e) from e

        def check() -> None:
            if cancel_token is not None:
                cancel_token.check()

        n = len(frames)
        logger.info(
            "Analysing %d frames at %.1f fps (%s camera)", n, fps, angle.value
        )
        run_start = time.perf_counter()

        # Step 1: Calibration
        # Detections for the leading frames are computed once and reused by
        # the detection step.
        check()
        emit("Calibrating scale…", 5)
        detections = []
        grays = []
        with self._stage("calibration"):
            for frame in frames[: cfg.calibration_frames]:
                check()
                grays.append(to_grayscale(frame))
                detections.append(self.detector.detect_gray(grays[-1]))
            calibration: CalibrationResult = override or calibrate_from_detections(
                self.detector, detections
            )

        # Step 2: Detection
        check()
        emit("Detecting ball…", 15)
        with self._stage("detection"):
            for i, frame in enumerate(frames):
                check()
                if i % cfg.progress_every == 0:
                    emit(f"Detecting ball… ({i}/{n})", 15 + i / n * 20)
                if i < len(detections):
                    continue
                grays.append(to_grayscale(frame))
                detections.append(self.detector.detect_gray(grays[-1]))

        if not any(d is not None for d in detections):
            logger.warning("Ball was not detected in any of the %d frames", n)

        # Step 3: Trajectory fusion
        check()
        emit("Tracking trajectory…", 35)
        with self._stage("tracking"):
            tracking = self.fuser.fuse(
                detections, grays, width, height,
                should_continue=check if cancel_token is not None else None,
            )

        # Step 4: Speed
        check()
        emit("Calculating speed…", 60)
        with self._stage("speed"):
            speed = self.speed_calculator.calculate(
                tracking,
                calibration.pixels_per_meter,
                fps,
                calibration.confidence,
            )

        # Step 5: Pose on the contact frame
        check()
        emit("Running pose estimation…", 72)
        peak = tracking.peak_frame_index
        contact_frame = frames[peak] if peak < n else frames[-1]
        with self._stage("pose"):
            people = estimate_pose_with_timeout(
                self.pose_estimator, contact_frame, cfg.pose_timeout_s,
                executor=self._pose_executor,
            )
        keypoints = list(people[0]) if people else []
        check()

        # Step 6: Form scoring
        emit("Scoring form…", 90)
        contact_ball = detections[peak] if peak < n else None
        with self._stage("scoring"):
            form = self.scorer.score(keypoints, angle, contact_ball)

        emit("Done", 100)

        logger.info(
            "Analysis done in %.2fs: %.1f km/h (confidence %.2f), form %d",
            time.perf_counter() - run_start,
            speed.speed_kmh,
            speed.confidence,
            form.overall,
        )

        return PipelineResult(
            speed_kmh=speed.speed_kmh,
            peak_speed_kmh=speed.peak_speed_kmh,
            speed_confidence=speed.confidence,
            form_score=form.overall,
            wrist_snap_score=form.wrist_snap,
            arm_extension_score=form.arm_extension,
            contact_point_score=form.contact_point,
            contact_frame_index=peak,
            trajectory=speed.trajectory,
            keypoints=keypoints,
            frame_count=n,
            fps=float(fps),
            camera_angle=angle,
            calibration_confidence=calibration.confidence,
            pixels_per_meter=calibration.pixels_per_meter,
        )

    @contextmanager
    def _stage(self, name: str):
        """Time a stage and turn unexpected failures into PipelineError."""
        start = time.perf_counter()
        try:
            yield
        except (SpikeTrackerError, _ProgressCallbackFailed):
            raise
        except Exception as e:
            raise PipelineError(f"Stage '{name}' failed: {e}", stage=name) from e
        logger.debug("Stage %s took %.3fs", name, time.perf_counter() - start)


# ============================================================================
# Frame loading
# ============================================================================

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".bmp")


def load_frames(
    frames_dir: str,
    width: int = FRAME_WIDTH,
    height: int = FRAME_HEIGHT,
) -> List[np.ndarray]:
    """
    Load a directory of extracted frame images (sorted by file name) as
    canonical RGBA frames.
    """
    if not os.path.isdir(frames_dir):
        raise FileNotFoundError(f"Frames directory not found: {frames_dir}")

    names = sorted(
        f for f in os.listdir(frames_dir) if f.lower().endswith(IMAGE_EXTENSIONS)
    )
    frames = []
    for name in names:
        image = cv2.imread(os.path.join(frames_dir, name), cv2.IMREAD_UNCHANGED)
        if image is None:
            raise IOError(f"Cannot read image: {name}")
        frames.append(resize_to_canonical(image, width, height))
    return frames


# ============================================================================

def main():
    """Main entry point for running the pipeline from command line."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Volleyball Spike Speed & Form Analysis"
    )
    parser.add_argument(
        "frames_dir", type=str, help="Directory of extracted frame images"
    )
    parser.add_argument(
        "--fps", type=float, required=True,
        help="Frame rate the frames were extracted at"
    )
    parser.add_argument(
        "--camera-angle", type=str, default="behind_court",
        choices=[a.value for a in CameraAngle],
        help="Filming position"
    )
    parser.add_argument(
        "-c", "--config", type=str, default=None,
        help="Path to pipeline config YAML"
    )
    parser.add_argument(
        "--pixels-per-meter", type=float, default=None,
        help="Known scale; skips ball-size calibration"
    )
    parser.add_argument(
        "--no-pose", action="store_true",
        help="Skip pose estimation (form scores stay neutral)"
    )
    parser.add_argument(
        "--json", action="store_true",
        help="Print the full result as JSON"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Build config
    config = PipelineConfig(args.config)
    frames = load_frames(args.frames_dir, config.frame_width, config.frame_height)

    pose_estimator = StaticPoseEstimator() if args.no_pose else None
    pipeline = SpikeAnalysisPipeline(config, pose_estimator=pose_estimator)

    progress = tqdm(total=100, desc="Analysing spike")

    def on_progress(label: str, percent: float):
        progress.set_description(label)
        progress.update(max(0.0, percent - progress.n))

    try:
        result = pipeline.run(
            frames,
            fps=args.fps,
            camera_angle=args.camera_angle,
            pixels_per_meter=args.pixels_per_meter,
            on_progress=on_progress,
        )
    finally:
        progress.close()
        pipeline.close()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return

    # Print summary
    print("\n" + "=" * 60)
    print("Analysis Complete")
    print("=" * 60)
    print(f"Frames: {result.frame_count} @ {result.fps:.1f} fps")
    print(f"Speed: {result.speed_kmh:.1f} km/h (peak {result.peak_speed_kmh:.1f} km/h)")
    print(f"Confidence: {result.speed_confidence:.2f} ({result.confidence_label})")
    print(f"Scale: {result.pixels_per_meter:.1f} px/m "
          f"(calibration confidence {result.calibration_confidence:.2f})")
    print(f"Contact frame: {result.contact_frame_index}")
    print(f"\nForm score: {result.form_score}")
    print(f"  Wrist snap:    {result.wrist_snap_score}")
    print(f"  Arm extension: {result.arm_extension_score:g}")
    print(f"  Contact point: {result.contact_point_score}")

    if result.should_request_remote_analysis():
        print("\nLow confidence: consider re-filming closer or from behind the court.")


if __name__ == "__main__":
    main()
