"""
Pose Estimation
===============

Keypoint extraction for the contact frame. The scorer only needs a list
of named, normalized keypoints per person; where they come from is
hidden behind the PoseEstimator interface:

- YOLOPoseEstimator: Ultralytics YOLOv8-pose, loaded once and reused
- StaticPoseEstimator: fixed keypoints (tests, replaying stored poses)

Inference is bounded by estimate_pose_with_timeout(), which never raises:
a slow or failing model only costs the form scores their evidence.
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import List, Optional, Sequence

import cv2
import numpy as np

try:
    from .exceptions import PoseEstimationError
    from .pose_scoring import KEYPOINT_NAMES, PoseKeypoint
except ImportError:
    from exceptions import PoseEstimationError
    from pose_scoring import KEYPOINT_NAMES, PoseKeypoint

logger = logging.getLogger(__name__)

Pose = List[PoseKeypoint]


class PoseEstimator(ABC):
    """Produces keypoints for every person visible in a frame."""

    def initialize(self) -> None:
        """Load resources. Safe to call more than once."""

    @abstractmethod
    def estimate(self, frame: np.ndarray) -> List[Pose]:
        """
        Args:
            frame: Canonical RGBA frame

        Returns:
            One keypoint list per detected person, most confident first.
            Empty when nobody is found.
        """


# ============================================================================
# YOLOv8-pose
# ============================================================================

class YOLOPoseEstimator(PoseEstimator):
    """
    YOLOv8-pose based estimator (17 COCO keypoints per person).

    The model is loaded on the first initialize() or estimate() and then
    reused for every later call. Loading is guarded by a lock so that a
    background run and a foreground run never load it twice.
    """

    def __init__(
        self,
        model_path: str = "yolov8n-pose.pt",
        device: str = "cpu",
        conf_threshold: float = 0.25,
    ):
        """
        Args:
            model_path: Path or name of the YOLOv8-pose weights
            device: CUDA device ("0") or "cpu"
            conf_threshold: Minimum person box confidence
        """
        self.model_path = model_path
        self.device = device
        self.conf_threshold = conf_threshold
        self.model = None
        self._lock = threading.Lock()

    def initialize(self) -> None:
        if self.model is not None:
            return
        with self._lock:
            if self.model is not None:
                return
            try:
                from ultralytics import YOLO
            except ImportError:
                raise PoseEstimationError(
                    "Please install ultralytics: pip install ultralytics"
                )
            logger.info("Loading pose model %s", self.model_path)
            self.model = YOLO(self.model_path)

    def estimate(self, frame: np.ndarray) -> List[Pose]:
        self.initialize()

        bgr = cv2.cvtColor(frame, cv2.COLOR_RGBA2BGR)
        results = self.model(
            bgr, conf=self.conf_threshold, device=self.device, verbose=False
        )

        people = []
        for result in results:
            keypoints = result.keypoints
            if keypoints is None or keypoints.xyn is None or len(keypoints.xyn) == 0:
                continue

            xyn = keypoints.xyn.cpu().numpy()
            if keypoints.conf is not None:
                conf = keypoints.conf.cpu().numpy()
            else:
                conf = np.ones(xyn.shape[:2], dtype=np.float32)

            if result.boxes is not None and len(result.boxes) == len(xyn):
                box_conf = result.boxes.conf.cpu().numpy()
            else:
                box_conf = np.zeros(len(xyn), dtype=np.float32)

            for i in range(len(xyn)):
                people.append((float(box_conf[i]), keypoints_from_arrays(xyn[i], conf[i])))

        people.sort(key=lambda p: p[0], reverse=True)
        return [pose for _, pose in people]


def keypoints_from_arrays(xyn: np.ndarray, conf: np.ndarray) -> Pose:
    """(17, 2) normalized coordinates + (17,) confidences -> named keypoints."""
    pose = []
    for i, ((x, y), c) in enumerate(zip(xyn, conf)):
        name = KEYPOINT_NAMES[i] if i < len(KEYPOINT_NAMES) else f"kp_{i}"
        pose.append(PoseKeypoint(name=name, x=float(x), y=float(y), confidence=float(c)))
    return pose


# ============================================================================
# Static keypoints
# ============================================================================

class StaticPoseEstimator(PoseEstimator):
    """Returns the same poses for every frame."""

    def __init__(self, poses: Optional[Sequence[Pose]] = None):
        self.poses = [list(p) for p in (poses or [])]

    def estimate(self, frame: np.ndarray) -> List[Pose]:
        return [list(p) for p in self.poses]


# ============================================================================
# Timeout wrapper
# ============================================================================

def estimate_pose_with_timeout(
    estimator: PoseEstimator,
    frame: np.ndarray,
    timeout_s: float = 10.0,
    executor: Optional[ThreadPoolExecutor] = None,
) -> List[Pose]:
    """
    Run estimator.estimate(frame) with a time limit.

    Returns an empty list (and logs a warning) on timeout or on any error
    raised by the estimator.

    Pass a long-lived single-worker executor to reuse one inference thread
    across calls. Without one, a throwaway executor is created per call.
    Either way a hung model keeps its worker thread busy: later calls on
    the same executor time out behind it, and concurrent.futures joins the
    thread at interpreter exit.
    """
    owned = executor is None
    if owned:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pose")
    future = executor.submit(estimator.estimate, frame)
    try:
        return future.result(timeout=timeout_s)
    except FutureTimeoutError:
        future.cancel()
        logger.warning("Pose estimation timed out after %.1fs", timeout_s)
        return []
    except Exception as e:
        logger.warning("Pose estimation failed: %s", e)
        return []
    finally:
        if owned:
            executor.shutdown(wait=False)
