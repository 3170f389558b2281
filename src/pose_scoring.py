"""
Module 5: Spike Form Scoring
============================

Scores the hitting arm at the contact frame from 2D pose keypoints.

Sub-scores (0-100):
- Wrist snap: direction of the forearm (elbow -> wrist). A good spike
  snaps the wrist down and forward, about -67 degrees in image
  coordinates (y pointing down).
- Arm extension: interior elbow angle shoulder-elbow-wrist. A fully
  straight arm (>= 165 degrees) at contact scores 100.
- Contact point: distance between the hitting wrist and the ball
  centre, in normalized frame units. A quarter of the frame or more
  scores 0.

Missing or low-confidence evidence gives a neutral 50 for that
sub-score rather than a penalty.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple, Union

try:
    from .image_processing import FRAME_WIDTH, FRAME_HEIGHT
except ImportError:
    from image_processing import FRAME_WIDTH, FRAME_HEIGHT


# COCO-17 keypoint order used by the pose models
KEYPOINT_NAMES = [
    "nose", "left_eye", "right_eye", "left_ear", "right_ear",
    "left_shoulder", "right_shoulder", "left_elbow", "right_elbow",
    "left_wrist", "right_wrist", "left_hip", "right_hip",
    "left_knee", "right_knee", "left_ankle", "right_ankle",
]

NEUTRAL_SCORE = 50
IDEAL_SNAP_ANGLE_DEG = -67.0
CONTACT_ZERO_DISTANCE = 0.25


class CameraAngle(Enum):
    SIDELINE = "sideline"
    BEHIND_COURT = "behind_court"

    @classmethod
    def parse(cls, value: Union["CameraAngle", str]) -> "CameraAngle":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(a.value for a in cls)
            raise ValueError(
                f"Unknown camera angle {value!r} (expected one of: {valid})"
            ) from None


# (wrist_snap, arm_extension, contact_point). From the sideline the wrist
# direction is foreshortened, so extension carries more weight.
OVERALL_WEIGHTS: Dict[CameraAngle, Tuple[float, float, float]] = {
    CameraAngle.BEHIND_COURT: (0.30, 0.40, 0.30),
    CameraAngle.SIDELINE: (0.20, 0.50, 0.30),
}


@dataclass(frozen=True)
class PoseKeypoint:
    """A body keypoint in normalized [0, 1] frame coordinates."""
    name: str
    x: float
    y: float
    confidence: float

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "x": self.x,
            "y": self.y,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class FormScores:
    overall: int
    wrist_snap: int
    arm_extension: float
    contact_point: int


def joint_angle(a: PoseKeypoint, vertex: PoseKeypoint, b: PoseKeypoint) -> float:
    """
    Interior angle a-vertex-b in degrees.

    Degenerate (zero-length) limbs give 0.
    """
    v1x, v1y = a.x - vertex.x, a.y - vertex.y
    v2x, v2y = b.x - vertex.x, b.y - vertex.y
    mag1 = math.hypot(v1x, v1y)
    mag2 = math.hypot(v2x, v2y)
    if mag1 == 0 or mag2 == 0:
        return 0.0
    cos_angle = (v1x * v2x + v1y * v2y) / (mag1 * mag2)
    cos_angle = max(-1.0, min(1.0, cos_angle))
    return math.degrees(math.acos(cos_angle))


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (48.5 -> 49)."""
    return int(math.floor(value + 0.5))


def extension_score(angle: float) -> float:
    """
    Piecewise-linear map from elbow angle (degrees) to a 0-100 score.

    Only the bent-arm band below 110 degrees is rounded; the two upper
    bands keep their fractional value.
    """
    if angle >= 165:
        return 100.0
    if angle >= 140:
        return 75 + (angle - 140) / 25 * 25
    if angle >= 110:
        return 40 + (angle - 110) / 30 * 35
    return float(max(0, round_half_up(angle / 110 * 40)))


class PoseFormScorer:
    """
    Scores spike form from the keypoints of one person.

    The scorer holds no state between calls; the same input always gives
    the same FormScores.
    """

    def __init__(
        self,
        keypoint_threshold: float = 0.25,
        frame_width: int = FRAME_WIDTH,
        frame_height: int = FRAME_HEIGHT,
    ):
        """
        Args:
            keypoint_threshold: Keypoints below this confidence are ignored
            frame_width, frame_height: Pixel size used to normalize the ball
        """
        self.keypoint_threshold = keypoint_threshold
        self.frame_width = frame_width
        self.frame_height = frame_height

    def score(
        self,
        keypoints: Iterable[PoseKeypoint],
        camera_angle: Union[CameraAngle, str],
        ball=None,
    ) -> FormScores:
        """
        Args:
            keypoints: Keypoints of one person (any order, unknown names ignored)
            camera_angle: Filming position, selects the overall weights
            ball: Optional BallDetection (pixel coordinates) at the contact frame

        Returns:
            FormScores in [0, 100]; all integers except arm_extension
        """
        angle = CameraAngle.parse(camera_angle)
        kp = {k.name: k for k in keypoints}
        side = self._preferred_side(kp)

        wrist_snap = self._score_wrist_snap(kp, side)
        arm_extension = self._score_arm_extension(kp, side)
        contact_point = self._score_contact_point(kp, side, ball)

        w_snap, w_ext, w_contact = OVERALL_WEIGHTS[angle]
        overall = round_half_up(
            wrist_snap * w_snap + arm_extension * w_ext + contact_point * w_contact
        )

        return FormScores(
            overall=overall,
            wrist_snap=wrist_snap,
            arm_extension=arm_extension,
            contact_point=contact_point,
        )

    def _get(self, kp: Dict[str, PoseKeypoint], name: str) -> Optional[PoseKeypoint]:
        k = kp.get(name)
        if k is not None and k.confidence >= self.keypoint_threshold:
            return k
        return None

    @staticmethod
    def _preferred_side(kp: Dict[str, PoseKeypoint]) -> str:
        """Side with the more confident wrist; ties go to the right."""
        right = kp.get("right_wrist")
        left = kp.get("left_wrist")
        right_conf = right.confidence if right is not None else 0.0
        left_conf = left.confidence if left is not None else 0.0
        return "right" if right_conf >= left_conf else "left"

    @staticmethod
    def _other(side: str) -> str:
        return "left" if side == "right" else "right"

    def _score_wrist_snap(self, kp, side: str) -> int:
        wrist = self._get(kp, f"{side}_wrist")
        elbow = self._get(kp, f"{side}_elbow")
        if wrist is None or elbow is None:
            return NEUTRAL_SCORE

        angle = math.degrees(math.atan2(wrist.y - elbow.y, wrist.x - elbow.x))
        deviation = abs(angle - IDEAL_SNAP_ANGLE_DEG)
        return round_half_up(max(0.0, 100 - deviation / 90 * 100))

    def _score_arm_extension(self, kp, side: str) -> float:
        for s in (side, self._other(side)):
            shoulder = self._get(kp, f"{s}_shoulder")
            elbow = self._get(kp, f"{s}_elbow")
            wrist = self._get(kp, f"{s}_wrist")
            if shoulder is not None and elbow is not None and wrist is not None:
                return extension_score(joint_angle(shoulder, elbow, wrist))
        return float(NEUTRAL_SCORE)

    def _score_contact_point(self, kp, side: str, ball) -> int:
        if ball is None:
            return NEUTRAL_SCORE
        wrist = self._get(kp, f"{side}_wrist") or self._get(kp, f"{self._other(side)}_wrist")
        if wrist is None:
            return NEUTRAL_SCORE

        ball_nx = ball.x / self.frame_width
        ball_ny = ball.y / self.frame_height
        dist = math.hypot(wrist.x - ball_nx, wrist.y - ball_ny)
        return round_half_up(max(0.0, 100 - dist / CONTACT_ZERO_DISTANCE * 100))
