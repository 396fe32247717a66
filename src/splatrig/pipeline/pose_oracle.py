"""Pose oracle interface and the checks built on its keypoints.

No detector ships with the package.  A caller plugs one in by implementing
:class:`PoseOracle`: given a camera view of the placed splat cloud, return
33 BlazePose keypoints already projected into world space, or ``None``
when nothing is detected.
"""

import copy
import logging
import math
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from splatrig.constants import KEYPOINT_SCORE_THRESHOLD
from splatrig.core.errors import (
    DirectionNotFound,
    GroundPenetrationFailure,
    PoseDetectionFailure,
    PoseValidationFailure,
)

logger = logging.getLogger(__name__)

# BlazePose keypoint indices
LEFT_SHOULDER = 11
RIGHT_SHOULDER = 12
LEFT_WRIST = 15
RIGHT_WRIST = 16
LEFT_HIP = 23
RIGHT_HIP = 24
LEFT_KNEE = 25
RIGHT_KNEE = 26
LEFT_ANKLE = 27
RIGHT_ANKLE = 28

# Scores averaged per full-circle scan position
CIRCULAR_WINDOW = 5
# Tolerance for recognizing a full-circle scan range
FULL_CIRCLE_EPS = 0.01

# Shoulder blend used for the A-pose wrist check
A_POSE_NEAR = 0.67
A_POSE_FAR = 0.33
# Hip x is pulled toward the midline when measuring leg spread
HIP_SPREAD = 0.8

# boneOperations slots set from keypoints
LEFT_UPPER_ARM_OP = 2
RIGHT_UPPER_ARM_OP = 3
LEFT_UPPER_LEG_OP = 4
RIGHT_UPPER_LEG_OP = 5


@dataclass
class Keypoint:
    x: float
    y: float
    z: float
    score: float = 1.0

    @property
    def usable(self) -> bool:
        return self.score >= KEYPOINT_SCORE_THRESHOLD


@dataclass
class CameraView:
    """A camera orbiting the vertical axis, looking at the origin."""
    angle: float                 # radians; 0 looks at the front of the avatar
    radius: float
    radius_multiplier: float = 1.0
    scene: Any = None            # whatever the oracle needs to render the view

    @property
    def position(self) -> tuple[float, float]:
        r = self.radius * self.radius_multiplier
        return r * math.sin(self.angle), r * math.cos(self.angle)


class PoseOracle(Protocol):
    def detect(self, view: CameraView) -> Optional[list[Keypoint]]: ...


def keypoint(keypoints: list[Keypoint], index: int) -> Optional[Keypoint]:
    """Keypoint ``index`` when present and confident enough."""
    if keypoints is None or index >= len(keypoints):
        return None
    kp = keypoints[index]
    if kp is None or not kp.usable:
        return None
    return kp


def require_keypoints(keypoints: Optional[list[Keypoint]], indices, label: str) -> list[Keypoint]:
    """Return the requested keypoints or raise PoseDetectionFailure."""
    if not keypoints:
        raise PoseDetectionFailure(f"Failed to detect pose at {label}")
    found = [keypoint(keypoints, i) for i in indices]
    missing = [i for i, kp in zip(indices, found) if kp is None]
    if missing:
        raise PoseDetectionFailure(f"Keypoints {missing} not detected at {label}")
    return found


def detect_view(oracle: PoseOracle, view: CameraView) -> list[Keypoint]:
    """Run the oracle on ``view``; no detection raises PoseDetectionFailure."""
    keypoints = oracle.detect(view)
    if not keypoints:
        raise PoseDetectionFailure(f"Failed to detect pose at angle: {view.angle:.3f}")
    return keypoints


# ── Facing direction ──────────────────────────────────────────────────

def _wrist_score(keypoints: Optional[list[Keypoint]]) -> Optional[float]:
    left = keypoint(keypoints, LEFT_WRIST)
    right = keypoint(keypoints, RIGHT_WRIST)
    if left is None or right is None:
        return None
    return left.x - right.x


def find_best_angle(
    oracle: PoseOracle,
    start: float,
    end: float,
    steps: int,
    radius: float,
    scene: Any = None,
) -> tuple[Optional[float], float]:
    """Scan ``steps`` camera angles in ``[start, end)`` for the front view.

    The score of a view is left wrist x minus right wrist x, which peaks
    when the camera faces the body.  A full-circle scan averages the valid
    scores in a circular window of five positions to ride out single bad
    detections.  Returns ``(angle, score)``; ``angle`` is None when no view
    produced a score.
    """
    step = (end - start) / steps
    angles = [start + step * i for i in range(steps)]
    scores = []
    for angle in angles:
        scores.append(_wrist_score(oracle.detect(CameraView(angle, radius, scene=scene))))

    best_angle, best_score = None, -math.inf
    if abs(end - start - 2.0 * math.pi) < FULL_CIRCLE_EPS:
        half = CIRCULAR_WINDOW // 2
        for i in range(steps):
            window = [scores[(i + j) % steps] for j in range(-half, half + 1)]
            valid = [s for s in window if s is not None]
            if not valid:
                continue
            avg = sum(valid) / len(valid)
            if avg > best_score:
                best_angle, best_score = angles[i], avg
    else:
        for angle, score in zip(angles, scores):
            if score is not None and score > best_score:
                best_angle, best_score = angle, score

    logger.info("Best angle %s, score %.4f", best_angle, best_score)
    return best_angle, best_score


def find_facing_angle(oracle: PoseOracle, radius: float, scene: Any = None,
                      steps: int = 12) -> float:
    """Coarse full-circle scan, then a fine scan of +-pi/10 around the winner."""
    coarse, _ = find_best_angle(oracle, 0.0, 2.0 * math.pi, steps, radius, scene)
    if coarse is None:
        raise DirectionNotFound("Failed to detect initial direction")
    fine, _ = find_best_angle(oracle, coarse - math.pi / 10.0, coarse + math.pi / 10.0,
                              steps, radius, scene)
    return coarse if fine is None else fine


# ── Checks ────────────────────────────────────────────────────────────

def check_ground(keypoints: list[Keypoint], floor_plane_y: float, ground: float,
                 floor: float) -> float:
    """Fail when the knees sit below the floor plane.

    Returns the mean knee height.  The raised error carries the knee height
    in cloud units (``knee - ground + floor``) so a retry can cap the floor
    search below it.
    """
    left, right = require_keypoints(keypoints, (LEFT_KNEE, RIGHT_KNEE), "ground check")
    knee = (left.y + right.y) * 0.5
    logger.info("Knee height %.4f, floor plane %.4f", knee, floor_plane_y)
    if knee < floor_plane_y:
        hint = knee - ground + floor
        raise GroundPenetrationFailure(
            f"Failed to detect the ground. knee: {hint}, ground: {floor}", knee_height=hint
        )
    return knee


def check_a_pose(keypoints: list[Keypoint]) -> None:
    """Both wrists must hang outside a point 2/3 of the way to the other shoulder."""
    l_sh, r_sh, l_wr, r_wr = require_keypoints(
        keypoints, (LEFT_SHOULDER, RIGHT_SHOULDER, LEFT_WRIST, RIGHT_WRIST), "front view"
    )
    thresh = l_sh.x * A_POSE_NEAR + r_sh.x * A_POSE_FAR
    if l_wr.x < thresh:
        raise PoseValidationFailure(
            f"A-pose check failed. left hand is bent inside. "
            f"left hand: {l_wr.x:.2f}, thresh: {thresh:.2f}"
        )
    thresh = l_sh.x * A_POSE_FAR + r_sh.x * A_POSE_NEAR
    if r_wr.x > thresh:
        raise PoseValidationFailure(
            f"A-pose check failed. right hand is bent inside. "
            f"right hand: {r_wr.x:.2f}, thresh: {thresh:.2f}"
        )


# ── Bone operations ───────────────────────────────────────────────────

def _set_rotation(ops: list[dict], slot: int, axis: str, degrees: float) -> None:
    rotation = ops[slot].setdefault("rotation", {"x": 0.0, "y": 0.0, "z": 0.0})
    rotation[axis] = degrees


def bone_operations_from_keypoints(
    front: list[Keypoint],
    right: Optional[list[Keypoint]],
    left: Optional[list[Keypoint]],
    base_ops: list[dict],
) -> list[dict]:
    """Fit the default A-pose operations to the detected body.

    The front view gives the z rotation (spread) of both upper arms and
    upper legs and is A-pose checked; the side views, when given, give the
    x rotation (forward swing) of the upper arm facing the camera.
    """
    ops = copy.deepcopy(base_ops)
    l_sh, r_sh, l_wr, r_wr = require_keypoints(
        front, (LEFT_SHOULDER, RIGHT_SHOULDER, LEFT_WRIST, RIGHT_WRIST), "front view"
    )

    angle = math.degrees(math.atan2(l_wr.y - l_sh.y, l_wr.x - l_sh.x))
    _set_rotation(ops, LEFT_UPPER_ARM_OP, "z", -angle)
    angle = math.degrees(math.atan2(r_wr.y - r_sh.y, r_wr.x - r_sh.x))
    _set_rotation(ops, RIGHT_UPPER_ARM_OP, "z", -180.0 - angle)
    check_a_pose(front)

    for slot, hip_i, ankle_i in ((LEFT_UPPER_LEG_OP, LEFT_HIP, LEFT_ANKLE),
                                 (RIGHT_UPPER_LEG_OP, RIGHT_HIP, RIGHT_ANKLE)):
        hip, ankle = require_keypoints(front, (hip_i, ankle_i), "front view")
        angle = math.degrees(math.atan2(ankle.y - hip.y, ankle.x - hip.x * HIP_SPREAD))
        _set_rotation(ops, slot, "z", -90.0 - angle)

    if right is not None:
        sh, wr = require_keypoints(right, (RIGHT_SHOULDER, RIGHT_WRIST), "right view")
        angle = math.degrees(math.atan2(wr.y - sh.y, wr.z - sh.z))
        _set_rotation(ops, RIGHT_UPPER_ARM_OP, "x", 90.0 + angle)

    if left is not None:
        sh, wr = require_keypoints(left, (LEFT_SHOULDER, LEFT_WRIST), "left view")
        angle = math.degrees(math.atan2(wr.y - sh.y, -wr.z + sh.z))
        _set_rotation(ops, LEFT_UPPER_ARM_OP, "x", -90.0 - angle)

    return ops
