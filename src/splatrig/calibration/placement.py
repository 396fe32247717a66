"""Scale and place the avatar and the splat cloud in a shared frame."""

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from splatrig.calibration.calibrator import CalibrationResult
from splatrig.constants import DEFAULT_GS_QUATERNION, MODEL_Z_OFFSET
from splatrig.core.math_utils import (
    mat4_compose,
    quat_from_axis_angle,
    quat_from_euler,
    quat_identity,
    quat_multiply,
    quat_normalize,
    quat_rotate_vec3,
    vec3,
)

logger = logging.getLogger(__name__)

# Head room added to the mesh height when matching it to the cloud
SCALE_PADDING = 0.05
# Ground used for meshes with no surface to measure
SKELETON_ONLY_GROUND = -1.0


@dataclass
class Placement:
    model_scale: float
    ground: float                      # scaled ground height of the avatar
    gs_quaternion: NDArray[np.float64]  # [x, y, z, w]
    gs_position: NDArray[np.float64]
    model_position: NDArray[np.float64]
    model_quaternion: NDArray[np.float64]
    floor_height: float = 0.0

    @property
    def gs_matrix(self) -> NDArray[np.float64]:
        return mat4_compose(self.gs_position, self.gs_quaternion, vec3(1.0, 1.0, 1.0))

    @property
    def model_matrix(self) -> NDArray[np.float64]:
        s = self.model_scale
        return mat4_compose(self.model_position, self.model_quaternion, vec3(s, s, s))


def unscaled_ground(mesh_height: float, skeleton_only: bool) -> float:
    if skeleton_only:
        return SKELETON_ONLY_GROUND
    return -mesh_height * 0.5


def place(
    calibration: CalibrationResult,
    mesh_height: float,
    skeleton_only: bool = False,
    up_sign: int = -1,
    legacy_facing: bool = False,
    model_scale: float | None = None,
) -> Placement:
    """Scale the avatar to the calibrated body height and center the cloud.

    The cloud is rotated upright (for Y-down clouds), its feet centroid is
    moved onto the vertical axis and its floor onto the avatar's ground.
    ``legacy_facing`` turns the avatar 180 degrees about Y, as older
    avatar formats face the opposite way.
    """
    ground0 = unscaled_ground(mesh_height, skeleton_only)
    if model_scale is None:
        model_scale = calibration.body_height / (-ground0 * 2.0 + SCALE_PADDING)
    ground = ground0 * model_scale

    gs_q = np.array(DEFAULT_GS_QUATERNION, dtype=np.float64) if up_sign < 0 else quat_identity()
    cx, cz = calibration.centroid_xz
    gs_pos = -quat_rotate_vec3(gs_q, vec3(cx, 0.0, cz)) + vec3(0.0, ground - calibration.floor_height, 0.0)

    model_q = quat_identity()
    if legacy_facing:
        model_q = quat_from_axis_angle(vec3(0.0, 1.0, 0.0), np.pi)

    logger.info("Model scale %.4f, ground %.4f", model_scale, ground)
    return Placement(
        model_scale=float(model_scale),
        ground=float(ground),
        gs_quaternion=gs_q,
        gs_position=gs_pos,
        model_position=vec3(0.0, ground, MODEL_Z_OFFSET),
        model_quaternion=model_q,
        floor_height=calibration.floor_height,
    )


def default_placement(
    mesh_height: float,
    skeleton_only: bool = False,
    up_sign: int = -1,
    legacy_facing: bool = False,
    model_scale: float | None = None,
) -> Placement:
    """Placement for a cloud that is already centered (no calibration run).

    The cloud keeps its own origin; only the upright rotation for Y-down
    clouds is applied.  The avatar is scaled by ``model_scale`` (1 when
    unknown) and stood on its ground.
    """
    scale = 1.0 if model_scale is None else float(model_scale)
    ground = unscaled_ground(mesh_height, skeleton_only) * scale
    gs_q = np.array(DEFAULT_GS_QUATERNION, dtype=np.float64) if up_sign < 0 else quat_identity()
    model_q = quat_identity()
    if legacy_facing:
        model_q = quat_from_axis_angle(vec3(0.0, 1.0, 0.0), np.pi)
    return Placement(
        model_scale=scale,
        ground=float(ground),
        gs_quaternion=gs_q,
        gs_position=vec3(),
        model_position=vec3(0.0, ground, 0.0),
        model_quaternion=model_q,
    )


def orient(placement: Placement, angle: float) -> Placement:
    """Turn the cloud by ``-angle`` about the vertical axis, keeping its height."""
    q_turn = quat_from_axis_angle(vec3(0.0, 1.0, 0.0), -angle)
    pos = placement.gs_position
    turned = quat_rotate_vec3(q_turn, vec3(pos[0], 0.0, pos[2]))
    placement.gs_position = vec3(turned[0], pos[1], turned[2])
    placement.gs_quaternion = quat_normalize(quat_multiply(q_turn, placement.gs_quaternion))
    return placement


def tilt(placement: Placement, calibration: CalibrationResult) -> Placement:
    """Lean the avatar along the feet-to-head axis of the cloud.

    The head centroid, relative to the feet centroid and carried into world
    axes by the cloud rotation, sits at twice the ground depth above the
    avatar's feet; the avatar is rotated so that its vertical axis points at it.
    """
    cx, cz = calibration.centroid_xz
    hx, hz = calibration.head_centroid_xz
    head = quat_rotate_vec3(placement.gs_quaternion, vec3(hx - cx, 0.0, hz - cz))
    feet = placement.model_position

    dx = head[0] - feet[0]
    dy = -placement.ground - feet[1]
    dz = head[2] - feet[2]
    rx = np.arctan2(dz, dy)
    rz = np.arctan2(dy, dx) - np.pi * 0.5
    logger.info("Avatar tilt x %.2f deg, z %.2f deg", np.degrees(rx), np.degrees(rz))

    q_tilt = quat_from_euler(rx, 0.0, rz)
    placement.model_quaternion = quat_normalize(quat_multiply(q_tilt, placement.model_quaternion))
    return placement


def hide_far_background(colors: NDArray, points: NDArray, centroid_xz,
                        radius: float = 0.5) -> NDArray[np.bool_]:
    """Zero the alpha of background splats farther than ``radius`` in XZ."""
    dx = points[:, 0].astype(np.float64) - centroid_xz[0]
    dz = points[:, 2].astype(np.float64) - centroid_xz[1]
    far = np.sqrt(dx * dx + dz * dz) > radius
    colors[far, 3] = 0.0
    return far
