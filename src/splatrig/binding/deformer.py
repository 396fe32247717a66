"""Per-frame splat deformation from a stored binding.

Linear blend skinning extended to oriented primitives: each splat rides
on its bound vertex, its offset is re-oriented by the change in that
vertex's skin transform since bind time, and its covariance is rotated
by the same relative rotation.
"""

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from splatrig.binding.binder import SplatBinding
from splatrig.core.errors import BindingStateError
from splatrig.core.math_utils import (
    batch_mat3_to_quat,
    batch_quat_normalize,
    batch_quat_to_mat3,
    mat3_to_quat,
    quat_multiply,
    quat_normalize,
    transform_points,
)
from splatrig.core.skeleton import PoseSnapshot, Skeleton

logger = logging.getLogger(__name__)

# Bones whose splat groups stay put in the partitioned renderer
STATIC_GROUP_BONES = ("neck", "spine", "chest", "upperChest", "headTopEnd", "head")


class BindingState(Enum):
    UNBOUND = auto()
    BOUND = auto()


@dataclass
class DeformedSplats:
    centers: NDArray[np.float64]       # (N, 3) world space
    covariances: NDArray[np.float64]   # (N, 3, 3) world space


def _orthonormal(m3: NDArray) -> NDArray:
    """Strip per-axis scale from a 3x3 linear map."""
    return m3 / np.maximum(np.linalg.norm(m3, axis=0), 1e-12)


class SplatDeformer:
    """Replays a splat binding against live skeleton poses.

    The deformer starts UNBOUND.  :meth:`bind` moves it to BOUND exactly
    once; there is no way back, and :meth:`update` refuses to run before
    binding.
    """

    # |det| below this marks a rest skin matrix as singular
    SINGULAR_EPS = 1e-12

    def __init__(self, mesh, centers: NDArray, covariances: NDArray, gs_matrix: NDArray):
        self.mesh = mesh
        self.centers = np.asarray(centers, dtype=np.float64).reshape(-1, 3)
        self.covariances = np.asarray(covariances, dtype=np.float64).reshape(-1, 3, 3)
        self.gs_matrix = np.asarray(gs_matrix, dtype=np.float64)
        self.state = BindingState.UNBOUND

        self.binding: Optional[SplatBinding] = None
        self.rest_pose: Optional[PoseSnapshot] = None
        self._rest_skin_inv: Optional[NDArray] = None
        self._valid: Optional[NDArray] = None

        # Rest transform in world space (used for splats that cannot deform)
        self._rest_centers = transform_points(self.gs_matrix, self.centers)
        g = self.gs_matrix[:3, :3]
        self._rest_cov = g @ self.covariances @ g.T

    @property
    def splat_count(self) -> int:
        return len(self.centers)

    def bind(self, binding: SplatBinding, rest_pose: PoseSnapshot) -> None:
        """Attach per-splat (vertex, offset) data captured at ``rest_pose``."""
        if self.state is BindingState.BOUND:
            raise BindingStateError("Deformer is already bound; rebuild it to re-bind")
        if binding is None or binding.vertex_ids is None or binding.offsets is None:
            raise BindingStateError("Binding is missing vertex indices or offsets")
        if len(binding.vertex_ids) != self.splat_count:
            raise BindingStateError(
                f"Binding covers {len(binding.vertex_ids)} splats, cloud has {self.splat_count}"
            )

        vids = np.asarray(binding.vertex_ids, dtype=np.int64)
        offsets = np.asarray(binding.offsets, dtype=np.float64).reshape(-1, 3)
        valid = (vids >= 0) & (vids < self.mesh.vertex_count) & np.isfinite(offsets).all(axis=1)

        safe_vids = np.where(valid, vids, 0)
        rest_skin = self.mesh.skin_matrices(rest_pose, safe_vids)
        det = np.linalg.det(rest_skin[:, :3, :3])
        valid &= np.abs(det) > self.SINGULAR_EPS
        rest_skin[~valid] = np.eye(4)

        skipped = int((~valid).sum())
        if skipped:
            logger.warning("%d splats have no usable binding and stay static", skipped)

        self.binding = SplatBinding(
            np.asarray(binding.bone_ids, dtype=np.int32), safe_vids.astype(np.int32), offsets
        )
        self.rest_pose = rest_pose
        self._rest_skin_inv = np.linalg.inv(rest_skin)
        self._valid = valid
        self.state = BindingState.BOUND

    def _require_bound(self) -> None:
        if self.state is not BindingState.BOUND:
            raise BindingStateError("Deformer used before binding")

    def update(self, pose: PoseSnapshot) -> DeformedSplats:
        """World-space centers and covariances of every splat under ``pose``."""
        self._require_bound()
        centers = self._rest_centers.copy()
        covs = self._rest_cov.copy()
        valid = self._valid
        if not valid.any():
            return DeformedSplats(centers, covs)

        vids = self.binding.vertex_ids[valid]
        skin = self.mesh.skin_matrices(pose, vids)
        relative = skin @ self._rest_skin_inv[valid]

        pos = self.mesh.positions[vids].astype(np.float64)
        skinned = np.einsum('nij,nj->ni', skin[:, :3, :3], pos) + skin[:, :3, 3]
        offset = np.einsum('nij,nj->ni', relative[:, :3, :3], self.binding.offsets[valid])
        centers[valid] = transform_points(self.mesh.world_matrix(pose), skinned + offset)

        # Relative skin rotation, re-orthonormalized and expressed in world axes
        q = batch_quat_normalize(batch_mat3_to_quat(relative[:, :3, :3]))
        rot_local = batch_quat_to_mat3(q)
        mw = _orthonormal(self.mesh.world_matrix(pose)[:3, :3])
        rot_world = mw @ rot_local @ mw.T
        covs[valid] = rot_world @ self._rest_cov[valid] @ np.transpose(rot_world, (0, 2, 1))
        return DeformedSplats(centers, covs)

    def bone_group_transforms(
        self,
        skeleton: Skeleton,
        pose: PoseSnapshot,
        bone_scene_map: dict[int, int],
    ) -> dict[int, tuple[NDArray[np.float64], NDArray[np.float64]]]:
        """Per-group (midpoint, quaternion) for a bone-partitioned renderer.

        The midpoint is the world-space center of the group's bone segment;
        the quaternion is the bone's world rotation change since bind time
        composed with the splat cloud rotation.  Torso and head groups are
        left out and render with the cloud transform.
        """
        self._require_bound()
        static = {skeleton.bone_index(name) for name in STATIC_GROUP_BONES}
        gs_q = quat_normalize(mat3_to_quat(_orthonormal(self.gs_matrix[:3, :3])))

        now = pose.model_matrix @ pose.bone_world
        rest = self.rest_pose.model_matrix @ self.rest_pose.bone_world
        out = {}
        for bone, group in bone_scene_map.items():
            parent = int(skeleton.parents[bone]) if 0 <= bone < skeleton.bone_count else -1
            if parent < 0 or bone in static:
                continue
            mid = (now[parent, :3, 3] + now[bone, :3, 3]) * 0.5
            delta = _orthonormal(now[bone, :3, :3]) @ _orthonormal(rest[bone, :3, :3]).T
            q = quat_multiply(quat_normalize(mat3_to_quat(delta)), gs_q)
            out[group] = (mid, quat_normalize(q))
        return out
