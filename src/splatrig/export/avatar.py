"""Open a binding archive as a ready-to-animate avatar.

Loading replays what the archive recorded: the avatar is scaled and
posed with the stored bone operations, the head-top bone is re-added so
bone ids line up with the binding, splats that drifted too far from
their vertex are hidden, and a deformer is bound at the stored pose.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from splatrig.binding.capsules import CapsuleTable, ensure_head_top_bone
from splatrig.binding.culling import cull_far_splats
from splatrig.binding.deformer import SplatDeformer
from splatrig.calibration.placement import default_placement
from splatrig.core.errors import ArchiveFormatError
from splatrig.core.math_utils import mat4_compose, vec3
from splatrig.core.skeleton import PoseSnapshot
from splatrig.core.splats import SplatCloud
from splatrig.export.container import (
    BindingArchive,
    BonePartition,
    PathLike,
    load_archive,
    sort_splats_by_bones,
    validate_alignment,
)
from splatrig.loaders.glb_loader import MeshAsset, parse_glb_bytes

logger = logging.getLogger(__name__)


@dataclass
class RiggedAvatar:
    archive: BindingArchive = field(repr=False)
    asset: MeshAsset
    cloud: SplatCloud
    rest_pose: PoseSnapshot = field(repr=False)
    deformer: SplatDeformer = field(repr=False)
    partition: BonePartition = field(repr=False)
    culled: NDArray[np.bool_] = field(repr=False)

    def group_transforms(self, pose: Optional[PoseSnapshot] = None):
        """Per bone group (midpoint, quaternion) at ``pose`` (the stored pose by default)."""
        if pose is None:
            pose = self.rest_pose
        return self.deformer.bone_group_transforms(
            self.asset.skeleton, pose, self.partition.bone_scene_map)


def open_archive(path: PathLike, table: Optional[CapsuleTable] = None,
                 culling: Optional[dict] = None) -> RiggedAvatar:
    archive = load_archive(path)
    asset = parse_glb_bytes(archive.mesh_bytes, name="model")
    skeleton = asset.skeleton
    ensure_head_top_bone(skeleton, table or CapsuleTable.from_config())

    stand = default_placement(asset.height, asset.mesh.is_skeleton_only,
                              legacy_facing=asset.legacy_facing, model_scale=archive.model_scale)
    skeleton.model_matrix = stand.model_matrix
    skeleton.set_pose(archive.bone_operations)
    rest_pose = skeleton.pose()

    cloud = archive.load_cloud()
    binding = archive.binding
    validate_alignment(binding.bone_ids, binding.vertex_ids, binding.offsets.ravel(), len(cloud))
    bad = (binding.bone_ids < 0) | (binding.bone_ids >= skeleton.bone_count)
    if bad.any():
        raise ArchiveFormatError(
            f"Binding names bone {int(binding.bone_ids[bad][0])} but the avatar has "
            f"{skeleton.bone_count} bones"
        )
    cloud.bone_ids = binding.bone_ids
    cloud.vertex_ids = binding.vertex_ids
    cloud.offsets = binding.offsets

    culled = cull_far_splats(cloud.colors, binding.bone_ids, binding.offsets, skeleton, culling)

    gs_matrix = mat4_compose(np.asarray(archive.gs_position, dtype=np.float64),
                             np.asarray(archive.gs_quaternion, dtype=np.float64),
                             vec3(1.0, 1.0, 1.0))
    deformer = SplatDeformer(asset.mesh, cloud.centers, cloud.covariances(), gs_matrix)
    deformer.bind(binding, rest_pose)

    partition = sort_splats_by_bones(binding)
    logger.info("Opened %s: %d splats in %d bone groups",
                path, len(cloud), len(partition.scene_splat_indices))
    return RiggedAvatar(archive, asset, cloud, rest_pose, deformer, partition, culled)
