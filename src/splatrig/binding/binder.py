"""Splat-to-vertex binding.

Each splat is matched to the nearest posed vertex *within its own bone's
vertex pool*, and a rest-space offset from that vertex to the splat
center is recorded.  Replaying the current skin transform on
``vertex + offset`` later reconstructs the splat without any search.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from numpy.typing import NDArray
from scipy.spatial import cKDTree

from splatrig.core.math_utils import transform_points

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]

# Nearest candidates fetched per splat; ties among them go to the lowest index
TIE_CANDIDATES = 4
TIE_TOLERANCE = 1e-12
# Fast mode samples every Nth pool vertex
FAST_VERTEX_STRIDE = 3


@dataclass
class SplatBinding:
    """Per-splat binding arrays, index-aligned with the splat cloud."""
    bone_ids: NDArray[np.int32]      # (N,)
    vertex_ids: NDArray[np.int32]    # (N,)
    offsets: NDArray[np.float64]     # (N, 3) mesh-local rest offsets

    def __len__(self) -> int:
        return len(self.bone_ids)

    def validate(self) -> None:
        n = len(self.bone_ids)
        if len(self.vertex_ids) != n or self.offsets.shape != (n, 3):
            raise ValueError(
                f"Binding arrays misaligned: bones={n}, vertices={len(self.vertex_ids)}, "
                f"offsets={self.offsets.shape}"
            )


def _nearest_in(points: NDArray, candidates: NDArray) -> NDArray[np.int64]:
    """Index into ``candidates`` of the nearest one per point (lowest index on ties)."""
    if len(points) == 0:
        return np.zeros(0, dtype=np.int64)
    tree = cKDTree(candidates)
    k = min(TIE_CANDIDATES, len(candidates))
    dist, idx = tree.query(points, k=k)
    if k == 1:
        return np.asarray(idx, dtype=np.int64)
    tied = dist <= dist[:, :1] + TIE_TOLERANCE
    return np.where(tied, idx, len(candidates)).min(axis=1).astype(np.int64)


def bind_splats(
    centers: NDArray,
    bone_ids: NDArray,
    mesh,
    pose,
    gs_matrix: NDArray,
    pools: Optional[dict[int, NDArray]],
    fast: bool = False,
    progress: Optional[ProgressCallback] = None,
) -> SplatBinding:
    """Bind splats (object-space ``centers``) to vertices of their bone pools.

    ``gs_matrix`` places the splat cloud in world space.  With no pools
    (skeleton-only mesh) every splat binds to vertex 0 with a zero offset.
    A splat whose bone owns no vertices is moved to the bone of the
    nearest vertex overall, so the bone-consistency invariant always holds.
    """
    centers = np.asarray(centers, dtype=np.float64).reshape(-1, 3)
    n = len(centers)
    bones = np.asarray(bone_ids, dtype=np.int32).copy()

    if pools is None:
        logger.info("No vertex pools; binding %d splats to vertex 0", n)
        return SplatBinding(bones, np.zeros(n, dtype=np.int32), np.zeros((n, 3)))

    world_splats = transform_points(gs_matrix, centers)
    world_verts = mesh.world_positions(pose)

    vertex_bone = np.full(mesh.vertex_count, -1, dtype=np.int32)
    for bone, pool in pools.items():
        vertex_bone[np.asarray(pool, dtype=np.int64)] = bone

    # Splats whose bone has no vertices fall back to the nearest vertex anywhere
    empty = np.array([len(pools.get(int(b), ())) == 0 for b in bones], dtype=bool)
    if empty.any():
        pooled = np.flatnonzero(vertex_bone >= 0)
        nearest = pooled[_nearest_in(world_splats[empty], world_verts[pooled])]
        logger.warning("%d splats had an empty vertex pool and were reassigned", int(empty.sum()))
        bones[empty] = vertex_bone[nearest]

    vertex_ids = np.zeros(n, dtype=np.int32)
    groups = np.unique(bones)
    done = 0
    for bone in groups:
        members = np.flatnonzero(bones == bone)
        pool = np.asarray(pools[int(bone)], dtype=np.int64)
        candidates = pool[::FAST_VERTEX_STRIDE] if fast else pool
        vertex_ids[members] = candidates[_nearest_in(world_splats[members], world_verts[candidates])]
        done += len(members)
        if progress is not None:
            progress("bind_splats", done / n)

    # Offsets live in mesh-local rest space
    to_local = np.linalg.inv(mesh.world_matrix(pose)) @ gs_matrix
    local_splats = transform_points(to_local, centers)
    skinned = mesh.skinned_positions(pose)
    offsets = local_splats - skinned[vertex_ids]

    logger.info("Bound %d splats to %d bone pools", n, len(groups))
    return SplatBinding(bones, vertex_ids, offsets)
