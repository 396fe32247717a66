"""Mesh data structures: plain triangle geometry and linear-blend skinned meshes."""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from splatrig.constants import SKELETON_ONLY_MAX_VERTS


@dataclass
class BufferGeometry:
    """Stores vertex attribute arrays for a triangle mesh.

    positions: flat float32 array (x,y,z per vertex)
    indices: triangle index array (uint32), optional for non-indexed geometry
    """
    positions: NDArray[np.float32]
    indices: Optional[NDArray[np.uint32]] = None
    vertex_count: int = 0

    def __post_init__(self):
        self.positions = np.ascontiguousarray(self.positions, dtype=np.float32).ravel()
        if self.indices is not None:
            self.indices = np.ascontiguousarray(self.indices, dtype=np.uint32).ravel()
        if self.vertex_count == 0:
            self.vertex_count = len(self.positions) // 3

    @property
    def triangle_count(self) -> int:
        if self.indices is not None:
            return len(self.indices) // 3
        return self.vertex_count // 3

    @property
    def has_indices(self) -> bool:
        return self.indices is not None and len(self.indices) > 0

    def triangles(self) -> NDArray[np.float64]:
        """Return triangle corners as a (T, 3, 3) float64 array."""
        pos = self.positions.reshape(-1, 3).astype(np.float64)
        if self.has_indices:
            return pos[self.indices.reshape(-1, 3)]
        usable = (len(pos) // 3) * 3
        return pos[:usable].reshape(-1, 3, 3)

    def get_bounding_box(self) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        pos = self.positions.reshape(-1, 3)
        return pos.min(axis=0).astype(np.float64), pos.max(axis=0).astype(np.float64)


@dataclass
class SkinnedMesh:
    """A mesh deformed by a skeleton through four bone influences per vertex.

    Positions are in mesh-local space.  ``bind_matrix`` is the mesh node's
    transform in model space at bind time; the skin matrix of a vertex maps
    its local position to the skinned local position under a given pose.
    """
    positions: NDArray[np.float32]         # (V, 3)
    skin_indices: NDArray[np.int32]        # (V, 4)
    skin_weights: NDArray[np.float32]      # (V, 4), rows sum to 1
    indices: Optional[NDArray[np.uint32]] = None
    bind_matrix: NDArray[np.float64] = field(default_factory=lambda: np.eye(4))
    name: str = "mesh"

    def __post_init__(self):
        self.positions = np.asarray(self.positions, dtype=np.float32).reshape(-1, 3)
        self.skin_indices = np.asarray(self.skin_indices, dtype=np.int32).reshape(-1, 4)
        self.skin_weights = np.asarray(self.skin_weights, dtype=np.float32).reshape(-1, 4)
        self.bind_matrix = np.asarray(self.bind_matrix, dtype=np.float64)
        self.bind_matrix_inverse = np.linalg.inv(self.bind_matrix)

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    @property
    def is_skeleton_only(self) -> bool:
        """True for placeholder meshes that carry a skeleton but no surface."""
        return self.vertex_count <= SKELETON_ONLY_MAX_VERTS

    @property
    def geometry(self) -> BufferGeometry:
        return BufferGeometry(positions=self.positions, indices=self.indices)

    def skin_matrices(self, pose, vertex_ids: Optional[NDArray] = None) -> NDArray[np.float64]:
        """Per-vertex skin matrices (V, 4, 4) for a pose snapshot.

        skin = bindInv . sum_i(w_i . boneWorld_i . boneInverse_i) . bind
        """
        if vertex_ids is None:
            si = self.skin_indices
            sw = self.skin_weights
        else:
            si = self.skin_indices[vertex_ids]
            sw = self.skin_weights[vertex_ids]

        bone_mats = pose.bone_matrices  # (B, 4, 4)
        blended = np.einsum('vk,vkij->vij', sw.astype(np.float64), bone_mats[si])
        return self.bind_matrix_inverse @ blended @ self.bind_matrix

    def skinned_positions(self, pose, vertex_ids: Optional[NDArray] = None) -> NDArray[np.float64]:
        """Posed positions in mesh-local space (V, 3)."""
        pos = self.positions if vertex_ids is None else self.positions[vertex_ids]
        skin = self.skin_matrices(pose, vertex_ids)
        return np.einsum('vij,vj->vi', skin[:, :3, :3], pos.astype(np.float64)) + skin[:, :3, 3]

    def world_matrix(self, pose) -> NDArray[np.float64]:
        """Mesh-local to world transform under a pose's model matrix."""
        return pose.model_matrix @ self.bind_matrix

    def world_positions(self, pose, vertex_ids: Optional[NDArray] = None) -> NDArray[np.float64]:
        """Posed positions in world space (V, 3)."""
        local = self.skinned_positions(pose, vertex_ids)
        m = self.world_matrix(pose)
        return local @ m[:3, :3].T + m[:3, 3]

    def bounding_height(self) -> float:
        """Height of the unposed mesh bounding box in model space."""
        pos = self.positions.astype(np.float64) @ self.bind_matrix[:3, :3].T + self.bind_matrix[:3, 3]
        return float(pos[:, 1].max() - pos[:, 1].min())
