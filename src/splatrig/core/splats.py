"""In-memory Gaussian splat cloud."""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from splatrig.core.math_utils import batch_quat_to_mat3


@dataclass
class SplatCloud:
    """Colored anisotropic Gaussians, index-aligned across all arrays.

    centers: (N, 3) object-space centers as stored in the file
    colors: (N, 4) RGBA in 0..1
    scales: (N, 3) linear standard deviations per axis
    rotations: (N, 4) unit quaternions [x, y, z, w]
    records: the raw structured vertex records (kept so that writing the
        cloud back preserves every property of the source file)
    """
    centers: NDArray[np.float32]
    colors: NDArray[np.float32]
    scales: NDArray[np.float32]
    rotations: NDArray[np.float32]
    records: Optional[np.ndarray] = None
    name: str = "splats"

    # Binding arrays, filled in by classification/binding
    bone_ids: Optional[NDArray[np.int32]] = None
    vertex_ids: Optional[NDArray[np.int32]] = None
    offsets: Optional[NDArray[np.float64]] = None
    debug_colors: Optional[NDArray[np.float32]] = field(default=None, repr=False)

    def __post_init__(self):
        self.centers = np.asarray(self.centers, dtype=np.float32).reshape(-1, 3)
        n = len(self.centers)
        self.colors = np.asarray(self.colors, dtype=np.float32).reshape(n, 4)
        self.scales = np.asarray(self.scales, dtype=np.float32).reshape(n, 3)
        self.rotations = np.asarray(self.rotations, dtype=np.float32).reshape(n, 4)

    def __len__(self) -> int:
        return len(self.centers)

    @property
    def splat_count(self) -> int:
        return len(self.centers)

    @property
    def alpha(self) -> NDArray[np.float32]:
        return self.colors[:, 3]

    def covariances(self) -> NDArray[np.float64]:
        """Per-splat 3x3 covariance R . diag(s^2) . R^T, shape (N, 3, 3)."""
        R = batch_quat_to_mat3(self.rotations.astype(np.float64))
        s2 = self.scales.astype(np.float64) ** 2
        return np.einsum('nij,nj,nkj->nik', R, s2, R)

    def subset(self, indices) -> "SplatCloud":
        """A new cloud holding only ``indices`` (copies, in the given order)."""
        idx = np.asarray(indices, dtype=np.int64)

        def pick(a):
            return None if a is None else a[idx].copy()

        return SplatCloud(
            centers=self.centers[idx].copy(),
            colors=self.colors[idx].copy(),
            scales=self.scales[idx].copy(),
            rotations=self.rotations[idx].copy(),
            records=pick(self.records),
            name=self.name,
            bone_ids=pick(self.bone_ids),
            vertex_ids=pick(self.vertex_ids),
            offsets=pick(self.offsets),
            debug_colors=pick(self.debug_colors),
        )

