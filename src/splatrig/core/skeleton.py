"""Bone hierarchy with rest/current TRS and immutable pose snapshots.

Bones are stored in flat arrays indexed by bone id with a parent-pointer
table (-1 for roots).  World matrices are evaluated iteratively in a
precomputed parent-before-child order, so hierarchy depth never matters.

All "world" matrices here live in model space (the avatar's scene root);
``model_matrix`` places the whole avatar in the scene and is carried on
each :class:`PoseSnapshot` rather than baked into the bone matrices.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from splatrig.core.math_utils import (
    deg_to_rad,
    mat4_compose,
    quat_conjugate,
    quat_from_euler,
    quat_identity,
    quat_multiply,
    quat_normalize,
    mat3_to_quat,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoseSnapshot:
    """Read-only bone transforms captured at a single pose instant."""
    bone_world: NDArray[np.float64]      # (B, 4, 4) bone matrices in model space
    bone_matrices: NDArray[np.float64]   # (B, 4, 4) bone_world . inverse_bind
    model_matrix: NDArray[np.float64]    # (4, 4) model space -> world

    @property
    def bone_count(self) -> int:
        return len(self.bone_world)

    def bone_position(self, bone: int) -> NDArray[np.float64]:
        """World-space position of a bone's origin."""
        m = self.model_matrix @ self.bone_world[bone]
        return m[:3, 3].copy()

    def bone_positions(self) -> NDArray[np.float64]:
        """World-space positions of all bones (B, 3)."""
        origins = self.bone_world[:, :3, 3]
        return origins @ self.model_matrix[:3, :3].T + self.model_matrix[:3, 3]


def _frozen(a: NDArray) -> NDArray:
    a = np.array(a, dtype=np.float64, copy=True)
    a.setflags(write=False)
    return a


class Skeleton:
    """Humanoid bone hierarchy.

    Parameters
    ----------
    names : bone names, one per bone
    parents : parent index per bone, -1 for roots
    positions, rotations, scales : rest local TRS (rotations as [x,y,z,w])
    inverse_bind : optional (B, 4, 4) inverse bind matrices; computed from
        the rest pose when omitted
    humanoid : mapping of humanoid bone names (``leftUpperArm``...) to bone index
    root_parent : transform of the nodes above the skeleton roots
    """

    def __init__(
        self,
        names: list[str],
        parents,
        positions,
        rotations,
        scales=None,
        inverse_bind=None,
        humanoid: Optional[dict[str, int]] = None,
        root_parent=None,
    ):
        count = len(names)
        self.names: list[str] = list(names)
        self.parents = np.asarray(parents, dtype=np.int64).reshape(count)
        self.rest_positions = np.asarray(positions, dtype=np.float64).reshape(count, 3).copy()
        self.rest_rotations = np.asarray(rotations, dtype=np.float64).reshape(count, 4).copy()
        if scales is None:
            scales = np.ones((count, 3))
        self.rest_scales = np.asarray(scales, dtype=np.float64).reshape(count, 3).copy()
        self.humanoid: dict[str, int] = dict(humanoid or {})
        self.root_parent = (np.eye(4) if root_parent is None
                            else np.asarray(root_parent, dtype=np.float64))
        self.model_matrix = np.eye(4)

        self._order = self._topological_order()
        self.reset_pose()

        if inverse_bind is None:
            inverse_bind = np.linalg.inv(self.world_matrices())
        self.inverse_bind = np.asarray(inverse_bind, dtype=np.float64).reshape(count, 4, 4)

        # Rest world rotations of each bone's parent, for normalized rotations
        self._parent_rest_rotations = self._compute_parent_rest_rotations()

    # ── Hierarchy ─────────────────────────────────────────────────────

    @property
    def bone_count(self) -> int:
        return len(self.names)

    def _topological_order(self) -> list[int]:
        children = self.children_table()
        order: list[int] = []
        stack = [i for i in reversed(range(self.bone_count)) if self.parents[i] < 0]
        while stack:
            b = stack.pop()
            order.append(b)
            stack.extend(reversed(children[b]))
        if len(order) != self.bone_count:
            raise ValueError("Bone hierarchy contains a cycle or dangling parent index")
        return order

    def children_table(self) -> list[list[int]]:
        children: list[list[int]] = [[] for _ in range(self.bone_count)]
        for i, p in enumerate(self.parents):
            if p >= 0:
                children[p].append(i)
        return children

    def traversal_order(self) -> list[int]:
        """Depth-first pre-order over all roots (parents before children)."""
        return list(self._order)

    def bone_index(self, name: str) -> Optional[int]:
        """Resolve a humanoid or raw bone name to its index."""
        if name in self.humanoid:
            return self.humanoid[name]
        try:
            return self.names.index(name)
        except ValueError:
            return None

    def add_bone(self, name: str, parent: int, offset, humanoid_name: Optional[str] = None) -> int:
        """Append a child bone at a fixed local offset from ``parent``.

        The new bone's inverse bind matrix is taken from the current pose,
        and its humanoid name (defaulting to ``name``) is registered.
        """
        idx = self.bone_count
        self.names.append(name)
        self.parents = np.append(self.parents, parent)
        self.rest_positions = np.vstack([self.rest_positions, np.asarray(offset, dtype=np.float64)])
        self.rest_rotations = np.vstack([self.rest_rotations, quat_identity()])
        self.rest_scales = np.vstack([self.rest_scales, np.ones(3)])
        self.positions = np.vstack([self.positions, self.rest_positions[idx]])
        self.rotations = np.vstack([self.rotations, quat_identity()])
        self.scales = np.vstack([self.scales, np.ones(3)])
        self._order = self._topological_order()

        world = self.world_matrices()
        self.inverse_bind = np.concatenate([self.inverse_bind, np.linalg.inv(world[idx])[None]])
        self._parent_rest_rotations = self._compute_parent_rest_rotations()
        self.humanoid[humanoid_name or name] = idx
        return idx

    # ── Pose state ────────────────────────────────────────────────────

    def reset_pose(self) -> None:
        """Restore every bone to its rest TRS."""
        self.positions = self.rest_positions.copy()
        self.rotations = self.rest_rotations.copy()
        self.scales = self.rest_scales.copy()

    def _compute_parent_rest_rotations(self) -> NDArray[np.float64]:
        saved = (self.positions, self.rotations, self.scales)
        self.positions = self.rest_positions.copy()
        self.rotations = self.rest_rotations.copy()
        self.scales = self.rest_scales.copy()
        world = self.world_matrices()
        self.positions, self.rotations, self.scales = saved

        out = np.tile(quat_identity(), (self.bone_count, 1))
        for i, p in enumerate(self.parents):
            m = world[p] if p >= 0 else self.root_parent
            r = m[:3, :3] / np.maximum(np.linalg.norm(m[:3, :3], axis=0), 1e-12)
            out[i] = quat_normalize(mat3_to_quat(r))
        return out

    def set_normalized_rotation(self, bone: int, q) -> None:
        """Set a bone rotation expressed in rest-pose world axes.

        local = parentRest^-1 . q . parentRest . restLocal
        """
        p = self._parent_rest_rotations[bone]
        q_local = quat_multiply(
            quat_multiply(quat_multiply(quat_conjugate(p), q), p),
            self.rest_rotations[bone],
        )
        self.rotations[bone] = quat_normalize(q_local)

    def apply_bone_operations(self, operations: list[dict]) -> None:
        """Apply boneOperations records on top of the current pose.

        Each record names a humanoid bone and optionally carries
        ``position`` (added to the rest translation), ``rotation``
        (XYZ Euler degrees, replacing the normalized rotation) and
        ``scale`` (replacing the scale).
        """
        for op in operations:
            name = op.get("boneName")
            bone = self.bone_index(name) if name else None
            if bone is None:
                logger.warning("Bone operation for unknown bone %r ignored", name)
                continue

            pos = op.get("position")
            if pos:
                self.positions[bone] += [pos.get("x", 0.0), pos.get("y", 0.0), pos.get("z", 0.0)]

            rot = op.get("rotation")
            if rot:
                q = quat_from_euler(
                    deg_to_rad(rot.get("x", 0.0)),
                    deg_to_rad(rot.get("y", 0.0)),
                    deg_to_rad(rot.get("z", 0.0)),
                )
                self.set_normalized_rotation(bone, q)

            scl = op.get("scale")
            if scl:
                self.scales[bone] = [scl.get("x", 1.0), scl.get("y", 1.0), scl.get("z", 1.0)]

    def set_pose(self, operations: list[dict]) -> None:
        """Reset to rest, then apply ``operations``."""
        self.reset_pose()
        self.apply_bone_operations(operations)

    # ── Matrices ──────────────────────────────────────────────────────

    def local_matrices(self) -> NDArray[np.float64]:
        out = np.empty((self.bone_count, 4, 4), dtype=np.float64)
        for i in range(self.bone_count):
            out[i] = mat4_compose(self.positions[i], self.rotations[i], self.scales[i])
        return out

    def world_matrices(self) -> NDArray[np.float64]:
        """Model-space bone matrices (B, 4, 4) for the current pose."""
        local = self.local_matrices()
        world = np.empty_like(local)
        for i in self._order:
            p = self.parents[i]
            parent = world[p] if p >= 0 else self.root_parent
            world[i] = parent @ local[i]
        return world

    def pose(self) -> PoseSnapshot:
        """Capture the current pose as an immutable snapshot."""
        world = self.world_matrices()
        return PoseSnapshot(
            bone_world=_frozen(world),
            bone_matrices=_frozen(world @ self.inverse_bind),
            model_matrix=_frozen(self.model_matrix),
        )
