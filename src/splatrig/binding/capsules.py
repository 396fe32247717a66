"""Capped-cylinder bone proxies used as classification targets.

One capsule is built per parent->child bone pair whose child appears in
the capsule table (``bone_capsules.json``).  Each capsule is tagged with
the child bone index, since it stands for the limb segment ending there.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from splatrig.constants import HEAD_TOP_BONE
from splatrig.core.config_loader import load_config
from splatrig.core.math_utils import (
    mat4_compose,
    quat_from_unit_vectors,
    transform_points,
    vec3,
)
from splatrig.core.skeleton import PoseSnapshot, Skeleton

logger = logging.getLogger(__name__)


@dataclass
class CapsuleGroup:
    """Shared shape parameters for a set of bones."""
    name: str
    bones: list[str]
    radius: float
    scale_x: float = 1.0
    scale_z: float = 1.0


@dataclass
class BoneCapsule:
    """Triangulated capsule in world space, tagged with its bone."""
    bone_id: int
    triangles: NDArray[np.float64]  # (T, 3, 3) world-space corners
    color_tag: int
    group: str = ""


@dataclass
class CapsuleTable:
    groups: list[CapsuleGroup]
    palette: NDArray[np.uint8]       # (K, 3)
    head_top_offset: tuple[float, float, float] = (0.0, 0.2, -0.05)

    @classmethod
    def from_config(cls, data: Optional[dict] = None) -> "CapsuleTable":
        if data is None:
            data = load_config("bone_capsules.json")
        groups = [
            CapsuleGroup(
                name=name,
                bones=list(g["bones"]),
                radius=float(g["radius"]),
                scale_x=float(g.get("scale", {}).get("x", 1.0)),
                scale_z=float(g.get("scale", {}).get("z", 1.0)),
            )
            for name, g in data["groups"].items()
        ]
        palette = np.asarray(data["palette"], dtype=np.uint8).reshape(-1, 3)
        offset = tuple(data.get("headTopOffset", (0.0, 0.2, -0.05)))
        return cls(groups=groups, palette=palette, head_top_offset=offset)

    def group_for(self, skeleton: Skeleton, bone: int) -> Optional[CapsuleGroup]:
        """First group naming ``bone`` by humanoid or raw name."""
        for group in self.groups:
            for name in group.bones:
                if skeleton.bone_index(name) == bone:
                    return group
        return None


def capsule_geometry(radius: float, length: float, radial_segments: int = 6,
                     cap_divisions: int = 2) -> tuple[NDArray[np.float64], NDArray[np.int64]]:
    """Lathed capsule along +Y centred at the origin.

    The profile runs pole to pole: a quarter arc of ``cap_divisions``
    steps, the straight side, and a second quarter arc.  Pole rings are
    fanned, so no zero-area triangles are emitted.

    Returns (positions (V, 3), triangle indices (T, 3)).
    """
    half = max(length, 0.0) * 0.5
    profile = []
    for k in range(cap_divisions + 1):
        ang = -0.5 * np.pi + 0.5 * np.pi * k / cap_divisions
        profile.append((radius * np.cos(ang), -half + radius * np.sin(ang)))
    for k in range(cap_divisions + 1):
        ang = 0.5 * np.pi * k / cap_divisions
        profile.append((radius * np.cos(ang), half + radius * np.sin(ang)))
    profile[0] = (0.0, profile[0][1])
    profile[-1] = (0.0, profile[-1][1])

    positions = [vec3(0.0, profile[0][1], 0.0)]
    ring_count = len(profile) - 2
    for j in range(1, len(profile) - 1):
        r, y = profile[j]
        for i in range(radial_segments):
            phi = 2.0 * np.pi * i / radial_segments
            positions.append(vec3(r * np.sin(phi), y, r * np.cos(phi)))
    positions.append(vec3(0.0, profile[-1][1], 0.0))
    top = len(positions) - 1

    def ring(j, i):
        return 1 + j * radial_segments + (i % radial_segments)

    tris = []
    for i in range(radial_segments):
        tris.append((0, ring(0, i + 1), ring(0, i)))
    for j in range(ring_count - 1):
        for i in range(radial_segments):
            a, b = ring(j, i), ring(j, i + 1)
            c, d = ring(j + 1, i), ring(j + 1, i + 1)
            tris.append((a, b, d))
            tris.append((a, d, c))
    for i in range(radial_segments):
        tris.append((top, ring(ring_count - 1, i), ring(ring_count - 1, i + 1)))

    return np.array(positions), np.array(tris, dtype=np.int64)


def ensure_head_top_bone(skeleton: Skeleton, table: CapsuleTable) -> Optional[int]:
    """Add the synthetic head-top bone under ``head`` when it is missing."""
    existing = skeleton.bone_index(HEAD_TOP_BONE)
    if existing is not None:
        return existing
    head = skeleton.bone_index("head")
    if head is None:
        logger.warning("Skeleton has no head bone; head-top capsule skipped")
        return None
    return skeleton.add_bone(HEAD_TOP_BONE, head, table.head_top_offset)


def build_capsules(skeleton: Skeleton, pose: PoseSnapshot,
                   table: Optional[CapsuleTable] = None) -> list[BoneCapsule]:
    """Build world-space capsules for every tabled parent->child pair.

    Bones are visited depth-first from the roots, so capsule ordinals
    follow hierarchy order.  Pairs whose child is not in the table are
    skipped without fallback geometry.
    """
    if table is None:
        table = CapsuleTable.from_config()

    positions = pose.bone_positions()
    capsules: list[BoneCapsule] = []
    up = vec3(0.0, 1.0, 0.0)

    for child in skeleton.traversal_order():
        parent = int(skeleton.parents[child])
        if parent < 0:
            continue
        group = table.group_for(skeleton, child)
        if group is None:
            continue

        start, end = positions[parent], positions[child]
        delta = end - start
        dist = float(np.linalg.norm(delta))
        if dist < 1e-9:
            logger.warning("Zero-length bone %s; capsule skipped", skeleton.names[child])
            continue

        verts, faces = capsule_geometry(group.radius, dist - group.radius * 2.0)
        rot = quat_from_unit_vectors(up, delta / dist)
        m = mat4_compose((start + end) * 0.5, rot, vec3(group.scale_x, 1.0, group.scale_z))
        world = transform_points(m, verts)

        capsules.append(BoneCapsule(
            bone_id=child,
            triangles=world[faces],
            color_tag=len(capsules),
            group=group.name,
        ))

    logger.debug("Built %d bone capsules", len(capsules))
    return capsules
