"""Shared builders: a small synthetic humanoid, its skinned body and a GLB of it."""

import numpy as np
import pytest

from splatrig.calibration.placement import default_placement
from splatrig.core.math_utils import transform_points
from splatrig.core.mesh import SkinnedMesh
from splatrig.core.skeleton import Skeleton
from splatrig.core.splats import SplatCloud
from splatrig.export.capsule_glb import pack_glb
from splatrig.loaders.ply_io import ply_bytes
from splatrig.pipeline.preprocess import default_bone_operations

# (humanoid name, parent, local offset); VRM convention: +Y up, left is +X
HUMANOID_BONES = [
    ("hips", -1, (0.0, 1.0, 0.0)),
    ("spine", 0, (0.0, 0.15, 0.0)),
    ("chest", 1, (0.0, 0.15, 0.0)),
    ("neck", 2, (0.0, 0.2, 0.0)),
    ("head", 3, (0.0, 0.1, 0.0)),
    ("leftUpperArm", 2, (0.2, 0.15, 0.0)),
    ("leftLowerArm", 5, (0.3, 0.0, 0.0)),
    ("leftHand", 6, (0.25, 0.0, 0.0)),
    ("rightUpperArm", 2, (-0.2, 0.15, 0.0)),
    ("rightLowerArm", 8, (-0.3, 0.0, 0.0)),
    ("rightHand", 9, (-0.25, 0.0, 0.0)),
    ("leftUpperLeg", 0, (0.1, -0.05, 0.0)),
    ("leftLowerLeg", 11, (0.0, -0.45, 0.0)),
    ("leftFoot", 12, (0.0, -0.45, 0.0)),
    ("rightUpperLeg", 0, (-0.1, -0.05, 0.0)),
    ("rightLowerLeg", 14, (0.0, -0.45, 0.0)),
    ("rightFoot", 15, (0.0, -0.45, 0.0)),
]


def _make_skeleton() -> Skeleton:
    names = [b[0] for b in HUMANOID_BONES]
    return Skeleton(
        names=names,
        parents=[b[1] for b in HUMANOID_BONES],
        positions=[b[2] for b in HUMANOID_BONES],
        rotations=np.tile([0.0, 0.0, 0.0, 1.0], (len(names), 1)),
        humanoid={name: i for i, name in enumerate(names)},
    )


def _make_body(skeleton: Skeleton, per_segment: int = 6, ring: int = 4,
               radius: float = 0.03):
    """Rings of vertices along every bone segment, rigidly bound to the parent bone."""
    rest = skeleton.pose().bone_positions()
    positions, bones = [], []
    for child in range(skeleton.bone_count):
        parent = int(skeleton.parents[child])
        if parent < 0:
            continue
        a, b = rest[parent], rest[child]
        axis = (b - a) / np.linalg.norm(b - a)
        side = np.cross(axis, [0.0, 0.0, 1.0])
        if np.linalg.norm(side) < 1e-6:
            side = np.cross(axis, [1.0, 0.0, 0.0])
        side /= np.linalg.norm(side)
        other = np.cross(axis, side)
        for t in np.linspace(0.15, 0.85, per_segment):
            center = a + (b - a) * t
            for k in range(ring):
                phi = 2.0 * np.pi * k / ring
                positions.append(center + radius * (np.cos(phi) * side + np.sin(phi) * other))
                bones.append(parent)
    positions = np.array(positions)
    n = len(positions)
    skin_indices = np.zeros((n, 4), dtype=np.int32)
    skin_indices[:, 0] = bones
    skin_weights = np.zeros((n, 4))
    skin_weights[:, 0] = 1.0
    # Triangles between consecutive vertices; only used for bounds and export
    indices = np.array([(i, i + 1, i + 2) for i in range(0, n - 2, 3)], dtype=np.uint32).ravel()
    return SkinnedMesh(positions=positions, skin_indices=skin_indices,
                       skin_weights=skin_weights, indices=indices, name="body")


@pytest.fixture
def humanoid() -> Skeleton:
    return _make_skeleton()


@pytest.fixture
def body():
    """(skeleton, skinned mesh) pair."""
    skeleton = _make_skeleton()
    return skeleton, _make_body(skeleton)


# ── GLB writing ───────────────────────────────────────────────────────

def _build_avatar_glb(with_mesh: bool = True, vrm0: bool = False) -> bytes:
    skeleton = _make_skeleton()
    mesh = _make_body(skeleton)
    chunks: list[bytes] = []
    views, accessors = [], []
    offset = 0

    def add(array: np.ndarray, component: int, kind: str) -> int:
        nonlocal offset
        data = np.ascontiguousarray(array).tobytes()
        data += b"\x00" * ((4 - len(data) % 4) % 4)
        views.append({"buffer": 0, "byteOffset": offset, "byteLength": len(data)})
        chunks.append(data)
        offset += len(data)
        accessors.append({"bufferView": len(views) - 1, "componentType": component,
                          "count": len(array), "type": kind})
        return len(accessors) - 1

    nodes = []
    for name, parent, local in HUMANOID_BONES:
        nodes.append({"name": f"J_{name}", "translation": list(local), "children": []})
    for i, (_, parent, _) in enumerate(HUMANOID_BONES):
        if parent >= 0:
            nodes[parent]["children"].append(i)
    for node in nodes:
        if not node["children"]:
            del node["children"]

    inverse_bind = np.linalg.inv(skeleton.world_matrices())
    ibm = add(inverse_bind.transpose(0, 2, 1).reshape(-1, 16).astype(np.float32), 5126, "MAT4")
    gltf = {
        "asset": {"version": "2.0"},
        "nodes": nodes,
        "skins": [{"joints": list(range(len(HUMANOID_BONES))), "inverseBindMatrices": ibm}],
        "scenes": [{"nodes": [0]}],
    }

    if with_mesh:
        pos = add(mesh.positions.astype(np.float32), 5126, "VEC3")
        joints = add(mesh.skin_indices.astype(np.uint16), 5123, "VEC4")
        weights = add(mesh.skin_weights.astype(np.float32), 5126, "VEC4")
        idx = add(mesh.indices.astype(np.uint32), 5125, "SCALAR")
        gltf["meshes"] = [{"primitives": [{
            "attributes": {"POSITION": pos, "JOINTS_0": joints, "WEIGHTS_0": weights},
            "indices": idx,
        }]}]
        nodes.append({"name": "Body", "mesh": 0, "skin": 0})
        gltf["scenes"][0]["nodes"].append(len(nodes) - 1)

    names = [b[0] for b in HUMANOID_BONES]
    if vrm0:
        bones = [{"bone": name, "node": i} for i, name in enumerate(names)]
        gltf["extensions"] = {"VRM": {"humanoid": {"humanBones": bones}}}
    else:
        bones = {name: {"node": i} for i, name in enumerate(names)}
        gltf["extensions"] = {"VRMC_vrm": {"humanoid": {"humanBones": bones}}}

    bin_data = b"".join(chunks)
    gltf["bufferViews"] = views
    gltf["accessors"] = accessors
    gltf["buffers"] = [{"byteLength": len(bin_data)}]
    return pack_glb(gltf, bin_data)


@pytest.fixture
def avatar_glb() -> bytes:
    return _build_avatar_glb()


@pytest.fixture
def avatar_glb_factory():
    return _build_avatar_glb


# ── Splat clouds ──────────────────────────────────────────────────────

def _make_body_cloud(jitter: float = 0.01, seed: int = 0) -> SplatCloud:
    """Splats hugging the default-posed avatar, stored the way a centered Y-down scan is."""
    skeleton = _make_skeleton()
    mesh = _make_body(skeleton)
    stand = default_placement(mesh.bounding_height())
    skeleton.model_matrix = stand.model_matrix
    skeleton.set_pose(default_bone_operations())
    pose = skeleton.pose()
    world = mesh.world_positions(pose)
    rng = np.random.default_rng(seed)
    world += rng.normal(scale=jitter, size=world.shape)
    centers = transform_points(np.linalg.inv(stand.gs_matrix), world)
    n = len(centers)
    return SplatCloud(
        centers=centers.astype(np.float32),
        colors=np.tile([0.8, 0.6, 0.5, 0.9], (n, 1)),
        scales=np.full((n, 3), 0.005),
        rotations=np.tile([0.0, 0.0, 0.0, 1.0], (n, 1)),
    )


@pytest.fixture
def body_cloud() -> SplatCloud:
    return _make_body_cloud()


@pytest.fixture
def body_cloud_ply(body_cloud) -> bytes:
    return ply_bytes(body_cloud)
