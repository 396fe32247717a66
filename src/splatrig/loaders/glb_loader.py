"""Parse a binary glTF / VRM avatar: skeleton, skinned mesh and humanoid map."""

import json
import logging
import struct
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from splatrig.core.config_loader import load_config
from splatrig.core.errors import AssetLoadFailure
from splatrig.core.math_utils import mat4_decompose
from splatrig.core.mesh import SkinnedMesh
from splatrig.core.skeleton import Skeleton

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# GLB constants
# ---------------------------------------------------------------------------
GLB_MAGIC = 0x46546C67
GLB_VERSION = 2
CHUNK_JSON = 0x4E4F534A
CHUNK_BIN = 0x004E4942

# glTF component type → numpy dtype
_COMP = {
    5120: np.int8,
    5121: np.uint8,
    5122: np.int16,
    5123: np.uint16,
    5125: np.uint32,
    5126: np.float32,
}

# glTF type → element count
_TYPE_COUNT = {
    "SCALAR": 1,
    "VEC2": 2,
    "VEC3": 3,
    "VEC4": 4,
    "MAT2": 4,
    "MAT3": 9,
    "MAT4": 16,
}


@dataclass
class MeshAsset:
    """A loaded avatar, plus the original file bytes for re-packaging."""
    name: str
    mesh: SkinnedMesh
    skeleton: Skeleton
    raw: bytes = field(repr=False, default=b"")
    legacy_facing: bool = False   # VRM 0.x avatars face -Z

    @property
    def height(self) -> float:
        return self.mesh.bounding_height()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def split_glb(raw: bytes) -> tuple[dict, bytes]:
    """Return (json tree, BIN chunk) of a GLB container."""
    if len(raw) < 20:
        raise ValueError("File too short for a GLB header")
    magic, version, _total = struct.unpack_from("<III", raw, 0)
    if magic != GLB_MAGIC:
        raise ValueError("Not a GLB file (bad magic)")
    if version != GLB_VERSION:
        raise ValueError(f"Unsupported GLB version {version}")

    json_len, json_type = struct.unpack_from("<II", raw, 12)
    if json_type != CHUNK_JSON:
        raise ValueError("First GLB chunk is not JSON")
    gltf = json.loads(raw[20:20 + json_len].decode("utf-8"))

    bin_buffer = b""
    bin_offset = 20 + json_len
    if bin_offset + 8 <= len(raw):
        bin_len, bin_type = struct.unpack_from("<II", raw, bin_offset)
        if bin_type == CHUNK_BIN:
            bin_buffer = raw[bin_offset + 8:bin_offset + 8 + bin_len]
    return gltf, bin_buffer


def read_accessor(gltf: dict, buf: bytes, acc_idx: int) -> np.ndarray:
    """Read a glTF accessor into a (count, components) float64 array."""
    acc = gltf["accessors"][acc_idx]
    dtype = np.dtype(_COMP[acc["componentType"]]).newbyteorder("<")
    count = acc["count"]
    n_components = _TYPE_COUNT[acc["type"]]
    if "bufferView" not in acc:
        return np.zeros((count, n_components), dtype=np.float64)

    bv = gltf["bufferViews"][acc["bufferView"]]
    byte_offset = bv.get("byteOffset", 0) + acc.get("byteOffset", 0)
    byte_stride = bv.get("byteStride", 0) or dtype.itemsize * n_components
    arr = np.ndarray(
        shape=(count, n_components),
        dtype=dtype,
        buffer=buf,
        offset=byte_offset,
        strides=(byte_stride, dtype.itemsize),
    ).astype(np.float64)

    if acc.get("normalized") and np.issubdtype(dtype, np.integer):
        arr /= float(np.iinfo(dtype).max)
    return arr


def node_local_matrix(node: dict) -> np.ndarray:
    """Local 4x4 transform of a glTF node (matrix or TRS)."""
    if "matrix" in node:
        return np.array(node["matrix"], dtype=np.float64).reshape(4, 4).T  # col-major→row-major
    t = node.get("translation", [0.0, 0.0, 0.0])
    x, y, z, w = node.get("rotation", [0.0, 0.0, 0.0, 1.0])
    s = node.get("scale", [1.0, 1.0, 1.0])
    m = np.eye(4, dtype=np.float64)
    m[0, 0] = (1 - 2 * (y * y + z * z)) * s[0]
    m[0, 1] = (2 * (x * y - z * w)) * s[1]
    m[0, 2] = (2 * (x * z + y * w)) * s[2]
    m[1, 0] = (2 * (x * y + z * w)) * s[0]
    m[1, 1] = (1 - 2 * (x * x + z * z)) * s[1]
    m[1, 2] = (2 * (y * z - x * w)) * s[2]
    m[2, 0] = (2 * (x * z - y * w)) * s[0]
    m[2, 1] = (2 * (y * z + x * w)) * s[1]
    m[2, 2] = (1 - 2 * (x * x + y * y)) * s[2]
    m[:3, 3] = t
    return m


def node_world_matrices(gltf: dict) -> tuple[np.ndarray, dict[int, int]]:
    """World matrices of every node and the child → parent node map."""
    nodes = gltf.get("nodes", [])
    parent_of: dict[int, int] = {}
    for ni, node in enumerate(nodes):
        for ci in node.get("children", []):
            parent_of[ci] = ni

    world = np.zeros((len(nodes), 4, 4), dtype=np.float64)
    done = np.zeros(len(nodes), dtype=bool)
    for start in range(len(nodes)):
        chain = []
        ni = start
        while ni >= 0 and not done[ni]:
            chain.append(ni)
            ni = parent_of.get(ni, -1)
        parent = world[ni] if ni >= 0 else np.eye(4)
        for ni in reversed(chain):
            parent = parent @ node_local_matrix(nodes[ni])
            world[ni] = parent
            done[ni] = True
    return world, parent_of


def humanoid_node_map(gltf: dict) -> dict[str, int]:
    """Humanoid bone name → node index from VRM 0.x or VRM 1.0 extensions."""
    ext = gltf.get("extensions", {})
    if "VRMC_vrm" in ext:
        bones = ext["VRMC_vrm"].get("humanoid", {}).get("humanBones", {})
        return {name: int(b["node"]) for name, b in bones.items() if "node" in b}
    if "VRM" in ext:
        bones = ext["VRM"].get("humanoid", {}).get("humanBones", [])
        return {b["bone"]: int(b["node"]) for b in bones if "bone" in b and "node" in b}
    return {}


def _alias_humanoid(joint_names: list[str]) -> dict[str, int]:
    aliases = load_config("humanoid_aliases.json")
    lookup = {name: i for i, name in enumerate(joint_names)}
    out = {}
    for human, raw_names in aliases.items():
        for raw in raw_names:
            if raw in lookup:
                out[human] = lookup[raw]
                break
    return out


def _pick_skinned_mesh(gltf: dict, buf: bytes, world: np.ndarray,
                       joint_count: int) -> Optional[SkinnedMesh]:
    """Concatenate the primitives of the largest node skinned by skin 0."""
    best = None
    for ni, node in enumerate(gltf.get("nodes", [])):
        if node.get("skin") != 0 or "mesh" not in node:
            continue
        positions, joints, weights, indices = [], [], [], []
        base = 0
        for prim in gltf["meshes"][node["mesh"]].get("primitives", []):
            attrs = prim.get("attributes", {})
            if "POSITION" not in attrs:
                continue
            pos = read_accessor(gltf, buf, attrs["POSITION"])
            n = len(pos)
            if "JOINTS_0" in attrs and "WEIGHTS_0" in attrs:
                j = read_accessor(gltf, buf, attrs["JOINTS_0"]).astype(np.int64)
                w = read_accessor(gltf, buf, attrs["WEIGHTS_0"])
            else:
                j = np.zeros((n, 4), dtype=np.int64)
                w = np.tile([1.0, 0.0, 0.0, 0.0], (n, 1))
            if "indices" in prim:
                idx = read_accessor(gltf, buf, prim["indices"]).astype(np.int64).ravel()
            else:
                idx = np.arange(n, dtype=np.int64)
            positions.append(pos)
            joints.append(j)
            weights.append(w)
            indices.append(idx + base)
            base += n
        if not positions or (best is not None and base <= best[0]):
            continue
        best = (base, ni, positions, joints, weights, indices)

    if best is None:
        return None
    _, ni, positions, joints, weights, indices = best
    w = np.concatenate(weights)
    total = w.sum(axis=1, keepdims=True)
    w = np.where(total > 0, w / np.where(total > 0, total, 1.0), [1.0, 0.0, 0.0, 0.0])
    j = np.clip(np.concatenate(joints), 0, max(joint_count - 1, 0))
    return SkinnedMesh(
        positions=np.concatenate(positions),
        skin_indices=j,
        skin_weights=w,
        indices=np.concatenate(indices).astype(np.uint32),
        bind_matrix=world[ni],
        name=gltf.get("nodes")[ni].get("name", f"node_{ni}"),
    )


# ---------------------------------------------------------------------------
# Main parser
# ---------------------------------------------------------------------------

def parse_glb_bytes(raw: bytes, name: str = "avatar") -> MeshAsset:
    """Parse an avatar GLB/VRM held in memory."""
    try:
        gltf, buf = split_glb(raw)
        skins = gltf.get("skins", [])
        if not skins:
            raise ValueError("Avatar has no skin")
        skin = skins[0]
        joint_nodes = list(skin["joints"])
        nodes = gltf["nodes"]
        joint_names = [nodes[ni].get("name", f"joint_{ni}") for ni in joint_nodes]

        world, parent_of = node_world_matrices(gltf)
        node_to_joint = {ni: si for si, ni in enumerate(joint_nodes)}

        parents = []
        root_parent = None
        for ni in joint_nodes:
            pn = parent_of.get(ni, -1)
            if pn in node_to_joint:
                parents.append(node_to_joint[pn])
            else:
                parents.append(-1)
                if root_parent is None and pn >= 0:
                    root_parent = world[pn]

        positions, rotations, scales = [], [], []
        for ni in joint_nodes:
            t, r, s = mat4_decompose(node_local_matrix(nodes[ni]))
            positions.append(t)
            rotations.append(r)
            scales.append(s)

        if "inverseBindMatrices" in skin:
            ibm = read_accessor(gltf, buf, skin["inverseBindMatrices"])
            inverse_bind = ibm.reshape(len(joint_nodes), 4, 4).transpose(0, 2, 1)
        else:
            inverse_bind = np.linalg.inv(world[joint_nodes])

        humanoid = {
            human: node_to_joint[ni]
            for human, ni in humanoid_node_map(gltf).items()
            if ni in node_to_joint
        }
        if not humanoid:
            humanoid = _alias_humanoid(joint_names)

        skeleton = Skeleton(
            names=joint_names,
            parents=parents,
            positions=positions,
            rotations=rotations,
            scales=scales,
            inverse_bind=inverse_bind,
            humanoid=humanoid,
            root_parent=root_parent,
        )

        mesh = _pick_skinned_mesh(gltf, buf, world, len(joint_nodes))
        if mesh is None:
            logger.warning("No skinned mesh in %s; using a skeleton-only placeholder", name)
            mesh = SkinnedMesh(
                positions=np.zeros((1, 3)),
                skin_indices=np.zeros((1, 4)),
                skin_weights=np.array([[1.0, 0.0, 0.0, 0.0]]),
            )
    except (ValueError, KeyError, IndexError, TypeError, struct.error,
            UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise AssetLoadFailure(f"Could not read avatar {name}: {exc}") from exc

    legacy = "VRM" in gltf.get("extensions", {})
    logger.info("Loaded avatar %s: %d bones, %d vertices, %d humanoid bones",
                name, skeleton.bone_count, mesh.vertex_count, len(humanoid))
    return MeshAsset(name=name, mesh=mesh, skeleton=skeleton, raw=raw, legacy_facing=legacy)
