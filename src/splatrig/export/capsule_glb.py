"""Export bone capsules to GLB (binary glTF 2.0) for visual inspection.

GLB format:
  12-byte header | JSON chunk | BIN chunk

Each capsule becomes one mesh primitive (POSITION + uint32 indices) with
an unlit-looking PBR material in its palette color, so a viewer shows the
same coloring the classifier gives the splats.  Capsules are already in
world space; nodes carry no transform.
"""

import json
import logging
import struct
from pathlib import Path

import numpy as np

from splatrig.binding.capsules import BoneCapsule
from splatrig.loaders.glb_loader import CHUNK_BIN, CHUNK_JSON, GLB_MAGIC, GLB_VERSION

logger = logging.getLogger(__name__)

# glTF constants
GLTF_FLOAT = 5126       # GL_FLOAT
GLTF_UNSIGNED_INT = 5125  # GL_UNSIGNED_INT
GLTF_ARRAY_BUFFER = 34962
GLTF_ELEMENT_ARRAY_BUFFER = 34963


def pack_glb(gltf: dict, bin_data: bytes) -> bytes:
    """Assemble a GLB container from a glTF tree and its binary buffer."""
    json_bytes = json.dumps(gltf, separators=(",", ":")).encode("utf-8")
    json_bytes += b" " * ((4 - len(json_bytes) % 4) % 4)
    bin_data = bin_data + b"\x00" * ((4 - len(bin_data) % 4) % 4)

    total_length = 12 + 8 + len(json_bytes) + 8 + len(bin_data)
    return b"".join([
        struct.pack("<III", GLB_MAGIC, GLB_VERSION, total_length),
        struct.pack("<II", len(json_bytes), CHUNK_JSON),
        json_bytes,
        struct.pack("<II", len(bin_data), CHUNK_BIN),
        bin_data,
    ])


def _build_gltf(capsules: list[BoneCapsule], palette: np.ndarray,
                bone_names: list[str]) -> tuple[dict, bytes]:
    chunks: list[bytes] = []
    buffer_views, accessors, meshes, nodes, materials = [], [], [], [], []

    def add_accessor(array: np.ndarray, target: int, **extra) -> int:
        """Append ``array`` to the buffer behind a new view; returns the accessor index."""
        data = array.tobytes()
        buffer_views.append({
            "buffer": 0,
            "byteOffset": sum(len(c) for c in chunks),
            "byteLength": len(data),
            "target": target,
        })
        chunks.append(data)
        component = GLTF_FLOAT if array.dtype == np.float32 else GLTF_UNSIGNED_INT
        accessors.append({
            "bufferView": len(buffer_views) - 1,
            "componentType": component,
            "count": len(array),
            "type": "VEC3" if array.ndim == 2 else "SCALAR",
            **extra,
        })
        return len(accessors) - 1

    for capsule in capsules:
        # Triangle soup: three fresh vertices per face
        positions = capsule.triangles.reshape(-1, 3).astype(np.float32)
        pos_acc = add_accessor(positions, GLTF_ARRAY_BUFFER,
                               min=positions.min(axis=0).tolist(),
                               max=positions.max(axis=0).tolist())
        idx_acc = add_accessor(np.arange(len(positions), dtype=np.uint32),
                               GLTF_ELEMENT_ARRAY_BUFFER)

        r, g, b = (palette[capsule.color_tag % len(palette)] / 255.0).tolist()
        name = bone_names[capsule.bone_id] if capsule.bone_id < len(bone_names) else str(capsule.bone_id)
        materials.append({
            "name": f"capsule_{capsule.color_tag}",
            "pbrMetallicRoughness": {
                "baseColorFactor": [r, g, b, 0.5],
                "metallicFactor": 0.0,
                "roughnessFactor": 1.0,
            },
            "alphaMode": "BLEND",
            "doubleSided": True,
        })
        meshes.append({
            "name": name,
            "primitives": [{
                "attributes": {"POSITION": pos_acc},
                "indices": idx_acc,
                "material": len(materials) - 1,
            }],
        })
        nodes.append({"name": name, "mesh": len(meshes) - 1})

    bin_data = b"".join(chunks)
    gltf = {
        "asset": {"version": "2.0", "generator": "splatrig"},
        "scene": 0,
        "scenes": [{"nodes": list(range(len(nodes)))}],
        "nodes": nodes,
        "meshes": meshes,
        "materials": materials,
        "accessors": accessors,
        "bufferViews": buffer_views,
        "buffers": [{"byteLength": len(bin_data)}],
    }
    return gltf, bin_data


def export_capsules_glb(capsules: list[BoneCapsule], palette, path: str | Path,
                        bone_names: list[str] | None = None) -> int:
    """Write ``capsules`` to a GLB file; returns the number exported."""
    path = Path(path)
    if not capsules:
        logger.warning("No capsules to export")
        return 0
    palette = np.asarray(palette, dtype=np.float64).reshape(-1, 3)
    gltf, bin_data = _build_gltf(capsules, palette, bone_names or [])
    data = pack_glb(gltf, bin_data)
    path.write_bytes(data)
    logger.info("Exported %d capsules to %s (%.1f KB)", len(capsules), path, len(data) / 1024)
    return len(capsules)
