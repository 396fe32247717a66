"""Binding archive (.gvrm): avatar blob + splat blob + binding metadata.

Layout (a zip file)::

    model.vrm    the avatar exactly as it was loaded
    model.ply    the foreground splat cloud
    data.json    {modelScale, boneOperations, gsQuaternion, gsPosition,
                  splatBoneIndices, splatVertexIndices, splatRelativePoses}

``splatRelativePoses`` is a flat list, three floats per splat.  Older
archives call it ``relativePoses``; both are read.
"""

import json
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

import numpy as np
from numpy.typing import NDArray

from splatrig.binding.binder import SplatBinding
from splatrig.constants import ARCHIVE_CLOUD_ENTRY, ARCHIVE_DATA_ENTRY, ARCHIVE_MESH_ENTRY
from splatrig.core.errors import ArchiveFormatError
from splatrig.core.splats import SplatCloud
from splatrig.loaders.ply_io import read_ply_bytes, write_ply

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class BindingArchive:
    mesh_bytes: bytes = field(repr=False)
    cloud_bytes: bytes = field(repr=False)
    model_scale: float
    bone_operations: list[dict]
    gs_quaternion: list[float]
    gs_position: list[float]
    binding: SplatBinding

    @property
    def splat_count(self) -> int:
        return len(self.binding)

    def metadata(self) -> dict:
        """The ``data.json`` record."""
        return {
            "modelScale": float(self.model_scale),
            "boneOperations": self.bone_operations,
            "gsQuaternion": [float(v) for v in self.gs_quaternion],
            "gsPosition": [float(v) for v in self.gs_position],
            "splatVertexIndices": self.binding.vertex_ids.astype(int).tolist(),
            "splatBoneIndices": self.binding.bone_ids.astype(int).tolist(),
            "splatRelativePoses": self.binding.offsets.astype(np.float64).ravel().tolist(),
        }

    def load_cloud(self) -> SplatCloud:
        return read_ply_bytes(self.cloud_bytes, name="model")


def validate_alignment(bone_ids, vertex_ids, offsets_flat, splat_count: int | None = None) -> None:
    """Raise ArchiveFormatError unless all binding arrays cover the same splats."""
    n_bones, n_verts, n_offsets = len(bone_ids), len(vertex_ids), len(offsets_flat)
    if n_offsets % 3 or n_bones != n_verts or n_bones != n_offsets // 3:
        raise ArchiveFormatError(
            f"Binding arrays misaligned: bones={n_bones}, vertices={n_verts}, offsets={n_offsets}"
        )
    if splat_count is not None and n_bones != splat_count:
        raise ArchiveFormatError(
            f"Binding covers {n_bones} splats but the cloud holds {splat_count}"
        )


def save_archive(archive: BindingArchive, path: PathLike) -> Path:
    """Write ``archive`` as a zip; returns the written path."""
    path = Path(path)
    meta = archive.metadata()
    validate_alignment(meta["splatBoneIndices"], meta["splatVertexIndices"],
                       meta["splatRelativePoses"])
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(ARCHIVE_MESH_ENTRY, archive.mesh_bytes)
        zf.writestr(ARCHIVE_CLOUD_ENTRY, archive.cloud_bytes)
        zf.writestr(ARCHIVE_DATA_ENTRY, json.dumps(meta, indent=2))
    logger.info("Saved %s (%d splats)", path, archive.splat_count)
    return path


def load_archive(path: PathLike) -> BindingArchive:
    """Read an archive written by :func:`save_archive` (or an older one)."""
    path = Path(path)
    try:
        with zipfile.ZipFile(path) as zf:
            names = set(zf.namelist())
            missing = {ARCHIVE_MESH_ENTRY, ARCHIVE_CLOUD_ENTRY, ARCHIVE_DATA_ENTRY} - names
            if missing:
                raise ArchiveFormatError(f"Archive {path.name} lacks {', '.join(sorted(missing))}")
            mesh_bytes = zf.read(ARCHIVE_MESH_ENTRY)
            cloud_bytes = zf.read(ARCHIVE_CLOUD_ENTRY)
            meta = json.loads(zf.read(ARCHIVE_DATA_ENTRY).decode("utf-8"))
    except (zipfile.BadZipFile, OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ArchiveFormatError(f"Could not read archive {path}: {exc}") from exc

    offsets = meta.get("splatRelativePoses")
    if offsets is None:
        offsets = meta.get("relativePoses")
    bones = meta.get("splatBoneIndices")
    verts = meta.get("splatVertexIndices")
    if offsets is None or bones is None or verts is None:
        raise ArchiveFormatError("Archive metadata lacks binding arrays")
    validate_alignment(bones, verts, offsets)

    binding = SplatBinding(
        bone_ids=np.asarray(bones, dtype=np.int32),
        vertex_ids=np.asarray(verts, dtype=np.int32),
        offsets=np.asarray(offsets, dtype=np.float64).reshape(-1, 3),
    )
    return BindingArchive(
        mesh_bytes=mesh_bytes,
        cloud_bytes=cloud_bytes,
        model_scale=float(meta.get("modelScale", 1.0)),
        bone_operations=list(meta.get("boneOperations", [])),
        gs_quaternion=list(meta.get("gsQuaternion", [0.0, 0.0, 0.0, 1.0])),
        gs_position=list(meta.get("gsPosition", [0.0, 0.0, 0.0])),
        binding=binding,
    )


# ── Bone partitioning ─────────────────────────────────────────────────

@dataclass
class BonePartition:
    scene_splat_indices: dict[int, list[int]]   # group -> original splat indices
    bone_scene_map: dict[int, int]              # bone -> group
    binding: SplatBinding                       # arrays reordered group by group

    @property
    def order(self) -> NDArray[np.int64]:
        """Original splat index for each reordered position."""
        parts = [self.scene_splat_indices[g] for g in range(len(self.scene_splat_indices))]
        return np.asarray([i for part in parts for i in part], dtype=np.int64)


def sort_splats_by_bones(binding: SplatBinding) -> BonePartition:
    """Group splats by bone in first-seen order.

    Group ids are dense (0..K-1) and assigned in the order bones first
    appear, so saving and loading reproduce the same partition.
    """
    scene_splat_indices: dict[int, list[int]] = {}
    bone_scene_map: dict[int, int] = {}
    for i, bone in enumerate(binding.bone_ids.tolist()):
        group = bone_scene_map.get(bone)
        if group is None:
            group = len(bone_scene_map)
            bone_scene_map[bone] = group
            scene_splat_indices[group] = []
        scene_splat_indices[group].append(i)

    partition = BonePartition(scene_splat_indices, bone_scene_map, binding)
    order = partition.order
    partition.binding = SplatBinding(
        bone_ids=binding.bone_ids[order],
        vertex_ids=binding.vertex_ids[order],
        offsets=binding.offsets[order],
    )
    return partition


def split_ply(cloud: SplatCloud, partition: BonePartition, out_dir: PathLike,
              stem: str = "group") -> list[Path]:
    """Write one PLY per bone group, records kept byte-for-byte."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for group in range(len(partition.scene_splat_indices)):
        path = out_dir / f"{stem}_{group}.ply"
        write_ply(cloud.subset(partition.scene_splat_indices[group]), path)
        paths.append(path)
    logger.info("Split %d splats into %d bone groups", len(cloud), len(paths))
    return paths
