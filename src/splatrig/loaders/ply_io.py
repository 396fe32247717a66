"""Gaussian splat PLY reading and writing (classic 3DGS vertex layout).

Expected vertex properties::

    x y z                       centers
    f_dc_0 f_dc_1 f_dc_2        DC spherical harmonics (or red/green/blue uchar)
    opacity                     logit opacity
    scale_0 scale_1 scale_2     log standard deviations
    rot_0 rot_1 rot_2 rot_3     quaternion, w first

Anything else in the file (higher SH bands, normals...) is carried through
untouched in ``SplatCloud.records`` so written clouds keep every property.
"""

import io
import logging
from pathlib import Path
from typing import BinaryIO, Union

import numpy as np
from plyfile import PlyData, PlyElement, PlyParseError

from splatrig.constants import HIDDEN_OPACITY, SH_C0
from splatrig.core.errors import AssetLoadFailure
from splatrig.core.splats import SplatCloud

logger = logging.getLogger(__name__)

PlyInput = Union[str, Path, BinaryIO]

_BASE_FIELDS = (
    ["x", "y", "z", "f_dc_0", "f_dc_1", "f_dc_2", "opacity"]
    + [f"scale_{i}" for i in range(3)]
    + [f"rot_{i}" for i in range(4)]
)


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


def cloud_from_records(records: np.ndarray, name: str = "splats") -> SplatCloud:
    """Decode a structured vertex array into a :class:`SplatCloud`."""
    names = records.dtype.names or ()
    missing = [k for k in ("x", "y", "z") if k not in names]
    if missing:
        raise ValueError(f"PLY vertex element lacks {', '.join(missing)}")
    n = len(records)

    centers = np.stack([records["x"], records["y"], records["z"]], axis=1).astype(np.float32)

    colors = np.ones((n, 4), dtype=np.float32)
    if all(f"f_dc_{i}" in names for i in range(3)):
        dc = np.stack([records[f"f_dc_{i}"] for i in range(3)], axis=1).astype(np.float32)
        colors[:, :3] = np.clip(dc * SH_C0 + 0.5, 0.0, 1.0)
    elif all(c in names for c in ("red", "green", "blue")):
        rgb = np.stack([records["red"], records["green"], records["blue"]], axis=1)
        colors[:, :3] = rgb.astype(np.float32) / 255.0
    if "opacity" in names:
        colors[:, 3] = _sigmoid(records["opacity"].astype(np.float32))

    if all(f"scale_{i}" in names for i in range(3)):
        log_s = np.stack([records[f"scale_{i}"] for i in range(3)], axis=1).astype(np.float32)
        scales = np.exp(log_s)
    else:
        scales = np.full((n, 3), 0.01, dtype=np.float32)

    if all(f"rot_{i}" in names for i in range(4)):
        wxyz = np.stack([records[f"rot_{i}"] for i in range(4)], axis=1).astype(np.float64)
        norm = np.linalg.norm(wxyz, axis=1, keepdims=True)
        wxyz = np.where(norm > 1e-12, wxyz / np.where(norm > 1e-12, norm, 1.0), [1.0, 0.0, 0.0, 0.0])
        rotations = wxyz[:, [1, 2, 3, 0]].astype(np.float32)
    else:
        rotations = np.tile(np.array([0.0, 0.0, 0.0, 1.0], dtype=np.float32), (n, 1))

    return SplatCloud(centers, colors, scales, rotations, records=records, name=name)


def read_ply(source: PlyInput, name: str | None = None) -> SplatCloud:
    """Read a splat cloud from a path or a binary stream."""
    if name is None:
        name = Path(source).stem if isinstance(source, (str, Path)) else "stream"
    try:
        ply = PlyData.read(source)
        records = ply["vertex"].data
        cloud = cloud_from_records(np.asarray(records), name=name)
    except (PlyParseError, ValueError, KeyError, OSError) as exc:
        raise AssetLoadFailure(f"Could not read point cloud {name}: {exc}") from exc
    logger.info("Loaded %d splats from %s", len(cloud), name)
    return cloud


def read_ply_bytes(data: bytes, name: str = "stream") -> SplatCloud:
    return read_ply(io.BytesIO(data), name=name)


def records_from_cloud(cloud: SplatCloud, debug_colors: bool = False) -> np.ndarray:
    """Structured vertex records for ``cloud``.

    Existing raw records are reused, with the opacity of hidden (alpha 0)
    splats forced to a large negative logit.  Clouds built in memory get a
    fresh base 3DGS layout.  With ``debug_colors`` the base color of every
    splat is replaced by the color of the bone it was classified to.
    """
    if debug_colors and cloud.debug_colors is None:
        raise ValueError(f"Cloud {cloud.name} has not been classified; no debug colors")
    rgb = cloud.debug_colors if debug_colors else cloud.colors[:, :3]
    hidden = cloud.alpha <= 0.0

    if cloud.records is not None:
        records = cloud.records.copy()
        names = records.dtype.names or ()
        if "opacity" in names:
            records["opacity"][hidden] = HIDDEN_OPACITY
        if debug_colors:
            _write_rgb(records, names, rgb)
        return records

    records = np.zeros(len(cloud), dtype=[(f, "f4") for f in _BASE_FIELDS])
    records["x"], records["y"], records["z"] = cloud.centers.T
    _write_rgb(records, _BASE_FIELDS, rgb)
    for i in range(3):
        records[f"scale_{i}"] = np.log(np.maximum(cloud.scales[:, i], 1e-12))
    alpha = np.clip(cloud.alpha, 1e-6, 1.0 - 1e-6)
    records["opacity"] = np.log(alpha / (1.0 - alpha))
    records["opacity"][hidden] = HIDDEN_OPACITY
    wxyz = cloud.rotations[:, [3, 0, 1, 2]]
    for i in range(4):
        records[f"rot_{i}"] = wxyz[:, i]
    return records


def _write_rgb(records: np.ndarray, names, rgb: np.ndarray) -> None:
    if all(f"f_dc_{i}" in names for i in range(3)):
        for i in range(3):
            records[f"f_dc_{i}"] = (rgb[:, i] - 0.5) / SH_C0
    elif all(c in names for c in ("red", "green", "blue")):
        for i, c in enumerate(("red", "green", "blue")):
            records[c] = np.round(np.clip(rgb[:, i], 0.0, 1.0) * 255.0)
    else:
        raise ValueError("PLY vertex element has no color properties")


def write_ply(cloud: SplatCloud, target: PlyInput, debug_colors: bool = False) -> None:
    """Write ``cloud`` as a binary little-endian PLY."""
    element = PlyElement.describe(records_from_cloud(cloud, debug_colors), "vertex")
    PlyData([element], text=False, byte_order="<").write(target)
    logger.debug("Wrote %d splats", len(cloud))


def ply_bytes(cloud: SplatCloud) -> bytes:
    buf = io.BytesIO()
    write_ply(cloud, buf)
    return buf.getvalue()
