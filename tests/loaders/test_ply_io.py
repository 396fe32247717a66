"""Tests for Gaussian splat PLY reading and writing."""

import io

import numpy as np
import pytest
from plyfile import PlyData, PlyElement

from splatrig.constants import HIDDEN_OPACITY, SH_C0
from splatrig.core.errors import AssetLoadFailure
from splatrig.core.splats import SplatCloud
from splatrig.loaders.ply_io import (
    ply_bytes,
    read_ply,
    read_ply_bytes,
    records_from_cloud,
    write_ply,
)

FIELDS = (["x", "y", "z", "f_dc_0", "f_dc_1", "f_dc_2", "opacity"]
          + [f"scale_{i}" for i in range(3)] + [f"rot_{i}" for i in range(4)] + ["f_rest_0"])


def _make_records(n=3):
    rec = np.zeros(n, dtype=[(f, "f4") for f in FIELDS])
    rec["x"] = np.arange(n)
    rec["y"] = -1.0
    rec["f_dc_0"] = 0.5 / SH_C0       # red 1.0
    rec["opacity"] = 0.0              # alpha 0.5
    rec["scale_0"] = np.log(0.1)
    rec["scale_1"] = np.log(0.2)
    rec["scale_2"] = np.log(0.3)
    rec["rot_0"] = 2.0                # unnormalized identity, w first
    rec["f_rest_0"] = 7.0
    return rec


def _write(path, records):
    PlyData([PlyElement.describe(records, "vertex")], text=False).write(str(path))


class TestRead:
    def test_decodes_fields(self, tmp_path):
        path = tmp_path / "scan.ply"
        _write(path, _make_records())
        cloud = read_ply(path)
        assert cloud.name == "scan"
        assert len(cloud) == 3
        np.testing.assert_allclose(cloud.centers[:, 0], [0, 1, 2])
        np.testing.assert_allclose(cloud.colors[0], [1.0, 0.5, 0.5, 0.5], atol=1e-6)
        np.testing.assert_allclose(cloud.scales[0], [0.1, 0.2, 0.3], rtol=1e-5)
        np.testing.assert_allclose(cloud.rotations[0], [0, 0, 0, 1])

    def test_w_first_rotation(self, tmp_path):
        rec = _make_records(1)
        rec["rot_0"], rec["rot_3"] = 0.0, 1.0   # w=0, z=1
        path = tmp_path / "rot.ply"
        _write(path, rec)
        np.testing.assert_allclose(read_ply(path).rotations[0], [0, 0, 1, 0])

    def test_rgb_uchar_cloud(self):
        rec = np.zeros(2, dtype=[("x", "f4"), ("y", "f4"), ("z", "f4"),
                                 ("red", "u1"), ("green", "u1"), ("blue", "u1")])
        rec["red"] = 255
        buf = io.BytesIO()
        PlyData([PlyElement.describe(rec, "vertex")]).write(buf)
        cloud = read_ply_bytes(buf.getvalue())
        np.testing.assert_allclose(cloud.colors[0], [1, 0, 0, 1])
        np.testing.assert_allclose(cloud.scales, 0.01)
        np.testing.assert_allclose(cloud.rotations, np.tile([0, 0, 0, 1.0], (2, 1)))

    def test_missing_file(self, tmp_path):
        with pytest.raises(AssetLoadFailure):
            read_ply(tmp_path / "nope.ply")

    def test_not_a_ply(self):
        with pytest.raises(AssetLoadFailure):
            read_ply_bytes(b"definitely not a ply file")


class TestWrite:
    def test_extra_properties_survive(self, tmp_path):
        path = tmp_path / "in.ply"
        _write(path, _make_records())
        cloud = read_ply(path)
        out = tmp_path / "out.ply"
        write_ply(cloud, out)
        data = PlyData.read(str(out))["vertex"].data
        np.testing.assert_allclose(data["f_rest_0"], 7.0)
        np.testing.assert_allclose(data["rot_0"], 2.0)

    def test_hidden_splats_written_transparent(self, tmp_path):
        path = tmp_path / "in.ply"
        _write(path, _make_records())
        cloud = read_ply(path)
        cloud.colors[1, 3] = 0.0
        data = read_ply_bytes(ply_bytes(cloud))
        assert data.colors[1, 3] < 1e-6
        assert data.colors[0, 3] == pytest.approx(0.5)
        assert data.records["opacity"][1] == pytest.approx(HIDDEN_OPACITY)

    def test_memory_cloud_round_trip(self):
        cloud = SplatCloud(
            centers=[[0.0, 1.0, 2.0]],
            colors=[[0.2, 0.4, 0.6, 0.8]],
            scales=[[0.01, 0.02, 0.03]],
            rotations=[[0.0, np.sqrt(0.5), 0.0, np.sqrt(0.5)]],
        )
        back = read_ply_bytes(ply_bytes(cloud))
        np.testing.assert_allclose(back.centers, cloud.centers)
        np.testing.assert_allclose(back.colors, cloud.colors, atol=1e-5)
        np.testing.assert_allclose(back.scales, cloud.scales, rtol=1e-5)
        np.testing.assert_allclose(back.rotations, cloud.rotations, atol=1e-6)

    def test_debug_colors_replace_base_color(self, tmp_path):
        path = tmp_path / "in.ply"
        _write(path, _make_records())
        cloud = read_ply(path)
        cloud.debug_colors = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        out = tmp_path / "debug.ply"
        write_ply(cloud, out, debug_colors=True)
        back = read_ply(out)
        np.testing.assert_allclose(back.colors[:, :3], cloud.debug_colors, atol=1e-6)
        np.testing.assert_allclose(back.colors[:, 3], 0.5, atol=1e-6)
        # The scan colors themselves are untouched
        assert read_ply_bytes(ply_bytes(cloud)).colors[0, 0] == pytest.approx(1.0)

    def test_debug_colors_uchar_cloud(self):
        rec = np.zeros(2, dtype=[("x", "f4"), ("y", "f4"), ("z", "f4"),
                                 ("red", "u1"), ("green", "u1"), ("blue", "u1")])
        buf = io.BytesIO()
        PlyData([PlyElement.describe(rec, "vertex")]).write(buf)
        cloud = read_ply_bytes(buf.getvalue())
        cloud.debug_colors = np.array([[1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
        out = io.BytesIO()
        write_ply(cloud, out, debug_colors=True)
        np.testing.assert_allclose(read_ply_bytes(out.getvalue()).colors[:, :3],
                                   cloud.debug_colors)

    def test_debug_colors_require_classification(self):
        cloud = read_ply_bytes(ply_bytes(SplatCloud(
            centers=[[0.0, 0.0, 0.0]], colors=[[0.5, 0.5, 0.5, 1.0]],
            scales=[[0.01, 0.01, 0.01]], rotations=[[0.0, 0.0, 0.0, 1.0]])))
        with pytest.raises(ValueError):
            records_from_cloud(cloud, debug_colors=True)
