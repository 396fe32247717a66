"""Tests for the binding archive, bone partitioning and PLY splitting."""

import json
import zipfile

import numpy as np
import pytest

from splatrig.binding.binder import SplatBinding
from splatrig.constants import ARCHIVE_CLOUD_ENTRY, ARCHIVE_DATA_ENTRY, ARCHIVE_MESH_ENTRY
from splatrig.core.errors import ArchiveFormatError
from splatrig.core.splats import SplatCloud
from splatrig.export.container import (
    BindingArchive,
    load_archive,
    save_archive,
    sort_splats_by_bones,
    split_ply,
    validate_alignment,
)
from splatrig.loaders.ply_io import ply_bytes, read_ply


def _make_cloud(n=5):
    return SplatCloud(
        centers=np.arange(n * 3, dtype=np.float32).reshape(n, 3),
        colors=np.full((n, 4), 0.5),
        scales=np.full((n, 3), 0.01),
        rotations=np.tile([0, 0, 0, 1.0], (n, 1)),
    )


def _make_binding(bone_ids=(5, 3, 5, 7, 3)):
    n = len(bone_ids)
    return SplatBinding(
        bone_ids=np.asarray(bone_ids, dtype=np.int32),
        vertex_ids=np.arange(10, 10 + n, dtype=np.int32),
        offsets=np.arange(n * 3, dtype=np.float64).reshape(n, 3) * 0.01,
    )


def _make_archive(bone_ids=(5, 3, 5, 7, 3)):
    return BindingArchive(
        mesh_bytes=b"glTF-mesh",
        cloud_bytes=ply_bytes(_make_cloud(len(bone_ids))),
        model_scale=1.25,
        bone_operations=[{"boneName": "hips", "position": {"x": 0.0, "y": 0.1, "z": 0.0}}],
        gs_quaternion=[0.0, 0.0, 1.0, 0.0],
        gs_position=[0.1, -0.9, 0.0],
        binding=_make_binding(bone_ids),
    )


def _write_zip(path, entries):
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)


class TestArchive:
    def test_round_trip(self, tmp_path):
        path = save_archive(_make_archive(), tmp_path / "avatar.gvrm")
        with zipfile.ZipFile(path) as zf:
            assert set(zf.namelist()) == {ARCHIVE_MESH_ENTRY, ARCHIVE_CLOUD_ENTRY,
                                          ARCHIVE_DATA_ENTRY}

        back = load_archive(path)
        assert back.mesh_bytes == b"glTF-mesh"
        assert back.model_scale == 1.25
        assert back.gs_quaternion == [0.0, 0.0, 1.0, 0.0]
        assert back.bone_operations[0]["boneName"] == "hips"
        np.testing.assert_array_equal(back.binding.bone_ids, [5, 3, 5, 7, 3])
        np.testing.assert_array_equal(back.binding.vertex_ids, [10, 11, 12, 13, 14])
        np.testing.assert_allclose(back.binding.offsets, _make_binding().offsets)
        assert len(back.load_cloud()) == 5

    def test_metadata_is_flat(self):
        meta = _make_archive().metadata()
        assert len(meta["splatRelativePoses"]) == 15
        assert meta["splatRelativePoses"][3:6] == pytest.approx([0.03, 0.04, 0.05])
        json.dumps(meta)

    def test_legacy_offsets_key(self, tmp_path):
        meta = _make_archive().metadata()
        meta["relativePoses"] = meta.pop("splatRelativePoses")
        del meta["modelScale"], meta["gsQuaternion"]
        path = tmp_path / "old.gvrm"
        _write_zip(path, {ARCHIVE_MESH_ENTRY: b"m", ARCHIVE_CLOUD_ENTRY: b"c",
                          ARCHIVE_DATA_ENTRY: json.dumps(meta)})
        back = load_archive(path)
        assert back.splat_count == 5
        assert back.model_scale == 1.0
        assert back.gs_quaternion == [0.0, 0.0, 0.0, 1.0]

    def test_misaligned_arrays_not_saved(self, tmp_path):
        archive = _make_archive()
        archive.binding.vertex_ids = archive.binding.vertex_ids[:3]
        with pytest.raises(ArchiveFormatError):
            save_archive(archive, tmp_path / "bad.gvrm")

    def test_missing_entry(self, tmp_path):
        path = tmp_path / "partial.gvrm"
        _write_zip(path, {ARCHIVE_MESH_ENTRY: b"m", ARCHIVE_DATA_ENTRY: "{}"})
        with pytest.raises(ArchiveFormatError, match="model.ply"):
            load_archive(path)

    def test_not_a_zip(self, tmp_path):
        path = tmp_path / "junk.gvrm"
        path.write_bytes(b"not a zip at all")
        with pytest.raises(ArchiveFormatError):
            load_archive(path)

    def test_bad_json(self, tmp_path):
        path = tmp_path / "badjson.gvrm"
        _write_zip(path, {ARCHIVE_MESH_ENTRY: b"m", ARCHIVE_CLOUD_ENTRY: b"c",
                          ARCHIVE_DATA_ENTRY: "{not json"})
        with pytest.raises(ArchiveFormatError):
            load_archive(path)

    def test_no_binding_arrays(self, tmp_path):
        path = tmp_path / "empty.gvrm"
        _write_zip(path, {ARCHIVE_MESH_ENTRY: b"m", ARCHIVE_CLOUD_ENTRY: b"c",
                          ARCHIVE_DATA_ENTRY: json.dumps({"modelScale": 1.0})})
        with pytest.raises(ArchiveFormatError, match="binding arrays"):
            load_archive(path)


class TestValidateAlignment:
    def test_aligned(self):
        validate_alignment([1, 2], [3, 4], [0.0] * 6, splat_count=2)

    @pytest.mark.parametrize("bones, verts, offsets", [
        ([1, 2], [3], [0.0] * 6),
        ([1, 2], [3, 4], [0.0] * 5),
        ([1, 2], [3, 4], [0.0] * 9),
    ])
    def test_misaligned(self, bones, verts, offsets):
        with pytest.raises(ArchiveFormatError):
            validate_alignment(bones, verts, offsets)

    def test_cloud_size_mismatch(self):
        with pytest.raises(ArchiveFormatError, match="cloud holds 3"):
            validate_alignment([1, 2], [3, 4], [0.0] * 6, splat_count=3)


class TestPartition:
    def test_groups_in_first_seen_order(self):
        part = sort_splats_by_bones(_make_binding())
        assert part.scene_splat_indices == {0: [0, 2], 1: [1, 4], 2: [3]}
        assert part.bone_scene_map == {5: 0, 3: 1, 7: 2}
        np.testing.assert_array_equal(part.order, [0, 2, 1, 4, 3])

    def test_binding_reordered(self):
        binding = _make_binding()
        part = sort_splats_by_bones(binding)
        np.testing.assert_array_equal(part.binding.bone_ids, [5, 5, 3, 3, 7])
        np.testing.assert_array_equal(part.binding.vertex_ids, [10, 12, 11, 14, 13])
        np.testing.assert_allclose(part.binding.offsets, binding.offsets[[0, 2, 1, 4, 3]])

    def test_empty(self):
        part = sort_splats_by_bones(_make_binding(()))
        assert part.scene_splat_indices == {}
        assert len(part.order) == 0


def test_split_ply(tmp_path):
    cloud = _make_cloud()
    part = sort_splats_by_bones(_make_binding())
    paths = split_ply(cloud, part, tmp_path / "groups", stem="avatar")
    assert [p.name for p in paths] == ["avatar_0.ply", "avatar_1.ply", "avatar_2.ply"]
    first = read_ply(paths[0])
    np.testing.assert_allclose(first.centers, cloud.centers[[0, 2]])
    assert len(read_ply(paths[2])) == 1
