"""Tests for the avatar GLB/VRM parser."""

import numpy as np
import pytest

from splatrig.core.errors import AssetLoadFailure
from splatrig.export.capsule_glb import pack_glb
from splatrig.loaders.glb_loader import (
    node_local_matrix,
    parse_glb_bytes,
    split_glb,
)


def _repack(raw, edit):
    gltf, buf = split_glb(raw)
    edit(gltf)
    return pack_glb(gltf, buf)


class TestParse:
    def test_skeleton(self, avatar_glb, humanoid):
        asset = parse_glb_bytes(avatar_glb)
        sk = asset.skeleton
        assert sk.bone_count == humanoid.bone_count
        assert sk.names[7] == "J_leftHand"
        assert sk.bone_index("leftHand") == 7
        np.testing.assert_array_equal(sk.parents, humanoid.parents)
        np.testing.assert_allclose(sk.pose().bone_positions(), humanoid.pose().bone_positions(),
                                   atol=1e-6)
        assert not asset.legacy_facing

    def test_mesh(self, avatar_glb, body):
        _, expected = body
        asset = parse_glb_bytes(avatar_glb)
        mesh = asset.mesh
        assert mesh.vertex_count == expected.vertex_count
        np.testing.assert_allclose(mesh.positions, expected.positions, atol=1e-6)
        np.testing.assert_array_equal(mesh.skin_indices, expected.skin_indices)
        np.testing.assert_array_equal(mesh.indices, expected.indices)
        assert asset.height == pytest.approx(expected.bounding_height(), abs=1e-5)
        assert asset.raw == avatar_glb

    def test_rest_pose_skins_to_identity(self, avatar_glb):
        asset = parse_glb_bytes(avatar_glb)
        pose = asset.skeleton.pose()
        np.testing.assert_allclose(asset.mesh.skinned_positions(pose), asset.mesh.positions,
                                   atol=1e-5)

    def test_vrm0_faces_backwards(self, avatar_glb_factory):
        asset = parse_glb_bytes(avatar_glb_factory(vrm0=True))
        assert asset.legacy_facing
        assert asset.skeleton.bone_index("rightFoot") == 16

    def test_skeleton_only(self, avatar_glb_factory, caplog):
        asset = parse_glb_bytes(avatar_glb_factory(with_mesh=False))
        assert asset.mesh.is_skeleton_only
        assert "skeleton-only" in caplog.text

    def test_alias_fallback(self, avatar_glb):
        def rename(gltf):
            del gltf["extensions"]
            gltf["nodes"][0]["name"] = "mixamorig:Hips"
            gltf["nodes"][4]["name"] = "mixamorig:Head"

        asset = parse_glb_bytes(_repack(avatar_glb, rename))
        assert asset.skeleton.bone_index("hips") == 0
        assert asset.skeleton.bone_index("head") == 4
        assert asset.skeleton.bone_index("leftHand") is None


class TestFailures:
    def test_bad_magic(self):
        with pytest.raises(AssetLoadFailure) as info:
            parse_glb_bytes(b"x" * 64, name="junk")
        assert "junk" in str(info.value)
        assert "ErrorID 7" in str(info.value)

    def test_truncated(self, avatar_glb):
        with pytest.raises(AssetLoadFailure):
            parse_glb_bytes(avatar_glb[:12])

    def test_no_skin(self, avatar_glb):
        with pytest.raises(AssetLoadFailure):
            parse_glb_bytes(_repack(avatar_glb, lambda g: g.pop("skins")))


def test_node_local_matrix_trs():
    node = {"translation": [1, 2, 3], "rotation": [0, 0, np.sin(np.pi / 4), np.cos(np.pi / 4)],
            "scale": [2, 2, 2]}
    m = node_local_matrix(node)
    np.testing.assert_allclose(m @ [1, 0, 0, 1], [1, 4, 3, 1], atol=1e-12)


def test_node_local_matrix_column_major():
    m = np.eye(4)
    m[:3, 3] = [4, 5, 6]
    node = {"matrix": m.T.ravel().tolist()}
    np.testing.assert_allclose(node_local_matrix(node), m)
