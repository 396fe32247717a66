"""Tests for avatar scaling and cloud placement."""

import numpy as np
import pytest

from splatrig.calibration.calibrator import CalibrationResult
from splatrig.calibration.placement import (
    default_placement,
    hide_far_background,
    orient,
    place,
    tilt,
)
from splatrig.core.math_utils import quat_rotate_vec3, transform_points, vec3


def _make_calibration(centroid=(0.4, 0.3), head=None, floor=0.01, ceiling=1.76):
    head = centroid if head is None else head
    return CalibrationResult(
        floor_height=floor,
        ceiling_height=ceiling,
        centroid_xz=np.array(centroid, dtype=np.float64),
        head_centroid_xz=np.array(head, dtype=np.float64),
        search_radius_xz=0.3,
    )


class TestPlace:
    def test_scale_matches_body_height(self):
        p = place(_make_calibration(), mesh_height=1.6)
        assert p.model_scale == pytest.approx(1.75 / 1.65)
        assert p.ground == pytest.approx(-0.8 * 1.75 / 1.65)
        np.testing.assert_allclose(p.model_position, [0.0, p.ground, 0.02])

    def test_y_down_feet_land_on_ground(self):
        cal = _make_calibration()
        p = place(cal, mesh_height=1.6, up_sign=-1)
        np.testing.assert_allclose(p.gs_quaternion, [0, 0, 1, 0])
        np.testing.assert_allclose(p.gs_position, [0.4, p.ground - 0.01, -0.3])
        feet = transform_points(p.gs_matrix, [vec3(0.4, -0.01, 0.3)])[0]
        np.testing.assert_allclose(feet, [0.0, p.ground, 0.0], atol=1e-12)

    def test_y_up_cloud(self):
        p = place(_make_calibration(), mesh_height=1.6, up_sign=1)
        np.testing.assert_allclose(p.gs_quaternion, [0, 0, 0, 1])
        feet = transform_points(p.gs_matrix, [vec3(0.4, 0.01, 0.3)])[0]
        np.testing.assert_allclose(feet, [0.0, p.ground, 0.0], atol=1e-12)

    def test_skeleton_only_ground(self):
        p = place(_make_calibration(), mesh_height=0.0, skeleton_only=True)
        assert p.model_scale == pytest.approx(1.75 / 2.05)
        assert p.ground == pytest.approx(-p.model_scale)

    def test_scale_override(self):
        p = place(_make_calibration(), mesh_height=1.6, model_scale=2.0)
        assert p.model_scale == 2.0
        assert p.ground == pytest.approx(-1.6)

    def test_legacy_facing_turns_avatar(self):
        p = place(_make_calibration(), mesh_height=1.6, legacy_facing=True)
        forward = quat_rotate_vec3(p.model_quaternion, vec3(0, 0, 1))
        np.testing.assert_allclose(forward, [0, 0, -1], atol=1e-12)

    def test_model_matrix_scales(self):
        p = place(_make_calibration(), mesh_height=1.6, model_scale=2.0)
        np.testing.assert_allclose(np.linalg.det(p.model_matrix[:3, :3]), 8.0)


class TestDefaultPlacement:
    def test_unit_scale(self):
        p = default_placement(1.6)
        assert p.model_scale == 1.0
        assert p.ground == pytest.approx(-0.8)
        np.testing.assert_allclose(p.gs_position, 0.0)
        np.testing.assert_allclose(p.gs_quaternion, [0, 0, 1, 0])
        np.testing.assert_allclose(p.model_position, [0.0, -0.8, 0.0])

    def test_given_scale_and_y_up(self):
        p = default_placement(1.6, up_sign=1, model_scale=0.5)
        assert p.ground == pytest.approx(-0.4)
        np.testing.assert_allclose(p.gs_quaternion, [0, 0, 0, 1])


class TestOrient:
    def test_feet_stay_on_axis(self):
        cal = _make_calibration()
        p = place(cal, mesh_height=1.6)
        orient(p, np.pi / 3)
        feet = transform_points(p.gs_matrix, [vec3(0.4, -0.01, 0.3)])[0]
        np.testing.assert_allclose(feet, [0.0, p.ground, 0.0], atol=1e-12)

    def test_quarter_turn(self):
        p = place(_make_calibration(centroid=(0.0, 0.0)), mesh_height=1.6, up_sign=1)
        orient(p, np.pi / 2)
        # Turning by -90 degrees about Y carries +X onto +Z
        moved = transform_points(p.gs_matrix, [vec3(1.0, 0.01, 0.0)])[0]
        np.testing.assert_allclose(moved, [0.0, p.ground, 1.0], atol=1e-12)


class TestTilt:
    def test_upright_when_head_over_feet(self):
        p = place(_make_calibration(), mesh_height=1.6, up_sign=1)
        p.model_position = vec3(0.0, p.ground, 0.0)
        tilt(p, _make_calibration())
        np.testing.assert_allclose(quat_rotate_vec3(p.model_quaternion, vec3(0, 1, 0)),
                                   [0, 1, 0], atol=1e-12)

    def test_leans_toward_head(self):
        cal = _make_calibration(head=(0.5, 0.3))
        p = place(cal, mesh_height=1.6, up_sign=1)
        tilt(p, cal)
        up = quat_rotate_vec3(p.model_quaternion, vec3(0, 1, 0))
        target = np.array([0.1, -2.0 * p.ground, -0.02])
        np.testing.assert_allclose(up, target / np.linalg.norm(target), atol=1e-3)


def test_hide_far_background():
    colors = np.ones((3, 4), dtype=np.float32)
    pts = np.array([[0.4, 5.0, 0.0], [0.6, 0.0, 0.0], [0.0, 0.0, -0.45]])
    far = hide_far_background(colors, pts, (0.0, 0.0), radius=0.5)
    np.testing.assert_array_equal(far, [False, True, False])
    np.testing.assert_allclose(colors[:, 3], [1, 0, 1])
