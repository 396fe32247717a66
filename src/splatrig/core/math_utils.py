"""Rigid-transform helpers shared by the skeleton, placement and deformer.

Points and vectors are float64 numpy arrays, quaternions are ``[x, y, z, w]``
and 4x4 matrices act on column vectors (``m @ v``).  The ``batch_*`` variants
work on stacked arrays, one row per splat.
"""

import numpy as np
from numpy.typing import NDArray

Vec3 = NDArray[np.float64]
Mat3 = NDArray[np.float64]
Mat4 = NDArray[np.float64]
Quat = NDArray[np.float64]  # [x, y, z, w]

_EPS = 1e-10


def vec3(x: float = 0.0, y: float = 0.0, z: float = 0.0) -> Vec3:
    return np.array([x, y, z], dtype=np.float64)


def deg_to_rad(degrees: float) -> float:
    return degrees * np.pi / 180.0


# ── Matrices ──────────────────────────────────────────────────────────

def mat4_compose(position: Vec3, quaternion: Quat, scale: Vec3) -> Mat4:
    """T * R * S as one 4x4 matrix."""
    m = np.eye(4, dtype=np.float64)
    rot = batch_quat_to_mat3(np.asarray(quaternion, dtype=np.float64)[np.newaxis])[0]
    m[:3, :3] = rot * np.asarray(scale, dtype=np.float64)
    m[:3, 3] = position
    return m


def mat4_decompose(m: Mat4) -> tuple[Vec3, Quat, Vec3]:
    """Inverse of :func:`mat4_compose` for matrices without shear."""
    position = m[:3, 3].copy()
    scale = np.linalg.norm(m[:3, :3], axis=0)
    rot = m[:3, :3] / np.where(scale < 1e-12, 1.0, scale)
    return position, mat3_to_quat(rot), scale


def transform_points(m: Mat4, points: NDArray) -> NDArray:
    """Apply one affine matrix to an (N, 3) array of points."""
    pts = np.asarray(points, dtype=np.float64)
    return pts @ m[:3, :3].T + m[:3, 3]


# ── Quaternions ───────────────────────────────────────────────────────

def quat_identity() -> Quat:
    return np.array([0.0, 0.0, 0.0, 1.0], dtype=np.float64)


def quat_from_euler(x: float, y: float, z: float) -> Quat:
    """Intrinsic X-then-Y-then-Z rotation (radians), i.e. ``qx * qy * qz``."""
    cx, sx = np.cos(x / 2), np.sin(x / 2)
    cy, sy = np.cos(y / 2), np.sin(y / 2)
    cz, sz = np.cos(z / 2), np.sin(z / 2)
    return np.array([
        sx * cy * cz + cx * sy * sz,
        cx * sy * cz - sx * cy * sz,
        cx * cy * sz + sx * sy * cz,
        cx * cy * cz - sx * sy * sz,
    ], dtype=np.float64)


def quat_from_axis_angle(axis: Vec3, angle: float) -> Quat:
    axis = np.asarray(axis, dtype=np.float64)
    n = np.linalg.norm(axis)
    if n < _EPS:
        return quat_identity()
    xyz = axis / n * np.sin(angle / 2)
    return np.append(xyz, np.cos(angle / 2))


def quat_from_unit_vectors(v_from: Vec3, v_to: Vec3) -> Quat:
    """Shortest-arc rotation taking unit vector ``v_from`` onto ``v_to``."""
    r = float(np.dot(v_from, v_to)) + 1.0
    if r < 1e-8:
        # Antiparallel: half turn about any axis perpendicular to v_from
        if abs(v_from[0]) > abs(v_from[2]):
            q = np.array([-v_from[1], v_from[0], 0.0, 0.0], dtype=np.float64)
        else:
            q = np.array([0.0, -v_from[2], v_from[1], 0.0], dtype=np.float64)
    else:
        c = np.cross(v_from, v_to)
        q = np.array([c[0], c[1], c[2], r], dtype=np.float64)
    return quat_normalize(q)


def quat_multiply(a: Quat, b: Quat) -> Quat:
    """Hamilton product ``a * b`` (apply b, then a)."""
    av, aw = np.asarray(a[:3], dtype=np.float64), a[3]
    bv, bw = np.asarray(b[:3], dtype=np.float64), b[3]
    xyz = aw * bv + bw * av + np.cross(av, bv)
    return np.append(xyz, aw * bw - np.dot(av, bv))


def quat_conjugate(q: Quat) -> Quat:
    return np.array([-q[0], -q[1], -q[2], q[3]], dtype=np.float64)


def quat_normalize(q: Quat) -> Quat:
    n = np.linalg.norm(q)
    if n < _EPS:
        return quat_identity()
    return q / n


def quat_rotate_vec3(q: Quat, v: Vec3) -> Vec3:
    t = 2.0 * np.cross(q[:3], v)
    return v + q[3] * t + np.cross(q[:3], t)


def mat3_to_quat(m: Mat3) -> Quat:
    return batch_mat3_to_quat(m[np.newaxis])[0]


# ── Per-splat batches ─────────────────────────────────────────────────

def batch_mat3_to_quat(R: NDArray) -> NDArray:
    """(N, 3, 3) rotations to (N, 4) quaternions.

    Shepperd's method: each row takes the branch of its largest diagonal
    term (or the trace), so half-turn rotations stay well conditioned.
    """
    q = np.zeros((len(R), 4), dtype=np.float64)
    trace = np.trace(R, axis1=1, axis2=2)
    d0, d1, d2 = R[:, 0, 0], R[:, 1, 1], R[:, 2, 2]

    m = trace > 0
    if m.any():
        s = 2.0 * np.sqrt(trace[m] + 1.0)
        q[m] = np.stack([
            (R[m, 2, 1] - R[m, 1, 2]) / s,
            (R[m, 0, 2] - R[m, 2, 0]) / s,
            (R[m, 1, 0] - R[m, 0, 1]) / s,
            0.25 * s,
        ], axis=1)
    done = m

    m = ~done & (d0 > d1) & (d0 > d2)
    if m.any():
        s = 2.0 * np.sqrt(1.0 + d0[m] - d1[m] - d2[m])
        q[m] = np.stack([
            0.25 * s,
            (R[m, 0, 1] + R[m, 1, 0]) / s,
            (R[m, 0, 2] + R[m, 2, 0]) / s,
            (R[m, 2, 1] - R[m, 1, 2]) / s,
        ], axis=1)
    done = done | m

    m = ~done & (d1 > d2)
    if m.any():
        s = 2.0 * np.sqrt(1.0 + d1[m] - d0[m] - d2[m])
        q[m] = np.stack([
            (R[m, 0, 1] + R[m, 1, 0]) / s,
            0.25 * s,
            (R[m, 1, 2] + R[m, 2, 1]) / s,
            (R[m, 0, 2] - R[m, 2, 0]) / s,
        ], axis=1)
    done = done | m

    m = ~done
    if m.any():
        s = 2.0 * np.sqrt(1.0 + d2[m] - d0[m] - d1[m])
        q[m] = np.stack([
            (R[m, 0, 2] + R[m, 2, 0]) / s,
            (R[m, 1, 2] + R[m, 2, 1]) / s,
            0.25 * s,
            (R[m, 1, 0] - R[m, 0, 1]) / s,
        ], axis=1)
    return q


def batch_quat_normalize(q: NDArray) -> NDArray:
    """Unit-length rows; degenerate rows become the identity rotation."""
    n = np.linalg.norm(q, axis=1, keepdims=True)
    out = q / np.where(n < _EPS, 1.0, n)
    out[n[:, 0] < _EPS] = quat_identity()
    return out


def batch_quat_to_mat3(q: NDArray) -> NDArray:
    """(N, 4) quaternions to (N, 3, 3) rotation matrices."""
    x, y, z, w = q[:, 0], q[:, 1], q[:, 2], q[:, 3]
    xx, yy, zz = x * x, y * y, z * z
    xy, xz, yz = x * y, x * z, y * z
    wx, wy, wz = w * x, w * y, w * z
    return np.stack([
        np.stack([1 - 2 * (yy + zz), 2 * (xy - wz), 2 * (xz + wy)], axis=-1),
        np.stack([2 * (xy + wz), 1 - 2 * (xx + zz), 2 * (yz - wx)], axis=-1),
        np.stack([2 * (xz - wy), 2 * (yz + wx), 1 - 2 * (xx + yy)], axis=-1),
    ], axis=-2)
