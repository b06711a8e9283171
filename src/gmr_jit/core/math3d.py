# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
SE3 and SO3 manifold operations for GMR-JIT.

This module implements the 3D Lie-group mathematics shared by the pose
graph, the registration engines and the refinement stages:

    • SO(3) exponential & logarithm maps
    • Conversions between 6D pose vectors and 4×4 homogeneous transforms
    • Inversion and relative poses
    • Point-set transformation
    • Small-angle approximations for stable Jacobians

Pose vectors follow the layout ``[tx, ty, tz, wx, wy, wz]``: a translation
followed by a rotation vector (axis-angle). A vector ``v`` encodes the
transform ``T = [[Exp(w), t], [0, 1]]``.

Key Functions
-------------
so3_exp(w) / so3_log(R)
    Rotation vector ↔ rotation matrix.

pose_vec_to_matrix(v) / matrix_to_pose_vec(T)
    6D pose vector ↔ 4×4 transform.

relative_pose_se3(a, b)
    Relative pose ``a⁻¹ ∘ b`` in 6D vector form.

se3_retract_left(pose, delta)
    Left-multiplicative update used by the manifold solver.

rotation_angle_deg(R)
    Magnitude of a rotation in degrees, used by the refinement summary.

Notes
-----
All functions are written in JAX and are safe to JIT and differentiate. The
small-angle and half-turn branches are selected with ``jax.lax.cond`` /
``jax.lax.switch`` so that gradients evaluated at the identity stay finite
and 180° rotations keep their axis.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp


def pose_vec_to_rt(v: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """
    Split a 6D pose vector into translation and rotation-vector (axis-angle).
    v: [tx, ty, tz, wx, wy, wz]
    """
    v = jnp.asarray(v)
    t = v[0:3]
    w = v[3:6]
    return t, w


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    return jnp.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def vee(R: jnp.ndarray) -> jnp.ndarray:
    """
    vee: so(3) -> R^3, inverse of hat.
    Assumes R is a 3x3 skew-symmetric-like matrix.
    """
    return jnp.array([
        R[2, 1] - R[1, 2],
        R[0, 2] - R[2, 0],
        R[1, 0] - R[0, 1],
    ]) / 2.0


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from so(3) (rotation vector) to SO(3).

    Uses Rodrigues' formula with a small-angle fallback.
    """
    w = jnp.asarray(w)
    theta = jnp.linalg.norm(w)
    I = jnp.eye(3, dtype=w.dtype)

    def small_angle() -> jnp.ndarray:
        # First-order approximation for small angles
        return I + hat(w)

    def normal_angle() -> jnp.ndarray:
        k = w / theta
        K = hat(k)
        return I + jnp.sin(theta) * K + (1.0 - jnp.cos(theta)) * (K @ K)

    return jax.lax.cond(theta < 1e-5, small_angle, normal_angle)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Numerically stable logarithm map for SO(3).

    The angle is recovered with atan2 from both the symmetric (trace) and
    antisymmetric parts of R, which keeps small angles accurate in float32.
    Close to a half turn the antisymmetric part vanishes, so the axis is
    read from the symmetric part instead:

        (sym(R) - cos(theta) I) / (1 - cos(theta)) = a a^T

    Returns w in R^3 such that Exp(w) ~ R, with |w| <= pi.
    """
    R = jnp.asarray(R)
    I = jnp.eye(3, dtype=R.dtype)
    s = vee(R - R.T)                       # sin(theta) * axis
    cos_theta = jnp.clip((jnp.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    # double-where keeps the derivative finite when s == 0
    ss = jnp.dot(s, s)
    sin_theta = jnp.where(ss > 0.0, jnp.sqrt(jnp.where(ss > 0.0, ss, 1.0)), 0.0)
    theta = jnp.arctan2(sin_theta, cos_theta)

    def small_angle_case(_) -> jnp.ndarray:
        # R ~ I + hat(w)  =>  w ~ vee(R - I)
        return vee(R - I)

    def general_case(_) -> jnp.ndarray:
        return (theta / jnp.sin(theta)) * s

    def half_turn_case(_) -> jnp.ndarray:
        A = (0.5 * (R + R.T) - cos_theta * I) / (1.0 - cos_theta)
        k = jnp.argmax(jnp.diag(A))
        axis = A[:, k] / jnp.sqrt(jnp.maximum(A[k, k], 1e-12))
        axis = axis / jnp.linalg.norm(axis)
        # Exp(theta a) and Exp(-theta a) only coincide at exactly pi
        axis = jnp.where(jnp.dot(axis, s) < 0.0, -axis, axis)
        return theta * axis

    branch = jnp.where(theta < 1e-5, 0, jnp.where(theta > jnp.pi - 1e-2, 2, 1))
    return jax.lax.switch(branch, (small_angle_case, general_case, half_turn_case), None)


def pose_vec_to_matrix(v: jnp.ndarray) -> jnp.ndarray:
    """Build the 4×4 transform encoded by a 6D pose vector."""
    t, w = pose_vec_to_rt(v)
    T = jnp.eye(4, dtype=t.dtype)
    T = T.at[:3, :3].set(so3_exp(w))
    T = T.at[:3, 3].set(t)
    return T


def matrix_to_pose_vec(T: jnp.ndarray) -> jnp.ndarray:
    """Inverse of :func:`pose_vec_to_matrix`."""
    T = jnp.asarray(T)
    return jnp.concatenate([T[:3, 3], so3_log(T[:3, :3])])


def se3_inverse(T: jnp.ndarray) -> jnp.ndarray:
    """Closed-form inverse of a rigid 4×4 transform."""
    T = jnp.asarray(T)
    R = T[:3, :3]
    t = T[:3, 3]
    Ti = jnp.eye(4, dtype=T.dtype)
    Ti = Ti.at[:3, :3].set(R.T)
    Ti = Ti.at[:3, 3].set(-R.T @ t)
    return Ti


def transform_points(T: jnp.ndarray, points: jnp.ndarray) -> jnp.ndarray:
    """Apply a 4×4 transform to an (N, 3) array of points."""
    T = jnp.asarray(T)
    points = jnp.asarray(points, dtype=T.dtype)
    return points @ T[:3, :3].T + T[:3, 3]


def relative_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Compute relative pose from a to b in 6D vector form.

      T_rel = T_a^{-1} T_b
      t_rel = R_a^T (t_b - t_a)
      w_rel = log(R_a^T R_b)
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    R_rel = Ra.T @ Rb
    w_rel = so3_log(R_rel)
    t_rel = Ra.T @ (tb - ta)

    return jnp.concatenate([t_rel, w_rel])


def se3_retract_left(pose: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """
    Left-multiplicative SE(3) retraction:

        T_new = [ R_d R      R_d t + t_d ]
                [   0             1     ]

    where (t_d, R_d = Exp(w_d)) is the 6D increment ``delta``.
    """
    pose = jnp.asarray(pose)
    delta = jnp.asarray(delta)

    t, w = pose_vec_to_rt(pose)
    dt, dw = pose_vec_to_rt(delta)

    R = so3_exp(w)
    R_d = so3_exp(dw)

    R_new = R_d @ R
    t_new = R_d @ t + dt

    w_new = so3_log(R_new)
    return jnp.concatenate([t_new, w_new])


def rotation_angle_deg(R: jnp.ndarray) -> jnp.ndarray:
    """Absolute rotation angle of a 3×3 rotation matrix, in degrees."""
    return jnp.rad2deg(jnp.linalg.norm(so3_log(R)))

