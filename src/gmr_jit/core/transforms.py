# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Host-side float64 helpers for 4×4 rigid transforms.

Submap and keyframe poses are stored as mutable ``numpy`` arrays in double
precision so that chains of compositions (alignment, pose read-back) do not
accumulate single-precision error. The JAX versions in `core.math3d` are used
inside solvers and matchers; these are used on the bookkeeping side.

Convention: ``T_A_B`` maps points expressed in frame B into frame A.
"""

from __future__ import annotations

import numpy as np


def Rt_to_T(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = np.asarray(t).reshape(3)
    return T


def inv_T(T: np.ndarray) -> np.ndarray:
    R = T[:3, :3]
    t = T[:3, 3]
    Ti = np.eye(4)
    Ti[:3, :3] = R.T
    Ti[:3, 3] = -R.T @ t
    return Ti


def transform_points_np(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply ``T`` to an (N, 3) array, returning float64 points."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return points @ T[:3, :3].T + T[:3, 3]


def as_transform(T) -> np.ndarray:
    """Validate and copy a 4×4 transform into a float64 array."""
    T = np.array(T, dtype=np.float64)
    if T.shape != (4, 4):
        raise ValueError(f"Expected a 4x4 transform, got shape {T.shape}")
    return T


def rot_z(yaw: float) -> np.ndarray:
    c, s = np.cos(yaw), np.sin(yaw)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])
