# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Residual models (measurement factors) for GMR-JIT.

This module defines the measurement-level building blocks used by the
factor graph:

    • Each function here implements a residual:
          r(x; params) ∈ ℝᵏ
      compatible with JAX differentiation and JIT compilation.

    • Factor types in the graph ("prior_se3", "between_se3") are
      mapped to these residual functions via
      `FactorGraph.register_residual`.

1. Priors
---------
    • `prior_se3_residual`:
        Pose prior expressed on the manifold:
            r = target⁻¹ ∘ x
        Used to fix the gauge of the submap pose graph (first submap) and of
        each keyframe graph (first keyframe).

2. Relative Pose Factors
------------------------
    • `between_se3_residual`:
        SE(3) relative pose constraint:
            r = meas⁻¹ ∘ (T_i⁻¹ ∘ T_j)

        Carries sequential submap edges, loop-closure edges and scan-to-map
        registration edges. Only the covariance differs between them.

3. Weighting and Noise Models
-----------------------------
Residuals are whitened with a per-component square-root information vector
derived from a diagonal covariance:

    • `covariance_to_sqrt_info(cov)`:
        Accepts a scalar, a 6-vector diagonal or a 6×6 diagonal matrix and
        returns ``1 / sqrt(diag(cov))``.

    • `_apply_weight(r, params)`:
        Applies a scalar weight or a sqrt-information vector stored under
        ``params["weight"]``.

Notes
-----
When adding a new factor type:

    1. Implement a residual here:
           def my_factor_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray

    2. Register it with the factor graph:
           fg.register_residual("my_factor", my_factor_residual)
"""

from __future__ import annotations
from typing import Dict

import jax.numpy as jnp

from gmr_jit.core.math3d import relative_pose_se3


def _apply_weight(residual: jnp.ndarray, params: dict, key: str = "weight") -> jnp.ndarray:
    """
    Optional weighting of residuals.

    If params[key] is:
      - missing: no change
      - scalar:  r' = sqrt(w) * r          (scalar weight)
      - vector:  r' = w * r                (per-component sqrt-info)
    """
    w = params.get(key, None)
    if w is None:
        return residual

    w = jnp.asarray(w)

    if w.ndim == 0:
        return jnp.sqrt(w) * residual
    else:
        return w * residual


def covariance_to_sqrt_info(cov) -> jnp.ndarray:
    """
    Convert a diagonal covariance into a sqrt-information vector usable by
    `_apply_weight`.

    cov may be a scalar (isotropic), a length-6 diagonal or a 6×6 matrix
    whose diagonal is used.
    """
    c = jnp.asarray(cov, dtype=jnp.float32)
    if c.ndim == 0:
        c = jnp.full((6,), c)
    elif c.ndim == 2:
        c = jnp.diag(c)
    if c.shape != (6,):
        raise ValueError(f"Expected a 6D diagonal covariance, got shape {c.shape}")
    return 1.0 / jnp.sqrt(c)


def prior_se3_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Manifold prior on one 6D pose.

        residual = relative_pose_se3(target, pose)

    which is zero exactly when pose == target.
    """
    r = relative_pose_se3(params["target"], x[:6])
    return _apply_weight(r, params)


def between_se3_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Relative pose constraint between two 6D poses.

    pose_i, pose_j in R^6: [tx, ty, tz, wx, wy, wz]
    measurement in R^6: expected T_i^{-1} T_j in the same vector layout

        residual = relative_pose_se3(measurement, relative_pose_se3(pose_i, pose_j))
    """
    if x.shape[0] != 12:
        raise ValueError("between_se3_residual expects two 6D poses stacked.")

    pose_i = x[:6]
    pose_j = x[6:]

    xi_est = relative_pose_se3(pose_i, pose_j)
    r = relative_pose_se3(params["measurement"], xi_est)
    return _apply_weight(r, params)
