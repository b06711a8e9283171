# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Nonlinear optimization solvers for GMR-JIT.

This module implements the iterative solvers behind every graph solve in the
refinement pipeline: the per-submap keyframe graphs and the global submap
pose graph. All routines operate on flat state vectors and are built from
JAX primitives so residuals and Jacobians can be JIT-compiled.

Key Concepts
------------
GNConfig
    Dataclass holding configuration for Gauss–Newton:
    - max_iters: maximum number of GN iterations
    - damping: initial Levenberg–Marquardt-style damping
    - max_step_norm: clamp on update step size
    - tol: step-norm threshold below which iteration stops

gauss_newton_manifold(residual_fn, x0, block_slices, manifold_types, cfg)
    Manifold-aware Gauss–Newton:

    For SE3 blocks:
        • The Jacobian is taken with respect to a left perturbation
          ``x_i ⊕ δ`` evaluated at ``δ = 0``
        • The update is applied with `se3_retract_left`

    For Euclidean blocks:
        • Updates are applied additively.

    A step that increases the cost is rejected and the damping is raised,
    so the loop behaves like Levenberg–Marquardt.

Notes
-----
These solvers do not know anything about submaps or keyframes; they rely on
the factor graph and manifold metadata to interpret the state vector.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict

import jax
import jax.numpy as jnp

from gmr_jit.core.math3d import se3_retract_left

ObjectiveFn = Callable[[jnp.ndarray], jnp.ndarray]



@dataclass
class GNConfig:
    max_iters: int = 30
    damping: float = 1e-3       # LM-style diagonal damping
    max_step_norm: float = 1.0  # clamp step size for stability
    tol: float = 1e-6           # stop once the step norm falls below this


def _clamp_step(delta: jnp.ndarray, max_step_norm: float) -> jnp.ndarray:
    step_norm = jnp.linalg.norm(delta)
    scale = jnp.minimum(1.0, max_step_norm / (step_norm + 1e-9))
    return scale * delta


def gauss_newton_manifold(
    residual_fn: ObjectiveFn,
    x0: jnp.ndarray,
    block_slices: Dict,     # NodeId -> slice
    manifold_types: Dict,   # NodeId -> "se3" / "euclidean"
    cfg: GNConfig,
) -> jnp.ndarray:
    """
    Manifold-aware Gauss-Newton / Levenberg-Marquardt.

      - residual_fn: x -> r(x), with x in R^n, r in R^m
      - block_slices: maps each NodeId to a slice in x
      - manifold_types: maps each NodeId to a manifold label:
            - "se3": updated via left SE(3) retraction
            - "euclidean": updated additively
    """
    n = x0.shape[0]
    if n == 0:
        return x0

    blocks = tuple((sl, manifold_types[nid]) for nid, sl in block_slices.items())

    def retract(x: jnp.ndarray, d: jnp.ndarray) -> jnp.ndarray:
        x_new = x
        for sl, mtype in blocks:
            if mtype == "se3":
                x_new = x_new.at[sl].set(se3_retract_left(x[sl], d[sl]))
            else:
                x_new = x_new.at[sl].set(x[sl] + d[sl])
        return x_new

    def lifted(d: jnp.ndarray, x: jnp.ndarray) -> jnp.ndarray:
        return residual_fn(retract(x, d))

    J_fn = jax.jit(jax.jacfwd(lifted, argnums=0))
    retract_fn = jax.jit(retract)
    zeros = jnp.zeros_like(x0)

    x = x0
    r = residual_fn(x)
    cost = float(jnp.sum(r ** 2))
    damping = cfg.damping

    for _ in range(cfg.max_iters):
        J = J_fn(zeros, x)
        H = J.T @ J
        g = J.T @ r

        delta = -jnp.linalg.solve(H + damping * jnp.eye(n, dtype=x.dtype), g)
        delta = _clamp_step(delta, cfg.max_step_norm)

        x_new = retract_fn(x, delta)
        r_new = residual_fn(x_new)
        cost_new = float(jnp.sum(r_new ** 2))

        if cost_new <= cost:
            x, r, cost = x_new, r_new, cost_new
            damping = max(damping / 10.0, 1e-9)
        else:
            damping *= 10.0

        if float(jnp.linalg.norm(delta)) < cfg.tol:
            break

    return x
