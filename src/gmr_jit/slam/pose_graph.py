# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Keyed SE(3) pose graph: the graph engine used by every refinement stage.

This module defines the *pose graph* abstraction: a thin, typed layer on top
of `core.factor_graph.FactorGraph` that knows about stamped SE(3) poses and
incremental transactions, but nothing about submaps or registration.

Key responsibilities
--------------------
- Own the underlying `FactorGraph` instance and its residual registry.
- Map user-facing keys (stamps) to `NodeId`s, declaring each pose variable
  at most once. Re-declaring an existing key is a silent no-op.
- Commit :class:`~gmr_jit.core.transaction.Transaction` batches with
  :meth:`PoseGraph.update`.
- Re-solve the whole graph with manifold Gauss–Newton on
  :meth:`PoseGraph.optimize` and write the estimate back in place.

:class:`Pose3DTransaction` is a convenience transaction that knows how to
declare pose variables from 4×4 transforms and how to add priors and
relative-pose constraints with diagonal covariances.

Typical use::

    graph = PoseGraph()
    txn = Pose3DTransaction()
    txn.add_pose_variables(stamp0, T_W_0)
    txn.add_pose_prior(stamp0, T_W_0, prior_cov)
    txn.add_pose_variables(stamp1, T_W_1)
    txn.add_pose_constraint(stamp0, stamp1, T_0_1, local_cov)
    graph.update(txn)
    graph.optimize()
    T_W_1_opt = graph.get_pose(stamp1)
"""

from __future__ import annotations

import logging
from typing import Dict, Hashable, Optional, Tuple

import jax.numpy as jnp
import numpy as np

from gmr_jit.core.factor_graph import FactorGraph
from gmr_jit.core.math3d import matrix_to_pose_vec, pose_vec_to_matrix
from gmr_jit.core.transaction import Transaction
from gmr_jit.core.types import Variable, Factor, NodeId, FactorId
from gmr_jit.optimization.solvers import GNConfig, gauss_newton_manifold
from gmr_jit.slam.manifold import build_manifold_metadata
from gmr_jit.slam.measurements import (
    between_se3_residual,
    covariance_to_sqrt_info,
    prior_se3_residual,
)

logger = logging.getLogger(__name__)

POSE_VAR_TYPE = "pose_se3"


class Pose3DTransaction(Transaction):
    """Transaction helpers for stamped SE(3) poses."""

    def add_pose_variables(self, key: Hashable, T: np.ndarray) -> None:
        """Declare the pose variable for ``key`` initialised from a 4×4 transform."""
        self.add_variable(key, POSE_VAR_TYPE, matrix_to_pose_vec(jnp.asarray(T)))

    def add_pose_prior(self, key: Hashable, T: np.ndarray, covariance, source: str = "") -> None:
        self.add_factor(
            "prior_se3",
            (key,),
            {
                "target": matrix_to_pose_vec(jnp.asarray(T)),
                "weight": covariance_to_sqrt_info(covariance),
            },
            source=source,
        )

    def add_pose_constraint(
        self,
        key_i: Hashable,
        key_j: Hashable,
        T_i_j: np.ndarray,
        covariance,
        source: str = "",
    ) -> None:
        """Relative pose ``T_i_j = T_W_i⁻¹ T_W_j`` between two keyed poses."""
        self.add_factor(
            "between_se3",
            (key_i, key_j),
            {
                "measurement": matrix_to_pose_vec(jnp.asarray(T_i_j)),
                "weight": covariance_to_sqrt_info(covariance),
            },
            source=source,
        )


class PoseGraph:
    """Incremental pose graph built on top of :class:`FactorGraph`.

    Variables are created at most once per key, factors are append-only. The
    solver configuration is fixed at construction.
    """

    def __init__(self, cfg: Optional[GNConfig] = None) -> None:
        self.fg = FactorGraph()
        self.cfg = cfg if cfg is not None else GNConfig()
        self.key_to_nid: Dict[Hashable, NodeId] = {}

        self.fg.register_residual("prior_se3", prior_se3_residual)
        self.fg.register_residual("between_se3", between_se3_residual)

    # --- Bookkeeping ---

    @property
    def num_variables(self) -> int:
        return len(self.fg.variables)

    @property
    def num_factors(self) -> int:
        return len(self.fg.factors)

    def has_variable(self, key: Hashable) -> bool:
        return key in self.key_to_nid

    def factors_of_type(self, f_type: str) -> Tuple[Factor, ...]:
        return tuple(f for f in self.fg.factors.values() if f.type == f_type)

    # --- Growth ---

    def add_variable(self, key: Hashable, var_type: str, value: jnp.ndarray) -> NodeId:
        """
        Declare a variable for ``key`` and return its NodeId.

        If ``key`` is already present the existing NodeId is returned and the
        stored value is left untouched.
        """
        if key in self.key_to_nid:
            return self.key_to_nid[key]
        nid = NodeId(len(self.fg.variables))
        self.fg.add_variable(Variable(id=nid, type=var_type, value=jnp.asarray(value)))
        self.key_to_nid[key] = nid
        return nid

    def add_factor(self, f_type: str, keys, params: Dict, source: str = "") -> FactorId:
        missing = [k for k in keys if k not in self.key_to_nid]
        if missing:
            raise ValueError(f"Factor '{f_type}' references undeclared variables: {missing}")
        fid = FactorId(len(self.fg.factors))
        self.fg.add_factor(
            Factor(
                id=fid,
                type=f_type,
                var_ids=tuple(self.key_to_nid[k] for k in keys),
                params=params,
                source=source,
            )
        )
        return fid

    def update(self, transaction: Transaction) -> None:
        """Commit a transaction: declarations first, then factors."""
        for spec in transaction.variables:
            self.add_variable(spec.key, spec.type, spec.value)
        for spec in transaction.factors:
            self.add_factor(spec.type, spec.keys, spec.params, spec.source)

    # --- Solve ---

    def optimize(self) -> None:
        """
        Re-solve every variable given every factor added so far and write the
        estimate back in place.
        """
        if not self.fg.variables:
            return
        if not self.fg.factors:
            logger.debug("Pose graph has no factors, nothing to optimize.")
            return

        x_init, index = self.fg.pack_state()
        residual_fn = self.fg.build_residual_function()
        block_slices, manifold_types = build_manifold_metadata(self.fg, (x_init, index))

        x_opt = gauss_newton_manifold(residual_fn, x_init, block_slices, manifold_types, self.cfg)

        values = self.fg.unpack_state(x_opt, index)
        for nid, val in values.items():
            self.fg.variables[nid].value = val

        logger.debug(
            "Optimized pose graph with %d variables and %d factors",
            self.num_variables,
            self.num_factors,
        )

    # --- Read back ---

    def get_value(self, key: Hashable) -> jnp.ndarray:
        return self.fg.variables[self.key_to_nid[key]].value

    def get_pose(self, key: Hashable) -> np.ndarray:
        """Return the current estimate for ``key`` as a float64 4×4 transform."""
        return np.array(pose_vec_to_matrix(self.get_value(key)), dtype=np.float64)

