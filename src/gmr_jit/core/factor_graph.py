# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Factor graph engine for GMR-JIT.

This module implements the structure every optimization in the pipeline is
built on: a dynamically grown factor graph capable of producing JIT-compiled
residual functions. These serve as inputs to the Gauss–Newton
solvers inside `optimization/solvers.py`.

The FactorGraph stores:
    - Variables (nodes in the optimization graph)
    - Factors (constraints between variables)
    - Registered residual functions (by factor type)

Key Features
------------
• JIT-compiled residual graph
    The graph is converted into a single fused residual function
    `r(x) : ℝ^N → ℝ^M`, where N = total variable DOFs.

• Automatic Jacobians
    Since `r(x)` is written in JAX, Jacobians are derived via autodiff.

• Append-only growth
    Variables and factors are only ever added. Re-adding an existing id is
    an error at this level; idempotent declaration is handled one layer up
    by `slam.pose_graph.PoseGraph`.

Primary Methods
---------------
pack_state()
    Concatenates all variable values into a single flat JAX array.

unpack_state(x)
    Splits a flat state vector back into per-variable blocks.

build_residual_function()
    Returns a JIT-compiled residual function.
"""


from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Callable, Tuple

import jax
import jax.numpy as jnp

from .types import NodeId, FactorId, Variable, Factor


# Type aliases for clarity
ResidualFn = Callable[[jnp.ndarray, Dict[str, jnp.ndarray]], jnp.ndarray]
StateIndex = Dict[NodeId, Tuple[int, int]]


@dataclass
class FactorGraph:
    """
    Abstract factor graph.

    - variables: mapping from NodeId -> Variable
    - factors: mapping from FactorId -> Factor
    - residual_fns: mapping factor.type -> callable that computes residuals

    We maintain a single flattened state vector for optimization.
    """
    variables: Dict[NodeId, Variable] = field(default_factory=dict)
    factors: Dict[FactorId, Factor] = field(default_factory=dict)
    residual_fns: Dict[str, ResidualFn] = field(default_factory=dict)

    def add_variable(self, var: Variable) -> None:
        if var.id in self.variables:
            raise ValueError(f"Variable {var.id} already exists in the graph")
        self.variables[var.id] = var

    def add_factor(self, factor: Factor) -> None:
        if factor.id in self.factors:
            raise ValueError(f"Factor {factor.id} already exists in the graph")
        for nid in factor.var_ids:
            if nid not in self.variables:
                raise ValueError(
                    f"Factor {factor.id} references unknown variable {nid}"
                )
        self.factors[factor.id] = factor

    def register_residual(self, factor_type: str, fn: ResidualFn) -> None:
        self.residual_fns[factor_type] = fn

    # --- State packing/unpacking ---

    def _build_state_index(self) -> StateIndex:
        """
        Returns a mapping: NodeId -> (start_index, dim)
        All variable values are 1D arrays.
        """
        index: StateIndex = {}
        offset = 0
        for node_id, var in sorted(self.variables.items(), key=lambda x: x[0]):
            dim = jnp.asarray(var.value).shape[0]
            index[node_id] = (offset, dim)
            offset += dim
        return index

    def pack_state(self) -> Tuple[jnp.ndarray, StateIndex]:
        index = self._build_state_index()
        chunks = [
            jnp.asarray(self.variables[node_id].value)
            for node_id in sorted(self.variables.keys())
        ]
        if not chunks:
            return jnp.zeros((0,)), index
        return jnp.concatenate(chunks), index

    def unpack_state(self, x: jnp.ndarray, index: StateIndex) -> Dict[NodeId, jnp.ndarray]:
        result: Dict[NodeId, jnp.ndarray] = {}
        for node_id, (start, dim) in index.items():
            result[node_id] = x[start:start + dim]
        return result

    # --- Objective ---

    def build_residual_function(self):
        """
        Returns a JIT-compiled function r(x) -> residual vector,
        where x is the packed state.

        The index and factor list are frozen at build time, so the function
        must be rebuilt after the graph grows.
        """
        _, index = self.pack_state()
        factors = tuple(self.factors.values())
        residual_fns = dict(self.residual_fns)

        for factor in factors:
            if factor.type not in residual_fns:
                raise ValueError(f"No residual fn registered for factor type '{factor.type}'")

        def residual(x: jnp.ndarray) -> jnp.ndarray:
            var_values = self.unpack_state(x, index)
            res_list = []

            for factor in factors:
                residual_fn = residual_fns[factor.type]
                stacked = jnp.concatenate([var_values[nid] for nid in factor.var_ids])
                res_list.append(jnp.reshape(residual_fn(stacked, factor.params), (-1,)))

            if not res_list:
                return jnp.zeros((0,), dtype=x.dtype)

            return jnp.concatenate(res_list)

        return jax.jit(residual)

