# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Manifold metadata for SE(3) and Euclidean variables in GMR-JIT.

The optimizer works in a local tangent space while the state lives on a
manifold (SE(3) for poses, ℝⁿ for anything else). This module maps variable
types to their manifold model and splits the packed state vector into
per-variable blocks:

    - `TYPE_TO_MANIFOLD`           (str → {"se3", "euclidean"})
    - `get_manifold_for_var_type`
    - `build_manifold_metadata`    (NodeId → slice, manifold type)

`optimization.solvers.gauss_newton_manifold` consumes the result to decide
which update rule to apply to each block.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

from gmr_jit.core.types import NodeId
from gmr_jit.core.factor_graph import FactorGraph, StateIndex

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "pose_se3": "se3",
}


def get_manifold_for_var_type(var_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(var_type, "euclidean")


def build_manifold_metadata(
    fg: FactorGraph,
    packed_state: Optional[Tuple[object, StateIndex]] = None,
) -> Tuple[Dict[NodeId, slice], Dict[NodeId, str]]:
    """
    Build metadata for manifold-aware solvers:

      - block_slices: NodeId -> slice in the flat state vector
      - manifold_types: NodeId -> 'se3' or 'euclidean'

    If ``packed_state`` (the result of ``fg.pack_state()``) is supplied its
    index is reused instead of packing the graph again.
    """
    if packed_state is None:
        packed_state = fg.pack_state()
    _, index = packed_state

    block_slices: Dict[NodeId, slice] = {}
    manifold_types: Dict[NodeId, str] = {}

    for nid, var in fg.variables.items():
        start, length = index[nid]
        block_slices[nid] = slice(start, start + length)
        manifold_types[nid] = get_manifold_for_var_type(var.type)

    return block_slices, manifold_types
