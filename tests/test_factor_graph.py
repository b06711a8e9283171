from __future__ import annotations

import pytest
import jax.numpy as jnp

from gmr_jit.core.types import NodeId, FactorId, Variable, Factor
from gmr_jit.core.factor_graph import FactorGraph
from gmr_jit.slam.manifold import build_manifold_metadata
from gmr_jit.slam.measurements import between_se3_residual, prior_se3_residual
from gmr_jit.optimization.solvers import GNConfig, gauss_newton_manifold


def euclidean_prior(x, params):
    return x - params["target"]


def test_single_variable_prior():
    """
    One variable x, one prior factor:
        residual = x - target
    The optimum should be x ~= target.
    """
    fg = FactorGraph()

    fg.add_variable(Variable(id=NodeId(0), type="scalar", value=jnp.array([0.0])))
    fg.add_factor(
        Factor(
            id=FactorId(0),
            type="prior",
            var_ids=(NodeId(0),),
            params={"target": jnp.array([2.0])},
        )
    )
    fg.register_residual("prior", euclidean_prior)

    x_init, index = fg.pack_state()
    residual_fn = fg.build_residual_function()
    block_slices, manifold_types = build_manifold_metadata(fg, (x_init, index))
    assert manifold_types[NodeId(0)] == "euclidean"

    x_opt = gauss_newton_manifold(residual_fn, x_init, block_slices, manifold_types, GNConfig())

    assert x_opt.shape == (1,)
    assert float(x_opt[0]) == pytest.approx(2.0, rel=1e-3, abs=1e-3)


def test_se3_prior_plus_between():
    """
    Two SE(3) poses:
      - prior on p0 at identity
      - between p0 -> p1 measuring +1m along x and a 0.2 rad yaw

    The optimum places p1 exactly at the measurement.
    """
    fg = FactorGraph()
    fg.add_variable(Variable(NodeId(0), "pose_se3", jnp.array([0.1, -0.1, 0.0, 0.0, 0.02, 0.0])))
    fg.add_variable(Variable(NodeId(1), "pose_se3", jnp.array([0.7, 0.3, 0.0, 0.0, 0.0, 0.0])))

    meas = jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.2])
    fg.add_factor(Factor(FactorId(0), "prior_se3", (NodeId(0),), {"target": jnp.zeros(6)}))
    fg.add_factor(Factor(FactorId(1), "between_se3", (NodeId(0), NodeId(1)), {"measurement": meas}))
    fg.register_residual("prior_se3", prior_se3_residual)
    fg.register_residual("between_se3", between_se3_residual)

    x_init, index = fg.pack_state()
    block_slices, manifold_types = build_manifold_metadata(fg, (x_init, index))
    assert manifold_types[NodeId(1)] == "se3"

    x_opt = gauss_newton_manifold(
        fg.build_residual_function(), x_init, block_slices, manifold_types, GNConfig(max_iters=50)
    )
    values = fg.unpack_state(x_opt, index)

    assert jnp.allclose(values[NodeId(0)], jnp.zeros(6), atol=1e-4)
    assert jnp.allclose(values[NodeId(1)], meas, atol=1e-4)


def test_duplicate_and_dangling_entries_are_rejected():
    fg = FactorGraph()
    fg.add_variable(Variable(NodeId(0), "scalar", jnp.array([0.0])))
    with pytest.raises(ValueError):
        fg.add_variable(Variable(NodeId(0), "scalar", jnp.array([1.0])))
    with pytest.raises(ValueError):
        fg.add_factor(Factor(FactorId(0), "prior", (NodeId(5),), {"target": jnp.array([0.0])}))


def test_unregistered_factor_type_fails_at_build_time():
    fg = FactorGraph()
    fg.add_variable(Variable(NodeId(0), "scalar", jnp.array([0.0])))
    fg.add_factor(Factor(FactorId(0), "mystery", (NodeId(0),), {}))
    with pytest.raises(ValueError):
        fg.build_residual_function()


def test_empty_graph_packs_to_empty_state():
    fg = FactorGraph()
    x, index = fg.pack_state()
    assert x.shape == (0,)
    assert index == {}
