from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from gmr_jit.core.transaction import Transaction
from gmr_jit.core.transforms import inv_T
from gmr_jit.core.types import Stamp
from gmr_jit.slam.pose_graph import POSE_VAR_TYPE, PoseGraph, Pose3DTransaction

from conftest import pose, relative_error


def test_transaction_deduplicates_declarations_and_merges():
    a = Transaction()
    a.add_variable("x", "scalar", jnp.array([1.0]))
    a.add_variable("x", "scalar", jnp.array([5.0]))
    assert len(a.variables) == 1
    assert float(a.variables[0].value[0]) == pytest.approx(1.0)

    b = Transaction()
    b.add_variable("x", "scalar", jnp.array([2.0]))
    b.add_variable("y", "scalar", jnp.array([3.0]))
    b.add_factor("prior", ("y",), {"target": jnp.array([0.0])})

    a.merge(b)
    assert [v.key for v in a.variables] == ["x", "y"]
    assert len(a.factors) == 1
    assert len(a) == 3
    assert not a.empty()
    assert Transaction().empty()


def test_add_variable_is_idempotent():
    """Re-declaring a key returns the existing node and keeps its value."""
    graph = PoseGraph()
    s0 = Stamp(0)
    nid_a = graph.add_variable(s0, POSE_VAR_TYPE, jnp.zeros(6))
    nid_b = graph.add_variable(s0, POSE_VAR_TYPE, jnp.ones(6))

    assert nid_a == nid_b
    assert graph.num_variables == 1
    assert jnp.allclose(graph.get_value(s0), jnp.zeros(6))


def test_factor_with_undeclared_key_raises():
    graph = PoseGraph()
    txn = Pose3DTransaction()
    txn.add_pose_variables(Stamp(0), np.eye(4))
    txn.add_pose_constraint(Stamp(0), Stamp(1), pose(x=1.0), 1e-3)
    with pytest.raises(ValueError):
        graph.update(txn)


def test_optimize_without_factors_is_noop():
    graph = PoseGraph()
    graph.optimize()

    txn = Pose3DTransaction()
    txn.add_pose_variables(Stamp(0), pose(x=2.0))
    graph.update(txn)
    graph.optimize()
    assert np.allclose(graph.get_pose(Stamp(0)), pose(x=2.0), atol=1e-6)


def test_loop_closure_distributes_error():
    """
    Square trajectory with drifting odometry. The loop closure between the
    last and first pose pulls the last pose back towards the truth, while the
    prior keeps the first pose fixed.
    """
    T_true = [pose(), pose(x=2.0), pose(x=2.0, y=2.0, yaw_deg=90.0), pose(y=2.0, yaw_deg=180.0)]
    drift = pose(x=0.1, yaw_deg=2.0)

    T_odom = [T_true[0]]
    for i in range(1, len(T_true)):
        T_odom.append(T_odom[-1] @ inv_T(T_true[i - 1]) @ T_true[i] @ drift)

    stamps = [Stamp(i) for i in range(len(T_true))]
    txn = Pose3DTransaction()
    txn.add_pose_variables(stamps[0], T_odom[0])
    txn.add_pose_prior(stamps[0], T_odom[0], 1e-6)
    for i in range(1, len(stamps)):
        txn.add_pose_variables(stamps[i], T_odom[i])
        txn.add_pose_constraint(stamps[i - 1], stamps[i], inv_T(T_odom[i - 1]) @ T_odom[i], 1e-2)
    txn.add_pose_constraint(stamps[0], stamps[3], inv_T(T_true[0]) @ T_true[3], 1e-4)

    graph = PoseGraph()
    graph.update(txn)
    assert len(graph.factors_of_type("between_se3")) == 4
    assert len(graph.factors_of_type("prior_se3")) == 1

    err_before, _ = relative_error(T_true[3], T_odom[3])
    graph.optimize()
    err_after, _ = relative_error(T_true[3], graph.get_pose(stamps[3]))
    err_anchor, rot_anchor = relative_error(T_true[0], graph.get_pose(stamps[0]))

    assert err_after < 0.2 * err_before
    assert err_anchor < 1.0
    assert rot_anchor < 0.05


def test_half_turn_pose_survives_optimization():
    """A pose facing backwards keeps its 180° yaw through declaration and optimize()."""
    s0, s1 = Stamp(0), Stamp(1)
    T1 = pose(x=-1.0, yaw_deg=180.0)
    txn = Pose3DTransaction()
    txn.add_pose_variables(s0, np.eye(4))
    txn.add_pose_prior(s0, np.eye(4), 1e-6)
    txn.add_pose_variables(s1, T1)
    txn.add_pose_constraint(s0, s1, T1, 1e-3)

    graph = PoseGraph()
    graph.update(txn)
    assert np.allclose(graph.get_pose(s1), T1, atol=1e-5)

    graph.optimize()
    dt_mm, dR_deg = relative_error(T1, graph.get_pose(s1))
    assert dt_mm < 1.0
    assert dR_deg < 0.01


def test_loop_closure_converges_across_half_turn():
    """
    Poses along -x facing backwards. The drifted initial yaws straddle 180°,
    so the solver has to move estimates across the +pi / -pi seam.
    """
    T_true = [pose(x=-float(i), yaw_deg=180.0) for i in range(4)]
    T_init = [T_true[0]] + [T_true[i] @ pose(y=0.05 * i, yaw_deg=0.5 * i * (-1) ** i) for i in range(1, 4)]

    stamps = [Stamp(i) for i in range(4)]
    txn = Pose3DTransaction()
    txn.add_pose_variables(stamps[0], T_init[0])
    txn.add_pose_prior(stamps[0], T_true[0], 1e-6)
    for i in range(1, 4):
        txn.add_pose_variables(stamps[i], T_init[i])
        txn.add_pose_constraint(stamps[i - 1], stamps[i], inv_T(T_true[i - 1]) @ T_true[i], 1e-3)
    txn.add_pose_constraint(stamps[0], stamps[3], inv_T(T_true[0]) @ T_true[3], 1e-4)

    graph = PoseGraph()
    graph.update(txn)
    graph.optimize()

    for stamp, T in zip(stamps, T_true):
        dt_mm, dR_deg = relative_error(T, graph.get_pose(stamp))
        assert dt_mm < 5.0
        assert dR_deg < 0.05


def test_factors_remember_their_source():
    txn = Pose3DTransaction()
    txn.add_pose_variables(Stamp(0), np.eye(4))
    txn.add_pose_variables(Stamp(1), pose(x=1.0))
    txn.add_pose_prior(Stamp(0), np.eye(4), 1e-6, source="anchor")
    txn.add_pose_constraint(Stamp(0), Stamp(1), pose(x=1.0), 1e-3, source="odometry")

    graph = PoseGraph()
    graph.update(txn)
    assert [f.source for f in graph.factors_of_type("prior_se3")] == ["anchor"]
    assert [f.source for f in graph.factors_of_type("between_se3")] == ["odometry"]
