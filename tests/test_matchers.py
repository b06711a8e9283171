from __future__ import annotations

import numpy as np
import pytest

from gmr_jit.core.errors import ConfigurationError
from gmr_jit.core.transforms import inv_T, transform_points_np
from gmr_jit.registration.matchers import (
    FeatureMatcher,
    IcpMatcher,
    IcpParams,
    MatcherType,
    create_matcher,
    get_type_from_config,
)

from conftest import pose, relative_error, split_features


def test_icp_recovers_known_offset(world_cloud):
    """
    The target is the reference moved by a small rigid offset; the correction
    found by ICP must undo it.
    """
    T_offset = pose(x=0.05, y=-0.04, yaw_deg=0.5)
    target = transform_points_np(T_offset, world_cloud)

    matcher = IcpMatcher()
    matcher.set_ref(world_cloud)
    matcher.set_target(target)
    assert matcher.match()

    dt_mm, dR_deg = relative_error(inv_T(T_offset), matcher.get_result())
    assert dt_mm < 5.0
    assert dR_deg < 0.05
    assert matcher.last_result.inlier_ratio > 0.9


def test_apply_result_composes_correction_with_initial_guess(world_cloud):
    T_REF_TGT_true = pose(x=1.0, yaw_deg=5.0)
    T_REF_TGT_init = pose(x=1.04, y=0.03, yaw_deg=5.4)
    tgt_local = transform_points_np(inv_T(T_REF_TGT_true), world_cloud)

    matcher = create_matcher({"type": "ICP"})
    matcher.set_ref(world_cloud)
    matcher.set_target(transform_points_np(T_REF_TGT_init, tgt_local))
    assert matcher.match()

    dt_mm, dR_deg = relative_error(T_REF_TGT_true, matcher.apply_result(T_REF_TGT_init))
    assert dt_mm < 5.0
    assert dR_deg < 0.05


def test_failed_match_leaves_identity():
    """Disjoint clouds produce no inliers; the initial guess is carried forward."""
    rng = np.random.default_rng(3)
    ref = rng.uniform(-1.0, 1.0, size=(200, 3))
    target = ref + np.array([50.0, 0.0, 0.0])

    matcher = IcpMatcher()
    matcher.set_ref(ref)
    matcher.set_target(target)
    assert not matcher.match()
    assert np.allclose(matcher.get_result(), np.eye(4))

    T_init = pose(x=3.0)
    assert np.allclose(matcher.apply_result(T_init), T_init)


def test_match_requires_both_clouds():
    matcher = IcpMatcher()
    matcher.set_ref(np.zeros((10, 3)))
    with pytest.raises(ValueError):
        matcher.match()


def test_feature_matcher_only_pairs_shared_labels(world_cloud):
    T_offset = pose(x=-0.05, z=0.02, yaw_deg=-0.5)
    ref = split_features(world_cloud)
    target = {label: transform_points_np(T_offset, pts) for label, pts in ref.items()}
    target["corners"] = np.zeros((5, 3))

    matcher = FeatureMatcher()
    matcher.set_ref(ref)
    matcher.set_target(target)
    assert matcher._labels() == ["edges", "surfaces"]
    assert matcher.match()

    dt_mm, dR_deg = relative_error(inv_T(T_offset), matcher.get_result())
    assert dt_mm < 5.0
    assert dR_deg < 0.05


def test_feature_matcher_rejects_raw_cloud():
    with pytest.raises(TypeError):
        FeatureMatcher().set_ref(np.zeros((10, 3)))


def test_factory_selects_variant_and_params():
    assert isinstance(create_matcher(None), IcpMatcher)
    m = create_matcher({"type": "feature", "max_iterations": 7})
    assert isinstance(m, FeatureMatcher)
    assert m.matcher_type == MatcherType.FEATURE
    assert m.params.max_iterations == 7
    assert IcpParams.from_config({"min_inlier_ratio": "0.25"}).min_inlier_ratio == pytest.approx(0.25)


def test_invalid_matcher_type_is_a_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError):
        get_type_from_config({"type": "NDT"})

    bad = tmp_path / "matcher.json"
    bad.write_text('{"type": "GICP"}')
    with pytest.raises(ConfigurationError):
        create_matcher(str(bad))

    with pytest.raises(ConfigurationError):
        create_matcher({"type": "ICP", "max_iterations": "many"})


def test_save_results_writes_npz(tmp_path, world_cloud):
    matcher = IcpMatcher()
    matcher.set_ref(world_cloud)
    matcher.set_target(world_cloud)
    matcher.match()
    path = matcher.save_results(tmp_path, "unit_")

    assert path.name == "unit_results.npz"
    with np.load(path) as data:
        assert data["correction"].shape == (4, 4)
        assert data["points_ref"].shape == world_cloud.shape
        assert "points_target_aligned" in data.files


def test_icp_registers_full_resolution_clouds_by_default():
    """Every target point takes part in registration unless subsampling is requested."""
    rng = np.random.default_rng(11)
    ref = rng.uniform([-10.0, -10.0, -2.0], [10.0, 10.0, 2.0], size=(20000, 3))
    T_offset = pose(x=0.03, y=0.02, yaw_deg=0.2)

    matcher = IcpMatcher()
    assert matcher.params.max_points == 0
    matcher.set_ref(ref)
    matcher.set_target(transform_points_np(T_offset, ref))
    assert matcher.match()

    assert matcher.last_result.num_inliers == ref.shape[0]
    dt_mm, dR_deg = relative_error(inv_T(T_offset), matcher.get_result())
    assert dt_mm < 5.0
    assert dR_deg < 0.05


def test_icp_subsampling_is_opt_in(world_cloud):
    matcher = IcpMatcher(IcpParams(max_points=300))
    matcher.set_ref(world_cloud)
    matcher.set_target(transform_points_np(pose(x=0.02), world_cloud))
    assert matcher.match()
    assert matcher.last_result.num_inliers <= 300


def test_points_beyond_correspondence_distance_are_outliers(world_cloud):
    """Target points with no reference point in range do not count as inliers."""
    far = world_cloud[:200] + np.array([0.0, 0.0, 40.0])
    target = np.vstack([world_cloud, far])

    matcher = IcpMatcher()
    matcher.set_ref(world_cloud)
    matcher.set_target(target)
    assert matcher.match()
    assert matcher.last_result.num_inliers == world_cloud.shape[0]
    assert matcher.last_result.inlier_ratio == pytest.approx(
        world_cloud.shape[0] / target.shape[0]
    )
    assert np.allclose(matcher.get_result(), np.eye(4), atol=1e-4)
