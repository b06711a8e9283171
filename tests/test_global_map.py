from __future__ import annotations

import json

import numpy as np
import pytest

from gmr_jit.core.types import Stamp
from gmr_jit.slam.pose_graph import PoseGraph, Pose3DTransaction
from gmr_jit.world.global_map import GlobalMap
from gmr_jit.world.submap import Keyframe, Submap

from conftest import make_submap, pose, straight_line_map


def test_initial_pose_is_immutable(world_cloud):
    submap = make_submap(0, world_cloud, pose(x=1.0))
    submap.update_pose(pose(x=2.0))

    assert np.allclose(submap.T_WORLD_SUBMAP_INIT, pose(x=1.0))
    assert np.allclose(submap.T_WORLD_SUBMAP, pose(x=2.0))
    with pytest.raises(ValueError):
        submap.T_WORLD_SUBMAP_INIT[0, 3] = 5.0

    returned = submap.T_WORLD_SUBMAP
    returned[0, 3] = 7.0
    assert submap.position()[0] == pytest.approx(2.0)
    assert submap.position(use_initial=True)[0] == pytest.approx(1.0)


def test_world_frame_points_follow_current_pose(world_cloud):
    submap = make_submap(0, world_cloud, pose(x=1.0, yaw_deg=10.0))
    assert np.allclose(submap.points_in_world_frame(), world_cloud)

    submap.update_pose(pose(x=1.5, yaw_deg=10.0))
    shifted = submap.points_in_world_frame()
    assert np.allclose(shifted - world_cloud, [0.5, 0.0, 0.0])
    assert np.allclose(submap.points_in_world_frame(use_initial=True), world_cloud)


def test_keyframes_are_kept_in_temporal_order():
    submap = Submap(Stamp(0), np.eye(4))
    for nsec in (300, 100, 200):
        submap.add_keyframe(Keyframe(Stamp(0, nsec), np.eye(4), np.zeros((1, 3))))
    assert [kf.stamp.nsec for kf in submap.keyframes] == [100, 200, 300]
    with pytest.raises(ValueError):
        submap.add_keyframe(Keyframe(Stamp(0, 100), np.eye(4), np.zeros((1, 3))))


def test_feature_accessors(world_cloud):
    submap = make_submap(0, world_cloud, pose(y=2.0), with_features=True)
    assert submap.has_features()
    feats = submap.feature_points_in_world_frame()
    assert sorted(feats) == ["edges", "surfaces"]
    assert sum(f.shape[0] for f in feats.values()) == world_cloud.shape[0]


def test_submap_stamps_must_increase(world_cloud):
    global_map = GlobalMap([make_submap(1, world_cloud, np.eye(4))])
    with pytest.raises(ValueError):
        global_map.add_submap(make_submap(1, world_cloud, np.eye(4)))


def test_update_submap_poses_only_touches_graph_variables(world_cloud):
    global_map, _ = straight_line_map(world_cloud, num_submaps=3)
    target = pose(x=9.0)

    txn = Pose3DTransaction()
    txn.add_pose_variables(global_map[1].stamp, target)
    graph = PoseGraph()
    graph.update(txn)

    assert global_map.update_submap_poses(graph) == 1
    assert np.allclose(global_map[1].T_WORLD_SUBMAP, target, atol=1e-5)
    assert np.allclose(global_map[0].T_WORLD_SUBMAP, global_map[0].T_WORLD_SUBMAP_INIT)


def test_save_and_load_round_trip(tmp_path, world_cloud):
    global_map, _ = straight_line_map(world_cloud, num_submaps=2, with_features=True)
    global_map[1].update_pose(pose(x=1.2))
    global_map.save_data(tmp_path)

    loaded = GlobalMap.load_data(tmp_path)
    assert len(loaded) == 2
    for a, b in zip(global_map, loaded):
        assert a.stamp == b.stamp
        assert np.allclose(a.T_WORLD_SUBMAP, b.T_WORLD_SUBMAP)
        assert np.allclose(a.T_WORLD_SUBMAP_INIT, b.T_WORLD_SUBMAP_INIT)
        assert [kf.stamp for kf in a.keyframes] == [kf.stamp for kf in b.keyframes]
        assert np.allclose(a.points_in_submap_frame(), b.points_in_submap_frame())
        assert sorted(b.feature_points_in_submap_frame()) == ["edges", "surfaces"]

    with pytest.raises(FileNotFoundError):
        GlobalMap.load_data(tmp_path / "nowhere")


def test_trajectory_files(tmp_path, world_cloud):
    global_map, _ = straight_line_map(world_cloud, num_submaps=2)
    global_map[1].update_pose(pose(x=3.0))

    current = json.loads(global_map.save_trajectory_file(tmp_path).read_text())
    initial = json.loads(global_map.save_trajectory_file(tmp_path, save_initial=True).read_text())
    frames = json.loads(global_map.save_submap_frames(tmp_path).read_text())

    assert len(current["poses"]) == 2
    assert current["poses"][1]["T_WORLD_KEYFRAME"][0][3] == pytest.approx(3.0)
    assert initial["poses"][1]["T_WORLD_KEYFRAME"][0][3] != pytest.approx(3.0)
    assert [f["sec"] for f in frames["submaps"]] == [0, 1]


def test_pose_vector_and_orientation(world_cloud):
    submap = make_submap(0, world_cloud, pose(x=1.0, y=-2.0, yaw_deg=30.0))
    v = submap.pose_vector()

    assert v.shape == (6,)
    assert np.allclose(v[:3], [1.0, -2.0, 0.0])
    assert np.allclose(submap.orientation(), [0.0, 0.0, np.deg2rad(30.0)], atol=1e-5)
    assert np.allclose(submap.orientation(use_initial=True), submap.orientation())


def test_world_frame_cloud_dumps(tmp_path, world_cloud):
    global_map, _ = straight_line_map(world_cloud, num_submaps=2, with_features=True)

    lidar_dir = global_map.save_lidar_submaps(tmp_path)
    keypoint_dir = global_map.save_keypoint_submaps(tmp_path, save_initial=True)
    trajectory = global_map.save_trajectory_clouds(tmp_path)

    assert lidar_dir.name == "lidar_submaps"
    with np.load(lidar_dir / f"submap_{global_map[0].stamp}.npz") as data:
        assert np.allclose(data["points"], world_cloud)

    assert keypoint_dir.name == "keypoint_submaps_initial"
    with np.load(keypoint_dir / f"submap_{global_map[1].stamp}.npz") as data:
        assert sorted(data.files) == ["edges", "surfaces"]
        assert sum(data[label].shape[0] for label in data.files) == world_cloud.shape[0]

    with np.load(trajectory) as data:
        assert data["points"].shape == (2, 3)
        assert data["stamps"].tolist() == [[0, 1000], [1, 1000]]
        assert np.allclose(data["points"][1], global_map[1].position())
