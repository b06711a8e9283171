# tests/conftest.py
"""
Synthetic scenes shared by the registration and pipeline tests.

Every cloud is a view of one fixed random "world" point set, so clouds that
should overlap contain exactly the same physical points. Registration of
two views therefore has an exact answer and tolerances can stay tight.
"""
from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np
import pytest

from gmr_jit.core.transforms import Rt_to_T, inv_T, rot_z, transform_points_np
from gmr_jit.core.types import Stamp
from gmr_jit.refinement.params import (
    GlobalMapRefinementParams,
    LoopClosureParams,
    SubmapAlignmentParams,
    SubmapRefinementParams,
)
from gmr_jit.world.global_map import GlobalMap
from gmr_jit.world.submap import Keyframe, Submap

WORLD_SEED = 7
WORLD_LO = np.array([-5.0, -4.0, -1.5])
WORLD_HI = np.array([8.0, 4.0, 1.5])


def make_world_cloud(n: int = 1200, seed: int = WORLD_SEED) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.uniform(WORLD_LO, WORLD_HI, size=(n, 3))


def pose(x: float = 0.0, y: float = 0.0, z: float = 0.0, yaw_deg: float = 0.0) -> np.ndarray:
    return Rt_to_T(rot_z(np.deg2rad(yaw_deg)), [x, y, z])


def split_features(points: np.ndarray) -> dict:
    """Label the first half of a view as edges and the rest as surfaces."""
    half = points.shape[0] // 2
    return {"edges": points[:half], "surfaces": points[half:]}


def make_submap(
    sec: int,
    world: np.ndarray,
    T_WORLD_SUBMAP_true: np.ndarray,
    T_WORLD_SUBMAP_init: Optional[np.ndarray] = None,
    T_SUBMAP_KEYFRAMES_true: Sequence[np.ndarray] = (np.eye(4),),
    T_SUBMAP_KEYFRAMES_init: Optional[Sequence[np.ndarray]] = None,
    with_features: bool = False,
) -> Submap:
    """
    Build a submap whose keyframes all observe ``world`` from their true
    poses, while storing the (possibly perturbed) ``*_init`` poses.
    """
    if T_WORLD_SUBMAP_init is None:
        T_WORLD_SUBMAP_init = T_WORLD_SUBMAP_true
    if T_SUBMAP_KEYFRAMES_init is None:
        T_SUBMAP_KEYFRAMES_init = T_SUBMAP_KEYFRAMES_true

    submap = Submap(Stamp(sec), T_WORLD_SUBMAP_init)
    for k, (T_true, T_init) in enumerate(zip(T_SUBMAP_KEYFRAMES_true, T_SUBMAP_KEYFRAMES_init)):
        T_WORLD_KEYFRAME = T_WORLD_SUBMAP_true @ T_true
        points = transform_points_np(inv_T(T_WORLD_KEYFRAME), world)
        submap.add_keyframe(Keyframe(
            stamp=Stamp(sec, (k + 1) * 1000),
            T_SUBMAP_KEYFRAME=T_init,
            points=points,
            features=split_features(points) if with_features else {},
        ))
    return submap


def straight_line_map(
    world: np.ndarray,
    num_submaps: int = 4,
    spacing_m: float = 1.0,
    drift_m: float = 0.05,
    drift_yaw_deg: float = 0.5,
    with_features: bool = False,
) -> Tuple[GlobalMap, List[np.ndarray]]:
    """
    Submaps along +x with ``spacing_m`` between them. The stored initial poses
    accumulate a small lateral and yaw drift per step; submap 0 is exact.

    Returns the map and the ground-truth world poses.
    """
    step = pose(x=spacing_m)
    drift = pose(y=drift_m, yaw_deg=drift_yaw_deg)

    T_true = [np.eye(4)]
    T_init = [np.eye(4)]
    for _ in range(1, num_submaps):
        T_true.append(T_true[-1] @ step)
        T_init.append(T_init[-1] @ step @ drift)

    global_map = GlobalMap(
        make_submap(i, world, T_true[i], T_init[i], with_features=with_features)
        for i in range(num_submaps)
    )
    return global_map, T_true


def make_params(skip: int = 1, alignment_type: str = "ICP", map_size: int = 2) -> GlobalMapRefinementParams:
    return GlobalMapRefinementParams(
        loop_closure=LoopClosureParams(
            candidate_search_config={"type": "EUCDIST", "distance_threshold_m": 5.0},
            refinement_config={"type": "SUBMAP_ICP"},
        ),
        submap_refinement=SubmapRefinementParams(
            scan_registration_config={"map_size": map_size},
            matcher_config={"type": "ICP"},
        ),
        submap_alignment=SubmapAlignmentParams(matcher_config={"type": alignment_type}),
        pgo_skip_first_n_submaps=skip,
    )


def relative_error(T_a: np.ndarray, T_b: np.ndarray) -> Tuple[float, float]:
    """(translation error in mm, rotation error in deg) between two poses."""
    T_diff = inv_T(T_a) @ T_b
    dt_mm = float(np.linalg.norm(T_diff[:3, 3])) * 1000.0
    cos = np.clip((np.trace(T_diff[:3, :3]) - 1.0) / 2.0, -1.0, 1.0)
    return dt_mm, float(np.rad2deg(np.arccos(cos)))


@pytest.fixture
def world_cloud() -> np.ndarray:
    return make_world_cloud()
