# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Global map refinement pipeline.

Takes a :class:`GlobalMap` of locally-accurate submaps and makes it globally
consistent in three independent stages, usually run in this order:

1. :meth:`GlobalMapRefinement.run_submap_refinement`
   Every keyframe of every submap is registered against a rolling local map
   built from the keyframes before it. The registration constraints form a
   small pose graph per submap whose solution overwrites the keyframe poses.

2. :meth:`GlobalMapRefinement.run_submap_alignment`
   Each submap is registered against its predecessor using the full clouds,
   starting from the initial relative pose. The target submap pose is then
   chained off the reference submap's *current* pose, so corrections
   accumulate along the sequence.

3. :meth:`GlobalMapRefinement.run_pose_graph_optimization`
   A pose graph over all submaps: a gauge prior on the first submap,
   sequential edges from the current relative poses, and loop-closure edges
   added incrementally by sweeping query submaps in time order. After every
   query that produced at least one accepted loop closure the graph is
   re-solved and all submap poses are updated, so later candidate searches
   see the corrected poses.

Each stage builds its own graph; submap and keyframe poses in the store are
the only state shared between stages. Before/after deltas are collected in
:attr:`GlobalMapRefinement.summary`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from gmr_jit.core.config import load_config
from gmr_jit.core.errors import PreconditionError
from gmr_jit.core.transforms import inv_T, transform_points_np
from gmr_jit.registration.matchers import Matcher, MatcherType, create_matcher, get_type_from_config
from gmr_jit.registration.scan_registration import ScanRegistrationParams, ScanToMapRegistration
from gmr_jit.refinement.params import GlobalMapRefinementParams
from gmr_jit.refinement.summary import RegistrationResult, Summary
from gmr_jit.reloc.candidate_search import RelocCandidateSearchBase
from gmr_jit.reloc.refinement import RelocRefinementBase
from gmr_jit.slam.pose_graph import PoseGraph, Pose3DTransaction
from gmr_jit.world.global_map import GlobalMap
from gmr_jit.world.submap import Submap

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _submap_output_dir(output_path: PathLike, submap: Submap) -> str:
    """
    Return the per-submap output directory, creating it, or ``""`` when no
    output was requested.
    """
    if not output_path:
        return ""
    if not Path(output_path).exists():
        logger.error("Output path does not exist: %s", output_path)
        raise PreconditionError(f"Output path does not exist: {output_path}")
    submap_dir = Path(output_path) / f"submap_{submap.stamp}"
    submap_dir.mkdir(parents=True, exist_ok=True)
    return str(submap_dir)


class GlobalMapRefinement:
    """
    Runs the refinement stages over a :class:`GlobalMap`.

    Args:
        global_map: Store whose submap and keyframe poses get refined in place.
        params: Either a :class:`GlobalMapRefinementParams`, a path to a JSON
            config (see :mod:`gmr_jit.refinement.params`) or ``None`` for
            defaults.
        candidate_search: Optional loop-closure candidate search. Built from
            ``params.loop_closure.candidate_search_config`` when omitted.
        loop_closure_refinement: Optional loop-closure refinement service.
            Built from ``params.loop_closure.refinement_config`` when omitted.

    Raises:
        ConfigurationError: if any referenced config is unreadable, misses
            required keys or selects an unknown component type.
    """

    def __init__(
        self,
        global_map: GlobalMap,
        params: Union[GlobalMapRefinementParams, PathLike, None] = None,
        candidate_search: Optional[RelocCandidateSearchBase] = None,
        loop_closure_refinement: Optional[RelocRefinementBase] = None,
    ) -> None:
        if not isinstance(params, GlobalMapRefinementParams):
            params = GlobalMapRefinementParams.load_json(params)
        self.global_map = global_map
        self.params = params
        self.summary = Summary()
        self.pose_graph: Optional[PoseGraph] = None

        self._setup(candidate_search, loop_closure_refinement)

    def _setup(
        self,
        candidate_search: Optional[RelocCandidateSearchBase],
        loop_closure_refinement: Optional[RelocRefinementBase],
    ) -> None:
        # Submap refinement builds fresh registration objects per submap, so
        # only validate and cache the configs here.
        sr = self.params.submap_refinement
        self._scan_registration_config: Dict[str, Any] = load_config(sr.scan_registration_config)
        self._scan_matcher_config: Dict[str, Any] = load_config(sr.matcher_config)
        ScanRegistrationParams.from_config(self._scan_registration_config)
        get_type_from_config(self._scan_matcher_config)

        self.alignment_matcher: Matcher = create_matcher(self.params.submap_alignment.matcher_config)
        self._use_features = self.alignment_matcher.matcher_type == MatcherType.FEATURE
        if self._use_features:
            logger.info("Submap alignment uses structured feature clouds.")

        lc = self.params.loop_closure
        self.candidate_search = (
            candidate_search
            if candidate_search is not None
            else RelocCandidateSearchBase.create(lc.candidate_search_config)
        )
        self.loop_closure_refinement = (
            loop_closure_refinement
            if loop_closure_refinement is not None
            else RelocRefinementBase.create(lc.refinement_config)
        )

    @staticmethod
    def from_data_dir(data_dir: PathLike, config_path: PathLike = "") -> "GlobalMapRefinement":
        """Load a store saved with :meth:`GlobalMap.save_data` and wrap it."""
        global_map = GlobalMap.load_data(data_dir)
        logger.info("Loaded %d submaps from %s", len(global_map), data_dir)
        return GlobalMapRefinement(global_map, config_path)

    # ------------------------------------------------------------------
    # Submap refinement
    # ------------------------------------------------------------------

    def run_submap_refinement(self, output_path: PathLike = "") -> bool:
        num_submaps = len(self.global_map)
        for i, submap in enumerate(self.global_map):
            logger.info("Refining submap No. %d / %d", i + 1, num_submaps)
            if not self.refine_submap(submap, output_path):
                return False
        return True

    def refine_submap(self, submap: Submap, output_path: PathLike = "") -> bool:
        """Re-estimate every keyframe pose of ``submap`` in the submap frame."""
        submap_dir = _submap_output_dir(output_path, submap)

        registration = ScanToMapRegistration.create(
            self._scan_registration_config, self._scan_matcher_config, submap_dir
        )
        registration.clear_map()
        graph = PoseGraph(self.params.solver)

        for keyframe in submap.keyframes:
            txn = registration.register_new_scan(keyframe)
            if txn is None:
                continue
            graph.update(txn)

        graph.optimize()

        for keyframe in submap.keyframes:
            T_SUBMAP_KEYFRAME_init = keyframe.T_SUBMAP_KEYFRAME
            if graph.has_variable(keyframe.stamp):
                keyframe.update_pose(graph.get_pose(keyframe.stamp))
            self.summary.add_refinement(
                keyframe.stamp,
                RegistrationResult.from_poses(T_SUBMAP_KEYFRAME_init, keyframe.T_SUBMAP_KEYFRAME),
            )

        return True

    # ------------------------------------------------------------------
    # Submap alignment
    # ------------------------------------------------------------------

    def run_submap_alignment(self, output_path: PathLike = "") -> bool:
        num_submaps = len(self.global_map)
        if num_submaps < 2:
            logger.warning("Not enough submaps to run submap alignment, skipping.")
            return True

        for i in range(1, num_submaps):
            logger.info("Aligning submap No. %d / %d", i + 1, num_submaps)
            self.align_submaps(self.global_map[i - 1], self.global_map[i], output_path)
        return True

    def align_submaps(self, submap_ref: Submap, submap_tgt: Submap, output_path: PathLike = "") -> None:
        """
        Register ``submap_tgt`` against ``submap_ref`` and chain its world pose
        off the reference's current pose.
        """
        submap_dir = _submap_output_dir(output_path, submap_tgt)

        T_WORLD_REF_init = submap_ref.T_WORLD_SUBMAP_INIT
        T_REF_WORLD_init = inv_T(T_WORLD_REF_init)
        T_REF_TGT_init = T_REF_WORLD_init @ submap_tgt.T_WORLD_SUBMAP_INIT
        T_WORLD_TGT_before = submap_tgt.T_WORLD_SUBMAP

        if self._use_features:
            ref_cloud = {
                label: transform_points_np(T_REF_WORLD_init, pts)
                for label, pts in submap_ref.feature_points_in_world_frame(use_initial=True).items()
            }
            tgt_cloud = {
                label: transform_points_np(T_REF_WORLD_init, pts)
                for label, pts in submap_tgt.feature_points_in_world_frame(use_initial=True).items()
            }
        else:
            ref_cloud = transform_points_np(T_REF_WORLD_init, submap_ref.points_in_world_frame(use_initial=True))
            tgt_cloud = transform_points_np(T_REF_WORLD_init, submap_tgt.points_in_world_frame(use_initial=True))

        self.alignment_matcher.set_ref(ref_cloud)
        self.alignment_matcher.set_target(tgt_cloud)
        if not self.alignment_matcher.match():
            logger.warning(
                "Submap alignment failed between %s and %s, keeping the initial relative pose",
                submap_ref.stamp,
                submap_tgt.stamp,
            )
        T_REF_TGT = self.alignment_matcher.apply_result(T_REF_TGT_init)

        if submap_dir:
            self.alignment_matcher.save_results(submap_dir, "submap_cloud_")

        submap_tgt.update_pose(submap_ref.T_WORLD_SUBMAP @ T_REF_TGT)
        self.summary.add_alignment(
            submap_tgt.stamp,
            RegistrationResult.from_poses(T_WORLD_TGT_before, submap_tgt.T_WORLD_SUBMAP),
        )

    # ------------------------------------------------------------------
    # Pose graph optimization
    # ------------------------------------------------------------------

    def _loop_closure_output_dirs(self, output_path: PathLike):
        if not output_path:
            return "", ""
        if not Path(output_path).exists():
            logger.error("Output path does not exist: %s", output_path)
            raise PreconditionError(f"Output path does not exist: {output_path}")
        candidate_search_dir = Path(output_path) / "candidate_search"
        refinement_dir = Path(output_path) / "refinement"
        candidate_search_dir.mkdir(parents=True, exist_ok=True)
        refinement_dir.mkdir(parents=True, exist_ok=True)
        return str(candidate_search_dir), str(refinement_dir)

    def _build_initial_graph(self) -> PoseGraph:
        """Gauge prior on the first submap plus one sequential edge per consecutive pair."""
        lc = self.params.loop_closure
        submaps = self.global_map.get_submaps()

        txn = Pose3DTransaction()
        first = submaps[0]
        txn.add_pose_variables(first.stamp, first.T_WORLD_SUBMAP)
        txn.add_pose_prior(
            first.stamp,
            first.T_WORLD_SUBMAP,
            self.params.pose_prior_covariance,
            source="GlobalMapRefinement::run_pose_graph_optimization",
        )
        for prev, cur in zip(submaps[:-1], submaps[1:]):
            txn.add_pose_variables(cur.stamp, cur.T_WORLD_SUBMAP)
            txn.add_pose_constraint(
                prev.stamp,
                cur.stamp,
                inv_T(prev.T_WORLD_SUBMAP) @ cur.T_WORLD_SUBMAP,
                lc.local_mapper_covariance,
                source="GlobalMapRefinement::run_pose_graph_optimization",
            )

        graph = PoseGraph(self.params.solver)
        graph.update(txn)
        graph.optimize()
        return graph

    def run_pose_graph_optimization(self, output_path: PathLike = "") -> bool:
        candidate_search_dir, refinement_dir = self._loop_closure_output_dirs(output_path)

        num_submaps = len(self.global_map)
        if num_submaps == 0:
            logger.warning("Global map is empty, skipping pose graph optimization.")
            return True

        skip = self.params.pgo_skip_first_n_submaps
        graph = self._build_initial_graph()
        self.pose_graph = graph
        if num_submaps <= skip:
            logger.error(
                "Not enough submaps for loop closure: %d submaps, %d skipped",
                num_submaps,
                skip,
            )
            return False

        submaps = self.global_map.get_submaps()
        lc = self.params.loop_closure
        num_loop_closures = 0

        # The last submap is never a query.
        for query_index in range(skip, num_submaps - 1):
            query_submap = submaps[query_index]
            logger.info("Searching loop closures for submap No. %d / %d", query_index + 1, num_submaps)

            ignore_last_n_submaps = num_submaps - query_index + 1
            matched_indices, Ts_MATCH_QUERY = self.candidate_search.find_reloc_candidates(
                submaps,
                query_submap,
                ignore_last_n_submaps,
                use_initial_poses=False,
                output_path=candidate_search_dir,
            )
            if not matched_indices:
                continue

            txn = Pose3DTransaction()
            for matched_index, T_MATCH_QUERY_init in zip(matched_indices, Ts_MATCH_QUERY):
                if matched_index >= query_index - 1:
                    logger.error(
                        "Candidate search returned submap %d for query %d, "
                        "which is not strictly before the query's predecessor. Skipping.",
                        matched_index,
                        query_index,
                    )
                    continue

                matched_submap = submaps[matched_index]
                result = self.loop_closure_refinement.run_refinement(
                    matched_submap, query_submap, T_MATCH_QUERY_init, refinement_dir
                )
                if not result.successful:
                    continue

                txn.add_pose_variables(matched_submap.stamp, matched_submap.T_WORLD_SUBMAP)
                txn.add_pose_variables(query_submap.stamp, query_submap.T_WORLD_SUBMAP)
                txn.add_pose_constraint(
                    matched_submap.stamp,
                    query_submap.stamp,
                    result.T_MATCH_QUERY,
                    lc.loop_closure_covariance,
                    source="GlobalMapRefinement::run_pose_graph_optimization",
                )
                num_loop_closures += 1
                logger.info(
                    "Added loop closure between submaps %d and %d", matched_index, query_index
                )

            if txn.empty():
                continue

            graph.update(txn)
            graph.optimize()
            self.global_map.update_submap_poses(graph)

        logger.info("Pose graph optimization finished with %d loop closures.", num_loop_closures)
        return True

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def save_results(self, output_path: PathLike, save_initial: bool = False) -> None:
        """
        Write the summary, trajectories, submap frames and world-frame submap
        clouds to ``output_path``. With ``save_initial`` the pose-dependent
        outputs are also written from the initial poses.
        """
        if not Path(output_path).is_dir():
            logger.error("Output directory does not exist: %s, not saving results.", output_path)
            return

        logger.info("Saving global map refinement results to %s", output_path)
        self.summary.save(output_path)
        for initial in ((False, True) if save_initial else (False,)):
            self.global_map.save_trajectory_file(output_path, save_initial=initial)
            self.global_map.save_trajectory_clouds(output_path, save_initial=initial)
            self.global_map.save_submap_frames(output_path, save_initial=initial)
            self.global_map.save_lidar_submaps(output_path, save_initial=initial)
            self.global_map.save_keypoint_submaps(output_path, save_initial=initial)

    def save_global_map_data(self, output_path: PathLike) -> Optional[Path]:
        """Persist the refined store under ``global_map_data_refined/``."""
        if not Path(output_path).is_dir():
            logger.error("Output directory does not exist: %s, not saving global map data.", output_path)
            return None

        data_dir = Path(output_path) / "global_map_data_refined"
        self.global_map.save_data(data_dir)
        return data_dir
