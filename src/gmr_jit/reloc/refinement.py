# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Loop-closure refinement.

Given a candidate (matched) submap, the query submap and a coarse
``T_MATCH_QUERY``, a refinement service attempts precise registration and
reports whether it succeeded together with the refined transform.

Config (JSON)::

    {
        "type": "SUBMAP_ICP",
        "matcher_config": "matchers/icp.json",   # path (relative to this file) or inline object
        "max_correction_trans_m": 2.0,
        "max_correction_rot_deg": 20.0
    }
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import numpy as np

from gmr_jit.core.config import ConfigSource, load_config, resolve_path
from gmr_jit.core.errors import ConfigurationError
from gmr_jit.core.math3d import rotation_angle_deg
from gmr_jit.core.transforms import inv_T, transform_points_np
from gmr_jit.registration.matchers import Matcher, MatcherType, create_matcher
from gmr_jit.world.submap import Submap

logger = logging.getLogger(__name__)


@dataclass
class RelocRefinementResult:
    successful: bool = False
    T_MATCH_QUERY: np.ndarray = field(default_factory=lambda: np.eye(4))


class RelocRefinementBase(ABC):
    """Interface for loop-closure refinement services."""

    @abstractmethod
    def run_refinement(
        self,
        matched_submap: Submap,
        query_submap: Submap,
        T_MATCH_QUERY_init: np.ndarray,
        output_path: str = "",
    ) -> RelocRefinementResult:
        ...

    @staticmethod
    def create(source: ConfigSource) -> "RelocRefinementBase":
        j = load_config(source)
        refinement_type = str(j.get("type", "SUBMAP_ICP")).upper()
        if refinement_type != "SUBMAP_ICP":
            raise ConfigurationError(f"Invalid loop closure refinement type '{refinement_type}'")

        base_dir = Path(source).parent if isinstance(source, (str, Path)) and source else None
        matcher_source = j.get("matcher_config", "")
        if not isinstance(matcher_source, Mapping):
            matcher_source = resolve_path(str(matcher_source), base_dir)

        try:
            return SubmapRefinementIcp(
                create_matcher(matcher_source),
                max_correction_trans_m=float(j.get("max_correction_trans_m", 2.0)),
                max_correction_rot_deg=float(j.get("max_correction_rot_deg", 20.0)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid loop closure refinement config: {e}") from e


class SubmapRefinementIcp(RelocRefinementBase):
    """Registers the query submap against the matched submap in the matched submap's frame."""

    def __init__(
        self,
        matcher: Optional[Matcher] = None,
        max_correction_trans_m: float = 2.0,
        max_correction_rot_deg: float = 20.0,
    ) -> None:
        self.matcher = matcher if matcher is not None else create_matcher(None)
        self.max_correction_trans_m = max_correction_trans_m
        self.max_correction_rot_deg = max_correction_rot_deg

    def _clouds(self, matched_submap: Submap, query_submap: Submap, T_MATCH_QUERY: np.ndarray):
        if self.matcher.matcher_type == MatcherType.FEATURE:
            ref = matched_submap.feature_points_in_submap_frame()
            tgt = {
                label: transform_points_np(T_MATCH_QUERY, pts)
                for label, pts in query_submap.feature_points_in_submap_frame().items()
            }
            return ref, tgt
        ref = matched_submap.points_in_submap_frame()
        tgt = transform_points_np(T_MATCH_QUERY, query_submap.points_in_submap_frame())
        return ref, tgt

    def run_refinement(
        self,
        matched_submap: Submap,
        query_submap: Submap,
        T_MATCH_QUERY_init: np.ndarray,
        output_path: str = "",
    ) -> RelocRefinementResult:
        T_MATCH_QUERY_init = np.asarray(T_MATCH_QUERY_init, dtype=np.float64)
        ref, tgt = self._clouds(matched_submap, query_submap, T_MATCH_QUERY_init)

        self.matcher.set_ref(ref)
        self.matcher.set_target(tgt)
        if not self.matcher.match():
            logger.info(
                "Loop closure refinement failed between %s and %s",
                matched_submap.stamp,
                query_submap.stamp,
            )
            return RelocRefinementResult(successful=False, T_MATCH_QUERY=T_MATCH_QUERY_init)

        T_MATCH_QUERY = self.matcher.apply_result(T_MATCH_QUERY_init)
        correction = T_MATCH_QUERY @ inv_T(T_MATCH_QUERY_init)
        d_trans = float(np.linalg.norm(correction[:3, 3]))
        d_rot = float(rotation_angle_deg(correction[:3, :3]))
        if d_trans > self.max_correction_trans_m or d_rot > self.max_correction_rot_deg:
            logger.info(
                "Rejecting loop closure %s -> %s: correction %.3f m / %.2f deg",
                matched_submap.stamp,
                query_submap.stamp,
                d_trans,
                d_rot,
            )
            return RelocRefinementResult(successful=False, T_MATCH_QUERY=T_MATCH_QUERY_init)

        if output_path:
            self.matcher.save_results(
                output_path, f"match_{matched_submap.stamp}_query_{query_submap.stamp}_"
            )

        return RelocRefinementResult(successful=True, T_MATCH_QUERY=T_MATCH_QUERY)
