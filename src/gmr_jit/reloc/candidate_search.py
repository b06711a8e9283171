# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Loop-closure candidate search.

A candidate search looks at the submap list and one query submap and returns
the indices of earlier submaps worth attempting a loop closure with, together
with a coarse ``T_MATCH_QUERY`` for each.

The caller controls which submaps are eligible through
``ignore_last_n_submaps``: only indices ``< len(submaps) - ignore_last_n_submaps``
are ever returned. The pose-graph stage sets it so that the query's
immediate predecessor, the query itself and everything after it are excluded.

Config (JSON)::

    {
        "type": "EUCDIST",
        "distance_threshold_m": 5.0
    }
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Sequence, Tuple

import numpy as np

from gmr_jit.core.config import ConfigSource, load_config
from gmr_jit.core.errors import ConfigurationError
from gmr_jit.core.transforms import inv_T
from gmr_jit.world.submap import Submap

logger = logging.getLogger(__name__)

Candidates = Tuple[List[int], List[np.ndarray]]


class RelocCandidateSearchBase(ABC):
    """Interface for loop-closure candidate search services."""

    @abstractmethod
    def find_reloc_candidates(
        self,
        submaps: Sequence[Submap],
        query_submap: Submap,
        ignore_last_n_submaps: int = 1,
        use_initial_poses: bool = False,
        output_path: str = "",
    ) -> Candidates:
        ...

    @staticmethod
    def create(source: ConfigSource) -> "RelocCandidateSearchBase":
        j = load_config(source)
        search_type = str(j.get("type", "EUCDIST")).upper()
        if search_type == "EUCDIST":
            return EucDistCandidateSearch.from_config(j)
        raise ConfigurationError(f"Invalid loop closure candidate search type '{search_type}'")


class EucDistCandidateSearch(RelocCandidateSearchBase):
    """Candidates are earlier submaps whose origin lies within a radius of the query's."""

    def __init__(self, distance_threshold_m: float = 5.0) -> None:
        if distance_threshold_m <= 0:
            raise ConfigurationError("distance_threshold_m must be positive")
        self.distance_threshold_m = distance_threshold_m

    @staticmethod
    def from_config(j) -> "EucDistCandidateSearch":
        try:
            return EucDistCandidateSearch(float(j.get("distance_threshold_m", 5.0)))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid distance_threshold_m: {e}") from e

    def find_reloc_candidates(
        self,
        submaps: Sequence[Submap],
        query_submap: Submap,
        ignore_last_n_submaps: int = 1,
        use_initial_poses: bool = False,
        output_path: str = "",
    ) -> Candidates:
        T_W_QUERY = query_submap.world_pose(use_initial_poses)
        num_eligible = max(len(submaps) - ignore_last_n_submaps, 0)

        scored = []
        for idx in range(num_eligible):
            T_W_MATCH = submaps[idx].world_pose(use_initial_poses)
            dist = float(np.linalg.norm(T_W_MATCH[:3, 3] - T_W_QUERY[:3, 3]))
            if dist <= self.distance_threshold_m:
                scored.append((dist, idx, inv_T(T_W_MATCH) @ T_W_QUERY))

        scored.sort(key=lambda s: s[0])
        indices = [idx for _, idx, _ in scored]
        transforms = [T for _, _, T in scored]

        if output_path:
            out = Path(output_path) / f"candidates_{query_submap.stamp}.json"
            out.write_text(json.dumps(
                {
                    "query": str(query_submap.stamp),
                    "candidates": [
                        {"index": idx, "distance_m": dist} for dist, idx, _ in scored
                    ],
                },
                indent=4,
            ))

        logger.debug("Query %s: %d candidates within %.2f m", query_submap.stamp, len(indices),
                     self.distance_threshold_m)
        return indices, transforms
