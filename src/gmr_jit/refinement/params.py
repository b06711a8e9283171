# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Configuration of the global map refinement pipeline.

Params are plain dataclasses, like `optimization.solvers.GNConfig`, and can
be built in code or loaded from JSON with
:meth:`GlobalMapRefinementParams.load_json`. The JSON layout is::

    {
        "loop_closure": {
            "candidate_search_config": "reloc/eucdist.json",
            "refinement_config": "reloc/refinement.json",
            "local_mapper_covariance": 1e-3,
            "loop_closure_covariance": 1e-4
        },
        "submap_refinement": {
            "scan_registration_config": "registration/scan_to_map.json",
            "matcher_config": "matchers/icp.json"
        },
        "submap_alignment": {
            "matcher_config": "matchers/icp.json"
        },
        "pgo_skip_first_n_submaps": 2,      # optional
        "pose_prior_covariance": 1e-6       # optional
    }

Relative paths are resolved against the directory holding the top-level
file; an empty string selects the component defaults. Covariances are
either a scalar (isotropic diagonal) or a list of six diagonal entries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import numpy as np

from gmr_jit.core.config import ConfigSource, read_json, resolve_path, validate_keys
from gmr_jit.core.errors import ConfigurationError
from gmr_jit.optimization.solvers import GNConfig

logger = logging.getLogger(__name__)


def _source(value: Any, base_dir: Path) -> ConfigSource:
    if isinstance(value, Mapping):
        return dict(value)
    if not isinstance(value, str):
        raise ConfigurationError(f"Expected a config path or object, got {value!r}")
    return resolve_path(value, base_dir)


def _diag6(value: Any, name: str) -> np.ndarray:
    try:
        d = np.asarray(value, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid covariance '{name}': {value!r}") from e
    if d.ndim == 0:
        d = np.full(6, float(d))
    if d.shape != (6,) or np.any(d <= 0):
        raise ConfigurationError(f"Covariance '{name}' must be positive, scalar or 6 entries")
    return d


@dataclass
class LoopClosureParams:
    candidate_search_config: ConfigSource = ""
    refinement_config: ConfigSource = ""
    local_mapper_covariance: np.ndarray = field(default_factory=lambda: np.full(6, 1e-3))
    loop_closure_covariance: np.ndarray = field(default_factory=lambda: np.full(6, 1e-4))


@dataclass
class SubmapRefinementParams:
    scan_registration_config: ConfigSource = ""
    matcher_config: ConfigSource = ""


@dataclass
class SubmapAlignmentParams:
    matcher_config: ConfigSource = ""


@dataclass
class GlobalMapRefinementParams:
    loop_closure: LoopClosureParams = field(default_factory=LoopClosureParams)
    submap_refinement: SubmapRefinementParams = field(default_factory=SubmapRefinementParams)
    submap_alignment: SubmapAlignmentParams = field(default_factory=SubmapAlignmentParams)
    pgo_skip_first_n_submaps: int = 2
    pose_prior_covariance: np.ndarray = field(default_factory=lambda: np.full(6, 1e-6))
    solver: GNConfig = field(default_factory=GNConfig)

    @staticmethod
    def load_json(config_path: Optional[Union[str, Path]]) -> "GlobalMapRefinementParams":
        params = GlobalMapRefinementParams()
        if not config_path:
            logger.info("No config file provided to global map refinement, using default parameters.")
            return params

        logger.info("Loading global map refinement config file: %s", config_path)
        J = read_json(config_path)
        base_dir = Path(config_path).parent

        validate_keys(["loop_closure", "submap_refinement", "submap_alignment"], J, "global map refinement config")

        J_lc = J["loop_closure"]
        validate_keys(
            ["candidate_search_config", "refinement_config", "local_mapper_covariance", "loop_closure_covariance"],
            J_lc,
            "loop_closure",
        )
        params.loop_closure = LoopClosureParams(
            candidate_search_config=_source(J_lc["candidate_search_config"], base_dir),
            refinement_config=_source(J_lc["refinement_config"], base_dir),
            local_mapper_covariance=_diag6(J_lc["local_mapper_covariance"], "local_mapper_covariance"),
            loop_closure_covariance=_diag6(J_lc["loop_closure_covariance"], "loop_closure_covariance"),
        )

        J_sr = J["submap_refinement"]
        validate_keys(["scan_registration_config", "matcher_config"], J_sr, "submap_refinement")
        params.submap_refinement = SubmapRefinementParams(
            scan_registration_config=_source(J_sr["scan_registration_config"], base_dir),
            matcher_config=_source(J_sr["matcher_config"], base_dir),
        )

        J_sa = J["submap_alignment"]
        validate_keys(["matcher_config"], J_sa, "submap_alignment")
        params.submap_alignment = SubmapAlignmentParams(
            matcher_config=_source(J_sa["matcher_config"], base_dir),
        )

        if "pgo_skip_first_n_submaps" in J:
            skip = J["pgo_skip_first_n_submaps"]
            if not isinstance(skip, int) or skip < 1:
                raise ConfigurationError("pgo_skip_first_n_submaps must be a positive integer")
            params.pgo_skip_first_n_submaps = skip
        if "pose_prior_covariance" in J:
            params.pose_prior_covariance = _diag6(J["pose_prior_covariance"], "pose_prior_covariance")

        return params
