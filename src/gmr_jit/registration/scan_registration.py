# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Scan-to-map registration inside one submap.

:class:`ScanToMapRegistration` keeps a small local map made of the most
recently registered keyframes (in the submap frame) and turns each new
keyframe into pose-graph constraints:

- The first keyframe becomes the anchor: it gets a pose variable and a tight
  ``prior_se3`` factor at its stored pose.
- Every later keyframe is matched against the accumulated map using its
  stored pose as the initial guess. On success it gets a pose variable and a
  ``between_se3`` factor from the anchor carrying the registered relative
  pose. Its points then enter the map at the registered pose.
- A failed or implausible registration (correction larger than the
  configured thresholds) yields no transaction. The scan still enters the map
  at its stored pose so later keyframes have something to match against.

The map is bounded to ``map_size`` scans, oldest evicted first.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Deque, Dict, Mapping, Optional, Tuple, Union

import numpy as np

from gmr_jit.core.config import ConfigSource, load_config
from gmr_jit.core.errors import ConfigurationError
from gmr_jit.core.math3d import rotation_angle_deg
from gmr_jit.core.transforms import inv_T, transform_points_np
from gmr_jit.core.types import Stamp
from gmr_jit.registration.matchers import Matcher, MatcherType, create_matcher
from gmr_jit.slam.pose_graph import Pose3DTransaction
from gmr_jit.world.submap import Keyframe

logger = logging.getLogger(__name__)

Cloud = Union[np.ndarray, Dict[str, np.ndarray]]


@dataclass
class ScanRegistrationParams:
    map_size: int = 10
    pose_prior_covariance: float = 1e-6
    registration_covariance: float = 1e-4
    max_correction_trans_m: float = 0.5
    max_correction_rot_deg: float = 10.0

    @staticmethod
    def from_config(j: Mapping[str, Any]) -> "ScanRegistrationParams":
        kwargs = {}
        for f in fields(ScanRegistrationParams):
            if f.name in j:
                try:
                    kwargs[f.name] = type(f.default)(j[f.name])
                except (TypeError, ValueError) as e:
                    raise ConfigurationError(f"Invalid value for '{f.name}': {j[f.name]!r}") from e
        params = ScanRegistrationParams(**kwargs)
        if params.map_size < 1:
            raise ConfigurationError("map_size must be at least 1")
        return params


class ScanToMapRegistration:
    """Registers keyframes of one submap against a rolling local map."""

    def __init__(
        self,
        matcher: Matcher,
        params: Optional[ScanRegistrationParams] = None,
        output_dir: Union[str, Path] = "",
    ) -> None:
        self.matcher = matcher
        self.params = params if params is not None else ScanRegistrationParams()
        self.output_dir = str(output_dir)
        self._use_features = matcher.matcher_type == MatcherType.FEATURE
        self._map: Deque[Tuple[Stamp, Cloud]] = deque(maxlen=self.params.map_size)
        self._anchor: Optional[Tuple[Stamp, np.ndarray]] = None

    @staticmethod
    def create(
        scan_registration_config: ConfigSource,
        matcher_config: ConfigSource,
        output_dir: Union[str, Path] = "",
    ) -> "ScanToMapRegistration":
        params = ScanRegistrationParams.from_config(load_config(scan_registration_config))
        return ScanToMapRegistration(create_matcher(matcher_config), params, output_dir)

    # --- Map ---

    def clear_map(self) -> None:
        self._map.clear()
        self._anchor = None

    @property
    def num_scans_in_map(self) -> int:
        return len(self._map)

    def _cloud(self, keyframe: Keyframe, T_SUBMAP_KEYFRAME: np.ndarray) -> Cloud:
        if self._use_features:
            return {
                label: transform_points_np(T_SUBMAP_KEYFRAME, pts)
                for label, pts in keyframe.features.items()
            }
        return transform_points_np(T_SUBMAP_KEYFRAME, keyframe.points)

    def get_map(self) -> Cloud:
        """Union of every scan currently in the map, in the submap frame."""
        clouds = [c for _, c in self._map]
        if self._use_features:
            merged: Dict[str, list] = {}
            for c in clouds:
                for label, pts in c.items():
                    merged.setdefault(label, []).append(pts)
            return {label: np.concatenate(pts, axis=0) for label, pts in merged.items()}
        if not clouds:
            return np.zeros((0, 3))
        return np.concatenate(clouds, axis=0)

    def _within_thresholds(self, T_init: np.ndarray, T_reg: np.ndarray) -> bool:
        correction = T_reg @ inv_T(T_init)
        d_trans = float(np.linalg.norm(correction[:3, 3]))
        d_rot = float(rotation_angle_deg(correction[:3, :3]))
        return (
            d_trans <= self.params.max_correction_trans_m
            and d_rot <= self.params.max_correction_rot_deg
        )

    # --- Registration ---

    def register_new_scan(self, keyframe: Keyframe) -> Optional[Pose3DTransaction]:
        """
        Register ``keyframe`` against the map and return the constraints it
        produces, or ``None`` when no constraint could be derived.
        """
        T_init = keyframe.T_SUBMAP_KEYFRAME

        if self._anchor is None:
            self._anchor = (keyframe.stamp, T_init)
            self._map.append((keyframe.stamp, self._cloud(keyframe, T_init)))
            txn = Pose3DTransaction()
            txn.add_pose_variables(keyframe.stamp, T_init)
            txn.add_pose_prior(
                keyframe.stamp,
                T_init,
                self.params.pose_prior_covariance,
                source="ScanToMapRegistration::anchor",
            )
            return txn

        self.matcher.set_ref(self.get_map())
        self.matcher.set_target(self._cloud(keyframe, T_init))
        if not self.matcher.match():
            logger.warning("Scan registration failed for keyframe %s, skipping constraint", keyframe.stamp)
            self._map.append((keyframe.stamp, self._cloud(keyframe, T_init)))
            return None

        T_reg = self.matcher.apply_result(T_init)
        if not self._within_thresholds(T_init, T_reg):
            logger.warning(
                "Scan registration for keyframe %s exceeds correction thresholds, skipping constraint",
                keyframe.stamp,
            )
            self._map.append((keyframe.stamp, self._cloud(keyframe, T_init)))
            return None

        if self.output_dir:
            self.matcher.save_results(self.output_dir, f"scan_{keyframe.stamp}_")

        anchor_stamp, T_anchor = self._anchor
        txn = Pose3DTransaction()
        txn.add_pose_variables(anchor_stamp, T_anchor)
        txn.add_pose_variables(keyframe.stamp, T_reg)
        txn.add_pose_constraint(
            anchor_stamp,
            keyframe.stamp,
            inv_T(T_anchor) @ T_reg,
            self.params.registration_covariance,
            source="ScanToMapRegistration::register_new_scan",
        )
        self._map.append((keyframe.stamp, self._cloud(keyframe, T_reg)))
        return txn
