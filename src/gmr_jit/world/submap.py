# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Submaps and keyframes: the measurement containers the pipeline refines.

A :class:`Submap` is a spatially local bundle of consecutive keyframes that
share one anchoring world pose. Each :class:`Keyframe` stores its raw points
in its own sensor frame plus an optional set of labelled feature clouds
(e.g. ``"edges"`` and ``"surfaces"``), and its pose relative to the submap.

Pose bookkeeping
----------------
- ``T_WORLD_SUBMAP_INIT`` is captured at construction and can never be
  changed afterwards (the returned array is a read-only view).
- ``T_WORLD_SUBMAP`` is the current estimate. Only the alignment and
  pose-graph stages call :meth:`Submap.update_pose`.
- Keyframe poses ``T_SUBMAP_KEYFRAME`` are only rewritten by the submap
  refinement stage.

The raw measurement arrays are never modified; every accessor returns newly
transformed copies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import numpy as np

from gmr_jit.core.math3d import matrix_to_pose_vec
from gmr_jit.core.transforms import as_transform, transform_points_np
from gmr_jit.core.types import Stamp


def _combine(clouds: List[np.ndarray]) -> np.ndarray:
    if not clouds:
        return np.zeros((0, 3))
    return np.concatenate(clouds, axis=0)


@dataclass
class Keyframe:
    """A single timestamped scan and its pose inside the owning submap."""
    stamp: Stamp
    T_SUBMAP_KEYFRAME: np.ndarray
    points: np.ndarray
    features: Dict[str, np.ndarray] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.T_SUBMAP_KEYFRAME = as_transform(self.T_SUBMAP_KEYFRAME)
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 3)
        self.features = {
            label: np.asarray(pts, dtype=np.float64).reshape(-1, 3)
            for label, pts in self.features.items()
        }

    def update_pose(self, T_SUBMAP_KEYFRAME: np.ndarray) -> None:
        self.T_SUBMAP_KEYFRAME = as_transform(T_SUBMAP_KEYFRAME)

    def points_in_submap_frame(self) -> np.ndarray:
        return transform_points_np(self.T_SUBMAP_KEYFRAME, self.points)

    def features_in_submap_frame(self) -> Dict[str, np.ndarray]:
        return {
            label: transform_points_np(self.T_SUBMAP_KEYFRAME, pts)
            for label, pts in self.features.items()
        }


class Submap:
    """Ordered keyframes anchored at one world pose."""

    def __init__(
        self,
        stamp: Stamp,
        T_WORLD_SUBMAP: np.ndarray,
        keyframes: Optional[Iterable[Keyframe]] = None,
    ) -> None:
        self._stamp = stamp
        self._T_WORLD_SUBMAP = as_transform(T_WORLD_SUBMAP)
        self._T_WORLD_SUBMAP_INIT = self._T_WORLD_SUBMAP.copy()
        self._T_WORLD_SUBMAP_INIT.flags.writeable = False
        self._keyframes: Dict[Stamp, Keyframe] = {}
        for kf in keyframes or ():
            self.add_keyframe(kf)

    def __repr__(self) -> str:
        return f"Submap(stamp={self._stamp}, keyframes={len(self._keyframes)})"

    # --- Identity & poses ---

    @property
    def stamp(self) -> Stamp:
        return self._stamp

    @property
    def T_WORLD_SUBMAP(self) -> np.ndarray:
        return self._T_WORLD_SUBMAP.copy()

    @property
    def T_WORLD_SUBMAP_INIT(self) -> np.ndarray:
        return self._T_WORLD_SUBMAP_INIT

    def update_pose(self, T_WORLD_SUBMAP: np.ndarray) -> None:
        self._T_WORLD_SUBMAP = as_transform(T_WORLD_SUBMAP)

    def world_pose(self, use_initial: bool = False) -> np.ndarray:
        return self._T_WORLD_SUBMAP_INIT.copy() if use_initial else self.T_WORLD_SUBMAP

    def position(self, use_initial: bool = False) -> np.ndarray:
        return self.world_pose(use_initial)[:3, 3]

    def orientation(self, use_initial: bool = False) -> np.ndarray:
        """Rotation vector (axis-angle) of the submap in the world frame."""
        return np.asarray(self.pose_vector(use_initial)[3:], dtype=np.float64)

    def pose_vector(self, use_initial: bool = False) -> np.ndarray:
        """6D ``[tx, ty, tz, wx, wy, wz]`` encoding of the world pose."""
        T = self.world_pose(use_initial)
        v = np.array(matrix_to_pose_vec(T), dtype=np.float64)
        v[:3] = T[:3, 3]
        return v

    # --- Keyframes ---

    def add_keyframe(self, keyframe: Keyframe) -> None:
        if keyframe.stamp in self._keyframes:
            raise ValueError(f"Duplicate keyframe stamp {keyframe.stamp} in submap {self._stamp}")
        self._keyframes[keyframe.stamp] = keyframe
        self._keyframes = dict(sorted(self._keyframes.items()))

    @property
    def keyframes(self) -> List[Keyframe]:
        """Keyframes in temporal order."""
        return list(self._keyframes.values())

    @property
    def num_keyframes(self) -> int:
        return len(self._keyframes)

    def keyframe(self, stamp: Stamp) -> Keyframe:
        return self._keyframes[stamp]

    def has_features(self) -> bool:
        return any(kf.features for kf in self._keyframes.values())

    # --- Point accessors ---

    def points_in_submap_frame(self) -> np.ndarray:
        return _combine([kf.points_in_submap_frame() for kf in self._keyframes.values()])

    def points_in_world_frame(self, use_initial: bool = False) -> np.ndarray:
        return transform_points_np(self.world_pose(use_initial), self.points_in_submap_frame())

    def feature_points_in_submap_frame(self) -> Dict[str, np.ndarray]:
        grouped: Dict[str, List[np.ndarray]] = {}
        for kf in self._keyframes.values():
            for label, pts in kf.features_in_submap_frame().items():
                grouped.setdefault(label, []).append(pts)
        return {label: _combine(clouds) for label, clouds in grouped.items()}

    def feature_points_in_world_frame(self, use_initial: bool = False) -> Dict[str, np.ndarray]:
        T = self.world_pose(use_initial)
        return {
            label: transform_points_np(T, pts)
            for label, pts in self.feature_points_in_submap_frame().items()
        }

    def keyframe_poses_in_world_frame(self, use_initial: bool = False) -> Dict[Stamp, np.ndarray]:
        T = self.world_pose(use_initial)
        return {stamp: T @ kf.T_SUBMAP_KEYFRAME for stamp, kf in self._keyframes.items()}
