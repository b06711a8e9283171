# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
The submap store.

:class:`GlobalMap` owns the ordered list of submaps the refinement stages
operate on. Stages hold references to the submaps for the duration of a run
and mutate poses through the submap API; the store itself only adds
ordering, pose read-back from a solved pose graph and persistence.

Diagnostics written by the ``save_*`` methods (``*_initial`` variants use the
initial poses)::

    <dir>/trajectory.json           keyframe world poses
    <dir>/trajectory_cloud.npz      keyframe positions as a cloud
    <dir>/submap_frames.json        submap world poses
    <dir>/lidar_submaps/            world-frame lidar cloud per submap
    <dir>/keypoint_submaps/         world-frame feature clouds per submap

Persistence layout (``save_data`` / ``load_data``)::

    <dir>/global_map.json        stamps, initial and current poses, keyframe poses
    <dir>/submap_<idx>.npz       raw points and feature clouds per keyframe
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Union

import numpy as np

from gmr_jit.core.types import Stamp
from gmr_jit.slam.pose_graph import PoseGraph
from gmr_jit.world.submap import Keyframe, Submap

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _stamp_to_json(stamp: Stamp) -> Dict[str, int]:
    return {"sec": stamp.sec, "nsec": stamp.nsec}


def _stamp_from_json(j: Dict[str, int]) -> Stamp:
    return Stamp(int(j["sec"]), int(j["nsec"]))


class GlobalMap:
    """Ordered collection of submaps."""

    def __init__(self, submaps: Optional[Iterable[Submap]] = None) -> None:
        self._submaps: List[Submap] = []
        for submap in submaps or ():
            self.add_submap(submap)

    def __len__(self) -> int:
        return len(self._submaps)

    def __iter__(self) -> Iterator[Submap]:
        return iter(self._submaps)

    def __getitem__(self, idx: int) -> Submap:
        return self._submaps[idx]

    def add_submap(self, submap: Submap) -> None:
        """Append a submap. Stamps must be strictly increasing."""
        if self._submaps and not self._submaps[-1].stamp < submap.stamp:
            raise ValueError(
                f"Submap stamp {submap.stamp} is not after {self._submaps[-1].stamp}"
            )
        self._submaps.append(submap)

    def get_submaps(self) -> List[Submap]:
        return list(self._submaps)

    def update_submap_poses(self, graph: PoseGraph) -> int:
        """
        Overwrite every submap pose that has a variable in ``graph`` with the
        solved estimate. Returns the number of submaps updated.
        """
        updated = 0
        for submap in self._submaps:
            if not graph.has_variable(submap.stamp):
                continue
            submap.update_pose(graph.get_pose(submap.stamp))
            updated += 1
        return updated

    # --- Diagnostics output ---

    def save_trajectory_file(self, output_dir: PathLike, save_initial: bool = False) -> Path:
        """Write every keyframe's world pose, in time order, to ``trajectory.json``."""
        poses = []
        for submap in self._submaps:
            for stamp, T in submap.keyframe_poses_in_world_frame(save_initial).items():
                poses.append({**_stamp_to_json(stamp), "T_WORLD_KEYFRAME": T.tolist()})
        name = "trajectory_initial.json" if save_initial else "trajectory.json"
        path = Path(output_dir) / name
        path.write_text(json.dumps({"poses": poses}, indent=4))
        return path

    def save_submap_frames(self, output_dir: PathLike, save_initial: bool = False) -> Path:
        """Write each submap's world pose to ``submap_frames.json``."""
        frames = [
            {**_stamp_to_json(s.stamp), "T_WORLD_SUBMAP": s.world_pose(save_initial).tolist()}
            for s in self._submaps
        ]
        name = "submap_frames_initial.json" if save_initial else "submap_frames.json"
        path = Path(output_dir) / name
        path.write_text(json.dumps({"submaps": frames}, indent=4))
        return path

    def save_trajectory_clouds(self, output_dir: PathLike, save_initial: bool = False) -> Path:
        """
        Write keyframe positions as one world-frame cloud to
        ``trajectory_cloud.npz``, with the stamps of each point alongside.
        """
        points, stamps = [], []
        for submap in self._submaps:
            for stamp, T in submap.keyframe_poses_in_world_frame(save_initial).items():
                points.append(T[:3, 3])
                stamps.append((stamp.sec, stamp.nsec))
        name = "trajectory_cloud_initial.npz" if save_initial else "trajectory_cloud.npz"
        path = Path(output_dir) / name
        np.savez(
            path,
            points=np.asarray(points, dtype=np.float64).reshape(-1, 3),
            stamps=np.asarray(stamps, dtype=np.int64).reshape(-1, 2),
        )
        return path

    def save_lidar_submaps(self, output_dir: PathLike, save_initial: bool = False) -> Path:
        """Write each submap's combined lidar points, in the world frame, to ``lidar_submaps/``."""
        save_dir = Path(output_dir) / ("lidar_submaps_initial" if save_initial else "lidar_submaps")
        save_dir.mkdir(exist_ok=True)
        for submap in self._submaps:
            np.savez(
                save_dir / f"submap_{submap.stamp}.npz",
                points=submap.points_in_world_frame(save_initial),
            )
        return save_dir

    def save_keypoint_submaps(self, output_dir: PathLike, save_initial: bool = False) -> Path:
        """
        Write each submap's labelled feature clouds, in the world frame, to
        ``keypoint_submaps/``. Submaps without features are skipped.
        """
        save_dir = Path(output_dir) / ("keypoint_submaps_initial" if save_initial else "keypoint_submaps")
        save_dir.mkdir(exist_ok=True)
        for submap in self._submaps:
            if not submap.has_features():
                continue
            np.savez(
                save_dir / f"submap_{submap.stamp}.npz",
                **submap.feature_points_in_world_frame(save_initial),
            )
        return save_dir

    # --- Round-trip persistence ---

    def save_data(self, output_dir: PathLike) -> None:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        meta = []
        for idx, submap in enumerate(self._submaps):
            arrays: Dict[str, np.ndarray] = {}
            keyframes = []
            for k, kf in enumerate(submap.keyframes):
                arrays[f"kf{k}_points"] = kf.points
                for label, pts in kf.features.items():
                    arrays[f"kf{k}_feat_{label}"] = pts
                keyframes.append({
                    **_stamp_to_json(kf.stamp),
                    "T_SUBMAP_KEYFRAME": kf.T_SUBMAP_KEYFRAME.tolist(),
                    "features": sorted(kf.features.keys()),
                })
            np.savez(output_dir / f"submap_{idx}.npz", **arrays)
            meta.append({
                **_stamp_to_json(submap.stamp),
                "T_WORLD_SUBMAP_INIT": submap.T_WORLD_SUBMAP_INIT.tolist(),
                "T_WORLD_SUBMAP": submap.T_WORLD_SUBMAP.tolist(),
                "keyframes": keyframes,
            })

        (output_dir / "global_map.json").write_text(json.dumps({"submaps": meta}, indent=4))
        logger.info("Saved %d submaps to %s", len(self._submaps), output_dir)

    @staticmethod
    def load_data(data_dir: PathLike) -> "GlobalMap":
        data_dir = Path(data_dir)
        meta_path = data_dir / "global_map.json"
        if not meta_path.exists():
            raise FileNotFoundError(f"Missing global map data: {meta_path}")

        meta = json.loads(meta_path.read_text())
        global_map = GlobalMap()
        for idx, j_submap in enumerate(meta["submaps"]):
            with np.load(data_dir / f"submap_{idx}.npz") as arrays:
                keyframes = []
                for k, j_kf in enumerate(j_submap["keyframes"]):
                    keyframes.append(Keyframe(
                        stamp=_stamp_from_json(j_kf),
                        T_SUBMAP_KEYFRAME=np.array(j_kf["T_SUBMAP_KEYFRAME"]),
                        points=arrays[f"kf{k}_points"],
                        features={
                            label: arrays[f"kf{k}_feat_{label}"] for label in j_kf["features"]
                        },
                    ))
            submap = Submap(
                _stamp_from_json(j_submap),
                np.array(j_submap["T_WORLD_SUBMAP_INIT"]),
                keyframes,
            )
            submap.update_pose(np.array(j_submap["T_WORLD_SUBMAP"]))
            global_map.add_submap(submap)
        return global_map
