# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Before/after pose deltas recorded by the refinement stages.

:class:`RegistrationResult` condenses two poses into a rotation delta in
degrees and a translation delta in millimetres. :class:`Summary` keeps one
map per stage (keyframe stamps for submap refinement, submap stamps for
submap alignment). Entries are insert-once: a second result for a stamp that
is already present is ignored, as the first run over a stamp is the one that
moved it from its original estimate.

The deltas are diagnostics only and never feed back into optimization.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Union

import numpy as np

from gmr_jit.core.math3d import rotation_angle_deg
from gmr_jit.core.transforms import inv_T
from gmr_jit.core.types import Stamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrationResult:
    dR_deg: float
    dt_mm: float

    @staticmethod
    def from_poses(Ti: np.ndarray, Tf: np.ndarray) -> "RegistrationResult":
        T_diff = inv_T(np.asarray(Ti, dtype=np.float64)) @ np.asarray(Tf, dtype=np.float64)
        dR = abs(float(rotation_angle_deg(T_diff[:3, :3])))
        dt = float(np.linalg.norm(T_diff[:3, 3])) * 1000.0
        return RegistrationResult(dR_deg=dR, dt_mm=dt)


@dataclass
class Summary:
    submap_refinement: Dict[Stamp, RegistrationResult] = field(default_factory=dict)
    submap_alignment: Dict[Stamp, RegistrationResult] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def _emplace(self, target: Dict[Stamp, RegistrationResult], stamp: Stamp,
                 result: RegistrationResult) -> bool:
        with self._lock:
            if stamp in target:
                logger.debug("Summary already holds a result for %s, keeping the first", stamp)
                return False
            target[stamp] = result
            return True

    def add_refinement(self, stamp: Stamp, result: RegistrationResult) -> bool:
        return self._emplace(self.submap_refinement, stamp, result)

    def add_alignment(self, stamp: Stamp, result: RegistrationResult) -> bool:
        return self._emplace(self.submap_alignment, stamp, result)

    def clear(self) -> None:
        with self._lock:
            self.submap_refinement.clear()
            self.submap_alignment.clear()

    @staticmethod
    def _to_json(results: Dict[Stamp, RegistrationResult]) -> List[dict]:
        return [
            {"dt_mm": r.dt_mm, "dR_deg": r.dR_deg, "sec": stamp.sec, "nsec": stamp.nsec}
            for stamp, r in sorted(results.items())
        ]

    def to_json(self) -> dict:
        with self._lock:
            return {
                "submap_refinement": self._to_json(self.submap_refinement),
                "submap_alignment": self._to_json(self.submap_alignment),
            }

    def save(self, output_path: Union[str, Path]) -> Path:
        path = Path(output_path) / "summary.json"
        path.write_text(json.dumps(self.to_json(), indent=4) + "\n")
        return path
