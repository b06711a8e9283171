# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Core typed data structures for GMR-JIT.

This module defines the lightweight container classes used by the factor
graph, the pose graph and the refinement stages. These types are
intentionally minimal: they store only structural information and current
values, while all numerical work is performed by JAX functions in the
optimization layer.

Classes
-------
Stamp
    Timestamp split into whole seconds and nanoseconds. Submaps, keyframes
    and pose-graph variables are keyed by their stamp.

Variable
    Represents a node in the factor graph. A variable contains:
    - id: Unique identifier
    - type: String key selecting the manifold (e.g. "pose_se3")
    - value: Current numeric state, a 1-D JAX array

Factor
    Represents a constraint between one or more variables. A factor contains:
    - id: Unique identifier
    - type: String key selecting a residual function
    - var_ids: Ordered tuple of variable ids used by the residual
    - params: Dictionary of parameters passed into the residual function
              (measurements, sqrt-information weights, ...)

Notes
-----
These objects are deliberately simple and mutable; they are not meant to be
used directly inside JAX-compiled functions. During optimization, the
FactorGraph packs variable values into a flat JAX array `x`.
"""

from __future__ import annotations
from dataclasses import dataclass
from functools import total_ordering
from typing import NewType, Dict, Any

NodeId = NewType("NodeId", int)
FactorId = NewType("FactorId", int)

NSEC_PER_SEC = 1_000_000_000


@total_ordering
@dataclass(frozen=True)
class Stamp:
    """Timestamp with nanosecond resolution."""
    sec: int
    nsec: int = 0

    def __post_init__(self) -> None:
        if self.nsec < 0 or self.nsec >= NSEC_PER_SEC:
            raise ValueError(f"nsec out of range: {self.nsec}")

    @staticmethod
    def from_sec(t: float) -> "Stamp":
        total = int(round(t * NSEC_PER_SEC))
        return Stamp(total // NSEC_PER_SEC, total % NSEC_PER_SEC)

    def to_sec(self) -> float:
        return self.sec + self.nsec / NSEC_PER_SEC

    def to_nsec(self) -> int:
        return self.sec * NSEC_PER_SEC + self.nsec

    def __lt__(self, other: "Stamp") -> bool:
        return self.to_nsec() < other.to_nsec()

    def __str__(self) -> str:
        return f"{self.sec}.{self.nsec:09d}"


@dataclass
class Variable:
    """Generic optimization variable node in the factor graph."""
    id: NodeId
    type: str          # e.g. "pose_se3"
    value: Any         # 1-D JAX array


@dataclass
class Factor:
    """Abstract factor connecting variables."""
    id: FactorId
    type: str          # e.g. "prior_se3", "between_se3"
    var_ids: tuple[NodeId, ...]
    params: Dict[str, Any]  # Measurement, sqrt-information, etc.
    source: str = ""        # component that created the factor
