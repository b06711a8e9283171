# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Transactions: atomic batches of graph additions.

A :class:`Transaction` collects variable declarations and factors that refer
to variables by a user-facing key (for poses, the :class:`~gmr_jit.core.types.Stamp`
of the submap or keyframe) rather than by ``NodeId``. The pose graph resolves
keys to node ids when the transaction is committed with
``PoseGraph.update``, so a transaction can be built before the variables it
references exist in the graph.

Transactions are plain data. They can be merged, which is how the loop-closure
sweep bundles every accepted closure for one query submap into a single
commit.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, List, Tuple

import jax.numpy as jnp


@dataclass
class VariableSpec:
    """Declaration of one variable, keyed by a hashable handle."""
    key: Hashable
    type: str
    value: jnp.ndarray


@dataclass
class FactorSpec:
    """A factor whose variables are referenced by key."""
    type: str
    keys: Tuple[Hashable, ...]
    params: Dict[str, Any]
    source: str = ""


@dataclass
class Transaction:
    """Ordered batch of variable declarations and factors."""
    variables: List[VariableSpec] = field(default_factory=list)
    factors: List[FactorSpec] = field(default_factory=list)

    def add_variable(self, key: Hashable, var_type: str, value: jnp.ndarray) -> None:
        """Declare a variable. Duplicate keys inside one transaction keep the first value."""
        if any(v.key == key for v in self.variables):
            return
        self.variables.append(VariableSpec(key=key, type=var_type, value=jnp.asarray(value)))

    def add_factor(
        self,
        f_type: str,
        keys: Tuple[Hashable, ...],
        params: Dict[str, Any],
        source: str = "",
    ) -> None:
        self.factors.append(FactorSpec(type=f_type, keys=tuple(keys), params=params, source=source))

    def merge(self, other: "Transaction") -> None:
        """Append every declaration and factor of ``other`` to this transaction."""
        for v in other.variables:
            self.add_variable(v.key, v.type, v.value)
        self.factors.extend(other.factors)

    def empty(self) -> bool:
        return not self.variables and not self.factors

    def __len__(self) -> int:
        return len(self.variables) + len(self.factors)
