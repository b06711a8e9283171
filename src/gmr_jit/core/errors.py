# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
Exception hierarchy for GMR-JIT.

Two failure classes are fatal and raised:

ConfigurationError
    Invalid or unreadable configuration (unknown matcher type, missing keys).
    Raised at setup; the pipeline never starts.

PreconditionError
    A stage was invoked in a state it cannot run in (e.g. the requested
    output directory does not exist). Raised by that stage only; other
    stages may still be invoked.

Per-item registration or loop-closure failures are not exceptions: they are
logged and skipped by the stage that encounters them.
"""


class GlobalMapRefinementError(Exception):
    """Base class for fatal refinement pipeline errors."""


class ConfigurationError(GlobalMapRefinementError):
    """Raised when a configuration file or dictionary is invalid."""


class PreconditionError(GlobalMapRefinementError):
    """Raised when a stage is invoked with unmet preconditions."""
