"""Step and workflow registries.

Registries are explicit objects populated once at process start (typically
by the module named in ``workflows_module``) and frozen before serving
traffic; there is no implicit module-level registry.
"""

from __future__ import annotations

from .steps import StepEntry, StepFunction, StepRegistry
from .workflows import WorkflowRegistry

__all__ = [
    "StepEntry",
    "StepFunction",
    "StepRegistry",
    "WorkflowRegistry",
]
