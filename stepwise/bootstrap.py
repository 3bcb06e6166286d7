"""Process start-up: load registries from a module and build an engine."""

from __future__ import annotations

import importlib
import logging
from typing import Optional, Tuple

from .config import StepwiseConfig, load_config
from .engine import WorkflowEngine
from .registry import StepRegistry, WorkflowRegistry

logger = logging.getLogger(__name__)


def load_registries(module_name: str) -> Tuple[WorkflowRegistry, StepRegistry]:
    """Import ``module_name`` and return its populated registries.

    The module must expose a ``workflows`` :class:`WorkflowRegistry` and a
    ``steps`` :class:`StepRegistry` at import time. Both are frozen before
    being returned.
    """
    module = importlib.import_module(module_name)
    workflows = getattr(module, "workflows", None)
    steps = getattr(module, "steps", None)
    if not isinstance(workflows, WorkflowRegistry) or not isinstance(steps, StepRegistry):
        raise ValueError(
            f"Module {module_name} must define 'workflows' (WorkflowRegistry) "
            "and 'steps' (StepRegistry)"
        )
    workflows.freeze()
    steps.freeze()
    logger.info(f"Loaded workflows {workflows.names()} from {module_name}")
    return workflows, steps


def build_engine(
    config: Optional[StepwiseConfig] = None, module_name: Optional[str] = None
) -> WorkflowEngine:
    """Build an engine from configuration.

    ``module_name`` overrides ``config.workflows_module``. Without either, the
    engine gets empty registries; it can still report status and cancel
    persisted runs.
    """
    config = config or load_config()
    module_name = module_name or config.workflows_module
    if module_name:
        workflows, steps = load_registries(module_name)
    else:
        steps = StepRegistry()
        workflows = WorkflowRegistry(steps)
        workflows.freeze()
    return WorkflowEngine.from_config(workflows, steps, config)
