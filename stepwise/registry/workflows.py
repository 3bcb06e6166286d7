"""Workflow registry keyed by stable workflow names."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from ..contracts import WorkflowDefinition
from ..errors import RegistryFrozen, StepNotFound, WorkflowNotFound
from .steps import StepRegistry

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """Holds immutable workflow definitions.

    When bound to a :class:`StepRegistry`, every step a definition references
    must already be registered there.
    """

    def __init__(self, steps: Optional[StepRegistry] = None) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._steps = steps
        self._frozen = False

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        if self._frozen:
            raise RegistryFrozen(
                f"Cannot register workflow {definition.name!r}: registry is frozen"
            )
        if definition.name in self._definitions:
            raise ValueError(f"Workflow {definition.name!r} is already registered")
        if self._steps is not None:
            for step_id in definition.step_ids():
                if step_id not in self._steps:
                    raise StepNotFound(step_id)
        self._definitions[definition.name] = definition
        logger.info(
            f"Registered workflow {definition.name} ({len(definition.nodes)} nodes)"
        )
        return definition

    def freeze(self) -> None:
        self._frozen = True
        if self._steps is not None:
            self._steps.freeze()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> WorkflowDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise WorkflowNotFound(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def names(self) -> list[str]:
        return sorted(self._definitions)
