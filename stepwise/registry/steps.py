"""Step registry: the invocation boundary between the engine and step code."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from pydantic_core import PydanticSerializationError, to_jsonable_python

from ..errors import RegistryFrozen, StepFailure, StepNotFound
from ..utils.retry import schedule_retry

logger = logging.getLogger(__name__)

StepFunction = Callable[[Any], Any]


@dataclass(frozen=True)
class StepEntry:
    """A registered unit of work and its invocation policy."""

    step_id: str
    fn: StepFunction
    retry_safe: bool = False
    max_attempts: int = 1
    timeout: Optional[float] = None
    description: Optional[str] = None

    @property
    def attempts(self) -> int:
        return self.max_attempts if self.retry_safe else 1


class StepRegistry:
    """Maps step identifiers to callables.

    Populate once at process start, then :meth:`freeze` before serving
    traffic.
    """

    def __init__(
        self,
        default_timeout: Optional[float] = None,
        backoff_base: float = 0.05,
        backoff_jitter: float = 0.05,
    ) -> None:
        self._entries: Dict[str, StepEntry] = {}
        self._frozen = False
        self.default_timeout = default_timeout
        self.backoff_base = backoff_base
        self.backoff_jitter = backoff_jitter

    def register(
        self,
        step_id: str,
        fn: Optional[StepFunction] = None,
        *,
        retry_safe: bool = False,
        max_attempts: int = 1,
        timeout: Optional[float] = None,
        description: Optional[str] = None,
    ):
        """Register ``fn`` under ``step_id``; usable as a decorator."""

        def decorator(func: StepFunction) -> StepFunction:
            if self._frozen:
                raise RegistryFrozen(f"Cannot register step {step_id!r}: registry is frozen")
            if step_id in self._entries:
                raise ValueError(f"Step {step_id!r} is already registered")
            if max_attempts < 1:
                raise ValueError("max_attempts must be at least 1")
            self._entries[step_id] = StepEntry(
                step_id=step_id,
                fn=func,
                retry_safe=retry_safe,
                max_attempts=max_attempts,
                timeout=timeout,
                description=description or inspect.getdoc(func),
            )
            logger.debug(f"Registered step {step_id}")
            return func

        if fn is not None:
            return decorator(fn)
        return decorator

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, step_id: str) -> StepEntry:
        try:
            return self._entries[step_id]
        except KeyError:
            raise StepNotFound(step_id) from None

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._entries

    def names(self) -> list[str]:
        return list(self._entries)

    async def _run(self, entry: StepEntry, step_input: Any) -> Any:
        try:
            if inspect.iscoroutinefunction(entry.fn):
                return await entry.fn(step_input)
            return await asyncio.to_thread(entry.fn, step_input)
        except (asyncio.TimeoutError, TimeoutError) as e:
            # Raised by the step itself; keep it apart from the wait_for deadline.
            raise StepFailure(
                str(e) or type(e).__name__,
                step_id=entry.step_id,
                details={"type": type(e).__name__},
            ) from e

    async def _call(
        self, entry: StepEntry, step_input: Any, default_timeout: Optional[float] = None
    ) -> Any:
        timeout = entry.timeout
        if timeout is None:
            timeout = default_timeout if default_timeout is not None else self.default_timeout
        if timeout is None:
            return await self._run(entry, step_input)
        try:
            return await asyncio.wait_for(self._run(entry, step_input), timeout)
        except asyncio.TimeoutError:
            raise StepFailure(
                f"Step {entry.step_id} timed out after {timeout}s",
                step_id=entry.step_id,
                details={"type": "TimeoutError", "timeout": timeout},
            ) from None

    async def invoke(
        self, step_id: str, step_input: Any, *, default_timeout: Optional[float] = None
    ) -> Any:
        """Run the step and return its JSON-compatible output.

        ``default_timeout`` applies to steps registered without a timeout and
        takes precedence over the registry's own default.

        Raises:
            StepNotFound: ``step_id`` is not registered.
            StepFailure: the step failed on its final attempt.
        """
        entry = self.get(step_id)
        attempt = 0
        while True:
            attempt += 1
            try:
                output = await self._call(entry, step_input, default_timeout)
                break
            except StepFailure as e:
                failure = e
            except Exception as e:
                failure = StepFailure(
                    str(e),
                    step_id=step_id,
                    details={"type": type(e).__name__},
                )
                failure.__cause__ = e

            if failure.step_id is None:
                failure.step_id = step_id
            failure.details.setdefault("attempts", attempt)
            if attempt >= entry.attempts or not failure.retryable:
                raise failure
            logger.warning(
                f"Step {step_id} failed on attempt {attempt}/{entry.attempts}: {failure.message}; retrying"
            )
            await schedule_retry(attempt, base=self.backoff_base, jitter=self.backoff_jitter)

        try:
            return to_jsonable_python(output)
        except PydanticSerializationError as e:
            raise StepFailure(
                f"Step {step_id} returned a value that cannot be persisted: {e}",
                step_id=step_id,
                details={"type": "SerializationError"},
            ) from e
