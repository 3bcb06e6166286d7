"""Tests for step registration and invocation."""

import asyncio

import pytest
from pydantic import BaseModel

from stepwise.errors import RegistryFrozen, StepFailure, StepNotFound
from stepwise.registry import StepRegistry


def _registry(**kwargs) -> StepRegistry:
    return StepRegistry(backoff_base=0, backoff_jitter=0, **kwargs)


class Page(BaseModel):
    url: str
    size: int


@pytest.mark.asyncio
async def test_invoke_sync_and_async_steps():
    steps = _registry()

    @steps.register("double")
    def double(x):
        return x * 2

    @steps.register("fetch", description="Fetch a page")
    async def fetch(url):
        return Page(url=url, size=3)

    assert double(2) == 4
    assert await steps.invoke("double", 21) == 42
    assert await steps.invoke("fetch", "https://example.com") == {
        "url": "https://example.com",
        "size": 3,
    }
    assert steps.get("fetch").description == "Fetch a page"
    assert steps.names() == ["double", "fetch"]


def test_register_rules():
    steps = _registry()
    steps.register("a", lambda x: x)
    with pytest.raises(ValueError):
        steps.register("a", lambda x: x)
    with pytest.raises(ValueError):
        steps.register("b", lambda x: x, retry_safe=True, max_attempts=0)
    with pytest.raises(StepNotFound):
        steps.get("missing")

    steps.freeze()
    assert steps.frozen
    with pytest.raises(RegistryFrozen):
        steps.register("c", lambda x: x)


@pytest.mark.asyncio
async def test_exception_becomes_step_failure():
    steps = _registry()

    @steps.register("boom")
    def boom(_):
        raise ValueError("bad input")

    with pytest.raises(StepFailure) as excinfo:
        await steps.invoke("boom", None)
    failure = excinfo.value
    assert failure.message == "bad input"
    assert failure.step_id == "boom"
    assert failure.details["type"] == "ValueError"
    assert failure.details["attempts"] == 1
    assert isinstance(failure.__cause__, ValueError)


@pytest.mark.asyncio
async def test_retry_safe_step_is_retried():
    steps = _registry()
    calls = []

    @steps.register("flaky", retry_safe=True, max_attempts=3)
    def flaky(x):
        calls.append(x)
        if len(calls) < 3:
            raise ConnectionError("try again")
        return "ok"

    assert await steps.invoke("flaky", 1) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_unsafe_step_runs_once():
    steps = _registry()
    calls = []

    @steps.register("charge", max_attempts=3)
    def charge(x):
        calls.append(x)
        raise ConnectionError("gateway down")

    with pytest.raises(StepFailure):
        await steps.invoke("charge", 1)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_non_retryable_failure_stops_retries():
    steps = _registry()
    calls = []

    @steps.register("validate", retry_safe=True, max_attempts=5)
    def validate(x):
        calls.append(x)
        raise StepFailure("invalid document", retryable=False)

    with pytest.raises(StepFailure) as excinfo:
        await steps.invoke("validate", 1)
    assert len(calls) == 1
    assert excinfo.value.step_id == "validate"


@pytest.mark.asyncio
async def test_timeout_fails_step():
    steps = _registry()

    @steps.register("slow", timeout=0.05)
    async def slow(_):
        await asyncio.sleep(1)

    with pytest.raises(StepFailure) as excinfo:
        await steps.invoke("slow", None)
    assert excinfo.value.details["type"] == "TimeoutError"


@pytest.mark.asyncio
async def test_default_timeout_applies():
    steps = _registry(default_timeout=0.05)

    @steps.register("slow")
    async def slow(_):
        await asyncio.sleep(1)

    with pytest.raises(StepFailure):
        await steps.invoke("slow", None)


@pytest.mark.asyncio
async def test_unserializable_output_fails():
    steps = _registry()
    steps.register("opaque", lambda _: object())

    with pytest.raises(StepFailure) as excinfo:
        await steps.invoke("opaque", None)
    assert excinfo.value.details["type"] == "SerializationError"


@pytest.mark.asyncio
async def test_timeout_raised_by_step_keeps_its_message():
    steps = _registry()

    @steps.register("fetch", timeout=30)
    async def fetch(_):
        raise TimeoutError("upstream read timeout")

    with pytest.raises(StepFailure) as excinfo:
        await steps.invoke("fetch", None)
    assert excinfo.value.message == "upstream read timeout"
    assert excinfo.value.details["type"] == "TimeoutError"
    assert "timeout" not in excinfo.value.details


@pytest.mark.asyncio
async def test_default_timeout_argument_leaves_registry_untouched():
    steps = _registry()

    @steps.register("slow")
    async def slow(_):
        await asyncio.sleep(1)

    with pytest.raises(StepFailure) as excinfo:
        await steps.invoke("slow", None, default_timeout=0.05)
    assert excinfo.value.details["timeout"] == 0.05
    assert steps.default_timeout is None
