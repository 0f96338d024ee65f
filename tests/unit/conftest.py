"""Unit test fixtures."""

import pytest

from tests.fixtures.providers import FakeProvider, registry_for
from zae_reconciler.config import ExecutorOptions, RetryPolicy
from zae_reconciler.providers import ProviderRegistry
from zae_reconciler.state import LocalStateStore


@pytest.fixture
def provider() -> FakeProvider:
    """In-memory provider recording every call."""
    return FakeProvider()


@pytest.fixture
def providers(provider: FakeProvider) -> ProviderRegistry:
    """Registry routing every kind to the in-memory provider."""
    return registry_for(provider)


@pytest.fixture
def store(tmp_path) -> LocalStateStore:
    """Local state store in a temporary directory."""
    return LocalStateStore(tmp_path / "state.json")


@pytest.fixture
def options() -> ExecutorOptions:
    """Executor options without backoff delays."""
    return ExecutorOptions(
        max_concurrency=4,
        retry=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=False),
    )


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the executor's backoff."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    """Backoff sleep that records the delay and returns immediately."""

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep
