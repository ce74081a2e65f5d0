import pytest

from waveline import (
    HandlerRegistry,
    MemoryEventPublisher,
    Orchestrator,
    StateStore,
    WavelineSettings,
    default_registry,
)


@pytest.fixture
def events() -> MemoryEventPublisher:
    return MemoryEventPublisher()


@pytest.fixture
def registry() -> HandlerRegistry:
    reg = default_registry()
    reg.register_custom("echo", lambda **inputs: dict(inputs))
    reg.register_custom("add", lambda a, b: {"sum": a + b})
    return reg


@pytest.fixture
def settings() -> WavelineSettings:
    return WavelineSettings(max_concurrent_steps=2, store_retry_delay=0.0)


@pytest.fixture
def store() -> StateStore:
    return StateStore.memory()


@pytest.fixture
def orchestrator(store, registry, events, settings) -> Orchestrator:
    return Orchestrator(store, registry=registry, publisher=events, settings=settings)
