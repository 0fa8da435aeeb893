"""Shared test fixtures for the waworker test suite.

Provides an in-memory store, a mocked LLM provider, a message router and a
SessionRegistry builder wired to the scripted FakeTransportFactory.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from tests.fakes import FakeTransportFactory
from waworker.config.schema import AIConfig, SessionConfig
from waworker.providers.base import LLMProvider, LLMResponse
from waworker.router.router import MessageRouter
from waworker.router.strategies import StrategyResolver
from waworker.session.registry import SessionRegistry
from waworker.storage.memory import MemoryStore
from waworker.transport.base import TransportOptions

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def store() -> MemoryStore:
    store = MemoryStore()
    store.add_instance("t1")
    store.add_instance("t2")
    return store


@pytest.fixture
def ai_config() -> AIConfig:
    return AIConfig(default_system_prompt="DEFAULT PROMPT")


@pytest.fixture
def provider() -> Mock:
    provider = Mock(spec=LLMProvider)
    provider.chat = AsyncMock(return_value=LLMResponse(content="AI reply"))
    return provider


@pytest.fixture
def http_client() -> httpx.AsyncClient:
    # Webhook tests build their own client around httpx.MockTransport
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))


@pytest.fixture
def router(store: MemoryStore, provider: Mock, http_client: httpx.AsyncClient, ai_config: AIConfig) -> MessageRouter:
    resolver = StrategyResolver(provider=provider, store=store, http=http_client, ai_config=ai_config)
    return MessageRouter(store, resolver)


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(reconnect_delay_s=0.01, pairing_delay_s=0.01)


@pytest.fixture
def make_registry(store: MemoryStore, router: MessageRouter, session_config: SessionConfig):
    """Build a SessionRegistry around a FakeTransportFactory.

    Tests must ``await registry.shutdown()`` when done.
    """

    def build(
        factory: FakeTransportFactory | None = None,
        options: TransportOptions | None = None,
    ) -> tuple[SessionRegistry, FakeTransportFactory]:
        factory = factory or FakeTransportFactory()
        registry = SessionRegistry(
            store=store,
            router=router,
            transport_factory=factory,
            options=options or TransportOptions(connect_timeout_s=1.0, request_timeout_s=1.0),
            config=session_config,
        )
        return registry, factory

    return build
