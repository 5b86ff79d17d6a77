import pytest

from zgproxy.core.config import Settings
from zgproxy.providers.resolver import ProviderResolver, SingleSlotProviderCache
from zgproxy.services.orchestrator import CompletionOrchestrator
from zgproxy.tests.utils.broker import FakeBroker
from zgproxy.tests.utils.upstream import Upstream


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def resolver(broker) -> ProviderResolver:
    return ProviderResolver(broker)


@pytest.fixture
def single_slot_resolver(broker) -> ProviderResolver:
    return ProviderResolver(broker, cache=SingleSlotProviderCache())


@pytest.fixture
def make_orchestrator(resolver):
    def factory(upstream: Upstream, **kwargs) -> CompletionOrchestrator:
        return CompletionOrchestrator(resolver, upstream.client(), **kwargs)

    return factory


@pytest.fixture
def settings() -> Settings:
    return Settings(AUTH_TOKEN="secret-token", ENVIRONMENT="local", RATE_LIMIT_PER_MINUTE=1000)
