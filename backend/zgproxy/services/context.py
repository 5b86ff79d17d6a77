from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from zgproxy.core.config import Settings
from zgproxy.providers.base import Broker
from zgproxy.providers.resolver import ProviderResolver, build_cache
from zgproxy.providers.static import StaticBroker
from zgproxy.services.orchestrator import CompletionOrchestrator
from zgproxy.services.reshaper import Granularity

logger = structlog.get_logger()


@dataclass
class GatewayContext:
    """Everything a request needs, built once at startup and passed explicitly."""

    broker: Broker
    resolver: ProviderResolver
    orchestrator: CompletionOrchestrator
    client: httpx.AsyncClient

    async def aclose(self) -> None:
        await self.client.aclose()


def build_context(
    settings: Settings,
    broker: Optional[Broker] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> GatewayContext:
    if broker is None:
        broker = StaticBroker(settings.BROKER_SERVICES, settings.BROKER_AUTH_HEADERS)
    if client is None:
        client = httpx.AsyncClient(timeout=httpx.Timeout(settings.UPSTREAM_TIMEOUT_SECONDS))

    resolver = ProviderResolver(
        broker,
        cache=build_cache(
            settings.PROVIDER_CACHE_MODE,
            maxsize=settings.PROVIDER_CACHE_SIZE,
            ttl=settings.PROVIDER_CACHE_TTL_SECONDS,
        ),
        address_prefix=settings.PROVIDER_ADDRESS_PREFIX,
    )
    orchestrator = CompletionOrchestrator(
        resolver,
        client,
        granularity=Granularity(settings.SYNTHESIS_GRANULARITY),
        stream_upstream=settings.UPSTREAM_STREAM_REQUESTS,
        stream_timeout=settings.STREAM_TIMEOUT_SECONDS,
    )
    return GatewayContext(broker=broker, resolver=resolver, orchestrator=orchestrator, client=client)


async def start_context(context: GatewayContext) -> GatewayContext:
    logger.info("Initializing 0G broker...")
    await context.broker.initialize()
    logger.info("Broker initialized successfully")
    return context
