from typing import Dict, Iterable, List, Optional, Set

import structlog

from zgproxy.core.config import BrokerService
from zgproxy.providers.base import Broker, ServiceInfo, ServiceMetadata

logger = structlog.get_logger()


class StaticBroker(Broker):
    """Broker over a fixed list of providers with static request headers.

    Meant for deployments that talk to known 0G endpoints through an
    already-funded gateway, where no per-request signing is needed.
    """

    def __init__(
        self,
        services: Iterable[BrokerService],
        auth_headers: Optional[Dict[str, str]] = None,
    ):
        self._services = list(services)
        self._auth_headers = dict(auth_headers or {})
        self._acknowledged: Set[str] = set()

    async def initialize(self) -> None:
        logger.info("Static broker ready", services=len(self._services))

    def _find(self, address: str) -> BrokerService:
        for service in self._services:
            if service.address.lower() == address.lower():
                return service
        raise LookupError(f"Unknown provider address: {address}")

    async def list_services(self) -> List[ServiceInfo]:
        return [ServiceInfo(address=s.address, model=s.model) for s in self._services]

    async def is_acknowledged(self, address: str) -> bool:
        return address.lower() in self._acknowledged

    async def acknowledge(self, address: str) -> None:
        self._find(address)
        self._acknowledged.add(address.lower())

    async def get_metadata(self, address: str) -> ServiceMetadata:
        service = self._find(address)
        return ServiceMetadata(endpoint=service.endpoint, model=service.model)

    async def get_auth_headers(self, address: str, content: str) -> Dict[str, str]:
        return dict(self._auth_headers)
