from typing import Dict, List

from pydantic import BaseModel, ConfigDict


class ServiceInfo(BaseModel):
    address: str
    model: str


class ServiceMetadata(BaseModel):
    endpoint: str
    model: str


class ProviderInfo(BaseModel):
    """A resolved upstream: who serves the model, where, and under which id."""

    model_config = ConfigDict(frozen=True)

    address: str
    endpoint: str
    model: str

    @property
    def completions_url(self) -> str:
        return f"{self.endpoint.rstrip('/')}/chat/completions"


class Broker:
    """Capabilities the gateway consumes from the 0G serving SDK.

    Wallet signing, payment headers and fee settlement live behind this
    interface; the gateway never looks inside them.
    """

    async def initialize(self) -> None:
        return None

    async def list_services(self) -> List[ServiceInfo]:
        raise NotImplementedError

    async def is_acknowledged(self, address: str) -> bool:
        raise NotImplementedError

    async def acknowledge(self, address: str) -> None:
        raise NotImplementedError

    async def get_metadata(self, address: str) -> ServiceMetadata:
        raise NotImplementedError

    async def get_auth_headers(self, address: str, content: str) -> Dict[str, str]:
        raise NotImplementedError
