"""
Provider resolution: logical identifier -> concrete 0G upstream.

An identifier is either a provider address (``0x...``) or a model name that
has to be discovered among the listed services. Every first use of a provider
goes through the one-time acknowledgment handshake before its metadata is
fetched. Results are cached; two strategies are available:

* ``KeyedProviderCache``: bounded, TTL-evicting map keyed by identifier. Safe
  when concurrent requests target different models.
* ``SingleSlotProviderCache``: remembers only the most recent resolution, so
  interleaved requests for different models keep replacing each other.
"""
import asyncio
from typing import Dict, NamedTuple, Optional

import structlog
from cachetools import TTLCache

from zgproxy.errors import BrokerNotInitialized, ModelNotFound, NoProvidersAvailable
from zgproxy.providers.base import Broker, ProviderInfo

logger = structlog.get_logger()

ADDRESS = "address"
MODEL = "model"


class ProviderRef(NamedTuple):
    kind: str  # ADDRESS | MODEL
    value: str

    @property
    def key(self) -> tuple[str, str]:
        # addresses are hex, compare them case-insensitively
        if self.kind == ADDRESS:
            return (ADDRESS, self.value.lower())
        return (MODEL, self.value)


class ProviderCache:
    def lookup(self, ref: ProviderRef) -> Optional[ProviderInfo]:
        raise NotImplementedError

    def store(self, ref: ProviderRef, info: ProviderInfo) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class KeyedProviderCache(ProviderCache):
    def __init__(self, maxsize: int = 64, ttl: float = 600.0):
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)

    def lookup(self, ref: ProviderRef) -> Optional[ProviderInfo]:
        return self._entries.get(ref.key)

    def store(self, ref: ProviderRef, info: ProviderInfo) -> None:
        self._entries[ref.key] = info
        self._entries[ProviderRef(ADDRESS, info.address).key] = info

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class SingleSlotProviderCache(ProviderCache):
    def __init__(self):
        self._entry: Optional[ProviderInfo] = None

    def lookup(self, ref: ProviderRef) -> Optional[ProviderInfo]:
        entry = self._entry
        if entry is None:
            return None
        if ref.kind == ADDRESS and entry.address.lower() == ref.value.lower():
            return entry
        if ref.kind == MODEL and entry.model == ref.value:
            return entry
        return None

    def store(self, ref: ProviderRef, info: ProviderInfo) -> None:
        self._entry = info

    def clear(self) -> None:
        self._entry = None


def build_cache(mode: str, *, maxsize: int = 64, ttl: float = 600.0) -> ProviderCache:
    if mode == "single":
        return SingleSlotProviderCache()
    if mode == "keyed":
        return KeyedProviderCache(maxsize=maxsize, ttl=ttl)
    raise ValueError(f"Unknown provider cache mode: {mode}")


class ProviderResolver:
    def __init__(
        self,
        broker: Optional[Broker] = None,
        cache: Optional[ProviderCache] = None,
        address_prefix: str = "0x",
    ):
        self.broker = broker
        self.cache = cache if cache is not None else KeyedProviderCache()
        self.address_prefix = address_prefix
        self._locks: Dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[tuple[str, str], int] = {}  # holders plus waiters per lock

    def attach(self, broker: Broker) -> None:
        self.broker = broker

    def classify(self, identifier: str) -> ProviderRef:
        if identifier.startswith(self.address_prefix):
            return ProviderRef(ADDRESS, identifier)
        return ProviderRef(MODEL, identifier)

    def require_broker(self) -> Broker:
        if self.broker is None:
            raise BrokerNotInitialized()
        return self.broker

    async def resolve(self, identifier: str) -> ProviderInfo:
        broker = self.require_broker()
        ref = self.classify(identifier)

        cached = self.cache.lookup(ref)
        if cached is not None:
            return cached

        key = ref.key
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                # another request may have resolved it while we waited
                cached = self.cache.lookup(ref)
                if cached is not None:
                    return cached

                if ref.kind == ADDRESS:
                    address = ref.value
                    logger.info("Using provider address", address=address)
                else:
                    address = await self._discover(broker, ref.value)

                info = await self._describe(broker, address)
                self.cache.store(ref, info)
                return info
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _discover(self, broker: Broker, model: str) -> str:
        logger.info("Discovering providers for model", model=model)
        services = await broker.list_services()
        if not services:
            raise NoProvidersAvailable()

        selected = next((s for s in services if s.model == model), None)
        if selected is None:
            raise ModelNotFound(model)

        logger.info("Selected provider", address=selected.address, model=model)
        return selected.address

    async def _describe(self, broker: Broker, address: str) -> ProviderInfo:
        if not await broker.is_acknowledged(address):
            logger.info("Acknowledging provider signer", address=address)
            await broker.acknowledge(address)

        metadata = await broker.get_metadata(address)
        return ProviderInfo(address=address, endpoint=metadata.endpoint, model=metadata.model)
