import hashlib

from aiolimiter import AsyncLimiter
from cachetools import LRUCache

from zgproxy.core.config import settings

# In-memory per-key limiter, bounded so unknown keys cannot grow it forever
_limiters: LRUCache = LRUCache(maxsize=10_000)


def limiter_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


def get_limiter(api_key: str) -> AsyncLimiter:
    key = limiter_key(api_key)
    limiter = _limiters.get(key)
    if limiter is None:
        # AsyncLimiter(max_rate, time_period): max_rate acquisitions per 60s window
        limiter = AsyncLimiter(max(1, settings.RATE_LIMIT_PER_MINUTE), time_period=60)
        _limiters[key] = limiter
    return limiter
