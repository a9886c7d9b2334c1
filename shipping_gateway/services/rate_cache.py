"""
Rate Quote Cache v1.0.0

Purpose:
- Avoids re-quoting the same shipment while a customer sits in checkout
- Cache key: SHA-256 of carrier + origin + destination + packages + service level + currency
- TTL: 1 hour (configurable)
- Max size: 1000 entries (LRU eviction)

Only non-empty quote sets are cached; an empty answer is asked again.

Usage:
    cached = rate_cache.get(CarrierCode.DHL, request)
    if cached is None:
        quotes = await adapter.get_rates(request)
        rate_cache.set(CarrierCode.DHL, request, quotes)
"""
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

from shipping_gateway.core.utils import stable_digest
from shipping_gateway.models.carrier import CarrierCode, ServiceLevel
from shipping_gateway.models.shipping import RateQuote, ShipmentRequest
from shipping_gateway.modules.shipping import normalizer

logger = logging.getLogger(__name__)


class RateQuoteCache:
    """
    LRU cache with TTL for carrier rate quotes.

    Safe for single-threaded async usage (standard in asyncio).

    Attributes:
        ttl_seconds: Time-to-live for cache entries (default: 3600 = 1 hour)
        max_size: Maximum cache entries before LRU eviction (default: 1000)
    """

    def __init__(
        self,
        ttl_seconds: int = 3600,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._cache: "OrderedDict[str, Tuple[float, Tuple[RateQuote, ...]]]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def make_key(carrier: CarrierCode, request: ShipmentRequest) -> str:
        """Key on what determines a price, not on names or contact details."""
        return stable_digest({
            "carrier": carrier.value,
            "origin": [request.shipper.country_code, request.shipper.postal_code.strip().upper()],
            "destination": [request.recipient.country_code, request.recipient.postal_code.strip().upper()],
            "packages": [
                [
                    normalizer.to_kilograms(p.weight),
                    list(normalizer.dimensions_in_cm(p.dimensions)) if p.dimensions else None,
                    p.declared_value,
                ]
                for p in request.packages
            ],
            "service_level": ServiceLevel(request.service_level).value,
            "customs": bool(request.customs_items),
            "currency": request.currency,
        })

    def get(self, carrier: CarrierCode, request: ShipmentRequest) -> Optional[Tuple[RateQuote, ...]]:
        """Cached quotes, or None if missing/expired."""
        key = self.make_key(carrier, request)
        entry = self._cache.get(key)
        if entry is None:
            self._misses += 1
            return None

        stored_at, quotes = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._cache[key]
            self._misses += 1
            logger.debug(f"[RATE_CACHE] Expired: {carrier.value} {key[:8]}")
            return None

        self._cache.move_to_end(key)
        self._hits += 1
        logger.debug(f"[RATE_CACHE] Hit: {carrier.value} {key[:8]}")
        return quotes

    def set(self, carrier: CarrierCode, request: ShipmentRequest, quotes: Tuple[RateQuote, ...]) -> None:
        if not quotes:
            return
        key = self.make_key(carrier, request)
        if key in self._cache:
            self._cache.move_to_end(key)
        self._cache[key] = (self._clock(), tuple(quotes))

        while len(self._cache) > self.max_size:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug(f"[RATE_CACHE] Evicted LRU entry: {evicted[:8]}")

    def clear(self) -> int:
        count = len(self._cache)
        self._cache.clear()
        logger.info(f"[RATE_CACHE] Cleared {count} entries")
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Cache statistics for monitoring."""
        total = self._hits + self._misses
        return {
            "size": len(self._cache),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total else 0.0,
        }

    def __len__(self) -> int:
        return len(self._cache)
