# Services layer: orchestration and shared in-memory state
from shipping_gateway.services.idempotency import IdempotencyStore
from shipping_gateway.services.rate_cache import RateQuoteCache
from shipping_gateway.services.shipping_orchestrator import (
    ShippingOrchestrator,
    build_orchestrator,
    sort_quotes,
)

__all__ = [
    "IdempotencyStore",
    "RateQuoteCache",
    "ShippingOrchestrator",
    "build_orchestrator",
    "sort_quotes",
]
