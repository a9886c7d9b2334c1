"""
Shipping Module v1.0.0

- CredentialManager caches one access token per carrier
- normalizer holds the pure validation/conversion functions
- BaseCarrier interface for all carrier implementations
- CarrierFactory builds adapters for the configured carriers
"""
from shipping_gateway.modules.shipping import normalizer
from shipping_gateway.modules.shipping.credentials import CredentialManager, TokenGrant
from shipping_gateway.modules.shipping.carriers import CarrierFactory, register_carrier
from shipping_gateway.modules.shipping.carriers.base import BaseCarrier

__all__ = [
    "normalizer",
    "CredentialManager",
    "TokenGrant",
    "CarrierFactory",
    "register_carrier",
    "BaseCarrier",
]
