"""
Carrier Registry and Factory v1.0.0

- Adapters register themselves with ``@register_carrier``
- CarrierFactory builds adapters for the configured carriers only
- Adding a carrier means adding a module here; the orchestrator never changes
"""
from typing import Dict, List, Type
import logging

import httpx

from shipping_gateway.core.config import CarrierConfig
from shipping_gateway.core.exceptions import UnknownCarrierError
from shipping_gateway.models.carrier import CarrierCode
from shipping_gateway.modules.shipping.carriers.base import BaseCarrier
from shipping_gateway.modules.shipping.credentials import CredentialManager

logger = logging.getLogger(__name__)

# Registry of carrier implementations
_CARRIER_REGISTRY: Dict[CarrierCode, Type[BaseCarrier]] = {}


def register_carrier(carrier_code: CarrierCode):
    """
    Decorator to register a carrier implementation.

    Usage:
        @register_carrier(CarrierCode.DHL)
        class DHLCarrier(BaseCarrier):
            ...
    """
    def decorator(cls: Type[BaseCarrier]):
        _CARRIER_REGISTRY[carrier_code] = cls
        logger.debug(f"Registered carrier: {carrier_code.value} -> {cls.__name__}")
        return cls
    return decorator


class CarrierFactory:
    """Builds adapter instances from resolved carrier configuration."""

    @classmethod
    def create(
        cls,
        config: CarrierConfig,
        credentials: CredentialManager,
        http_client: httpx.AsyncClient,
    ) -> BaseCarrier:
        """
        Instantiate the adapter registered for ``config.carrier``.

        Raises:
            UnknownCarrierError: no implementation registered
        """
        carrier_cls = _CARRIER_REGISTRY.get(config.carrier)
        if carrier_cls is None:
            raise UnknownCarrierError(config.carrier.value, cls.get_registered_carriers())
        return carrier_cls(config, credentials, http_client)

    @classmethod
    def create_all(
        cls,
        carrier_configs: Dict[CarrierCode, CarrierConfig],
        credentials: CredentialManager,
        http_client: httpx.AsyncClient,
    ) -> Dict[CarrierCode, BaseCarrier]:
        """Adapters for every configured carrier, in configuration order."""
        return {
            code: cls.create(config, credentials, http_client)
            for code, config in carrier_configs.items()
        }

    @classmethod
    def get_registered_carriers(cls) -> List[CarrierCode]:
        """Get list of all registered carrier codes."""
        return list(_CARRIER_REGISTRY.keys())


# Import carriers to trigger registration
# These imports must be at the bottom to avoid circular imports
from shipping_gateway.modules.shipping.carriers.dhl import DHLCarrier  # noqa: E402, F401
from shipping_gateway.modules.shipping.carriers.gls import GLSCarrier  # noqa: E402, F401
