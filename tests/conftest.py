"""
Pytest configuration and fixtures for shipping gateway tests.

Carrier APIs are faked with httpx.MockTransport; nothing leaves the process.
"""
import asyncio
import inspect
import os
from decimal import Decimal
from typing import Any, Callable, Dict, List, Tuple

import httpx
import pytest
import pytest_asyncio

# Set test environment before importing gateway modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DHL_API_URL"] = "https://dhl.test"
os.environ["GLS_API_URL"] = "https://gls.test"

from shipping_gateway.core.config import Settings  # noqa: E402
from shipping_gateway.models.carrier import ServiceLevel, WeightUnit  # noqa: E402
from shipping_gateway.models.shipping import (  # noqa: E402
    Address,
    CustomsLineItem,
    Dimensions,
    Package,
    ShipmentRequest,
    Weight,
)
from shipping_gateway.modules.shipping.credentials import CredentialManager  # noqa: E402
from shipping_gateway.services.shipping_orchestrator import build_orchestrator  # noqa: E402

DHL_HOST = "dhl.test"
GLS_HOST = "gls.test"
DHL_TOKEN_PATH = "/auth/v4/accesstoken"
GLS_TOKEN_PATH = "/oauth2/v2/token"

Handler = Callable[[httpx.Request], Any]


class FakeCarrierAPI:
    """
    Routes requests by (host, method, path) to scripted responses.

    Each route holds a queue of handlers; they are consumed in order and the
    last one repeats. A handler is a (status, json) tuple or a callable
    taking the request (sync or async) and returning an httpx.Response.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str, str], List[Handler]] = {}
        self.calls: List[httpx.Request] = []

    def add(self, host: str, method: str, path: str, *handlers) -> None:
        self.routes[(host, method.upper(), path)] = [self._wrap(h) for h in handlers]

    @staticmethod
    def _wrap(handler) -> Handler:
        if isinstance(handler, tuple):
            status, body = handler
            return lambda request: httpx.Response(status, json=body)
        return handler

    def requests_to(self, host: str, method: str, path: str) -> List[httpx.Request]:
        return [
            r for r in self.calls
            if r.url.host == host and r.method == method.upper() and r.url.path == path
        ]

    def count(self, host: str, method: str, path: str) -> int:
        return len(self.requests_to(host, method, path))

    def token_route(self, host: str, path: str, prefix: str, expires_in: int = 3600) -> None:
        """Token endpoint that issues prefix-1, prefix-2, ... on each call."""
        issued = 0

        def issue(request: httpx.Request) -> httpx.Response:
            nonlocal issued
            issued += 1
            return httpx.Response(200, json={
                "access_token": f"{prefix}-{issued}",
                "token_type": "Bearer",
                "expires_in": expires_in,
            })

        self.add(host, "POST", path, issue)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        queue = self.routes.get((request.url.host, request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"title": "Not Found", "detail": "no such route"})
        handler = queue.pop(0) if len(queue) > 1 else queue[0]
        response = handler(request)
        if inspect.isawaitable(response):
            response = await response
        return response


def delayed(seconds: float, status: int, body: Any) -> Handler:
    """Handler that answers after ``seconds``."""
    async def respond(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(seconds)
        return httpx.Response(status, json=body)
    return respond


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        ENVIRONMENT="development",
        SHIPPING_ENABLED_CARRIERS="DHL,GLS",
        SHIPPING_DEFAULT_CARRIER="DHL",
        SHIPPING_RETRY_BASE_DELAY_MS=0,
        SHIPPING_RETRY_MAX_DELAY_MS=0,
        SHIPPING_OPERATION_TIMEOUT_MS=5000,
        SHIPPING_RATE_CACHE_ENABLED=False,
        DHL_API_URL="https://dhl.test",
        DHL_API_KEY="dhl-key",
        DHL_API_SECRET="dhl-secret",
        DHL_ACCOUNT_NUMBER="123456789",
        GLS_API_URL="https://gls.test",
        GLS_CLIENT_ID="gls-client",
        GLS_CLIENT_SECRET="gls-secret",
        GLS_CUSTOMER_ID="2760000001",
    )


@pytest.fixture
def fake_api() -> FakeCarrierAPI:
    api = FakeCarrierAPI()
    api.token_route(DHL_HOST, DHL_TOKEN_PATH, "dhl-token")
    api.token_route(GLS_HOST, GLS_TOKEN_PATH, "gls-token")
    return api


@pytest_asyncio.fixture
async def http_client(fake_api):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_api.handler))
    yield client
    await client.aclose()


@pytest.fixture
def credentials() -> CredentialManager:
    return CredentialManager(refresh_margin_seconds=60)


@pytest.fixture
def orchestrator(test_settings, http_client):
    return build_orchestrator(test_settings, http_client=http_client)


@pytest.fixture
def shipper_address() -> Address:
    return Address(
        name="Warehouse Team",
        company="Comic Vault BV",
        street_lines=("Keizersgracht 123",),
        city="Amsterdam",
        postal_code="1015 CJ",
        country_code="NL",
        phone="+31 20 555 0100",
        email="shipping@example.com",
    )


@pytest.fixture
def recipient_address() -> Address:
    return Address(
        name="Jordan Peeters",
        street_lines=("Rue de la Loi 16",),
        city="Brussels",
        postal_code="1000",
        country_code="BE",
    )


@pytest.fixture
def package() -> Package:
    return Package(
        weight=Weight(Decimal("1.5"), WeightUnit.KG),
        dimensions=Dimensions(Decimal("30"), Decimal("20"), Decimal("10")),
    )


@pytest.fixture
def customs_item() -> CustomsLineItem:
    return CustomsLineItem(
        commodity_code="49019900",
        description="Printed comic books",
        gross_weight=Weight(Decimal("1.4"), WeightUnit.KG),
        net_weight=Weight(Decimal("1.2"), WeightUnit.KG),
        quantity=3,
        value=Decimal("45.00"),
        origin_country="US",
    )


@pytest.fixture
def shipment_request(shipper_address, recipient_address, package) -> ShipmentRequest:
    return ShipmentRequest(
        shipper=shipper_address,
        recipient=recipient_address,
        packages=(package,),
        service_level=ServiceLevel.STANDARD,
        idempotency_key="order-1001-shipment-1",
        reference="ORDER-1001",
    )
