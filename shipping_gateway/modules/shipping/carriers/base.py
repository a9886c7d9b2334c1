"""
Base Carrier Interface v1.0.0

Abstract base class for carrier adapters.
Each carrier (DHL, GLS) implements this interface against its own API.

An adapter:
- obtains its token from the shared CredentialManager before every call
- speaks its carrier's wire format through the Request Normalizer
- translates every failure into the shipping error taxonomy before it
  leaves the adapter (nothing httpx- or carrier-specific escapes)
"""
import base64
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Pattern, Tuple

import httpx

from shipping_gateway.core.config import CarrierConfig
from shipping_gateway.core.exceptions import (
    CarrierAuthError,
    CarrierRejectedError,
    CarrierTransientError,
    ShippingError,
    TokenRejectedError,
)
from shipping_gateway.core.utils import sanitize_for_logging
from shipping_gateway.models.carrier import CarrierCode
from shipping_gateway.models.shipping import (
    Address,
    AuthenticationStatus,
    RateQuote,
    ShipmentRequest,
    ShipmentResult,
    TrackingEvent,
    TrackingRequest,
    ValidationResult,
)
from shipping_gateway.modules.shipping.credentials import CredentialManager, TokenGrant

logger = logging.getLogger(__name__)

# Statuses that mean "try again later" rather than "your request is wrong"
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

# Exceptions raised while picking apart a carrier payload
PARSE_ERRORS = (AttributeError, KeyError, IndexError, TypeError, ValueError, ArithmeticError)


class BaseCarrier(ABC):
    """
    Abstract base class for carrier adapters.

    Subclasses declare ``carrier_code`` and implement the four shipping
    operations, ``authenticate`` and ``_parse_error``.
    """

    # Carrier deduplicates on an Idempotency-Key header
    supports_idempotency_keys: bool = False

    # Tracking numbers this carrier issues
    tracking_number_pattern: Optional[Pattern[str]] = None

    def __init__(
        self,
        config: CarrierConfig,
        credentials: CredentialManager,
        http_client: httpx.AsyncClient,
    ):
        self.config = config
        self.credentials = credentials
        self.http_client = http_client
        credentials.register(self.carrier_code, self.authenticate)

    @property
    @abstractmethod
    def carrier_code(self) -> CarrierCode:
        """Return carrier identifier."""
        pass

    @property
    def carrier_name(self) -> str:
        return self.carrier_code.value

    @property
    def log_tag(self) -> str:
        return f"[{self.carrier_name}]"

    # =========================================================================
    # Shipping operations
    # =========================================================================

    @abstractmethod
    async def authenticate(self) -> TokenGrant:
        """Fetch a new access token from the carrier."""
        pass

    @abstractmethod
    async def validate_address(self, address: Address) -> ValidationResult:
        """Validate a single address with the carrier."""
        pass

    @abstractmethod
    async def get_rates(self, request: ShipmentRequest) -> Tuple[RateQuote, ...]:
        """Get rate quotes. An empty tuple means the carrier offers nothing."""
        pass

    @abstractmethod
    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResult:
        """Create a shipment and label."""
        pass

    @abstractmethod
    async def track_shipment(self, request: TrackingRequest) -> Tuple[TrackingEvent, ...]:
        """Tracking events, oldest first."""
        pass

    def recognizes_tracking_number(self, tracking_number: str) -> bool:
        if self.tracking_number_pattern is None:
            return False
        return bool(self.tracking_number_pattern.match(tracking_number))

    async def test_authentication(self) -> AuthenticationStatus:
        """Check that the configured credentials yield a token."""
        try:
            await self.credentials.get_token(self.carrier_code)
        except CarrierAuthError as e:
            return AuthenticationStatus(self.carrier_code, False, e.message)
        except CarrierTransientError as e:
            return AuthenticationStatus(self.carrier_code, False, f"Carrier unreachable: {e.message}")
        return AuthenticationStatus(self.carrier_code, True, "Authenticated")

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    @property
    def _timeout(self) -> float:
        return self.config.timeout_ms / 1000

    def _require_credentials(self, *names: str) -> None:
        missing = self.config.missing_credentials(*names)
        if missing:
            raise CarrierAuthError(
                f"{self.carrier_name} credentials not configured: {', '.join(missing)}",
                carrier=self.carrier_name,
            )

    @staticmethod
    def _basic_auth(username: str, password: str) -> str:
        return base64.b64encode(f"{username}:{password}".encode()).decode()

    async def _send(self, method: str, url: str, operation: str, **kwargs) -> httpx.Response:
        """Issue one HTTP call, mapping network failures to CarrierTransientError."""
        headers = kwargs.pop("headers", {})
        headers.setdefault("X-Transaction-ID", uuid.uuid4().hex)
        try:
            response = await self.http_client.request(
                method, url, headers=headers, timeout=self._timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            logger.warning(f"{self.log_tag} {operation} timed out: {type(e).__name__}")
            raise CarrierTransientError(
                f"{self.carrier_name} {operation} timed out", carrier=self.carrier_name
            ) from e
        except httpx.RequestError as e:
            logger.warning(f"{self.log_tag} {operation} network error: {type(e).__name__}: {e}")
            raise CarrierTransientError(
                f"{self.carrier_name} {operation} network error: {e}", carrier=self.carrier_name
            ) from e

        logger.debug(f"{self.log_tag} {method} {url} -> {response.status_code}")
        return response

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> Tuple[Any, str]:
        """
        Make an authenticated API request.

        Returns the decoded JSON body and the raw text.

        Raises:
            TokenRejectedError: 401, token already invalidated
            CarrierAuthError: 403
            CarrierTransientError: network failure, 408/429/5xx, non-JSON body
            CarrierRejectedError: any other 4xx
        """
        token = await self.credentials.get_token(self.carrier_code)
        request_headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        request_headers.update(headers or {})

        response = await self._send(method, self._url(path), operation, headers=request_headers, **kwargs)

        if response.status_code == 401:
            self.credentials.invalidate(self.carrier_code, token)
            logger.warning(f"{self.log_tag} {operation}: token rejected (401)")
            raise TokenRejectedError(
                f"{self.carrier_name} rejected the access token", carrier=self.carrier_name
            )

        if response.status_code >= 400:
            raise self._error_for_response(response, operation)

        return self._decode(response, operation), response.text

    def _decode(self, response: httpx.Response, operation: str) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise self._malformed(operation, e) from e

    def _error_for_response(self, response: httpx.Response, operation: str) -> ShippingError:
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = None
        carrier_code, detail = self._parse_error(body) if body is not None else (None, None)
        message = detail or response.reason_phrase or f"HTTP {status}"

        logger.error(
            f"{self.log_tag} {operation} failed: {status} - "
            f"{sanitize_for_logging(response.text)}"
        )

        if status in TRANSIENT_STATUS_CODES:
            return CarrierTransientError(
                f"{self.carrier_name} {operation} unavailable: {message}",
                carrier=self.carrier_name,
                status_code=status,
            )
        if status == 403:
            return CarrierAuthError(
                f"{self.carrier_name} denied access: {message}",
                carrier=self.carrier_name,
                details={"status_code": status, "carrier_error_code": carrier_code},
            )
        return CarrierRejectedError(
            f"{self.carrier_name} rejected {operation}: {message}",
            carrier=self.carrier_name,
            status_code=status,
            carrier_error_code=carrier_code,
        )

    def _malformed(self, operation: str, error: Exception) -> CarrierTransientError:
        logger.error(f"{self.log_tag} {operation}: malformed response ({type(error).__name__}: {error})")
        return CarrierTransientError(
            f"{self.carrier_name} returned a malformed {operation} response",
            carrier=self.carrier_name,
            code="CARRIER_MALFORMED_RESPONSE",
        )

    @abstractmethod
    def _parse_error(self, body: Any) -> Tuple[Optional[str], Optional[str]]:
        """Extract (carrier error code, message) from an error body."""
        pass

    async def _fetch_token(self, method: str, path: str, **kwargs) -> TokenGrant:
        """
        Call a token endpoint. Shared by every auth scheme.

        400/401/403 are credential problems (CarrierAuthError); everything
        else non-2xx is transient.
        """
        response = await self._send(method, self._url(path), "authentication", **kwargs)

        if response.status_code in (400, 401, 403):
            try:
                _, detail = self._parse_error(response.json())
            except ValueError:
                detail = None
            logger.error(
                f"{self.log_tag} authentication failed: {response.status_code} - "
                f"{sanitize_for_logging(response.text)}"
            )
            raise CarrierAuthError(
                f"Failed to authenticate with {self.carrier_name}: {detail or response.status_code}",
                carrier=self.carrier_name,
                details={"status_code": response.status_code},
            )
        if response.status_code >= 300:
            raise self._error_for_response(response, "authentication")

        data = self._decode(response, "authentication")
        try:
            return TokenGrant(
                access_token=str(data["access_token"]),
                expires_in=int(data.get("expires_in", 3600)),
            )
        except PARSE_ERRORS as e:
            raise self._malformed("authentication", e) from e
