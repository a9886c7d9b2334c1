"""
Shipping Orchestrator v1.0.0

Public facade of the shipping layer. Callers only ever see normalized types
and the ShippingError taxonomy.

Policies applied here, never in adapters:
- Validation of every request before any network call
- Idempotent shipment creation (one carrier-side shipment per key)
- Bounded retry with backoff for read operations only
- One re-authentication and retry after a rejected token
- A caller-visible deadline on every operation, retries included
- Carrier selection: explicit routing, rate fan-out, tracking inference,
  address-validation fail-over
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

import httpx

from shipping_gateway.core.config import Settings, settings as default_settings
from shipping_gateway.core.exceptions import (
    CarrierAuthError,
    CarrierRejectedError,
    CarrierTransientError,
    ShippingError,
    ShippingTimeoutError,
    ShippingValidationError,
    TokenRejectedError,
    UnknownCarrierError,
)
from shipping_gateway.core.retry import RetryConfig, retry_async
from shipping_gateway.models.carrier import CarrierCode
from shipping_gateway.models.shipping import (
    Address,
    AuthenticationStatus,
    RateQuote,
    ShipmentRequest,
    ShipmentResult,
    TrackingRequest,
    TrackingResult,
    ValidationResult,
)
from shipping_gateway.modules.shipping import normalizer
from shipping_gateway.modules.shipping.carriers import CarrierFactory
from shipping_gateway.modules.shipping.carriers.base import BaseCarrier
from shipping_gateway.modules.shipping.credentials import CredentialManager
from shipping_gateway.services.idempotency import IdempotencyStore
from shipping_gateway.services.rate_cache import RateQuoteCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

CarrierRef = Union[CarrierCode, str]

# Failures that make address validation move on to the next carrier
FALLBACK_ERRORS = (CarrierTransientError, CarrierAuthError, ShippingTimeoutError)


def sort_quotes(quotes: Sequence[RateQuote]) -> Tuple[RateQuote, ...]:
    """Cheapest first; ties by transit days, unknown days last."""
    return tuple(sorted(
        quotes,
        key=lambda q: (q.cost, q.estimated_days is None, q.estimated_days or 0),
    ))


class ShippingOrchestrator:
    """
    Facade over the configured carrier adapters.

    Usage:
        async with build_orchestrator() as shipping:
            quotes = await shipping.get_rates(request)
            result = await shipping.create_shipment(request, carrier="DHL")
    """

    def __init__(
        self,
        adapters: Dict[CarrierCode, BaseCarrier],
        credentials: CredentialManager,
        operation_timeout_ms: int = 30000,
        retry_base_delay_ms: int = 500,
        retry_max_delay_ms: int = 4000,
        idempotency: Optional[IdempotencyStore] = None,
        rate_cache: Optional[RateQuoteCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.adapters = adapters
        self.credentials = credentials
        self.operation_timeout_ms = operation_timeout_ms
        self.retry_base_delay_ms = retry_base_delay_ms
        self.retry_max_delay_ms = retry_max_delay_ms
        self.idempotency = idempotency or IdempotencyStore()
        self.rate_cache = rate_cache
        self._http_client = http_client
        self._sleep = sleep

    async def __aenter__(self) -> "ShippingOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the HTTP client if this orchestrator created it."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def configured_carriers(self) -> List[CarrierCode]:
        return list(self.adapters.keys())

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _adapter(self, carrier: CarrierRef) -> BaseCarrier:
        configured = [code.value for code in self.adapters]
        try:
            code = CarrierCode.parse(carrier)
        except ValueError:
            raise UnknownCarrierError(carrier, configured) from None
        adapter = self.adapters.get(code)
        if adapter is None:
            raise UnknownCarrierError(code.value, configured)
        return adapter

    def _retry_config(self, adapter: BaseCarrier) -> RetryConfig:
        return RetryConfig(
            max_attempts=adapter.config.max_attempts,
            base_delay=self.retry_base_delay_ms / 1000,
            max_delay=self.retry_max_delay_ms / 1000,
        )

    async def _with_deadline(
        self,
        awaitable: Awaitable[T],
        operation: str,
        timeout_ms: Optional[int],
        carrier: Optional[CarrierCode] = None,
    ) -> T:
        timeout_ms = timeout_ms or self.operation_timeout_ms
        try:
            return await asyncio.wait_for(awaitable, timeout_ms / 1000)
        except asyncio.TimeoutError:
            where = f" ({carrier.value})" if carrier else ""
            logger.warning(f"[SHIPPING] {operation}{where} exceeded {timeout_ms}ms deadline")
            raise ShippingTimeoutError(
                f"{operation}{where} did not complete within {timeout_ms}ms",
                operation=operation,
                timeout_ms=timeout_ms,
                carrier=carrier.value if carrier else None,
            ) from None

    async def _authorized(self, adapter: BaseCarrier, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run ``call``; after a rejected token, re-authenticate and run it once more."""
        try:
            return await call()
        except TokenRejectedError:
            logger.info(f"[SHIPPING] {adapter.carrier_name} {operation}: re-authenticating after 401")
        try:
            return await call()
        except TokenRejectedError as e:
            raise CarrierAuthError(
                f"{adapter.carrier_name} rejected a freshly issued token",
                carrier=adapter.carrier_name,
            ) from e

    async def _read(self, adapter: BaseCarrier, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Read operations: auth retry inside transient retry."""
        return await retry_async(
            lambda: self._authorized(adapter, operation, call),
            self._retry_config(adapter),
            label=f"{adapter.carrier_name} {operation}",
            sleep=self._sleep,
        )

    # =========================================================================
    # Address validation
    # =========================================================================

    async def validate_address(
        self,
        address: Address,
        carrier: Optional[CarrierRef] = None,
        timeout_ms: Optional[int] = None,
    ) -> ValidationResult:
        """
        Validate an address with one carrier.

        Without ``carrier``, tries carriers in configured order and moves on
        when one is unavailable, unauthorized or too slow.
        """
        normalizer.validate_address(address)

        if carrier is not None:
            adapter = self._adapter(carrier)
            return await self._with_deadline(
                self._read(adapter, "address validation", lambda: adapter.validate_address(address)),
                "validate_address",
                timeout_ms,
                adapter.carrier_code,
            )
        return await self._with_deadline(
            self._validate_with_fallback(address), "validate_address", timeout_ms
        )

    async def _validate_with_fallback(self, address: Address) -> ValidationResult:
        last_error: Optional[ShippingError] = None
        for adapter in self.adapters.values():
            try:
                return await self._read(
                    adapter, "address validation", lambda a=adapter: a.validate_address(address)
                )
            except FALLBACK_ERRORS as e:
                logger.warning(
                    f"[SHIPPING] Address validation via {adapter.carrier_name} failed ({e.code}), "
                    f"trying next carrier"
                )
                last_error = e
        if last_error is None:
            raise UnknownCarrierError("any", [])
        raise last_error

    # =========================================================================
    # Rating
    # =========================================================================

    async def get_rates(
        self,
        request: ShipmentRequest,
        carrier: Optional[CarrierRef] = None,
        timeout_ms: Optional[int] = None,
        use_cache: bool = True,
    ) -> Tuple[RateQuote, ...]:
        """
        Rate quotes, cheapest first.

        Without ``carrier``, every configured carrier is asked concurrently and
        the answers merged. A carrier that fails is left out; if every carrier
        fails, the first carrier's error is raised.
        """
        normalizer.validate_shipment_request(request)

        if carrier is not None:
            adapter = self._adapter(carrier)
            return sort_quotes(await self._rates_from(adapter, request, timeout_ms, use_cache))

        adapters = list(self.adapters.values())
        outcomes = await asyncio.gather(
            *(self._rates_from(adapter, request, timeout_ms, use_cache) for adapter in adapters),
            return_exceptions=True,
        )

        quotes: List[RateQuote] = []
        errors: List[ShippingError] = []
        for adapter, outcome in zip(adapters, outcomes):
            if isinstance(outcome, ShippingError):
                logger.warning(f"[SHIPPING] Rates from {adapter.carrier_name} failed: {outcome.code} {outcome.message}")
                errors.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                quotes.extend(outcome)

        if errors and len(errors) == len(adapters):
            raise errors[0]

        merged = sort_quotes(quotes)
        logger.info(f"[SHIPPING] {len(merged)} rate quotes from {len(adapters) - len(errors)} carriers")
        return merged

    async def _rates_from(
        self,
        adapter: BaseCarrier,
        request: ShipmentRequest,
        timeout_ms: Optional[int],
        use_cache: bool,
    ) -> Tuple[RateQuote, ...]:
        if use_cache and self.rate_cache is not None:
            cached = self.rate_cache.get(adapter.carrier_code, request)
            if cached is not None:
                return cached

        quotes = await self._with_deadline(
            self._read(adapter, "rates", lambda: adapter.get_rates(request)),
            "get_rates",
            timeout_ms,
            adapter.carrier_code,
        )
        if self.rate_cache is not None:
            self.rate_cache.set(adapter.carrier_code, request, quotes)
        return quotes

    # =========================================================================
    # Shipping
    # =========================================================================

    async def create_shipment(
        self,
        request: ShipmentRequest,
        carrier: Optional[CarrierRef] = None,
        timeout_ms: Optional[int] = None,
    ) -> ShipmentResult:
        """
        Create a shipment with an explicitly chosen carrier.

        At most one carrier-side shipment is created per idempotency key:
        a repeated key returns the recorded outcome (success or failure), and
        a key still in flight is awaited. Shipment creation is never retried
        on transient errors. A caller that times out or is cancelled leaves
        the carrier call running; its outcome is recorded for the key.
        """
        violations = normalizer.shipment_violations(request, require_idempotency_key=True)
        if carrier is None:
            violations.append(("carrier", "must be chosen explicitly to create a shipment"))
        if violations:
            raise ShippingValidationError(
                f"Invalid shipment request: {', '.join(field for field, _ in violations)}",
                violations=violations,
            )

        adapter = self._adapter(carrier)
        key = request.idempotency_key.strip()
        fingerprint = normalizer.shipment_fingerprint(request, adapter.carrier_code)

        task, started = self.idempotency.claim(
            key,
            fingerprint,
            adapter.carrier_code,
            lambda: self._authorized(adapter, "shipment", lambda: adapter.create_shipment(request)),
        )
        if started and not adapter.supports_idempotency_keys:
            logger.debug(
                f"[SHIPPING] {adapter.carrier_name} has no server-side idempotency; "
                f"key {key} protected in-process only"
            )

        return await self._with_deadline(
            asyncio.shield(task), "create_shipment", timeout_ms, adapter.carrier_code
        )

    # =========================================================================
    # Tracking
    # =========================================================================

    async def track_shipment(
        self,
        request: TrackingRequest,
        timeout_ms: Optional[int] = None,
    ) -> TrackingResult:
        """
        Tracking events for a shipment, oldest first.

        Without a carrier on the request, the carrier is inferred from the
        tracking number format. Ambiguous or unrecognised numbers are sent to
        every candidate carrier; the first success in configured order wins.
        """
        number = normalizer.validate_tracking_request(request)

        if request.carrier is not None:
            adapter = self._adapter(request.carrier)
            return await self._track_with(adapter, number, timeout_ms)

        candidates = [a for a in self.adapters.values() if a.recognizes_tracking_number(number)]
        if len(candidates) == 1:
            return await self._track_with(candidates[0], number, timeout_ms)

        targets = candidates or list(self.adapters.values())
        logger.info(
            f"[SHIPPING] Broadcasting tracking {number} to "
            f"{', '.join(a.carrier_name for a in targets)}"
        )
        outcomes = await asyncio.gather(
            *(self._track_with(adapter, number, timeout_ms) for adapter in targets),
            return_exceptions=True,
        )

        errors: List[ShippingError] = []
        for outcome in outcomes:
            if isinstance(outcome, ShippingError):
                errors.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                return outcome

        others = [e for e in errors if not isinstance(e, CarrierRejectedError)]
        if others:
            raise others[0]
        raise CarrierRejectedError(
            f"No configured carrier recognises tracking number {number}",
            code="TRACKING_NUMBER_NOT_FOUND",
            details={"carriers": [a.carrier_name for a in targets]},
        )

    async def _track_with(self, adapter: BaseCarrier, number: str, timeout_ms: Optional[int]) -> TrackingResult:
        request = TrackingRequest(tracking_number=number, carrier=adapter.carrier_code)
        events = await self._with_deadline(
            self._read(adapter, "tracking", lambda: adapter.track_shipment(request)),
            "track_shipment",
            timeout_ms,
            adapter.carrier_code,
        )
        return TrackingResult(carrier=adapter.carrier_code, tracking_number=number, events=events)

    # =========================================================================
    # Health
    # =========================================================================

    async def test_authentication(
        self,
        carrier: Optional[CarrierRef] = None,
        timeout_ms: Optional[int] = None,
    ) -> List[AuthenticationStatus]:
        """
        Authentication status per carrier.

        For a single named carrier a timeout raises ShippingTimeoutError; when
        checking every carrier it is reported as an unauthenticated status.
        """
        if carrier is not None:
            adapter = self._adapter(carrier)
            status = await self._with_deadline(
                adapter.test_authentication(), "test_authentication", timeout_ms, adapter.carrier_code
            )
            return [status]

        async def check(adapter: BaseCarrier) -> AuthenticationStatus:
            try:
                return await self._with_deadline(
                    adapter.test_authentication(), "test_authentication", timeout_ms, adapter.carrier_code
                )
            except ShippingTimeoutError as e:
                return AuthenticationStatus(adapter.carrier_code, False, e.message)

        return list(await asyncio.gather(*(check(a) for a in self.adapters.values())))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "carriers": [code.value for code in self.adapters],
            "idempotency_records": len(self.idempotency),
            "token_fetches": {code.value: count for code, count in self.credentials.fetch_count.items()},
            "rate_cache": self.rate_cache.get_stats() if self.rate_cache is not None else None,
        }


def build_orchestrator(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ShippingOrchestrator:
    """
    Wire credentials, adapters and caches from settings.

    When ``http_client`` is omitted the orchestrator creates and owns one,
    closing it in ``close()``.
    """
    settings = settings or default_settings
    owned_client = None
    if http_client is None:
        owned_client = httpx.AsyncClient(headers={"User-Agent": settings.APP_NAME})
        http_client = owned_client

    credentials = CredentialManager(refresh_margin_seconds=settings.SHIPPING_TOKEN_REFRESH_MARGIN_SECONDS)
    adapters = CarrierFactory.create_all(settings.carrier_configs(), credentials, http_client)

    rate_cache = None
    if settings.SHIPPING_RATE_CACHE_ENABLED:
        rate_cache = RateQuoteCache(
            ttl_seconds=settings.SHIPPING_RATE_CACHE_TTL_SECONDS,
            max_size=settings.SHIPPING_RATE_CACHE_MAX_SIZE,
        )

    logger.info(f"[SHIPPING] Orchestrator ready with carriers: {', '.join(c.value for c in adapters)}")
    return ShippingOrchestrator(
        adapters,
        credentials,
        operation_timeout_ms=settings.SHIPPING_OPERATION_TIMEOUT_MS,
        retry_base_delay_ms=settings.SHIPPING_RETRY_BASE_DELAY_MS,
        retry_max_delay_ms=settings.SHIPPING_RETRY_MAX_DELAY_MS,
        idempotency=IdempotencyStore(ttl_seconds=settings.SHIPPING_IDEMPOTENCY_TTL_SECONDS),
        rate_cache=rate_cache,
        http_client=owned_client,
    )
