"""
Carrier Credential Manager

Caches one access token per carrier and refreshes it before expiry.

- A valid cached token is returned without awaiting anything.
- When a token is missing or stale, exactly one fetch runs per carrier.
  Concurrent callers await that same fetch and share its outcome, success
  or failure.
- The fetch is shielded: a cancelled caller does not abort it for the others.
- ``invalidate`` only drops the token that was actually rejected, so a token
  refreshed in the meantime by another caller survives.

Credentials live in memory only and are never persisted.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from shipping_gateway.core.exceptions import CarrierAuthError
from shipping_gateway.core.utils import utcnow
from shipping_gateway.models.carrier import CarrierCode

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 3600


@dataclass(frozen=True)
class TokenGrant:
    """What an authentication endpoint returned."""
    access_token: str
    expires_in: int = DEFAULT_TOKEN_TTL_SECONDS


@dataclass(frozen=True)
class CarrierCredential:
    carrier: CarrierCode
    access_token: str
    expires_at: datetime
    refresh_after: datetime


TokenFetcher = Callable[[], Awaitable[TokenGrant]]


class CredentialManager:
    """Per-carrier token cache with single-flight refresh."""

    def __init__(
        self,
        refresh_margin_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.refresh_margin_seconds = refresh_margin_seconds
        self._clock = clock
        self._fetchers: Dict[CarrierCode, TokenFetcher] = {}
        self._credentials: Dict[CarrierCode, CarrierCredential] = {}
        self._inflight: Dict[CarrierCode, "asyncio.Future[CarrierCredential]"] = {}
        self.fetch_count: Dict[CarrierCode, int] = {}

    def register(self, carrier: CarrierCode, fetcher: TokenFetcher) -> None:
        """Register the coroutine function that authenticates with ``carrier``."""
        self._fetchers[carrier] = fetcher

    def is_registered(self, carrier: CarrierCode) -> bool:
        return carrier in self._fetchers

    def _is_fresh(self, credential: Optional[CarrierCredential]) -> bool:
        return credential is not None and self._clock() < credential.refresh_after

    def cached_credential(self, carrier: CarrierCode) -> Optional[CarrierCredential]:
        credential = self._credentials.get(carrier)
        return credential if self._is_fresh(credential) else None

    async def get_token(self, carrier: CarrierCode) -> str:
        """
        Return a valid access token for ``carrier``.

        Raises:
            CarrierAuthError: no fetcher registered, or authentication failed
        """
        credential = self._credentials.get(carrier)
        if self._is_fresh(credential):
            return credential.access_token

        if carrier not in self._fetchers:
            raise CarrierAuthError(f"No credentials registered for {carrier.value}", carrier=carrier.value)

        # Check-and-claim happens without awaiting, so it is atomic on the loop
        future = self._inflight.get(carrier)
        if future is None:
            future = asyncio.ensure_future(self._refresh(carrier))
            self._inflight[carrier] = future
            future.add_done_callback(lambda f, c=carrier: self._refresh_done(c, f))

        credential = await asyncio.shield(future)
        return credential.access_token

    async def _refresh(self, carrier: CarrierCode) -> CarrierCredential:
        self.fetch_count[carrier] = self.fetch_count.get(carrier, 0) + 1
        logger.info(f"[CREDENTIALS] Fetching access token for {carrier.value}")

        grant = await self._fetchers[carrier]()
        if not grant.access_token:
            raise CarrierAuthError(f"{carrier.value} returned an empty access token", carrier=carrier.value)

        issued_at = self._clock()
        ttl = max(int(grant.expires_in), 0)
        if ttl > self.refresh_margin_seconds:
            usable = ttl - self.refresh_margin_seconds
        else:
            usable = ttl / 2

        credential = CarrierCredential(
            carrier=carrier,
            access_token=grant.access_token,
            expires_at=issued_at + timedelta(seconds=ttl),
            refresh_after=issued_at + timedelta(seconds=usable),
        )
        self._credentials[carrier] = credential
        logger.info(f"[CREDENTIALS] {carrier.value} token obtained, expires in {ttl}s")
        return credential

    def _refresh_done(self, carrier: CarrierCode, future: "asyncio.Future[CarrierCredential]") -> None:
        if self._inflight.get(carrier) is future:
            del self._inflight[carrier]
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"[CREDENTIALS] {carrier.value} authentication failed: {error}")

    def invalidate(self, carrier: CarrierCode, token: Optional[str] = None) -> bool:
        """
        Drop the cached token for ``carrier``.

        With ``token`` given, only drops it if it is still the cached one.
        Returns True when a token was discarded.
        """
        credential = self._credentials.get(carrier)
        if credential is None:
            return False
        if token is not None and credential.access_token != token:
            return False
        del self._credentials[carrier]
        logger.info(f"[CREDENTIALS] {carrier.value} token invalidated")
        return True

    def clear(self) -> None:
        self._credentials.clear()
