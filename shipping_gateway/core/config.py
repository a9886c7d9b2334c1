"""
Shipping gateway configuration

SECURITY: Defaults are fail-safe for production.
- ENVIRONMENT defaults to production
- Carrier credentials have no defaults (adapters fail with CarrierAuthError if unset)
- Runtime validation rejects sandbox/mock carrier endpoints in production
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shipping_gateway.models.carrier import CarrierCode

logger = logging.getLogger(__name__)

DEFAULT_ENABLED_CARRIERS = ["DHL", "GLS"]

# Production endpoints
DHL_PRODUCTION_URL = "https://express.api.dhl.com/mydhlapi"
GLS_PRODUCTION_URL = "https://api.gls-group.net"

# Substrings that mark a non-production carrier endpoint
NON_PRODUCTION_URL_MARKERS = ("sandbox", "api-mock", "localhost", "127.0.0.1")


@dataclass(frozen=True)
class CarrierConfig:
    """Resolved per-carrier configuration handed to an adapter."""
    carrier: CarrierCode
    base_url: str
    credentials: Dict[str, str] = field(default_factory=dict)
    timeout_ms: int = 10000
    max_attempts: int = 3
    address_validation_path: str = "/address-validation"

    def credential(self, name: str) -> str:
        return self.credentials.get(name, "")

    def missing_credentials(self, *names: str) -> List[str]:
        return [name for name in names if not self.credentials.get(name)]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # App - defaults are PRODUCTION safe
    APP_NAME: str = "Shipping Gateway"
    ENVIRONMENT: str = "production"

    # Carrier selection - accepts JSON array or comma-separated string
    SHIPPING_ENABLED_CARRIERS: Union[str, List[str]] = DEFAULT_ENABLED_CARRIERS
    SHIPPING_DEFAULT_CARRIER: str = "DHL"

    @field_validator("SHIPPING_ENABLED_CARRIERS", mode="before")
    @classmethod
    def parse_enabled_carriers(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return list(DEFAULT_ENABLED_CARRIERS)
            if v.startswith("["):
                try:
                    v = json.loads(v)
                except json.JSONDecodeError:
                    pass
            if isinstance(v, str):
                v = v.split(",")
        if isinstance(v, list):
            return [str(item).strip().upper() for item in v if str(item).strip()]
        return v

    @field_validator("SHIPPING_DEFAULT_CARRIER", mode="before")
    @classmethod
    def normalize_default_carrier(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    # Deadlines and retry policy (global defaults)
    SHIPPING_REQUEST_TIMEOUT_MS: int = 10000     # per carrier HTTP call
    SHIPPING_OPERATION_TIMEOUT_MS: int = 30000   # caller-visible deadline, retries included
    SHIPPING_MAX_ATTEMPTS: int = 3
    SHIPPING_RETRY_BASE_DELAY_MS: int = 500
    SHIPPING_RETRY_MAX_DELAY_MS: int = 4000

    # Token cache
    SHIPPING_TOKEN_REFRESH_MARGIN_SECONDS: int = 60

    # Idempotency table
    SHIPPING_IDEMPOTENCY_TTL_SECONDS: int = 86400

    # Rate quote cache
    SHIPPING_RATE_CACHE_ENABLED: bool = True
    SHIPPING_RATE_CACHE_TTL_SECONDS: int = 3600
    SHIPPING_RATE_CACHE_MAX_SIZE: int = 1000

    # DHL (token-auth)
    DHL_API_URL: str = DHL_PRODUCTION_URL
    DHL_API_KEY: str = ""
    DHL_API_SECRET: str = ""
    DHL_ACCOUNT_NUMBER: str = ""
    DHL_TIMEOUT_MS: Optional[int] = None
    DHL_MAX_ATTEMPTS: Optional[int] = None
    DHL_ADDRESS_VALIDATION_PATH: str = "/address-validation"

    # GLS (bearer-token)
    GLS_API_URL: str = GLS_PRODUCTION_URL
    GLS_CLIENT_ID: str = ""
    GLS_CLIENT_SECRET: str = ""
    GLS_CUSTOMER_ID: str = ""
    GLS_TIMEOUT_MS: Optional[int] = None
    GLS_MAX_ATTEMPTS: Optional[int] = None
    GLS_ADDRESS_VALIDATION_PATH: str = "/address-validation"

    @property
    def enabled_carriers(self) -> List[CarrierCode]:
        return [CarrierCode.parse(code) for code in self.SHIPPING_ENABLED_CARRIERS]

    @property
    def default_carrier(self) -> CarrierCode:
        return CarrierCode.parse(self.SHIPPING_DEFAULT_CARRIER)

    def carrier_configs(self) -> Dict[CarrierCode, CarrierConfig]:
        """Per-carrier configuration for every enabled carrier, default carrier first."""
        all_configs = {
            CarrierCode.DHL: CarrierConfig(
                carrier=CarrierCode.DHL,
                base_url=self.DHL_API_URL.rstrip("/"),
                credentials={
                    "api_key": self.DHL_API_KEY,
                    "api_secret": self.DHL_API_SECRET,
                    "account_number": self.DHL_ACCOUNT_NUMBER,
                },
                timeout_ms=self.DHL_TIMEOUT_MS or self.SHIPPING_REQUEST_TIMEOUT_MS,
                max_attempts=self.DHL_MAX_ATTEMPTS or self.SHIPPING_MAX_ATTEMPTS,
                address_validation_path=self.DHL_ADDRESS_VALIDATION_PATH,
            ),
            CarrierCode.GLS: CarrierConfig(
                carrier=CarrierCode.GLS,
                base_url=self.GLS_API_URL.rstrip("/"),
                credentials={
                    "client_id": self.GLS_CLIENT_ID,
                    "client_secret": self.GLS_CLIENT_SECRET,
                    "customer_id": self.GLS_CUSTOMER_ID,
                },
                timeout_ms=self.GLS_TIMEOUT_MS or self.SHIPPING_REQUEST_TIMEOUT_MS,
                max_attempts=self.GLS_MAX_ATTEMPTS or self.SHIPPING_MAX_ATTEMPTS,
                address_validation_path=self.GLS_ADDRESS_VALIDATION_PATH,
            ),
        }
        enabled = self.enabled_carriers
        ordered = sorted(enabled, key=lambda code: code != self.default_carrier)
        return {code: all_configs[code] for code in ordered}

    @model_validator(mode="after")
    def validate_carrier_config(self):
        """Reject configurations no environment can run with."""
        errors = []

        unknown = [c for c in self.SHIPPING_ENABLED_CARRIERS if c not in CarrierCode.__members__]
        if unknown:
            errors.append(f"Unknown carriers in SHIPPING_ENABLED_CARRIERS: {', '.join(unknown)}")
        elif self.SHIPPING_DEFAULT_CARRIER not in self.SHIPPING_ENABLED_CARRIERS:
            errors.append(
                f"SHIPPING_DEFAULT_CARRIER={self.SHIPPING_DEFAULT_CARRIER} is not enabled"
            )

        for name in ("SHIPPING_REQUEST_TIMEOUT_MS", "SHIPPING_OPERATION_TIMEOUT_MS", "SHIPPING_MAX_ATTEMPTS"):
            if getattr(self, name) < 1:
                errors.append(f"{name} must be positive")
        for name in ("DHL_TIMEOUT_MS", "DHL_MAX_ATTEMPTS", "GLS_TIMEOUT_MS", "GLS_MAX_ATTEMPTS"):
            value = getattr(self, name)
            if value is not None and value < 1:
                errors.append(f"{name} must be positive")
        if self.SHIPPING_RETRY_BASE_DELAY_MS < 0 or self.SHIPPING_RETRY_MAX_DELAY_MS < 0:
            errors.append("Retry delays cannot be negative")

        if errors:
            raise ValueError(
                "SHIPPING CONFIGURATION ERRORS:\n" + "\n".join(f"  - {e}" for e in errors)
            )
        return self

    @model_validator(mode="after")
    def validate_production_config(self):
        """Runtime validation to catch insecure production configurations."""
        if self.ENVIRONMENT == "production":
            errors = []

            for name in ("DHL_API_URL", "GLS_API_URL"):
                url = getattr(self, name)
                if not url.startswith("https://"):
                    errors.append(f"{name} must use HTTPS in production")
                if any(marker in url.lower() for marker in NON_PRODUCTION_URL_MARKERS):
                    errors.append(f"Non-production endpoint {name}={url} is forbidden in production")

            if errors:
                raise ValueError(
                    "PRODUCTION SECURITY VIOLATIONS:\n" + "\n".join(f"  - {e}" for e in errors)
                )

        return self


settings = Settings()
