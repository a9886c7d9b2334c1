"""
Shipping Gateway Exception Hierarchy

Every failure that leaves the shipping layer is one of these classes. Carrier
HTTP errors, network failures and malformed payloads are translated by the
adapters; nothing carrier-specific escapes to callers.

Exception Hierarchy:
    ShippingError
    ├── ShippingValidationError
    ├── CarrierAuthError
    │   └── TokenRejectedError
    ├── CarrierRejectedError
    ├── CarrierTransientError
    ├── ShippingTimeoutError
    └── UnknownCarrierError
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


class ShippingError(Exception):
    """
    Base exception for all shipping gateway errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "SHIPPING_ERROR"
    default_severity: str = "P2"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    @property
    def carrier(self) -> Optional[str]:
        return self.details.get("carrier")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ShippingValidationError(ShippingError):
    """
    Request violates a data-model invariant. Raised before any network call.

    ``violations`` holds every offending field as (field_path, reason) pairs.
    """
    default_code = "SHIPPING_VALIDATION_FAILED"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        violations: Optional[Sequence[Tuple[str, str]]] = None,
        **kwargs
    ):
        self.violations: List[Tuple[str, str]] = list(violations or [])
        details = kwargs.pop("details", {})
        details["violations"] = [
            {"field": field, "reason": reason} for field, reason in self.violations
        ]
        super().__init__(message, details=details, **kwargs)

    @property
    def fields(self) -> List[str]:
        return [field for field, _ in self.violations]


class CarrierAuthError(ShippingError):
    """Credential acquisition or refresh failed. Terminal."""
    default_code = "CARRIER_AUTH_FAILED"
    default_severity = "P1"

    def __init__(self, message: str, carrier: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["carrier"] = carrier
        super().__init__(message, details=details, **kwargs)


class TokenRejectedError(CarrierAuthError):
    """
    Carrier answered 401 to a token that was still considered valid.

    The adapter has already invalidated the token when this is raised; the
    orchestrator retries the operation once with a fresh one.
    """
    default_code = "CARRIER_TOKEN_REJECTED"


class CarrierRejectedError(ShippingError):
    """Carrier understood the request and declined it. Not retried."""
    default_code = "CARRIER_REJECTED"
    default_severity = "P2"

    def __init__(
        self,
        message: str,
        carrier: Optional[str] = None,
        status_code: Optional[int] = None,
        carrier_error_code: Optional[str] = None,
        **kwargs
    ):
        self.status_code = status_code
        self.carrier_error_code = carrier_error_code
        details = kwargs.pop("details", {})
        details.update({
            "carrier": carrier,
            "status_code": status_code,
            "carrier_error_code": carrier_error_code,
        })
        super().__init__(message, details=details, **kwargs)


class CarrierTransientError(ShippingError):
    """Network failure, 408/429/5xx, or malformed carrier response."""
    default_code = "CARRIER_UNAVAILABLE"
    default_severity = "P2"
    retryable = True

    def __init__(
        self,
        message: str,
        carrier: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        self.status_code = status_code
        details = kwargs.pop("details", {})
        details.update({"carrier": carrier, "status_code": status_code})
        super().__init__(message, details=details, **kwargs)


class ShippingTimeoutError(ShippingError):
    """Caller-visible deadline exceeded (retries included)."""
    default_code = "SHIPPING_TIMEOUT"
    default_severity = "P2"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        carrier: Optional[str] = None,
        **kwargs
    ):
        self.operation = operation
        self.timeout_ms = timeout_ms
        details = kwargs.pop("details", {})
        details.update({"operation": operation, "timeout_ms": timeout_ms, "carrier": carrier})
        super().__init__(message, details=details, **kwargs)


class UnknownCarrierError(ShippingError):
    """Requested carrier is not configured."""
    default_code = "UNKNOWN_CARRIER"
    default_severity = "P3"

    def __init__(self, carrier: Any, configured: Optional[Sequence[str]] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"carrier": str(carrier), "configured": list(configured or [])})
        super().__init__(f"Carrier not configured: {carrier}", details=details, **kwargs)


# =============================================================================
# ERROR CODE CATALOG
# =============================================================================

EXCEPTION_CATALOG = {
    "SHIPPING_ERROR": ShippingError,
    "SHIPPING_VALIDATION_FAILED": ShippingValidationError,
    "CARRIER_AUTH_FAILED": CarrierAuthError,
    "CARRIER_TOKEN_REJECTED": TokenRejectedError,
    "CARRIER_REJECTED": CarrierRejectedError,
    "CARRIER_UNAVAILABLE": CarrierTransientError,
    "SHIPPING_TIMEOUT": ShippingTimeoutError,
    "UNKNOWN_CARRIER": UnknownCarrierError,
}


def get_exception_class(code: str) -> type:
    """Get exception class by error code."""
    return EXCEPTION_CATALOG.get(code, ShippingError)
