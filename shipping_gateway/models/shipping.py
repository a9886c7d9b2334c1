"""
Carrier-agnostic shipping value types.

All request and result objects are frozen dataclasses. Money and weights are
Decimal; sequences are tuples so results can be iterated any number of times.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from shipping_gateway.models.carrier import (
    CarrierCode,
    DimensionUnit,
    LabelFormat,
    ServiceLevel,
    TrackingStatus,
    WeightUnit,
)


# =============================================================================
# Requests
# =============================================================================

@dataclass(frozen=True)
class Address:
    """Postal address. ``country_code`` is ISO-3166-1 alpha-2."""
    name: str
    street_lines: Tuple[str, ...]
    city: str
    postal_code: str
    country_code: str
    state: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    house_number: Optional[str] = None


@dataclass(frozen=True)
class Weight:
    amount: Decimal
    unit: WeightUnit = WeightUnit.KG


@dataclass(frozen=True)
class Dimensions:
    length: Decimal
    width: Decimal
    height: Decimal
    unit: DimensionUnit = DimensionUnit.CM


@dataclass(frozen=True)
class Package:
    weight: Weight
    dimensions: Optional[Dimensions] = None
    declared_value: Optional[Decimal] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class CustomsLineItem:
    """One customs declaration line. ``commodity_code`` is a 6-8 digit HS code."""
    commodity_code: str
    description: str
    gross_weight: Weight
    net_weight: Weight
    quantity: int = 1
    value: Optional[Decimal] = None
    origin_country: Optional[str] = None


@dataclass(frozen=True)
class ShipmentRequest:
    shipper: Address
    recipient: Address
    packages: Tuple[Package, ...]
    service_level: ServiceLevel = ServiceLevel.STANDARD
    idempotency_key: Optional[str] = None
    customs_items: Tuple[CustomsLineItem, ...] = ()
    reference: Optional[str] = None
    label_format: LabelFormat = LabelFormat.PDF
    currency: str = "EUR"


@dataclass(frozen=True)
class TrackingRequest:
    tracking_number: str
    carrier: Optional[CarrierCode] = None


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class ShipmentResult:
    carrier: CarrierCode
    tracking_number: str
    label_reference: str
    estimated_cost: Optional[Decimal]
    currency: Optional[str]
    raw_response: str = field(repr=False)
    shipment_id: Optional[str] = None


@dataclass(frozen=True)
class RateQuote:
    carrier: CarrierCode
    service_level: ServiceLevel
    cost: Decimal
    currency: str
    estimated_days: Optional[int] = None
    service_code: Optional[str] = None
    rate_id: Optional[str] = None


@dataclass(frozen=True)
class TrackingEvent:
    """
    One normalized tracking event.

    ``raw_status`` keeps the carrier's own status string so statuses that map
    to UNKNOWN are still visible to callers. ``timestamp`` is None only when
    the carrier omitted it.
    """
    timestamp: Optional[datetime]
    status: TrackingStatus
    raw_status: str
    location: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class TrackingResult:
    carrier: CarrierCode
    tracking_number: str
    events: Tuple[TrackingEvent, ...]

    @property
    def current_status(self) -> TrackingStatus:
        if not self.events:
            return TrackingStatus.UNKNOWN
        return self.events[-1].status

    @property
    def delivered(self) -> bool:
        return self.current_status == TrackingStatus.DELIVERED


@dataclass(frozen=True)
class ValidationResult:
    carrier: CarrierCode
    valid: bool
    suggested_correction: Optional[Address] = None
    issues: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AuthenticationStatus:
    carrier: CarrierCode
    authenticated: bool
    message: str
