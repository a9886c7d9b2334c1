"""
Request Normalizer v1.0.0

Pure functions shared by every carrier adapter:
- Invariant validation, run before any network call. Collects every violation
  instead of stopping at the first.
- Unit conversion (weights to kilograms, dimensions to centimetres).
- House number extraction for carriers that want it separate from the street.
- Carrier status mapping into TrackingStatus, preserving the raw status.

Nothing in this module performs I/O or keeps state.
"""
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from shipping_gateway.core.exceptions import ShippingValidationError
from shipping_gateway.core.utils import stable_digest
from shipping_gateway.models.carrier import (
    CarrierCode,
    DimensionUnit,
    ServiceLevel,
    TrackingStatus,
    WeightUnit,
)
from shipping_gateway.models.shipping import (
    Address,
    CustomsLineItem,
    Dimensions,
    Package,
    ShipmentRequest,
    TrackingEvent,
    TrackingRequest,
    Weight,
)

logger = logging.getLogger(__name__)

COUNTRY_CODE_PATTERN = re.compile(r"^[A-Z]{2}$")
COMMODITY_CODE_PATTERN = re.compile(r"^\d{6,8}$")

# Countries that do not use postal codes
NO_POSTAL_CODE_COUNTRIES = frozenset({
    "AE", "AG", "AO", "AW", "BF", "BI", "BJ", "BS", "BW", "BZ", "CD", "CF", "CG",
    "CI", "CK", "CM", "DJ", "DM", "ER", "FJ", "GA", "GD", "GH", "GM", "GQ", "GY",
    "HK", "IE", "JM", "KI", "KM", "KN", "KP", "LC", "ML", "MO", "MR", "MW", "NR",
    "NU", "QA", "RW", "SB", "SC", "SL", "SO", "SR", "ST", "SY", "TD", "TF", "TG",
    "TK", "TL", "TO", "TT", "TV", "TZ", "UG", "VU", "YE", "ZW",
})

POSTAL_CODE_FORMATS = {
    "AT": re.compile(r"^\d{4}$"),
    "BE": re.compile(r"^\d{4}$"),
    "CH": re.compile(r"^\d{4}$"),
    "DE": re.compile(r"^\d{5}$"),
    "DK": re.compile(r"^\d{4}$"),
    "NL": re.compile(r"^\d{4} ?[A-Z]{2}$"),
    "US": re.compile(r"^\d{5}(-\d{4})?$"),
}

MAX_STREET_LINES = 3

KG_PER_UNIT = {
    WeightUnit.KG: Decimal("1"),
    WeightUnit.G: Decimal("0.001"),
    WeightUnit.LB: Decimal("0.45359237"),
    WeightUnit.OZ: Decimal("0.028349523125"),
}

CM_PER_UNIT = {
    DimensionUnit.CM: Decimal("1"),
    DimensionUnit.IN: Decimal("2.54"),
}

Violations = List[Tuple[str, str]]


# =============================================================================
# Unit conversion
# =============================================================================

def to_kilograms(weight: Weight) -> Decimal:
    """Convert a Weight to kilograms, rounded to grams."""
    return (Decimal(weight.amount) * KG_PER_UNIT[WeightUnit(weight.unit)]).quantize(Decimal("0.001"))


def to_centimeters(value: Decimal, unit: DimensionUnit) -> Decimal:
    return (Decimal(value) * CM_PER_UNIT[DimensionUnit(unit)]).quantize(Decimal("0.1"))


def dimensions_in_cm(dimensions: Dimensions) -> Tuple[Decimal, Decimal, Decimal]:
    return (
        to_centimeters(dimensions.length, dimensions.unit),
        to_centimeters(dimensions.width, dimensions.unit),
        to_centimeters(dimensions.height, dimensions.unit),
    )


def parse_amount(value: Any) -> Decimal:
    """Parse a carrier money/number value without going through float."""
    if value is None or value == "":
        raise ValueError("Missing amount")
    return Decimal(str(value))


# =============================================================================
# Address helpers
# =============================================================================

_TRAILING_HOUSE_NUMBER = re.compile(
    r"^(?P<street>.*?\D)[\s,]+(?P<number>\d+\s?[A-Za-z]?(?:\s?[-/]\s?\d+\s?[A-Za-z]?)?)$"
)
_LEADING_HOUSE_NUMBER = re.compile(
    r"^(?P<number>\d+\s?[A-Za-z]?(?:[-/]\d+[A-Za-z]?)?)[\s,]+(?P<street>\D.*)$"
)


def split_house_number(street_line: str) -> Tuple[str, str]:
    """
    Split "Hauptstrasse 12a" into ("Hauptstrasse", "12a").

    Handles trailing (continental) and leading (anglo) numbers. Returns the
    stripped line and an empty number when none is found.
    """
    line = " ".join(street_line.split())
    match = _TRAILING_HOUSE_NUMBER.match(line)
    if match:
        return match.group("street").strip().rstrip(","), match.group("number").replace(" ", "")
    match = _LEADING_HOUSE_NUMBER.match(line)
    if match:
        return match.group("street").strip(), match.group("number").replace(" ", "")
    return line, ""


def street_and_number(address: Address) -> Tuple[str, str]:
    """Street and house number, preferring an explicit ``house_number``."""
    first_line = address.street_lines[0] if address.street_lines else ""
    if address.house_number:
        return first_line.strip(), address.house_number.strip()
    return split_house_number(first_line)


# =============================================================================
# Validation
# =============================================================================

def _is_positive(value: Any) -> bool:
    try:
        return Decimal(value) > 0
    except (InvalidOperation, TypeError, ValueError):
        return False


def _address_violations(address: Address, prefix: str) -> Violations:
    violations: Violations = []

    if not (address.name or "").strip():
        violations.append((f"{prefix}.name", "is required"))

    lines = [line for line in (address.street_lines or ()) if line and line.strip()]
    if not lines:
        violations.append((f"{prefix}.street_lines", "at least one street line is required"))
    elif len(address.street_lines) > MAX_STREET_LINES:
        violations.append((f"{prefix}.street_lines", f"at most {MAX_STREET_LINES} lines allowed"))

    if not (address.city or "").strip():
        violations.append((f"{prefix}.city", "is required"))

    country = address.country_code or ""
    if not COUNTRY_CODE_PATTERN.match(country):
        violations.append((f"{prefix}.country_code", "must be two uppercase letters (ISO-3166-1 alpha-2)"))

    postal = (address.postal_code or "").strip()
    if not postal:
        if COUNTRY_CODE_PATTERN.match(country) and country not in NO_POSTAL_CODE_COUNTRIES:
            violations.append((f"{prefix}.postal_code", f"is required for {country}"))
    else:
        pattern = POSTAL_CODE_FORMATS.get(country)
        if pattern and not pattern.match(postal.upper()):
            violations.append((f"{prefix}.postal_code", f"invalid format for {country}"))

    return violations


def _weight_violations(weight: Optional[Weight], prefix: str) -> Violations:
    if weight is None:
        return [(prefix, "is required")]
    violations: Violations = []
    if not _is_positive(weight.amount):
        violations.append((f"{prefix}.amount", "must be greater than zero"))
    try:
        WeightUnit(weight.unit)
    except ValueError:
        violations.append((f"{prefix}.unit", f"unsupported unit {weight.unit!r}"))
    return violations


def _package_violations(package: Package, prefix: str) -> Violations:
    violations = _weight_violations(package.weight, f"{prefix}.weight")
    if package.dimensions is not None:
        for axis in ("length", "width", "height"):
            if not _is_positive(getattr(package.dimensions, axis)):
                violations.append((f"{prefix}.dimensions.{axis}", "must be greater than zero"))
    if package.declared_value is not None:
        try:
            if Decimal(package.declared_value) < 0:
                violations.append((f"{prefix}.declared_value", "cannot be negative"))
        except (InvalidOperation, TypeError, ValueError):
            violations.append((f"{prefix}.declared_value", "must be a decimal amount"))
    return violations


def _customs_violations(item: CustomsLineItem, prefix: str) -> Violations:
    violations: Violations = []
    if not COMMODITY_CODE_PATTERN.match(item.commodity_code or ""):
        violations.append((f"{prefix}.commodity_code", "must be a 6-8 digit HS code"))
    if not (item.description or "").strip():
        violations.append((f"{prefix}.description", "is required"))
    if item.quantity is None or item.quantity < 1:
        violations.append((f"{prefix}.quantity", "must be at least 1"))

    gross = _weight_violations(item.gross_weight, f"{prefix}.gross_weight")
    net = _weight_violations(item.net_weight, f"{prefix}.net_weight")
    violations.extend(gross)
    violations.extend(net)
    if not gross and not net:
        if to_kilograms(item.net_weight) > to_kilograms(item.gross_weight):
            violations.append((f"{prefix}.net_weight", "cannot exceed gross weight"))
    return violations


def address_violations(address: Address, prefix: str = "address") -> Violations:
    return _address_violations(address, prefix)


def shipment_violations(request: ShipmentRequest, require_idempotency_key: bool) -> Violations:
    """Every invariant violation in a shipment/rate request."""
    violations: Violations = []
    violations.extend(_address_violations(request.shipper, "shipper"))
    violations.extend(_address_violations(request.recipient, "recipient"))

    if not request.packages:
        violations.append(("packages", "at least one package is required"))
    for index, package in enumerate(request.packages or ()):
        violations.extend(_package_violations(package, f"packages[{index}]"))

    for index, item in enumerate(request.customs_items or ()):
        violations.extend(_customs_violations(item, f"customs_items[{index}]"))

    try:
        ServiceLevel(request.service_level)
    except ValueError:
        violations.append(("service_level", f"unsupported service level {request.service_level!r}"))

    if require_idempotency_key and not (request.idempotency_key or "").strip():
        violations.append(("idempotency_key", "is required to create a shipment"))

    return violations


def _raise_if_any(violations: Violations, subject: str) -> None:
    if violations:
        summary = ", ".join(field for field, _ in violations)
        raise ShippingValidationError(f"Invalid {subject}: {summary}", violations=violations)


def validate_address(address: Address) -> None:
    """Raise ShippingValidationError listing every invalid address field."""
    _raise_if_any(address_violations(address), "address")


def validate_shipment_request(request: ShipmentRequest, require_idempotency_key: bool = False) -> None:
    """Raise ShippingValidationError listing every invalid request field."""
    _raise_if_any(shipment_violations(request, require_idempotency_key), "shipment request")


def validate_tracking_request(request: TrackingRequest) -> str:
    """Return the cleaned tracking number or raise ShippingValidationError."""
    number = "".join((request.tracking_number or "").split())
    if not number:
        _raise_if_any([("tracking_number", "is required")], "tracking request")
    return number


# =============================================================================
# Idempotency fingerprint
# =============================================================================

def _address_payload(address: Address) -> Dict[str, Any]:
    return {
        "name": address.name,
        "street_lines": list(address.street_lines),
        "city": address.city,
        "postal_code": address.postal_code,
        "country_code": address.country_code,
        "state": address.state,
        "company": address.company,
        "house_number": address.house_number,
    }


def shipment_fingerprint(request: ShipmentRequest, carrier: CarrierCode) -> str:
    """
    Digest of everything that determines the carrier-side shipment.

    Contact details and the idempotency key itself are excluded.
    """
    payload = {
        "carrier": carrier.value,
        "shipper": _address_payload(request.shipper),
        "recipient": _address_payload(request.recipient),
        "packages": [
            {
                "weight_kg": to_kilograms(p.weight),
                "dimensions_cm": list(dimensions_in_cm(p.dimensions)) if p.dimensions else None,
                "declared_value": p.declared_value,
            }
            for p in request.packages
        ],
        "customs": [
            {
                "commodity_code": item.commodity_code,
                "quantity": item.quantity,
                "gross_kg": to_kilograms(item.gross_weight),
                "net_kg": to_kilograms(item.net_weight),
                "value": item.value,
            }
            for item in request.customs_items
        ],
        "service_level": ServiceLevel(request.service_level).value,
        "reference": request.reference,
        "label_format": request.label_format,
    }
    return stable_digest(payload)


# =============================================================================
# Tracking status mapping
# =============================================================================

def map_tracking_status(raw_status: Optional[str], status_map: Mapping[str, TrackingStatus]) -> TrackingStatus:
    """
    Map a carrier status string into TrackingStatus.

    Keys in ``status_map`` are matched case-insensitively. Unmapped statuses
    become UNKNOWN; the caller keeps the raw string on the event.
    """
    if not raw_status:
        return TrackingStatus.UNKNOWN
    key = raw_status.strip().lower()
    for candidate, status in status_map.items():
        if candidate.lower() == key:
            return status
    logger.warning(f"[NORMALIZER] Unmapped carrier status '{raw_status}', reporting UNKNOWN")
    return TrackingStatus.UNKNOWN


def order_events(events: Iterable[TrackingEvent]) -> Tuple[TrackingEvent, ...]:
    """
    Oldest-first. Events without a timestamp keep carrier order after the
    timestamped ones.
    """
    events = list(events)
    dated = sorted((e for e in events if e.timestamp is not None), key=lambda e: e.timestamp)
    undated = [e for e in events if e.timestamp is None]
    return tuple(dated + undated)


def format_location(*parts: Optional[str]) -> Optional[str]:
    cleaned: Sequence[str] = [p.strip() for p in parts if p and p.strip()]
    return ", ".join(cleaned) if cleaned else None
