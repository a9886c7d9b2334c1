"""
GLS Carrier Adapter v1.0.0

Bearer-token carrier:
- POST /oauth2/v2/token with form-encoded client credentials returns the
  access token; every API call sends it as ``Authorization: Bearer``.
- Weights are kilograms only (KGM); the house number is a separate field.
- Customs line items are sent as transit line items with KGM weights.

Known gap: GLS has no server-side idempotency for shipment creation.
``supports_idempotency_keys`` is False and duplicate protection relies
entirely on the orchestrator's idempotency table.
"""
import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from shipping_gateway.core.utils import parse_timestamp
from shipping_gateway.models.carrier import CarrierCode, ServiceLevel, TrackingStatus
from shipping_gateway.models.shipping import (
    Address,
    RateQuote,
    ShipmentRequest,
    ShipmentResult,
    TrackingEvent,
    TrackingRequest,
    ValidationResult,
    Weight,
)
from shipping_gateway.modules.shipping import normalizer
from shipping_gateway.modules.shipping.carriers import register_carrier
from shipping_gateway.modules.shipping.carriers.base import PARSE_ERRORS, BaseCarrier
from shipping_gateway.modules.shipping.credentials import TokenGrant

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth2/v2/token"
RATES_PATH = "/shipping/rates"
SHIPMENTS_PATH = "/shipping/shipments"
TRACKING_PATH = "/tracking/{tracking_number}"

SERVICE_CODES = {
    ServiceLevel.STANDARD: "PARCEL",
    ServiceLevel.EXPRESS: "EXPRESS",
    ServiceLevel.PRIORITY: "EXPRESS_1200",
    ServiceLevel.ECONOMY: "ECONOMY",
}
SERVICE_LEVELS = {code: level for level, code in SERVICE_CODES.items()}

STATUS_MAP = {
    "PRE_ANNOUNCED": TrackingStatus.CREATED,
    "PREADVICE": TrackingStatus.CREATED,
    "PICKEDUP": TrackingStatus.IN_TRANSIT,
    "INPICKUP": TrackingStatus.IN_TRANSIT,
    "IN_DEPOT": TrackingStatus.IN_TRANSIT,
    "INWAREHOUSE": TrackingStatus.IN_TRANSIT,
    "IN_TRANSIT": TrackingStatus.IN_TRANSIT,
    "INTRANSIT": TrackingStatus.IN_TRANSIT,
    "OUT_FOR_DELIVERY": TrackingStatus.OUT_FOR_DELIVERY,
    "INDELIVERY": TrackingStatus.OUT_FOR_DELIVERY,
    "DELIVERED": TrackingStatus.DELIVERED,
    "DELIVEREDPS": TrackingStatus.DELIVERED,
    "DELIVERY_FAILED": TrackingStatus.EXCEPTION,
    "NOTDELIVERED": TrackingStatus.EXCEPTION,
    "CANCELED": TrackingStatus.EXCEPTION,
}

# Parcel numbers: 11 digits, or 8 alphanumerics (track ID)
TRACKING_NUMBER_PATTERN = re.compile(r"^(\d{11}|[A-Z0-9]{8})$")

WEIGHT_UNIT = "KGM"


# =============================================================================
# Wire format
# =============================================================================

def _kgm(weight: Weight) -> Dict[str, Any]:
    return {"amount": float(normalizer.to_kilograms(weight)), "unit": WEIGHT_UNIT}


def gls_address(address: Address) -> Dict[str, Any]:
    """GLS address block. House number goes in its own field."""
    street, house_number = normalizer.street_and_number(address)
    lines = [line for line in address.street_lines if line and line.strip()]
    result: Dict[str, Any] = {
        "name1": address.company or address.name,
        "street1": street,
        "city": address.city,
        "zipCode": address.postal_code,
        "countryCode": address.country_code,
    }
    if address.company:
        result["name2"] = address.name
    if house_number:
        result["houseNumber"] = house_number
    if len(lines) > 1:
        result["street2"] = " ".join(lines[1:])
    if address.state:
        result["province"] = address.state
    if address.phone:
        result["phone"] = address.phone
    if address.email:
        result["email"] = address.email
    result["contact"] = address.name
    return result


def _parcels(request: ShipmentRequest) -> List[Dict[str, Any]]:
    parcels = []
    for package in request.packages:
        parcel: Dict[str, Any] = {"weight": _kgm(package.weight)}
        if package.dimensions is not None:
            length, width, height = normalizer.dimensions_in_cm(package.dimensions)
            parcel["dimensions"] = {
                "length": float(length),
                "width": float(width),
                "height": float(height),
                "unit": "CMT",
            }
        if package.declared_value is not None:
            parcel["declaredValue"] = {"amount": float(package.declared_value), "currency": request.currency}
        parcels.append(parcel)
    return parcels


def _line_items(request: ShipmentRequest) -> List[Dict[str, Any]]:
    items = []
    for item in request.customs_items:
        line: Dict[str, Any] = {
            "commodityCode": item.commodity_code,
            "goodsDescription": item.description,
            "numberOfPackages": item.quantity,
            "grossWeight": _kgm(item.gross_weight),
            "netWeight": _kgm(item.net_weight),
        }
        if item.value is not None:
            line["value"] = {"amount": float(item.value), "currency": request.currency}
        if item.origin_country:
            line["countryOfOrigin"] = item.origin_country
        items.append(line)
    return items


def build_rate_payload(request: ShipmentRequest, customer_id: str) -> Dict[str, Any]:
    return {
        "customerId": customer_id,
        "shipper": gls_address(request.shipper),
        "consignee": gls_address(request.recipient),
        "parcels": _parcels(request),
        "serviceType": SERVICE_CODES[ServiceLevel(request.service_level)],
    }


def build_shipment_payload(request: ShipmentRequest, customer_id: str) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "customerId": customer_id,
        "shipper": gls_address(request.shipper),
        "consignee": gls_address(request.recipient),
        "parcels": _parcels(request),
        "serviceType": SERVICE_CODES[ServiceLevel(request.service_level)],
        "labelFormat": request.label_format.value,
    }
    if request.reference:
        payload["references"] = [request.reference]
    if request.customs_items:
        payload["lineItems"] = _line_items(request)
    return payload


def build_validation_payload(address: Address) -> Dict[str, Any]:
    return {"address": gls_address(address)}


def parse_rates(data: Dict[str, Any]) -> Tuple[RateQuote, ...]:
    quotes = []
    for rate in data.get("rates") or []:
        total = rate["totalPrice"]
        service_code = rate.get("serviceType")
        days = rate.get("transitDays")
        quotes.append(RateQuote(
            carrier=CarrierCode.GLS,
            service_level=SERVICE_LEVELS.get(service_code, ServiceLevel.STANDARD),
            cost=normalizer.parse_amount(total["amount"]),
            currency=total.get("currency") or "EUR",
            estimated_days=int(days) if days is not None else None,
            service_code=service_code,
            rate_id=rate.get("rateId"),
        ))
    return tuple(quotes)


def parse_shipment(data: Dict[str, Any], raw_response: str) -> ShipmentResult:
    parcels = data.get("parcels") or []
    tracking_number = data.get("trackingId") or parcels[0]["parcelNumber"]
    label_reference = data.get("labelData") or (parcels[0].get("labelUrl") if parcels else None) or ""

    cost: Optional[Decimal] = None
    currency: Optional[str] = None
    total = data.get("totalPrice")
    if total:
        cost = normalizer.parse_amount(total["amount"])
        currency = total.get("currency")

    return ShipmentResult(
        carrier=CarrierCode.GLS,
        tracking_number=str(tracking_number),
        label_reference=label_reference,
        estimated_cost=cost,
        currency=currency,
        raw_response=raw_response,
        shipment_id=data.get("shipmentId"),
    )


def parse_tracking(data: Dict[str, Any]) -> Tuple[TrackingEvent, ...]:
    events = []
    for event in data.get("events") or []:
        raw_status = event.get("status") or event.get("code") or ""
        events.append(TrackingEvent(
            timestamp=parse_timestamp(event.get("timestamp")),
            status=normalizer.map_tracking_status(raw_status, STATUS_MAP),
            raw_status=raw_status,
            location=normalizer.format_location(event.get("location"), event.get("country")),
            description=event.get("description"),
        ))
    return normalizer.order_events(events)


def parse_validation(data: Dict[str, Any], address: Address) -> ValidationResult:
    issues = tuple(str(m) for m in data.get("messages") or [])
    suggestions = data.get("suggestions") or []
    suggestion = None
    if suggestions:
        s = suggestions[0]
        street = " ".join(part for part in (s.get("street1"), s.get("houseNumber")) if part)
        lines = (street,) + tuple(address.street_lines[1:]) if street else address.street_lines
        candidate = Address(
            name=address.name,
            street_lines=lines,
            city=s.get("city") or address.city,
            postal_code=s.get("zipCode") or address.postal_code,
            country_code=s.get("countryCode") or address.country_code,
            state=s.get("province") or address.state,
            company=address.company,
            phone=address.phone,
            email=address.email,
        )
        if candidate != address:
            suggestion = candidate
    return ValidationResult(
        carrier=CarrierCode.GLS,
        valid=bool(data["valid"]),
        suggested_correction=suggestion,
        issues=issues,
    )


# =============================================================================
# Adapter
# =============================================================================

@register_carrier(CarrierCode.GLS)
class GLSCarrier(BaseCarrier):
    """GLS adapter: OAuth client credentials, Bearer calls, no server-side idempotency."""

    supports_idempotency_keys = False
    tracking_number_pattern = TRACKING_NUMBER_PATTERN

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.GLS

    async def authenticate(self) -> TokenGrant:
        self._require_credentials("client_id", "client_secret")
        return await self._fetch_token(
            "POST",
            TOKEN_PATH,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data={
                "grant_type": "client_credentials",
                "client_id": self.config.credential("client_id"),
                "client_secret": self.config.credential("client_secret"),
            },
        )

    def _parse_error(self, body: Any) -> Tuple[Optional[str], Optional[str]]:
        if not isinstance(body, dict):
            return None, None
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            messages = [
                str(e.get("exitMessage") or e.get("message"))
                for e in errors
                if isinstance(e, dict) and (e.get("exitMessage") or e.get("message"))
            ]
            code = first.get("exitCode") or first.get("code")
            return (str(code) if code is not None else None), "; ".join(messages) or None
        if "error" in body:
            return str(body["error"]), body.get("error_description") or str(body["error"])
        return None, body.get("message")

    # ==================== Address Validation ====================

    async def validate_address(self, address: Address) -> ValidationResult:
        data, _ = await self._request(
            "POST",
            self.config.address_validation_path,
            "address validation",
            json=build_validation_payload(address),
        )
        try:
            return parse_validation(data, address)
        except PARSE_ERRORS as e:
            raise self._malformed("address validation", e) from e

    # ==================== Rating ====================

    async def get_rates(self, request: ShipmentRequest) -> Tuple[RateQuote, ...]:
        payload = build_rate_payload(request, self.config.credential("customer_id"))
        data, _ = await self._request("POST", RATES_PATH, "rates", json=payload)
        try:
            quotes = parse_rates(data)
        except PARSE_ERRORS as e:
            raise self._malformed("rates", e) from e
        logger.info(f"[GLS] {len(quotes)} rate quotes")
        return quotes

    # ==================== Shipping ====================

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResult:
        payload = build_shipment_payload(request, self.config.credential("customer_id"))
        data, raw = await self._request("POST", SHIPMENTS_PATH, "shipment", json=payload)
        try:
            result = parse_shipment(data, raw)
        except PARSE_ERRORS as e:
            raise self._malformed("shipment", e) from e
        logger.info(f"[GLS] Shipment created: {result.tracking_number}")
        return result

    # ==================== Tracking ====================

    async def track_shipment(self, request: TrackingRequest) -> Tuple[TrackingEvent, ...]:
        path = TRACKING_PATH.format(tracking_number=quote(request.tracking_number, safe=""))
        data, _ = await self._request("GET", path, "tracking")
        try:
            return parse_tracking(data)
        except PARSE_ERRORS as e:
            raise self._malformed("tracking", e) from e
