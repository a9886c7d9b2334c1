"""
DHL Carrier Adapter v1.0.0

Token-authenticated carrier:
- POST /auth/v4/accesstoken with HTTP Basic (API key/secret) exchanges the
  key pair for a short-lived access token, sent as Bearer on every call.
- Shipment creation forwards the caller's idempotency key as an
  ``Idempotency-Key`` header, so DHL deduplicates retries server-side too.
- Customs line items travel as an export declaration.
- Errors are RFC 7807 problem documents (title/detail/status).
"""
import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from shipping_gateway.core.utils import parse_timestamp, utcnow
from shipping_gateway.models.carrier import CarrierCode, ServiceLevel, TrackingStatus
from shipping_gateway.models.shipping import (
    Address,
    Package,
    RateQuote,
    ShipmentRequest,
    ShipmentResult,
    TrackingEvent,
    TrackingRequest,
    ValidationResult,
)
from shipping_gateway.modules.shipping import normalizer
from shipping_gateway.modules.shipping.carriers import register_carrier
from shipping_gateway.modules.shipping.carriers.base import PARSE_ERRORS, BaseCarrier
from shipping_gateway.modules.shipping.credentials import TokenGrant

logger = logging.getLogger(__name__)

TOKEN_PATH = "/auth/v4/accesstoken"
RATES_PATH = "/rates"
SHIPMENTS_PATH = "/shipments"
TRACKING_PATH = "/tracking/{tracking_number}"

# DHL product codes per service level
PRODUCT_CODES = {
    ServiceLevel.STANDARD: "P",
    ServiceLevel.EXPRESS: "N",
    ServiceLevel.PRIORITY: "D",
    ServiceLevel.ECONOMY: "U",
}
SERVICE_LEVELS = {code: level for level, code in PRODUCT_CODES.items()}

# DHL tracking status codes -> unified status
STATUS_MAP = {
    "pre-transit": TrackingStatus.CREATED,
    "shipment-information-received": TrackingStatus.CREATED,
    "pickup": TrackingStatus.IN_TRANSIT,
    "transit": TrackingStatus.IN_TRANSIT,
    "processed": TrackingStatus.IN_TRANSIT,
    "arrived-at-facility": TrackingStatus.IN_TRANSIT,
    "departed-facility": TrackingStatus.IN_TRANSIT,
    "customs-cleared": TrackingStatus.IN_TRANSIT,
    "processed-at-delivery-facility": TrackingStatus.OUT_FOR_DELIVERY,
    "out-for-delivery": TrackingStatus.OUT_FOR_DELIVERY,
    "delivered": TrackingStatus.DELIVERED,
    "failure": TrackingStatus.EXCEPTION,
    "returned": TrackingStatus.EXCEPTION,
}

# Waybill numbers: 10 digits (express) or JJD/JVGL prefixed (parcel)
TRACKING_NUMBER_PATTERN = re.compile(r"^(\d{10}|JJD\d{10,20}|JVGL\d{8,20})$")


# =============================================================================
# Wire format
# =============================================================================

def _postal_address(address: Address) -> Dict[str, Any]:
    lines = [line for line in address.street_lines if line and line.strip()]
    postal: Dict[str, Any] = {
        "postalCode": address.postal_code,
        "cityName": address.city,
        "countryCode": address.country_code,
        "addressLine1": lines[0],
    }
    if len(lines) > 1:
        postal["addressLine2"] = lines[1]
    if len(lines) > 2:
        postal["addressLine3"] = lines[2]
    if address.state:
        postal["provinceCode"] = address.state
    return postal


def _contact(address: Address) -> Dict[str, Any]:
    contact: Dict[str, Any] = {
        "fullName": address.name,
        "companyName": address.company or address.name,
    }
    if address.phone:
        contact["phone"] = address.phone
    if address.email:
        contact["email"] = address.email
    return contact


def _packages(packages: Tuple[Package, ...]) -> List[Dict[str, Any]]:
    result = []
    for package in packages:
        entry: Dict[str, Any] = {"weight": float(normalizer.to_kilograms(package.weight))}
        if package.dimensions is not None:
            length, width, height = normalizer.dimensions_in_cm(package.dimensions)
            entry["dimensions"] = {"length": float(length), "width": float(width), "height": float(height)}
        if package.description:
            entry["description"] = package.description
        result.append(entry)
    return result


def _export_declaration(request: ShipmentRequest) -> Dict[str, Any]:
    items = []
    for number, item in enumerate(request.customs_items, start=1):
        line: Dict[str, Any] = {
            "number": number,
            "description": item.description,
            "quantity": {"value": item.quantity, "unitOfMeasurement": "PCS"},
            "commodityCodes": [{"typeCode": "outbound", "value": item.commodity_code}],
            "weight": {
                "grossValue": float(normalizer.to_kilograms(item.gross_weight)),
                "netValue": float(normalizer.to_kilograms(item.net_weight)),
            },
        }
        if item.value is not None:
            line["price"] = float(item.value)
        if item.origin_country:
            line["manufacturerCountry"] = item.origin_country
        items.append(line)
    return {"lineItems": items}


def build_rate_payload(request: ShipmentRequest, account_number: str, shipping_date: str) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "customerDetails": {
            "shipperDetails": _postal_address(request.shipper),
            "receiverDetails": _postal_address(request.recipient),
        },
        "plannedShippingDateAndTime": shipping_date,
        "unitOfMeasurement": "metric",
        "isCustomsDeclarable": bool(request.customs_items),
        "packages": _packages(request.packages),
        "productCode": PRODUCT_CODES[ServiceLevel(request.service_level)],
    }
    if account_number:
        payload["accounts"] = [{"typeCode": "shipper", "number": account_number}]
    return payload


def build_shipment_payload(request: ShipmentRequest, account_number: str, shipping_date: str) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "plannedShippingDateAndTime": shipping_date,
        "productCode": PRODUCT_CODES[ServiceLevel(request.service_level)],
        "customerDetails": {
            "shipperDetails": {
                "postalAddress": _postal_address(request.shipper),
                "contactInformation": _contact(request.shipper),
            },
            "receiverDetails": {
                "postalAddress": _postal_address(request.recipient),
                "contactInformation": _contact(request.recipient),
            },
        },
        "content": {
            "packages": _packages(request.packages),
            "isCustomsDeclarable": bool(request.customs_items),
            "unitOfMeasurement": "metric",
        },
        "outputImageProperties": {
            "imageOptions": [{"typeCode": "label", "templateName": "ECOM26_84_001"}],
            "encodingFormat": request.label_format.value.lower(),
        },
    }
    if account_number:
        payload["accounts"] = [{"typeCode": "shipper", "number": account_number}]
    if request.customs_items:
        payload["content"]["exportDeclaration"] = _export_declaration(request)
    if request.reference:
        payload["customerReferences"] = [{"value": request.reference, "typeCode": "CU"}]
    return payload


def build_validation_params(address: Address) -> Dict[str, str]:
    params = {
        "type": "delivery",
        "countryCode": address.country_code,
        "postalCode": address.postal_code,
        "cityName": address.city,
    }
    if address.street_lines:
        params["addressLine1"] = address.street_lines[0]
    return params


def parse_rates(data: Dict[str, Any]) -> Tuple[RateQuote, ...]:
    quotes = []
    for product in data.get("products") or []:
        prices = product.get("totalPrice") or []
        if not prices:
            continue
        price = prices[0]
        product_code = product.get("productCode")
        capabilities = product.get("deliveryCapabilities") or {}
        days = capabilities.get("estimatedDeliveryTimeInDays", capabilities.get("totalTransitDays"))
        quotes.append(RateQuote(
            carrier=CarrierCode.DHL,
            service_level=SERVICE_LEVELS.get(product_code, ServiceLevel.STANDARD),
            cost=normalizer.parse_amount(price["price"]),
            currency=price.get("priceCurrency") or price.get("currencyCode") or "EUR",
            estimated_days=int(days) if days is not None else None,
            service_code=product_code,
        ))
    return tuple(quotes)


def parse_shipment(data: Dict[str, Any], raw_response: str) -> ShipmentResult:
    packages = data.get("packages") or []
    tracking_number = data.get("shipmentTrackingNumber") or packages[0]["trackingNumber"]
    documents = data.get("documents") or []
    label_reference = ""
    if documents:
        label_reference = documents[0].get("url") or documents[0].get("content") or ""

    total = data.get("shipmentCharges") or data.get("totalPrice")
    if isinstance(total, list):
        total = total[0] if total else None
    cost: Optional[Decimal] = None
    currency: Optional[str] = None
    if total:
        cost = normalizer.parse_amount(total["price"])
        currency = total.get("priceCurrency") or total.get("currencyCode")

    return ShipmentResult(
        carrier=CarrierCode.DHL,
        tracking_number=str(tracking_number),
        label_reference=label_reference,
        estimated_cost=cost,
        currency=currency,
        raw_response=raw_response,
        shipment_id=data.get("dispatchConfirmationNumber"),
    )


def parse_tracking(data: Dict[str, Any]) -> Tuple[TrackingEvent, ...]:
    shipments = data.get("shipments") or []
    if not shipments:
        return ()
    events = []
    for event in shipments[0].get("events") or []:
        raw_status = event.get("statusCode") or event.get("status") or ""
        location = (event.get("location") or {}).get("address") or {}
        events.append(TrackingEvent(
            timestamp=parse_timestamp(event.get("timestamp")),
            status=normalizer.map_tracking_status(raw_status, STATUS_MAP),
            raw_status=raw_status,
            location=normalizer.format_location(
                location.get("addressLocality"), location.get("countryCode")
            ),
            description=event.get("description"),
        ))
    return normalizer.order_events(events)


def parse_validation(data: Dict[str, Any], address: Address) -> ValidationResult:
    warnings = tuple(str(w) for w in data.get("warnings") or [])
    matches = data.get("address") or []
    if not matches:
        return ValidationResult(
            carrier=CarrierCode.DHL,
            valid=False,
            issues=warnings or ("Address not found",),
        )
    match = matches[0]
    suggestion = Address(
        name=address.name,
        street_lines=address.street_lines,
        city=match.get("cityName") or address.city,
        postal_code=match.get("postalCode") or address.postal_code,
        country_code=match.get("countryCode") or address.country_code,
        state=match.get("countyName") or address.state,
        company=address.company,
        phone=address.phone,
        email=address.email,
        house_number=address.house_number,
    )
    return ValidationResult(
        carrier=CarrierCode.DHL,
        valid=True,
        suggested_correction=suggestion if suggestion != address else None,
        issues=warnings,
    )


# =============================================================================
# Adapter
# =============================================================================

@register_carrier(CarrierCode.DHL)
class DHLCarrier(BaseCarrier):
    """DHL adapter: Basic-auth token exchange, Bearer calls, server-side idempotency."""

    supports_idempotency_keys = True
    tracking_number_pattern = TRACKING_NUMBER_PATTERN

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.DHL

    async def authenticate(self) -> TokenGrant:
        self._require_credentials("api_key", "api_secret")
        return await self._fetch_token(
            "POST",
            TOKEN_PATH,
            headers={
                "Authorization": "Basic " + self._basic_auth(
                    self.config.credential("api_key"), self.config.credential("api_secret")
                ),
                "Content-Type": "application/x-www-form-urlencoded",
            },
            data={"grant_type": "client_credentials"},
        )

    def _parse_error(self, body: Any) -> Tuple[Optional[str], Optional[str]]:
        if not isinstance(body, dict):
            return None, None
        code = body.get("code") or body.get("instance")
        detail = body.get("detail") or body.get("title") or body.get("message")
        additional = body.get("additionalDetails")
        if isinstance(additional, list) and additional:
            detail = f"{detail}: {'; '.join(str(d) for d in additional)}" if detail else "; ".join(
                str(d) for d in additional
            )
        return (str(code) if code is not None else None), detail

    @staticmethod
    def _shipping_date() -> str:
        return utcnow().strftime("%Y-%m-%dT%H:%M:%S GMT+00:00")

    # ==================== Address Validation ====================

    async def validate_address(self, address: Address) -> ValidationResult:
        data, _ = await self._request(
            "GET",
            self.config.address_validation_path,
            "address validation",
            params=build_validation_params(address),
        )
        try:
            return parse_validation(data, address)
        except PARSE_ERRORS as e:
            raise self._malformed("address validation", e) from e

    # ==================== Rating ====================

    async def get_rates(self, request: ShipmentRequest) -> Tuple[RateQuote, ...]:
        payload = build_rate_payload(request, self.config.credential("account_number"), self._shipping_date())
        data, _ = await self._request("POST", RATES_PATH, "rates", json=payload)
        try:
            quotes = parse_rates(data)
        except PARSE_ERRORS as e:
            raise self._malformed("rates", e) from e
        logger.info(f"[DHL] {len(quotes)} rate quotes")
        return quotes

    # ==================== Shipping ====================

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResult:
        payload = build_shipment_payload(request, self.config.credential("account_number"), self._shipping_date())
        headers = {}
        if request.idempotency_key:
            headers["Idempotency-Key"] = request.idempotency_key.strip()
        data, raw = await self._request("POST", SHIPMENTS_PATH, "shipment", headers=headers, json=payload)
        try:
            result = parse_shipment(data, raw)
        except PARSE_ERRORS as e:
            raise self._malformed("shipment", e) from e
        logger.info(f"[DHL] Shipment created: {result.tracking_number}")
        return result

    # ==================== Tracking ====================

    async def track_shipment(self, request: TrackingRequest) -> Tuple[TrackingEvent, ...]:
        path = TRACKING_PATH.format(tracking_number=quote(request.tracking_number, safe=""))
        data, _ = await self._request("GET", path, "tracking")
        try:
            return parse_tracking(data)
        except PARSE_ERRORS as e:
            raise self._malformed("tracking", e) from e
