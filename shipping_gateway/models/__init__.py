from shipping_gateway.models.carrier import (
    CarrierCode,
    DimensionUnit,
    LabelFormat,
    ServiceLevel,
    TrackingStatus,
    WeightUnit,
)
from shipping_gateway.models.shipping import (
    Address,
    AuthenticationStatus,
    CustomsLineItem,
    Dimensions,
    Package,
    RateQuote,
    ShipmentRequest,
    ShipmentResult,
    TrackingEvent,
    TrackingRequest,
    TrackingResult,
    ValidationResult,
    Weight,
)

__all__ = [
    "CarrierCode",
    "DimensionUnit",
    "LabelFormat",
    "ServiceLevel",
    "TrackingStatus",
    "WeightUnit",
    "Address",
    "AuthenticationStatus",
    "CustomsLineItem",
    "Dimensions",
    "Package",
    "RateQuote",
    "ShipmentRequest",
    "ShipmentResult",
    "TrackingEvent",
    "TrackingRequest",
    "TrackingResult",
    "ValidationResult",
    "Weight",
]
