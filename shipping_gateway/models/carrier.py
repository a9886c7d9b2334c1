"""
Carrier identity and shared enumerations.
"""
from enum import Enum


class CarrierCode(str, Enum):
    """Supported shipping carriers."""
    DHL = "DHL"
    GLS = "GLS"

    @classmethod
    def parse(cls, value: "str | CarrierCode") -> "CarrierCode":
        """Accept enum members or case-insensitive names. Raises ValueError."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().upper())


class ServiceLevel(str, Enum):
    """Carrier-agnostic service levels."""
    STANDARD = "STANDARD"
    EXPRESS = "EXPRESS"
    PRIORITY = "PRIORITY"
    ECONOMY = "ECONOMY"


class TrackingStatus(str, Enum):
    """Unified tracking status."""
    CREATED = "CREATED"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    EXCEPTION = "EXCEPTION"
    UNKNOWN = "UNKNOWN"


class WeightUnit(str, Enum):
    KG = "KG"
    G = "G"
    LB = "LB"
    OZ = "OZ"


class DimensionUnit(str, Enum):
    CM = "CM"
    IN = "IN"


class LabelFormat(str, Enum):
    PDF = "PDF"
    ZPL = "ZPL"
    PNG = "PNG"
