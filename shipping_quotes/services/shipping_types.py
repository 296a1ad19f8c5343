"""
Transient data classes for the quotation engine.

These never touch the database directly: ShippingOption and AppliedRule are
serialized into the quote snapshot JSON columns and the quote cache via
to_dict()/from_dict().
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional


TWO_PLACES = Decimal("0.01")


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a money value. Returns None for anything unparseable or non-finite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def money(value: Decimal) -> str:
    return str(value.quantize(TWO_PLACES))


# =============================================================================
# Request side
# =============================================================================

@dataclass
class PackageSpec:
    """One package as sent to the aggregator (centimetres / kilograms)."""
    width_cm: float
    height_cm: float
    length_cm: float
    weight_kg: float
    insurance_value: float = 0.0
    quantity: int = 1
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "width_cm": self.width_cm,
            "height_cm": self.height_cm,
            "length_cm": self.length_cm,
            "weight_kg": self.weight_kg,
            "insurance_value": self.insurance_value,
            "quantity": self.quantity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PackageSpec":
        return cls(
            width_cm=data["width_cm"],
            height_cm=data["height_cm"],
            length_cm=data["length_cm"],
            weight_kg=data["weight_kg"],
            insurance_value=data.get("insurance_value", 0.0),
            quantity=data.get("quantity", 1),
            id=data.get("id"),
        )


@dataclass
class QuoteRequest:
    destination_postal_code: str
    packages: List[PackageSpec]
    origin_postal_code: Optional[str] = None


@dataclass
class QuoteContext:
    """Order facts the rule engine evaluates conditions against."""
    order_value: Decimal = Decimal("0")
    destination_state: Optional[str] = None
    destination_postal_code: Optional[str] = None


# =============================================================================
# Response side
# =============================================================================

@dataclass
class CarrierServiceInfo:
    """A carrier service as listed by the aggregator."""
    carrier_service_id: int
    name: str
    carrier_id: Optional[int] = None
    carrier_name: Optional[str] = None


@dataclass
class ShippingOption:
    """A priced delivery option. Delivery days are business days."""
    carrier_service_id: int
    service_name: str
    price: Decimal
    delivery_days_min: int
    delivery_days_max: int
    carrier_id: Optional[int] = None
    carrier_name: Optional[str] = None
    original_price: Optional[Decimal] = None
    estimated_delivery_date_min: Optional[date] = None
    estimated_delivery_date_max: Optional[date] = None
    package_count: int = 1
    currency: str = "BRL"

    @property
    def is_free(self) -> bool:
        return self.original_price is not None and self.price == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carrier_service_id": self.carrier_service_id,
            "service_name": self.service_name,
            "carrier_id": self.carrier_id,
            "carrier_name": self.carrier_name,
            "price": money(self.price),
            "original_price": money(self.original_price) if self.original_price is not None else None,
            "currency": self.currency,
            "delivery_days_min": self.delivery_days_min,
            "delivery_days_max": self.delivery_days_max,
            "estimated_delivery_date_min": (
                self.estimated_delivery_date_min.isoformat() if self.estimated_delivery_date_min else None
            ),
            "estimated_delivery_date_max": (
                self.estimated_delivery_date_max.isoformat() if self.estimated_delivery_date_max else None
            ),
            "package_count": self.package_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShippingOption":
        date_min = data.get("estimated_delivery_date_min")
        date_max = data.get("estimated_delivery_date_max")
        return cls(
            carrier_service_id=data["carrier_service_id"],
            service_name=data["service_name"],
            carrier_id=data.get("carrier_id"),
            carrier_name=data.get("carrier_name"),
            price=to_decimal(data["price"]),
            original_price=to_decimal(data.get("original_price")),
            currency=data.get("currency", "BRL"),
            delivery_days_min=data["delivery_days_min"],
            delivery_days_max=data["delivery_days_max"],
            estimated_delivery_date_min=date.fromisoformat(date_min) if date_min else None,
            estimated_delivery_date_max=date.fromisoformat(date_max) if date_max else None,
            package_count=data.get("package_count", 1),
        )


@dataclass
class AppliedRule:
    """Audit entry for one evaluated rule."""
    rule_id: Optional[int]
    rule_type: str
    matched: bool
    applied: bool
    affected_option_ids: List[int] = field(default_factory=list)
    production_days_added: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_type": self.rule_type,
            "matched": self.matched,
            "applied": self.applied,
            "affected_option_ids": list(self.affected_option_ids),
            "production_days_added": self.production_days_added,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppliedRule":
        return cls(
            rule_id=data.get("rule_id"),
            rule_type=data["rule_type"],
            matched=data["matched"],
            applied=data["applied"],
            affected_option_ids=list(data.get("affected_option_ids") or []),
            production_days_added=data.get("production_days_added", 0),
        )


@dataclass
class QuoteResult:
    options: List[ShippingOption]
    applied_rules: List[AppliedRule]
    environment: str
    fingerprint: str
    cached: bool = False
    destination_state: Optional[str] = None
    production_days_added: int = 0
    free_shipping_rule_id: Optional[int] = None
    default_days: int = 0
    # Rules could not be applied; options are the raw carrier prices
    degraded: bool = False

    @property
    def no_service_available(self) -> bool:
        return not self.options

    @property
    def free_shipping_applied(self) -> bool:
        return self.free_shipping_rule_id is not None
