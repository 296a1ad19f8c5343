"""
Shipping Schemas

Pydantic models for the quotation API requests and responses.

Package limits are not enforced here: the dimension validator reports
violations with the offending package index and field.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator

from shipping_quotes.core.config import INTEGRATION_ENVIRONMENTS


def _check_environment(v):
    if v is not None and v not in INTEGRATION_ENVIRONMENTS:
        raise ValueError(f"environment must be one of {INTEGRATION_ENVIRONMENTS}")
    return v


# ==================== Quote Schemas ====================


class PackageIn(BaseModel):
    """One package (centimetres / kilograms)."""
    id: Optional[str] = Field(None, max_length=64)
    width_cm: float
    height_cm: float
    length_cm: float
    weight_kg: float
    insurance_value: float = 0.0
    quantity: int = 1


class QuoteRequestIn(BaseModel):
    """Quote request."""
    destination_postal_code: str = Field(..., min_length=1, max_length=12, description="CEP, digits or 00000-000")
    origin_postal_code: Optional[str] = Field(None, max_length=12)
    packages: List[PackageIn]
    order_value: Decimal = Field(Decimal("0"), ge=0)
    destination_state: Optional[str] = Field(None, min_length=2, max_length=2)
    environment: Optional[str] = None

    @field_validator("destination_state")
    @classmethod
    def upper_state(cls, v):
        return v.upper() if v else v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        return _check_environment(v)


class ShippingOptionOut(BaseModel):
    carrier_service_id: int
    service_name: str
    carrier_id: Optional[int] = None
    carrier_name: Optional[str] = None
    price: str
    original_price: Optional[str] = None
    currency: str = "BRL"
    delivery_days_min: int
    delivery_days_max: int
    estimated_delivery_date_min: Optional[date] = None
    estimated_delivery_date_max: Optional[date] = None
    package_count: int = 1


class AppliedRuleOut(BaseModel):
    rule_id: Optional[int] = None
    rule_type: str
    matched: bool
    applied: bool
    affected_option_ids: List[int] = []
    production_days_added: int = 0


class QuoteResponse(BaseModel):
    options: List[ShippingOptionOut]
    applied_rules: List[AppliedRuleOut]
    cached: bool
    no_service_available: bool
    free_shipping_applied: bool
    free_shipping_rule_id: Optional[int] = None
    production_days_added: int = 0
    environment: str
    destination_state: Optional[str] = None
    fingerprint: str


# ==================== Snapshot Schemas ====================


class QuoteSnapshotResponse(BaseModel):
    id: int
    environment: str
    origin_postal_code: Optional[str] = None
    destination_postal_code: str
    destination_state: Optional[str] = None
    order_value: Decimal
    products_snapshot: List[Dict[str, Any]]
    options: List[Dict[str, Any]]
    applied_rules: List[Dict[str, Any]]
    free_shipping_applied: bool
    free_shipping_rule_id: Optional[int] = None
    production_days_added: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class QuoteSnapshotSummary(BaseModel):
    id: int
    environment: str
    destination_postal_code: str
    destination_state: Optional[str] = None
    order_value: Decimal
    free_shipping_applied: bool
    free_shipping_rule_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class QuoteSnapshotListResponse(BaseModel):
    data: List[QuoteSnapshotSummary]
    current_page: int
    per_page: int
    total: int
    last_page: int


# ==================== Modality Schemas ====================


class ModalitySyncRequest(BaseModel):
    environment: Optional[str] = None

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        return _check_environment(v)


class ModalityUpdate(BaseModel):
    active: bool


class ModalityResponse(BaseModel):
    carrier_service_id: int
    environment: str
    name: str
    carrier_id: Optional[int] = None
    carrier_name: Optional[str] = None
    active: bool

    class Config:
        from_attributes = True


class ModalityListResponse(BaseModel):
    environment: str
    modalities: List[ModalityResponse]
