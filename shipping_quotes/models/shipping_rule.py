"""
Shipping rule model

Admin-maintained rules evaluated against every quote, in priority order.
The quotation engine only reads this table.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, Index
from sqlalchemy.sql import func

from shipping_quotes.core.database import Base


class ShippingRule(Base):
    """
    One conditional rule.

    condition_value shapes:
        all                    → null
        min_order_value        → {"min_value": 500.00}
        destination_state      → {"states": ["SP", "RJ"]}
        destination_cep_range  → {"start": "01000000", "end": "19999999"}
    """
    __tablename__ = "shipping_rules"
    __table_args__ = (
        Index("ix_shipping_rules_active_priority", "active", "priority"),
    )

    id = Column(Integer, primary_key=True, index=True)

    rule_type = Column(String(50), nullable=False)  # free_shipping, production_days_padding
    condition_type = Column(String(50), nullable=False, default="all")
    condition_value = Column(JSON, nullable=True)

    # Carrier service ids the effect is limited to (null = every option)
    applicable_service_ids = Column(JSON, nullable=True)

    # Padding rules only
    production_days_to_add = Column(Integer, nullable=True)

    priority = Column(Integer, nullable=False, default=0)  # lower runs first
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<ShippingRule(id={self.id}, type={self.rule_type}, condition={self.condition_type}, priority={self.priority})>"
