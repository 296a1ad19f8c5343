"""
Shipping quote snapshot model

A persisted quote: the exact packages sent to the aggregator (immutable) plus
the last options and rule audit computed for them. Requotes overwrite the
result columns and never touch products_snapshot.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, JSON, Index
from sqlalchemy.sql import func

from shipping_quotes.core.database import Base


class ShippingQuote(Base):
    __tablename__ = "shipping_quotes"
    __table_args__ = (
        Index("ix_shipping_quotes_created", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)

    environment = Column(String(20), nullable=False)
    origin_postal_code = Column(String(8), nullable=True)
    destination_postal_code = Column(String(8), nullable=False, index=True)
    destination_state = Column(String(2), nullable=True)
    order_value = Column(Numeric(12, 2), nullable=False, default=0)

    products_snapshot = Column(JSON, nullable=False)

    options = Column(JSON, nullable=False, default=list)
    applied_rules = Column(JSON, nullable=False, default=list)
    free_shipping_applied = Column(Boolean, nullable=False, default=False)
    free_shipping_rule_id = Column(Integer, nullable=True)
    production_days_added = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<ShippingQuote(id={self.id}, cep={self.destination_postal_code}, env={self.environment})>"
