"""
Shipping modality model

Carrier services known to the aggregator, per integration environment.
Populated by the modality sync; admins only toggle `active`.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, PrimaryKeyConstraint
from sqlalchemy.sql import func

from shipping_quotes.core.database import Base


class ShippingModality(Base):
    __tablename__ = "shipping_modalities"
    __table_args__ = (
        PrimaryKeyConstraint("carrier_service_id", "environment", name="pk_shipping_modalities"),
    )

    carrier_service_id = Column(Integer, nullable=False)
    environment = Column(String(20), nullable=False)  # sandbox, production

    name = Column(String(255), nullable=False)
    carrier_id = Column(Integer, nullable=True)
    carrier_name = Column(String(255), nullable=True)

    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<ShippingModality(id={self.carrier_service_id}, env={self.environment}, name={self.name}, active={self.active})>"
