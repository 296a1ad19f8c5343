"""
System settings model

Key-value store for back-office configuration read by the quotation engine
(production_days, active_environment:<provider>).
"""
from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func

from shipping_quotes.core.database import Base


class SystemSetting(Base):
    __tablename__ = "system_settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    description = Column(Text)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
