"""
System Settings Service

Database-driven back-office configuration read by the quotation engine:
- production_days: global production lead time added to every quote
- active_environment:<provider>: which integration environment is live
"""
from typing import Dict, Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_quotes.core.config import INTEGRATION_ENVIRONMENTS
from shipping_quotes.models.system_setting import SystemSetting

logger = logging.getLogger(__name__)

PRODUCTION_DAYS_KEY = "production_days"
ACTIVE_ENVIRONMENT_KEY = "active_environment:{provider}"


class SystemSettingsService:
    """
    Service for reading and writing system settings.

    Caches values for the lifetime of the service (one request).
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._cache: Dict[str, Optional[str]] = {}

    async def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Get a setting value by key.

        First checks cache, then database, then falls back to default.
        """
        if key in self._cache:
            value = self._cache[key]
            return value if value else default

        try:
            result = await self.db.execute(
                select(SystemSetting).where(SystemSetting.key == key)
            )
            setting = result.scalar_one_or_none()
        except Exception as e:
            logger.warning(f"Error fetching setting {key}: {e}")
            return default

        value = setting.value if setting else None
        self._cache[key] = value
        return value if value else default

    async def get_int(self, key: str, default: int = 0) -> int:
        value = await self.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Setting {key} is not an integer: {value!r}")
            return default

    async def get_production_days_default(self) -> int:
        days = await self.get_int(PRODUCTION_DAYS_KEY, 0)
        return max(days, 0)

    async def get_active_environment(self, provider: str) -> Optional[str]:
        """Active environment for a provider, or None when unset or unrecognized."""
        value = await self.get(ACTIVE_ENVIRONMENT_KEY.format(provider=provider))
        if value and value in INTEGRATION_ENVIRONMENTS:
            return value
        return None
