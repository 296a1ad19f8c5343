from shipping_quotes.models.shipping_rule import ShippingRule
from shipping_quotes.models.shipping_modality import ShippingModality
from shipping_quotes.models.integration_token import IntegrationToken, TokenValidationStatus
from shipping_quotes.models.shipping_quote import ShippingQuote
from shipping_quotes.models.system_setting import SystemSetting

__all__ = [
    "ShippingRule",
    "ShippingModality",
    "IntegrationToken",
    "TokenValidationStatus",
    "ShippingQuote",
    "SystemSetting",
]
