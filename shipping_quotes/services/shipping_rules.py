"""
Shipping rule engine.

Applies the admin-configured rules to a list of carrier options:

1. The global production-day default pads every option first. It is reported
   through production_days_added only, never as an audit entry.
2. Active rules run in (priority, created_at, id) order.
3. A matching rule's effect reaches the options in its service allow-list
   (all options when the list is empty):
   - free_shipping: price becomes 0, the carrier price is kept in original_price
   - production_days_padding: business days added to the delivery range
4. Every evaluated rule gets an audit entry, matched or not.

Estimated delivery dates are derived from the quote date once all padding
is in place. Weekends are never counted as delivery days.
"""
import enum
import logging
import re
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union

from shipping_quotes.core.exceptions import RuleDefinitionError
from shipping_quotes.services.shipping_types import (
    AppliedRule,
    QuoteContext,
    ShippingOption,
    to_decimal,
)

logger = logging.getLogger(__name__)

class RuleType(str, enum.Enum):
    FREE_SHIPPING = "free_shipping"
    PRODUCTION_DAYS_PADDING = "production_days_padding"


class ConditionType(str, enum.Enum):
    ALL = "all"
    MIN_ORDER_VALUE = "min_order_value"
    DESTINATION_STATE = "destination_state"
    DESTINATION_CEP_RANGE = "destination_cep_range"


# =============================================================================
# Business days
# =============================================================================

def add_business_days(start: date, days: int) -> date:
    """
    Add business days to a date, skipping Saturdays and Sundays.

    A start date on a weekend is first moved to the following Monday, so
    Friday + 2 lands on Tuesday and Saturday + 1 lands on Tuesday.
    """
    result = start
    while result.weekday() >= 5:
        result += timedelta(days=1)

    remaining = days
    while remaining > 0:
        result += timedelta(days=1)
        if result.weekday() < 5:
            remaining -= 1
    return result


# =============================================================================
# Conditions
# =============================================================================

@dataclass(frozen=True)
class AlwaysCondition:
    def matches(self, context: QuoteContext) -> bool:
        return True


@dataclass(frozen=True)
class MinOrderValueCondition:
    threshold: Decimal

    def matches(self, context: QuoteContext) -> bool:
        if context.order_value is None:
            return False
        return Decimal(str(context.order_value)) >= self.threshold


@dataclass(frozen=True)
class DestinationStateCondition:
    states: FrozenSet[str]

    def matches(self, context: QuoteContext) -> bool:
        if not context.destination_state:
            return False
        return context.destination_state.strip().upper() in self.states


@dataclass(frozen=True)
class DestinationCepRangeCondition:
    start: int
    end: int

    def matches(self, context: QuoteContext) -> bool:
        digits = re.sub(r"\D", "", context.destination_postal_code or "")
        if not digits:
            return False
        return self.start <= int(digits) <= self.end


RuleCondition = Union[
    AlwaysCondition,
    MinOrderValueCondition,
    DestinationStateCondition,
    DestinationCepRangeCondition,
]


def _cep_number(value: Any, rule_id: Optional[int]) -> int:
    digits = re.sub(r"\D", "", str(value)) if value is not None else ""
    if not digits:
        raise RuleDefinitionError(f"Invalid CEP bound {value!r}", rule_id=rule_id)
    return int(digits)


def parse_condition(condition_type: str, value: Any, rule_id: Optional[int] = None) -> RuleCondition:
    """
    Build a typed condition from the stored (condition_type, condition_value).

    Raises:
        RuleDefinitionError: unknown type or a value that does not fit it
    """
    try:
        kind = ConditionType(condition_type)
    except ValueError:
        raise RuleDefinitionError(f"Unknown condition type {condition_type!r}", rule_id=rule_id)

    if kind == ConditionType.ALL:
        return AlwaysCondition()

    if kind == ConditionType.MIN_ORDER_VALUE:
        raw = value.get("min_value", value.get("threshold")) if isinstance(value, dict) else value
        threshold = to_decimal(raw)
        if threshold is None:
            raise RuleDefinitionError(f"min_order_value needs a numeric threshold, got {value!r}", rule_id=rule_id)
        return MinOrderValueCondition(threshold)

    if kind == ConditionType.DESTINATION_STATE:
        raw = value.get("states") if isinstance(value, dict) else value
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, (list, tuple)) or not raw:
            raise RuleDefinitionError(f"destination_state needs a list of states, got {value!r}", rule_id=rule_id)
        return DestinationStateCondition(frozenset(str(s).strip().upper() for s in raw))

    # destination_cep_range
    if isinstance(value, dict):
        start = value.get("start", value.get("cep_start"))
        end = value.get("end", value.get("cep_end"))
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        start, end = value
    else:
        raise RuleDefinitionError(f"destination_cep_range needs start and end, got {value!r}", rule_id=rule_id)

    start_number = _cep_number(start, rule_id)
    end_number = _cep_number(end, rule_id)
    if start_number > end_number:
        raise RuleDefinitionError(f"CEP range start {start} is after end {end}", rule_id=rule_id)
    return DestinationCepRangeCondition(start_number, end_number)


# =============================================================================
# Rules
# =============================================================================

@dataclass(frozen=True)
class Rule:
    """A validated shipping rule."""
    id: Optional[int]
    rule_type: RuleType
    condition: RuleCondition
    priority: int = 0
    applicable_service_ids: Optional[FrozenSet[int]] = None
    production_days_to_add: int = 0
    active: bool = True
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row: Any) -> "Rule":
        """
        Parse a ShippingRule row (or any object with the same attributes).

        Raises:
            RuleDefinitionError: when the row does not describe a valid rule
        """
        rule_id = getattr(row, "id", None)
        try:
            rule_type = RuleType(row.rule_type)
        except ValueError:
            raise RuleDefinitionError(f"Unknown rule type {row.rule_type!r}", rule_id=rule_id)

        condition = parse_condition(row.condition_type, row.condition_value, rule_id)

        days = row.production_days_to_add
        if rule_type == RuleType.PRODUCTION_DAYS_PADDING:
            if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
                raise RuleDefinitionError(
                    f"Padding rule needs a positive production_days_to_add, got {days!r}",
                    rule_id=rule_id,
                )
        elif days:
            raise RuleDefinitionError("Free shipping rules cannot add production days", rule_id=rule_id)

        service_ids = row.applicable_service_ids
        if service_ids:
            try:
                allow_list = frozenset(int(s) for s in service_ids)
            except (TypeError, ValueError):
                raise RuleDefinitionError(f"Invalid service allow-list {service_ids!r}", rule_id=rule_id)
        else:
            allow_list = None

        return cls(
            id=rule_id,
            rule_type=rule_type,
            condition=condition,
            priority=row.priority or 0,
            applicable_service_ids=allow_list,
            production_days_to_add=days or 0,
            active=bool(row.active),
            created_at=getattr(row, "created_at", None),
        )

    def targets(self, option: ShippingOption) -> bool:
        return self.applicable_service_ids is None or option.carrier_service_id in self.applicable_service_ids


def rule_sort_key(rule: Rule) -> Tuple[int, float, int]:
    created = rule.created_at
    if created is not None and created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (
        rule.priority,
        created.timestamp() if created is not None else 0.0,
        rule.id if rule.id is not None else 0,
    )


@dataclass
class RuleApplication:
    options: List[ShippingOption]
    applied_rules: List[AppliedRule]
    production_days_added: int = 0
    free_shipping_rule_id: Optional[int] = None
    # Global default padding, reported here only (never an audit entry)
    default_days: int = 0


def summarize_audit(
    applied_rules: Iterable[AppliedRule],
    default_days: int = 0,
) -> Tuple[int, Optional[int]]:
    """(total production days added, last applied free-shipping rule id) for an audit trail."""
    days = default_days
    free_shipping_rule_id = None
    for entry in applied_rules:
        if not entry.applied:
            continue
        days += entry.production_days_added
        if entry.rule_type == RuleType.FREE_SHIPPING.value:
            free_shipping_rule_id = entry.rule_id
    return days, free_shipping_rule_id


class ShippingRuleEngine:
    """Stateless: rules and the production-day default are passed per call."""

    def apply(
        self,
        options: Sequence[ShippingOption],
        context: QuoteContext,
        rules: Sequence[Rule],
        production_days_default: int = 0,
        quote_date: Optional[date] = None,
    ) -> RuleApplication:
        quote_date = quote_date or date.today()
        working = [replace(option) for option in options]
        audit: List[AppliedRule] = []

        if production_days_default > 0:
            for option in working:
                option.delivery_days_min += production_days_default
                option.delivery_days_max += production_days_default

        ordered = sorted((r for r in rules if r.active), key=rule_sort_key)
        for rule in ordered:
            audit.append(self._apply_rule(rule, working, context))

        for option in working:
            option.estimated_delivery_date_min = add_business_days(quote_date, option.delivery_days_min)
            option.estimated_delivery_date_max = add_business_days(quote_date, option.delivery_days_max)

        default_days = max(production_days_default, 0)
        days_added, free_shipping_rule_id = summarize_audit(audit, default_days)
        return RuleApplication(
            options=working,
            applied_rules=audit,
            production_days_added=days_added,
            free_shipping_rule_id=free_shipping_rule_id,
            default_days=default_days,
        )

    def _apply_rule(self, rule: Rule, options: List[ShippingOption], context: QuoteContext) -> AppliedRule:
        if not rule.condition.matches(context):
            return AppliedRule(rule_id=rule.id, rule_type=rule.rule_type.value, matched=False, applied=False)

        targets = [option for option in options if rule.targets(option)]

        if rule.rule_type == RuleType.FREE_SHIPPING:
            for option in targets:
                if option.original_price is None:
                    option.original_price = option.price
                option.price = Decimal("0")
            days = 0
        else:
            days = rule.production_days_to_add
            for option in targets:
                option.delivery_days_min += days
                option.delivery_days_max += days

        if targets:
            logger.debug(f"Rule {rule.id} ({rule.rule_type.value}) applied to {len(targets)} options")

        return AppliedRule(
            rule_id=rule.id,
            rule_type=rule.rule_type.value,
            matched=True,
            applied=bool(targets),
            affected_option_ids=[option.carrier_service_id for option in targets],
            production_days_added=days if targets else 0,
        )
