"""
Package dimension and weight validation.

Limits are the aggregator's accepted envelope for parcel carriers. Bounds are
inclusive. Cubic (volumetric) weight uses the road-freight factor of 300 kg/m³.
"""
import math
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from shipping_quotes.core.exceptions import PackageValidationError
from shipping_quotes.services.shipping_types import PackageSpec

# (field, minimum, maximum)
DIMENSION_LIMITS = (
    ("width_cm", 2.0, 105.0),
    ("height_cm", 11.0, 105.0),
    ("length_cm", 16.0, 105.0),
)
MIN_WEIGHT_KG = 0.1
MAX_WEIGHT_KG = 30.0
CUBIC_WEIGHT_FACTOR = 300
MAX_CUBIC_WEIGHT_KG = 30.0


@dataclass
class DimensionCheck:
    ok: bool
    field: Optional[str] = None
    bound: Optional[str] = None  # "min", "max", "cubic_weight", "invalid"
    value: Any = None
    reason: Optional[str] = None


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def cubic_weight_kg(package: PackageSpec) -> float:
    return package.width_cm * package.height_cm * package.length_cm * CUBIC_WEIGHT_FACTOR / 1_000_000


def validate_package(package: PackageSpec) -> DimensionCheck:
    """Check one package. Never raises for numeric input."""
    for name, minimum, maximum in DIMENSION_LIMITS:
        value = getattr(package, name)
        if not _is_number(value):
            return DimensionCheck(False, name, "invalid", value, f"{name} must be a finite number")
        if value < minimum:
            return DimensionCheck(False, name, "min", value, f"{name} {value} is below the minimum of {minimum:g} cm")
        if value > maximum:
            return DimensionCheck(False, name, "max", value, f"{name} {value} exceeds the maximum of {maximum:g} cm")

    weight = package.weight_kg
    if not _is_number(weight):
        return DimensionCheck(False, "weight_kg", "invalid", weight, "weight_kg must be a finite number")
    if weight < MIN_WEIGHT_KG:
        return DimensionCheck(False, "weight_kg", "min", weight, f"weight {weight} kg is below the minimum of {MIN_WEIGHT_KG} kg")
    if weight > MAX_WEIGHT_KG:
        return DimensionCheck(False, "weight_kg", "max", weight, f"weight {weight} kg exceeds the maximum of {MAX_WEIGHT_KG:g} kg")

    cubic = cubic_weight_kg(package)
    if cubic > MAX_CUBIC_WEIGHT_KG:
        return DimensionCheck(
            False,
            "cubic_weight",
            "cubic_weight",
            round(cubic, 3),
            f"cubic weight {cubic:.2f} kg exceeds the maximum of {MAX_CUBIC_WEIGHT_KG:g} kg",
        )

    if isinstance(package.quantity, bool) or not isinstance(package.quantity, int) or package.quantity < 1:
        return DimensionCheck(False, "quantity", "min", package.quantity, "quantity must be an integer of at least 1")

    if not _is_number(package.insurance_value):
        return DimensionCheck(False, "insurance_value", "invalid", package.insurance_value, "insurance_value must be a finite number")
    if package.insurance_value < 0:
        return DimensionCheck(False, "insurance_value", "min", package.insurance_value, "insurance_value cannot be negative")

    return DimensionCheck(True)


def validate_packages(packages: Sequence[PackageSpec]) -> List[DimensionCheck]:
    """
    Validate packages in order, failing fast on the first invalid one.

    Raises:
        PackageValidationError: with package_index, field and bound of the first violation
    """
    if not packages:
        raise PackageValidationError("At least one package is required", field="packages", bound="min")

    checks = []
    for index, package in enumerate(packages):
        check = validate_package(package)
        if not check.ok:
            raise PackageValidationError(
                f"Package {index}: {check.reason}",
                package_index=index,
                field=check.field,
                bound=check.bound,
                details={"value": check.value},
            )
        checks.append(check)
    return checks
