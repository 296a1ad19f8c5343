"""
Tests for package dimension and weight validation.
"""
import pytest

from shipping_quotes.core.exceptions import PackageValidationError
from shipping_quotes.services.package_validation import (
    cubic_weight_kg,
    validate_package,
    validate_packages,
)
from shipping_quotes.services.shipping_types import PackageSpec


def package(**overrides):
    data = {"width_cm": 20, "height_cm": 15, "length_cm": 30, "weight_kg": 1.0}
    data.update(overrides)
    return PackageSpec(**data)


class TestDimensionBounds:
    """Inclusive min/max per dimension."""

    @pytest.mark.parametrize("field,minimum,maximum", [
        ("width_cm", 2, 105),
        ("height_cm", 11, 105),
        ("length_cm", 16, 105),
    ])
    def test_bounds_are_inclusive(self, field, minimum, maximum):
        # Keep the cubic weight low while probing the maximum
        small = {"width_cm": 2, "height_cm": 11, "length_cm": 16}
        assert validate_package(package(**{field: minimum})).ok
        assert validate_package(package(**{**small, field: maximum})).ok

    @pytest.mark.parametrize("field,below,above", [
        ("width_cm", 1.9, 105.1),
        ("height_cm", 10.9, 105.1),
        ("length_cm", 15.9, 105.1),
    ])
    def test_out_of_bounds(self, field, below, above):
        check = validate_package(package(**{field: below}))
        assert not check.ok
        assert check.field == field
        assert check.bound == "min"

        check = validate_package(package(**{field: above}))
        assert not check.ok
        assert check.field == field
        assert check.bound == "max"

    def test_weight_bounds(self):
        assert validate_package(package(weight_kg=0.1)).ok
        assert validate_package(package(weight_kg=30)).ok

        check = validate_package(package(weight_kg=0.05))
        assert (check.field, check.bound) == ("weight_kg", "min")

        check = validate_package(package(weight_kg=30.5))
        assert (check.field, check.bound) == ("weight_kg", "max")

    def test_non_numeric_dimension(self):
        check = validate_package(package(width_cm=float("nan")))
        assert not check.ok
        assert check.bound == "invalid"


class TestCubicWeight:
    """Volumetric weight with the 300 kg/m³ factor."""

    def test_cubic_weight_formula(self):
        assert cubic_weight_kg(package(width_cm=100, height_cm=100, length_cm=100)) == pytest.approx(300.0)

    def test_cubic_weight_rejects_light_but_bulky_package(self):
        check = validate_package(package(width_cm=100, height_cm=100, length_cm=100, weight_kg=1))
        assert not check.ok
        assert check.field == "cubic_weight"
        assert check.bound == "cubic_weight"

    def test_cubic_weight_at_limit_passes(self):
        # 50 x 50 x 40 = 0.1 m³ → 30 kg
        assert validate_package(package(width_cm=50, height_cm=50, length_cm=40)).ok


class TestValidatePackages:
    """Fail-fast validation of a package list."""

    def test_empty_list_rejected(self):
        with pytest.raises(PackageValidationError) as exc_info:
            validate_packages([])
        assert exc_info.value.field == "packages"

    def test_reports_index_of_first_invalid_package(self):
        packages = [package(), package(height_cm=5), package(weight_kg=99)]

        with pytest.raises(PackageValidationError) as exc_info:
            validate_packages(packages)

        error = exc_info.value
        assert error.package_index == 1
        assert error.field == "height_cm"
        assert error.bound == "min"
        assert error.details["value"] == 5
        assert error.to_dict()["kind"] == "validation_error"

    def test_valid_packages(self):
        checks = validate_packages([package(), package(quantity=2)])
        assert all(check.ok for check in checks)

    def test_quantity_must_be_positive(self):
        with pytest.raises(PackageValidationError) as exc_info:
            validate_packages([package(quantity=0)])
        assert exc_info.value.field == "quantity"
