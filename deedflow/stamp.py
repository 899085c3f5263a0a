"""Stamp duty calculation performed by staff1.

Rates per service type:

    sale-deed               6% of property value
    will-deed               0.1% of property value, minimum 500
    trust-deed              3% of property value
    property-registration   1% of property value
    power-of-attorney       fixed 100
    adoption-deed           fixed 50

Amounts are computed with Decimal and rounded half-up to two places.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Union

from deedflow.types import ServiceType

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class StampRule:
    """Rate applied to one service type.

    ``rate`` is a fraction of the property value; ``fixed`` overrides it.
    """
    label: str
    rate: Decimal = Decimal("0")
    minimum: Decimal = Decimal("0")
    fixed: Optional[Decimal] = None

    def apply(self, property_value: Decimal) -> Decimal:
        if self.fixed is not None:
            return self.fixed
        return max(self.minimum, property_value * self.rate)


STAMP_RULES: Dict[ServiceType, StampRule] = {
    ServiceType.SALE_DEED: StampRule(label="6%", rate=Decimal("0.06")),
    ServiceType.WILL_DEED: StampRule(label="0.1% (min 500)", rate=Decimal("0.001"), minimum=Decimal("500")),
    ServiceType.TRUST_DEED: StampRule(label="3%", rate=Decimal("0.03")),
    ServiceType.PROPERTY_REGISTRATION: StampRule(label="1%", rate=Decimal("0.01")),
    ServiceType.POWER_OF_ATTORNEY: StampRule(label="Fixed 100", fixed=Decimal("100")),
    ServiceType.ADOPTION_DEED: StampRule(label="Fixed 50", fixed=Decimal("50")),
}


def calculate_stamp_duty(
    service_type: ServiceType,
    property_value: Union[int, float, str, Decimal],
    property_type: Optional[str] = None,
    location: Optional[str] = None,
    calculation_method: Optional[str] = None,
    applicable_rules: Optional[List[str]] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Compute the stamp duty for a form and describe how it was reached.

    Returns:
        JSON-ready dict stored as ``StaffReport.stamp_calculation``

    Examples:
        >>> calculate_stamp_duty(ServiceType.SALE_DEED, 1000000)["calculatedAmount"]
        60000.0
        >>> calculate_stamp_duty(ServiceType.WILL_DEED, 1000)["calculatedAmount"]
        500.0
    """
    value = Decimal(str(property_value))
    rule = STAMP_RULES[ServiceType(service_type)]
    amount = rule.apply(value).quantize(_CENTS, rounding=ROUND_HALF_UP)

    if rule.fixed is not None:
        calculation = f"Fixed amount for {ServiceType(service_type).value}"
    elif rule.minimum:
        calculation = f"max({rule.minimum}, {value} x {rule.label.split()[0]}) = {amount}"
    else:
        calculation = f"{value} x {rule.label} = {amount}"

    return {
        "calculatedAmount": float(amount),
        "calculationMethod": calculation_method or "Standard Rate",
        "applicableRules": list(applicable_rules) if applicable_rules else [rule.label],
        "notes": notes or calculation,
        "propertyValue": float(value),
        "propertyType": property_type,
        "location": location,
        "calculationDetails": {"baseRate": rule.label, "calculation": calculation},
    }


__all__ = ["StampRule", "STAMP_RULES", "calculate_stamp_duty"]
