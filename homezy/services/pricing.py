"""Static pricing tables: budget bracket costs, urgency surcharge and credit packages"""

import math
from dataclasses import dataclass

from homezy.config import settings
from homezy.errors import ValidationFailedError


@dataclass(frozen=True)
class BudgetBracket:
    id: str
    min_aed: int
    max_aed: int | None
    label: str
    credits: int


@dataclass(frozen=True)
class CreditPackage:
    id: str
    credits: int
    price_aed: int
    bonus: int
    label: str


BUDGET_BRACKETS: dict[str, BudgetBracket] = {
    bracket.id: bracket
    for bracket in (
        BudgetBracket("500-1k", 500, 1000, "AED 500 - 1,000", 5),
        BudgetBracket("1k-5k", 1000, 5000, "AED 1,000 - 5,000", 10),
        BudgetBracket("5k-15k", 5000, 15000, "AED 5,000 - 15,000", 20),
        BudgetBracket("15k-50k", 15000, 50000, "AED 15,000 - 50,000", 40),
        BudgetBracket("50k-150k", 50000, 150000, "AED 50,000 - 150,000", 75),
        BudgetBracket("150k+", 150000, None, "AED 150,000+", 125),
    )
}

CREDIT_PACKAGES: dict[str, CreditPackage] = {
    package.id: package
    for package in (
        CreditPackage("starter", 50, 250, 0, "Starter"),
        CreditPackage("professional", 150, 600, 10, "Professional"),
        CreditPackage("business", 400, 1400, 40, "Business"),
        CreditPackage("enterprise", 1000, 3000, 150, "Enterprise"),
    )
}

URGENCY_LEVELS = ("emergency", "urgent", "flexible", "planning")

EMIRATES = (
    "dubai",
    "abu-dhabi",
    "sharjah",
    "ajman",
    "umm-al-quwain",
    "ras-al-khaimah",
    "fujairah",
)


def get_bracket(budget_bracket: str) -> BudgetBracket:
    bracket = BUDGET_BRACKETS.get(budget_bracket)
    if bracket is None:
        raise ValidationFailedError(
            f"Unknown budget bracket '{budget_bracket}'",
            budget_bracket=budget_bracket,
            allowed=",".join(BUDGET_BRACKETS),
        )
    return bracket


def get_package(package_id: str) -> CreditPackage:
    package = CREDIT_PACKAGES.get(package_id)
    if package is None:
        raise ValidationFailedError(
            f"Unknown credit package '{package_id}'",
            package_id=package_id,
            allowed=",".join(CREDIT_PACKAGES),
        )
    return package


def calculate_credit_cost(budget_bracket: str, urgency: str | None = None) -> int:
    """Credits charged for claiming a lead; emergency leads carry a rounded-up surcharge"""
    base = get_bracket(budget_bracket).credits
    if urgency == "emergency":
        return math.ceil(base * settings.emergency_credit_multiplier)
    return base
