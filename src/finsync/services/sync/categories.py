"""Map provider category hierarchies to local transaction categories.

Provider categories arrive as a list such as ``["Food and Drink",
"Restaurants"]``. Rules are checked in order against the primary,
secondary and tertiary levels; the first match wins.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Literal

TransactionCategory = Literal[
    "income",
    "debt_payment",
    "housing",
    "utilities",
    "transportation",
    "food",
    "healthcare",
    "entertainment",
    "shopping",
    "savings",
    "other",
]

CATEGORIES: tuple[TransactionCategory, ...] = (
    "income",
    "debt_payment",
    "housing",
    "utilities",
    "transportation",
    "food",
    "healthcare",
    "entertainment",
    "shopping",
    "savings",
    "other",
)

_UTILITY_SERVICES = (
    "utilities",
    "electric",
    "gas utility",
    "water",
    "internet",
    "phone",
    "telephone",
    "cable",
    "sewage",
    "telecommunication",
)


def _has(text: str, *keywords: str) -> bool:
    return any(k in text for k in keywords)


def map_provider_category(
    category: Sequence[str] | None,
) -> TransactionCategory:
    """Return the local category for a provider category hierarchy.

    Empty or missing hierarchies map to ``"other"``.
    """
    if not category:
        return "other"

    levels = [c.lower() if c else "" for c in category[:3]]
    levels += [""] * (3 - len(levels))
    primary, sub, tertiary = levels

    # Income before any transfer rule
    if _has(primary, "income", "payroll", "transfer in") or _has(
        sub, "salary", "wages", "payroll"
    ):
        return "income"

    # Debt before generic payment or transfer
    if (
        _has(primary, "credit card", "loan")
        or _has(sub, "credit card", "loan payment", "student loan")
        or ("transfer" in primary and "credit" in sub)
        or ("payment" in primary and _has(sub, "credit", "loan"))
    ):
        return "debt_payment"

    if (
        _has(primary, "rent", "mortgage", "home improvement")
        or _has(sub, "rent", "mortgage", "property insurance")
        or ("service" in primary and "home insurance" in sub)
    ):
        return "housing"

    if (
        "utilities" in primary
        or "utilities" in sub
        or _has(tertiary, "electric", "gas", "water")
        or ("service" in primary and _has(sub, *_UTILITY_SERVICES))
    ):
        return "utilities"

    if _has(primary, "transportation", "automotive", "public transit") or _has(
        sub, "gas", "parking", "tolls", "auto insurance", "car wash", "taxi", "bike"
    ):
        return "transportation"

    if _has(primary, "food", "restaurants", "groceries") or _has(
        sub,
        "restaurants",
        "fast food",
        "coffee",
        "groceries",
        "supermarkets",
        "pizza",
    ):
        return "food"

    if _has(primary, "healthcare", "medical") or _has(
        sub,
        "doctors",
        "dentist",
        "pharmacy",
        "hospital",
        "health insurance",
        "eyecare",
    ):
        return "healthcare"

    if _has(primary, "entertainment", "recreation", "arts") or _has(
        sub,
        "movies",
        "music",
        "games",
        "sports",
        "concerts",
        "streaming",
        "gyms and fitness",
        "entertainment",
    ):
        return "entertainment"

    if _has(primary, "shops", "shopping", "retail") or _has(
        sub,
        "clothing",
        "electronics",
        "bookstores",
        "department stores",
        "sporting goods",
    ):
        return "shopping"

    # Non-debt payments
    if "payment" in primary:
        return "other"

    if _has(primary, "transfer", "deposit", "savings") or _has(
        sub, "investment", "retirement", "third party", "savings", "deposit"
    ):
        return "savings"

    return "other"
