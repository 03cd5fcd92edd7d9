"""eBay item condition codes and the free-text variants that map to them.

The Browse API returns condition as display text, and the same condition
shows up under more than one spelling. Each canonical code lists every
variant seen for it.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from niche_scanner.exceptions import ValidationError


@dataclass(frozen=True)
class Condition:
    id: str
    name: str
    variants: tuple[str, ...]


EBAY_CONDITIONS: dict[str, Condition] = {
    "NEW": Condition("1000", "New", ("New", "New with tags")),
    "NEW_OTHER": Condition(
        "1500", "New other (see details)", ("New other (see details)", "New without tags")
    ),
    "NEW_WITH_DEFECTS": Condition("1750", "New with defects", ("New with defects",)),
    "CERTIFIED_REFURBISHED": Condition(
        "2000", "Certified - Refurbished", ("Certified - Refurbished",)
    ),
    "EXCELLENT_REFURBISHED": Condition(
        "2010", "Excellent - Refurbished", ("Excellent - Refurbished",)
    ),
    "VERY_GOOD_REFURBISHED": Condition(
        "2020", "Very Good - Refurbished", ("Very Good - Refurbished",)
    ),
    "GOOD_REFURBISHED": Condition("2030", "Good - Refurbished", ("Good - Refurbished",)),
    "SELLER_REFURBISHED": Condition("2500", "Seller refurbished", ("Seller refurbished",)),
    "LIKE_NEW": Condition("2750", "Like New", ("Like New",)),
    "USED": Condition("3000", "Used", ("Used", "Pre-owned")),
    "VERY_GOOD": Condition("4000", "Very Good", ("Very Good",)),
    "GOOD": Condition("5000", "Good", ("Good",)),
    "ACCEPTABLE": Condition("6000", "Acceptable", ("Acceptable",)),
    "FOR_PARTS": Condition("7000", "For parts or not working", ("For parts or not working",)),
}

_VARIANT_TO_CODE: dict[str, str] = {
    variant: condition.id
    for condition in EBAY_CONDITIONS.values()
    for variant in condition.variants
}

_KNOWN_CODES = {condition.id for condition in EBAY_CONDITIONS.values()}


def resolve_condition_code(condition_text: Optional[str]) -> Optional[str]:
    """Map marketplace condition text to its canonical code, or None if unknown."""
    if not condition_text:
        return None
    return _VARIANT_TO_CODE.get(condition_text)


def get_condition_name(code: str) -> str:
    for condition in EBAY_CONDITIONS.values():
        if condition.id == code:
            return condition.name
    return "Unknown"


def normalize_condition_codes(conditions: Iterable[str]) -> frozenset[str]:
    """
    Normalize a whitelist to canonical codes.

    Accepts canonical codes ("3000") or table keys ("USED").

    Raises:
        ValidationError: if a value is not a known condition
    """
    codes = set()
    for value in conditions:
        if not isinstance(value, str):
            raise ValidationError(f"Condition must be a string, got {value!r}")
        key = value.strip()
        if key in _KNOWN_CODES:
            codes.add(key)
        elif key.upper() in EBAY_CONDITIONS:
            codes.add(EBAY_CONDITIONS[key.upper()].id)
        else:
            raise ValidationError(f"Unknown condition: {value!r}")
    return frozenset(codes)
