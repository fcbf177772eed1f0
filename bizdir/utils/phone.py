"""
Phone number normalization used for duplicate lookups.

Directory phone numbers arrive as "0412 345 678", "+61 412 345 678" or
"(03) 9876 5432". Duplicate matching compares a digits-only key with the
international prefix folded back to the national trunk prefix so all of
those spellings collide.
"""

import re
from typing import Any, Optional

NATIONAL_COUNTRY_CODE = "61"
NATIONAL_TRUNK_PREFIX = "0"


def extract_digits(value: Optional[Any]) -> str:
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


def phone_lookup_key(
    value: Any,
    *,
    country_code: str = NATIONAL_COUNTRY_CODE,
    min_digits: int = 6,
) -> Optional[str]:
    """
    Build the comparison key for a phone number.

    Args:
        value: Phone number in any format
        country_code: Country calling code folded back to the trunk prefix
        min_digits: Shorter digit runs are treated as garbage and yield None

    Returns:
        National digits-only key (e.g. "0412345678") or None if empty/invalid
    """
    text = "" if value is None else str(value).strip()
    if not text:
        return None

    digits = extract_digits(text)
    if len(digits) < min_digits:
        return None

    # +61 4xx xxx xxx / 0061 ... -> 04xx xxx xxx
    if digits.startswith("00" + country_code):
        digits = digits[2:]
    if digits.startswith(country_code) and (text.startswith("+") or len(digits) == len(country_code) + 9):
        digits = NATIONAL_TRUNK_PREFIX + digits[len(country_code):]

    return digits


def strip_whitespace(value: Optional[str]) -> str:
    """Remove all whitespace, as the validators do before matching grammars."""
    if value is None:
        return ""
    return re.sub(r"\s+", "", str(value))
