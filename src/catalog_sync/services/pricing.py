"""Product name and price normalization for the provider catalog."""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from catalog_sync.exceptions import InvalidProductDataError
from shared.constants import (
    MAX_PRICE_MINOR_UNITS,
    MAX_PRODUCT_DESCRIPTION_LENGTH,
    MAX_PRODUCT_NAME_LENGTH,
    MIN_PRICE_MINOR_UNITS,
)

_QUOTE_TRANSLATION = str.maketrans(
    {
        "\u201c": '"',
        "\u201d": '"',
        "\u201e": '"',
        "\u00ab": '"',
        "\u00bb": '"',
        "\u2018": "'",
        "\u2019": "'",
        "\u201a": "'",
    }
)
_DISALLOWED_NAME_CHARS = re.compile(r"[^\w\s\-.()\"']")
_WHITESPACE = re.compile(r"\s+")

# Anything that is not a digit, separator or sign: currency glyphs,
# ISO codes, regular and no-break spaces.
_NON_NUMERIC = re.compile(r"[^\d,.\-]")
_DECIMAL_COMMA = re.compile(r",\d{1,2}$")


def sanitize_product_name(name: str | None) -> str:
    """Normalize typographic quotes and drop symbols the provider rejects.

    Names longer than Stripe accepts are truncated.
    """
    cleaned = (name or "").translate(_QUOTE_TRANSLATION)
    cleaned = _DISALLOWED_NAME_CHARS.sub("", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    if not cleaned:
        raise InvalidProductDataError(f"Invalid product name: {name!r}")
    return cleaned[:MAX_PRODUCT_NAME_LENGTH].rstrip()


def sanitize_description(description: str | None) -> str | None:
    """Trim a description to what Stripe accepts; blank becomes None."""
    cleaned = (description or "").strip()
    return cleaned[:MAX_PRODUCT_DESCRIPTION_LENGTH] or None


def _normalize_separators(raw: str) -> str:
    if "," in raw and "." in raw:
        # Whichever separator comes last is the decimal one.
        if raw.rfind(",") > raw.rfind("."):
            return raw.replace(".", "").replace(",", ".")
        return raw.replace(",", "")
    if "," in raw:
        if raw.count(",") == 1 and _DECIMAL_COMMA.search(raw):
            return raw.replace(",", ".")
        return raw.replace(",", "")
    if raw.count(".") > 1:
        return raw.replace(".", "")
    return raw


def parse_price(value: Any) -> int:
    """Parse a display price into integer minor units.

    ``"349€"`` -> 34900, ``"10,99€"`` -> 1099, ``"1 299,50 €"`` -> 129950.
    Returns 0 when nothing numeric can be recovered.
    """
    if value is None:
        return 0
    raw = _normalize_separators(_NON_NUMERIC.sub("", str(value)))
    if not raw:
        return 0
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        return 0
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_minor_units(value: Any) -> int:
    """Parse a price and reject amounts the provider cannot charge."""
    amount = parse_price(value)
    if amount <= 0:
        raise InvalidProductDataError(f"Invalid price: {value}")
    if amount < MIN_PRICE_MINOR_UNITS:
        raise InvalidProductDataError(
            f"Price {amount} cents is below minimum {MIN_PRICE_MINOR_UNITS} cents"
        )
    if amount > MAX_PRICE_MINOR_UNITS:
        raise InvalidProductDataError(
            f"Price {amount} cents exceeds maximum {MAX_PRICE_MINOR_UNITS} cents"
        )
    return amount
