"""Normalizer utility functions for payment data.

One place to handle the messy parts of social-feed input: handles with
or without the @ sigil and in any casing, amounts written as "$5", "5.",
or ".5", and message ids too large for a 64-bit integer.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Optional

from app.core.logging import get_logger

logger = get_logger(__name__)

# USDC has 6 decimals on Solana
TOKEN_DECIMALS = 6
_MINOR_UNIT = Decimal(1).scaleb(-TOKEN_DECIMALS)

_HANDLE_RE = re.compile(r"^[a-z0-9_]{1,64}$")

# "RT" as a whole token at the start of the text or after whitespace
_MANUAL_REPOST_RE = re.compile(r"(?:^|\s)rt\s", re.IGNORECASE)


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_handle(handle: str) -> str:
    """Lowercase a handle and drop a leading '@': '@Alice' -> 'alice'.

    Raises:
        ValueError: If nothing usable remains.
    """
    cleaned = handle.strip().lstrip("@").lower()
    if not _HANDLE_RE.match(cleaned):
        raise ValueError(f"Invalid handle: {handle!r}")
    return cleaned


def parse_amount(raw: str) -> Optional[Decimal]:
    """Parse an amount string like '$5.50' into a positive Decimal.

    The value is truncated to the token's 6 decimals. Returns None for
    anything that isn't a finite number greater than zero after truncation.
    """
    stripped = raw.strip().lstrip("$").replace(",", "")
    try:
        value = Decimal(stripped)
    except InvalidOperation:
        logger.debug("Unparseable amount: %r", raw)
        return None
    if not value.is_finite():
        return None
    value = quantize_amount(value)
    if value <= 0:
        return None
    return value


def quantize_amount(amount: Decimal) -> Decimal:
    """Truncate to 6 decimal places, toward zero."""
    return amount.quantize(_MINOR_UNIT, rounding=ROUND_DOWN)


def to_minor_units(amount: Decimal, decimals: int = TOKEN_DECIMALS) -> int:
    """Convert a token amount to integer minor units, truncating.

    ``5.999999`` -> ``5999999``; ``1.0000009`` -> ``1000000``. Never rounds
    up, so the transfer can't exceed what was authorized.
    """
    scaled = Decimal(amount).scaleb(decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_minor_units(value: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    """Inverse of :func:`to_minor_units`."""
    return Decimal(value).scaleb(-decimals)


def is_manual_repost(text: str) -> bool:
    """True when the text carries an old-style 'RT ' repost marker."""
    return bool(_MANUAL_REPOST_RE.search(text))


def message_id_key(external_id: str) -> int:
    """Order key for message ids.

    Python ints are unbounded, so ids past 2**63 still compare correctly.

    Raises:
        ValueError: If the id is not a non-negative decimal integer.
    """
    stripped = external_id.strip()
    if not stripped.isdigit():
        raise ValueError(f"Message id is not numeric: {external_id!r}")
    return int(stripped)


def max_message_id(current: Optional[str], candidate: str) -> str:
    """Return whichever of two message ids is newer."""
    if current is None:
        return candidate
    if message_id_key(candidate) > message_id_key(current):
        return candidate
    return current
