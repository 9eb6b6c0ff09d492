"""Payment command parser.

Turns free-form message text into a payment intent. Three surface forms
are recognized, tried in this order (first match wins):

    send @user $N
    send $N to @user
    pay @user $N

Matching is case-insensitive, the '$' is optional, and the command may
appear anywhere in the text ("@wassy_bot send @alice $3" is fine).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from app.services.ingestion.normalizer import normalize_handle, parse_amount

_AMOUNT = r"\$?\s*(?P<amount>\d{1,3}(?:,\d{3})+(?:\.\d*)?|\d+(?:\.\d*)?|\.\d+)"
_RECIPIENT = r"@(?P<recipient>\w+)"

# Priority order matters: a text matching several forms takes the first.
_COMMAND_PATTERNS: list[re.Pattern[str]] = [
    re.compile(rf"\bsend\s+{_RECIPIENT}\s+{_AMOUNT}(?!\w|\.\d)", re.IGNORECASE),
    re.compile(rf"\bsend\s+{_AMOUNT}\s+to\s+{_RECIPIENT}", re.IGNORECASE),
    re.compile(rf"\bpay\s+{_RECIPIENT}\s+{_AMOUNT}(?!\w|\.\d)", re.IGNORECASE),
]


@dataclass(frozen=True)
class PaymentIntent:
    recipient: str
    amount: Decimal


def parse_payment_command(text: str) -> Optional[PaymentIntent]:
    """Extract ``PaymentIntent`` from text, or None if there is no valid command.

    Never raises: a recipient that doesn't normalize, or an amount that is
    zero, negative or unparseable, just yields None.
    """
    if not text:
        return None

    for pattern in _COMMAND_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        amount = parse_amount(match.group("amount"))
        try:
            recipient = normalize_handle(match.group("recipient"))
        except ValueError:
            return None
        if amount is None:
            return None
        return PaymentIntent(recipient=recipient, amount=amount)

    return None
