"""WhatsApp phone normalization for Brazilian numbers."""
from __future__ import annotations

import re
from typing import Optional

DEFAULT_COUNTRY_CODE = "55"

# Area code (2 digits) + legacy 8-digit subscriber number, pre mobile-9.
_LEGACY_NATIONAL_LENGTH = 10


def normalize_whatsapp(phone: Optional[str], country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Normalize a raw phone to the digits-only form the transport expects.

    "(11) 8765-4321" → "5511987654321". Empty input yields "".
    """
    digits = re.sub(r"\D", "", phone or "")
    if not digits:
        return ""
    if not digits.startswith(country_code):
        digits = f"{country_code}{digits}"
    if len(digits) == len(country_code) + _LEGACY_NATIONAL_LENGTH:
        cut = len(country_code) + 2
        digits = f"{digits[:cut]}9{digits[cut:]}"
    return digits
