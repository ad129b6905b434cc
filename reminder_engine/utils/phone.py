from __future__ import annotations

import re

DEFAULT_COUNTRY_CODE = "55"


def normalize_phone(phone: str | None, default_country_code: str = DEFAULT_COUNTRY_CODE) -> str | None:
    """Return the phone in the gateway's international digits-only form, else None.

    Rules:
    - strip whitespace, punctuation and a leading +
    - a number given with + keeps its own country code
    - 10 or 11 digits without + are national numbers and get the default country code
    - anything outside 8-15 digits after normalization is rejected
    """
    if not phone:
        return None

    cleaned = re.sub(r"[^\d+]", "", phone.strip())
    digits = re.sub(r"\D", "", cleaned)
    if not digits:
        return None

    if not cleaned.startswith("+") and len(digits) in (10, 11):
        if not digits.startswith(default_country_code):
            digits = f"{default_country_code}{digits}"

    if not re.fullmatch(r"[1-9]\d{7,14}", digits):
        return None

    return digits


def mask_phone(phone: str | None) -> str:
    """Keep the first three and last four digits visible."""
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    if len(digits) > 7:
        return f"{digits[:3]}{'*' * (len(digits) - 7)}{digits[-4:]}"
    return "*" * len(digits)
