"""Server-side masking of PII fields.

The unmasked value never leaves the server except through an explicit,
audited reveal. These functions produce the display value every listing uses.

    mask_email("john.doe@company.com")  -> "j*****@company.com"
    mask_phone("+1 (555) 123-4567")     -> "(***) ***-4567"
    mask_phone("5551234567")            -> "******4567"
"""

from __future__ import annotations

import re
from typing import Optional

_NON_DIGIT_RE = re.compile(r"[^0-9]")
_PARENS_RE = re.compile(r"\(.*\)")

_MAX_LOCAL_STARS = 5


def mask_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    parts = email.split("@")
    local = parts[0]
    domain = parts[1] if len(parts) > 1 else ""
    if not domain:
        return "***@***"
    if len(local) > 1:
        masked_local = local[0] + "*" * min(len(local) - 1, _MAX_LOCAL_STARS)
    else:
        masked_local = "*"
    return f"{masked_local}@{domain}"


def mask_phone(phone: Optional[str]) -> Optional[str]:
    if phone is None:
        return None
    digits = _NON_DIGIT_RE.sub("", phone)
    if len(digits) < 4:
        return "*" * len(phone)
    last_four = digits[-4:]
    if _PARENS_RE.search(phone):
        return f"(***) ***-{last_four}"
    return "*" * (len(digits) - 4) + last_four


def mask_field(field: str, value: Optional[str]) -> Optional[str]:
    """Dispatch on field kind ('email' | 'phone')."""
    if field == "email":
        return mask_email(value)
    if field == "phone":
        return mask_phone(value)
    raise ValueError(f"Unknown field kind: {field!r}")
