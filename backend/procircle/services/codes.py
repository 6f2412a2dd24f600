from __future__ import annotations

import base64
import secrets

from procircle.core.config import settings

MAX_INITIALS = 3
FALLBACK_INITIALS = "XX"


def initials_for(name: str) -> str:
    letters = [token[0].upper() for token in (name or "").split() if token[0].isalnum()]
    return "".join(letters[:MAX_INITIALS]) or FALLBACK_INITIALS


def random_suffix(num_bytes: int | None = None) -> str:
    raw = secrets.token_bytes(num_bytes or settings.discount_code_suffix_bytes)
    return base64.b32encode(raw).decode("ascii").rstrip("=").upper()


def generate_discount_code(name: str, *, prefix: str | None = None) -> str:
    """Build ``PREFIX-INITIALS-SUFFIX`` with a CSPRNG suffix."""
    head = (prefix or settings.discount_code_prefix).strip().upper()
    return f"{head}-{initials_for(name)}-{random_suffix()}"
