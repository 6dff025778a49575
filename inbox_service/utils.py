"""
Utility functions for the conversation inbox service.

Phone numbers arrive in whatever shape the provider or the operator typed
them ("+966 50 123 4567", "0501234567", "00966501234567"). The normalized
form is the only key used to join inbound and outbound messages.
"""

import logging
import re
from datetime import datetime, timezone
from typing import List, Optional, Union

from inbox_service.config import settings

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: Optional[str], country_code: Optional[str] = None) -> str:
    """
    Reduce a raw phone string to its join key.

    Rules, in order:
    - keep digits only
    - drop an international "00" prefix
    - replace a single local trunk "0" with the default country code

    Never fails: anything without digits normalizes to "" and callers treat
    "" as unmatched. Normalizing an already normalized value is a no-op.

    Args:
        raw: Phone number as stored or typed
        country_code: Override for PHONE_DEFAULT_COUNTRY_CODE

    Returns:
        Digit-only phone key, possibly empty
    """
    if not raw:
        return ""
    digits = _NON_DIGITS.sub("", str(raw))

    if digits.startswith("00"):
        digits = digits[2:]

    if digits.startswith("0"):
        national = digits[1:]
        if not national:
            return ""
        digits = (country_code or settings.PHONE_DEFAULT_COUNTRY_CODE) + national

    return digits


def phone_variants(raw: Optional[str], country_code: Optional[str] = None) -> List[str]:
    """
    Raw spellings under which one contact's messages may be stored.

    The two message logs are written by different pipelines and do not agree
    on a format, so thread queries match every variant: the input itself, its
    digits, the normalized key, "+key" and, for numbers in the default
    country, the national form with and without the trunk "0".
    """
    code = country_code or settings.PHONE_DEFAULT_COUNTRY_CODE
    normalized = normalize_phone(raw, code)

    candidates = [
        (raw or "").strip(),
        _NON_DIGITS.sub("", raw or ""),
        normalized,
        f"+{normalized}" if normalized else "",
    ]
    if normalized.startswith(code) and len(normalized) > len(code):
        national = normalized[len(code):]
        candidates.extend([national, f"0{national}"])

    variants = []
    for candidate in candidates:
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with microseconds and a Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_utc(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse a stored time into an aware UTC datetime.

    Accepts epoch seconds, ISO-8601 strings (with or without Z) and datetimes.
    Naive values are taken to be UTC. Returns None for empty input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.isdigit():
            return datetime.fromtimestamp(int(text), tz=timezone.utc)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
