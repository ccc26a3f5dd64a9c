"""
Recipient address normalization and destination classification.
"""

import re
import enum
from typing import Iterable, List, Tuple, Optional

from scheduled_messaging.core.config import settings


# E.164 after cleanup: optional +, 8-15 digits, no leading zero after the +
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{8,15}$")
_STRIP_PATTERN = re.compile(r"[\s\-()./]")


class Destination(str, enum.Enum):
    """Billing destination class."""
    DOMESTIC = "domestic"
    INTERNATIONAL = "international"


def normalize_phone_number(
    raw: Optional[str],
    dialing_code: Optional[str] = None
) -> Optional[str]:
    """
    Normalize a phone number to E.164 (``+<country><number>``).

    Local numbers written with a trunk prefix (``0803...``) are rewritten with
    the domestic dialing code. Returns None for anything that is not a
    plausible number.
    """
    if not raw or not isinstance(raw, str):
        return None

    dialing_code = dialing_code or settings.domestic_dialing_code
    cleaned = _STRIP_PATTERN.sub("", raw)
    if cleaned.startswith("00"):
        cleaned = "+" + cleaned[2:]

    if not _PHONE_PATTERN.match(cleaned):
        return None

    if cleaned.startswith("+"):
        normalized = cleaned
    elif cleaned.startswith("0"):
        normalized = f"+{dialing_code}{cleaned[1:]}"
    else:
        normalized = f"+{cleaned}"

    if normalized[1] == "0" or len(normalized) > 16:
        return None
    return normalized


def partition_recipients(
    recipients: Iterable[str],
    dialing_code: Optional[str] = None
) -> Tuple[List[str], List[str]]:
    """
    Split recipients into (normalized valid addresses, rejected raw values).

    Order is preserved and duplicates are kept.
    """
    valid: List[str] = []
    rejected: List[str] = []
    for raw in recipients:
        normalized = normalize_phone_number(raw, dialing_code)
        if normalized is None:
            rejected.append(raw)
        else:
            valid.append(normalized)
    return valid, rejected


def classify_destination(address: str, dialing_code: Optional[str] = None) -> Destination:
    """Domestic when the normalized number carries the domestic dialing code."""
    dialing_code = dialing_code or settings.domestic_dialing_code
    normalized = normalize_phone_number(address, dialing_code) or address
    if normalized.startswith(f"+{dialing_code}"):
        return Destination.DOMESTIC
    return Destination.INTERNATIONAL
