"""
Billing cost computation.

Segment boundaries follow the delivery network's own accounting:

* narrow (GSM 03.38 default alphabet): 160 units in a single segment, 153 per
  part once concatenated. Extension-table characters take two units each
  because they travel behind an escape septet.
* wide (UCS-2): 70 units single, 67 per part. Units are UTF-16 code units,
  so characters outside the BMP count twice.

Voice and audio messages are billed one call unit per recipient.
"""

import math
import enum
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, Optional

from scheduled_messaging.core.config import settings
from scheduled_messaging.models.database import MessageKind
from scheduled_messaging.services.recipients import Destination, classify_destination


GSM_BASIC_CHARSET = frozenset(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)
GSM_EXTENSION_CHARSET = frozenset("\f^{}\\[~]|€")

NARROW_SINGLE_SEGMENT = 160
NARROW_MULTI_SEGMENT = 153
WIDE_SINGLE_SEGMENT = 70
WIDE_MULTI_SEGMENT = 67

_CENTS = Decimal("0.01")


class Encoding(str, enum.Enum):
    """Content encoding class."""
    NARROW = "narrow"
    WIDE = "wide"


SEGMENT_LIMITS = {
    Encoding.NARROW: (NARROW_SINGLE_SEGMENT, NARROW_MULTI_SEGMENT),
    Encoding.WIDE: (WIDE_SINGLE_SEGMENT, WIDE_MULTI_SEGMENT),
}


def detect_encoding(content: str) -> Encoding:
    """Wide as soon as one character falls outside the GSM repertoire."""
    for char in content:
        if char not in GSM_BASIC_CHARSET and char not in GSM_EXTENSION_CHARSET:
            return Encoding.WIDE
    return Encoding.NARROW


def encoded_length(content: str, encoding: Optional[Encoding] = None) -> int:
    """Length of ``content`` in billing units for its encoding."""
    encoding = encoding or detect_encoding(content)
    if encoding is Encoding.NARROW:
        return sum(2 if char in GSM_EXTENSION_CHARSET else 1 for char in content)
    return len(content.encode("utf-16-le")) // 2


def segments(content: str) -> int:
    """Number of billable segments for a text message."""
    encoding = detect_encoding(content)
    single, multi = SEGMENT_LIMITS[encoding]
    length = encoded_length(content, encoding)
    if length <= single:
        return 1
    return math.ceil(length / multi)


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(_CENTS, rounding=ROUND_HALF_UP)


@dataclass
class CostBreakdown:
    """Itemized cost estimate for one message."""
    kind: MessageKind
    encoding: Optional[Encoding]
    segments: int
    recipient_count: int
    destinations: Dict[str, int] = field(default_factory=dict)
    total_cost: Decimal = Decimal("0.00")

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "encoding": self.encoding.value if self.encoding else None,
            "segments": self.segments,
            "recipient_count": self.recipient_count,
            "destinations": dict(self.destinations),
            "total_cost": str(self.total_cost),
        }


class CostCalculator:
    """Pure cost computation over configured rates."""

    def __init__(
        self,
        domestic_sms_rate: Optional[Decimal] = None,
        international_sms_rate: Optional[Decimal] = None,
        domestic_voice_rate: Optional[Decimal] = None,
        international_voice_rate: Optional[Decimal] = None,
        dialing_code: Optional[str] = None,
    ):
        self.sms_rates = {
            Destination.DOMESTIC: Decimal(domestic_sms_rate if domestic_sms_rate is not None else settings.domestic_sms_rate),
            Destination.INTERNATIONAL: Decimal(
                international_sms_rate if international_sms_rate is not None else settings.international_sms_rate
            ),
        }
        self.voice_rates = {
            Destination.DOMESTIC: Decimal(
                domestic_voice_rate if domestic_voice_rate is not None else settings.domestic_voice_rate
            ),
            Destination.INTERNATIONAL: Decimal(
                international_voice_rate if international_voice_rate is not None else settings.international_voice_rate
            ),
        }
        self.dialing_code = dialing_code or settings.domestic_dialing_code

    def base_rate(self, destination: Destination, kind: MessageKind = MessageKind.TEXT) -> Decimal:
        rates = self.sms_rates if kind == MessageKind.TEXT else self.voice_rates
        return rates[destination]

    def units(self, kind: MessageKind, content: str) -> int:
        """Billable units per recipient: segments for text, one call otherwise."""
        if kind == MessageKind.TEXT:
            return segments(content)
        return 1

    def cost_per_recipient(
        self,
        content: str,
        destination: Destination = Destination.DOMESTIC,
        kind: MessageKind = MessageKind.TEXT,
    ) -> Decimal:
        return quantize(self.base_rate(destination, kind) * self.units(kind, content))

    def total_cost(
        self,
        content: str,
        recipients: Iterable[str],
        kind: MessageKind = MessageKind.TEXT,
    ) -> Decimal:
        return self.estimate(content, recipients, kind).total_cost

    def estimate(
        self,
        content: str,
        recipients: Iterable[str],
        kind: MessageKind = MessageKind.TEXT,
    ) -> CostBreakdown:
        """Sum of per-recipient cost, grouped by destination class."""
        kind = MessageKind(kind)
        units = self.units(kind, content)
        destinations = {Destination.DOMESTIC.value: 0, Destination.INTERNATIONAL.value: 0}
        total = Decimal("0")
        count = 0
        for address in recipients:
            destination = classify_destination(address, self.dialing_code)
            destinations[destination.value] += 1
            total += self.base_rate(destination, kind) * units
            count += 1

        return CostBreakdown(
            kind=kind,
            encoding=detect_encoding(content) if kind == MessageKind.TEXT else None,
            segments=units,
            recipient_count=count,
            destinations=destinations,
            total_cost=quantize(total),
        )
