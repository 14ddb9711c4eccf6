"""
Time and money helpers shared by the reconcilers
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Union

# Currencies the processor reports without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})

TWO_PLACES = Decimal("0.01")


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(value: Optional[Union[int, float]]) -> Optional[datetime]:
    """Convert a processor unix timestamp to a naive UTC datetime"""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def minor_to_major(amount: Optional[int], currency: Optional[str]) -> Decimal:
    """
    Convert a processor amount in minor units to major units

    Called once, at persistence. 15000 usd -> Decimal("150.00").
    """
    if amount is None:
        return Decimal("0.00")

    value = Decimal(int(amount))
    if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES:
        return value.quantize(TWO_PLACES)
    return value.scaleb(-2).quantize(TWO_PLACES)


def major_to_minor(amount: Decimal, currency: Optional[str]) -> int:
    """Convert major units back to the processor's minor units"""
    value = Decimal(amount)
    if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES:
        return int(value)
    return int((value * 100).quantize(Decimal("1")))
