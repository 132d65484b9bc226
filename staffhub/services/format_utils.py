"""Formatting helpers shared by the plan, recommendation and drive code."""

from typing import Optional

_BYTE_UNITS = ["Bytes", "KB", "MB", "GB", "TB"]


def format_bytes(size: Optional[float]) -> str:
    """Human-readable size with two decimals at most: ``1.5 KB``, ``0 Bytes``."""
    if not size or size <= 0:
        return "0 Bytes"
    value = float(size)
    i = 0
    while value >= 1024 and i < len(_BYTE_UNITS) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {_BYTE_UNITS[i]}"


def format_storage(size: Optional[int]) -> str:
    """Plan storage limit; ``None`` means unlimited."""
    if size is None:
        return "Unlimited"
    return format_bytes(size)


def format_price(amount: Optional[int], currency: str = "CLP") -> str:
    """Whole-peso price with ``.`` thousands separators: ``$29.990 CLP``."""
    amount = int(amount or 0)
    return f"${amount:,}".replace(",", ".") + f" {currency}"
