"""
Centralized parsing helpers for address and length values.
"""

from typing import Optional


def parse_address(value: Optional[str]) -> Optional[int]:
    """
    Parse an address or length from string, supporting multiple formats.

    Accepts:
        - Decimal: "1920"
        - Hex with 0x prefix: "0x780" or "0X780"
        - Hex with h suffix: "780h" or "780H"
        - None or empty for "use the default"

    Raises:
        ValueError: If value cannot be parsed or is negative.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            result = int(value, 16)
        elif value.lower().endswith("h"):
            result = int(value[:-1], 16)
        else:
            result = int(value)
    except ValueError:
        raise ValueError(
            f"Invalid address '{value}'. Use decimal (1920), hex (0x780), or suffix (780h)."
        )

    if result < 0:
        raise ValueError(f"Address must not be negative: {value}")
    return result
