from __future__ import annotations

from decimal import Decimal
import re

from .errors import InvalidQuantity

BINARY_SUFFIXES = {
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "Pi": 1024**5,
    "Ei": 1024**6,
}
DECIMAL_SUFFIXES = {
    "k": 1000,
    "M": 1000**2,
    "G": 1000**3,
    "T": 1000**4,
    "P": 1000**5,
    "E": 1000**6,
}
# Kubernetes quantity forms: optional sign, a decimal number, then either a
# decimal exponent (1e9, 5E-3) or a unit suffix. A bare 'E' is the exa suffix.
_QUANTITY_PATTERN = re.compile(
    r"^(?P<sign>[+-]?)(?P<number>[0-9]+(?:\.[0-9]+)?|\.[0-9]+)"
    r"(?:(?P<exponent>[eE][+-]?[0-9]+)|(?P<suffix>[A-Za-z]*))$"
)


def parse_quantity(value: str | int) -> int:
    """Convert a storage quantity such as ``1Gi``, ``500M`` or ``1e9`` into a byte count."""
    if isinstance(value, bool):
        raise InvalidQuantity(value, "expected a quantity string, not a boolean")
    if isinstance(value, int):
        if value < 0:
            raise InvalidQuantity(value, "quantity must not be negative")
        return value
    if not isinstance(value, str):
        raise InvalidQuantity(value, f"expected a string, got {type(value).__name__}")

    match = _QUANTITY_PATTERN.match(value.strip())
    if match is None:
        raise InvalidQuantity(value, "expected a decimal number with an optional unit suffix or exponent")

    suffix = match.group("suffix") or ""
    if suffix in BINARY_SUFFIXES:
        multiplier = BINARY_SUFFIXES[suffix]
    elif suffix in DECIMAL_SUFFIXES:
        multiplier = DECIMAL_SUFFIXES[suffix]
    elif not suffix:
        multiplier = 1
    else:
        raise InvalidQuantity(value, f"unsupported unit suffix '{suffix}'")

    try:
        total = Decimal(match.group("number")) * multiplier
        if match.group("exponent"):
            total = total.scaleb(int(match.group("exponent")[1:]))
    except ArithmeticError as error:
        raise InvalidQuantity(value, "number could not be parsed") from error

    if match.group("sign") == "-" and total != 0:
        raise InvalidQuantity(value, "quantity must not be negative")
    if total != total.to_integral_value():
        raise InvalidQuantity(value, "quantity does not resolve to a whole number of bytes")
    return int(total)


def format_quantity(num_bytes: int) -> str:
    if num_bytes < 0:
        raise ValueError("num_bytes must be >= 0")
    if num_bytes == 0:
        return "0"

    for suffix, multiplier in sorted(BINARY_SUFFIXES.items(), key=lambda item: item[1], reverse=True):
        if num_bytes % multiplier == 0:
            return f"{num_bytes // multiplier}{suffix}"
    return str(num_bytes)
