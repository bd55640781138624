"""
Number formatting and response parsing shared by the instrument drivers.

SCPI numbers always use '.' as the decimal separator. Python's float
formatting and float() are locale-independent, so the helpers here only
fix the precision and translate parse failures into FormatError.
"""

from dataclasses import dataclass

from .errors import FormatError

# Keysight scopes report 9.9E+37 when a measurement has no valid signal.
INVALID_MEASUREMENT = 1e36


def format_number(value) -> str:
    """Format a numeric value for a SCPI command ('1000', '2.5e-07')."""
    return f"{float(value):.12g}"


def parse_number(response: str) -> float:
    """Parse a numeric SCPI response.

    Raises:
        FormatError: If the response is not a number.
    """
    try:
        return float(response.strip())
    except (AttributeError, ValueError) as e:
        raise FormatError(response) from e


def parse_bool(response: str) -> bool:
    """Parse an on/off query response ('1', '0', 'ON', 'OFF')."""
    text = response.strip().upper()
    if text in ("1", "ON"):
        return True
    if text in ("0", "OFF"):
        return False
    raise FormatError(response, "boolean")


def is_valid_measurement(value: float) -> bool:
    return abs(value) < INVALID_MEASUREMENT


@dataclass(frozen=True)
class MeasurementResult:
    """A single measured value and whether the instrument could measure it."""

    value: float
    item: str = ""

    @property
    def valid(self) -> bool:
        return is_valid_measurement(self.value)
