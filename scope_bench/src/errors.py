"""
Exception types raised by the transports and instrument controllers.
"""


class InstrumentError(Exception):
    """Base class for all instrument errors."""


class InstrumentConnectionError(InstrumentError, ConnectionError):
    """The transport could not establish or maintain a session."""


class ArgumentError(InstrumentError, ValueError):
    """A caller supplied an out-of-domain value. Nothing was sent."""


class VerificationError(InstrumentError):
    """An instrument readback did not match the requested setting."""

    def __init__(self, setting, requested, actual):
        self.setting = setting
        self.requested = requested
        self.actual = actual
        super().__init__(
            f"Failed to set {setting}. Requested: {requested}, Actual: {actual}"
        )


class FormatError(InstrumentError, ValueError):
    """A response could not be parsed into the expected shape."""

    def __init__(self, response, expected="number"):
        self.response = response
        super().__init__(f"Could not parse {response!r} as {expected}")


class ConfigurationError(InstrumentError):
    """A composite configuration did not take effect on the instrument."""
