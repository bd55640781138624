__version__ = "1.0.0"

from .src.errors import (
    ArgumentError,
    ConfigurationError,
    FormatError,
    InstrumentConnectionError,
    InstrumentError,
    VerificationError,
)
from .src.scpi import MeasurementResult
from .src.device_manager import DeviceManager
from .src.lan_manager import LanManager
from .src.keysight_msox3104t import Keysight_MSOX3104T
from .src.keysight_33500b import Keysight_33500B
from .src.sweep import (
    ParamStats,
    SweepConfig,
    SweepResult,
    SweepState,
    WaveformSweep,
    measure_with_retry,
    tolerance_check,
)
from .src.bench import Bench
from .src.terminal import ColorPrinter

__all__ = [
    "ArgumentError",
    "ConfigurationError",
    "FormatError",
    "InstrumentConnectionError",
    "InstrumentError",
    "VerificationError",
    "MeasurementResult",
    "DeviceManager",
    "LanManager",
    "Keysight_MSOX3104T",
    "Keysight_33500B",
    "ParamStats",
    "SweepConfig",
    "SweepResult",
    "SweepState",
    "WaveformSweep",
    "measure_with_retry",
    "tolerance_check",
    "Bench",
    "ColorPrinter",
]
