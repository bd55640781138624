"""
Driver for the Keysight InfiniiVision MSOX3104T Oscilloscope.
Instrument Type: 4-channel mixed signal oscilloscope with built-in
waveform generator (WGEN)

Protocol: SCPI over USB-TMC/VISA
"""

import asyncio
from typing import Optional

from .device_manager import DeviceManager
from .errors import ArgumentError, ConfigurationError, VerificationError
from .scpi import MeasurementResult, format_number, is_valid_measurement, parse_bool, parse_number

DEFAULT_SCOPE_ADDRESS = "USB0::0x2A8D::0x1770::MY58491960::0::INSTR"


class Keysight_MSOX3104T:
    """
    Driver for the Keysight MSOX3104T oscilloscope.

    Timebase scale, vertical scale and channel display are verified by
    reading the setting back after writing it.
    """

    CHANNEL_MAP = {
        1: "CHANnel1",
        2: "CHANnel2",
        3: "CHANnel3",
        4: "CHANnel4",
    }

    # :MEASure subcommands, keyed by the names used in this driver
    MEASUREMENTS = {
        "vpp": "VPP",
        "vrms": "VRMS",
        "frequency": "FREQuency",
        "period": "PERiod",
        "mean": "VAVerage",
        "amplitude": "VAMPlitude",
        "phase": "PHASe",
        "duty_cycle": "DUTYcycle",
        "pulse_width": "PWIDth",
        "rise_time": "RISetime",
        "fall_time": "FALLtime",
        "overshoot": "OVERshoot",
        "preshoot": "PREShoot",
        "slew_rate": "SLEWrate",
        "transition": "TRANsition",
        "bandwidth": "BANDwidth",
    }

    # Built-in generator shapes and the short form the scope reports back
    WGEN_WAVEFORMS = {
        "SINUSOID": "SIN",
        "SQUARE": "SQU",
        "RAMP": "RAMP",
        "PULSE": "PULS",
        "NOISE": "NOIS",
        "DC": "DC",
    }

    WGEN_ALIASES = {"SINE": "SINUSOID", "SIN": "SINUSOID", "SQU": "SQUARE", "PULS": "PULSE", "NOIS": "NOISE"}

    TIMEBASE_REFERENCES = ("LEFT", "CENTER", "RIGHT")
    TRIGGER_SWEEP_MODES = {"AUTO": "AUTO", "NORM": "NORMal", "NORMAL": "NORMal", "SING": "SINGle", "SINGLE": "SINGle"}
    TRIGGER_SLOPES = {"POS": "POSitive", "POSITIVE": "POSitive", "NEG": "NEGative", "NEGATIVE": "NEGative"}
    TRIGGER_SOURCES = {"CHAN1", "CHAN2", "CHAN3", "CHAN4", "EXT", "LINE", "WGEN"}
    TRIGGER_TYPES = ("EDGE", "PULSE", "PATTERN")

    MIN_TIMEBASE, MAX_TIMEBASE = 500e-12, 100.0
    MIN_VERTICAL, MAX_VERTICAL = 1e-3, 10.0

    # Relative tolerance when checking a scale readback
    VERIFY_TOLERANCE = 0.01

    def __init__(self, resource_name=DEFAULT_SCOPE_ADDRESS, transport=None):
        """Initialize the driver. Nothing is sent until connect()."""
        self.transport = transport or DeviceManager(resource_name)
        self._measure_lock = asyncio.Lock()

    @property
    def resource_name(self):
        return self.transport.resource_name

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    # ==========================================
    # CONNECTION
    # ==========================================

    async def connect(self):
        """Open the VISA session; replies are requested without headers."""
        await self.transport.connect()
        await self.transport.write(":SYSTem:HEADer OFF")

    async def initialize(self, reset_delay: float = 1.0):
        """Reset the scope to its default setup."""
        await self.transport.write("*RST")
        await asyncio.sleep(reset_delay)
        await self.transport.write("*CLS")
        await self.transport.write(":SYSTem:HEADer OFF")

    async def disconnect(self):
        self.transport.dispose()

    def dispose(self):
        self.transport.dispose()

    async def identify(self) -> str:
        return await self.transport.query("*IDN?")

    async def send_command(self, command: str):
        """Send a raw command."""
        await self.transport.write(command)

    async def query(self, command: str) -> str:
        """Send a raw query and return the response text."""
        return await self.transport.query(command)

    # ==========================================
    # INTERNAL HELPERS
    # ==========================================

    def _validate_channel(self, channel):
        if channel not in self.CHANNEL_MAP:
            raise ArgumentError(
                f"Invalid channel number {channel}. Must be one of: {list(self.CHANNEL_MAP.keys())}"
            )

    async def _write_verified(self, setting, command, query, expected, tolerance=VERIFY_TOLERANCE):
        """Write a numeric setting, read it back and compare.

        Raises:
            VerificationError: If the readback differs from ``expected`` by
                more than ``tolerance`` (relative).
        """
        await self.transport.write(command)
        actual = parse_number(await self.transport.query(query))
        if abs(actual - expected) > abs(expected) * tolerance:
            raise VerificationError(setting, expected, actual)
        return actual

    # ==========================================
    # HORIZONTAL (TIMEBASE)
    # ==========================================

    async def set_timebase_scale(self, seconds_per_div: float) -> float:
        """Set the horizontal scale in seconds per division.

        Args:
            seconds_per_div: 500 ps to 100 s.

        Returns:
            float: The scale reported back by the scope.
        """
        if not self.MIN_TIMEBASE <= seconds_per_div <= self.MAX_TIMEBASE:
            raise ArgumentError("Timebase scale must be between 500ps and 100s")
        return await self._write_verified(
            "timebase scale",
            f":TIMebase:SCALe {format_number(seconds_per_div)}",
            ":TIMebase:SCALe?",
            seconds_per_div,
        )

    async def get_timebase_scale(self) -> float:
        return parse_number(await self.transport.query(":TIMebase:SCALe?"))

    async def set_timebase_reference(self, reference: str) -> None:
        """Set the timebase reference point (LEFT, CENTER or RIGHT)."""
        ref = (reference or "").upper()
        if ref not in self.TIMEBASE_REFERENCES:
            raise ArgumentError(
                f"Invalid reference point. Use one of: {', '.join(self.TIMEBASE_REFERENCES)}"
            )
        await self.transport.write(f":TIMebase:REFerence {ref}")

    # ==========================================
    # VERTICAL
    # ==========================================

    async def set_vertical_scale(self, channel: int, volts_per_div: float) -> float:
        """Set a channel's vertical scale in volts per division (1 mV to 10 V)."""
        self._validate_channel(channel)
        if not self.MIN_VERTICAL <= volts_per_div <= self.MAX_VERTICAL:
            raise ArgumentError("Voltage scale must be between 1mV and 10V")
        scpi_name = self.CHANNEL_MAP[channel]
        return await self._write_verified(
            "vertical scale",
            f":{scpi_name}:SCALe {format_number(volts_per_div)}",
            f":{scpi_name}:SCALe?",
            volts_per_div,
        )

    async def get_vertical_scale(self, channel: int) -> float:
        self._validate_channel(channel)
        return parse_number(await self.transport.query(f":{self.CHANNEL_MAP[channel]}:SCALe?"))

    async def set_vertical_offset(self, channel: int, offset: float) -> None:
        """Set a channel's offset; limited to +/-40 divisions of the current scale."""
        max_offset = await self.get_vertical_scale(channel) * 40
        if abs(offset) > max_offset:
            raise ArgumentError(f"Offset must be between {-max_offset} and {max_offset}")
        await self.transport.write(f":{self.CHANNEL_MAP[channel]}:OFFSet {format_number(offset)}")

    async def set_channel_state(self, channel: int, enabled: bool) -> None:
        """Show or hide a channel and confirm the change took effect."""
        self._validate_channel(channel)
        scpi_name = self.CHANNEL_MAP[channel]
        await self.transport.write(f":{scpi_name}:DISPlay {'ON' if enabled else 'OFF'}")
        actual = parse_bool(await self.transport.query(f":{scpi_name}:DISPlay?"))
        if actual != enabled:
            raise VerificationError(f"channel {channel} state", enabled, actual)

    # ==========================================
    # ACQUISITION
    # ==========================================

    async def run(self):
        await self.transport.write(":RUN")

    async def stop(self):
        await self.transport.write(":STOP")

    async def single(self):
        await self.transport.write(":SINGle")

    async def autoscale(self, settle: float = 0.2):
        """Let the scope pick scales for the connected signals."""
        await self.transport.write(":AUToscale")
        await asyncio.sleep(settle)

    # ==========================================
    # TRIGGER
    # ==========================================

    async def set_trigger_sweep_mode(self, mode: str) -> None:
        """Set the trigger sweep (AUTO, NORM or SING)."""
        sweep = self.TRIGGER_SWEEP_MODES.get(mode.upper())
        if sweep is None:
            raise ArgumentError(f"Unsupported trigger sweep mode: {mode}")
        await self.transport.write(f":TRIGger:SWEep {sweep}")

    async def set_trigger_edge_source(self, source: str) -> None:
        src = source.upper()
        if src not in self.TRIGGER_SOURCES:
            raise ArgumentError(
                f"Unsupported trigger source: {source}. Use one of: {sorted(self.TRIGGER_SOURCES)}"
            )
        await self.transport.write(f":TRIGger:EDGE:SOURce {src}")

    async def set_trigger_edge_slope(self, slope: str) -> None:
        value = self.TRIGGER_SLOPES.get(slope.upper())
        if value is None:
            raise ArgumentError(f"Unsupported trigger slope: {slope}")
        await self.transport.write(f":TRIGger:EDGE:SLOPe {value}")

    async def set_trigger_level(self, level: float) -> None:
        await self.transport.write(f":TRIGger:EDGE:LEVel {format_number(level)}")

    async def set_trigger_type(self, trigger_type: str) -> None:
        value = trigger_type.upper()
        if value not in self.TRIGGER_TYPES:
            raise ArgumentError(f"Unsupported trigger type: {trigger_type}")
        await self.transport.write(f":TRIGger:MODE {value}")

    # ==========================================
    # WAVEFORM GENERATOR (WGEN)
    # ==========================================

    async def configure_waveform_generator(
        self,
        shape: str,
        frequency: float,
        amplitude: float,
        offset: float = 0.0,
        duty_cycle: float = 50.0,
        symmetry: float = 50.0,
        width_ns: float = 0.0,
    ) -> None:
        """Configure and enable the built-in waveform generator.

        Sends the shape, then frequency and amplitude where the shape uses
        them, the offset, exactly one shape-specific setting (duty cycle for
        SQUARE, symmetry for RAMP, width for PULSE), switches the output on
        and finally checks the shape the scope reports back.

        Args:
            shape: SINUSOID, SQUARE, RAMP, PULSE, NOISE or DC.
            frequency: Hz; not sent for NOISE/DC or when <= 0.
            amplitude: Vpp; not sent for DC or when <= 0.
            offset: Volts.
            duty_cycle: Percent, SQUARE only.
            symmetry: Percent, RAMP only.
            width_ns: Pulse width in nanoseconds, PULSE only.

        Raises:
            ArgumentError: Unknown shape. Nothing is sent.
            ConfigurationError: The scope reports a different shape.
        """
        name = (shape or "").strip().upper()
        name = self.WGEN_ALIASES.get(name, name)
        if name not in self.WGEN_WAVEFORMS:
            raise ArgumentError(
                f"Invalid waveform type. Must be one of: {', '.join(self.WGEN_WAVEFORMS)}"
            )

        write = self.transport.write
        await write(f":WGEN:FUNCtion {name}")
        if frequency > 0 and name not in ("NOISE", "DC"):
            await write(f":WGEN:FREQuency {format_number(frequency)}")
        if amplitude > 0 and name != "DC":
            await write(f":WGEN:VOLTage {format_number(amplitude)}")
        await write(f":WGEN:VOLTage:OFFSet {format_number(offset)}")

        if name == "SQUARE":
            await write(f":WGEN:FUNCtion:SQUare:DCYCle {format_number(duty_cycle)}")
        elif name == "RAMP":
            await write(f":WGEN:FUNCtion:RAMP:SYMMetry {format_number(symmetry)}")
        elif name == "PULSE":
            await write(f":WGEN:FUNCtion:PULSe:WIDTh {format_number(width_ns * 1e-9)}")

        await write(":WGEN:OUTPut ON")

        actual = (await self.transport.query(":WGEN:FUNCtion?")).strip().upper()
        if actual not in (name, self.WGEN_WAVEFORMS[name]):
            raise ConfigurationError(
                f"Failed to configure waveform generator. Expected: {name}, got: {actual}"
            )

    # ==========================================
    # MEASUREMENTS
    # ==========================================

    async def measure(self, channel: int, item: str) -> float:
        """Select a channel as measurement source and query one item.

        Args:
            channel: Channel number (1-4).
            item: A key of MEASUREMENTS (e.g. 'frequency') or a raw
                :MEASure subcommand (e.g. 'VPP').

        Returns:
            float: The value as reported. Values >= 9.9e37 mean the scope
            could not measure the signal.

        Raises:
            FormatError: If the response is not numeric.
        """
        self._validate_channel(channel)
        subcommand = self.MEASUREMENTS.get(item, item)
        async with self._measure_lock:
            await self.transport.write(f":MEASure:SOURce {self.CHANNEL_MAP[channel]}")
            response = await self.transport.query(f":MEASure:{subcommand}?")
        return parse_number(response)

    async def read_measurement(self, channel: int, item: str) -> MeasurementResult:
        return MeasurementResult(await self.measure(channel, item), item)

    async def measure_vpp(self, channel: int) -> float:
        """Measure peak-to-peak voltage."""
        return await self.measure(channel, "vpp")

    async def measure_vrms(self, channel: int) -> float:
        return await self.measure(channel, "vrms")

    async def measure_frequency(self, channel: int) -> float:
        """Measure frequency in Hz."""
        return await self.measure(channel, "frequency")

    async def measure_period(self, channel: int) -> float:
        return await self.measure(channel, "period")

    async def measure_mean(self, channel: int) -> float:
        return await self.measure(channel, "mean")

    async def measure_amplitude(self, channel: int) -> float:
        """Measure amplitude (Vtop - Vbase)."""
        return await self.measure(channel, "amplitude")

    async def measure_phase(self, channel: int) -> float:
        return await self.measure(channel, "phase")

    async def measure_duty_cycle(self, channel: int) -> float:
        """Measure positive duty cycle in percent."""
        return await self.measure(channel, "duty_cycle")

    async def measure_pulse_width(self, channel: int) -> float:
        return await self.measure(channel, "pulse_width")

    async def measure_rise_time(self, channel: int) -> float:
        return await self.measure(channel, "rise_time")

    async def measure_fall_time(self, channel: int) -> float:
        return await self.measure(channel, "fall_time")

    async def measure_overshoot(self, channel: int) -> float:
        return await self.measure(channel, "overshoot")

    async def measure_preshoot(self, channel: int) -> float:
        return await self.measure(channel, "preshoot")

    async def measure_slew_rate(self, channel: int) -> float:
        return await self.measure(channel, "slew_rate")

    async def measure_transition(self, channel: int) -> float:
        """Measure the edge transition time."""
        return await self.measure(channel, "transition")

    async def measure_bandwidth(self, channel: int) -> float:
        """Estimate signal bandwidth in Hz from the fastest edge."""
        return await self.measure(channel, "bandwidth")

    async def measure_symmetry(self, channel: int) -> Optional[float]:
        """Rise time as a percentage of the period (ramp symmetry estimate).

        Returns None if the period could not be measured.
        """
        rise = await self.measure_rise_time(channel)
        period = await self.measure_period(channel)
        if period == 0 or not is_valid_measurement(period):
            return None
        return rise / period * 100.0

    # ==========================================
    # DISPLAY
    # ==========================================

    async def get_screen_capture(self) -> bytes:
        """Return the current screen as PNG bytes, uninterpreted."""
        return await self.transport.read_binary_block()
