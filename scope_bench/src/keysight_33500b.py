"""
Driver for the Keysight 33500B Series Waveform Generator.
Instrument Type: Dual-Channel Function/Arbitrary Waveform Generator

Interface: LAN, raw SCPI socket on port 5025.
"""

import asyncio
from typing import Dict

from loguru import logger

from .errors import ArgumentError
from .lan_manager import DEFAULT_LAN_PORT, LanManager
from .scpi import format_number

DEFAULT_GENERATOR_ADDRESS = "169.254.5.21"


class Keysight_33500B:
    """
    Driver for the Keysight 33500B dual-channel waveform generator.

    Channels are addressed via the SOURce1/SOURce2 prefix. The driver keeps
    track of the shape last set on each channel; setters for parameters the
    current shape does not have (e.g. duty cycle on a sine) are skipped
    without sending anything, since the instrument would only answer them
    with a settings-conflict error.
    """

    CHANNEL_MAP = {1: "SOURce1", 2: "SOURce2"}

    VALID_WAVEFORMS = {"SIN", "SQU", "RAMP", "PULS", "NOIS", "DC"}

    WAVEFORM_ALIASES = {
        "SINE": "SIN",
        "SINUSOID": "SIN",
        "SQUARE": "SQU",
        "PULSE": "PULS",
        "NOISE": "NOIS",
    }

    PHASE_SHAPES = {"SIN", "SQU", "RAMP", "PULS"}

    # Shape the instrument returns to after *RST
    DEFAULT_SHAPE = "SIN"

    def __init__(self, address=DEFAULT_GENERATOR_ADDRESS, port: int = DEFAULT_LAN_PORT, transport=None):
        """Initialize the driver. Nothing is sent until connect()."""
        self.transport = transport or LanManager(address, port)
        self._channel_shape: Dict[int, str] = {
            channel: self.DEFAULT_SHAPE for channel in self.CHANNEL_MAP
        }

    @property
    def resource_name(self):
        return self.transport.resource_name

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    # ==========================================
    # CONNECTION
    # ==========================================

    async def connect(self, reset_delay: float = 1.0):
        """Open the LAN session and bring the instrument to a known state."""
        await self.transport.connect()
        await self.initialize(reset_delay)

    async def initialize(self, reset_delay: float = 1.0):
        """Reset the instrument and clear its status registers."""
        await self.transport.write("*RST")
        await asyncio.sleep(reset_delay)
        await self.transport.write("*CLS")
        for channel in self._channel_shape:
            self._channel_shape[channel] = self.DEFAULT_SHAPE

    async def disconnect(self):
        """Turn both outputs off, then close the session."""
        try:
            if self.is_connected:
                for channel in self.CHANNEL_MAP:
                    await self.enable_output(channel, False)
        finally:
            self.transport.dispose()

    def dispose(self):
        self.transport.dispose()

    async def identify(self) -> str:
        return await self.transport.query("*IDN?")

    # ==========================================
    # INTERNAL HELPERS
    # ==========================================

    def _validate_channel(self, channel):
        if channel not in self.CHANNEL_MAP:
            raise ArgumentError(
                f"Invalid channel {channel}. Must be one of: {list(self.CHANNEL_MAP.keys())}"
            )

    def _src(self, channel):
        """Return the SOURce prefix for the given channel number."""
        return self.CHANNEL_MAP[channel]

    def _shape_allows(self, channel, shapes, parameter) -> bool:
        self._validate_channel(channel)
        shape = self._channel_shape[channel]
        if shape in shapes:
            return True
        logger.debug("Skipping {} on CH{}: not applicable to {}", parameter, channel, shape)
        return False

    @classmethod
    def normalize_shape(cls, shape) -> str:
        """Map a shape name or alias onto the instrument mnemonic.

        Raises:
            ArgumentError: If the shape is not one of the supported shapes.
        """
        name = str(shape).strip().upper()
        name = cls.WAVEFORM_ALIASES.get(name, name)
        if name not in cls.VALID_WAVEFORMS:
            raise ArgumentError(
                f"Invalid waveform '{shape}'. Must be one of: {sorted(cls.VALID_WAVEFORMS)}"
            )
        return name

    def get_shape(self, channel) -> str:
        """Return the shape last set on a channel."""
        self._validate_channel(channel)
        return self._channel_shape[channel]

    @property
    def channel_shapes(self) -> Dict[int, str]:
        return dict(self._channel_shape)

    # ==========================================
    # BASIC PARAMETERS
    # ==========================================

    async def set_waveform(self, channel, shape):
        """Set the output function and remember it for the channel.

        Args:
            channel (int): Channel number (1 or 2).
            shape (str): SIN, SQU, RAMP, PULS, NOIS or DC (long names accepted).
        """
        self._validate_channel(channel)
        name = self.normalize_shape(shape)
        await self.transport.write(f":{self._src(channel)}:FUNCtion {name}")
        self._channel_shape[channel] = name

    async def set_frequency(self, channel, frequency):
        """Set the output frequency in Hz."""
        self._validate_channel(channel)
        if frequency <= 0:
            raise ArgumentError(f"Frequency must be positive, got {frequency}")
        await self.transport.write(f":{self._src(channel)}:FREQuency {format_number(frequency)}")

    async def set_amplitude(self, channel, amplitude):
        """Set the output amplitude.

        The value is in the instrument's voltage unit (Vpp by default) and
        refers to its configured output load. With the default 50 Ohm load
        setting, a high-impedance input sees twice this value.
        """
        self._validate_channel(channel)
        if amplitude <= 0:
            raise ArgumentError(f"Amplitude must be positive, got {amplitude}")
        await self.transport.write(f":{self._src(channel)}:VOLTage {format_number(amplitude)}")

    async def set_offset(self, channel, offset):
        """Set the DC offset voltage in Volts."""
        self._validate_channel(channel)
        await self.transport.write(f":{self._src(channel)}:VOLTage:OFFSet {format_number(offset)}")

    # ==========================================
    # SHAPE-SPECIFIC PARAMETERS
    # ==========================================

    async def set_phase(self, channel, phase):
        """Set the phase offset in degrees (periodic shapes only)."""
        if not self._shape_allows(channel, self.PHASE_SHAPES, "phase"):
            return
        await self.transport.write(f":{self._src(channel)}:PHASe {format_number(phase)}")

    async def set_square_duty_cycle(self, channel, duty_cycle):
        """Set the square wave duty cycle in percent (SQU only)."""
        if not self._shape_allows(channel, {"SQU"}, "duty cycle"):
            return
        if not 0 < duty_cycle < 100:
            raise ArgumentError(f"Duty cycle must be between 0 and 100%, got {duty_cycle}")
        await self.transport.write(
            f":{self._src(channel)}:FUNCtion:SQUare:DCYCle {format_number(duty_cycle)}"
        )

    async def set_ramp_symmetry(self, channel, symmetry):
        """Set the ramp symmetry in percent (RAMP only)."""
        if not self._shape_allows(channel, {"RAMP"}, "symmetry"):
            return
        if not 0 <= symmetry <= 100:
            raise ArgumentError(f"Symmetry must be between 0 and 100%, got {symmetry}")
        await self.transport.write(
            f":{self._src(channel)}:FUNCtion:RAMP:SYMMetry {format_number(symmetry)}"
        )

    async def set_pulse_width(self, channel, width):
        """Set the pulse width in seconds (PULS only)."""
        if not self._shape_allows(channel, {"PULS"}, "pulse width"):
            return
        if width <= 0:
            raise ArgumentError(f"Pulse width must be positive, got {width}")
        await self.transport.write(
            f":{self._src(channel)}:FUNCtion:PULSe:WIDTh {format_number(width)}"
        )

    async def set_pulse_leading_edge(self, channel, edge_time):
        """Set the pulse leading edge time in seconds (PULS only)."""
        if not self._shape_allows(channel, {"PULS"}, "leading edge"):
            return
        if edge_time <= 0:
            raise ArgumentError(f"Edge time must be positive, got {edge_time}")
        await self.transport.write(
            f":{self._src(channel)}:FUNCtion:PULSe:TRANsition:LEADing {format_number(edge_time)}"
        )

    async def set_pulse_trailing_edge(self, channel, edge_time):
        """Set the pulse trailing edge time in seconds (PULS only)."""
        if not self._shape_allows(channel, {"PULS"}, "trailing edge"):
            return
        if edge_time <= 0:
            raise ArgumentError(f"Edge time must be positive, got {edge_time}")
        await self.transport.write(
            f":{self._src(channel)}:FUNCtion:PULSe:TRANsition:TRAiling {format_number(edge_time)}"
        )

    async def set_noise_bandwidth(self, channel, bandwidth):
        """Set the noise bandwidth in Hz (NOIS only)."""
        if not self._shape_allows(channel, {"NOIS"}, "noise bandwidth"):
            return
        if bandwidth <= 0:
            raise ArgumentError(f"Bandwidth must be positive, got {bandwidth}")
        await self.transport.write(
            f":{self._src(channel)}:FUNCtion:NOISe:BWIDth {format_number(bandwidth)}"
        )

    # ==========================================
    # OUTPUT CONTROL
    # ==========================================

    async def enable_output(self, channel, enabled: bool = True):
        """Enable or disable the output for the specified channel."""
        self._validate_channel(channel)
        state = "ON" if enabled else "OFF"
        await self.transport.write(f":OUTPut{channel}:STATe {state}")

    async def set_output_state(self, enabled: bool):
        """Enable or disable the output of the currently selected channel."""
        state = "ON" if enabled else "OFF"
        await self.transport.write(f":OUTPut:STATe {state}")

    async def select_channel(self, channel):
        """Make a channel the target of unprefixed commands."""
        self._validate_channel(channel)
        await self.transport.write(f":INSTrument:SELect {channel}")

    async def send_software_trigger(self):
        await self.transport.write(":TRIGger:IMMediate")
