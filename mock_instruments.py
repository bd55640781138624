"""
Mock instruments for testing without physical hardware.

Two layers are simulated:

* MockVisaResource / MockResourceManager stand in for PyVISA, so the real
  DeviceManager can be exercised.
* MockTransport replaces a transport under a real controller, and
  MockOscilloscope / MockFunctionGenerator form a linked simulated bench
  for the sweep engine: the scope measures whatever the generator is set to.

Usage:
    python mock_instruments.py        # dry-run sweep on the simulated bench
"""

import asyncio
import random
from collections import deque

import pyvisa
from pyvisa.constants import StatusCode

from scope_bench.src.errors import ArgumentError, InstrumentConnectionError

MOCK_IDN = "MOCK INSTRUMENTS INC.,{},SN000001,v1.0"

# What a Keysight scope returns when it cannot measure
INVALID_READING = 9.9e37


def _lookup(responses, command, default):
    """Resolve a scripted reply: a string, a list consumed in order, or a callable."""
    reply = responses.get(command, default)
    if callable(reply):
        return reply(command)
    if isinstance(reply, list):
        return reply.pop(0) if len(reply) > 1 else reply[0]
    return reply


# ==========================================
# PYVISA STAND-INS
# ==========================================


class MockVisaResource:
    """Message-based resource that records writes and answers queries."""

    def __init__(self, resource_name="USB0::MOCK::INSTR", responses=None, binary_block=b""):
        self.resource_name = resource_name
        self.responses = dict(responses or {})
        self.responses.setdefault("*IDN?", MOCK_IDN.format("MSOX3104T"))
        self.binary_block = binary_block
        self.writes = []
        self.timeout = None
        self.read_termination = None
        self.write_termination = None
        self.close_count = 0
        self.fail_writes = False
        self.fail_close = False
        self.fail_clear = False
        self.clear_count = 0
        # reads that time out while their reply stays queued
        self.stall_reads = 0
        self._pending = deque()

    def write(self, command):
        if self.fail_writes:
            raise pyvisa.errors.VisaIOError(StatusCode.error_timeout)
        self.writes.append(command)
        if command.endswith("?"):
            self._pending.append(_lookup(self.responses, command, "0"))

    def read(self):
        if self.stall_reads > 0 or not self._pending:
            self.stall_reads = max(0, self.stall_reads - 1)
            raise pyvisa.errors.VisaIOError(StatusCode.error_timeout)
        return self._pending.popleft() + "\n"

    def clear(self):
        self.clear_count += 1
        if self.fail_clear:
            raise pyvisa.errors.VisaIOError(StatusCode.error_connection_lost)
        self._pending.clear()

    def read_binary_values(self, datatype="B", container=list, **kwargs):
        return container(self.binary_block)

    def close(self):
        self.close_count += 1
        if self.fail_close:
            raise pyvisa.errors.VisaIOError(StatusCode.error_connection_lost)


class MockResourceManager:
    """Hands out MockVisaResource objects; unknown addresses fail like VISA does."""

    def __init__(self, resources=None):
        self.resources = dict(resources or {})
        self.opened = []

    def add(self, resource):
        self.resources[resource.resource_name] = resource
        return resource

    def open_resource(self, resource_name, **kwargs):
        if resource_name not in self.resources:
            raise pyvisa.errors.VisaIOError(StatusCode.error_resource_not_found)
        self.opened.append(resource_name)
        return self.resources[resource_name]

    def list_resources(self, query="?*::INSTR"):
        return tuple(self.resources)


# ==========================================
# TRANSPORT STAND-IN
# ==========================================


class MockTransport:
    """
    Async transport double for controller tests.

    ``writes`` holds every command in send order, queries included, so a
    test can assert on the exact sequence a controller emits.
    """

    def __init__(self, responses=None, resource_name="MOCK::INSTR", binary_block=b""):
        self.responses = dict(responses or {})
        self.resource_name = resource_name
        self.binary_block = binary_block
        self.writes = []
        self.connected = False
        self.dispose_count = 0

    @property
    def is_connected(self):
        return self.connected

    async def connect(self):
        self.connected = True

    def dispose(self):
        self.dispose_count += 1
        self.connected = False

    async def write(self, command):
        if not command:
            raise ArgumentError("Command cannot be empty.")
        self.writes.append(command)

    async def query(self, command):
        self.writes.append(command)
        return _lookup(self.responses, command, "0")

    async def read_binary_block(self):
        self.writes.append(":DISPlay:DATA? PNG")
        return self.binary_block


# ==========================================
# LINKED SIMULATED BENCH
# ==========================================


class MockDevice:
    def __init__(self, connect_error=None):
        self.connect_error = connect_error
        self.connected = False
        self.calls = []
        self._failures = {}

    @property
    def is_connected(self):
        return self.connected

    async def connect(self):
        if self.connect_error is not None:
            raise InstrumentConnectionError(self.connect_error)
        self.connected = True

    async def disconnect(self):
        self.connected = False

    def dispose(self):
        self.connected = False

    async def identify(self):
        return MOCK_IDN.format(type(self).__name__)

    def fail_next(self, method, times=1, message="Simulated I/O failure"):
        """Make the next ``times`` calls of ``method`` raise InstrumentConnectionError."""
        self._failures[method] = [times, message]

    def _record(self, method, *args):
        self.calls.append((method,) + args)
        failure = self._failures.get(method)
        if failure and failure[0] > 0:
            failure[0] -= 1
            raise InstrumentConnectionError(failure[1])


class MockFunctionGenerator(MockDevice):
    """Two-channel generator that only keeps state."""

    def __init__(self, connect_error=None):
        super().__init__(connect_error)
        self.channels = {
            ch: {"shape": "SIN", "frequency": 1000.0, "amplitude": 0.1,
                 "duty": 50.0, "width": 1e-4, "output": False}
            for ch in (1, 2)
        }

    def get_shape(self, channel):
        return self.channels[channel]["shape"]

    async def set_waveform(self, channel, shape):
        self._record("set_waveform", channel, shape)
        self.channels[channel]["shape"] = shape

    async def set_frequency(self, channel, frequency):
        self._record("set_frequency", channel, frequency)
        self.channels[channel]["frequency"] = frequency

    async def set_amplitude(self, channel, amplitude):
        self._record("set_amplitude", channel, amplitude)
        self.channels[channel]["amplitude"] = amplitude

    async def set_square_duty_cycle(self, channel, duty_cycle):
        self._record("set_square_duty_cycle", channel, duty_cycle)
        if self.channels[channel]["shape"] == "SQU":
            self.channels[channel]["duty"] = duty_cycle

    async def set_pulse_width(self, channel, width):
        self._record("set_pulse_width", channel, width)
        if self.channels[channel]["shape"] == "PULS":
            self.channels[channel]["width"] = width

    async def enable_output(self, channel, enabled=True):
        self._record("enable_output", channel, enabled)
        self.channels[channel]["output"] = enabled


class MockOscilloscope(MockDevice):
    """
    Scope wired channel-for-channel to a MockFunctionGenerator.

    Measured Vpp is twice the generator amplitude (50 Ohm setting into a
    high impedance input). ``noise`` adds a relative random error;
    ``invalid_frequency_reads`` makes that many frequency reads return the
    invalid-measurement value first. ``on_measure`` is called before every
    measurement with (method, channel).
    """

    def __init__(self, generator, noise=0.0, invalid_frequency_reads=0, connect_error=None, on_measure=None):
        super().__init__(connect_error)
        self.generator = generator
        self.noise = noise
        self.invalid_frequency_reads = invalid_frequency_reads
        self.on_measure = on_measure
        self.timebase_scale = 1e-3
        self.vertical_scale = {ch: 1.0 for ch in (1, 2, 3, 4)}

    def _source(self, channel):
        return self.generator.channels.get(channel)

    def _jitter(self, value):
        if self.noise:
            value *= 1 + random.uniform(-self.noise, self.noise)
        return value

    def _measure(self, method, channel):
        if self.on_measure is not None:
            self.on_measure(method, channel)
        self._record(method, channel)
        source = self._source(channel)
        if source is None or not source["output"]:
            return None
        return source

    async def set_timebase_scale(self, seconds_per_div):
        self._record("set_timebase_scale", seconds_per_div)
        self.timebase_scale = seconds_per_div
        return seconds_per_div

    async def set_vertical_scale(self, channel, volts_per_div):
        self._record("set_vertical_scale", channel, volts_per_div)
        self.vertical_scale[channel] = volts_per_div
        return volts_per_div

    async def measure_frequency(self, channel):
        source = self._measure("measure_frequency", channel)
        if source is None or self.invalid_frequency_reads > 0:
            self.invalid_frequency_reads = max(0, self.invalid_frequency_reads - 1)
            return INVALID_READING
        return self._jitter(source["frequency"])

    async def measure_amplitude(self, channel):
        source = self._measure("measure_amplitude", channel)
        if source is None:
            return INVALID_READING
        return self._jitter(2.0 * source["amplitude"])

    async def measure_duty_cycle(self, channel):
        source = self._measure("measure_duty_cycle", channel)
        if source is None:
            return INVALID_READING
        if source["shape"] == "SQU":
            duty = source["duty"]
        elif source["shape"] == "PULS":
            duty = source["width"] * source["frequency"] * 100.0
        else:
            duty = 50.0
        return self._jitter(duty)


async def _dry_run():
    from scope_bench import Bench, SweepConfig

    generator = MockFunctionGenerator()
    scope = MockOscilloscope(generator, noise=0.02)
    config = SweepConfig(generator_settle=0, scope_settle=0, duty_settle=0, pulse_settle=0, retry_delay=0)
    bench = Bench(scope, generator, config)
    await bench.connect_oscilloscope()
    await bench.connect_function_generator()
    await bench.start_sweep(1)
    await bench.disconnect()


if __name__ == "__main__":
    asyncio.run(_dry_run())
