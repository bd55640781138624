"""
Automated waveform sweep: drive the function generator through a fixed
grid of shapes, frequencies and amplitudes and check what the oscilloscope
measures against what was commanded.

The sweep runs as a single asyncio task. Cancellation is cooperative:
stop() only sets a flag, which the loop checks before every step.
"""

import asyncio
import enum
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from loguru import logger

from .errors import ArgumentError
from .scpi import is_valid_measurement

# Absolute margin used when the expected value is exactly zero
ZERO_MARGIN = 0.02

# Reported in place of a measurement that never became valid
UNMEASURED = -1.0

PARAM_FREQ = "freq"
PARAM_AMP = "amp"
PARAM_DUTY = "duty"
PARAM_PULSE_WIDTH = "pulseWidth"

PARAM_LABELS = {
    PARAM_FREQ: "Frequency",
    PARAM_AMP: "Amplitude",
    PARAM_DUTY: "Duty Cycle",
    PARAM_PULSE_WIDTH: "Pulse Width",
}


def tolerance_check(expected: float, actual: float, tolerance_pct: float) -> bool:
    """True if ``actual`` lies within ``tolerance_pct`` percent of ``expected``.

    Relative tolerance is meaningless around zero, so an expected value of
    exactly 0 is checked against an absolute margin of 0.02 instead.
    """
    if expected == 0:
        margin = ZERO_MARGIN
    else:
        margin = abs(expected) * tolerance_pct / 100.0
    return expected - margin <= actual <= expected + margin


async def measure_with_retry(measure, retries: int = 3, delay: float = 0.05) -> float:
    """Call ``measure()`` until it returns a valid value.

    Args:
        measure: Zero-argument coroutine function returning a float.
        retries: Maximum number of calls.
        delay: Seconds to wait after an invalid reading.

    Returns:
        float: The first valid reading, or -1 if none was valid.
    """
    for attempt in range(retries):
        value = await measure()
        if is_valid_measurement(value):
            return value
        logger.debug("Invalid measurement {} (attempt {}/{})", value, attempt + 1, retries)
        await asyncio.sleep(delay)
    return UNMEASURED


class SweepState(enum.Enum):
    IDLE = "Idle"
    CONNECTING = "Connecting"
    SWEEPING = "Sweeping"
    STOPPED = "Stopped"
    COMPLETED = "Completed"


class ParamCounter(NamedTuple):
    total: int = 0
    passed: int = 0

    @property
    def pass_rate(self) -> float:
        """Percentage of passed attempts (0 when nothing was scored)."""
        return self.passed * 100.0 / self.total if self.total else 0.0


class ParamStats:
    """
    Pass/fail counters keyed by (shape, parameter).

    Written by the sweep task, readable from anywhere: all access goes
    through a lock and readers get copies.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, str], ParamCounter] = {}

    def reset(self, keys):
        """Replace all counters with zeroed ones for the given keys."""
        fresh = {key: ParamCounter() for key in keys}
        with self._lock:
            self._counters = fresh

    def record(self, shape: str, parameter: str, passed: bool):
        key = (shape, parameter)
        with self._lock:
            total, count = self._counters.get(key, ParamCounter())
            self._counters[key] = ParamCounter(total + 1, count + int(passed))

    def get(self, shape: str, parameter: str) -> ParamCounter:
        with self._lock:
            return self._counters.get((shape, parameter), ParamCounter())

    def snapshot(self) -> Dict[Tuple[str, str], ParamCounter]:
        with self._lock:
            return dict(self._counters)

    def by_shape(self) -> Dict[str, Dict[str, ParamCounter]]:
        """Counters grouped as {shape: {parameter: counter}}, in insertion order."""
        grouped: Dict[str, Dict[str, ParamCounter]] = {}
        for (shape, parameter), counter in self.snapshot().items():
            grouped.setdefault(shape, {})[parameter] = counter
        return grouped

    def __len__(self):
        with self._lock:
            return len(self._counters)


@dataclass
class SweepConfig:
    """Candidate values and timing for one sweep run."""

    shapes: Tuple[str, ...] = ("SIN", "SQU", "RAMP", "PULS")
    frequencies: Tuple[float, ...] = (100.0, 500.0, 1000.0)
    amplitudes: Tuple[float, ...] = (0.5, 1.0, 2.0)
    duty_cycles: Tuple[float, ...] = (10.0, 50.0, 90.0)
    pulse_widths_us: Tuple[float, ...] = (10.0, 100.0, 500.0)
    tolerance_pct: float = 15.0
    # Measured Vpp expected per unit of commanded amplitude. The generator
    # is set up for a 50 Ohm load while the scope input is high impedance,
    # which doubles the voltage seen at the scope.
    vpp_factor: float = 2.0
    max_pulse_duty: float = 0.8
    retries: int = 3
    retry_delay: float = 0.05
    generator_settle: float = 0.05
    scope_settle: float = 0.1
    duty_settle: float = 0.02
    pulse_settle: float = 0.05

    def __post_init__(self):
        for name in ("shapes", "frequencies", "amplitudes"):
            if not getattr(self, name):
                raise ArgumentError(f"Sweep needs at least one value in '{name}'")
        for name in ("frequencies", "amplitudes", "duty_cycles", "pulse_widths_us"):
            if any(value <= 0 for value in getattr(self, name)):
                raise ArgumentError(f"All values in '{name}' must be positive")
        if self.tolerance_pct < 0 or self.vpp_factor <= 0 or self.retries < 1:
            raise ArgumentError("Invalid tolerance, vpp_factor or retry count")
        if not 0 < self.max_pulse_duty < 1:
            raise ArgumentError("max_pulse_duty must be between 0 and 1")

    def stat_keys(self):
        """The (shape, parameter) pairs this sweep scores, in report order."""
        for shape in self.shapes:
            yield shape, PARAM_FREQ
            yield shape, PARAM_AMP
            if shape == "SQU" and self.duty_cycles:
                yield shape, PARAM_DUTY
            elif shape == "PULS" and self.pulse_widths_us:
                yield shape, PARAM_PULSE_WIDTH


@dataclass
class SweepResult:
    state: SweepState
    stats: Dict[Tuple[str, str], ParamCounter] = field(default_factory=dict)
    elapsed: float = 0.0
    error: Optional[str] = None
    report: List[str] = field(default_factory=list)


def format_elapsed(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


class WaveformSweep:
    """
    Sweep engine for one generator/scope channel pair.

    The generator channel N is expected to be cabled to scope channel N.
    State moves Idle -> Connecting -> Sweeping -> Stopped | Completed; a
    connection failure goes straight to Completed with ``error`` set.
    """

    VALID_CHANNELS = (1, 2)

    def __init__(self, oscilloscope, generator, config: Optional[SweepConfig] = None,
                 status: Optional[Callable[[str], None]] = None):
        self.oscilloscope = oscilloscope
        self.generator = generator
        self.config = config or SweepConfig()
        self.status = status
        self.stats = ParamStats()
        self.state = SweepState.IDLE
        self.error: Optional[str] = None
        self.log: List[str] = []
        self._stop_requested = threading.Event()
        self._started: Optional[float] = None
        self._finished: Optional[float] = None

    # ==========================================
    # CONTROL
    # ==========================================

    def stop(self):
        """Ask a running sweep to stop before its next step.

        Instruments are left as they are and stay connected. Calling this
        while idle or finished has no effect on later runs.
        """
        if self.state in (SweepState.CONNECTING, SweepState.SWEEPING):
            self._stop_requested.set()
            self._report("Test stopped by user.")

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    @property
    def running(self) -> bool:
        return self.state in (SweepState.CONNECTING, SweepState.SWEEPING)

    @property
    def elapsed(self) -> float:
        """Seconds since the run started (frozen once it ends)."""
        if self._started is None:
            return 0.0
        end = self._finished if self._finished is not None else time.monotonic()
        return end - self._started

    def _report(self, message: str):
        line = f"[{datetime.now():%H:%M:%S}] {message}"
        self.log.append(line)
        if self.status is not None:
            self.status(line)

    def _score(self, shape, parameter, expected, actual) -> bool:
        passed = tolerance_check(expected, actual, self.config.tolerance_pct)
        self.stats.record(shape, parameter, passed)
        return passed

    def _finish(self, state: SweepState, report=None) -> SweepResult:
        self.state = state
        self._finished = time.monotonic()
        logger.info("Sweep finished: {} after {:.1f}s", state.value, self.elapsed)
        return SweepResult(
            state=state,
            stats=self.stats.snapshot(),
            elapsed=self.elapsed,
            error=self.error,
            report=report or [],
        )

    # ==========================================
    # RUN
    # ==========================================

    async def run(self, channel: int = 1) -> SweepResult:
        """Run the full sweep on one channel pair.

        Raises:
            ArgumentError: Invalid channel, or a sweep is already running.
        """
        if channel not in self.VALID_CHANNELS:
            raise ArgumentError(f"Invalid channel {channel}. Use 1 or 2.")
        if self.running:
            raise ArgumentError("A sweep is already running.")

        self._stop_requested.clear()
        self.error = None
        self.log = []
        self._started = time.monotonic()
        self._finished = None
        self.stats.reset(())

        self.state = SweepState.CONNECTING
        try:
            return await self._run(channel)
        except asyncio.CancelledError:
            self._report("Test cancelled.")
            self._finish(SweepState.STOPPED)
            raise

    async def _run(self, channel) -> SweepResult:
        if not await self._ensure_connected():
            return self._finish(SweepState.COMPLETED)

        self.stats.reset(self.config.stat_keys())
        self.state = SweepState.SWEEPING
        self._report(
            f"Starting CH{channel} waveform generator test with ±{self.config.tolerance_pct:g}% margin..."
        )

        for shape in self.config.shapes:
            if not await self._sweep_shape(channel, shape):
                return self._finish(SweepState.STOPPED)

        report = self.summary()
        for line in report:
            self._report(line)
        return self._finish(SweepState.COMPLETED, report)

    async def _ensure_connected(self) -> bool:
        for name, device in (("oscilloscope", self.oscilloscope), ("function generator", self.generator)):
            if device.is_connected:
                continue
            self._report(f"Not connected to {name}. Attempting to connect...")
            try:
                await device.connect()
            except Exception as e:
                logger.error("Failed to connect to {}: {}", name, e)
                self.error = f"Failed to connect to {name}: {e}"
                self._report(self.error)
                return False
            self._report(f"{name.capitalize()} connected successfully.")
        return True

    async def _sweep_shape(self, channel, shape) -> bool:
        """Sweep one shape over all frequencies and amplitudes.

        Returns False if the sweep was stopped.
        """
        self._report(f"==== Testing {shape} on CH{channel} ====")
        for frequency in self.config.frequencies:
            for amplitude in self.config.amplitudes:
                if self.stop_requested:
                    return False
                try:
                    await self._measure_combination(channel, shape, frequency, amplitude)
                except Exception as e:
                    logger.exception("Sweep step failed")
                    self._report(
                        f"Exception while testing {shape} on CH{channel}, "
                        f"freq={frequency:g}, amp={amplitude:g}: {e} FAIL"
                    )
                    continue

                if shape == "SQU":
                    for duty in self.config.duty_cycles:
                        if self.stop_requested:
                            return False
                        await self._guarded(self._measure_duty, channel, shape, frequency, duty)
                elif shape == "PULS":
                    for width_us in self.config.pulse_widths_us:
                        if self.stop_requested:
                            return False
                        await self._guarded(self._measure_pulse_width, channel, shape, frequency, width_us)
        self._report(f"==== Done with {shape} on CH{channel} ====")
        return True

    async def _guarded(self, step, channel, shape, frequency, value):
        try:
            await step(channel, shape, frequency, value)
        except Exception as e:
            logger.exception("Sweep step failed")
            self._report(
                f"Exception while testing {shape} on CH{channel}, freq={frequency:g}, "
                f"value={value:g}: {e} FAIL"
            )

    # ==========================================
    # STEPS
    # ==========================================

    async def _measure_combination(self, channel, shape, frequency, amplitude):
        """Apply one (shape, frequency, amplitude) point and score freq/amp."""
        cfg = self.config
        gen, scope = self.generator, self.oscilloscope

        await gen.set_waveform(channel, shape)
        await gen.set_frequency(channel, frequency)
        await gen.set_amplitude(channel, amplitude)
        await gen.enable_output(channel, True)
        await asyncio.sleep(cfg.generator_settle)

        expected_vpp = amplitude * cfg.vpp_factor
        # ten divisions per period; signal over ~6 of the 8 vertical divisions
        time_scale = 1.0 / (10.0 * frequency)
        volt_scale = expected_vpp * 1.2 / 6.0
        await scope.set_timebase_scale(time_scale)
        await scope.set_vertical_scale(channel, volt_scale)
        self._report(
            f"DEBUG: Time Scale set to {time_scale:.6f}s/div, "
            f"Voltage Scale set to {volt_scale:.6f}V/div on CH{channel}"
        )
        await asyncio.sleep(cfg.scope_settle)

        measured_freq = await measure_with_retry(
            lambda: scope.measure_frequency(channel), cfg.retries, cfg.retry_delay
        )
        measured_amp = await scope.measure_amplitude(channel)

        freq_pass = self._score(shape, PARAM_FREQ, frequency, measured_freq)
        amp_pass = self._score(shape, PARAM_AMP, expected_vpp, measured_amp)
        self._report(
            f"Wave={shape}, Freq={frequency:g} Hz, Amp={amplitude:g} V => "
            f"MeasFreq={measured_freq:.2f} Hz {'PASS' if freq_pass else 'FAIL'}, "
            f"MeasAmplitude={measured_amp:.2f} V {'PASS' if amp_pass else 'FAIL'}"
        )

    async def _measure_duty(self, channel, shape, frequency, duty):
        await self.generator.set_square_duty_cycle(channel, duty)
        await asyncio.sleep(self.config.duty_settle)
        measured = await self.oscilloscope.measure_duty_cycle(channel)
        passed = self._score(shape, PARAM_DUTY, duty, measured)
        self._report(
            f"Wave={shape}, Freq={frequency:g} Hz, SetDuty={duty:.2f}%, "
            f"MeasDuty={measured:.2f}% {'PASS' if passed else 'FAIL'}"
        )

    async def _measure_pulse_width(self, channel, shape, frequency, width_us):
        period = 1.0 / frequency
        width = min(width_us * 1e-6, period * self.config.max_pulse_duty)
        await self.generator.set_pulse_width(channel, width)
        await asyncio.sleep(self.config.pulse_settle)

        measured_duty = await self.oscilloscope.measure_duty_cycle(channel)
        expected_us = width * 1e6
        measured_us = measured_duty / 100.0 * period * 1e6
        passed = self._score(shape, PARAM_PULSE_WIDTH, expected_us, measured_us)
        self._report(
            f"Wave={shape}, Freq={frequency:g} Hz, SetPulseWidth={expected_us:.2f} us => "
            f"{measured_us:.2f} us {'PASS' if passed else 'FAIL'}"
        )

    # ==========================================
    # REPORTING
    # ==========================================

    def summary(self) -> List[str]:
        """Per-shape pass rates and total test time."""
        lines = []
        for shape, counters in self.stats.by_shape().items():
            lines.append(f"{shape} WAVE Results:")
            for parameter, counter in counters.items():
                label = PARAM_LABELS.get(parameter, parameter)
                lines.append(
                    f"   {label}: {counter.passed}/{counter.total} ({counter.pass_rate:.1f}% success)"
                )
        lines.append(f"Total Test Time: {format_elapsed(self.elapsed)}")
        return lines
