"""
Bench: one oscilloscope plus one function generator, and the sweep that
ties them together.

This is the surface a front end talks to. It never renders anything
itself; status lines go to the sink given at construction
(ColorPrinter.status by default).
"""

import asyncio
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from loguru import logger

from .errors import ArgumentError, InstrumentConnectionError
from .keysight_33500b import DEFAULT_GENERATOR_ADDRESS, Keysight_33500B
from .keysight_msox3104t import DEFAULT_SCOPE_ADDRESS, Keysight_MSOX3104T
from .sweep import ParamCounter, SweepConfig, SweepResult, WaveformSweep
from .terminal import ColorPrinter


class Bench:
    def __init__(self, oscilloscope=None, generator=None, config: Optional[SweepConfig] = None,
                 status: Optional[Callable[[str], None]] = None):
        """
        Args:
            oscilloscope: Scope controller; built on first connect if None.
            generator: Generator controller; built on first connect if None.
            config: Sweep settings used by start_sweep().
            status: Callable receiving timestamped status lines.
        """
        self.oscilloscope = oscilloscope
        self.generator = generator
        self.status = status or ColorPrinter.status
        self.sweep = WaveformSweep(oscilloscope, generator, config, status=self.status)
        self._task: Optional[asyncio.Task] = None

    def _report(self, message):
        self.status(f"[{datetime.now():%H:%M:%S}] {message}")

    def _attach(self):
        self.sweep.oscilloscope = self.oscilloscope
        self.sweep.generator = self.generator

    # ==========================================
    # CONNECTION
    # ==========================================

    async def connect_oscilloscope(self, address: Optional[str] = None):
        """Connect the scope, replacing the controller if a new address is given.

        Raises:
            InstrumentConnectionError: Reported to the status sink, then re-raised.
        """
        if self.oscilloscope is None or address:
            if self.oscilloscope is not None:
                self.oscilloscope.dispose()
            self.oscilloscope = Keysight_MSOX3104T(address or DEFAULT_SCOPE_ADDRESS)
            self._attach()
        try:
            await self.oscilloscope.connect()
        except InstrumentConnectionError as e:
            self._report(f"Oscilloscope connection failed: {e}")
            raise
        idn = await self.oscilloscope.identify()
        self._report(f"Connected to oscilloscope: {idn}")
        return idn

    async def connect_function_generator(self, address: Optional[str] = None):
        """Connect the generator, replacing the controller if a new address is given.

        Raises:
            InstrumentConnectionError: Reported to the status sink, then re-raised.
        """
        if self.generator is None or address:
            if self.generator is not None:
                self.generator.dispose()
            self.generator = Keysight_33500B(address or DEFAULT_GENERATOR_ADDRESS)
            self._attach()
        try:
            await self.generator.connect()
        except InstrumentConnectionError as e:
            self._report(f"Function generator connection failed: {e}")
            raise
        idn = await self.generator.identify()
        self._report(f"Connected to function generator: {idn}")
        return idn

    async def disconnect(self):
        """Stop any sweep and close both instruments."""
        await self.stop_sweep(wait=True)
        for name, device in (("oscilloscope", self.oscilloscope), ("function generator", self.generator)):
            if device is None or not device.is_connected:
                continue
            try:
                await device.disconnect()
            except InstrumentConnectionError as e:
                logger.warning("Error while disconnecting {}: {}", name, e)
            self._report(f"Disconnected from {name}.")

    @property
    def connected(self) -> bool:
        return all(
            device is not None and device.is_connected
            for device in (self.oscilloscope, self.generator)
        )

    # ==========================================
    # SWEEP
    # ==========================================

    def start_sweep(self, channel: int = 1) -> "asyncio.Task[SweepResult]":
        """Schedule a sweep on the running loop and return its task.

        Raises:
            ArgumentError: Bad channel, missing controller, or a sweep is
                already running.
        """
        if channel not in WaveformSweep.VALID_CHANNELS:
            raise ArgumentError(f"Invalid channel {channel}. Use 1 or 2.")
        if self.oscilloscope is None or self.generator is None:
            raise ArgumentError("Both instruments must be configured before a sweep.")
        if self.sweep_running:
            raise ArgumentError("A sweep is already running.")
        self._attach()
        self._task = asyncio.create_task(self.sweep.run(channel))
        return self._task

    async def stop_sweep(self, wait: bool = False):
        """Request the running sweep to stop; optionally wait for it to exit."""
        if not self.sweep_running:
            return
        if not self.sweep.running:
            # scheduled but not started yet, so nothing has been sent
            self._task.cancel()
        else:
            self.sweep.stop()
        if wait:
            await asyncio.wait({self._task})

    @property
    def sweep_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def sweep_state(self):
        return self.sweep.state

    def stats_snapshot(self) -> Dict[Tuple[str, str], ParamCounter]:
        """Copy of the current (shape, parameter) counters."""
        return self.sweep.stats.snapshot()

    @property
    def elapsed(self) -> float:
        return self.sweep.elapsed
