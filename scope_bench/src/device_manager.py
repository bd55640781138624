import asyncio

import pyvisa
from loguru import logger

from .errors import ArgumentError, InstrumentConnectionError

# Display capture used by read_binary_block(); the scope answers with an
# IEEE 488.2 definite-length block (#<n><length><payload>).
SCREEN_CAPTURE_COMMAND = ":DISPlay:DATA? PNG"


class DeviceManager:
    """
    Message-based instrument session over PyVISA.

    Owns at most one open resource. Every call re-applies the operation
    timeout and holds a lock for the full write/read exchange, so queries
    issued from concurrent tasks never interleave on the bus.
    """

    def __init__(self, resource_name, timeout_ms: int = 5000, resource_manager=None):
        if not resource_name:
            raise ArgumentError("VISA address cannot be empty.")
        self.resource_name = resource_name
        self.timeout_ms = timeout_ms
        self.rm = resource_manager
        self.instrument = None
        self._lock = asyncio.Lock()

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        self.dispose()

    @property
    def is_connected(self) -> bool:
        return self.instrument is not None

    async def connect(self):
        """Opens the session and runs the *RST / *CLS handshake.

        Raises:
            InstrumentConnectionError: If the resource cannot be opened or
                does not answer the handshake.
        """
        if self.is_connected:
            return
        try:
            await asyncio.to_thread(self._open)
        except (pyvisa.Error, OSError, ValueError) as e:
            logger.error("Failed to connect to {}: {}", self.resource_name, e)
            self.dispose()
            raise InstrumentConnectionError(
                f"Failed to connect to {self.resource_name}: {e}"
            ) from e
        logger.info("Connected to {}", self.resource_name)

    def _open(self):
        if self.rm is None:
            self.rm = pyvisa.ResourceManager()
        instrument = self.rm.open_resource(self.resource_name)
        self.instrument = instrument
        instrument.timeout = self.timeout_ms
        instrument.read_termination = "\n"
        # USB-TMC/GPIB frame messages themselves (EOI/EOM).
        instrument.write_termination = ""
        instrument.write("*RST")
        instrument.write("*CLS")

    def dispose(self):
        """Closes the session. Safe to call repeatedly and from any state."""
        instrument, self.instrument = self.instrument, None
        if instrument is None:
            return
        try:
            instrument.close()
        except (pyvisa.Error, OSError) as e:
            logger.warning("Error during session cleanup for {}: {}", self.resource_name, e)
        else:
            logger.info("Disconnected from {}", self.resource_name)

    def _require_connection(self):
        if self.instrument is None:
            raise InstrumentConnectionError("Instrument not connected.")
        self.instrument.timeout = self.timeout_ms
        return self.instrument

    @staticmethod
    def _check_command(command):
        if not command:
            raise ArgumentError("Command cannot be empty.")

    async def write(self, command: str):
        """Sends a command without waiting for a response."""
        self._check_command(command)
        async with self._lock:
            instrument = self._require_connection()
            await self._call(instrument.write, command, action=f"write command '{command}'")
        logger.debug("Sent command: {}", command)

    async def read(self) -> str:
        """Reads one pending text response."""
        async with self._lock:
            instrument = self._require_connection()
            response = await self._read(instrument.read, action="read response")
        return response.strip()

    async def query(self, command: str) -> str:
        """Sends a command and returns its single-line response."""
        self._check_command(command)
        async with self._lock:
            instrument = self._require_connection()
            await self._call(instrument.write, command, action=f"execute query '{command}'")
            response = await self._read(instrument.read, action=f"execute query '{command}'")
        logger.debug("Query {} -> {}", command, response.strip())
        return response.strip()

    async def read_binary_block(self) -> bytes:
        """Requests a display capture and returns the raw block payload."""
        async with self._lock:
            instrument = self._require_connection()
            await self._call(
                instrument.write, SCREEN_CAPTURE_COMMAND, action="request display data"
            )
            data = await self._read(
                instrument.read_binary_values,
                datatype="B",
                container=bytes,
                action="read binary data",
            )
        logger.debug("Read binary block ({} bytes)", len(data))
        return data

    async def verify_connection(self) -> bool:
        """Checks the session with *IDN?; closes it if the instrument is gone."""
        if not self.is_connected:
            return False
        try:
            idn = await self.query("*IDN?")
        except InstrumentConnectionError:
            self.dispose()
            return False
        logger.info("Connection verified. Device ID: {}", idn)
        return True

    async def _read(self, func, *args, action, **kwargs):
        """Like _call, but a failed read is followed by a device clear.

        The clear discards any reply still in flight, so it can never be
        returned to the next query. If the clear fails too, the session is
        closed.
        """
        try:
            return await self._call(func, *args, action=action, **kwargs)
        except InstrumentConnectionError:
            instrument = self.instrument
            try:
                await asyncio.to_thread(instrument.clear)
            except (pyvisa.Error, OSError) as e:
                logger.warning("Device clear failed on {}: {}", self.resource_name, e)
                self.dispose()
            else:
                logger.info("Cleared {} after failed read", self.resource_name)
            raise

    async def _call(self, func, *args, action, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except (pyvisa.Error, OSError) as e:
            raise InstrumentConnectionError(f"Failed to {action}: {e}") from e
