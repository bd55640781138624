"""
Raw SCPI-over-TCP session (the instrument's "socket" port, 5025).

Commands are newline terminated; each response is one newline terminated
line. The read/write timeout is fixed when the session is created.
"""

import asyncio

from loguru import logger

from .errors import ArgumentError, InstrumentConnectionError

DEFAULT_LAN_PORT = 5025


class LanManager:
    """Line-oriented SCPI client over an asyncio stream connection."""

    def __init__(self, host, port: int = DEFAULT_LAN_PORT, timeout: float = 3.0):
        if not host:
            raise ArgumentError("Instrument address cannot be empty.")
        self.host = host
        self.port = port
        self.timeout = timeout
        self._reader = None
        self._writer = None
        self._lock = asyncio.Lock()

    @property
    def resource_name(self):
        return f"{self.host}:{self.port}"

    @property
    def is_connected(self) -> bool:
        return self._writer is not None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        self.dispose()

    async def connect(self):
        """Opens the TCP connection.

        Raises:
            InstrumentConnectionError: On refusal or when the connect
                does not complete within the timeout.
        """
        if self.is_connected:
            return
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), self.timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            self.dispose()
            reason = str(e) or "timed out"
            raise InstrumentConnectionError(
                f"Could not connect to {self.resource_name}. {reason}"
            ) from e
        logger.info("Connected to {}", self.resource_name)

    def dispose(self):
        """Closes the connection. Safe to call repeatedly and from any state."""
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        try:
            writer.close()
        except (OSError, RuntimeError) as e:
            logger.warning("Error closing {}: {}", self.resource_name, e)
        else:
            logger.info("Disconnected from {}", self.resource_name)

    async def write(self, command: str):
        """Sends a command, appending the newline terminator if absent."""
        async with self._lock:
            await self._write(command)

    async def query(self, command: str) -> str:
        """Sends a command and returns the trimmed response line.

        If no complete line arrives in time the connection is closed;
        connect() again before the next command.
        """
        async with self._lock:
            await self._write(command)
            response = await self._read_line()
        logger.debug("Query {} -> {}", command.strip(), response)
        return response

    async def _write(self, command):
        if not command:
            raise ArgumentError("Command cannot be empty.")
        if not self.is_connected:
            raise InstrumentConnectionError("Not connected to instrument.")

        data = command if command.endswith("\n") else command + "\n"
        try:
            self._writer.write(data.encode("ascii"))
            await asyncio.wait_for(self._writer.drain(), self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise InstrumentConnectionError(
                f"Failed to write command '{command.strip()}': {str(e) or 'timed out'}"
            ) from e
        logger.debug("Sent command: {}", command.strip())

    async def _read_line(self) -> str:
        if not self.is_connected:
            raise InstrumentConnectionError("Stream is not open.")
        # Any read failure ends the session; a late reply must never be
        # read as the answer to the next query.
        try:
            line = await asyncio.wait_for(self._reader.readuntil(b"\n"), self.timeout)
        except asyncio.IncompleteReadError as e:
            self.dispose()
            raise InstrumentConnectionError("Socket closed unexpectedly.") from e
        except asyncio.TimeoutError as e:
            self.dispose()
            raise InstrumentConnectionError(
                f"No response from {self.resource_name} within {self.timeout}s"
            ) from e
        except OSError as e:
            self.dispose()
            raise InstrumentConnectionError(f"Failed to read response: {e}") from e
        return line.decode("ascii", errors="replace").strip()
