"""Serial connection to the desk control box.

The control box talks 9600 baud, 8 data bits, no parity, 1 stop bit over a
UART (usually an RJ45-to-USB serial adapter). The port is driven through
pyserial; blocking reads and writes run in worker threads so the asyncio
loop stays free.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable

from ..errors import (
    CapabilityUnavailableError,
    DeskIOError,
    DeviceError,
    InsecureContextError,
    NotConnectedError,
)

try:
    import serial
    import serial.tools.list_ports
except ImportError:  # pyserial has no backend for this platform
    serial = None

logger = logging.getLogger(__name__)

BAUD_RATE = 9600
DATA_BITS = 8
STOP_BITS = 1
PARITY = "N"
READ_TIMEOUT_S = 0.1
READ_CHUNK_SIZE = 64
DISCONNECT_GRACE_S = 0.1

# URL schemes that carry the serial stream over plain TCP
INSECURE_URL_SCHEMES = ("socket://", "rfc2217://")


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


@dataclass
class SerialConfig:
    """Per-session settings.

    ``port`` is a device name (``/dev/ttyUSB0``, ``COM3``) or any URL
    pyserial's ``serial_for_url`` understands.
    """

    port: str
    read_timeout: float = READ_TIMEOUT_S
    disconnect_grace: float = DISCONNECT_GRACE_S
    require_secure_context: bool = True


def is_supported() -> bool:
    """True when pyserial has a backend for this host."""
    return serial is not None


def is_secure_port(port: str) -> bool:
    """True unless the port is reached over an unencrypted network link."""
    return not port.lower().startswith(INSECURE_URL_SCHEMES)


def enumerate_ports() -> list[tuple[str, str]]:
    """List available serial ports as ``(device, description)`` pairs.

    Raises:
        CapabilityUnavailableError: If the host has no serial support.
    """
    if serial is None:
        raise CapabilityUnavailableError("Serial ports are not supported on this host")
    ports = [
        (info.device, info.description)
        for info in serial.tools.list_ports.comports()
    ]
    ports.sort(key=lambda p: p[0])
    return ports


def _open_port(config: SerialConfig) -> Any:
    return serial.serial_for_url(
        config.port,
        baudrate=BAUD_RATE,
        bytesize=DATA_BITS,
        parity=PARITY,
        stopbits=STOP_BITS,
        timeout=config.read_timeout,
    )


class SerialSession:
    """One open serial connection and its inbound byte stream.

    Usage::

        session = SerialSession(SerialConfig("/dev/ttyUSB0"))
        await session.open()
        await session.write(frame)
        async for chunk in session.read_stream():
            ...
        await session.close()

    ``port_factory`` builds the underlying port object from the config and
    defaults to pyserial's ``serial_for_url``. When the port fails while
    connected, the read stream ends and ``read_error`` holds the exception.
    """

    def __init__(
        self,
        config: SerialConfig,
        port_factory: Callable[[SerialConfig], Any] | None = None,
    ) -> None:
        self.config = config
        self._port_factory = port_factory or _open_port
        self._port: Any = None
        self._state = SessionState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._pump_task: asyncio.Task | None = None
        self._stream_taken = False
        self.read_error: Exception | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is SessionState.CONNECTED

    async def open(self) -> None:
        """Open the port and start receiving.

        Raises:
            CapabilityUnavailableError: If the host has no serial support.
            InsecureContextError: If the port is a plaintext network URL and
                the config requires a secure context.
            DeviceError: If the device cannot be opened.
        """
        async with self._lock:
            if self._state is SessionState.CONNECTED:
                return
            if self._port_factory is _open_port and serial is None:
                raise CapabilityUnavailableError(
                    "Serial ports are not supported on this host"
                )
            if self.config.require_secure_context and not is_secure_port(self.config.port):
                raise InsecureContextError(
                    f"Refusing to open {self.config.port} over an unencrypted "
                    f"network link"
                )

            self._state = SessionState.CONNECTING
            logger.info("Opening %s at %d baud", self.config.port, BAUD_RATE)
            try:
                self._port = await asyncio.to_thread(self._port_factory, self.config)
            except Exception as e:
                self._state = SessionState.DISCONNECTED
                self._port = None
                raise DeviceError(
                    f"Could not open {self.config.port}. Ensure the desk is "
                    f"connected and you have permissions. Last error: {e}"
                ) from e

            self._queue = asyncio.Queue()
            self._stream_taken = False
            self.read_error = None
            self._state = SessionState.CONNECTED
            self._pump_task = asyncio.create_task(self._pump())
            logger.info("Connected to %s", self.config.port)

    async def write(self, data: bytes) -> None:
        """Write all of ``data`` to the port.

        Raises:
            NotConnectedError: If the session is not connected.
            DeskIOError: If the write fails or is short.
        """
        if self._state is not SessionState.CONNECTED:
            raise NotConnectedError("Not connected to the desk")

        try:
            written = await asyncio.to_thread(self._port.write, data)
        except Exception as e:
            raise DeskIOError(f"Write failed: {e}") from e
        if written is not None and written != len(data):
            raise DeskIOError(f"Short write: {written} of {len(data)} bytes")
        logger.debug("TX %s", data.hex(" "))

    def _read_chunk(self) -> bytes:
        # Blocks for at most read_timeout; returns b"" when nothing arrived
        waiting = self._port.in_waiting
        return self._port.read(waiting or READ_CHUNK_SIZE)

    async def _pump(self) -> None:
        try:
            while self._state is SessionState.CONNECTED:
                chunk = await asyncio.to_thread(self._read_chunk)
                if chunk:
                    logger.debug("RX %s", chunk.hex(" "))
                    self._queue.put_nowait(bytes(chunk))
        except Exception as e:
            if self._state is SessionState.CONNECTED:
                self.read_error = e
                logger.warning("Read from %s failed: %s", self.config.port, e)
            else:
                logger.debug("Read ended during teardown: %s", e)
        finally:
            self._queue.put_nowait(None)

    async def receive(self) -> bytes | None:
        """Next received chunk, or ``None`` once the stream has ended."""
        chunk = await self._queue.get()
        if chunk is None:
            # Leave the end marker for any other consumer
            self._queue.put_nowait(None)
        return chunk

    async def read_stream(self) -> AsyncIterator[bytes]:
        """Yield received chunks in arrival order until the session closes.

        The stream can be consumed once per connection.
        """
        if self._stream_taken:
            raise RuntimeError("read_stream() is not restartable")
        self._stream_taken = True
        while True:
            chunk = await self.receive()
            if chunk is None:
                return
            yield chunk

    async def close(self) -> None:
        """Close the connection. Always ends in ``DISCONNECTED``.

        Teardown steps that fail (the read may already be cancelled, the port
        already gone) are logged and skipped.
        """
        async with self._lock:
            if self._state is SessionState.DISCONNECTED:
                return

            self._state = SessionState.DISCONNECTING
            await asyncio.sleep(self.config.disconnect_grace)

            port = self._port
            if port is not None:
                for step, action in (
                    ("cancel read", "cancel_read"),
                    ("release writer", "cancel_write"),
                    ("close port", "close"),
                ):
                    try:
                        getattr(port, action)()
                    except Exception as e:
                        logger.debug("%s failed (ignored): %s", step, e)

            if self._pump_task is not None:
                try:
                    await asyncio.wait_for(self._pump_task, self.config.read_timeout * 5)
                except Exception as e:
                    logger.debug("Read pump did not stop cleanly: %s", e)
                self._pump_task = None

            self._port = None
            self._state = SessionState.DISCONNECTED
            logger.info("Disconnected from %s", self.config.port)
