"""High-level desk controller.

Ties a ``SerialSession`` to the command table and the frame decoder:
single-shot commands, the repeating send that keeps the desk moving, the
wake-up command after connecting, and height telemetry published as events.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .errors import DeskError, NotConnectedError
from .models.events import (
    ConnectionChanged,
    DeskEvent,
    ErrorOccurred,
    EventBus,
    HeightChanged,
    StatusChanged,
)
from .protocol.commands import (
    COMMAND_LABELS,
    PRESET_COMMANDS,
    Command,
    encode,
    resolve_command,
)
from .protocol.parser import FrameDecoder
from .transport.serial_connection import SerialSession

logger = logging.getLogger(__name__)

# The control box drops or garbles frames sent faster than this
COMMAND_INTERVAL_S = 0.108
WAKE_UP_DELAY_S = 0.5
FLUSH_TIMEOUT_S = 0.05


class DeskController:
    """Drives one desk over one serial session.

    Usage::

        desk = DeskController(SerialSession(SerialConfig("/dev/ttyUSB0")))
        desk.events.subscribe(print)
        await desk.connect()
        await desk.start_continuous(Command.UP)
        await asyncio.sleep(2)
        await desk.stop_continuous()
        await desk.disconnect()
    """

    def __init__(
        self,
        session: SerialSession,
        events: EventBus | None = None,
        *,
        reassemble: bool = False,
    ) -> None:
        self.session = session
        self.events = events or EventBus()
        self.decoder = FrameDecoder(reassemble=reassemble)

        self._job: asyncio.Task | None = None
        self._job_command: Command | None = None
        self._read_task: asyncio.Task | None = None
        self._wake_task: asyncio.Task | None = None
        # Held across cancel, first send and job creation
        self._motion_lock = asyncio.Lock()
        self._flushing = False
        self._last_height: float | None = None

    @property
    def is_connected(self) -> bool:
        return self.session.is_open

    @property
    def is_moving(self) -> bool:
        return self._job is not None

    @property
    def active_command(self) -> Command | None:
        return self._job_command

    @property
    def last_height(self) -> float | None:
        return self._last_height

    def status(self) -> dict[str, Any]:
        return {
            "connected": self.is_connected,
            "moving": self.is_moving,
            "command": self._job_command.value if self._job_command else None,
            "height_cm": self._last_height,
        }

    def _publish(self, event: DeskEvent) -> None:
        if isinstance(event, HeightChanged):
            self._last_height = event.height_cm
        self.events.publish(event)

    def _error(self, message: str) -> None:
        logger.error(message)
        self._publish(ErrorOccurred(message))

    # ─── CONNECTION ───────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the session, start reading, and schedule the wake-up command.

        Connect-time errors are published and re-raised, never retried.
        """
        try:
            await self.session.open()
        except DeskError as e:
            self._error(str(e))
            raise

        self.decoder.reset()
        self._last_height = None
        self._read_task = asyncio.create_task(self._read_loop())
        self._publish(ConnectionChanged(True))
        self._publish(StatusChanged(f"Connected to desk on {self.session.config.port}"))
        self._wake_task = asyncio.create_task(self._wake_up_later())

    async def _wake_up_later(self) -> None:
        # The control box only broadcasts height while its display is on
        await asyncio.sleep(WAKE_UP_DELAY_S)
        try:
            await self.send(Command.WAKE_UP)
            logger.info("Wake-up command sent")
        except DeskError as e:
            logger.warning("Wake-up command failed: %s", e)

    async def disconnect(self) -> None:
        """Stop motion and close the session. Always ends disconnected."""
        async with self._motion_lock:
            await self._cancel_job()
        await _cancel(self._wake_task)
        self._wake_task = None

        try:
            await self.session.close()
        except Exception as e:
            self._error(f"Disconnect error: {e}")

        await _cancel(self._read_task)
        self._read_task = None
        self.decoder.reset()
        self._publish(ConnectionChanged(False))
        self._publish(StatusChanged("Disconnected from desk"))

    async def _read_loop(self) -> None:
        try:
            async for chunk in self.session.read_stream():
                if self._flushing:
                    logger.debug("Discarded %d bytes during flush", len(chunk))
                    continue
                for event in self.decoder.feed(chunk):
                    self._publish(event)
        except Exception as e:
            self._error(f"Receive error: {e}")
            return

        if self.session.is_open:
            # Stream ended without a disconnect request
            cause = self.session.read_error
            if cause is not None:
                self._error(f"Receive error: {cause}")
            else:
                self._error("Receive stream ended unexpectedly")

    # ─── COMMANDS ─────────────────────────────────────────────────────

    def _resolve(self, command: Command | str) -> Command:
        try:
            return resolve_command(command)
        except DeskError as e:
            self._error(str(e))
            raise

    async def send(self, command: Command | str) -> None:
        """Send one command frame.

        Raises:
            NotConnectedError: If the session is not connected.
            UnknownCommandError: If the command is not in the table.
            DeskIOError: If the write fails. Not retried.
        """
        try:
            if not self.session.is_open:
                raise NotConnectedError("Not connected to the desk")
            cmd = resolve_command(command)
            await self.session.write(encode(cmd))
        except DeskError as e:
            name = command.value if isinstance(command, Command) else command
            self._error(f"Failed to send {name}: {e}")
            raise
        logger.debug("Command sent: %s", cmd.value)

    async def send_preset(self, command: Command | str) -> None:
        """Send a preset or sitting/standing command."""
        cmd = self._resolve(command)
        if cmd not in PRESET_COMMANDS:
            raise ValueError(
                f"{cmd.value} is not a preset. "
                f"Valid: {sorted(c.value for c in PRESET_COMMANDS)}"
            )
        await self.send(cmd)
        self._publish(StatusChanged(f"Moving to {COMMAND_LABELS[cmd]} position..."))

    # ─── CONTINUOUS MOTION ────────────────────────────────────────────

    async def start_continuous(self, command: Command | str) -> None:
        """Send ``command`` now and then every ``COMMAND_INTERVAL_S`` seconds.

        Any running job is stopped first, so at most one job exists. Starts
        and stops are serialized: a stop issued while the first send is in
        flight waits for the job and then cancels it. If the first send
        fails the job is never started.
        """
        cmd = self._resolve(command)
        async with self._motion_lock:
            await self._cancel_job()

            started = asyncio.get_running_loop().time()
            try:
                await self.send(cmd)
            except DeskError:
                return

            self._job_command = cmd
            self._job = asyncio.create_task(self._repeat(cmd, started))
            self._publish(StatusChanged(f"Moving desk {COMMAND_LABELS[cmd]}..."))

    async def _repeat(self, cmd: Command, started: float) -> None:
        # Fixed rate: sends are due at started + n * interval, whatever the
        # write latency. Ticks missed while a write was slow are dropped.
        loop = asyncio.get_running_loop()
        next_send = started
        try:
            while True:
                next_send += COMMAND_INTERVAL_S
                now = loop.time()
                if next_send < now:
                    next_send = now
                await asyncio.sleep(next_send - now)
                await self.send(cmd)
        except DeskError as e:
            logger.warning("Continuous %s stopped: %s", cmd.value, e)
            if self._job is asyncio.current_task():
                self._job = None
                self._job_command = None
                self._publish(StatusChanged("Desk movement stopped"))

    async def _cancel_job(self) -> bool:
        job, self._job = self._job, None
        self._job_command = None
        if job is None:
            return False
        await _cancel(job)
        return True

    async def stop_continuous(self) -> None:
        """Stop the repeating send and flush stale telemetry. Idempotent."""
        async with self._motion_lock:
            # Anything received from here on predates the stop
            self._flushing = True
            try:
                if await self._cancel_job():
                    self._publish(StatusChanged("Desk movement stopped"))
                await self.clear_receive_buffer()
            finally:
                self._flushing = False

    async def clear_receive_buffer(self) -> int:
        """Discard telemetry queued while the desk was moving.

        Gives up after ``FLUSH_TIMEOUT_S`` seconds in total, or as soon as no
        chunk arrives within the remaining time.

        Returns:
            Number of discarded bytes.
        """
        if not self.session.is_open:
            return 0

        loop = asyncio.get_running_loop()
        deadline = loop.time() + FLUSH_TIMEOUT_S
        discarded = 0
        self._flushing = True
        try:
            while self.session.is_open:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    chunk = await asyncio.wait_for(self.session.receive(), remaining)
                except asyncio.TimeoutError:
                    break
                if not chunk:
                    break
                discarded += len(chunk)
        finally:
            self._flushing = False
            self.decoder.reset()

        if discarded:
            logger.debug("Flushed %d bytes of stale telemetry", discarded)
        return discarded


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
