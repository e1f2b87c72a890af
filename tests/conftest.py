"""Shared test helpers: an in-memory stand-in for a pyserial port."""

from __future__ import annotations

import queue
import time

import pytest


class FakePort:
    """Minimal pyserial-like port.

    ``feed()`` queues bytes for ``read()``; ``written`` collects every write.
    Teardown calls raise when ``fail_teardown`` is set. ``write_delay``
    makes every write block, and ``write_times`` records when each started.
    """

    def __init__(self, fail_teardown: bool = False) -> None:
        self.written: list[bytes] = []
        self.fail_write = False
        self.short_write = False
        self.write_delay = 0.0
        self.write_times: list[float] = []
        self.read_error: Exception | None = None
        self.fail_teardown = fail_teardown
        self.calls: list[str] = []
        self._incoming: queue.Queue[bytes] = queue.Queue()

    @property
    def in_waiting(self) -> int:
        return 0

    def feed(self, data: bytes) -> None:
        self._incoming.put(bytes(data))

    def read(self, size: int) -> bytes:
        if self.read_error is not None:
            raise self.read_error
        try:
            return self._incoming.get(timeout=0.01)
        except queue.Empty:
            return b""

    def write(self, data: bytes) -> int:
        self.write_times.append(time.monotonic())
        if self.write_delay:
            time.sleep(self.write_delay)
        if self.fail_write:
            raise OSError("write failed")
        self.written.append(bytes(data))
        return len(data) - 1 if self.short_write else len(data)

    def _teardown(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_teardown:
            raise OSError(f"{name} failed")

    def cancel_read(self) -> None:
        self._teardown("cancel_read")

    def cancel_write(self) -> None:
        self._teardown("cancel_write")

    def close(self) -> None:
        self._teardown("close")


@pytest.fixture
def fake_port() -> FakePort:
    return FakePort()
