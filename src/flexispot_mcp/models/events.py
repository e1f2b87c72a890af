"""Events published by the desk controller, and the bus that delivers them.

These dataclasses are the whole surface a front end consumes. Subscribers
never see the serial session or its handles.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionChanged:
    """The connection was opened (``True``) or closed (``False``)."""

    connected: bool


@dataclass(frozen=True)
class ErrorOccurred:
    """A human-readable error message."""

    message: str


@dataclass(frozen=True)
class StatusChanged:
    """A human-readable status line."""

    text: str


@dataclass(frozen=True)
class HeightChanged:
    """A desk height reading.

    ``in_range`` is ``False`` for readings outside 60-120 cm. Such readings
    are still delivered; the control box sends them right after wake-up.
    """

    height_cm: float
    in_range: bool = True


DeskEvent = Union[ConnectionChanged, ErrorOccurred, StatusChanged, HeightChanged]
Listener = Callable[[DeskEvent], None]


class EventBus:
    """Fan events out to subscribed listeners in subscription order.

    Usage::

        bus = EventBus()
        bus.subscribe(print)
        bus.publish(StatusChanged("ready"))
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Add a listener; returns a callable that removes it again."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def publish(self, event: DeskEvent) -> None:
        logger.debug("Event: %r", event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener %r failed on %r", listener, event)
