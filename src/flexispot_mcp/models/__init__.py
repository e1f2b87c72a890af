"""Data models for controller events."""

from .events import (
    ConnectionChanged,
    DeskEvent,
    ErrorOccurred,
    EventBus,
    HeightChanged,
    StatusChanged,
)
