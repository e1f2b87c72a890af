"""Serial control and height telemetry for FlexiSpot / Loctek standing desks."""

__version__ = "0.1.0"
