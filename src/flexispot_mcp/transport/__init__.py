"""Transport layer: the serial connection to the control box."""

from .serial_connection import SerialConfig, SerialSession, SessionState
