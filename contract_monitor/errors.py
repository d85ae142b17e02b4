"""
Error taxonomy for the monitor.

Every error here is contained where it happens: per instrument, per
window or per channel. None of them is allowed to abort a cycle.
"""

from typing import Optional


class MonitorError(Exception):
    """Base class for monitor errors."""


class TransientFetchError(MonitorError):
    """A single instrument fetch failed or timed out."""

    def __init__(self, message: str, instrument: Optional[str] = None, metric: Optional[str] = None):
        super().__init__(message)
        self.instrument = instrument
        self.metric = metric


class DataAbsentError(MonitorError):
    """A lagged window has not been populated yet (warm-up)."""

    def __init__(self, window: str):
        super().__init__(f"window {window!r} has not rolled yet")
        self.window = window


class DispatchError(MonitorError):
    """A notification sink failed to deliver."""

    def __init__(self, message: str, channel: Optional[str] = None):
        super().__init__(message)
        self.channel = channel


class ConfigurationError(MonitorError):
    """Configuration is structurally invalid."""
