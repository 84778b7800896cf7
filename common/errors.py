"""
Exception types shared by the reference path, the accelerator backends and the dispatcher.
"""

from __future__ import annotations


class HistogramError(RuntimeError):
    """Runtime failure of a histogram computation (no valid results, inactive channel)."""


class ConfigurationError(ValueError):
    """Rejected configuration: bad geometry, bin count or option name."""


class DeviceError(HistogramError):
    """Accelerator unavailable, or a device step (upload, launch, readback) failed."""
