"""Configuration package for Stream Speculator.

Re-exports the settings symbols so that callers can write::

    from stream_speculator.config import get_settings
"""

from __future__ import annotations

from stream_speculator.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
