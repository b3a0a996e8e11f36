"""Configuration module."""

from handoff_hub.config.settings import (
    APISettings,
    HandoffSettings,
    RealtimeSettings,
    Settings,
    get_settings,
)

__all__ = [
    "APISettings",
    "HandoffSettings",
    "RealtimeSettings",
    "Settings",
    "get_settings",
]
