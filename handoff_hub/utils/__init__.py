"""Shared utilities."""

from handoff_hub.utils.clock import utcnow
from handoff_hub.utils.locks import KeyedLock

__all__ = ["KeyedLock", "utcnow"]
