"""Single bounded retry around persistence calls."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from handoff_hub.core.errors import OrchestratorError, StoreError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    delay_seconds: float = 0.2,
) -> T:
    """Run a store call, retrying a StoreError once before surfacing OrchestratorError."""
    try:
        return await operation()
    except StoreError as exc:
        logger.warning("store_call_retrying", operation=description, error=str(exc))
    
    await asyncio.sleep(delay_seconds)
    
    try:
        return await operation()
    except StoreError as exc:
        logger.error("store_call_failed", operation=description, error=str(exc))
        raise OrchestratorError(f"Persistence failed for {description}: {exc}") from exc
