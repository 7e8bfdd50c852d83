from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


def advisory_write(label: str, fn: Callable[[], Any]) -> bool:
    """
    Run a best-effort persistence call. Failures are logged and reported as
    False; they never propagate to the caller.
    """
    try:
        fn()
        return True
    except Exception as e:
        logger.warning("[advisory] %s failed: %s", label, e)
        return False


async def advisory_write_async(label: str, fn: Callable[[], Awaitable[Any]]) -> bool:
    try:
        await fn()
        return True
    except Exception as e:
        logger.warning("[advisory] %s failed: %s", label, e)
        return False


def advisory_read(label: str, fn: Callable[[], Any], default: Any = None) -> Any:
    """Best-effort read: the default is returned when the tier errors."""
    try:
        return fn()
    except Exception as e:
        logger.warning("[advisory] %s read failed: %s", label, e)
        return default


async def advisory_read_async(label: str, fn: Callable[[], Awaitable[Any]], default: Any = None) -> Any:
    try:
        return await fn()
    except Exception as e:
        logger.warning("[advisory] %s read failed: %s", label, e)
        return default
