"""Helpers for invoking host callbacks that may be sync or async."""

import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger("bundlenudge.callbacks")


async def invoke_callback(callback: Optional[Callable[..., Any]], *args: Any) -> Any:
    """Call a host hook and await its result when it returns an awaitable."""
    if callback is None:
        return None
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def invoke_callback_safely(
    callback: Optional[Callable[..., Any]], *args: Any
) -> None:
    """Call a host hook, logging instead of raising on failure.

    Used for notification-only hooks whose failure must not interrupt
    a state transition.
    """
    try:
        await invoke_callback(callback, *args)
    except Exception as e:
        name = getattr(callback, "__name__", repr(callback))
        logger.error(f"Host callback {name} raised: {e}", exc_info=True)
