import inspect
from typing import Any, Callable, Optional

from loguru import logger


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def notify(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Invoke a sync or async callback, logging anything it raises"""
    if callback is None:
        return
    try:
        await maybe_await(callback(*args))
    except Exception:
        logger.exception(f"Callback {getattr(callback, '__name__', callback)!r} raised")
