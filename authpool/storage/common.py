"""Helpers shared by the memory and postgres store adapters."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from authpool.storage.errors import ConstraintViolation, StoreUnavailable

T = TypeVar("T")


async def bounded_store_call(
    operation: str, func: Callable[..., T], *args: Any, timeout: float
) -> T:
    """Run a blocking store method off the event loop with a time budget.

    Constraint violations pass through unchanged; timeouts and every other
    backend failure surface as ``StoreUnavailable`` so callers can decide
    whether to fail closed or report an outage.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
    except ConstraintViolation:
        raise
    except asyncio.TimeoutError as exc:
        raise StoreUnavailable(operation, f"timed out after {timeout}s") from exc
    except Exception as exc:
        raise StoreUnavailable(operation, f"{type(exc).__name__}: {exc}") from exc
