"""Retry persistence calls that fail with :class:`~waveline.errors.StoreError`."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, TypeVar

from ..errors import StoreError
from ..utils.logging import get_logger

logger = get_logger()

T = TypeVar("T")


def retry_store(call: Callable[[], T], attempts: int = 3, delay: float = 0.05, what: str = "store write") -> T:
    for attempt in range(1, attempts + 1):
        try:
            return call()
        except StoreError as e:
            if attempt >= attempts:
                logger.error(f"{what} failed after {attempts} attempt(s): {e}")
                raise
            logger.warning(f"{what} failed on attempt {attempt}: {e}; retrying")
            time.sleep(delay * 2 ** (attempt - 1))
    raise AssertionError("unreachable")  # pragma: no cover


async def retry_store_async(
    call: Callable[[], T], attempts: int = 3, delay: float = 0.05, what: str = "store write"
) -> T:
    for attempt in range(1, attempts + 1):
        try:
            return call()
        except StoreError as e:
            if attempt >= attempts:
                logger.error(f"{what} failed after {attempts} attempt(s): {e}")
                raise
            logger.warning(f"{what} failed on attempt {attempt}: {e}; retrying")
            await asyncio.sleep(delay * 2 ** (attempt - 1))
    raise AssertionError("unreachable")  # pragma: no cover
