import asyncio
import logging
import random
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

import aiohttp
import requests

from . import config

logger = logging.getLogger("personabot.retry")

T = TypeVar('T')

NETWORK_ERRORS = (
    asyncio.TimeoutError,
    aiohttp.ClientConnectionError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


def status_of(exc: BaseException) -> Optional[int]:
    """HTTP status carried by an exception, if any.

    Understands yookassa's ``ApiError`` subclasses (``HTTP_CODE``), aiohttp's
    ``ClientResponseError`` (``status``) and our own ``ProviderError``.
    """
    for attr in ('status', 'HTTP_CODE', 'status_code'):
        val = getattr(exc, attr, None)
        if isinstance(val, int):
            return val
    return None


def is_retryable(exc: BaseException, statuses: Iterable[int] | None = None) -> bool:
    if isinstance(exc, NETWORK_ERRORS):
        return True
    statuses = config.PROVIDER_RETRY_STATUSES if statuses is None else statuses
    return status_of(exc) in set(statuses)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int | None = None,
    backoff_base: float | None = None,
    retry_statuses: Iterable[int] | None = None,
    label: str = 'call',
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` with bounded retries on 429/503 and network errors.

    Delay before attempt ``n+1`` is ``backoff_base * 2**n`` plus a little
    jitter. The last exception is re-raised when attempts run out or the
    error is not retryable.
    """
    attempts = attempts or config.PROVIDER_MAX_ATTEMPTS
    backoff_base = config.PROVIDER_BACKOFF_BASE if backoff_base is None else backoff_base
    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as e:
            if attempt + 1 >= attempts or not is_retryable(e, retry_statuses):
                raise
            delay = backoff_base * (2 ** attempt) + random.uniform(0, backoff_base / 4)
            logger.warning(f"{label} failed ({e!r}), retry {attempt + 1}/{attempts - 1} in {delay:.2f}s")
            await sleep(delay)
    raise RuntimeError("unreachable")
