"""Retry policy for JSON-RPC reads against the chain node."""
from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, TypeVar

import aiohttp
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

log = logging.getLogger("vibeguard.retry")

F = TypeVar('F', bound=Callable[..., Any])

# web3's async provider runs on aiohttp
TRANSIENT_RPC_ERRORS = (aiohttp.ClientError, ConnectionError, TimeoutError)


def rpc_retry(attempts: int = 3, max_wait: float = 10.0) -> Callable[[F], F]:
    """Decorator factory for idempotent async node reads.

    Retries transport failures with exponential backoff (1s first wait,
    capped at ``max_wait``). Contract reverts surface on the first attempt.
    Never wrap a transaction send: a retried send can land twice.
    """

    def decorator(func: F) -> F:
        @retry(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=1, min=1, max=max_wait),
            retry=retry_if_exception_type(TRANSIENT_RPC_ERRORS),
            before_sleep=before_sleep_log(log, logging.WARNING),
            reraise=True,
        )
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await func(*args, **kwargs)

        return wrapper  # type: ignore

    return decorator


with_retry = rpc_retry()
