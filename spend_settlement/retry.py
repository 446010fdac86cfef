"""Resilient RPC caller: bounded exponential backoff for transient failures.

Transient = timeouts, connection failures, JSON-RPC errors (including the
provider rate-limit codes) and rail HTTP 429/5xx.  Everything else is fatal
and propagates on the first attempt.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional, TypeVar

import aiohttp
from web3.exceptions import (
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    Web3RPCError,
)

from .errors import SettlementError
from .http_json import HttpStatusError

log = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_CODES = frozenset({-32005, -32007})


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number *attempt* (0-based): min(base * 2^attempt, cap)."""
    return min(base * (2 ** max(0, int(attempt))), cap)


def rpc_error_code(exc: BaseException) -> Optional[int]:
    response = getattr(exc, "rpc_response", None)
    if isinstance(response, dict):
        error = response.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            if isinstance(code, int):
                return code
    code = getattr(exc, "code", None)
    return code if isinstance(code, int) else None


def is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, HttpStatusError):
        return exc.status == 429
    return rpc_error_code(exc) in RATE_LIMIT_CODES


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (SettlementError, ContractLogicError)):
        return False
    if isinstance(exc, HttpStatusError):
        return exc.status == 429 or exc.status >= 500
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, TimeExhausted)):
        return True
    if isinstance(exc, (aiohttp.ClientConnectionError, aiohttp.ServerTimeoutError)):
        return True
    if isinstance(exc, (ProviderConnectionError, ConnectionError)):
        return True
    if isinstance(exc, Web3RPCError):
        return True
    return False


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: Optional[RetryPolicy] = None,
    label: str = "rpc",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    policy = policy or RetryPolicy()
    max_retries = max(0, int(policy.max_retries))
    last_error: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            return await fn()
        except Exception as exc:
            if not is_transient(exc):
                raise
            last_error = exc
            if attempt == max_retries:
                break
            delay = backoff_delay(attempt, policy.base_delay, policy.max_delay)
            if is_rate_limited(exc):
                log.warning("%s rate limited, retrying in %.2fs (attempt %d/%d)",
                            label, delay, attempt + 1, max_retries)
            else:
                log.warning("%s transient error %s: %s, retrying in %.2fs (attempt %d/%d)",
                            label, type(exc).__name__, exc, delay, attempt + 1, max_retries)
            await sleep(delay)

    log.error("%s: all %d retry attempts exhausted", label, max_retries)
    assert last_error is not None
    raise last_error
