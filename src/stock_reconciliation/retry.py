"""Bounded retry for store calls that fail on transient network errors.

Only errors whose message looks like a dropped connection are retried;
constraint violations and malformed statements surface on first failure.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_MARKERS: tuple[str, ...] = (
    "fetch failed",
    "network",
    "connection reset",
    "connection refused",
    "connection was closed",
    "server closed the connection",
    "timed out",
    "econnreset",
    "etimedout",
)


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` looks like a transient network failure."""

    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    label: str,
    max_attempts: int | None = None,
    *,
    base_delay: float | None = None,
    on_retry: Callable[[], Awaitable[Any]] | None = None,
    settings: Settings | None = None,
) -> T:
    """Await ``operation()``, retrying transient failures with exponential backoff.

    Attempt ``n`` (0-based) that fails transiently sleeps ``base_delay * 2**n``
    before the next one. ``on_retry`` runs between attempts, e.g. to roll back
    a session left in a failed state. Limits not given explicitly come from
    ``settings``.
    """

    settings = settings or get_settings()
    attempts = max_attempts if max_attempts is not None else settings.retry_max_attempts
    delay = base_delay if base_delay is not None else settings.retry_base_delay
    attempts = max(1, attempts)

    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:
            if attempt + 1 >= attempts or not is_transient(exc):
                raise
            wait = delay * (2**attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt + 1,
                attempts,
                wait,
                exc,
            )
            if on_retry is not None:
                await on_retry()
            await _sleep(wait)
    raise AssertionError("unreachable")


def retrying(label: str) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate an ``async def fn(session, ...)`` store call with :func:`with_retry`.

    The session is rolled back between attempts. The wrapped call accepts an
    extra keyword-only ``settings`` that selects the retry policy; it is not
    forwarded to ``func``. Arguments are reused on every attempt, so pass
    sequences rather than one-shot iterators.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(
            session: Any, *args: Any, settings: Settings | None = None, **kwargs: Any
        ) -> T:
            return await with_retry(
                lambda: func(session, *args, **kwargs),
                label,
                on_retry=session.rollback,
                settings=settings,
            )

        return wrapper

    return decorator


__all__ = ["TRANSIENT_MARKERS", "is_transient", "retrying", "with_retry"]
