from __future__ import annotations
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class Conflict(Exception):
    """Raised by an attempt when its sampled input collided and a fresh
    sample should be tried."""


async def retry_on_conflict(
    attempt: Callable[[T], Awaitable[R]],
    sample: Callable[[], T],
    *,
    max_attempts: int,
    exhausted: Callable[[int], Exception],
) -> R:
    """
    Draw a value with `sample()` and hand it to `attempt`. If the attempt
    raises `Conflict`, draw again, up to `max_attempts` times in total.
    After that, raise whatever `exhausted(max_attempts)` builds.

    Any other exception from `attempt` propagates unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    for _ in range(max_attempts):
        value = sample()
        try:
            return await attempt(value)
        except Conflict:
            continue
    raise exhausted(max_attempts)
