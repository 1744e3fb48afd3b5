from __future__ import annotations

from typing import Callable, TypeVar

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from signflow.core.config import settings
from signflow.core.errors import TransientStoreError

F = TypeVar("F", bound=Callable)


def transient_retry(func: F) -> F:
    """Re-run a whole store operation when the database reports a transient failure."""
    return retry(  # type: ignore[return-value]
        reraise=True,
        stop=stop_after_attempt(max(settings.store_retry_attempts, 1)),
        wait=wait_exponential(
            multiplier=settings.store_retry_wait_seconds,
            min=settings.store_retry_wait_seconds,
            max=2.0,
        ),
        retry=retry_if_exception_type(TransientStoreError),
    )(func)
