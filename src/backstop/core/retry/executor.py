"""
Retry executor: run a fallible async operation with exponential backoff.

Usage:
    >>> async def fetch_profile():
    ...     return await client.get("/me")
    >>> profile = await with_retry(fetch_profile, max_attempts=5, initial_delay=0.5)

    >>> # Many callers retrying the same dependency
    >>> profile = await with_retry_and_jitter(fetch_profile, API_RETRY_OPTIONS)
"""

import asyncio
import functools
import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from backstop.core.retry.policy import RetryOptions, RetryState, resolve_options
from backstop.core.retry.signatures import is_retryable
from backstop.exceptions import RetryCancelledError
from backstop.observability.metrics import retry_counter
from backstop.utils.logging import get_logger

logger = get_logger("backstop.retry.executor")

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
OnRetry = Callable[[RetryState, Exception, float], Any]
Sleep = Callable[[float], Awaitable[Any]]


async def with_retry(
    operation: Operation,
    options: RetryOptions | Mapping[str, Any] | None = None,
    *,
    name: str | None = None,
    on_retry: OnRetry | None = None,
    cancel_event: asyncio.Event | None = None,
    sleep: Sleep = asyncio.sleep,
    **overrides: Any,
) -> Any:
    """
    Execute operation, retrying transient failures with exponential backoff.

    Args:
        operation: Zero-argument callable returning an awaitable
        options: RetryOptions or a partial mapping of its fields
        name: Label for logs and metrics (default: operation.__name__)
        on_retry: Optional hook (sync or async) called as
            on_retry(state, error, delay) before each sleep
        cancel_event: Optional event; once set, no further attempts or delays
            happen and RetryCancelledError is raised
        sleep: Async sleep function (default: asyncio.sleep)
        **overrides: Individual RetryOptions fields, applied last

    Returns:
        Result of the first successful attempt

    Raises:
        Exception: The operation's own error, once it is fatal or attempts are exhausted
        RetryCancelledError: When cancel_event is set
        ConfigurationError: When options are invalid
    """
    resolved = resolve_options(options, overrides)
    delay_for = resolved.get_jittered_delay if resolved.jitter else resolved.get_delay
    return await _execute(operation, resolved, delay_for, name, on_retry, cancel_event, sleep)


async def with_retry_and_jitter(
    operation: Operation,
    options: RetryOptions | Mapping[str, Any] | None = None,
    *,
    name: str | None = None,
    on_retry: OnRetry | None = None,
    cancel_event: asyncio.Event | None = None,
    sleep: Sleep = asyncio.sleep,
    **overrides: Any,
) -> Any:
    """
    Same as with_retry, but every delay is randomized within jitter_range.

    Desynchronizes concurrent callers retrying the same dependency. Error
    classification and attempt counting are identical to with_retry.
    """
    resolved = resolve_options(options, overrides)
    return await _execute(operation, resolved, resolved.get_jittered_delay, name, on_retry, cancel_event, sleep)


async def _execute(
    operation: Operation,
    options: RetryOptions,
    delay_for: Callable[[int], float],
    name: str | None,
    on_retry: OnRetry | None,
    cancel_event: asyncio.Event | None,
    sleep: Sleep,
) -> Any:
    state = RetryState(operation=name or getattr(operation, "__name__", repr(operation)))
    last_error: Exception | None = None

    for attempt in range(1, options.max_attempts + 1):
        _check_cancelled(cancel_event, state, last_error)

        try:
            logger.debug(f"Executing {state.operation} (attempt {attempt}/{options.max_attempts})")

            result = operation()
            if inspect.isawaitable(result):
                result = await result

        except Exception as e:
            last_error = e
            state.record_attempt(error=e)

            if not is_retryable(e, options.retryable_errors):
                state.mark_failure(e)
                retry_counter(state.operation, "fatal")
                logger.error(f"{state.operation} failed with non-retryable error on attempt {attempt}: {e!r}")
                raise

            if attempt >= options.max_attempts:
                state.mark_failure(e)
                retry_counter(state.operation, "exhausted")
                logger.error(f"{state.operation} failed after {attempt} attempts: {e!r}")
                raise

            delay = delay_for(attempt - 1)
            state.record_delay(delay)
            retry_counter(state.operation, "retry")

            logger.warning(f"{state.operation} attempt {attempt} failed: {e!r}. Retrying in {delay:.2f}s...")

            if on_retry is not None:
                hook_result = on_retry(state, e, delay)
                if inspect.isawaitable(hook_result):
                    await hook_result

            await _sleep(delay, sleep, cancel_event)

        else:
            state.record_attempt()
            state.mark_success(result)
            retry_counter(state.operation, "success")

            if attempt > 1:
                logger.info(f"{state.operation} succeeded after {attempt} attempts")

            return result

    # Unreachable: max_attempts >= 1 and the last attempt returns or raises
    raise RuntimeError(f"Retry logic error for {state.operation}")


def _check_cancelled(cancel_event: asyncio.Event | None, state: RetryState, last_error: Exception | None) -> None:
    if cancel_event is None or not cancel_event.is_set():
        return

    retry_counter(state.operation, "cancelled")
    logger.info(f"Retry of {state.operation} cancelled after {state.attempts} attempt(s)")
    raise RetryCancelledError(state.operation, attempts=state.attempts) from last_error


async def _sleep(delay: float, sleep: Sleep, cancel_event: asyncio.Event | None) -> None:
    """Sleep for delay, returning early if cancel_event gets set."""
    if cancel_event is None:
        await sleep(delay)
        return

    sleeper = asyncio.ensure_future(sleep(delay))
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, waiter):
            if not task.done():
                task.cancel()
        await asyncio.gather(sleeper, waiter, return_exceptions=True)

    if not sleeper.cancelled() and sleeper.exception() is not None:
        raise sleeper.exception()


def retrying(
    options: RetryOptions | Mapping[str, Any] | None = None,
    **overrides: Any,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator running every call of an async function under with_retry.

    Jittered delays are used when the resolved options have jitter=True.

    Examples:
        >>> @retrying(max_attempts=4, initial_delay=0.5)
        ... async def publish_post(account_id, body):
        ...     return await client.post(f"/accounts/{account_id}/posts", json=body)
    """
    resolved = resolve_options(options, overrides)

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await with_retry(
                functools.partial(func, *args, **kwargs),
                resolved,
                name=func.__qualname__,
            )

        return wrapper

    return decorator
