"""
Retry and polling primitives shared by every call site that talks to the
backend under uncertainty (confirm-payment retries, status polling after an
ambiguous confirmation, free-path recovery).
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from mandapam.core.errors import NetworkError, ServerRejection

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

TRANSIENT_STATUS_CODES = frozenset({429, 502, 503, 504})


def is_transient(error: Exception) -> bool:
    """
    Decide whether an error is worth retrying.

    Retry for:
    - timeouts and connection-level failures (NetworkError)
    - 429 and gateway-style 5xx (502, 503, 504)

    No retry for:
    - 4xx validation/signature rejections
    - 500 (the backend processed the request and failed)
    """
    if isinstance(error, NetworkError):
        return True
    if isinstance(error, ServerRejection):
        return error.status_code in TRANSIENT_STATUS_CODES
    return False


def backoff_delay(attempt: int, base_delay_ms: int) -> float:
    """
    Exponential backoff with jitter, in seconds.

    Delay = base_delay * (2 ^ attempt) + jitter, jitter between 0 and 20%.
    """
    base_delay_seconds = base_delay_ms / 1000.0
    exponential_delay = base_delay_seconds * (2 ** attempt)
    jitter = random.uniform(0, exponential_delay * 0.2)
    return exponential_delay + jitter


class Retrier:
    """
    Runs an async operation, retrying transient failures with backoff.

    ``attempts`` keeps the number of calls made by the last ``run`` so the
    caller can log it when reconciliation is needed.
    """

    def __init__(
        self,
        max_retries: int,
        base_delay_ms: int,
        should_retry: Callable[[Exception], bool] = is_transient,
        sleep: Sleep = asyncio.sleep,
    ):
        self._max_retries = max(0, max_retries)
        self._base_delay_ms = base_delay_ms
        self._should_retry = should_retry
        self._sleep = sleep
        self.attempts = 0

    async def run(self, operation: Callable[[], Awaitable[T]], describe: str = "operation") -> T:
        self.attempts = 0
        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries + 1):
            self.attempts = attempt + 1
            try:
                return await operation()
            except Exception as e:
                last_error = e
                if attempt >= self._max_retries or not self._should_retry(e):
                    break

                delay_seconds = backoff_delay(attempt, self._base_delay_ms)
                logger.warning(
                    f"Transient error on {describe} (attempt {attempt + 1}/{self._max_retries + 1}): "
                    f"error={type(e).__name__}: {e}, retry_in={delay_seconds:.2f}s"
                )
                await self._sleep(delay_seconds)

        logger.error(
            f"{describe} failed: attempts={self.attempts}, "
            f"last_error={type(last_error).__name__}: {last_error}"
        )
        raise last_error


@dataclass
class PollResult(Generic[T]):
    value: Optional[T]
    attempts: int
    cancelled: bool = False

    @property
    def found(self) -> bool:
        return self.value is not None


async def poll_until(
    probe: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    max_attempts: int,
    interval_s: float,
    sleep: Sleep = asyncio.sleep,
    cancel: Optional[asyncio.Event] = None,
    describe: str = "poll",
) -> PollResult[T]:
    """
    Call ``probe`` up to ``max_attempts`` times, waiting ``interval_s`` before
    each call, until ``predicate`` accepts a result.

    Errors raised by the probe count as a failed attempt and never end the
    loop early. Setting ``cancel`` stops the loop before the next call.

    Returns:
        PollResult with the accepted value (or None) and the number of calls made
    """
    attempts = 0
    for attempt in range(max_attempts):
        if cancel is not None and cancel.is_set():
            logger.info(f"{describe} cancelled after attempts={attempts}")
            return PollResult(value=None, attempts=attempts, cancelled=True)

        await sleep(interval_s)

        if cancel is not None and cancel.is_set():
            logger.info(f"{describe} cancelled after attempts={attempts}")
            return PollResult(value=None, attempts=attempts, cancelled=True)

        attempts = attempt + 1
        try:
            value = await probe()
        except Exception as e:
            logger.warning(
                f"{describe} attempt {attempts}/{max_attempts} errored: {type(e).__name__}: {e}"
            )
            continue

        if predicate(value):
            logger.info(f"{describe} matched on attempt {attempts}/{max_attempts}")
            return PollResult(value=value, attempts=attempts)

        logger.info(f"{describe} attempt {attempts}/{max_attempts}: not yet")

    return PollResult(value=None, attempts=attempts)
