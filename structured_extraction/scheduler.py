from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import (
    ExtractionCancelledError,
    InvalidInputError,
    ThrottledError,
    is_throttling,
    wrap_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ScheduleConfig:
    """Spacing and retry policy for calls to the generation backend."""

    # 7s between calls keeps a 10 requests/minute quota safe.
    min_interval_ms: int = 7000
    max_retries: int = 3

    def __post_init__(self) -> None:
        if self.min_interval_ms < 0:
            raise InvalidInputError("min_interval_ms must be non-negative", field="min_interval_ms")
        if self.max_retries < 1:
            raise InvalidInputError("max_retries must be at least 1", field="max_retries")


DEFAULT_SCHEDULE = ScheduleConfig()


@dataclass
class ScheduleMetrics:
    total_executions: int = 0
    total_wait_time_ms: float = 0.0
    total_retries: int = 0
    total_failures: int = 0
    last_execution_at: Optional[datetime] = None


async def sleep(ms: float, cancel_event: Optional[asyncio.Event] = None) -> None:
    """
    Suspend for ``ms`` milliseconds.

    When ``cancel_event`` is set before the delay runs out the sleep ends early
    with ``ExtractionCancelledError``.
    """
    if cancel_event is None:
        await asyncio.sleep(ms / 1000)
        return
    if cancel_event.is_set():
        raise ExtractionCancelledError()
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=ms / 1000)
    except asyncio.TimeoutError:
        return
    raise ExtractionCancelledError()


def _now_ms() -> float:
    return time.monotonic() * 1000


class CallScheduler:
    """
    Spaces consecutive calls by ``min_interval_ms`` and retries throttled ones.

    Throttled attempts back off for ``2**attempt * min_interval_ms`` before the
    next attempt; any other failure is surfaced right away. One instance tracks
    a single last-call timestamp, so it must not be shared by concurrent runs.
    """

    def __init__(
        self,
        config: ScheduleConfig | None = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self._config = config or DEFAULT_SCHEDULE
        self._cancel_event = cancel_event
        self._last_call_ms: Optional[float] = None
        self._metrics = ScheduleMetrics()

    async def await_slot(self) -> float:
        """Wait until the minimum interval has passed; returns the time waited in ms."""
        remaining = 0.0
        if self._last_call_ms is not None:
            elapsed = _now_ms() - self._last_call_ms
            remaining = self._config.min_interval_ms - elapsed

        if remaining > 0:
            logger.info("Rate limiting: waiting %.0fms before next request", remaining)
            await sleep(remaining, self._cancel_event)
            self._metrics.total_wait_time_ms += remaining

        self._last_call_ms = _now_ms()
        return max(0.0, remaining)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str = "API call",
    ) -> T:
        max_retries = self._config.max_retries
        for attempt in range(1, max_retries + 1):
            await self.await_slot()
            try:
                result = await operation()
            except ExtractionCancelledError:
                raise
            except Exception as exc:
                throttled = is_throttling(exc)
                if throttled and attempt < max_retries:
                    self._metrics.total_retries += 1
                    backoff_ms = (2**attempt) * self._config.min_interval_ms
                    logger.warning(
                        "%s rate limited (attempt %d/%d), backing off %dms",
                        label,
                        attempt,
                        max_retries,
                        backoff_ms,
                    )
                    await sleep(backoff_ms, self._cancel_event)
                    self._metrics.total_wait_time_ms += backoff_ms
                    continue

                self._metrics.total_failures += 1
                logger.error("%s failed after %d attempt(s): %s", label, attempt, exc)
                if throttled:
                    raise ThrottledError(
                        f"{label} failed: rate limit exceeded after {attempt} attempts. "
                        "Consider increasing min_interval_ms or reducing request volume.",
                        retry_after_ms=(2**attempt) * self._config.min_interval_ms,
                        attempts_made=attempt,
                    ) from exc
                wrapped = wrap_error(exc, label)
                if wrapped is exc:
                    raise
                raise wrapped

            self._metrics.total_executions += 1
            self._metrics.last_execution_at = datetime.now(timezone.utc)
            return result

        # max_retries >= 1, so the loop always returns or raises.
        raise AssertionError("unreachable")

    def get_config(self) -> ScheduleConfig:
        return replace(self._config)

    def get_metrics(self) -> ScheduleMetrics:
        return replace(self._metrics)

    def reset_metrics(self) -> None:
        self._metrics = ScheduleMetrics()
