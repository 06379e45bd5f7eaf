"""
Request governor: the single gate every outbound API call passes through.

- Bounded concurrency with a priority-ordered wait queue
- Adaptive inter-request delay (multiplied on throttling, decayed otherwise)
- Sliding-window throttle telemetry
- Global system pause after sustained throttling

One governor exists per run and is shared by every identity, so pacing
reflects the server's view of the whole client rather than one user.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from requestgov.governance.backoff import (
    DEFAULT_RATE_LIMIT_STATUSES,
    PauseState,
    SystemPause,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestPriority(str, Enum):
    """Scheduling class of a request waiting for a slot."""

    HIGH = "HIGH"  # retries right after an identity switch
    NORMAL = "NORMAL"  # functional calls
    LOW = "LOW"  # cleanup, yields to everything else

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    RequestPriority.HIGH: 0,
    RequestPriority.NORMAL: 1,
    RequestPriority.LOW: 2,
}


@dataclass
class GovernorConfig:
    """Governor tuning knobs."""

    max_concurrent: int = 2
    min_inter_request_delay_ms: int = 150
    max_delay_ms: int = 5000
    adaptive_multiplier: float = 1.5  # applied to the delay on each throttled response
    decay_factor: float = 0.8  # applied on each non-throttled response
    sustained_threshold: int = 5  # consecutive throttles that trigger a system pause
    system_pause_duration_ms: int = 10000
    rate_limit_window_ms: int = 30000
    rate_limit_statuses: frozenset[int] = DEFAULT_RATE_LIMIT_STATUSES

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        if self.min_inter_request_delay_ms < 0:
            raise ValueError(
                f"min_inter_request_delay_ms must be >= 0, got {self.min_inter_request_delay_ms}"
            )
        if self.max_delay_ms < self.min_inter_request_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"min_inter_request_delay_ms ({self.min_inter_request_delay_ms})"
            )
        if self.adaptive_multiplier < 1.0:
            raise ValueError(f"adaptive_multiplier must be >= 1.0, got {self.adaptive_multiplier}")
        if not 0.0 < self.decay_factor <= 1.0:
            raise ValueError(f"decay_factor must be in (0, 1], got {self.decay_factor}")
        if self.sustained_threshold < 1:
            raise ValueError(f"sustained_threshold must be >= 1, got {self.sustained_threshold}")
        if self.system_pause_duration_ms < 0:
            raise ValueError(
                f"system_pause_duration_ms must be >= 0, got {self.system_pause_duration_ms}"
            )
        if self.rate_limit_window_ms <= 0:
            raise ValueError(f"rate_limit_window_ms must be > 0, got {self.rate_limit_window_ms}")
        if not self.rate_limit_statuses:
            raise ValueError("rate_limit_statuses must not be empty")
        self.rate_limit_statuses = frozenset(self.rate_limit_statuses)


@dataclass
class GovernorTelemetry:
    """Point-in-time snapshot of throttle pressure."""

    total_requests: int
    total_429s: int
    system_pauses: int
    current_delay_ms: int
    last_429_timestamp_ms: int | None
    rate_limit_rate: float  # throttled responses per minute over the window

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GovernorMetrics:
    """Queue and concurrency counters."""

    requests_allowed: int = 0
    requests_deferred: int = 0  # waited in queue, then allowed
    total_wait_ms: int = 0
    max_wait_ms: int = 0
    current_queue_depth: int = 0
    current_concurrent: int = 0
    max_observed_concurrent: int = 0


@dataclass(eq=False)
class _Waiter:
    """A request parked in the wait queue."""

    priority: RequestPriority
    label: str
    enqueue_time_ms: int
    future: asyncio.Future[None]


@dataclass
class RequestGovernor:
    """
    Central gatekeeper for all outbound requests.

    Usage:
        governor = RequestGovernor(GovernorConfig(max_concurrent=2))
        response = await governor.execute(lambda: client.list_items(token))
        governor.record_response(response.status)

    A freed slot is handed directly to the next waiter (HIGH before NORMAL
    before LOW, FIFO inside a class), so the number of slot holders never
    exceeds ``config.max_concurrent``. Pacing is serialized: the gap between
    two consecutive request starts is at least the current delay.
    """

    config: GovernorConfig = field(default_factory=GovernorConfig)

    # Injected for deterministic tests.
    _time_fn: Callable[[], int] | None = field(default=None)
    _sleep_fn: Callable[[float], Awaitable[None]] | None = field(default=None)

    _queue: list[_Waiter] = field(default_factory=list, init=False)
    _active: int = field(default=0, init=False)
    _current_delay_ms: float = field(default=0.0, init=False)
    _last_request_start_ms: int | None = field(default=None, init=False)
    _pace_lock: asyncio.Lock | None = field(default=None, init=False)
    _pause: SystemPause = field(init=False)
    _window: deque[tuple[int, bool]] = field(default_factory=deque, init=False)
    _total_requests: int = field(default=0, init=False)
    _total_429s: int = field(default=0, init=False)
    _last_429_ms: int | None = field(default=None, init=False)

    metrics: GovernorMetrics = field(default_factory=GovernorMetrics, init=False)

    def __post_init__(self) -> None:
        self._current_delay_ms = float(self.config.min_inter_request_delay_ms)
        self._pause = SystemPause(
            threshold=self.config.sustained_threshold,
            duration_ms=self.config.system_pause_duration_ms,
            _time_fn=self._time_fn,
        )

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    async def _sleep(self, seconds: float) -> None:
        if self._sleep_fn is not None:
            await self._sleep_fn(seconds)
        else:
            await asyncio.sleep(seconds)

    def _get_pace_lock(self) -> asyncio.Lock:
        if self._pace_lock is None:
            self._pace_lock = asyncio.Lock()
        return self._pace_lock

    # --- pause -----------------------------------------------------------

    def _end_pause(self) -> None:
        self._pause.end()
        self._current_delay_ms = float(self.config.min_inter_request_delay_ms)
        logger.info(
            "System pause ended",
            extra={"delay_ms": self.current_delay_ms, "pause_count": self._pause.pause_count},
        )

    def _maybe_end_pause(self) -> None:
        if self._pause.expired():
            self._end_pause()

    async def _wait_for_pause(self, label: str) -> None:
        while self._pause.state == PauseState.PAUSED:
            remaining_ms = self._pause.remaining_ms()
            if remaining_ms <= 0:
                self._end_pause()
                return
            logger.debug(
                "Waiting out system pause",
                extra={"label": label, "remaining_ms": remaining_ms},
            )
            await self._sleep(remaining_ms / 1000)

    @property
    def is_paused(self) -> bool:
        self._maybe_end_pause()
        return self._pause.is_paused()

    # --- slots -----------------------------------------------------------

    def _enqueue(self, waiter: _Waiter) -> None:
        """Insert after every waiter of equal or higher priority: HIGH ahead of NORMAL ahead of LOW, FIFO within each."""
        index = len(self._queue)
        for i, queued in enumerate(self._queue):
            if queued.priority.rank > waiter.priority.rank:
                index = i
                break
        self._queue.insert(index, waiter)
        self.metrics.current_queue_depth = len(self._queue)

    def _take_slot(self) -> None:
        self._active += 1
        self.metrics.current_concurrent = self._active
        self.metrics.max_observed_concurrent = max(self.metrics.max_observed_concurrent, self._active)

    async def _acquire_slot(self, priority: RequestPriority, label: str) -> None:
        if self._active < self.config.max_concurrent and not self._queue:
            self._take_slot()
            self.metrics.requests_allowed += 1
            return

        waiter = _Waiter(
            priority=priority,
            label=label,
            enqueue_time_ms=self._now_ms(),
            future=asyncio.get_running_loop().create_future(),
        )
        self._enqueue(waiter)

        try:
            await waiter.future
        except asyncio.CancelledError:
            if waiter.future.done() and not waiter.future.cancelled():
                # Cancelled after the slot was handed over: give it back.
                self._release_slot()
            elif waiter in self._queue:
                self._queue.remove(waiter)
            raise
        finally:
            self.metrics.current_queue_depth = len(self._queue)

        waited_ms = self._now_ms() - waiter.enqueue_time_ms
        self.metrics.requests_allowed += 1
        self.metrics.requests_deferred += 1
        self.metrics.total_wait_ms += waited_ms
        self.metrics.max_wait_ms = max(self.metrics.max_wait_ms, waited_ms)

    def _release_slot(self) -> None:
        while self._queue:
            waiter = self._queue.pop(0)
            if waiter.future.done():
                continue
            # Hand-off keeps the active count unchanged.
            waiter.future.set_result(None)
            self.metrics.current_queue_depth = len(self._queue)
            return
        if self._active > 0:
            self._active -= 1
        self.metrics.current_concurrent = self._active
        self.metrics.current_queue_depth = 0

    async def _enforce_delay(self) -> None:
        async with self._get_pace_lock():
            if self._last_request_start_ms is not None:
                elapsed_ms = self._now_ms() - self._last_request_start_ms
                wait_ms = self._current_delay_ms - elapsed_ms
                if wait_ms > 0:
                    await self._sleep(wait_ms / 1000)
            self._last_request_start_ms = self._now_ms()

    @contextlib.asynccontextmanager
    async def permit(
        self,
        *,
        priority: RequestPriority = RequestPriority.NORMAL,
        label: str = "",
    ) -> AsyncIterator[None]:
        """
        Async context manager holding one governed slot.

        Usage:
            async with governor.permit(priority=RequestPriority.LOW, label="cleanup"):
                response = await client.delete_item(token, item_id)
            governor.record_response(response.status)

        The slot is released (and handed to the next waiter) even when the
        body raises.
        """
        await self._wait_for_pause(label)
        await self._acquire_slot(priority, label)
        try:
            # A pause may have started while this request sat in the queue.
            await self._wait_for_pause(label)
            await self._enforce_delay()
            self._total_requests += 1
            yield
        finally:
            self._release_slot()

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        priority: RequestPriority = RequestPriority.NORMAL,
        label: str = "",
        context: str = "",
    ) -> T:
        """
        Run ``operation`` once it is admitted by the governor.

        Args:
            operation: Zero-argument coroutine factory performing one remote call.
            priority: Queue class used if no slot is free.
            label: Short operation name for logs.
            context: Caller context (test or job id) for logs.

        Returns:
            Whatever ``operation`` returns. Exceptions propagate unchanged.
        """
        async with self.permit(priority=priority, label=label):
            logger.debug(
                "Request admitted",
                extra={"label": label, "context": context, "priority": priority.value},
            )
            return await operation()

    # --- feedback --------------------------------------------------------

    def _prune_window(self, now_ms: int) -> None:
        cutoff = now_ms - self.config.rate_limit_window_ms
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

    def record_response(self, status_code: int, context: str = "") -> None:
        """
        Feed one response status back into pacing.

        Throttled statuses raise the delay and may trigger a system pause;
        anything else resets the throttle streak and relaxes the delay toward
        the configured minimum.
        """
        now_ms = self._now_ms()
        throttled = status_code in self.config.rate_limit_statuses
        self._window.append((now_ms, throttled))
        self._prune_window(now_ms)

        if not throttled:
            self._pause.record_success()
            self._current_delay_ms = max(
                float(self.config.min_inter_request_delay_ms),
                self._current_delay_ms * self.config.decay_factor,
            )
            return

        self._total_429s += 1
        self._last_429_ms = now_ms
        previous_ms = self.current_delay_ms
        self._current_delay_ms = min(
            float(self.config.max_delay_ms),
            self._current_delay_ms * self.config.adaptive_multiplier,
        )
        triggered = self._pause.record_rate_limit()
        logger.warning(
            "Throttled response, delay raised",
            extra={
                "status": status_code,
                "context": context,
                "previous_delay_ms": previous_ms,
                "delay_ms": self.current_delay_ms,
                "consecutive": self._pause.consecutive_rate_limits,
            },
        )
        if triggered:
            logger.error(
                "Sustained throttling, pausing all requests",
                extra={
                    "context": context,
                    "pause_ms": self.config.system_pause_duration_ms,
                    "pause_count": self._pause.pause_count,
                },
            )

    # --- observability ---------------------------------------------------

    @property
    def current_delay_ms(self) -> int:
        return round(self._current_delay_ms)

    @property
    def active_requests(self) -> int:
        return self._active

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    def get_telemetry(self) -> GovernorTelemetry:
        """Snapshot of throttle pressure over the sliding window."""
        self._maybe_end_pause()
        self._prune_window(self._now_ms())
        recent_429s = sum(1 for _, throttled in self._window if throttled)
        window_seconds = self.config.rate_limit_window_ms / 1000
        return GovernorTelemetry(
            total_requests=self._total_requests,
            total_429s=self._total_429s,
            system_pauses=self._pause.pause_count,
            current_delay_ms=self.current_delay_ms,
            last_429_timestamp_ms=self._last_429_ms,
            rate_limit_rate=round(recent_429s / window_seconds * 60, 2),
        )

    def is_saturated(self) -> bool:
        """True when at least 3 recent responses exist and over half were throttled."""
        self._prune_window(self._now_ms())
        total = len(self._window)
        if total < 3:
            return False
        throttled = sum(1 for _, was_throttled in self._window if was_throttled)
        return throttled / total > 0.5

    def get_status(self) -> dict[str, int | float | bool | str]:
        """Current governor status for /healthz."""
        self._maybe_end_pause()
        return {
            "active_requests": self._active,
            "max_concurrent": self.config.max_concurrent,
            "queue_depth": len(self._queue),
            "current_delay_ms": self.current_delay_ms,
            "paused": self._pause.is_paused(),
            "pause_remaining_ms": self._pause.remaining_ms(),
            "consecutive_429s": self._pause.consecutive_rate_limits,
            "saturated": self.is_saturated(),
        }

    def reset(self) -> None:
        """Clear pacing, pause and telemetry state.

        Slot bookkeeping is left alone so that in-flight requests can still
        release their slots.
        """
        self._current_delay_ms = float(self.config.min_inter_request_delay_ms)
        self._last_request_start_ms = None
        self._pause.reset()
        self._window.clear()
        self._total_requests = 0
        self._total_429s = 0
        self._last_429_ms = None
        self.metrics = GovernorMetrics(
            current_queue_depth=len(self._queue),
            current_concurrent=self._active,
        )
