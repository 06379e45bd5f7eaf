"""
Backoff primitives and rate-limit signals shared by every governed component.

- RateLimitSignal: one call was throttled (recoverable, contained by the executor)
- RotationExhaustedError: every identity and cooldown cycle was spent (terminal)
- compute_backoff_delay: exponential backoff with additive jitter, seedable
- SystemPause: global stop after a run of consecutive throttled responses
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Collection

DEFAULT_RATE_LIMIT_STATUSES: frozenset[int] = frozenset({429})


class RateLimitSignal(Exception):
    """Raised (or derived from a status) when a single call was throttled."""

    def __init__(
        self,
        message: str,
        status_code: int = 429,
        label: str = "",
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.label = label
        self.retry_after_ms = retry_after_ms


class RotationExhaustedError(Exception):
    """All identities and cooldown cycles failed to get past throttling.

    The message always starts with ``[INFRA_PRESSURE]`` so that callers and
    failure classification can tell infrastructure pressure apart from a
    functional defect.
    """

    PREFIX = "[INFRA_PRESSURE]"

    def __init__(self, message: str, cycles: int = 0, context: str = "") -> None:
        super().__init__(f"{self.PREFIX} {message}")
        self.cycles = cycles
        self.context = context


@dataclass(frozen=True)
class BackoffConfig:
    """Exponential backoff with optional additive jitter.

    Delay before retry N (1-based) is ``base * multiplier**(N-1)`` plus a
    uniform jitter in ``[0, jitter_ms]``, capped at ``max_delay_ms``.
    """

    base_delay_ms: int = 1000
    max_delay_ms: int = 60000
    multiplier: float = 2.0
    jitter_ms: int = 0
    max_attempts: int = 5

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= base_delay_ms ({self.base_delay_ms})"
            )
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")
        if self.jitter_ms < 0:
            raise ValueError(f"jitter_ms must be >= 0, got {self.jitter_ms}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")


# Throttled logins and reads back off from 3s with up to 2s of jitter;
# server errors back off from 2s without jitter.
THROTTLE_BACKOFF = BackoffConfig(base_delay_ms=3000, max_delay_ms=60000, jitter_ms=2000)
SERVER_ERROR_BACKOFF = BackoffConfig(base_delay_ms=2000, max_delay_ms=60000)


@dataclass
class BackoffState:
    """Mutable state for backoff tracking."""

    attempt: int = 0
    last_error_time_ms: int = 0
    consecutive_errors: int = 0

    def reset(self) -> None:
        """Reset after a successful operation."""
        self.attempt = 0
        self.consecutive_errors = 0

    def record_error(self, now_ms: int | None = None) -> None:
        """Record an error occurrence."""
        self.attempt += 1
        self.consecutive_errors += 1
        self.last_error_time_ms = now_ms if now_ms is not None else int(time.time() * 1000)


def compute_backoff_delay(
    config: BackoffConfig,
    state: BackoffState,
    retry_after_ms: int | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """
    Compute the delay before the next retry.

    Args:
        config: Backoff configuration.
        state: Current backoff state (``attempt`` counts recorded errors).
        retry_after_ms: Server-provided retry delay, honored as a floor.
        rng: Optional seeded Random instance for deterministic jitter.

    Returns:
        Delay in milliseconds; 0 when no error has been recorded yet.
    """
    if state.attempt == 0:
        return 0

    delay = config.base_delay_ms * (config.multiplier ** (state.attempt - 1))

    if config.jitter_ms > 0:
        source = rng if rng is not None else random
        delay += source.uniform(0, config.jitter_ms)

    delay = min(delay, config.max_delay_ms)

    if retry_after_ms is not None and retry_after_ms > 0:
        delay = max(delay, retry_after_ms)

    return int(delay)


def handle_error_response(
    status_code: int,
    *,
    label: str = "",
    retry_after_ms: int | None = None,
    rate_limit_statuses: Collection[int] = DEFAULT_RATE_LIMIT_STATUSES,
) -> RateLimitSignal | None:
    """
    Turn a response status into a RateLimitSignal when it means throttling.

    Args:
        status_code: HTTP status code.
        label: Short operation label for logs and the signal.
        retry_after_ms: Parsed Retry-After header, if any.
        rate_limit_statuses: Statuses treated as throttling.

    Returns:
        RateLimitSignal if throttled, None otherwise.
    """
    if status_code not in rate_limit_statuses:
        return None
    return RateLimitSignal(
        f"Rate limited ({status_code}){f' during {label}' if label else ''}",
        status_code=status_code,
        label=label,
        retry_after_ms=retry_after_ms,
    )


class PauseState(str, Enum):
    """Global pause state."""

    RUNNING = "RUNNING"
    PAUSED = "PAUSED"


@dataclass
class SystemPause:
    """
    Global stop triggered by sustained throttling.

    Every throttled response increments ``consecutive_rate_limits``; any other
    response resets it. Reaching ``threshold`` while running pauses the system
    for ``duration_ms``. The deadline ``paused_until_ms`` is the shared signal
    every waiter watches; whoever observes it first ends the pause.
    """

    threshold: int = 5
    duration_ms: int = 10000

    state: PauseState = field(default=PauseState.RUNNING)
    consecutive_rate_limits: int = field(default=0)
    paused_until_ms: int = field(default=0)
    pause_count: int = field(default=0)

    _time_fn: Callable[[], int] | None = field(default=None)

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    def record_rate_limit(self) -> bool:
        """Count a throttled response.

        Returns:
            True if this response triggered a new pause.
        """
        self.consecutive_rate_limits += 1
        if self.state == PauseState.PAUSED or self.consecutive_rate_limits < self.threshold:
            return False
        self.state = PauseState.PAUSED
        self.paused_until_ms = self._now_ms() + self.duration_ms
        self.pause_count += 1
        return True

    def record_success(self) -> None:
        """A non-throttled response breaks the streak."""
        self.consecutive_rate_limits = 0

    def remaining_ms(self) -> int:
        """Milliseconds left in the current pause (0 when running)."""
        if self.state != PauseState.PAUSED:
            return 0
        return max(0, self.paused_until_ms - self._now_ms())

    def is_paused(self) -> bool:
        """True while the pause deadline lies in the future."""
        return self.state == PauseState.PAUSED and self.remaining_ms() > 0

    def expired(self) -> bool:
        """True when a pause is recorded but its deadline has passed."""
        return self.state == PauseState.PAUSED and self.remaining_ms() == 0

    def end(self) -> None:
        """Leave the paused state and clear the throttle streak."""
        self.state = PauseState.RUNNING
        self.paused_until_ms = 0
        self.consecutive_rate_limits = 0

    def reset(self) -> None:
        self.end()
        self.pause_count = 0

    def get_status(self) -> dict[str, str | int]:
        """Pause status for observability."""
        return {
            "state": self.state.value,
            "consecutive_rate_limits": self.consecutive_rate_limits,
            "remaining_ms": self.remaining_ms(),
            "pause_count": self.pause_count,
        }
