"""
Resilient execution: identity rotation plus cooldown around throttled calls.

Each call runs through the shared RequestGovernor and feeds its status back
into it. A throttled result drives a small state machine:

    ATTEMPT --throttled--> ROTATE --switched--> RETRY --throttled--> COOLDOWN
                             |                                         |
                             +--no alternate-----> COOLDOWN --elapsed--+--> ATTEMPT

Entering COOLDOWN after the last cycle yields EXHAUSTED instead, which is
raised as RotationExhaustedError. Each attempt runs as the identity active
when its slot is granted, and ROTATE moves away from the identity that was
throttled; if a concurrent call already did so, the retry simply proceeds.
Non-throttled statuses and other exceptions go straight back to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, TypeVar

from requestgov.governance.backoff import (
    RateLimitSignal,
    RotationExhaustedError,
    handle_error_response,
)
from requestgov.governance.governor import RequestPriority

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from requestgov.credentials.pool import CredentialPool, Identity
    from requestgov.governance.governor import RequestGovernor
    from requestgov.tracking.ledger import ExecutionLedger
    from requestgov.transport.types import ResponseLike

logger = logging.getLogger(__name__)

R = TypeVar("R", bound="ResponseLike")


class RotationState(str, Enum):
    """States of one resilient call."""

    ATTEMPT = "ATTEMPT"
    ROTATE = "ROTATE"
    RETRY = "RETRY"
    COOLDOWN = "COOLDOWN"
    DONE = "DONE"
    EXHAUSTED = "EXHAUSTED"


class AttemptOutcome(str, Enum):
    """Inputs that move the state machine."""

    SUCCESS = "SUCCESS"
    RATE_LIMITED = "RATE_LIMITED"
    ROTATED = "ROTATED"
    NOT_ROTATED = "NOT_ROTATED"
    COOLDOWN_ELAPSED = "COOLDOWN_ELAPSED"


def _cooldown_or_exhausted(cycle: int, max_cycles: int) -> RotationState:
    return RotationState.COOLDOWN if cycle < max_cycles - 1 else RotationState.EXHAUSTED


def next_state(
    state: RotationState,
    outcome: AttemptOutcome,
    *,
    cycle: int,
    max_cycles: int,
) -> RotationState:
    """
    Pure transition function of the rotation state machine.

    Args:
        state: Current state.
        outcome: What just happened in that state.
        cycle: Zero-based index of the current cycle.
        max_cycles: Total cycles allowed.

    Returns:
        The next state.

    Raises:
        ValueError: The outcome cannot happen in ``state``.
    """
    if state in (RotationState.ATTEMPT, RotationState.RETRY):
        if outcome == AttemptOutcome.SUCCESS:
            return RotationState.DONE
        if outcome == AttemptOutcome.RATE_LIMITED:
            if state == RotationState.ATTEMPT:
                return RotationState.ROTATE
            return _cooldown_or_exhausted(cycle, max_cycles)
    elif state == RotationState.ROTATE:
        if outcome == AttemptOutcome.ROTATED:
            return RotationState.RETRY
        if outcome == AttemptOutcome.NOT_ROTATED:
            return _cooldown_or_exhausted(cycle, max_cycles)
    elif state == RotationState.COOLDOWN and outcome == AttemptOutcome.COOLDOWN_ELAPSED:
        return RotationState.ATTEMPT
    raise ValueError(f"Invalid transition: {state.value} on {outcome.value}")


def cooldown_delay_ms(cycle: int, base_ms: int) -> int:
    """Cooldown after cycle ``cycle`` (zero-based): ``base * 2**cycle``."""
    return base_ms * (2**cycle)


@dataclass
class RotationConfig:
    """Rotation and cooldown policy."""

    max_cycles: int = 3
    cooldown_base_ms: int = 5000
    priority: RequestPriority = RequestPriority.NORMAL
    retry_priority: RequestPriority = RequestPriority.HIGH

    def __post_init__(self) -> None:
        if self.max_cycles < 1:
            raise ValueError(f"max_cycles must be >= 1, got {self.max_cycles}")
        if self.cooldown_base_ms < 0:
            raise ValueError(f"cooldown_base_ms must be >= 0, got {self.cooldown_base_ms}")


class ResilientExecutor:
    """
    Runs one remote operation with rotation-on-throttle and cooldown cycles.

    Usage:
        executor = ResilientExecutor(governor, pool)
        response = await executor.run(
            lambda identity: client.list_items(pool.token),
            context="list-items",
        )
    """

    def __init__(
        self,
        governor: RequestGovernor,
        pool: CredentialPool,
        config: RotationConfig | None = None,
        *,
        ledger: ExecutionLedger | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._governor = governor
        self._pool = pool
        self._config = config or RotationConfig()
        self._ledger = ledger
        self._sleep_fn = sleep_fn or asyncio.sleep

    @property
    def config(self) -> RotationConfig:
        return self._config

    def _note(self, context: str, details: str) -> None:
        if self._ledger is not None and context:
            self._ledger.record_rate_limit(context, details)

    async def _attempt(
        self,
        operation: Callable[[Identity], Awaitable[R]],
        priority: RequestPriority,
        label: str,
        context: str,
    ) -> tuple[R | None, RateLimitSignal | None, Identity]:
        """
        Run one governed attempt as whichever identity is active once a slot
        is granted.

        Returns:
            (response, signal, identity): exactly one of response and signal
            is set; identity is the one the call went out under.
        """
        identity = self._pool.active_identity

        async def call() -> R:
            nonlocal identity
            identity = self._pool.active_identity
            self._pool.record_identity_for(context)
            return await operation(identity)

        try:
            response = await self._governor.execute(
                call,
                priority=priority,
                label=label,
                context=context,
            )
        except RateLimitSignal as signal:
            self._governor.record_response(signal.status_code, context)
            return None, signal, identity

        self._governor.record_response(response.status, context)
        signal = handle_error_response(
            response.status,
            label=label,
            retry_after_ms=getattr(response, "retry_after_ms", None),
            rate_limit_statuses=self._governor.config.rate_limit_statuses,
        )
        if signal is not None:
            logger.warning(
                "Call throttled",
                extra={"label": label, "context": context, "slot": identity.slot.value},
            )
            return None, signal, identity
        return response, None, identity

    async def run(
        self,
        operation: Callable[[Identity], Awaitable[R]],
        *,
        context: str = "",
        label: str = "",
    ) -> R:
        """
        Execute ``operation`` until it gets past throttling or cycles run out.

        Args:
            operation: Performs one remote call as the given identity.
            context: Caller context for logs and the ledger.
            label: Short operation name.

        Returns:
            The first non-throttled response.

        Raises:
            RotationExhaustedError: Every cycle ended throttled.
        """
        max_cycles = self._config.max_cycles
        state = RotationState.ATTEMPT
        cycle = 0
        last_signal: RateLimitSignal | None = None
        throttled_slot = self._pool.active_slot

        while True:
            if state in (RotationState.ATTEMPT, RotationState.RETRY):
                priority = (
                    self._config.priority
                    if state == RotationState.ATTEMPT
                    else self._config.retry_priority
                )
                response, signal, identity = await self._attempt(
                    operation, priority, label, context
                )
                if signal is None and response is not None:
                    return response
                last_signal = signal
                throttled_slot = identity.slot
                outcome = AttemptOutcome.RATE_LIMITED
            elif state == RotationState.ROTATE:
                if self._pool.active_slot != throttled_slot:
                    # A concurrent call already rotated away from the throttled identity.
                    switched = True
                else:
                    switched = self._pool.switch_user("rate limit", context)
                if switched and self._ledger is not None and context:
                    self._ledger.record_retry(
                        context, f"Retry as {self._pool.active_slot.value} after rate limit"
                    )
                outcome = AttemptOutcome.ROTATED if switched else AttemptOutcome.NOT_ROTATED
            else:
                delay_ms = cooldown_delay_ms(cycle, self._config.cooldown_base_ms)
                self._note(context, f"Cycle {cycle + 1}/{max_cycles} cooldown {delay_ms}ms")
                logger.warning(
                    "Every identity throttled, cooling down",
                    extra={"context": context, "cycle": cycle + 1, "delay_ms": delay_ms},
                )
                await self._sleep_fn(delay_ms / 1000)
                cycle += 1
                outcome = AttemptOutcome.COOLDOWN_ELAPSED

            state = next_state(state, outcome, cycle=cycle, max_cycles=max_cycles)

            if state == RotationState.EXHAUSTED:
                self._note(context, "All rotation cycles exhausted")
                logger.error(
                    "Rotation cycles exhausted",
                    extra={"context": context, "label": label, "cycles": max_cycles},
                )
                raise RotationExhaustedError(
                    f"Rate limit exhausted for {context or label or 'operation'} "
                    f"after {max_cycles} cycles. {last_signal}",
                    cycles=max_cycles,
                    context=context,
                )
