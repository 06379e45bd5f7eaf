"""
Tests for ResilientExecutor and its rotation state machine.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from requestgov.credentials import CredentialPool, Credentials, Identity, IdentitySlot
from requestgov.execution import (
    AttemptOutcome,
    ResilientExecutor,
    RotationConfig,
    RotationState,
    cooldown_delay_ms,
    next_state,
)
from requestgov.governance import (
    GovernorConfig,
    RateLimitSignal,
    RequestGovernor,
    RequestPriority,
    RotationExhaustedError,
)
from requestgov.tracking import ExecutionLedger
from requestgov.transport.types import ApiResponse

PRIMARY = Credentials("primary@example.test", "pw-primary")
SECONDARY = Credentials("secondary@example.test", "pw-secondary")


def quiet_governor() -> RequestGovernor:
    """Governor with no pacing and no system pause, so only the executor sleeps."""
    return RequestGovernor(
        GovernorConfig(min_inter_request_delay_ms=0, max_delay_ms=0, sustained_threshold=1000)
    )


async def ready_pool(*, with_secondary: bool = True, ledger: ExecutionLedger | None = None) -> CredentialPool:
    async def login(credentials: Credentials) -> ApiResponse:
        if credentials is SECONDARY and not with_secondary:
            return ApiResponse(401, {})
        return ApiResponse(200, {"data": {"access_token": f"token-{credentials.login}"}})

    pool = CredentialPool(login, PRIMARY, SECONDARY, ledger=ledger, sleep_fn=AsyncMock())
    await pool.initialize()
    return pool


class RecordingOperation:
    """Operation answering from a status script and recording who called."""

    def __init__(self, statuses: list[int | BaseException]) -> None:
        self.statuses = list(statuses)
        self.slots: list[IdentitySlot] = []

    async def __call__(self, identity: Identity) -> ApiResponse:
        self.slots.append(identity.slot)
        outcome = self.statuses.pop(0) if self.statuses else 429
        if isinstance(outcome, BaseException):
            raise outcome
        return ApiResponse(outcome, {"slot": identity.slot.value})


class TestNextState:
    """Tests for the pure transition function."""

    def test_success_finishes(self) -> None:
        for state in (RotationState.ATTEMPT, RotationState.RETRY):
            assert next_state(state, AttemptOutcome.SUCCESS, cycle=0, max_cycles=3) == RotationState.DONE

    def test_throttled_attempt_rotates(self) -> None:
        assert (
            next_state(RotationState.ATTEMPT, AttemptOutcome.RATE_LIMITED, cycle=0, max_cycles=3)
            == RotationState.ROTATE
        )

    def test_rotation_leads_to_retry(self) -> None:
        assert (
            next_state(RotationState.ROTATE, AttemptOutcome.ROTATED, cycle=0, max_cycles=3)
            == RotationState.RETRY
        )

    def test_throttled_retry_cools_down(self) -> None:
        assert (
            next_state(RotationState.RETRY, AttemptOutcome.RATE_LIMITED, cycle=1, max_cycles=3)
            == RotationState.COOLDOWN
        )

    def test_last_cycle_exhausts(self) -> None:
        assert (
            next_state(RotationState.RETRY, AttemptOutcome.RATE_LIMITED, cycle=2, max_cycles=3)
            == RotationState.EXHAUSTED
        )
        assert (
            next_state(RotationState.ROTATE, AttemptOutcome.NOT_ROTATED, cycle=2, max_cycles=3)
            == RotationState.EXHAUSTED
        )

    def test_cooldown_returns_to_attempt(self) -> None:
        assert (
            next_state(RotationState.COOLDOWN, AttemptOutcome.COOLDOWN_ELAPSED, cycle=1, max_cycles=3)
            == RotationState.ATTEMPT
        )

    def test_invalid_transition_raises(self) -> None:
        with pytest.raises(ValueError, match="Invalid transition"):
            next_state(RotationState.COOLDOWN, AttemptOutcome.SUCCESS, cycle=0, max_cycles=3)

    def test_cooldown_delay_doubles(self) -> None:
        assert [cooldown_delay_ms(c, 5000) for c in range(3)] == [5000, 10000, 20000]


class TestRotationConfig:
    """Tests for RotationConfig."""

    def test_defaults(self) -> None:
        config = RotationConfig()
        assert config.max_cycles == 3
        assert config.cooldown_base_ms == 5000

    def test_rejects_zero_cycles(self) -> None:
        with pytest.raises(ValueError, match="max_cycles"):
            RotationConfig(max_cycles=0)


class TestResilientExecutor:
    """Tests for ResilientExecutor.run."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self) -> None:
        pool = await ready_pool()
        sleep = AsyncMock()
        executor = ResilientExecutor(quiet_governor(), pool, sleep_fn=sleep)
        operation = RecordingOperation([200])

        response = await executor.run(operation, context="ctx")

        assert response.status == 200
        assert operation.slots == [IdentitySlot.PRIMARY]
        assert pool.rotation_count == 0
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rotates_and_retries_after_throttle(self) -> None:
        ledger = ExecutionLedger()
        pool = await ready_pool(ledger=ledger)
        governor = quiet_governor()
        executor = ResilientExecutor(governor, pool, ledger=ledger, sleep_fn=AsyncMock())
        operation = RecordingOperation([429, 201])

        response = await executor.run(operation, context="ctx", label="create_item")

        assert response.status == 201
        assert response.body == {"slot": "secondary"}
        assert operation.slots == [IdentitySlot.PRIMARY, IdentitySlot.SECONDARY]
        assert pool.active_slot == IdentitySlot.SECONDARY
        assert ledger.get("ctx").retry_history == ["Retry as secondary after rate limit"]
        assert governor.get_telemetry().total_429s == 1

    @pytest.mark.asyncio
    async def test_retry_runs_at_high_priority(self) -> None:
        pool = await ready_pool()
        governor = quiet_governor()
        executor = ResilientExecutor(governor, pool, sleep_fn=AsyncMock())

        with patch.object(governor, "execute", wraps=governor.execute) as execute:
            await executor.run(RecordingOperation([429, 200]))

        priorities = [call.kwargs["priority"] for call in execute.call_args_list]
        assert priorities == [RequestPriority.NORMAL, RequestPriority.HIGH]

    @pytest.mark.asyncio
    async def test_exhausts_after_exactly_max_cycles(self) -> None:
        """Both identities always throttled: 3 cycles of two attempts, two cooldowns, then error."""
        ledger = ExecutionLedger()
        pool = await ready_pool(ledger=ledger)
        sleep = AsyncMock()
        executor = ResilientExecutor(quiet_governor(), pool, ledger=ledger, sleep_fn=sleep)
        operation = RecordingOperation([])

        with pytest.raises(RotationExhaustedError) as exc_info:
            await executor.run(operation, context="ctx")

        assert str(exc_info.value).startswith("[INFRA_PRESSURE]")
        assert exc_info.value.cycles == 3
        assert exc_info.value.context == "ctx"
        assert len(operation.slots) == 6
        assert [call.args[0] for call in sleep.await_args_list] == [5.0, 10.0]
        events = ledger.get("ctx").rate_limit_events
        assert "Cycle 1/3 cooldown 5000ms" in events
        assert "Cycle 2/3 cooldown 10000ms" in events
        assert events[-1] == "All rotation cycles exhausted"

    @pytest.mark.asyncio
    async def test_single_identity_cools_down_without_rotation(self) -> None:
        pool = await ready_pool(with_secondary=False)
        sleep = AsyncMock()
        executor = ResilientExecutor(quiet_governor(), pool, sleep_fn=sleep)
        operation = RecordingOperation([429, 429, 200])

        response = await executor.run(operation, context="ctx")

        assert response.status == 200
        assert operation.slots == [IdentitySlot.PRIMARY] * 3
        assert [call.args[0] for call in sleep.await_args_list] == [5.0, 10.0]

    @pytest.mark.asyncio
    async def test_custom_cycles(self) -> None:
        pool = await ready_pool(with_secondary=False)
        executor = ResilientExecutor(
            quiet_governor(),
            pool,
            RotationConfig(max_cycles=1, cooldown_base_ms=100),
            sleep_fn=AsyncMock(),
        )
        operation = RecordingOperation([])
        with pytest.raises(RotationExhaustedError):
            await executor.run(operation)
        assert len(operation.slots) == 1

    @pytest.mark.asyncio
    async def test_business_errors_returned_untouched(self) -> None:
        pool = await ready_pool()
        executor = ResilientExecutor(quiet_governor(), pool, sleep_fn=AsyncMock())

        for status in (400, 404, 500):
            response = await executor.run(RecordingOperation([status]))
            assert response.status == status
        assert pool.rotation_count == 0

    @pytest.mark.asyncio
    async def test_raised_signal_counts_as_throttle(self) -> None:
        pool = await ready_pool()
        executor = ResilientExecutor(quiet_governor(), pool, sleep_fn=AsyncMock())
        operation = RecordingOperation([RateLimitSignal("throttled"), 200])

        response = await executor.run(operation)

        assert response.status == 200
        assert operation.slots == [IdentitySlot.PRIMARY, IdentitySlot.SECONDARY]

    @pytest.mark.asyncio
    async def test_transport_errors_propagate(self) -> None:
        pool = await ready_pool()
        governor = quiet_governor()
        executor = ResilientExecutor(governor, pool, sleep_fn=AsyncMock())

        with pytest.raises(aiohttp.ClientConnectionError):
            await executor.run(RecordingOperation([aiohttp.ClientConnectionError("down")]))
        assert governor.active_requests == 0
        assert pool.rotation_count == 0

    @pytest.mark.asyncio
    async def test_identity_resolved_when_slot_is_granted(self) -> None:
        """A rotation that happens while the call is queued is honored."""
        ledger = ExecutionLedger()
        pool = await ready_pool(ledger=ledger)
        governor = RequestGovernor(
            GovernorConfig(
                max_concurrent=1,
                min_inter_request_delay_ms=0,
                max_delay_ms=0,
                sustained_threshold=1000,
            )
        )
        executor = ResilientExecutor(governor, pool, ledger=ledger, sleep_fn=AsyncMock())
        operation = RecordingOperation([200])
        release = asyncio.Event()

        async def holder() -> None:
            async with governor.permit(label="holder"):
                await release.wait()

        hold_task = asyncio.create_task(holder())
        await asyncio.sleep(0)
        run_task = asyncio.create_task(executor.run(operation, context="ctx"))
        while governor.queue_depth == 0:
            await asyncio.sleep(0)

        assert pool.switch_user("rate limit") is True
        release.set()
        response = await run_task
        await hold_task

        assert response.status == 200
        assert operation.slots == [IdentitySlot.SECONDARY]
        assert ledger.get("ctx").identities == ["secondary"]

    @pytest.mark.asyncio
    async def test_concurrent_throttles_rotate_once(self) -> None:
        """Two calls throttled on the primary both retry on the secondary without cooling down."""
        pool = await ready_pool()
        sleep = AsyncMock()
        executor = ResilientExecutor(quiet_governor(), pool, sleep_fn=sleep)
        both_in_flight = asyncio.Event()
        calls: list[str] = []

        def operation_for(name: str):
            async def operation(identity: Identity) -> ApiResponse:
                calls.append(f"{name}:{identity.slot.value}")
                if identity.slot == IdentitySlot.SECONDARY:
                    return ApiResponse(200, {})
                if sum(call.endswith(":primary") for call in calls) >= 2:
                    both_in_flight.set()
                await both_in_flight.wait()
                return ApiResponse(429, {})

            return operation

        first, second = await asyncio.gather(
            executor.run(operation_for("a"), context="a"),
            executor.run(operation_for("b"), context="b"),
        )

        assert first.status == 200
        assert second.status == 200
        assert sorted(calls) == ["a:primary", "a:secondary", "b:primary", "b:secondary"]
        sleep.assert_not_awaited()
        assert pool.rotation_count == 1
        assert pool.active_slot == IdentitySlot.SECONDARY
