"""
Tests for ConsistencyRegistry confirmation polling and expectation tracking.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import aiohttp
import pytest

from requestgov.consistency import ConsistencyConfig, ConsistencyRegistry, poll_delay_ms
from requestgov.transport.types import ApiResponse


class LaggingList:
    """List endpoint where a record becomes visible after N reads."""

    def __init__(self, visible_on_read: int, record: dict[str, Any]) -> None:
        self.visible_on_read = visible_on_read
        self.record = record
        self.reads = 0

    async def reader(self) -> ApiResponse:
        self.reads += 1
        data = [{"id": 1, "name": "Other"}]
        if self.reads >= self.visible_on_read:
            data.append(self.record)
        return ApiResponse(200, {"success": True, "data": data})


def slept(sleep: AsyncMock) -> list[float]:
    return [call.args[0] for call in sleep.await_args_list]


class TestPollDelay:
    """Tests for poll_delay_ms."""

    def test_first_poll_is_immediate(self) -> None:
        assert poll_delay_ms(0, 500) == 0

    def test_doubles(self) -> None:
        assert [poll_delay_ms(n, 500) for n in (1, 2, 3)] == [500, 1000, 2000]


class TestConsistencyConfig:
    """Tests for ConsistencyConfig."""

    def test_defaults(self) -> None:
        config = ConsistencyConfig()
        assert config.max_attempts == 4
        assert config.base_delay_ms == 500

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError, match="max_attempts"):
            ConsistencyConfig(max_attempts=0)


class TestConfirm:
    """Tests for ConsistencyRegistry.confirm."""

    @pytest.mark.asyncio
    async def test_immediate_match(self) -> None:
        sleep = AsyncMock()
        registry = ConsistencyRegistry(sleep_fn=sleep)
        listing = LaggingList(1, {"id": 7, "name": "Home"})

        result = await registry.confirm(listing.reader, "name", "Home")

        assert result.found
        assert result.item is not None
        assert result.item.id == 7
        assert result.attempts == 1
        assert result.waited_ms == 0
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_match_on_third_read(self) -> None:
        sleep = AsyncMock()
        registry = ConsistencyRegistry(sleep_fn=sleep)
        listing = LaggingList(3, {"id": 7, "name": "Home"})

        result = await registry.confirm(listing.reader, "name", "Home", context="create-item")

        assert result.found
        assert result.attempts == 3
        assert slept(sleep) == [0.5, 1.0]
        assert result.waited_ms == 1500

    @pytest.mark.asyncio
    async def test_timeout_is_a_result(self) -> None:
        sleep = AsyncMock()
        registry = ConsistencyRegistry(sleep_fn=sleep)
        listing = LaggingList(99, {"id": 7, "name": "Home"})

        result = await registry.confirm(listing.reader, "name", "Home", max_attempts=4)

        assert result.timed_out
        assert not result.found
        assert result.attempts == 4
        assert listing.reads == 4
        assert result.waited_ms == 500 + 1000 + 2000

    @pytest.mark.asyncio
    async def test_custom_base_delay(self) -> None:
        sleep = AsyncMock()
        registry = ConsistencyRegistry(sleep_fn=sleep)
        listing = LaggingList(2, {"id": 7, "name": "Home"})

        await registry.confirm(listing.reader, "name", "Home", base_delay_ms=100)
        assert slept(sleep) == [0.1]

    @pytest.mark.asyncio
    async def test_failed_reads_count_as_misses(self) -> None:
        """Transport errors, error statuses and junk bodies never abort the poll."""
        outcomes: list[Any] = [
            aiohttp.ClientConnectionError("reset"),
            ApiResponse(503, {}),
            ApiResponse(200, "not json"),
            ApiResponse(200, {"data": [{"id": "12", "name": "Home"}]}),
        ]

        async def reader() -> ApiResponse:
            outcome = outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome

        registry = ConsistencyRegistry(sleep_fn=AsyncMock())
        result = await registry.confirm(reader, "name", "Home")

        assert result.found
        assert result.attempts == 4
        assert result.item is not None
        assert result.item.id == 12

    @pytest.mark.asyncio
    async def test_match_on_id_normalizes(self) -> None:
        registry = ConsistencyRegistry(sleep_fn=AsyncMock())
        listing = LaggingList(1, {"id": "42", "name": "Home"})

        result = await registry.confirm(listing.reader, "id", 42)
        assert result.found

    @pytest.mark.asyncio
    async def test_confirmed_item_is_cached(self) -> None:
        registry = ConsistencyRegistry(sleep_fn=AsyncMock())
        listing = LaggingList(1, {"id": 7, "name": "Home"})

        await registry.confirm(listing.reader, "name", "Home")
        cached = registry.get_cached("name:Home")
        assert cached is not None
        assert cached.id == 7

        registry.mark_deleted("name:Home")
        assert registry.get_cached("name:Home") is None


class TestExpectations:
    """Tests for register / should_exist / unregister."""

    def test_register_and_unregister(self) -> None:
        registry = ConsistencyRegistry()
        registry.register("item", 5)

        assert registry.should_exist("item", 5)
        assert registry.should_exist("item", "5")
        assert not registry.should_exist("other", 5)

        registry.unregister("item", "5")
        assert not registry.should_exist("item", 5)

    def test_unregister_unknown_is_noop(self) -> None:
        registry = ConsistencyRegistry()
        registry.unregister("item", 1)
        assert not registry.should_exist("item", 1)

    def test_clear(self) -> None:
        registry = ConsistencyRegistry()
        registry.register("item", 1)
        registry.clear()
        assert not registry.should_exist("item", 1)
