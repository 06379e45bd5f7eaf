"""
Tests for CapacityTracker: reconcile, bookkeeping and tiered reclamation.
"""

from __future__ import annotations

import random
from typing import Any
from unittest.mock import AsyncMock

import aiohttp
import pytest

from requestgov.capacity import (
    CapacityConfig,
    CapacityOutcome,
    CapacityTracker,
    ReconcileError,
)
from requestgov.tracking import ExecutionLedger
from requestgov.transport.types import ApiResponse, ItemId


class FakeCollection:
    """Remote item list with scripted failures for reads and deletes."""

    def __init__(self, count: int, *, default_id: int | None = 1, owner: int = 77) -> None:
        self.items: list[dict[str, Any]] = [
            {"id": n, "is_default": n == default_id, "client_id": owner} for n in range(1, count + 1)
        ]
        self.read_script: list[int | BaseException] = []
        self.delete_script: list[int] = []
        self.deleted: list[ItemId] = []
        self.reads = 0

    async def reader(self) -> ApiResponse:
        self.reads += 1
        if self.read_script:
            outcome = self.read_script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome != 200:
                return ApiResponse(outcome, {"message": "nope"})
        return ApiResponse(200, {"success": True, "status": "success", "data": list(self.items)})

    async def deleter(self, item_id: ItemId) -> ApiResponse:
        if self.delete_script:
            status = self.delete_script.pop(0)
            if status != 200:
                return ApiResponse(status, {})
        for item in self.items:
            if item["id"] == item_id:
                if item["is_default"]:
                    return ApiResponse(400, {"message": "default"})
                self.items.remove(item)
                self.deleted.append(item_id)
                return ApiResponse(200, {"success": True})
        return ApiResponse(404, {})

    def add(self, item_id: int) -> None:
        self.items.append({"id": item_id, "is_default": False, "client_id": 77})


def make_tracker(
    ledger: ExecutionLedger | None = None, **overrides: Any
) -> tuple[CapacityTracker, AsyncMock]:
    sleep = AsyncMock()
    tracker = CapacityTracker(
        CapacityConfig(**overrides),
        ledger=ledger,
        sleep_fn=sleep,
        rng=random.Random(3),
    )
    return tracker, sleep


class TestCapacityConfig:
    """Tests for CapacityConfig."""

    def test_defaults(self) -> None:
        config = CapacityConfig()
        assert config.limit == 20
        assert config.safety_margin == 3
        assert config.max_forced_deletions == 5
        assert config.resync_threshold == 17
        assert config.list_params == {"per_page": "100"}

    def test_rejects_margin_at_limit(self) -> None:
        with pytest.raises(ValueError, match="safety_margin"):
            CapacityConfig(limit=3, safety_margin=3)


class TestReconcile:
    """Tests for CapacityTracker.reconcile."""

    @pytest.mark.asyncio
    async def test_replaces_local_mirror(self) -> None:
        remote = FakeCollection(5, default_id=2)
        tracker, _ = make_tracker()
        tracker.track_created(999)

        state = await tracker.reconcile(remote.reader)

        assert state.item_count == 5
        assert state.default_item_id == 2
        assert state.owner_id == 77
        assert state.synced is True
        assert not tracker.needs_resync()

    @pytest.mark.asyncio
    async def test_accepts_bare_list(self) -> None:
        tracker, _ = make_tracker()

        async def reader() -> ApiResponse:
            return ApiResponse(200, [{"id": "9", "is_default": "1"}])

        state = await tracker.reconcile(reader)
        assert state.item_count == 1
        assert state.default_item_id == 9

    @pytest.mark.asyncio
    async def test_persistent_throttle_assumes_full(self) -> None:
        remote = FakeCollection(2)
        remote.read_script = [429, 429, 429, 429]
        tracker, sleep = make_tracker()

        state = await tracker.reconcile(remote.reader)

        assert state.item_count == 20
        assert tracker.is_at_capacity()
        assert sleep.await_count == 3

    @pytest.mark.asyncio
    async def test_throttle_then_success(self) -> None:
        remote = FakeCollection(4)
        remote.read_script = [429]
        tracker, sleep = make_tracker()

        state = await tracker.reconcile(remote.reader)

        assert state.item_count == 4
        assert sleep.await_count == 1
        assert 3.0 <= sleep.await_args.args[0] <= 5.0

    @pytest.mark.asyncio
    async def test_error_status_raises_after_retries(self) -> None:
        remote = FakeCollection(4)
        remote.read_script = [500, 500, 500, 500]
        tracker, sleep = make_tracker()

        with pytest.raises(ReconcileError, match="status 500"):
            await tracker.reconcile(remote.reader)
        assert remote.reads == 4
        assert [call.args[0] for call in sleep.await_args_list] == [2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_malformed_body_raises(self) -> None:
        tracker, _ = make_tracker(reconcile_attempts=1)

        async def reader() -> ApiResponse:
            return ApiResponse(200, {"success": False, "data": []})

        with pytest.raises(ReconcileError, match="invalid response structure"):
            await tracker.reconcile(reader)

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self) -> None:
        remote = FakeCollection(3)
        remote.read_script = [aiohttp.ClientConnectionError("reset")]
        tracker, _ = make_tracker()

        state = await tracker.reconcile(remote.reader)
        assert state.item_count == 3


class TestBookkeeping:
    """Tests for track_created / track_deleted."""

    def test_created_ids_are_normalized_and_deduplicated(self) -> None:
        tracker, _ = make_tracker()
        tracker.track_created("42")
        tracker.track_created(42)
        assert tracker.created_items() == [42]
        assert tracker.item_count == 1

    def test_untracked_delete_leaves_count(self) -> None:
        tracker, _ = make_tracker()
        tracker.track_created(1)
        tracker.track_deleted(2)
        assert tracker.item_count == 1
        tracker.track_deleted("1")
        assert tracker.item_count == 0
        assert tracker.created_items() == []

    def test_invalid_id_is_ignored(self) -> None:
        tracker, _ = make_tracker()
        tracker.track_created("")
        assert tracker.item_count == 0

    def test_needs_resync_near_limit(self) -> None:
        tracker, _ = make_tracker()
        state = tracker.state()
        state.synced = True
        state.item_count = 16
        assert not tracker.needs_resync()
        state.item_count = 17
        assert tracker.needs_resync()

    def test_state_is_scoped(self) -> None:
        scope = {"key": "a"}
        tracker = CapacityTracker(scope_fn=lambda: scope["key"])
        tracker.track_created(1)
        scope["key"] = "b"
        assert tracker.item_count == 0
        scope["key"] = "a"
        assert tracker.item_count == 1


class TestEnsureCapacity:
    """Tests for tiered reclamation."""

    @pytest.mark.asyncio
    async def test_available_below_limit(self) -> None:
        remote = FakeCollection(10)
        tracker, _ = make_tracker()

        report = await tracker.ensure_capacity(remote.reader, remote.deleter)

        assert report.outcome == CapacityOutcome.AVAILABLE
        assert report.available
        assert report.reconciled
        assert remote.deleted == []

    @pytest.mark.asyncio
    async def test_tracked_cleanup_frees_room(self) -> None:
        remote = FakeCollection(18)
        ledger = ExecutionLedger()
        tracker, _ = make_tracker(ledger)
        await tracker.reconcile(remote.reader)
        for item_id in (101, 102):
            remote.add(item_id)
            tracker.track_created(item_id)
        assert tracker.is_at_capacity()
        report = await tracker.ensure_capacity(remote.reader, remote.deleter, context="ctx")

        assert report.outcome == CapacityOutcome.FREED_TRACKED
        assert sorted(report.deleted_ids) == [101, 102]
        assert report.item_count == 18
        assert tracker.created_items() == []
        assert ledger.get("ctx").cleanup_actions == ["Tracked cleanup deleted 2 item(s)"]

    @pytest.mark.asyncio
    async def test_forced_cleanup_with_empty_tracked_set(self) -> None:
        """Full quota, nothing tracked: at most 5 newest non-default items go."""
        remote = FakeCollection(20, default_id=20)
        tracker, sleep = make_tracker()

        report = await tracker.ensure_capacity(remote.reader, remote.deleter)

        assert report.outcome == CapacityOutcome.FREED_FORCED
        assert remote.deleted == [19, 18, 17, 16, 15]
        assert 20 not in report.deleted_ids
        assert report.item_count == 15
        # post-cleanup cooldown
        assert any(call.args[0] == 1.0 for call in sleep.await_args_list)

    @pytest.mark.asyncio
    async def test_never_deletes_default_in_tracked_cleanup(self) -> None:
        remote = FakeCollection(19, default_id=None)
        tracker, _ = make_tracker(max_forced_deletions=0)
        remote.items.append({"id": 500, "is_default": True, "client_id": 77})
        tracker.track_created(500)
        await tracker.reconcile(remote.reader)

        report = await tracker.ensure_capacity(remote.reader, remote.deleter)

        assert 500 not in remote.deleted
        assert report.outcome == CapacityOutcome.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_unavailable_when_nothing_can_be_deleted(self) -> None:
        remote = FakeCollection(20)
        remote.delete_script = [403] * 10
        tracker, _ = make_tracker()

        report = await tracker.ensure_capacity(remote.reader, remote.deleter, context="ctx")

        assert report.outcome == CapacityOutcome.UNAVAILABLE
        assert not report.available
        assert report.deleted_ids == []

    @pytest.mark.asyncio
    async def test_forced_delete_retries_once_on_throttle(self) -> None:
        remote = FakeCollection(20)
        remote.delete_script = [429]
        tracker, sleep = make_tracker(max_forced_deletions=1)

        report = await tracker.ensure_capacity(remote.reader, remote.deleter)

        assert report.outcome == CapacityOutcome.FREED_FORCED
        assert remote.deleted == [20]
        assert sleep.await_args_list[0].args[0] == 3.0

    @pytest.mark.asyncio
    async def test_failed_resync_keeps_local_count(self) -> None:
        remote = FakeCollection(5)
        remote.read_script = [500]
        tracker, _ = make_tracker(reconcile_attempts=1)

        report = await tracker.ensure_capacity(remote.reader, remote.deleter)

        assert report.outcome == CapacityOutcome.AVAILABLE
        assert report.reconciled is False
        assert tracker.needs_resync()
