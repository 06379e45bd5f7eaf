"""
Capacity tracking for a remote collection with a hard per-identity limit.

The tracker mirrors how many items the active identity owns, which one is
the protected default, and which ids this run created. The mirror is only
best-effort between full reads, so every decision near the limit re-reads
the remote collection first.

When the limit is reached, ``ensure_capacity`` reclaims room in tiers:

1. Tracked cleanup: delete what this run created (never the default).
2. Forced cleanup: delete up to ``max_forced_deletions`` of the newest
   non-default items the remote reports.
3. Give up with CapacityOutcome.UNAVAILABLE; the caller skips, never fails.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import aiohttp

from requestgov.governance.backoff import (
    DEFAULT_RATE_LIMIT_STATUSES,
    SERVER_ERROR_BACKOFF,
    THROTTLE_BACKOFF,
    BackoffConfig,
    BackoffState,
    RateLimitSignal,
    compute_backoff_delay,
)
from requestgov.transport.types import ItemId, RemoteItem, is_success, normalize_id, parse_items

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Hashable

    from requestgov.tracking.ledger import ExecutionLedger
    from requestgov.transport.types import ResponseLike

logger = logging.getLogger(__name__)

_DEFAULT_SCOPE = "default"


class ReconcileError(Exception):
    """A full read of the remote collection could not be completed."""


class CapacityOutcome(str, Enum):
    """Result of ``ensure_capacity``."""

    AVAILABLE = "AVAILABLE"  # room existed already
    FREED_TRACKED = "FREED_TRACKED"  # room made by deleting this run's items
    FREED_FORCED = "FREED_FORCED"  # room made by deleting pre-existing items
    UNAVAILABLE = "UNAVAILABLE"  # still at the limit


@dataclass
class CapacityConfig:
    """Limits and pacing of capacity reclamation."""

    limit: int = 20
    safety_margin: int = 3  # re-read the remote when count >= limit - margin
    max_forced_deletions: int = 5
    rate_limit_retry_pause_ms: int = 3000
    post_cleanup_cooldown_ms: int = 1000
    reconcile_attempts: int = 4
    list_params: dict[str, str] = field(default_factory=lambda: {"per_page": "100"})
    throttle_backoff: BackoffConfig = THROTTLE_BACKOFF
    server_error_backoff: BackoffConfig = SERVER_ERROR_BACKOFF
    rate_limit_statuses: frozenset[int] = DEFAULT_RATE_LIMIT_STATUSES

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")
        if not 0 <= self.safety_margin < self.limit:
            raise ValueError(f"safety_margin must be in [0, limit), got {self.safety_margin}")
        if self.max_forced_deletions < 0:
            raise ValueError(f"max_forced_deletions must be >= 0, got {self.max_forced_deletions}")
        if self.reconcile_attempts < 1:
            raise ValueError(f"reconcile_attempts must be >= 1, got {self.reconcile_attempts}")

    @property
    def resync_threshold(self) -> int:
        return self.limit - self.safety_margin


@dataclass
class CapacityState:
    """Local mirror of one identity's collection."""

    item_count: int = 0
    default_item_id: ItemId | None = None
    created_this_run: set[ItemId] = field(default_factory=set)
    owner_id: ItemId | None = None
    synced: bool = False


@dataclass
class CapacityReport:
    """What ``ensure_capacity`` did and where it ended up."""

    outcome: CapacityOutcome
    item_count: int
    deleted_ids: list[ItemId] = field(default_factory=list)
    reconciled: bool = False

    @property
    def available(self) -> bool:
        return self.outcome != CapacityOutcome.UNAVAILABLE


class CapacityTracker:
    """
    Per-identity capacity mirror with tiered reclamation.

    Usage:
        tracker = CapacityTracker(scope_fn=lambda: pool.active_slot)
        await tracker.reconcile(reader)
        report = await tracker.ensure_capacity(reader, deleter, context="create-item")
        if not report.available:
            ...  # skip, the identity is full
    """

    def __init__(
        self,
        config: CapacityConfig | None = None,
        *,
        scope_fn: Callable[[], Hashable] | None = None,
        ledger: ExecutionLedger | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            config: Limits and pacing.
            scope_fn: Returns the key of the identity currently in use; state
                is kept per key so that rotation switches the mirror too.
            ledger: Optional execution ledger for cleanup actions.
            sleep_fn: Async sleep used for backoff and cooldowns.
            rng: Seeded RNG for deterministic jitter.
        """
        self._config = config or CapacityConfig()
        self._scope_fn = scope_fn
        self._ledger = ledger
        self._sleep_fn = sleep_fn or asyncio.sleep
        self._rng = rng
        self._states: dict[Hashable, CapacityState] = {}

    @property
    def config(self) -> CapacityConfig:
        return self._config

    def _scope(self) -> Hashable:
        return self._scope_fn() if self._scope_fn is not None else _DEFAULT_SCOPE

    def state(self) -> CapacityState:
        """Mirror of the identity currently in use."""
        return self._states.setdefault(self._scope(), CapacityState())

    def reset(self) -> None:
        """Forget the mirror of the current identity; the next use re-reads it."""
        self._states[self._scope()] = CapacityState()

    # --- queries -------------------------------------------------------------

    @property
    def item_count(self) -> int:
        return self.state().item_count

    @property
    def default_item_id(self) -> ItemId | None:
        return self.state().default_item_id

    @property
    def owner_id(self) -> ItemId | None:
        return self.state().owner_id

    def created_items(self) -> list[ItemId]:
        return list(self.state().created_this_run)

    def is_at_capacity(self) -> bool:
        return self.state().item_count >= self._config.limit

    def needs_resync(self) -> bool:
        state = self.state()
        return not state.synced or state.item_count >= self._config.resync_threshold

    # --- local bookkeeping ---------------------------------------------------

    def track_created(self, item_id: ItemId) -> None:
        """Record an item this run created."""
        try:
            normalized = normalize_id(item_id)
        except ValueError:
            logger.error("Cannot track item with invalid id", extra={"item_id": repr(item_id)})
            return
        state = self.state()
        if normalized in state.created_this_run:
            return
        state.created_this_run.add(normalized)
        state.item_count += 1
        logger.debug("Tracked created item", extra={"item_id": normalized, "count": state.item_count})

    def track_deleted(self, item_id: ItemId) -> None:
        """Record deletion of an item this run created; other ids wait for reconcile."""
        try:
            normalized = normalize_id(item_id)
        except ValueError:
            return
        state = self.state()
        if normalized not in state.created_this_run:
            return
        state.created_this_run.discard(normalized)
        state.item_count = max(0, state.item_count - 1)
        logger.debug("Untracked deleted item", extra={"item_id": normalized, "count": state.item_count})

    # --- remote reads --------------------------------------------------------

    def _apply(self, items: list[RemoteItem]) -> None:
        state = self.state()
        state.item_count = len(items)
        default = next((item for item in items if item.is_default), None)
        state.default_item_id = default.id if default is not None else None
        if items and items[0].client_id is not None:
            state.owner_id = items[0].client_id
        state.synced = True

    async def _backoff(self, config: BackoffConfig, attempt: int) -> int:
        delay_ms = compute_backoff_delay(config, BackoffState(attempt=attempt + 1), rng=self._rng)
        await self._sleep_fn(delay_ms / 1000)
        return delay_ms

    async def reconcile(self, reader: Callable[[], Awaitable[ResponseLike]]) -> CapacityState:
        """
        Replace the mirror with a full read of the remote collection.

        Throttled reads back off; if throttling persists the identity is
        assumed to be at the limit so nothing gets created blindly.

        Raises:
            ReconcileError: Every attempt failed with an error status, a
                malformed body or a transport fault.
        """
        attempts = self._config.reconcile_attempts
        last_error = "no attempt made"
        for attempt in range(attempts):
            is_last = attempt == attempts - 1
            try:
                response = await reader()
            except (aiohttp.ClientError, TimeoutError, RateLimitSignal) as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if response.status in self._config.rate_limit_statuses:
                    if is_last:
                        state = self.state()
                        state.item_count = self._config.limit
                        logger.error(
                            "Reconcile throttled on every attempt, assuming the limit is reached",
                            extra={"limit": self._config.limit},
                        )
                        return state
                    delay_ms = await self._backoff(self._config.throttle_backoff, attempt)
                    logger.warning(
                        "Reconcile throttled, retrying",
                        extra={"attempt": attempt + 1, "delay_ms": delay_ms},
                    )
                    continue

                if is_success(response.status):
                    try:
                        items = parse_items(response.body)
                    except ValueError as e:
                        last_error = f"invalid response structure: {e}"
                    else:
                        self._apply(items)
                        state = self.state()
                        logger.info(
                            "Capacity reconciled",
                            extra={
                                "count": state.item_count,
                                "limit": self._config.limit,
                                "default_item_id": state.default_item_id,
                            },
                        )
                        return state
                else:
                    last_error = f"list returned status {response.status}"

            if not is_last:
                delay_ms = await self._backoff(self._config.server_error_backoff, attempt)
                logger.warning(
                    "Reconcile failed, retrying",
                    extra={"attempt": attempt + 1, "error": last_error, "delay_ms": delay_ms},
                )

        raise ReconcileError(f"Could not read remote collection: {last_error}")

    async def _reconcile_quietly(self, reader: Callable[[], Awaitable[ResponseLike]]) -> bool:
        try:
            await self.reconcile(reader)
        except ReconcileError as e:
            logger.warning("Reconcile failed, keeping local count", extra={"error": str(e)})
            return False
        return True

    # --- reclamation ---------------------------------------------------------

    def _note_cleanup(self, context: str, action: str) -> None:
        if self._ledger is not None and context:
            self._ledger.record_cleanup(context, action)

    async def _delete(
        self,
        deleter: Callable[[ItemId], Awaitable[ResponseLike]],
        item_id: ItemId,
        *,
        retry_throttled: bool,
    ) -> bool:
        for attempt in range(2 if retry_throttled else 1):
            try:
                response = await deleter(item_id)
            except (aiohttp.ClientError, TimeoutError, RateLimitSignal) as e:
                logger.warning(
                    "Cleanup delete failed",
                    extra={"item_id": item_id, "error": type(e).__name__},
                )
                return False
            if is_success(response.status):
                return True
            if response.status in self._config.rate_limit_statuses and attempt == 0 and retry_throttled:
                await self._sleep_fn(self._config.rate_limit_retry_pause_ms / 1000)
                continue
            logger.warning(
                "Cleanup delete rejected",
                extra={"item_id": item_id, "status": response.status},
            )
            return False
        return False

    async def cleanup_tracked(
        self,
        deleter: Callable[[ItemId], Awaitable[ResponseLike]],
        *,
        context: str = "",
    ) -> list[ItemId]:
        """
        Delete every item this run created, skipping the default.

        The tracked set is cleared afterwards whatever the individual results.

        Returns:
            Ids that were deleted.
        """
        state = self.state()
        deleted: list[ItemId] = []
        for item_id in sorted(state.created_this_run, key=str):
            if state.default_item_id is not None and item_id == state.default_item_id:
                logger.warning("Skipping default item in cleanup", extra={"item_id": item_id})
                continue
            if await self._delete(deleter, item_id, retry_throttled=False):
                deleted.append(item_id)
                state.item_count = max(0, state.item_count - 1)
        state.created_this_run.clear()
        self._note_cleanup(context, f"Tracked cleanup deleted {len(deleted)} item(s)")
        logger.info("Tracked cleanup finished", extra={"deleted": len(deleted), "context": context})
        return deleted

    def _forced_candidates(self, items: list[RemoteItem]) -> list[ItemId]:
        default_id = self.state().default_item_id
        candidates = [
            item.id
            for item in items
            if not item.is_default and (default_id is None or item.id != default_id)
        ]
        # The API lists oldest first; reclaim the newest.
        candidates.reverse()
        return candidates[: self._config.max_forced_deletions]

    async def _forced_cleanup(
        self,
        reader: Callable[[], Awaitable[ResponseLike]],
        deleter: Callable[[ItemId], Awaitable[ResponseLike]],
        context: str,
    ) -> list[ItemId]:
        try:
            response = await reader()
        except (aiohttp.ClientError, TimeoutError, RateLimitSignal) as e:
            logger.warning("Forced cleanup could not list items", extra={"error": type(e).__name__})
            return []
        if not is_success(response.status):
            logger.warning("Forced cleanup list rejected", extra={"status": response.status})
            return []
        try:
            items = parse_items(response.body)
        except ValueError as e:
            logger.warning("Forced cleanup got a malformed list", extra={"error": str(e)})
            return []

        deleted: list[ItemId] = []
        for item_id in self._forced_candidates(items):
            if await self._delete(deleter, item_id, retry_throttled=True):
                deleted.append(item_id)
                state = self.state()
                state.item_count = max(0, state.item_count - 1)
        if deleted:
            await self._sleep_fn(self._config.post_cleanup_cooldown_ms / 1000)
        self._note_cleanup(context, f"Forced cleanup deleted {len(deleted)} item(s)")
        logger.warning(
            "Forced cleanup finished",
            extra={"deleted": len(deleted), "context": context},
        )
        return deleted

    async def ensure_capacity(
        self,
        reader: Callable[[], Awaitable[ResponseLike]],
        deleter: Callable[[ItemId], Awaitable[ResponseLike]],
        *,
        context: str = "",
    ) -> CapacityReport:
        """
        Make room for one more item if the identity is at its limit.

        Args:
            reader: Lists the identity's items (one remote call).
            deleter: Deletes one item by id (one remote call).
            context: Caller context for logs and the ledger.

        Returns:
            CapacityReport; ``UNAVAILABLE`` means the caller should skip.
        """
        reconciled = False
        if self.needs_resync():
            reconciled = await self._reconcile_quietly(reader)

        if not self.is_at_capacity():
            return CapacityReport(CapacityOutcome.AVAILABLE, self.item_count, reconciled=reconciled)

        logger.warning(
            "Item limit reached, reclaiming capacity",
            extra={"count": self.item_count, "limit": self._config.limit, "context": context},
        )

        deleted: list[ItemId] = []
        if self.state().created_this_run:
            deleted.extend(await self.cleanup_tracked(deleter, context=context))
            reconciled = await self._reconcile_quietly(reader) or reconciled
            if not self.is_at_capacity():
                return CapacityReport(
                    CapacityOutcome.FREED_TRACKED, self.item_count, deleted, reconciled
                )

        deleted.extend(await self._forced_cleanup(reader, deleter, context))
        reconciled = await self._reconcile_quietly(reader) or reconciled
        if not self.is_at_capacity():
            return CapacityReport(CapacityOutcome.FREED_FORCED, self.item_count, deleted, reconciled)

        self._note_cleanup(context, "Capacity unavailable after cleanup")
        logger.error(
            "Capacity unavailable after cleanup",
            extra={"count": self.item_count, "limit": self._config.limit, "context": context},
        )
        return CapacityReport(CapacityOutcome.UNAVAILABLE, self.item_count, deleted, reconciled)
