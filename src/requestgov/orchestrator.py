"""
Orchestrator: builds and owns every component of one run.

There is exactly one RequestGovernor per orchestrator and every remote
call goes through it. Functional calls run through the ResilientExecutor
(rotation on throttling); cleanup calls go through the governor directly
at LOW priority so they always act on the identity whose quota is being
reclaimed.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Any

from requestgov.capacity.tracker import CapacityReport, CapacityTracker, ReconcileError
from requestgov.consistency.registry import ConfirmationResult, ConsistencyRegistry
from requestgov.credentials.pool import CredentialPool, Identity, TokenStore
from requestgov.execution.resilient import ResilientExecutor
from requestgov.governance.governor import GovernorTelemetry, RequestGovernor, RequestPriority
from requestgov.telemetry.exporter import MetricsExporter
from requestgov.tracking.classifier import FailureCategory, classify_exception
from requestgov.tracking.ledger import ExecutionLedger
from requestgov.transport.http_client import HealthStatus, RemoteApiClient
from requestgov.transport.types import ApiResponse, ItemId, extract_item_id, is_success

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from types import TracebackType

    from prometheus_client.registry import CollectorRegistry

    from requestgov.config import OrchestratorConfig

logger = logging.getLogger(__name__)

# Status the API answers a create with when the identity is at its item limit.
CAPACITY_REJECTION_STATUS = 400

ITEM_KIND = "item"


class Orchestrator:
    """
    Dependency root for a governed run against the item API.

    Usage:
        config = OrchestratorConfig.from_env()
        async with Orchestrator(config) as orch:
            response = await orch.create_with_capacity(payload, context="create-home")
            result = await orch.confirm_visible("name", payload["name"], context="create-home")
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        client: RemoteApiClient | None = None,
        *,
        ledger: ExecutionLedger | None = None,
        metrics_registry: CollectorRegistry | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
        _time_fn: Callable[[], int] | None = None,
    ) -> None:
        """
        Wire every component.

        Args:
            config: Run configuration.
            client: API client; one is created from ``config`` (and closed
                by ``close``) when omitted.
            ledger: Execution ledger; defaults to one at ``config.ledger_path``.
            metrics_registry: Prometheus registry for the exporter.
            sleep_fn: Async sleep shared by every component.
            rng: Seeded RNG for deterministic jitter.
        """
        self._config = config
        self._owns_client = client is None
        self._client = client or RemoteApiClient(
            config.base_url,
            endpoints=config.endpoints,
            request_timeout_ms=config.request_timeout_ms,
        )
        self._sleep_fn = sleep_fn or asyncio.sleep
        self._ledger = ledger if ledger is not None else ExecutionLedger(config.ledger_path)

        self._governor = RequestGovernor(config.governor, _time_fn=_time_fn, _sleep_fn=sleep_fn)
        self._tokens = TokenStore()
        self._pool = CredentialPool(
            self._client.login,
            config.primary,
            config.secondary,
            config=config.pool,
            token_store=self._tokens,
            ledger=self._ledger,
            sleep_fn=self._sleep_fn,
            rng=rng,
            _time_fn=_time_fn,
        )
        self._executor = ResilientExecutor(
            self._governor,
            self._pool,
            config.rotation,
            ledger=self._ledger,
            sleep_fn=self._sleep_fn,
        )
        self._tracker = CapacityTracker(
            config.capacity,
            scope_fn=lambda: self._pool.active_slot,
            ledger=self._ledger,
            sleep_fn=self._sleep_fn,
            rng=rng,
        )
        self._registry = ConsistencyRegistry(config.consistency, sleep_fn=self._sleep_fn)
        self._exporter = MetricsExporter(metrics_registry)
        self._started = False

    # --- components ----------------------------------------------------------

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def governor(self) -> RequestGovernor:
        return self._governor

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    @property
    def executor(self) -> ResilientExecutor:
        return self._executor

    @property
    def tracker(self) -> CapacityTracker:
        return self._tracker

    @property
    def registry(self) -> ConsistencyRegistry:
        return self._registry

    @property
    def ledger(self) -> ExecutionLedger:
        return self._ledger

    @property
    def exporter(self) -> MetricsExporter:
        return self._exporter

    # --- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """
        Authenticate the identity pool and take a first capacity reading.

        Raises:
            AuthenticationError: No identity could log in.
        """
        await self._pool.initialize()
        await self._resync()
        self._started = True
        logger.info(
            "Orchestrator started",
            extra={
                "active": self._pool.active_slot.value,
                "item_count": self._tracker.item_count,
                "limit": self._config.capacity.limit,
            },
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.close()
        self._started = False

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def preflight(self) -> HealthStatus:
        """Probe the API; with an authenticated pool the token is checked too."""
        status = await self._client.probe(self._pool.token)
        if not status.healthy:
            logger.error("Pre-flight check failed", extra={"details": status.details})
        return status

    # --- helpers -------------------------------------------------------------

    def _token_for(self, identity: Identity) -> str | None:
        return self._tokens.get_token(identity.slot)

    def _note_language(self, context: str, language: str | None) -> None:
        if language and context:
            self._ledger.record_language(context, language)

    async def _governed(
        self,
        operation: Callable[[], Awaitable[ApiResponse]],
        *,
        priority: RequestPriority,
        label: str,
        context: str = "",
    ) -> ApiResponse:
        response = await self._governor.execute(
            operation, priority=priority, label=label, context=context
        )
        self._governor.record_response(response.status, context)
        return response

    async def _reconcile_reader(self) -> ApiResponse:
        return await self._governed(
            lambda: self._client.list_items(self._pool.token, self._config.capacity.list_params),
            priority=RequestPriority.NORMAL,
            label="reconcile",
        )

    async def _resync(self) -> bool:
        try:
            await self._tracker.reconcile(self._reconcile_reader)
        except ReconcileError as e:
            logger.warning("Capacity resync failed", extra={"error": str(e)})
            return False
        return True

    # --- resilient CRUD ------------------------------------------------------

    async def list_items(
        self,
        *,
        context: str = "",
        params: dict[str, str] | None = None,
        language: str | None = None,
    ) -> ApiResponse:
        self._note_language(context, language)
        query = params if params is not None else self._config.capacity.list_params
        return await self._executor.run(
            lambda identity: self._client.list_items(
                self._token_for(identity), query, language=language
            ),
            context=context,
            label="list_items",
        )

    async def create_item(
        self,
        payload: dict[str, Any],
        *,
        context: str = "",
        language: str | None = None,
    ) -> ApiResponse:
        """Create one item; a created id is tracked for later cleanup."""
        self._note_language(context, language)
        response = await self._executor.run(
            lambda identity: self._client.create_item(
                self._token_for(identity), payload, language=language
            ),
            context=context,
            label="create_item",
        )
        if is_success(response.status):
            item_id = extract_item_id(response.body)
            if item_id is not None:
                self._tracker.track_created(item_id)
                self._registry.register(ITEM_KIND, item_id)
            else:
                logger.warning("Create response carried no item id", extra={"context": context})
        return response

    async def update_item(
        self,
        item_id: ItemId,
        payload: dict[str, Any],
        *,
        context: str = "",
        language: str | None = None,
    ) -> ApiResponse:
        self._note_language(context, language)
        return await self._executor.run(
            lambda identity: self._client.update_item(
                self._token_for(identity), item_id, payload, language=language
            ),
            context=context,
            label="update_item",
        )

    async def delete_item(self, item_id: ItemId, *, context: str = "") -> ApiResponse:
        response = await self._executor.run(
            lambda identity: self._client.delete_item(self._token_for(identity), item_id),
            context=context,
            label="delete_item",
        )
        if is_success(response.status):
            self._tracker.track_deleted(item_id)
            self._registry.unregister(ITEM_KIND, item_id)
        return response

    async def set_default(self, item_id: ItemId, *, context: str = "") -> ApiResponse:
        return await self._executor.run(
            lambda identity: self._client.set_default(self._token_for(identity), item_id),
            context=context,
            label="set_default",
        )

    # --- cleanup path --------------------------------------------------------

    async def cleanup_reader(self) -> ApiResponse:
        """List the active identity's items at LOW priority, without rotation."""
        return await self._governed(
            lambda: self._client.list_items(self._pool.token, self._config.capacity.list_params),
            priority=RequestPriority.LOW,
            label="cleanup_list",
        )

    async def cleanup_deleter(self, item_id: ItemId) -> ApiResponse:
        """Delete one of the active identity's items at LOW priority, without rotation."""
        response = await self._governed(
            lambda: self._client.delete_item(self._pool.token, item_id),
            priority=RequestPriority.LOW,
            label="cleanup_delete",
        )
        if is_success(response.status):
            self._registry.unregister(ITEM_KIND, item_id)
        return response

    # --- capacity ------------------------------------------------------------

    async def ensure_capacity(self, context: str = "") -> CapacityReport:
        return await self._tracker.ensure_capacity(
            self.cleanup_reader, self.cleanup_deleter, context=context
        )

    async def create_with_capacity(
        self,
        payload: dict[str, Any],
        *,
        context: str = "",
        language: str | None = None,
    ) -> ApiResponse:
        """
        Create an item, reclaiming capacity and retrying once on a limit rejection.

        Returns:
            The last create response. A limit rejection after the retry is
            returned as is; the caller decides whether to skip.
        """
        response = await self.create_item(payload, context=context, language=language)
        if response.status != CAPACITY_REJECTION_STATUS:
            return response

        logger.warning("Create rejected, reclaiming capacity", extra={"context": context})
        report = await self.ensure_capacity(context)
        if not report.available:
            await self.handle_capacity_exhaustion(context)
        await self._sleep_fn(self._config.capacity_retry_pause_ms / 1000)

        response = await self.create_item(payload, context=context, language=language)
        if response.status == CAPACITY_REJECTION_STATUS:
            logger.error("Item limit reached after retry", extra={"context": context})
            self._ledger.record_failure_category(context, FailureCategory.INFRA_PRESSURE.value)
        return response

    async def handle_capacity_exhaustion(self, context: str = "") -> bool:
        """
        React to the active identity being full.

        Rotates to the other identity when it is usable; when every identity
        is exhausted, deletes this run's items, clears exhaustion and starts
        over on the primary.

        Returns:
            True if the now-active identity has room.
        """
        if self._pool.mark_exhausted("item limit", context):
            await self._resync()
            return not self._tracker.is_at_capacity()

        await self._tracker.cleanup_tracked(self.cleanup_deleter, context=context)
        self._pool.reset_exhaustion()
        await self._resync()
        available = not self._tracker.is_at_capacity()
        if not available:
            logger.error(
                "Capacity unavailable on every identity",
                extra={"context": context, "count": self._tracker.item_count},
            )
        return available

    # --- consistency ---------------------------------------------------------

    async def confirm_visible(
        self,
        match_field: str,
        match_value: Any,
        *,
        context: str = "",
        max_attempts: int | None = None,
    ) -> ConfirmationResult:
        """Poll the active identity's list until a record matches."""
        return await self._registry.confirm(
            lambda: self._governed(
                lambda: self._client.list_items(
                    self._pool.token, self._config.capacity.list_params
                ),
                priority=RequestPriority.NORMAL,
                label="confirm_list",
                context=context,
            ),
            match_field,
            match_value,
            max_attempts=max_attempts,
            context=context,
        )

    # --- reporting -----------------------------------------------------------

    def record_failure(self, context: str, exc: BaseException) -> FailureCategory:
        """Classify a failure and store the category in the ledger."""
        category = classify_exception(exc)
        self._ledger.record_failure_category(context, category.value)
        logger.info(
            "Failure classified",
            extra={"context": context, "category": category.value, "error": type(exc).__name__},
        )
        return category

    def snapshot_telemetry(self, context: str) -> GovernorTelemetry:
        """Store the governor's current numbers under ``context``."""
        telemetry = self._governor.get_telemetry()
        self._ledger.record_governor_stats(
            context,
            delay_ms=telemetry.current_delay_ms,
            pauses=telemetry.system_pauses,
            total_429s=telemetry.total_429s,
        )
        return telemetry

    def update_metrics(self) -> None:
        self._exporter.update(governor=self._governor, pool=self._pool, tracker=self._tracker)

    def health(self) -> dict[str, Any]:
        """Health payload for /healthz."""
        return {
            "healthy": self._started and self._pool.has_any_authentication(),
            "active_identity": self._pool.active_slot.value,
            "exhausted_identities": self._pool.exhausted_count(),
            "governor": self._governor.get_status(),
            "capacity": {
                "item_count": self._tracker.item_count,
                "limit": self._config.capacity.limit,
                "tracked": len(self._tracker.created_items()),
            },
        }
