"""
Prometheus metrics exporter for requestgov.

Exports only low-cardinality series: no per-context, per-item or
per-identity labels. Counters mirror monotonic totals kept by the
components and are advanced by the delta since the previous update.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

if TYPE_CHECKING:
    from requestgov.capacity.tracker import CapacityTracker
    from requestgov.credentials.pool import CredentialPool
    from requestgov.governance.governor import RequestGovernor


# Labels that would explode cardinality or leak identities.
FORBIDDEN_LABELS = frozenset(
    {
        "context",
        "test_id",
        "item_id",
        "identity",
        "login",
        "user",
        "token",
        "endpoint",
        "path",
        "url",
        "ip",
    }
)


class MetricsExporter:
    """
    Syncs component state into a Prometheus registry.

    Metric families:
    - requestgov_gov_*      : RequestGovernor pacing and pressure
    - requestgov_pool_*     : CredentialPool rotation
    - requestgov_capacity_* : CapacityTracker mirror of the active identity

    Usage:
        exporter = MetricsExporter(registry=CollectorRegistry())
        exporter.update(governor=gov, pool=pool, tracker=tracker)
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()
        reg = self._registry

        self._gov_active_requests = Gauge(
            "requestgov_gov_active_requests", "Requests currently holding a slot", registry=reg
        )
        self._gov_max_concurrent = Gauge(
            "requestgov_gov_max_concurrent", "Configured slot count", registry=reg
        )
        self._gov_queue_depth = Gauge(
            "requestgov_gov_queue_depth", "Requests waiting for a slot", registry=reg
        )
        self._gov_current_delay_ms = Gauge(
            "requestgov_gov_current_delay_ms", "Current inter-request delay", registry=reg
        )
        self._gov_paused = Gauge(
            "requestgov_gov_paused", "1 while a system pause is active", registry=reg
        )
        self._gov_rate_limit_rate = Gauge(
            "requestgov_gov_rate_limit_rate",
            "Throttled responses per minute over the sliding window",
            registry=reg,
        )
        self._gov_requests = Counter(
            "requestgov_gov_requests", "Requests admitted by the governor", registry=reg
        )
        self._gov_rate_limited = Counter(
            "requestgov_gov_rate_limited", "Throttled responses observed", registry=reg
        )
        self._gov_system_pauses = Counter(
            "requestgov_gov_system_pauses", "System pauses triggered", registry=reg
        )

        self._pool_secondary_active = Gauge(
            "requestgov_pool_secondary_active", "1 while the secondary identity is active", registry=reg
        )
        self._pool_authenticated = Gauge(
            "requestgov_pool_authenticated_identities", "Authenticated identities", registry=reg
        )
        self._pool_exhausted = Gauge(
            "requestgov_pool_exhausted_identities", "Identities marked exhausted", registry=reg
        )
        self._pool_rotations = Counter(
            "requestgov_pool_rotations", "Successful identity switches", registry=reg
        )

        self._capacity_item_count = Gauge(
            "requestgov_capacity_item_count", "Items owned by the active identity", registry=reg
        )
        self._capacity_limit = Gauge(
            "requestgov_capacity_limit", "Per-identity item limit", registry=reg
        )
        self._capacity_at_limit = Gauge(
            "requestgov_capacity_at_limit", "1 while the active identity is at its limit", registry=reg
        )
        self._capacity_tracked = Gauge(
            "requestgov_capacity_tracked_items", "Items created by this run", registry=reg
        )

        self._last_totals: dict[str, int] = {}

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def _advance(self, counter: Counter, key: str, current: int) -> None:
        delta = current - self._last_totals.get(key, 0)
        if delta > 0:
            counter.inc(delta)
        self._last_totals[key] = current

    def update(
        self,
        governor: RequestGovernor | None = None,
        pool: CredentialPool | None = None,
        tracker: CapacityTracker | None = None,
    ) -> None:
        """
        Sync every given component.

        Call on each scrape or on a timer.
        """
        if governor is not None:
            self._update_governor(governor)
        if pool is not None:
            self._update_pool(pool)
        if tracker is not None:
            self._update_capacity(tracker)

    def _update_governor(self, governor: RequestGovernor) -> None:
        telemetry = governor.get_telemetry()
        self._gov_active_requests.set(governor.active_requests)
        self._gov_max_concurrent.set(governor.config.max_concurrent)
        self._gov_queue_depth.set(governor.queue_depth)
        self._gov_current_delay_ms.set(telemetry.current_delay_ms)
        self._gov_paused.set(1 if governor.is_paused else 0)
        self._gov_rate_limit_rate.set(telemetry.rate_limit_rate)
        self._advance(self._gov_requests, "gov_requests", telemetry.total_requests)
        self._advance(self._gov_rate_limited, "gov_rate_limited", telemetry.total_429s)
        self._advance(self._gov_system_pauses, "gov_system_pauses", telemetry.system_pauses)

    def _update_pool(self, pool: CredentialPool) -> None:
        from requestgov.credentials.pool import IdentitySlot

        self._pool_secondary_active.set(1 if pool.active_slot == IdentitySlot.SECONDARY else 0)
        self._pool_authenticated.set(sum(1 for slot in IdentitySlot if pool.is_authenticated(slot)))
        self._pool_exhausted.set(pool.exhausted_count())
        self._advance(self._pool_rotations, "pool_rotations", pool.rotation_count)

    def _update_capacity(self, tracker: CapacityTracker) -> None:
        self._capacity_item_count.set(tracker.item_count)
        self._capacity_limit.set(tracker.config.limit)
        self._capacity_at_limit.set(1 if tracker.is_at_capacity() else 0)
        self._capacity_tracked.set(len(tracker.created_items()))

    def reset_counter_tracking(self) -> None:
        """Forget last-seen totals (after components were reset); counters stay."""
        self._last_totals.clear()


# Counters are exported with a _total suffix by prometheus_client.
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {
        "requestgov_gov_active_requests",
        "requestgov_gov_max_concurrent",
        "requestgov_gov_queue_depth",
        "requestgov_gov_current_delay_ms",
        "requestgov_gov_paused",
        "requestgov_gov_rate_limit_rate",
        "requestgov_gov_requests_total",
        "requestgov_gov_rate_limited_total",
        "requestgov_gov_system_pauses_total",
        "requestgov_pool_secondary_active",
        "requestgov_pool_authenticated_identities",
        "requestgov_pool_exhausted_identities",
        "requestgov_pool_rotations_total",
        "requestgov_capacity_item_count",
        "requestgov_capacity_limit",
        "requestgov_capacity_at_limit",
        "requestgov_capacity_tracked_items",
    }
)
