"""
Tests for the Prometheus metrics exporter.

Checks label hygiene, that every required family is exported, and that
counters advance by deltas of the component totals.
"""

from __future__ import annotations

import re

import pytest
from prometheus_client import generate_latest
from prometheus_client.registry import CollectorRegistry

from requestgov.capacity import CapacityConfig, CapacityTracker
from requestgov.credentials import CredentialPool, Credentials
from requestgov.governance import GovernorConfig, RequestGovernor
from requestgov.telemetry import FORBIDDEN_LABELS, REQUIRED_METRIC_NAMES, MetricsExporter
from requestgov.transport.types import ApiResponse

PRIMARY = Credentials("primary@example.test", "pw-primary")
SECONDARY = Credentials("secondary@example.test", "pw-secondary")


def quiet_governor() -> RequestGovernor:
    return RequestGovernor(
        GovernorConfig(min_inter_request_delay_ms=0, max_delay_ms=0, sustained_threshold=1000)
    )


async def ready_pool() -> CredentialPool:
    async def login(credentials: Credentials) -> ApiResponse:
        return ApiResponse(200, {"data": {"access_token": f"token-{credentials.login}"}})

    pool = CredentialPool(login, PRIMARY, SECONDARY)
    await pool.initialize()
    return pool


async def admit(governor: RequestGovernor, count: int) -> None:
    async def noop() -> None:
        return None

    for _ in range(count):
        await governor.execute(noop)


def metric_names(output: str) -> set[str]:
    names: set[str] = set()
    for line in output.splitlines():
        if line and not line.startswith("#"):
            names.add(re.split(r"[{ ]", line, maxsplit=1)[0])
    return names


class TestLabels:
    """No high-cardinality labels."""

    @pytest.mark.asyncio
    async def test_exporter_has_no_forbidden_labels(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(governor=quiet_governor(), pool=await ready_pool(), tracker=CapacityTracker())

        output = generate_latest(registry).decode("utf-8")
        found: set[str] = set()
        for match in re.finditer(r"\{([^}]+)\}", output):
            for pair in match.group(1).split(","):
                found.add(pair.split("=", 1)[0].strip())

        assert not (found & FORBIDDEN_LABELS)

    def test_forbidden_labels_cover_identities(self) -> None:
        for label in ("context", "item_id", "identity", "login", "token"):
            assert label in FORBIDDEN_LABELS


class TestRequiredMetrics:
    """Every required family is exported."""

    def test_all_required_names_present(self) -> None:
        registry = CollectorRegistry()
        MetricsExporter(registry=registry)
        names = metric_names(generate_latest(registry).decode("utf-8"))
        missing = REQUIRED_METRIC_NAMES - names
        assert not missing, f"missing metrics: {sorted(missing)}"

    def test_all_names_are_prefixed(self) -> None:
        assert all(name.startswith("requestgov_") for name in REQUIRED_METRIC_NAMES)

    def test_default_registry_is_private(self) -> None:
        first = MetricsExporter()
        second = MetricsExporter()
        assert first.registry is not second.registry


class TestValues:
    """Gauge and counter values."""

    @pytest.mark.asyncio
    async def test_governor_gauges_and_counters(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        governor = quiet_governor()
        await admit(governor, 3)
        governor.record_response(429)
        governor.record_response(429)

        exporter.update(governor=governor)

        assert registry.get_sample_value("requestgov_gov_requests_total") == 3.0
        assert registry.get_sample_value("requestgov_gov_rate_limited_total") == 2.0
        assert registry.get_sample_value("requestgov_gov_max_concurrent") == 2.0
        assert registry.get_sample_value("requestgov_gov_active_requests") == 0.0
        assert registry.get_sample_value("requestgov_gov_paused") == 0.0
        assert registry.get_sample_value("requestgov_gov_rate_limit_rate") == 4.0

    @pytest.mark.asyncio
    async def test_counters_advance_by_delta(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        governor = quiet_governor()

        await admit(governor, 2)
        exporter.update(governor=governor)
        exporter.update(governor=governor)
        assert registry.get_sample_value("requestgov_gov_requests_total") == 2.0

        await admit(governor, 3)
        exporter.update(governor=governor)
        assert registry.get_sample_value("requestgov_gov_requests_total") == 5.0

    @pytest.mark.asyncio
    async def test_reset_counter_tracking(self) -> None:
        """After a component reset the counter keeps counting from the new totals."""
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        governor = quiet_governor()

        await admit(governor, 4)
        exporter.update(governor=governor)
        governor.reset()
        exporter.reset_counter_tracking()
        await admit(governor, 1)
        exporter.update(governor=governor)

        assert registry.get_sample_value("requestgov_gov_requests_total") == 5.0

    @pytest.mark.asyncio
    async def test_pool_metrics(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        pool = await ready_pool()

        pool.switch_user("rate limit")
        pool.mark_exhausted("item limit")
        exporter.update(pool=pool)

        assert registry.get_sample_value("requestgov_pool_authenticated_identities") == 2.0
        assert registry.get_sample_value("requestgov_pool_exhausted_identities") == 1.0
        assert registry.get_sample_value("requestgov_pool_secondary_active") == 0.0
        assert registry.get_sample_value("requestgov_pool_rotations_total") == 2.0

    def test_capacity_metrics(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        tracker = CapacityTracker(CapacityConfig(limit=2, safety_margin=1))
        tracker.track_created(1)
        tracker.track_created(2)

        exporter.update(tracker=tracker)

        assert registry.get_sample_value("requestgov_capacity_item_count") == 2.0
        assert registry.get_sample_value("requestgov_capacity_limit") == 2.0
        assert registry.get_sample_value("requestgov_capacity_at_limit") == 1.0
        assert registry.get_sample_value("requestgov_capacity_tracked_items") == 2.0
