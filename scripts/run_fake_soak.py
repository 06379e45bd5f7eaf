#!/usr/bin/env python3
"""
Run an offline soak against a fake item API.

Starts a local aiohttp server that behaves like the item API under load
(per-identity item limit, protected default item, periodic throttling,
delayed list visibility) and drives an Orchestrator against it with many
concurrent operations, then writes a JSON summary.

Usage:
    python -m scripts.run_fake_soak --operations 60 --summary-json soak.json
    python -m scripts.run_fake_soak --operations 60 --summary-json soak.json \
        --throttle-every 4 --seed-items 18 --visibility-delay-reads 1

No outbound network required. Suitable for CI.
"""
from __future__ import annotations

import argparse
import asyncio
import itertools
import logging
import secrets
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

import aiohttp.web
import orjson

from requestgov.capacity.tracker import CapacityConfig
from requestgov.config import OrchestratorConfig
from requestgov.credentials.pool import Credentials, PoolConfig
from requestgov.execution.resilient import RotationConfig
from requestgov.governance.backoff import BackoffConfig, RotationExhaustedError
from requestgov.governance.governor import GovernorConfig
from requestgov.logging_config import setup_logging
from requestgov.orchestrator import Orchestrator
from requestgov.telemetry.metrics_server import start_metrics_server, stop_metrics_server
from requestgov.transport.types import extract_item_id, is_success

logger = logging.getLogger(__name__)

SOAK_USERS = {
    "primary@soak.test": "primary-secret",
    "secondary@soak.test": "secondary-secret",
}


class FakeItemApiServer:
    """In-memory item API with per-identity limits and periodic throttling."""

    def __init__(
        self,
        *,
        users: dict[str, str] | None = None,
        limit: int = 20,
        throttle_every: int = 0,
        seed_items: int = 0,
        visibility_delay_reads: int = 0,
    ) -> None:
        self.users = dict(users or SOAK_USERS)
        self.limit = limit
        self.throttle_every = throttle_every
        self.visibility_delay_reads = visibility_delay_reads
        self.port: int = 0
        self.total_requests = 0
        self.total_throttled = 0

        self._runner: aiohttp.web.AppRunner | None = None
        self._tokens: dict[str, str] = {}
        self._request_counts: dict[str, int] = {}
        self._items: dict[str, list[dict[str, Any]]] = {login: [] for login in self.users}
        # item id -> list reads left before it shows up
        self._hidden: dict[int, int] = {}
        self._ids = itertools.count(1)
        self._client_ids = {login: 1000 + i for i, login in enumerate(self.users)}

        for login in self.users:
            for n in range(seed_items):
                self._add_item(login, {"name": f"seed-{n}"})

    # --- state -----------------------------------------------------------

    def items_of(self, login: str) -> list[dict[str, Any]]:
        return list(self._items[login])

    def _add_item(self, login: str, payload: dict[str, Any]) -> dict[str, Any]:
        owned = self._items[login]
        item = {
            **payload,
            "id": next(self._ids),
            "client_id": self._client_ids[login],
            "is_default": not owned,
        }
        owned.append(item)
        return item

    def _identity_of(self, request: aiohttp.web.Request) -> str | None:
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return None
        return self._tokens.get(header.removeprefix("Bearer "))

    def _throttled(self, key: str) -> bool:
        self.total_requests += 1
        count = self._request_counts.get(key, 0) + 1
        self._request_counts[key] = count
        if self.throttle_every and count % self.throttle_every == 0:
            self.total_throttled += 1
            return True
        return False

    @staticmethod
    def _json(body: Any, status: int = 200) -> aiohttp.web.Response:
        return aiohttp.web.Response(
            body=orjson.dumps(body), status=status, content_type="application/json"
        )

    def _too_many(self) -> aiohttp.web.Response:
        return self._json({"success": False, "message": "Too Many Attempts."}, status=429)

    def _unauthorized(self) -> aiohttp.web.Response:
        return self._json({"success": False, "message": "Unauthenticated."}, status=401)

    # --- handlers --------------------------------------------------------

    async def _health(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        return self._json({"status": "ok"})

    async def _login(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        body = await request.json()
        login = body.get("login", "")
        if self._throttled(f"login:{login}"):
            return self._too_many()
        if self.users.get(login) != body.get("password"):
            return self._json({"success": False, "message": "Invalid credentials"}, status=422)
        token = secrets.token_hex(16)
        self._tokens[token] = login
        return self._json({"success": True, "data": {"access_token": token}})

    async def _list(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        login = self._identity_of(request)
        if login is None:
            return self._unauthorized()
        if self._throttled(login):
            return self._too_many()
        visible = []
        for item in self._items[login]:
            remaining = self._hidden.get(item["id"], 0)
            if remaining > 0:
                self._hidden[item["id"]] = remaining - 1
                continue
            visible.append(item)
        return self._json({"success": True, "status": "success", "data": visible})

    async def _create(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        login = self._identity_of(request)
        if login is None:
            return self._unauthorized()
        if self._throttled(login):
            return self._too_many()
        if len(self._items[login]) >= self.limit:
            return self._json(
                {"success": False, "message": f"You can not add more than {self.limit} addresses"},
                status=400,
            )
        item = self._add_item(login, await request.json())
        if self.visibility_delay_reads:
            self._hidden[item["id"]] = self.visibility_delay_reads
        return self._json({"success": True, "data": item}, status=201)

    def _find(self, login: str, raw_id: str) -> dict[str, Any] | None:
        return next((i for i in self._items[login] if str(i["id"]) == raw_id), None)

    async def _update(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        login = self._identity_of(request)
        if login is None:
            return self._unauthorized()
        if self._throttled(login):
            return self._too_many()
        item = self._find(login, request.match_info["item_id"])
        if item is None:
            return self._json({"success": False, "message": "Not found"}, status=404)
        item.update({k: v for k, v in (await request.json()).items() if k not in ("id", "client_id")})
        return self._json({"success": True, "data": item})

    async def _delete(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        login = self._identity_of(request)
        if login is None:
            return self._unauthorized()
        if self._throttled(login):
            return self._too_many()
        item = self._find(login, request.match_info["item_id"])
        if item is None:
            return self._json({"success": False, "message": "Not found"}, status=404)
        if item["is_default"]:
            return self._json(
                {"success": False, "message": "Cannot delete the default address"}, status=400
            )
        self._items[login].remove(item)
        self._hidden.pop(item["id"], None)
        return self._json({"success": True})

    async def _set_default(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        login = self._identity_of(request)
        if login is None:
            return self._unauthorized()
        if self._throttled(login):
            return self._too_many()
        body = await request.json()
        target = self._find(login, str(body.get("address_id")))
        if target is None:
            return self._json({"success": False, "message": "Not found"}, status=404)
        for item in self._items[login]:
            item["is_default"] = item is target
        return self._json({"success": True, "data": target})

    # --- lifecycle -------------------------------------------------------

    def create_app(self) -> aiohttp.web.Application:
        app = aiohttp.web.Application()
        app.router.add_get("/api/v1/public/health", self._health)
        app.router.add_post("/api/clients/auth/login", self._login)
        app.router.add_get("/api/clients/addresses", self._list)
        app.router.add_post("/api/clients/addresses", self._create)
        app.router.add_post("/api/clients/addresses/set-default", self._set_default)
        app.router.add_post("/api/clients/addresses/update/{item_id}", self._update)
        app.router.add_delete("/api/clients/addresses/{item_id}", self._delete)
        return app

    async def start(self) -> None:
        self._runner = aiohttp.web.AppRunner(self.create_app())
        await self._runner.setup()
        site = aiohttp.web.TCPSite(self._runner, "127.0.0.1", 0)
        await site.start()
        assert self._runner.addresses
        self.port = self._runner.addresses[0][1]
        logger.info("Fake item API started", extra={"port": self.port})

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
        logger.info(
            "Fake item API stopped",
            extra={"requests": self.total_requests, "throttled": self.total_throttled},
        )

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"


def soak_config(
    base_url: str,
    *,
    limit: int = 20,
    max_concurrent: int = 2,
    min_delay_ms: int = 20,
) -> OrchestratorConfig:
    """Orchestrator settings scaled down for a local soak."""
    fast_throttle = BackoffConfig(base_delay_ms=50, max_delay_ms=500)
    fast_errors = BackoffConfig(base_delay_ms=50, max_delay_ms=500)
    return OrchestratorConfig(
        base_url=base_url,
        environment="CI",
        primary=Credentials("primary@soak.test", SOAK_USERS["primary@soak.test"]),
        secondary=Credentials("secondary@soak.test", SOAK_USERS["secondary@soak.test"]),
        governor=GovernorConfig(
            max_concurrent=max_concurrent,
            min_inter_request_delay_ms=min_delay_ms,
            max_delay_ms=500,
            system_pause_duration_ms=500,
        ),
        rotation=RotationConfig(cooldown_base_ms=100),
        capacity=CapacityConfig(
            limit=limit,
            rate_limit_retry_pause_ms=50,
            post_cleanup_cooldown_ms=20,
            throttle_backoff=fast_throttle,
            server_error_backoff=fast_errors,
        ),
        pool=PoolConfig(throttle_backoff=fast_throttle, server_error_backoff=fast_errors),
        capacity_retry_pause_ms=50,
    )


async def _soak_operation(orch: Orchestrator, n: int, stats: dict[str, int]) -> None:
    context = f"soak-{n}"
    name = f"soak-item-{n}"
    try:
        response = await orch.create_with_capacity({"name": name, "city": "Cairo"}, context=context)
        if not is_success(response.status):
            stats["rejected"] += 1
            return
        stats["created"] += 1

        result = await orch.confirm_visible("name", name, context=context)
        stats["confirmed" if result.found else "not_visible"] += 1

        item_id = extract_item_id(response.body)
        if item_id is not None and n % 3 == 0:
            deleted = await orch.delete_item(item_id, context=context)
            if is_success(deleted.status):
                stats["deleted"] += 1
    except RotationExhaustedError as e:
        stats["exhausted"] += 1
        orch.record_failure(context, e)
    finally:
        orch.snapshot_telemetry(context)


async def run_soak(
    operations: int,
    summary_json: Path,
    *,
    concurrency: int = 8,
    throttle_every: int = 0,
    limit: int = 20,
    seed_items: int = 0,
    visibility_delay_reads: int = 0,
    metrics_port: int = 0,
) -> int:
    """Start the fake API, run ``operations`` governed create flows, write a summary."""
    server = FakeItemApiServer(
        limit=limit,
        throttle_every=throttle_every,
        seed_items=seed_items,
        visibility_delay_reads=visibility_delay_reads,
    )
    await server.start()
    metrics_runner: aiohttp.web.AppRunner | None = None
    stats = dict.fromkeys(
        ("created", "confirmed", "not_visible", "deleted", "rejected", "exhausted"), 0
    )

    try:
        async with Orchestrator(soak_config(server.base_url, limit=limit)) as orch:
            if metrics_port:
                metrics_runner = await start_metrics_server(
                    orch.exporter.registry,
                    port=metrics_port,
                    health_fn=orch.health,
                    refresh_fn=orch.update_metrics,
                )

            gate = asyncio.Semaphore(concurrency)

            async def bounded(n: int) -> None:
                async with gate:
                    await _soak_operation(orch, n, stats)

            await asyncio.gather(*(bounded(n) for n in range(operations)))
            orch.update_metrics()

            summary = {
                "operations": operations,
                **stats,
                "governor": orch.governor.get_telemetry().to_dict(),
                "governor_queue": asdict(orch.governor.metrics),
                "rotations": orch.pool.rotation_count,
                "active_identity": orch.pool.active_slot.value,
                "capacity": {
                    "item_count": orch.tracker.item_count,
                    "limit": limit,
                    "tracked": len(orch.tracker.created_items()),
                },
                "server": {
                    "requests": server.total_requests,
                    "throttled": server.total_throttled,
                },
            }
    finally:
        if metrics_runner is not None:
            await stop_metrics_server(metrics_runner)
        await server.stop()

    summary_json.parent.mkdir(parents=True, exist_ok=True)
    summary_json.write_bytes(orjson.dumps(summary, option=orjson.OPT_INDENT_2))
    logger.info("Soak summary written", extra={"path": str(summary_json), **stats})

    max_concurrent = summary["governor_queue"]["max_observed_concurrent"]
    if max_concurrent > orch.config.governor.max_concurrent:
        logger.error("Concurrency cap exceeded", extra={"observed": max_concurrent})
        return 1
    return 0 if stats["created"] > 0 else 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run an offline soak of the request governor against a fake item API.",
    )
    parser.add_argument(
        "--operations",
        type=int,
        required=True,
        help="Number of create/confirm flows to run",
    )
    parser.add_argument(
        "--summary-json",
        type=Path,
        required=True,
        help="Output path for the soak summary JSON",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=8,
        help="Flows in flight at once (default: 8)",
    )
    parser.add_argument(
        "--throttle-every",
        type=int,
        default=0,
        help="Answer every N-th request per identity with 429 (0 = never)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Per-identity item limit (default: 20)",
    )
    parser.add_argument(
        "--seed-items",
        type=int,
        default=0,
        help="Items each identity owns before the run",
    )
    parser.add_argument(
        "--visibility-delay-reads",
        type=int,
        default=0,
        help="List reads a new item stays hidden for",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=0,
        help="Prometheus metrics port (0 = disabled, default: 0)",
    )
    parser.add_argument(
        "--log-format",
        choices=("json", "text"),
        default="text",
        help="Log output format (default: text)",
    )
    args = parser.parse_args()

    setup_logging(json_format=args.log_format == "json")

    return asyncio.run(
        run_soak(
            operations=args.operations,
            summary_json=args.summary_json,
            concurrency=args.concurrency,
            throttle_every=args.throttle_every,
            limit=args.limit,
            seed_items=args.seed_items,
            visibility_delay_reads=args.visibility_delay_reads,
            metrics_port=args.metrics_port,
        )
    )


if __name__ == "__main__":
    sys.exit(main())
