"""
HTTP endpoints for scraping requestgov state.

GET /metrics serves the Prometheus exposition of a registry, optionally
refreshing it first. GET /healthz serves the orchestrator health JSON.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import orjson
from aiohttp import web
from prometheus_client import generate_latest

if TYPE_CHECKING:
    from prometheus_client.registry import CollectorRegistry

logger = logging.getLogger(__name__)

METRICS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

# Returns the health payload; "healthy": False turns the reply into a 503.
HealthFn = Callable[[], dict[str, Any]]

# Pushes component state into the registry right before a scrape.
RefreshFn = Callable[[], None]


def _make_metrics_handler(registry: CollectorRegistry, refresh_fn: RefreshFn | None) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        if refresh_fn is not None:
            refresh_fn()
        return web.Response(
            body=generate_latest(registry),
            content_type="text/plain; version=0.0.4",
            charset="utf-8",
        )

    return handler


def _make_healthz_handler(health_fn: HealthFn | None) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        info = health_fn() if health_fn is not None else {"status": "ok"}
        status = 503 if info.get("healthy") is False else 200
        return web.Response(
            body=orjson.dumps(info),
            status=status,
            content_type="application/json",
        )

    return handler


def create_metrics_app(
    registry: CollectorRegistry,
    *,
    health_fn: HealthFn | None = None,
    refresh_fn: RefreshFn | None = None,
) -> web.Application:
    """
    Build the aiohttp application with /metrics and /healthz routes.

    Args:
        registry: Registry to expose.
        health_fn: Health payload callback; ``{"status": "ok"}`` when omitted.
        refresh_fn: Called before each /metrics render.

    Returns:
        Application ready to be run.
    """
    app = web.Application()
    app.router.add_get("/metrics", _make_metrics_handler(registry, refresh_fn))
    app.router.add_get("/healthz", _make_healthz_handler(health_fn))
    return app


async def start_metrics_server(
    registry: CollectorRegistry,
    host: str = "127.0.0.1",
    port: int = 9090,
    *,
    health_fn: HealthFn | None = None,
    refresh_fn: RefreshFn | None = None,
) -> web.AppRunner:
    """
    Start serving metrics in the running event loop.

    Returns:
        AppRunner; pass it to ``stop_metrics_server`` on shutdown.
    """
    app = create_metrics_app(registry, health_fn=health_fn, refresh_fn=refresh_fn)
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Metrics server started", extra={"host": host, "port": port})
    return runner


async def stop_metrics_server(runner: web.AppRunner) -> None:
    await runner.cleanup()
    logger.info("Metrics server stopped")
