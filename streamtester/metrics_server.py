"""HTTP server exposing /metrics, /health and /status in continuous mode."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog
from aiohttp import web

from streamtester import metrics

logger = structlog.get_logger()

StatusProvider = Callable[[], list[dict[str, Any]]]


async def _handle_metrics_endpoint(request: web.Request) -> web.Response:
    """Handle /metrics endpoint for Prometheus scraping."""
    if not metrics.is_metrics_enabled():
        return web.Response(text="Metrics disabled", status=404)

    from prometheus_client import generate_latest

    # aiohttp sets the charset separately from content_type
    return web.Response(
        body=generate_latest(),
        content_type="text/plain",
        charset="utf-8",
    )


async def _handle_health(request: web.Request) -> web.Response:
    return web.Response(text="ok")


class MetricsServer:
    """Lightweight aiohttp server for scraping and status checks.

    Args:
        host: Interface to bind.
        port: Port to bind; 0 picks a free port.
        status_provider: Returns the runner statuses served on /status.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 9090,
        status_provider: StatusProvider | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self._status_provider = status_provider
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/metrics", _handle_metrics_endpoint)
        app.router.add_get("/health", _handle_health)
        app.router.add_get("/status", self._handle_status)
        return app

    async def _handle_status(self, request: web.Request) -> web.Response:
        testers = self._status_provider() if self._status_provider else []
        healthy = all(t.get("state") == "ok" for t in testers)
        return web.json_response({"healthy": healthy, "testers": testers})

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("metrics_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("metrics_server_stopped")
