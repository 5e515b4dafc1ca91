"""Obserra: standalone registry and health-monitor server.

Exposes:
  /api/...    REST API (see :mod:`obserra.api`)
  /ws         live log push (when ``logs.websocket_enabled``)
  GET /health  liveness check

Start with::

    python -m obserra.server
    # or
    obserra
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from obserra import __version__, api
from obserra.collector import MetricsCollector
from obserra.config import ObserraConfig
from obserra.db import get_db, init_db
from obserra.discovery.kubernetes import connect_platform
from obserra.discovery.platform import PlatformDiscovery
from obserra.notify import LogBroadcaster
from obserra.prober import ActuatorProber
from obserra.registry import InstanceRegistry
from obserra.scheduler import HealthScheduler

logger = logging.getLogger(__name__)


def create_app(config: ObserraConfig | None = None) -> FastAPI:
    """Build the FastAPI app; background tasks start with the lifespan."""
    config = config or ObserraConfig.resolve()
    broadcaster = LogBroadcaster()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        init_db(config.database_path)
        retention = config.metrics.retention
        registry = InstanceRegistry(
            get_db(), max_entries=retention.max_entries, retention_days=retention.days
        )
        prober = ActuatorProber(timeout=config.health_check.timeout)
        platform = await connect_platform(config.kubernetes)

        discovery = PlatformDiscovery(
            registry,
            prober,
            platform,
            actuator=config.actuator,
            interval=config.kubernetes.service_discovery_interval,
            health_check_interval=config.health_check.interval,
        )
        collector = MetricsCollector(registry, prober)
        scheduler = HealthScheduler(
            registry,
            prober,
            collector=collector,
            broadcaster=broadcaster if config.logs.websocket_enabled else None,
            interval=config.health_check.interval,
            max_down_age=config.health_check.max_down_age,
        )
        api.bind(api.ApiContext(
            registry=registry,
            prober=prober,
            collector=collector,
            scheduler=scheduler,
            logs=config.logs,
        ))
        app.state.registry = registry
        app.state.discovery = discovery
        app.state.scheduler = scheduler

        await discovery.start()
        await scheduler.start()
        logger.info("Obserra %s ready (registry at %s)", __version__, config.database_path)
        try:
            yield
        finally:
            await discovery.stop()
            await scheduler.stop()
            await prober.aclose()
            api.bind(None)

    app = FastAPI(title="Obserra", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.broadcaster = broadcaster
    app.state.registry = None
    app.include_router(api.router)
    if config.logs.websocket_enabled:
        app.add_api_websocket_route("/ws", broadcaster.ws_handler)

    @app.get("/health")
    async def health():
        registry: InstanceRegistry | None = app.state.registry
        return {
            "status": "ok",
            "service": "obserra",
            "version": __version__,
            "instances": len(registry.list()) if registry is not None else 0,
            "subscribers": broadcaster.subscriber_count,
        }

    return app


def main():
    import uvicorn

    config = ObserraConfig.resolve()
    logging.basicConfig(level=config.logging.level.upper())
    logger.info("Starting Obserra server on %s:%d", config.server.host, config.server.port)
    uvicorn.run(create_app(config), host=config.server.host, port=config.server.port, reload=False)


if __name__ == "__main__":
    main()
