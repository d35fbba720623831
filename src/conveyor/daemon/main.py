"""Conveyor daemon — FastAPI app that accepts triggers and drives runs."""

import logging
import uvicorn
from contextlib import asynccontextmanager
from fastapi import FastAPI

from conveyor import __version__
from conveyor.adapters.registry import AdapterRegistry
from conveyor.api.router import api_router
from conveyor.core.config import ConveyorSettings, get_settings
from conveyor.daemon.manager import RunManager
from conveyor.daemon.webhooks import WebhookNotifier
from conveyor.notify.sinks import CompositeNotifier, LoggingNotifier
from conveyor.repositories.run_repo import RunStateStore

logger = logging.getLogger("conveyor")


def create_app(settings: ConveyorSettings | None = None, adapters: AdapterRegistry | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown."""
        store = RunStateStore(settings.database_url)
        await store.init()
        logger.info(f"Run store initialized: {settings.database_url}")

        registry = adapters or AdapterRegistry(settings.adapters)
        logger.info(f"Adapter bindings: {registry.list_bindings()}")

        notifier = CompositeNotifier(LoggingNotifier())
        webhooks = WebhookNotifier(settings.webhooks)
        if settings.webhooks:
            notifier.add(webhooks)

        manager = RunManager(settings, store, registry, notifier)
        app.state.store = store
        app.state.adapters = registry
        app.state.manager = manager
        app.state.webhooks = webhooks

        # Pick up runs a previous daemon left unfinished
        await manager.recover()
        logger.info(f"Run manager started (max_active_runs={manager.max_active_runs})")

        yield

        # Shutdown
        await manager.shutdown()
        await registry.close()
        await store.close()
        logger.info("Conveyor daemon stopped")

    app = FastAPI(
        title="Conveyor",
        description="Release pipeline orchestration daemon",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        manager = getattr(app.state, "manager", None)
        webhooks = getattr(app.state, "webhooks", None)
        return {
            "status": "ok",
            "version": __version__,
            "runs": manager.info() if manager else None,
            "webhooks": webhooks.list_webhooks() if webhooks else [],
        }

    return app


def main():
    """Entry point for `conveyord` command."""
    import sys

    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    host = settings.host
    port = settings.port

    # Parse CLI args (simple, no dep on typer for daemon)
    args = sys.argv[1:]
    for i, arg in enumerate(args):
        if arg == "--port" and i + 1 < len(args):
            port = int(args[i + 1])
        if arg == "--host" and i + 1 < len(args):
            host = args[i + 1]

    logger.info(f"Starting Conveyor daemon v{__version__} on {host}:{port}")

    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level)


if __name__ == "__main__":
    main()
